"""Test helpers: a scripted console, a raw wire peer and polling."""

from __future__ import annotations

import os
import queue
import socket
import threading
import time
from contextlib import contextmanager

from chat.net import Connection
from chat.session import ChatSession
from common.config import ChatConfig


def wait_for(predicate, timeout: float = 5.0, interval: float = 0.02) -> None:
    """Poll until predicate() is truthy; fail the test on timeout."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return
        time.sleep(interval)
    raise AssertionError(f"condition not met within {timeout:.1f}s")


class ScriptedConsole:
    """Console stand-in: lines are fed by the test, output is collected."""

    def __init__(self) -> None:
        self.lines: queue.Queue = queue.Queue()
        self.shown: list[str] = []
        self.live_output = b""
        self._lock = threading.Lock()

    def feed(self, line: str | None) -> None:
        self.lines.put(line)

    def show(self, text: str) -> None:
        with self._lock:
            self.shown.append(text)

    def saw(self, fragment: str) -> bool:
        with self._lock:
            return any(fragment in line for line in self.shown)

    def read_line(self, stop: threading.Event) -> str | None:
        while not stop.is_set():
            try:
                line = self.lines.get(timeout=0.05)
            except queue.Empty:
                continue
            return line
        return None

    @contextmanager
    def handoff(self):
        in_r, in_w = os.pipe()
        out_r, out_w = os.pipe()
        try:
            yield in_r, out_w
        finally:
            os.close(out_w)
            chunks = []
            while True:
                data = os.read(out_r, 65536)
                if not data:
                    break
                chunks.append(data)
            self.live_output += b"".join(chunks)
            for fd in (in_r, in_w, out_r):
                os.close(fd)


def make_config(tmp_path, name: str) -> ChatConfig:
    home = tmp_path / name
    home.mkdir()
    return ChatConfig(
        port=0,
        live_port=0,
        live_bind="127.0.0.1",
        chunk_size=4096,
        shell="/bin/sh",
        cert_dir=str(tmp_path / "certs"),
        home=str(home),
    )


class Peer:
    """One side of a running session: console, session and its sender thread."""

    def __init__(self, sock: socket.socket, config: ChatConfig, name: str) -> None:
        self.console = ScriptedConsole()
        self.config = config
        self.session = ChatSession(Connection(sock), self.console, config, peer_name=name)
        self.thread = threading.Thread(target=self.session.run, daemon=True)

    def type(self, line: str) -> None:
        self.console.feed(line)

    def start(self) -> None:
        self.thread.start()

    def stop(self) -> None:
        self.console.feed(None)
        self.session.close()
        self.thread.join(timeout=5)


class WireTap:
    """Raw peer for protocol level tests: reads and writes lines directly."""

    def __init__(self, sock: socket.socket) -> None:
        self.sock = sock
        self.conn = Connection(sock)

    def send(self, line: str) -> None:
        self.conn.write_line(line)

    def recv_until(self, prefix: str, timeout: float = 5.0) -> list[str]:
        """Read lines until one starts with prefix; return all lines read."""
        seen: list[str] = []
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            self.sock.settimeout(max(0.05, deadline - time.monotonic()))
            try:
                line = self.conn.read_line()
            except socket.timeout:
                break
            if line is None:
                break
            seen.append(line)
            if line.startswith(prefix):
                return seen
        raise AssertionError(f"no {prefix!r} line, got {seen!r}")

    def drain(self, window: float = 0.3) -> list[str]:
        """Everything that arrives within `window` seconds."""
        seen: list[str] = []
        deadline = time.monotonic() + window
        while time.monotonic() < deadline:
            self.sock.settimeout(max(0.01, deadline - time.monotonic()))
            try:
                line = self.conn.read_line()
            except socket.timeout:
                break
            if line is None:
                break
            seen.append(line)
        return seen
