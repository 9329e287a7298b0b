"""
Live sessions: a full-terminal program bridged over a second connection.

The acceptor listens on the live port and runs the approved command under a
pseudo-terminal; the requester connects and attaches its own terminal. The
live connection carries raw terminal bytes only, never chat messages.
"""
import errno
import os
import pty
import select
import signal
import socket
import threading
import time
from typing import Optional, Tuple

from common.logs import get_logger

log = get_logger("live")

BUFSIZE = 4096
POLL = 0.5   # seconds between checks of the session stop flag


def parse_address(addr: str, default_port: int) -> Tuple[str, int]:
    '''
    Split "host", "host:port" or "[v6]:port" into (host, port).
    A bare IPv6 address (several colons, no brackets) keeps the default port.
    '''
    addr = addr.strip()
    if addr.startswith("["):
        host, _, rest = addr[1:].partition("]")
        port = rest[1:] if rest.startswith(":") else ""
        return host, int(port) if port else default_port
    if addr.count(":") == 1:
        host, port = addr.split(":")
        return host, int(port)
    return addr, default_port

def format_address(host: str, port: int, default_port: int) -> str:
    ''' Inverse of parse_address; the port is only written when it is not the default '''
    if port == default_port:
        return host
    if ":" in host:
        return f"[{host}]:{port}"
    return f"{host}:{port}"

def _plain_host(host: str) -> str:
    # IPv4 clients on a dual-stack listener show up as ::ffff:a.b.c.d
    return host[7:] if host.startswith("::ffff:") else host

def _write_all(fd: int, data: bytes):
    while data:
        n = os.write(fd, data)
        data = data[n:]


class LiveHost:
    ''' Acceptor side: one listener, one connection, one pty-attached process '''

    def __init__(self, command: str, shell: str = "/bin/bash",
                 bind: str = "0.0.0.0", port: int = 0, allowed_peer: Optional[str] = None,
                 accept_timeout: Optional[float] = None):
        self.command = command
        self.shell = shell
        self.bind = bind
        self.port = port
        self.allowed_peer = _plain_host(allowed_peer) if allowed_peer else None
        self.accept_timeout = accept_timeout
        self.listener: Optional[socket.socket] = None
        self.pid: Optional[int] = None

    def listen(self) -> int:
        '''
        Bind the live listener; returns the bound port.
        Raises OSError when the port is already in use.
        '''
        self.listener = socket.create_server((self.bind, self.port))
        self.listener.settimeout(POLL)
        self.port = self.listener.getsockname()[1]
        log.info("live listener on %s:%d for %r", self.bind, self.port, self.command)
        return self.port

    def accept(self, stop: threading.Event) -> Optional[socket.socket]:
        '''
        Wait for the requester; connections from other hosts are refused.
        Returns None once `stop` is set. Raises socket.timeout when nobody
        allowed has connected within accept_timeout seconds.
        '''
        deadline = None
        if self.accept_timeout is not None:
            deadline = time.monotonic() + self.accept_timeout
        while not stop.is_set():
            if deadline is not None and time.monotonic() >= deadline:
                raise socket.timeout(f"peer did not connect within {self.accept_timeout:g}s")
            try:
                conn, addr = self.listener.accept()
            except socket.timeout:
                continue
            peer = _plain_host(addr[0])
            if self.allowed_peer and peer != self.allowed_peer:
                log.warning("refusing live connection from %s (expected %s)", peer, self.allowed_peer)
                conn.close()
                continue
            conn.settimeout(None)
            return conn
        return None

    def serve(self, stop: threading.Event) -> Optional[int]:
        '''
        Accept exactly one connection, run the command on a pty and bridge the
        two until the process exits or the peer hangs up.
        Returns the exit status, or None if the session was stopped first.
        Raises OSError (socket.timeout included) when the requester never joins.
        '''
        try:
            conn = self.accept(stop)
        finally:
            # one connection only; nobody else may attach
            self.close()
        if conn is None:
            return None

        pid, master = pty.fork()
        if pid == 0:
            try:
                os.execvp(self.shell, [self.shell, "-c", self.command])
            finally:
                os._exit(127)
        self.pid = pid
        try:
            self._pump(conn, master, stop)
        except OSError as e:
            log.info("live bridge broke: %s", e)
            self._hangup()
        finally:
            os.close(master)
            try:
                conn.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass
            conn.close()
        return self._reap()

    def _pump(self, conn: socket.socket, master: int, stop: threading.Event):
        while not stop.is_set():
            ready, _, _ = select.select([conn, master], [], [], POLL)
            if master in ready:
                try:
                    data = os.read(master, BUFSIZE)
                except OSError as e:
                    if e.errno != errno.EIO:   # EIO: the child side of the pty closed
                        raise
                    data = b""
                if not data:
                    return
                conn.sendall(data)
            if conn in ready:
                data = conn.recv(BUFSIZE)
                if not data:
                    log.info("live peer hung up")
                    self._hangup()
                    return
                _write_all(master, data)
        self._hangup()

    def _hangup(self):
        if self.pid:
            try:
                os.kill(self.pid, signal.SIGHUP)
            except ProcessLookupError:
                pass

    def _reap(self) -> Optional[int]:
        if not self.pid:
            return None
        _, status = os.waitpid(self.pid, 0)
        self.pid = None
        return os.waitstatus_to_exitcode(status)

    def close(self):
        if self.listener is not None:
            self.listener.close()
            self.listener = None


def run_client(host: str, port: int, in_fd: int, out_fd: int) -> None:
    '''
    Requester side: connect to the acceptor and bridge the local terminal.
        Input:
            - host, port: where the acceptor listens
            - in_fd: local input (the terminal, already in raw mode)
            - out_fd: local output
    Returns when the remote program has exited and the acceptor closed the
    connection. Raises OSError when the address is unreachable.
    '''
    sock = socket.create_connection((host, port))
    watch = [sock, in_fd]
    try:
        while True:
            ready, _, _ = select.select(watch, [], [])
            if sock in ready:
                data = sock.recv(BUFSIZE)
                if not data:
                    return
                _write_all(out_fd, data)
            if in_fd in ready:
                data = os.read(in_fd, BUFSIZE)
                if not data:
                    watch = [sock]   # local input closed; keep showing output
                else:
                    sock.sendall(data)
    finally:
        sock.close()
