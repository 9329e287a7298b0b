"""End-to-end tests: two sessions, or one session against a raw wire peer."""

from __future__ import annotations

import os
import time

from common.protocol import b64
from tests.utils import wait_for


class TestCopy:
    """/copy negotiated between two operators."""

    def test_copy_accepted(self, peers, tmp_path, monkeypatch) -> None:
        """A sends a 37-byte file, B says yes, B gets the same 37 bytes."""
        a, b = peers
        work = tmp_path / "work"
        work.mkdir()
        monkeypatch.chdir(work)
        content = b"thirty-seven bytes of notes, exactly\n"
        assert len(content) == 37
        (work / "notes.txt").write_bytes(content)

        a.type("/copy notes.txt remote-notes.txt")
        wait_for(lambda: b.console.saw("Incoming file request: 'notes.txt' to 'remote-notes.txt'"))
        b.type("yes")
        wait_for(lambda: b.console.saw("File transfer to 'remote-notes.txt' complete"))
        assert (work / "remote-notes.txt").read_bytes() == content
        wait_for(lambda: a.console.saw("--> Peer accepted the request."))

    def test_copy_to_peer_home(self, peers, tmp_path) -> None:
        """~/ in the destination lands in the receiver's home directory."""
        a, b = peers
        src = tmp_path / "photo.bin"
        src.write_bytes(os.urandom(10000))
        a.type(f"/copy {src} ~/inbox/photo.bin")
        wait_for(lambda: b.console.saw("Allow? (yes/no)"))
        b.type("Y")
        dest = os.path.join(b.config.home, "inbox", "photo.bin")
        wait_for(lambda: b.console.saw("complete"))
        with open(dest, "rb") as f:
            assert f.read() == src.read_bytes()

    def test_copy_denied(self, peers, tmp_path) -> None:
        a, b = peers
        src = tmp_path / "secret.txt"
        src.write_text("nope")
        a.type(f"/copy {src}")
        wait_for(lambda: b.console.saw("Incoming file request"))
        b.type("no")
        wait_for(lambda: a.console.saw("--> Peer denied the request."))
        assert b.console.saw("--> Denied request.")
        time.sleep(0.2)
        assert not b.console.saw("Receiving file")

    def test_missing_local_file(self, peers, tmp_path) -> None:
        a, b = peers
        a.type(f"/copy {tmp_path / 'missing.txt'}")
        wait_for(lambda: a.console.saw("not found"))
        time.sleep(0.2)
        assert not b.console.saw("Incoming file request")


class TestExec:
    """/exec negotiated between two operators."""

    def test_exec_denied(self, peers) -> None:
        """B asks, A says no: B sees the denial and never any output."""
        a, b = peers
        b.type("/exec echo hi")
        wait_for(lambda: a.console.saw("Incoming exec request: 'echo hi'"))
        a.type("no")
        wait_for(lambda: b.console.saw("--> Peer denied the request."))
        time.sleep(0.3)
        assert not b.console.saw("[Remote]")
        assert not b.console.saw("Remote command failed")

    def test_exec_accepted(self, peers) -> None:
        a, b = peers
        b.type("/exec printf 'a\\nb\\n'")
        wait_for(lambda: a.console.saw("Incoming exec request"))
        a.type("yes")
        wait_for(lambda: b.console.saw("[Remote]: b"))
        remote = [line for line in b.console.shown if line.startswith("[Remote]")]
        assert remote == ["[Remote]: a", "[Remote]: b"]
        assert b.console.saw("[Client Info]: Executing")

    def test_exec_failure(self, peers) -> None:
        a, b = peers
        b.type("/exec echo boom; exit 3")
        wait_for(lambda: a.console.saw("Incoming exec request"))
        a.type("y")
        wait_for(lambda: b.console.saw("Remote command failed"))
        assert b.console.saw("---\nboom\n---")

    def test_chat_flows_while_command_runs(self, peers) -> None:
        """The acceptor keeps receiving while it executes a command."""
        a, b = peers
        b.type("/exec sleep 2; echo done")
        wait_for(lambda: a.console.saw("Incoming exec request"))
        a.type("yes")
        wait_for(lambda: b.console.saw("[Client Info]: Executing"))
        b.type("are you there?")
        wait_for(lambda: a.console.saw("[Server]: are you there?"), timeout=1.5)
        wait_for(lambda: b.console.saw("[Remote]: done"))

    def test_multiline_command(self, tapped) -> None:
        """A command spanning lines runs whole and the session survives it."""
        peer, tap = tapped
        tap.send("REQ_EXEC:" + b64("echo one\necho two"))
        wait_for(lambda: peer.console.saw("Incoming exec request"))
        peer.type("yes")
        lines = tap.recv_until("CMD_OUT:two")
        assert lines == [
            "RESP_OK",
            "INFO:Executing 'echo one\\necho two'...",
            "CMD_OUT:one",
            "CMD_OUT:two",
        ]
        assert peer.session.state.alive
        peer.type("still talking")
        assert tap.recv_until("still talking") == ["still talking"]


class TestRequestDiscipline:
    """Pending-request rules, checked on the wire."""

    def test_second_request_is_auto_denied(self, tapped) -> None:
        peer, tap = tapped
        tap.send("REQ_EXEC:" + b64("ls"))
        wait_for(lambda: peer.console.saw("Incoming exec request: 'ls'"))
        tap.send("REQ_COPY:" + b64("a") + ":" + b64("b"))
        assert tap.recv_until("RESP_") == ["RESP_NO"]
        assert peer.session.state.incoming.params == {"command": "ls"}
        assert peer.console.saw("auto-denied")

        peer.type("no")
        assert tap.recv_until("RESP_") == ["RESP_NO"]
        wait_for(lambda: peer.session.state.incoming is None)

    def test_malformed_request_is_chat_and_denied(self, tapped) -> None:
        peer, tap = tapped
        tap.send("REQ_EXEC:%%%")
        assert tap.recv_until("RESP_") == ["RESP_NO"]
        assert peer.console.saw("[Peer]: REQ_EXEC:%%%")
        assert peer.session.state.incoming is None

    def test_no_file_before_accept(self, tapped, tmp_path) -> None:
        """The requester streams only after RESP_OK."""
        peer, tap = tapped
        src = tmp_path / "data.bin"
        src.write_bytes(b"payload")
        peer.type(f"/copy {src} out.bin")
        req = tap.recv_until("REQ_COPY")[-1]
        assert req == "REQ_COPY:" + b64(str(src)) + ":" + b64("out.bin")
        assert tap.drain(0.3) == []

        tap.send("RESP_OK")
        lines = tap.recv_until("FILE_END")
        assert lines == [
            "INFO:Sending file...",
            "FILE_BEGIN:" + b64("out.bin"),
            "FILE_DATA:" + b64(b"payload"),
            "FILE_END",
        ]

    def test_one_outgoing_request_at_a_time(self, tapped) -> None:
        peer, tap = tapped
        peer.type("/exec id")
        peer.type("/exec whoami")
        wait_for(lambda: peer.console.saw("still waiting"))
        lines = tap.drain(0.3)
        assert lines == ["REQ_EXEC:" + b64("id")]

        tap.send("RESP_NO")
        wait_for(lambda: peer.console.saw("--> Peer denied the request."))
        peer.type("/exec whoami")
        assert tap.recv_until("REQ_EXEC") == ["REQ_EXEC:" + b64("whoami")]

    def test_unrequested_file_is_ignored(self, tapped, tmp_path) -> None:
        peer, tap = tapped
        target = tmp_path / "planted.txt"
        tap.send("FILE_BEGIN:" + b64(str(target)))
        tap.send("FILE_DATA:" + b64(b"evil"))
        tap.send("FILE_END")
        wait_for(lambda: peer.console.saw("Ignored unrequested file transfer"))
        assert not target.exists()

    def test_unsolicited_live_offer_is_ignored(self, tapped) -> None:
        peer, tap = tapped
        tap.send("RESP_LIVE_OK:127.0.0.1:1")
        tap.send("after")
        wait_for(lambda: peer.console.saw("[Peer]: after"))
        assert not peer.console.saw("Starting interactive session")


class TestChatAndCommands:
    """Plain chat, local commands and the protocol-line guard."""

    def test_chat_both_ways(self, peers) -> None:
        a, b = peers
        a.type("hello: there")
        b.type("hi back")
        wait_for(lambda: b.console.saw("[Client]: hello: there"))
        wait_for(lambda: a.console.saw("[Server]: hi back"))

    def test_protocol_lookalike_not_sent(self, tapped) -> None:
        peer, tap = tapped
        peer.type("RESP_OK")
        wait_for(lambda: peer.console.saw("looks like a protocol line"))
        peer.type("fine")
        assert tap.recv_until("fine") == ["fine"]

    def test_help_and_unknown(self, tapped) -> None:
        peer, tap = tapped
        peer.type("/help")
        peer.type("/frobnicate now")
        wait_for(lambda: peer.console.saw("Unknown command: /frobnicate."))
        assert peer.console.saw("/copy <local_file> [remote_path]")
        assert tap.drain(0.2) == []

    def test_local_home_shortcut(self, tapped) -> None:
        peer, tap = tapped
        home = peer.config.home
        with open(os.path.join(home, "f.txt"), "w") as f:
            f.write("x")
        peer.type("/copy $/f.txt")
        req = tap.recv_until("REQ_COPY")[-1]
        assert req == "REQ_COPY:" + b64(os.path.join(home, "f.txt")) + ":" + b64("f.txt")

    def test_shortcut_left_alone_in_chat(self, tapped) -> None:
        peer, tap = tapped
        peer.type("prices went up $/month")
        assert tap.recv_until("prices") == ["prices went up $/month"]


class TestTeardown:
    """Disconnects and exit."""

    def test_peer_disconnect_mid_transfer(self, tapped, tmp_path) -> None:
        peer, tap = tapped
        dest = tmp_path / "incoming.bin"
        tap.send("REQ_COPY:" + b64("src.bin") + ":" + b64(str(dest)))
        wait_for(lambda: peer.console.saw("Allow? (yes/no)"))
        peer.type("yes")
        assert tap.recv_until("RESP_") == ["RESP_OK"]
        tap.send("FILE_BEGIN:" + b64(str(dest)))
        tap.send("FILE_DATA:" + b64(b"first half"))
        wait_for(lambda: dest.exists() and peer.session.receiver.active)
        tap.sock.close()

        peer.thread.join(timeout=3)
        assert not peer.thread.is_alive()
        assert peer.console.saw("--> Peer disconnected.")
        assert not peer.session.receiver.active
        assert not peer.session.state.alive

    def test_exit_ends_both_sides(self, peers) -> None:
        a, b = peers
        a.type("exit")
        a.thread.join(timeout=3)
        b.thread.join(timeout=3)
        assert not a.thread.is_alive()
        assert not b.thread.is_alive()
        assert b.console.saw("--> Client disconnected.")
        assert not a.console.saw("disconnected")
