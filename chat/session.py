"""
One chat session with the peer.

Two loops share the connection: the receiver loop (a daemon thread) reads and
dispatches peer lines, the sender loop (the caller's thread) reads operator
input. Everything written to the peer goes through one Outbound queue.
"""
import os
import re
import shlex
import threading
from typing import Optional

from chat.console import Console
from chat.executor import result_messages, run_command
from chat.live import LiveHost, format_address, parse_address, run_client
from chat.net import Connection, Outbound
from chat.state import Session, expand_local, expand_peer_path
from chat.transfer import FileReceiver, send_file
from common.config import ChatConfig
from common.errors import ProtocolError, TransferError
from common.logs import get_logger
from common.messages import (REQUEST_TAGS, Direction, LiveSessionOffer, Message,
                             PendingRequest, RequestKind, Tag)
from common.protocol import b64, b64text, decode, split_fields

log = get_logger("session")

AFFIRMATIVE = re.compile(r"y(es)?", re.IGNORECASE)

HELP = """\
In-chat commands:
  /copy <local_file> [remote_path]   Request to send a file.
  /exec <command...>                 Request to execute a command on the peer.
  /live <command...>                 Request a fully interactive TTY session (e.g., for nano, vim, ssh).
  /help                              Show this list of commands.
  exit                               Close the chat session.

Path Shortcuts:
  $/   Expands to YOUR home directory (e.g., /copy $/file.txt)
  ~/   Expands to the PEER's home directory (e.g., /exec ls ~/)"""


def one_line(text: str) -> str:
    ''' Escape line breaks so peer-supplied text fits in a single protocol line '''
    return text.replace("\r", "\\r").replace("\n", "\\n")


class ChatSession:
    ''' Drives one Session over one Connection '''

    def __init__(self, conn: Connection, console: Console, config: ChatConfig, peer_name: str = "Peer"):
        self.conn = conn
        self.console = console
        self.config = config
        self.state = Session(peer_name=peer_name, home=config.home,
                             local_address=conn.local_address, peer_address=conn.peer_address)
        self.outbound = Outbound(conn, on_error=lambda e: self.state.stop())
        self.receiver = FileReceiver()
        self.live_host: Optional[LiveHost] = None
        self.recv_thread: Optional[threading.Thread] = None
        self.copy_thread: Optional[threading.Thread] = None
        self._closed = False

    @property
    def peer(self) -> str:
        return self.state.peer_name

    def send(self, tag: Tag, *fields: str):
        self.outbound.send(tag, *fields)

    def start(self):
        ''' Start the writer and the receiver loop '''
        self.outbound.start()
        self.recv_thread = threading.Thread(target=self._recv_loop, name="chattr-receiver", daemon=True)
        self.recv_thread.start()

    def run(self):
        ''' Run the whole session in the calling thread until either side ends it '''
        self.start()
        try:
            self.sender_loop()
        finally:
            self.close()

    def close(self):
        ''' Tear the session down; safe to call more than once, from either loop '''
        self.state.stop()
        if self._closed:
            return
        self._closed = True
        if self.live_host is not None:
            self.live_host.close()
        self.outbound.close()
        self.conn.close()
        self.receiver.abort()
        for t in (self.recv_thread, self.copy_thread):
            if t is not None and t is not threading.current_thread():
                t.join(timeout=2.0)

    # ------------------------------------------------------------------
    # receiver loop
    # ------------------------------------------------------------------

    def _recv_loop(self):
        try:
            while self.state.alive:
                line = self.conn.read_line()
                if line is None:
                    break
                self.dispatch(decode(line))
        except OSError as e:
            if self.state.alive:
                log.info("transport error: %s", e)
        finally:
            if self.state.alive:
                self.console.show(f"--> {self.peer} disconnected.")
            self.state.stop()
            self.receiver.abort()

    def dispatch(self, msg: Message):
        ''' Handle one decoded line from the peer '''
        if msg.tag in REQUEST_TAGS:
            self._on_request(msg)
        elif msg.tag is Tag.RESP_OK:
            self._on_accepted()
        elif msg.tag is Tag.RESP_NO:
            self.state.resolve_outgoing()
            self.console.show("--> Peer denied the request.")
        elif msg.tag is Tag.RESP_LIVE_OK:
            self._on_live_ok(msg.payload)
        elif msg.tag is Tag.FILE_BEGIN:
            self._on_file_begin(msg.payload)
        elif msg.tag is Tag.FILE_DATA:
            self._on_file_data(msg.payload)
        elif msg.tag is Tag.FILE_END:
            self._on_file_end()
        elif msg.tag is Tag.CMD_OUT:
            self.console.show(f"[Remote]: {msg.payload}")
        elif msg.tag is Tag.CMD_ERR:
            self._on_cmd_err(msg.payload)
        elif msg.tag is Tag.INFO:
            self.console.show(f"[{self.peer} Info]: {msg.payload}")
        else:
            self.console.show(f"[{self.peer}]: {msg.payload}")

    def _on_request(self, msg: Message):
        kind = REQUEST_TAGS[msg.tag]
        try:
            req = self._parse_request(kind, msg.payload)
        except (ProtocolError, ValueError) as e:
            log.warning("malformed %s: %s", msg.tag.value, e)
            self.console.show(f"[{self.peer}]: {msg.tag.value}:{msg.payload}")
            self.send(Tag.RESP_NO)
            return

        if not self.state.offer_incoming(req):
            # The first request keeps waiting for the operator's answer
            log.warning("second %s while a request is pending; denied", msg.tag.value)
            self.send(Tag.RESP_NO)
            self.console.show(f"--> Ignored another {kind.value} request from {self.peer}: "
                              "one is already waiting for your answer (auto-denied).")
            return

        p = req.params
        if kind is RequestKind.COPY:
            self.console.show(f"--> Incoming file request: '{p['source']}' to '{p['destination']}'. Allow? (yes/no)")
        elif kind is RequestKind.EXEC:
            self.console.show(f"--> Incoming exec request: '{p['command']}'. Allow? (yes/no)")
        else:
            self.console.show(f"--> Incoming interactive session request for: '{p['command']}'. Allow? (yes/no)")

    def _parse_request(self, kind: RequestKind, payload: str) -> PendingRequest:
        if kind is RequestKind.COPY:
            src_b64, dest_b64 = split_fields(payload, 2)
            params = {"source": b64text(src_b64),
                      "destination": expand_peer_path(b64text(dest_b64), self.state.home)}
        elif kind is RequestKind.EXEC:
            params = {"command": b64text(payload)}
        else:
            cmd_b64, address = split_fields(payload, 2)
            params = {"command": b64text(cmd_b64), "address": address}
        return PendingRequest(kind, Direction.INCOMING, params)

    def _on_accepted(self):
        req = self.state.resolve_outgoing()
        self.console.show("--> Peer accepted the request.")
        if req is None:
            log.warning("RESP_OK without an outstanding request")
        elif req.kind is RequestKind.COPY:
            self.copy_thread = threading.Thread(target=self._stream_file, args=(req,),
                                                name="chattr-copy", daemon=True)
            self.copy_thread.start()
        elif req.kind is RequestKind.LIVE:
            self.state.expect_live(req.params["command"])

    def _stream_file(self, req: PendingRequest):
        ''' Copy helper: runs only after the peer's RESP_OK '''
        source, destination = req.params["source"], req.params["destination"]
        self.send(Tag.INFO, "Sending file...")
        try:
            sent = send_file(self.send, source, destination,
                             chunk_size=self.config.chunk_size, stop=self.state.stopped)
        except OSError as e:
            self.console.show(f"Error: could not read '{source}': {e.strerror or e}")
            return
        if self.state.alive:
            self.console.show(f"--> Sent '{source}' ({sent} bytes).")

    def _on_live_ok(self, payload: str):
        command = self.state.claim_live()
        if command is None:
            log.warning("unsolicited RESP_LIVE_OK:%s ignored", payload)
            return
        try:
            host, port = parse_address(payload, self.config.live_port)
        except ValueError:
            self.console.show(f"Error: peer sent a bad live address '{payload}'.")
            return
        offer = LiveSessionOffer(command=command, address=payload)
        self.console.show("--> Peer accepted. Starting interactive session... (Exit command to return)")
        try:
            with self.console.handoff() as (in_fd, out_fd):
                run_client(host, port, in_fd, out_fd)
        except OSError as e:
            self.console.show(f"Error: live session to {offer.address} failed: {e.strerror or e}")
            return
        self.console.show("--> Interactive session ended. You are back in chat.")

    def _on_file_begin(self, payload: str):
        try:
            destination = expand_peer_path(b64text(payload), self.state.home)
        except ProtocolError as e:
            log.warning("bad FILE_BEGIN: %s", e)
            return
        if not self.state.claim_copy(destination):
            log.warning("FILE_BEGIN for unapproved destination %r ignored", destination)
            self.console.show(f"--> Ignored unrequested file transfer to '{destination}'.")
            return
        try:
            self.receiver.begin(destination)
        except TransferError as e:
            self.console.show(f"Error: file transfer aborted: {e}")
            return
        self.console.show(f"--> Receiving file to '{destination}'...")

    def _on_file_data(self, payload: str):
        try:
            if not self.receiver.write(payload):
                log.debug("FILE_DATA outside a transfer discarded")
        except TransferError as e:
            self.console.show(f"Error: file transfer aborted: {e}")

    def _on_file_end(self):
        failed = self.receiver.failed_path
        try:
            ft = self.receiver.end()
        except TransferError as e:
            self.console.show(f"Error: file transfer aborted: {e}")
            return
        if ft is not None:
            self.console.show(f"--> File transfer to '{ft.destination}' complete ({ft.received} bytes).")
        elif failed:
            self.console.show(f"--> File transfer to '{failed}' ended incomplete.")

    def _on_cmd_err(self, payload: str):
        try:
            output = b64text(payload)
        except ProtocolError:
            output = payload
        self.console.show(f"--> Remote command failed:\n---\n{output}\n---")

    # ------------------------------------------------------------------
    # sender loop
    # ------------------------------------------------------------------

    def sender_loop(self):
        ''' Read operator lines until exit, end of input or disconnect '''
        while self.state.alive:
            msg = self.console.read_line(self.state.stopped)
            if msg is None:
                break
            req = self.state.take_incoming()
            if req is not None:
                self.answer(req, msg)
                continue
            if msg.startswith("/"):
                self.command(expand_local(msg, self.state.home))
            elif msg.strip() == "exit":
                break
            elif msg:
                self.chat(msg)

    def chat(self, text: str):
        if not decode(text).is_chat:
            self.console.show("Error: that message looks like a protocol line; not sent.")
            return
        self.outbound.send_line(text)

    def answer(self, req: PendingRequest, reply: str):
        ''' The operator's yes/no for an incoming request '''
        if not AFFIRMATIVE.fullmatch(reply.strip()):
            self.send(Tag.RESP_NO)
            self.console.show("--> Denied request.")
            return

        if req.kind is RequestKind.COPY:
            # Recorded before RESP_OK goes out, so FILE_BEGIN always finds it
            self.state.approve_copy(req.params["destination"])
            self.send(Tag.RESP_OK)
            self.console.show(f"--> Accepted. Waiting for '{req.params['destination']}'...")
        elif req.kind is RequestKind.EXEC:
            self.send(Tag.RESP_OK)
            self._execute(req.params["command"])
        else:
            self.send(Tag.RESP_OK)
            self._host_live(req)

    def _execute(self, command: str):
        self.send(Tag.INFO, f"Executing '{one_line(command)}'...")
        self.console.show(f"--> Executing '{command}' for {self.peer}...")
        result = run_command(command, shell=self.config.shell)
        for line in result_messages(result):
            self.outbound.send_line(line)
        self.console.show(f"--> Command finished with exit status {result.exit_code}.")

    def _host_live(self, req: PendingRequest):
        command = req.params["command"]
        # Only the host already on the other end of this transport may attach
        host = LiveHost(command, shell=self.config.shell, bind=self.config.live_bind,
                        port=self.config.live_port, allowed_peer=self.state.peer_address or None,
                        accept_timeout=self.config.live_timeout)
        if req.params.get("address") != self.state.peer_address:
            log.debug("REQ_LIVE address %r differs from transport peer %r",
                      req.params.get("address"), self.state.peer_address)
        try:
            port = host.listen()
        except OSError as e:
            self.console.show(f"Error: cannot start live session: {e.strerror or e}")
            self.send(Tag.INFO, f"Live session failed: {e.strerror or e}")
            return
        self.live_host = host
        advertised = self.state.local_address or "127.0.0.1"
        self.send(Tag.RESP_LIVE_OK, format_address(advertised, port, self.config.live_port))
        self.console.show("--> Accepted. Starting interactive session for peer...")
        try:
            status = host.serve(self.state.stopped)
        except OSError as e:
            self.console.show(f"Error: live session failed: {e.strerror or e}")
            self.send(Tag.INFO, f"Live session failed: {e.strerror or e}")
            return
        finally:
            host.close()
            self.live_host = None
        if status is not None:
            self.console.show(f"--> Peer's interactive session ended (exit status {status}).")

    def command(self, line: str):
        ''' Handle one slash command typed by the operator '''
        name, _, rest = line.partition(" ")
        rest = rest.strip()
        if name == "/copy":
            self._request_copy(rest)
        elif name == "/exec":
            if not rest:
                self.console.show("Usage: /exec <command...>")
                return
            if self._request(RequestKind.EXEC, {"command": rest}, Tag.REQ_EXEC, b64(rest)):
                self.console.show("--> Requesting to execute on peer. Waiting...")
        elif name == "/live":
            if not rest:
                self.console.show("Usage: /live <command...>")
                return
            address = self.state.local_address
            if not address:
                self.console.show("Error: Could not determine local IP.")
                return
            if self._request(RequestKind.LIVE, {"command": rest, "address": address},
                             Tag.REQ_LIVE, b64(rest), address):
                self.console.show("--> Requesting interactive session. Waiting...")
        elif name == "/help":
            self.console.show(HELP)
        else:
            self.console.show(f"Unknown command: {name}.")

    def _request_copy(self, args: str):
        try:
            parts = shlex.split(args)
        except ValueError as e:
            self.console.show(f"Error: {e}")
            return
        if not parts or len(parts) > 2:
            self.console.show("Usage: /copy <local_file> [remote_path]")
            return
        local_file = parts[0]
        remote_file = parts[1] if len(parts) > 1 else os.path.basename(local_file)
        if not os.path.isfile(local_file):
            self.console.show(f"Error: File '{local_file}' not found.")
            return
        if self._request(RequestKind.COPY, {"source": local_file, "destination": remote_file},
                         Tag.REQ_COPY, b64(local_file), b64(remote_file)):
            self.console.show(f"--> Requesting to send '{local_file}'. Waiting...")

    def _request(self, kind: RequestKind, params: dict, tag: Tag, *fields: str) -> bool:
        ''' Open an outgoing request and send it; refused while one is unanswered '''
        req = PendingRequest(kind, Direction.OUTGOING, params)
        if not self.state.open_outgoing(req):
            self.console.show("Error: still waiting for the peer to answer your previous request.")
            return False
        self.send(tag, *fields)
        return True
