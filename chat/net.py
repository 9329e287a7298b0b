import queue
import socket
import threading
from typing import Optional

from common.logs import get_logger
from common.messages import Tag
from common.protocol import ENC, LineReader, encode

log = get_logger("net")

_STOP = object()   # queue sentinel: drain and exit


def _host_of(addr) -> str:
    # AF_INET/AF_INET6 give a tuple, AF_UNIX a path (or '')
    if isinstance(addr, tuple) and addr:
        return str(addr[0])
    return ""


class Connection:
    ''' One open transport stream to the peer (plain or TLS socket) '''

    def __init__(self, sock: socket.socket):
        self.sock = sock
        self.reader = LineReader(sock)
        self.closed = False
        try:
            self.local_address = _host_of(sock.getsockname())
            self.peer_address = _host_of(sock.getpeername())
        except OSError:
            self.local_address = self.peer_address = ""

    def read_line(self) -> Optional[str]:
        ''' Next line from the peer, or None once the stream has ended '''
        return self.reader.read_line()

    def write_line(self, line: str) -> None:
        self.sock.sendall(line.encode(ENC) + b"\n")

    def close(self):
        if self.closed:
            return
        self.closed = True
        try:
            self.sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass   # already gone
        try:
            self.sock.close()
        except OSError:
            pass


class Outbound:
    '''
    Single writer for the outbound stream.
    Every producer (sender loop, file helper, receiver loop) puts complete lines
    on one queue; one thread writes them in order, so lines from different
    producers are never interleaved mid-line.
    '''

    def __init__(self, conn: Connection, on_error=None):
        self.conn = conn
        self.on_error = on_error   # called once if the transport write fails
        self._queue: "queue.Queue" = queue.Queue()
        self._thread: Optional[threading.Thread] = None
        self.running = False
        self._closed = False

    def start(self):
        self.running = True
        self._thread = threading.Thread(target=self._write_loop, name="chattr-outbound", daemon=True)
        self._thread.start()

    def send(self, tag: Tag, *fields: str) -> None:
        ''' Queue one protocol message '''
        self.send_line(encode(tag, *fields))

    def send_line(self, line: str) -> None:
        ''' Queue one raw line (chat text or an already encoded message) '''
        if "\n" in line:
            raise ValueError("protocol lines cannot contain newlines")
        if self.running:
            self._queue.put(line)

    def flush(self, timeout: Optional[float] = None) -> bool:
        ''' Wait until everything queued so far has been written '''
        if self._closed or not self._thread or not self._thread.is_alive():
            return False
        done = threading.Event()
        self._queue.put(done)
        return done.wait(timeout)

    def close(self, timeout: float = 2.0):
        ''' Write what is already queued, then stop the writer thread '''
        if self._closed:
            return
        self._closed = True
        self.running = False
        self._queue.put(_STOP)
        if self._thread and self._thread is not threading.current_thread():
            self._thread.join(timeout)

    def _write_loop(self):
        failed = False
        while True:
            item = self._queue.get()
            if item is _STOP:
                break
            if isinstance(item, threading.Event):
                item.set()
                continue
            if failed:
                continue   # transport is gone; keep draining so flush() returns
            try:
                self.conn.write_line(item)
            except OSError as e:
                log.info("outbound write failed: %s", e)
                failed = True
                self.running = False
                if self.on_error:
                    self.on_error(e)
