"""
Chunked file transfer over the chat stream.

The sending side reads the source as raw bytes and emits FILE_BEGIN, one
FILE_DATA line per chunk (Base64), then FILE_END. The receiving side appends
every decoded chunk to the destination in arrival order.
"""
import os
import threading
from typing import Callable, Optional

from common.config import CHUNK
from common.errors import ProtocolError, TransferError
from common.logs import get_logger
from common.messages import FileTransfer, Tag
from common.protocol import b64, b64d

log = get_logger("transfer")


def send_file(send: Callable[..., None], path: str, destination: str,
              chunk_size: int = CHUNK, stop: Optional[threading.Event] = None) -> int:
    '''
    This function streams one file to the peer.
        Input:
            - send: callable(tag, *fields) that queues one message
            - path: local source file
            - destination: path on the peer, as the operator typed it
            - chunk_size: raw bytes per FILE_DATA line
            - stop: event that aborts the transfer between chunks
        Output: number of bytes sent
    FILE_END is always sent once FILE_BEGIN went out, so the peer never stays
    in the middle of a transfer. Errors reading the source are re-raised.
    '''
    sent = 0
    with open(path, "rb") as f:
        send(Tag.FILE_BEGIN, b64(destination))
        try:
            while True:
                if stop is not None and stop.is_set():
                    log.info("transfer of %s stopped after %d bytes", path, sent)
                    break
                chunk = f.read(chunk_size)
                if not chunk:
                    break
                send(Tag.FILE_DATA, b64(chunk))
                sent += len(chunk)
        finally:
            send(Tag.FILE_END)
    return sent


class FileReceiver:
    '''
    Receiving side: at most one inbound transfer at a time.
    The receiver loop drives it while teardown may abort it from another
    thread, so every step runs under one lock.
    '''

    def __init__(self):
        self.current: Optional[FileTransfer] = None
        self.failed_path: Optional[str] = None   # set after an aborted transfer until FILE_END
        self.lock = threading.RLock()

    @property
    def active(self) -> bool:
        return self.current is not None

    def begin(self, destination: str) -> None:
        '''
        Open (and truncate) the destination, creating parent directories.
        Raises TransferError if it cannot be written.
        '''
        with self.lock:
            if self.current is not None:
                log.warning("FILE_BEGIN while receiving %s; closing it", self.current.destination)
                self.end()
            self.failed_path = None
            try:
                parent = os.path.dirname(destination)
                if parent:
                    os.makedirs(parent, exist_ok=True)
                sink = open(destination, "wb")
            except OSError as e:
                self.failed_path = destination
                raise TransferError(f"cannot write '{destination}': {e.strerror or e}") from e
            self.current = FileTransfer(destination=destination, sink=sink)

    def write(self, chunk_b64: str) -> bool:
        '''
        Decode and append one FILE_DATA chunk.
        Returns False when no transfer is active (the chunk is discarded).
        On a write error the transfer is aborted and TransferError is raised;
        what was already written stays on disk.
        '''
        with self.lock:
            ft = self.current
            if ft is None:
                return False
            try:
                data = b64d(chunk_b64)
            except ProtocolError as e:
                self.abort()
                raise TransferError(f"corrupt chunk for '{ft.destination}': {e}") from e
            try:
                ft.sink.write(data)
            except (OSError, ValueError) as e:
                # ValueError: the sink is already closed
                self.abort()
                reason = getattr(e, "strerror", None) or e
                raise TransferError(f"write to '{ft.destination}' failed: {reason}") from e
            ft.received += len(data)
            return True

    def end(self) -> Optional[FileTransfer]:
        ''' Close the destination; returns the finished transfer or None '''
        with self.lock:
            ft, self.current = self.current, None
            self.failed_path = None
            if ft is None:
                return None
            try:
                ft.sink.close()
            except OSError as e:
                raise TransferError(f"closing '{ft.destination}' failed: {e.strerror or e}") from e
            return ft

    def abort(self):
        ''' Drop the current transfer, keeping the partial file '''
        with self.lock:
            ft, self.current = self.current, None
            if ft is None:
                return
            self.failed_path = ft.destination
            try:
                ft.sink.close()
            except OSError:
                pass
