import os
import select
import sys
import termios
import threading
import tty
from contextlib import contextmanager
from typing import Iterator, Optional, Tuple

PROMPT = "You: "
CLEAR_LINE = "\r\033[K"
POLL = 0.2   # seconds; how quickly a stopped session releases the input loop


class Console:
    '''
    Operator terminal: shows peer traffic above a "You: " prompt and reads
    operator lines.
    Input is read straight from the file descriptor so that the read can give
    up when the session stops, and so that a live session can take the
    terminal over without a pending input() swallowing its keystrokes.
    '''

    def __init__(self, stdin=None, stdout=None, prompt: str = PROMPT):
        stdin = stdin or sys.stdin
        self.out = stdout or sys.stdout
        self.in_fd = stdin.fileno()
        self.out_fd = self.out.fileno()
        self.prompt = prompt
        self.tty = os.isatty(self.in_fd) and os.isatty(self.out_fd)
        self._buf = bytearray()
        self._lock = threading.Lock()          # one writer on the terminal at a time
        self._resumed = threading.Event()       # cleared while a live session owns the terminal
        self._resumed.set()

    def show(self, text: str) -> None:
        ''' Print one line of transcript, then redraw the prompt '''
        with self._lock:
            if self.tty:
                self.out.write(CLEAR_LINE)
            self.out.write(text + "\n")
            if self.tty and self._resumed.is_set():
                self.out.write(self.prompt)
            self.out.flush()

    def read_line(self, stop: threading.Event) -> Optional[str]:
        '''
        The function returns the next operator line without its newline, or
        None on end of input or once `stop` is set.
        '''
        with self._lock:
            self.out.write(self.prompt)
            self.out.flush()
        while not stop.is_set():
            nl = self._buf.find(b"\n")
            if nl != -1:
                line = bytes(self._buf[:nl])
                del self._buf[:nl + 1]
                return line.rstrip(b"\r").decode("utf-8", errors="replace")
            if not self._resumed.is_set():
                self._resumed.wait(POLL)
                continue
            ready, _, _ = select.select([self.in_fd], [], [], POLL)
            if not ready or not self._resumed.is_set():
                continue
            data = os.read(self.in_fd, 4096)
            if not data:
                return None
            self._buf.extend(data)
        return None

    @contextmanager
    def handoff(self) -> Iterator[Tuple[int, int]]:
        '''
        Lend the terminal to a live session: input reading pauses and, on a
        real tty, the terminal goes to raw mode. Yields (in_fd, out_fd).
        '''
        self._resumed.clear()
        saved = None
        if self.tty:
            saved = termios.tcgetattr(self.in_fd)
            tty.setraw(self.in_fd)
        try:
            yield self.in_fd, self.out_fd
        finally:
            if saved is not None:
                termios.tcsetattr(self.in_fd, termios.TCSADRAIN, saved)
            self._resumed.set()
