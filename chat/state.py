import os
import threading
from dataclasses import dataclass, field
from typing import Optional

from common.messages import Direction, PendingRequest

LOCAL_HOME_MARK = "$/"   # operator shortcut: my home directory
PEER_HOME_MARK = "~"     # in paths from the peer: this machine's home directory


def expand_local(text: str, home: str) -> str:
    ''' Replace every "$/" in operator input with the local home directory '''
    return text.replace(LOCAL_HOME_MARK, home.rstrip("/") + "/")

def expand_peer_path(path: str, home: str) -> str:
    '''
    Expand a leading "~" in a destination path received from the peer.
    The file is about to land here, so "~" means this machine's home.
    '''
    if path == PEER_HOME_MARK:
        return home
    if path.startswith(PEER_HOME_MARK + "/"):
        return os.path.join(home, path[2:])
    return path


@dataclass
class Session:
    '''
    One live conversation with the peer.
    Holds the per-direction pending request slots; every transition on them
    happens under one lock so a request is never silently overwritten.
    '''
    peer_name: str
    home: str
    local_address: str = ""
    peer_address: str = ""
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False)
    stopped: threading.Event = field(default_factory=threading.Event, repr=False)
    incoming: Optional[PendingRequest] = None
    outgoing: Optional[PendingRequest] = None
    approved_copy: Optional[str] = None   # local destination the operator agreed to receive
    awaiting_live: Optional[str] = None   # command of our own accepted /live request

    @property
    def alive(self) -> bool:
        return not self.stopped.is_set()

    def stop(self):
        self.stopped.set()

    # --- incoming: the peer asks, the operator answers ---

    def offer_incoming(self, req: PendingRequest) -> bool:
        ''' Store an incoming request; False if one is already waiting for an answer '''
        if req.direction is not Direction.INCOMING:
            raise ValueError(f"not an incoming request: {req.direction}")
        with self.lock:
            if self.incoming is not None:
                return False
            self.incoming = req
            return True

    def take_incoming(self) -> Optional[PendingRequest]:
        ''' Remove and return the incoming request, if any '''
        with self.lock:
            req, self.incoming = self.incoming, None
            return req

    # --- outgoing: the operator asks, the peer answers ---

    def open_outgoing(self, req: PendingRequest) -> bool:
        '''
        Record our own request; False while a previous one is unanswered.
        A live offer still awaited from an earlier request is dropped.
        '''
        if req.direction is not Direction.OUTGOING:
            raise ValueError(f"not an outgoing request: {req.direction}")
        with self.lock:
            if self.outgoing is not None:
                return False
            self.outgoing = req
            self.awaiting_live = None
            return True

    def resolve_outgoing(self) -> Optional[PendingRequest]:
        ''' Remove and return our own request once the peer has answered '''
        with self.lock:
            req, self.outgoing = self.outgoing, None
            return req

    # --- follow-up bookkeeping ---

    def approve_copy(self, destination: str):
        with self.lock:
            self.approved_copy = destination

    def claim_copy(self, destination: str) -> bool:
        ''' True (once) if `destination` is the file the operator agreed to receive '''
        with self.lock:
            if self.approved_copy is None or self.approved_copy != destination:
                return False
            self.approved_copy = None
            return True

    def expect_live(self, command: str):
        with self.lock:
            self.awaiting_live = command

    def claim_live(self) -> Optional[str]:
        with self.lock:
            command, self.awaiting_live = self.awaiting_live, None
            return command
