from dataclasses import dataclass, field
from enum import Enum
from typing import Any, BinaryIO, Dict, Optional


class Tag(str, Enum):
    ''' The closed set of protocol tags; anything else on the wire is chat '''
    REQ_COPY = "REQ_COPY"            # <srcB64>:<destB64>
    REQ_EXEC = "REQ_EXEC"            # <cmdB64>
    REQ_LIVE = "REQ_LIVE"            # <cmdB64>:<addr>
    RESP_OK = "RESP_OK"
    RESP_NO = "RESP_NO"
    RESP_LIVE_OK = "RESP_LIVE_OK"    # <addr>
    FILE_BEGIN = "FILE_BEGIN"        # <destB64>
    FILE_DATA = "FILE_DATA"          # <chunkB64>
    FILE_END = "FILE_END"
    CMD_OUT = "CMD_OUT"              # <line>, plain text
    CMD_ERR = "CMD_ERR"              # <outputB64>
    INFO = "INFO"                    # <text>


class RequestKind(str, Enum):
    COPY = "copy"
    EXEC = "exec"
    LIVE = "live"


class Direction(str, Enum):
    INCOMING = "incoming"   # the peer asked, we answer
    OUTGOING = "outgoing"   # we asked, the peer answers


REQUEST_TAGS = {
    Tag.REQ_COPY: RequestKind.COPY,
    Tag.REQ_EXEC: RequestKind.EXEC,
    Tag.REQ_LIVE: RequestKind.LIVE,
}


@dataclass(frozen=True)
class Message:
    tag: Optional[Tag]   # None for plain chat
    payload: str

    @property
    def is_chat(self) -> bool:
        return self.tag is None


@dataclass
class PendingRequest:
    kind: RequestKind
    direction: Direction
    params: Dict[str, Any] = field(default_factory=dict)   # source/destination, command, address


@dataclass
class FileTransfer:
    destination: str
    sink: BinaryIO
    received: int = 0   # bytes written so far


@dataclass
class LiveSessionOffer:
    command: str
    address: str   # where the requester may be reached / where the acceptor listens
