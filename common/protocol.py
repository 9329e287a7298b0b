import base64
import binascii
from typing import List, Optional, Union

from common.errors import ProtocolError
from common.messages import Message, Tag

ENC = "utf-8"   # encoding for protocol lines
DELIM = b"\n"    # one message per line
SEP = ":"        # separator between tag and fields

TAGS = {t.value: t for t in Tag}


def b64(data: Union[bytes, str]) -> str:
    ''' This function encodes bytes (or text, as UTF-8) to a Base64 string '''
    if isinstance(data, str):
        data = data.encode(ENC)
    return base64.b64encode(data).decode("ascii")

def b64d(s: str) -> bytes:
    ''' This function decodes a Base64 string to bytes, raising ProtocolError on garbage '''
    try:
        return base64.b64decode(s.encode("ascii"), validate=True)
    except (binascii.Error, UnicodeEncodeError) as e:
        raise ProtocolError(f"invalid base64 field: {e}") from e

def b64text(s: str) -> str:
    ''' Decode a Base64 field that carries text (paths, commands) '''
    return b64d(s).decode(ENC, errors="replace")


def encode(tag: Tag, *fields: str) -> str:
    '''
    The function builds one protocol line (without the trailing newline).
    Fields are joined verbatim, so anything that may contain a colon, a newline
    or arbitrary bytes must already be Base64-encoded by the caller.
        Input:
            - tag: message tag
            - fields: payload fields
        Output: "TAG" or "TAG:field1:field2..."
    '''
    return SEP.join([tag.value, *fields])

def decode(line: str) -> Message:
    '''
    The function decodes one protocol line into a Message.
    Only the first colon separates the tag from the payload; the payload may
    contain further colons. A line whose prefix is not a known tag is plain
    chat, and keeps the whole untouched line as its payload.
        Input:
            - line: one line without its trailing newline
        Output: Message(tag, payload), tag is None for chat
    '''
    prefix, sep, rest = line.partition(SEP)
    tag = TAGS.get(prefix)
    if tag is None:
        return Message(None, line)
    return Message(tag, rest if sep else "")

def split_fields(payload: str, count: int) -> List[str]:
    '''
    Split a payload left to right into exactly `count` fields.
    The last field keeps any remaining colons. Raises ProtocolError when there
    are fewer fields than expected.
    '''
    parts = payload.split(SEP, count - 1)
    if len(parts) != count:
        raise ProtocolError(f"expected {count} fields, got {len(parts)}")
    return parts


class LineReader:
    ''' Reads newline-delimited protocol lines from a socket-like object '''

    def __init__(self, sock, bufsize: int = 65536):
        self.sock = sock
        self.bufsize = bufsize
        self._buf = bytearray()   # residual bytes after the last complete line
        self._eof = False

    def read_line(self) -> Optional[str]:
        '''
        The function returns the next line, decoded as text, or None once the
        peer has closed the stream. Several lines arriving in one recv() are
        handed out one per call.
        '''
        while True:
            nl = self._buf.find(DELIM)
            if nl != -1:  # one full line has arrived
                line_bytes = bytes(self._buf[:nl])
                del self._buf[:nl + 1]
                return line_bytes.rstrip(b"\r").decode(ENC, errors="replace")
            if self._eof:
                return None

            chunk = self.sock.recv(self.bufsize)
            if not chunk:
                # Stream closed; a trailing partial line is dropped
                self._eof = True
                self._buf.clear()
                return None
            self._buf.extend(chunk)
