"""
Wire codec for the chat protocol.

One envelope is one JSON object on one line, terminated by a line feed.
"""

import json
import time
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Optional, Union

ENCODING = "utf-8"
SERVER_NAME = "server"


class MessageType(str, Enum):
    JOIN = "join"
    LEAVE = "leave"
    MSG = "msg"
    PM = "pm"
    TYPING = "typing"
    STOPTYPING = "stoptyping"
    SYS = "sys"
    USERLIST = "userlist"


class DecodeError(ValueError):
    """Raised when a line cannot be turned into an envelope."""


@dataclass(frozen=True)
class Envelope:
    """
    A single protocol message.

    `type` stays a plain string so that types this server does not know
    about survive decoding; compare it against MessageType members.
    """
    type: str
    sender: Optional[str] = None
    to: Optional[str] = None
    text: Optional[str] = None
    ts: int = 0

    def to_dict(self) -> dict:
        kind = self.type.value if isinstance(self.type, MessageType) else self.type
        return {
            "type": kind,
            "from": self.sender,
            "to": self.to,
            "text": self.text,
            "ts": self.ts,
        }


def now_ts() -> int:
    """Current Unix time in whole seconds."""
    return int(time.time())


def encode(envelope: Envelope) -> bytes:
    """Serialize an envelope to one newline-terminated record."""
    line = json.dumps(envelope.to_dict(), separators=(",", ":"), ensure_ascii=False)
    return line.encode(ENCODING) + b"\n"


def _optional_str(fields: dict, key: str) -> Optional[str]:
    value = fields.get(key)
    if value is not None and not isinstance(value, str):
        raise DecodeError(f"'{key}' must be a string, got {type(value).__name__}")
    return value


def decode(line: Union[bytes, str]) -> Optional[Envelope]:
    """
    Parse one record.

    Returns None for a blank line, which callers skip. Raises DecodeError
    for anything that is not a JSON object carrying a string `type`.
    Keys are matched case-insensitively and unknown keys are ignored.
    """
    if isinstance(line, bytes):
        try:
            line = line.decode(ENCODING)
        except UnicodeDecodeError as e:
            raise DecodeError(f"invalid {ENCODING}: {e}") from e
    if not line.strip():
        return None

    try:
        obj = json.loads(line)
    except json.JSONDecodeError as e:
        raise DecodeError(f"invalid JSON: {e}") from e
    if not isinstance(obj, dict):
        raise DecodeError(f"expected a JSON object, got {type(obj).__name__}")

    fields = {str(key).lower(): value for key, value in obj.items()}

    kind = fields.get("type")
    if not isinstance(kind, str):
        raise DecodeError("missing or non-string 'type'")

    ts = fields.get("ts")
    if ts is None:
        ts = 0
    elif isinstance(ts, bool) or not isinstance(ts, int):
        raise DecodeError(f"'ts' must be an integer, got {ts!r}")

    return Envelope(
        type=kind,
        sender=_optional_str(fields, "from"),
        to=_optional_str(fields, "to"),
        text=_optional_str(fields, "text"),
        ts=ts,
    )


def system(text: str, to: Optional[str] = None) -> Envelope:
    """Build a server notice."""
    return Envelope(MessageType.SYS, SERVER_NAME, to, text, now_ts())


def userlist(names: Iterable[str]) -> Envelope:
    """Build a userlist envelope; `names` should already be sorted."""
    return Envelope(MessageType.USERLIST, SERVER_NAME, None, ",".join(names), now_ts())
