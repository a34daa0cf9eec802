"""
Chat relay server package.

Main exports:
- Server: Accept loop and per-connection read loop
- Router: Protocol state machine
- Registry: Live sessions and the username map
- Dispatcher: Broadcast and unicast delivery
- Session: Individual connection handler
"""

from .codec import DecodeError, Envelope, MessageType, decode, encode
from .dispatcher import Dispatcher
from .registry import Registry
from .router import Router
from .server import Server
from .session import Session, SessionClosedError

__version__ = "1.0.0"
__all__ = [
    'Server', 'Router', 'Registry', 'Dispatcher', 'Session', 'SessionClosedError',
    'Envelope', 'MessageType', 'DecodeError', 'encode', 'decode',
]
