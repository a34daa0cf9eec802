import asyncio

import pytest

from parley_server.codec import decode
from parley_server.dispatcher import Dispatcher
from parley_server.registry import Registry
from parley_server.router import Router
from parley_server.session import Session


class FakeWriter:
    """Stands in for asyncio.StreamWriter and records everything written."""

    def __init__(self, peer=("127.0.0.1", 5000), fail=False, stall=False):
        self.peer = peer
        self.fail = fail
        self.stall = stall
        self.buffer = bytearray()
        self.closed = False

    def write(self, data):
        if self.fail:
            raise ConnectionResetError("peer reset")
        self.buffer.extend(data)

    async def drain(self):
        if self.stall:
            # peer stopped reading, the transport buffer never empties
            await asyncio.Event().wait()

    def close(self):
        self.closed = True

    def is_closing(self):
        return self.closed

    async def wait_closed(self):
        pass

    def get_extra_info(self, name, default=None):
        return self.peer if name == "peername" else default

    def envelopes(self):
        return [decode(line) for line in bytes(self.buffer).splitlines()]


async def flush(*sessions):
    """Wait until every queued record has been handled by the sender tasks."""
    for session in sessions:
        await asyncio.wait_for(session.queue.join(), timeout=1.0)


@pytest.fixture
def make_session():
    """Factory for started sessions backed by FakeWriter."""
    port = iter(range(5000, 6000))

    def factory(fail=False, stall=False):
        writer = FakeWriter(("127.0.0.1", next(port)), fail=fail, stall=stall)
        session = Session(writer, writer.peer)
        session.start()
        return session

    return factory


@pytest.fixture
def relay():
    """A registry, dispatcher and router wired together."""
    registry = Registry()
    dispatcher = Dispatcher(registry, enqueue_timeout=0.2)
    return registry, dispatcher, Router(registry, dispatcher)
