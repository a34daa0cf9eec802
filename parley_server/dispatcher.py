"""
Delivery primitives built on the registry.
"""

import asyncio
import logging

from .codec import Envelope, encode
from .registry import Registry
from .session import ENQUEUE_TIMEOUT

logger = logging.getLogger(__name__)


class Dispatcher:
    """
    Broadcast-to-all and unicast-to-one delivery.

    Broadcast is best effort per recipient: a peer that cannot take the
    record is aborted and the rest still get it. Unicast reports failures
    to the caller.
    """

    def __init__(self, registry: Registry, enqueue_timeout: float = ENQUEUE_TIMEOUT):
        self.registry = registry
        self.enqueue_timeout = enqueue_timeout

    async def _offer(self, session, data):
        try:
            await session.enqueue(data, timeout=self.enqueue_timeout)
            return session, None
        except OSError as e:
            return session, e

    async def broadcast(self, envelope: Envelope) -> int:
        """Queue `envelope` for every live session. Returns how many took it."""
        data = encode(envelope)
        sessions = await self.registry.all_sessions()
        logger.debug(f"broadcast(): {data!r} to {len(sessions)} sessions")
        results = await asyncio.gather(*(self._offer(session, data) for session in sessions))

        # handle failed sessions eg: slow or dead peers
        failed = [(session, error) for session, error in results if error]
        for session, error in failed:
            logger.warning(f"Dropping {session.format_addr()} from broadcast: {error}")
            session.abort()
        return len(sessions) - len(failed)

    async def unicast(self, session, envelope: Envelope) -> None:
        """
        Write `envelope` to one session and wait for it to drain.

        Raises:
            OSError: if the session is closed or the write fails
        """
        data = encode(envelope)
        logger.debug(f"unicast(): {data!r} to {session.format_addr()}")
        await session.send(data, timeout=self.enqueue_timeout)
