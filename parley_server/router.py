"""
Protocol state machine.

A session starts unnamed, becomes named after a successful join, and is
closed once its read loop stops. The router turns each inbound envelope
into registry changes and deliveries.
"""

import logging

from .codec import Envelope, MessageType, now_ts, system, userlist
from .dispatcher import Dispatcher
from .registry import Registry
from .session import Session

logger = logging.getLogger(__name__)

# inbound types that need a name first
NAMED_ONLY = (MessageType.MSG, MessageType.PM, MessageType.TYPING, MessageType.STOPTYPING)


class Router:
    """Routes envelopes from one session to the registry and the dispatcher."""

    def __init__(self, registry: Registry, dispatcher: Dispatcher):
        self.registry = registry
        self.dispatcher = dispatcher

    async def handle(self, session: Session, envelope: Envelope) -> bool:
        """
        Process one inbound envelope.

        Returns False when the connection must be closed, True to keep
        reading. Write failures toward the sender itself propagate as
        OSError.
        """
        kind = envelope.type
        if kind == MessageType.LEAVE:
            logger.debug(f"{session.format_addr()} sent leave")
            return False

        if session.username is None:
            if kind == MessageType.JOIN:
                return await self.join(session, envelope)
            if kind in NAMED_ONLY:
                await self.reply(session, "You must join first")
            else:
                logger.debug(f"Ignoring '{kind}' from unnamed {session.format_addr()}")
            return True

        if kind == MessageType.JOIN:
            # renaming is not part of the protocol
            logger.debug(f"{session.username} tried to join again as {envelope.sender!r}, ignored")
        elif kind == MessageType.MSG:
            await self.dispatcher.broadcast(
                Envelope(MessageType.MSG, session.username, None, envelope.text, now_ts())
            )
        elif kind == MessageType.PM:
            await self.private_message(session, envelope)
        elif kind in (MessageType.TYPING, MessageType.STOPTYPING):
            await self.dispatcher.broadcast(Envelope(kind, session.username, None, None, now_ts()))
        else:
            logger.debug(f"Ignoring unrecognized type '{kind}' from {session.username}")
        return True

    async def reply(self, session: Session, text: str) -> None:
        """Send a system notice to one session only."""
        await self.dispatcher.unicast(session, system(text, session.username))

    async def join(self, session: Session, envelope: Envelope) -> bool:
        name = envelope.sender
        if not name or not name.strip():
            await self.reply(session, "Missing username")
            return True

        if not await self.registry.claim_name(session, name):
            logger.info(f"{session.format_addr()} rejected, username '{name}' already used")
            try:
                await self.reply(session, "Username already used")
            except OSError as e:
                logger.debug(f"Could not notify {session.format_addr()}: {e}")
            return False

        logger.info(f"{name} joined from {session.format_addr()}")
        await self.dispatcher.broadcast(system(f"{name} joined"))
        await self.push_userlist()
        return True

    async def private_message(self, session: Session, envelope: Envelope) -> None:
        to = envelope.to
        if not to or not to.strip():
            await self.reply(session, "PM requires 'to'")
            return

        target = self.registry.lookup(to)
        if target is None:
            await self.reply(session, f"User '{to}' not found")
            return

        pm = Envelope(MessageType.PM, session.username, to, envelope.text, now_ts())
        try:
            await self.dispatcher.unicast(target, pm)
        except OSError as e:
            logger.warning(f"PM to {to} failed: {e}")
            target.abort()
        if target is not session:
            await self.dispatcher.unicast(session, pm)

    async def push_userlist(self) -> None:
        names = await self.registry.snapshot_names()
        await self.dispatcher.broadcast(userlist(names))

    async def depart(self, session: Session) -> None:
        """
        Tear a session down.

        Safe to call more than once: only the call that removes the session
        from the registry announces the departure, and only for a session
        that had joined.
        """
        removed = await self.registry.remove(session)
        name = session.username
        if removed and name is not None:
            # announce before closing, a stuck peer can hold close() for a while
            logger.info(f"{name} left ({len(self.registry)} connections remain)")
            await self.dispatcher.broadcast(system(f"{name} left"))
            await self.push_userlist()
        elif removed:
            logger.info(f"{session.format_addr()} closed before joining")
        await session.close()
