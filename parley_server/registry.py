"""
Registry of live sessions.

Keeps two views over the same sessions: every connection by handle, and
joined connections by username. Callers only go through the methods below;
the lock makes each of them a single step with respect to the others.
"""

import asyncio
import logging
from typing import Dict, List, Optional

from .session import Session

logger = logging.getLogger(__name__)


class Registry:
    """Authoritative store of live sessions and the name -> session map."""

    def __init__(self):
        self._sessions: Dict[int, Session] = {}  # handle: Session
        self._names: Dict[str, Session] = {}  # username: Session
        self._lock = asyncio.Lock()

    def __len__(self):
        return len(self._sessions)

    async def register_unnamed(self, session: Session) -> None:
        """Track a freshly accepted connection."""
        async with self._lock:
            self._sessions[session.handle] = session

    async def claim_name(self, session: Session, name: str) -> bool:
        """
        Reserve `name` for `session`.

        Returns False without changing anything when the name is already
        held, when the session already has a name, or when the session has
        been removed.
        """
        async with self._lock:
            if name in self._names:
                return False
            if session.username is not None or session.handle not in self._sessions:
                return False
            self._names[name] = session
            session.username = name
            return True

    def lookup(self, name: str) -> Optional[Session]:
        return self._names.get(name)

    async def snapshot_names(self) -> List[str]:
        async with self._lock:
            return sorted(self._names)

    async def remove(self, session: Session) -> bool:
        """
        Drop a session from both views.

        Returns True only for the call that actually removed it, so a
        departure is announced once even when removals race.
        """
        async with self._lock:
            if self._sessions.pop(session.handle, None) is None:
                return False
            name = session.username
            if name is not None and self._names.get(name) is session:
                del self._names[name]
            return True

    async def all_sessions(self) -> List[Session]:
        async with self._lock:
            return list(self._sessions.values())
