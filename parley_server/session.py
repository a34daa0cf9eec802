"""
Per-connection session state.

Handles the outbound side of one connection: a FIFO queue drained by a
single sender task, so records written to one peer never interleave while
different peers are written to in parallel.
"""

import asyncio
import itertools
import logging
from typing import Optional

logger = logging.getLogger(__name__)

QUEUE_SIZE = 500
ENQUEUE_TIMEOUT = 2.0
CLOSE_TIMEOUT = 10.0

_handles = itertools.count(1)


class SessionClosedError(ConnectionError):
    """The session no longer accepts outbound records."""


class Session:
    """
    Represents a single connected peer, named or not.

    Manages:
    - Outbound queue and sender task
    - Username, set once a join succeeds
    - Liveness of the underlying stream
    """

    def __init__(self, writer, addr, queue_size=QUEUE_SIZE):
        """
        Initialize session.

        Args:
            writer: asyncio StreamWriter for this peer
            addr: Peer address tuple (host, port)
            queue_size: Maximum number of queued outbound records
        """
        self.handle = next(_handles)
        self.writer = writer
        self.addr = addr
        self.username: Optional[str] = None
        self.alive = True
        self.queue = asyncio.Queue(maxsize=queue_size)
        self.sender_task: Optional[asyncio.Task] = None
        self._closed = False

    def __repr__(self):
        return f"<Session #{self.handle} {self.format_addr()} username={self.username!r}>"

    def format_addr(self):
        """Format address as IP:Port string."""
        if not self.addr:
            return "?"
        return f"{self.addr[0]}:{self.addr[1]}"

    def start(self):
        """Spawn the sender task."""
        self.sender_task = asyncio.create_task(self.sender())
        return self.sender_task

    async def sender(self):
        """
        Main sender loop.

        Pulls records from the queue and writes them in order. A `None`
        item is the poison pill that ends the loop after everything queued
        before it has been written.
        """
        try:
            while True:
                item = await self.queue.get()
                if item is None:
                    self.queue.task_done()
                    break
                data, done = item
                try:
                    self.writer.write(data)
                    await self.writer.drain()
                except OSError as e:
                    logger.error(f"Error@{self.format_addr()} in sender(): {e}")
                    if done is not None and not done.done():
                        done.set_exception(e)
                    self.queue.task_done()
                    if not self.writer.is_closing():
                        self.writer.close()
                    break
                if done is not None and not done.done():
                    done.set_result(None)
                self.queue.task_done()
        finally:
            self.alive = False
            self._discard_pending()
            logger.debug(f"Sender cleanup for {self.format_addr()}")

    def _discard_pending(self):
        while not self.queue.empty():
            item = self.queue.get_nowait()
            if item is not None:
                _, done = item
                if done is not None and not done.done():
                    done.set_exception(SessionClosedError(f"{self.format_addr()} closed"))
            self.queue.task_done()

    async def enqueue(self, data: bytes, timeout: float = ENQUEUE_TIMEOUT):
        """Queue a record without waiting for it to be written."""
        await self._put((data, None), timeout)

    async def send(self, data: bytes, timeout: float = ENQUEUE_TIMEOUT):
        """
        Queue a record and wait until it has been written and drained.

        The enqueue and the wait for the drain are each bounded by
        `timeout`, so a peer that stops reading cannot hold up the caller.

        Raises:
            SessionClosedError: if the session is closed, its queue stays
                full, or the record is not drained in time
            OSError: if the write itself fails
        """
        done = asyncio.get_running_loop().create_future()
        await self._put((data, done), timeout)
        await asyncio.wait({done, self.sender_task}, timeout=timeout,
                           return_when=asyncio.FIRST_COMPLETED)
        if not done.done():
            done.cancel()
            if self.sender_task.done():
                raise SessionClosedError(f"{self.format_addr()} closed before write")
            raise SessionClosedError(f"{self.format_addr()} not drained within {timeout}s")
        done.result()

    async def _put(self, item, timeout):
        if not self.alive or self.sender_task is None:
            raise SessionClosedError(f"{self.format_addr()} is not accepting records")
        try:
            await asyncio.wait_for(self.queue.put(item), timeout=timeout)
        except asyncio.TimeoutError:
            raise SessionClosedError(f"{self.format_addr()} outbound queue full") from None

    def abort(self):
        """
        Stop talking to this peer at once.

        Closing the stream ends the pending read on the connection, so the
        read loop runs the normal departure path afterwards.
        """
        self.alive = False
        if self.sender_task is not None and not self.sender_task.done():
            self.sender_task.cancel()
        if not self.writer.is_closing():
            self.writer.close()

    async def close(self, timeout: float = CLOSE_TIMEOUT):
        """Flush queued records, stop the sender and close the stream. Idempotent."""
        if self._closed:
            return
        self._closed = True
        self.alive = False

        task = self.sender_task
        if task is not None and not task.done():
            # sender may be stuck on a slow peer with a full queue
            try:
                await asyncio.wait_for(self.queue.put(None), timeout=timeout)
            except asyncio.TimeoutError:
                logger.warning(f"Queue full/sender stuck for {self.format_addr()}, skipping poison pill")
            else:
                await asyncio.wait({task}, timeout=timeout)
            if not task.done():
                logger.warning(f"Sender for {self.format_addr()} did not finish, cancelling")
                task.cancel()
                await asyncio.wait({task})

        if not self.writer.is_closing():
            self.writer.close()
        try:
            await self.writer.wait_closed()
        except OSError as e:
            logger.debug(f"Close of {self.format_addr()} reported: {e}")
