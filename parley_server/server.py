"""
Main chat relay server.

Handles connections, the per-connection read loop, and server lifecycle.
"""

import argparse
import asyncio
import logging

from .codec import DecodeError, decode
from .dispatcher import Dispatcher
from .registry import Registry
from .router import Router
from .session import ENQUEUE_TIMEOUT, QUEUE_SIZE, Session

logger = logging.getLogger(__name__)

DEFAULT_HOST = "0.0.0.0"
DEFAULT_PORT = 9000
MAX_LINE = 64 * 1024
STOP_TIMEOUT = 5.0


class Server:
    """
    Async chat relay with unique usernames.

    Features:
    - Multiple concurrent clients, one handler task each
    - Broadcast, private messages and typing notices
    - Per-client ordered delivery with slow client isolation
    """

    def __init__(self, host=DEFAULT_HOST, port=DEFAULT_PORT, max_line=MAX_LINE,
                 queue_size=QUEUE_SIZE, enqueue_timeout=ENQUEUE_TIMEOUT):
        """
        Initialize server.

        Args:
            host: Interface to bind
            port: Port to listen on, 0 picks a free one
            max_line: Longest accepted inbound line in bytes
            queue_size: Outbound queue size per client
            enqueue_timeout: Seconds to wait on a full outbound queue
        """
        self.host = host
        self.port = port
        self.max_line = max_line
        self.queue_size = queue_size
        self.registry = Registry()
        self.dispatcher = Dispatcher(self.registry, enqueue_timeout=enqueue_timeout)
        self.router = Router(self.registry, self.dispatcher)
        self.connection_tasks = set()
        self._server = None

    @property
    def bound_port(self):
        """Port actually bound, useful when started with port 0."""
        if self._server is None or not self._server.sockets:
            return None
        return self._server.sockets[0].getsockname()[1]

    async def client_handler(self, reader, writer):
        """Handle a single client connection."""
        task = asyncio.current_task()
        self.connection_tasks.add(task)
        addr = writer.get_extra_info("peername")
        session = Session(writer, addr, queue_size=self.queue_size)
        session.start()
        await self.registry.register_unnamed(session)
        logger.info(f"Client Connected: {session.format_addr()}")
        try:
            await self.read_loop(reader, session)
        except OSError as e:
            logger.error(f"ERROR: {session.format_addr()} has connection error: {e}")
        except Exception:
            logger.exception(f"ERROR: Unexpected error on {session.format_addr()}")
        finally:
            await self.router.depart(session)
            self.connection_tasks.discard(task)

    async def read_loop(self, reader, session):
        """Read records until EOF or until the router asks to close."""
        while True:
            try:
                line = await reader.readline()
            except ValueError as e:
                # line longer than max_line, the reader has dropped it
                logger.warning(f"Oversized line from {session.format_addr()}: {e}")
                continue
            # closing the stream from our side also ends up here
            if not line:
                logger.info(f"{session.format_addr()} disconnected (EOF)")
                return
            try:
                envelope = decode(line)
            except DecodeError as e:
                logger.warning(f"Discarding bad record from {session.format_addr()}: {e}")
                continue
            if envelope is None:
                continue
            logger.debug(f"Received from {session.format_addr()}: {envelope}")
            if not await self.router.handle(session, envelope):
                return

    async def start(self):
        """Bind the listening socket and start accepting."""
        self._server = await asyncio.start_server(
            self.client_handler,
            self.host,
            self.port,
            limit=self.max_line,
        )
        logger.info(f"Server running on {self.host}:{self.bound_port}")
        return self._server

    async def run_server(self):
        if self._server is None:
            await self.start()
        async with self._server:
            await self._server.serve_forever()

    async def stop(self):
        """Stop accepting, drop every connection and wait for handlers to finish."""
        if self._server is None:
            return
        self._server.close()
        for session in await self.registry.all_sessions():
            session.abort()
        pending = list(self.connection_tasks)
        if pending:
            await asyncio.wait(pending, timeout=STOP_TIMEOUT)
        try:
            await asyncio.wait_for(self._server.wait_closed(), timeout=STOP_TIMEOUT)
        except asyncio.TimeoutError:
            logger.warning("Timed out waiting for the listener to close")
        self._server = None


def main():
    """Entry point for server"""
    parser = argparse.ArgumentParser(description="Chat Relay Server")
    parser.add_argument('--host', default=DEFAULT_HOST, help='Interface to bind')
    parser.add_argument('--port', type=int, default=DEFAULT_PORT, help='Port to listen on')
    parser.add_argument('--max-line', type=int, default=MAX_LINE, help='Longest accepted line in bytes')
    parser.add_argument('--debug', action='store_true', help='Enable debug logging')
    args = parser.parse_args()

    # setup logging
    level = logging.DEBUG if args.debug else logging.INFO
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    server = Server(args.host, args.port, max_line=args.max_line)
    try:
        asyncio.run(server.run_server())
    except KeyboardInterrupt:
        logger.info("Server stopped by user")


if __name__ == "__main__":
    main()
