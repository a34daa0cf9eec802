"""
Terminal chat client
Handles connection with the relay, joining under a username, sending and printing envelopes, and graceful shutdown
"""

import asyncio
import sys
import logging
import argparse
from typing import Optional, Tuple

from parley_server.codec import DecodeError, Envelope, MessageType, decode, encode, now_ts

logger = logging.getLogger(__name__)

MAX_MESSAGE_LENGTH = 1000
USAGE = "Commands: /w <user> <message>, /typing, /stoptyping, /leave, or plain text"


class Client():
    """
    Async client for the chat relay

    Features:
    - Joins with a username right after connecting
    - Input parsing into protocol envelopes
    - Message sender and receiver functions
    - graceful shutdown of the client
    """
    def __init__(self, host: str, port: int, username: str) -> None:
        """
        Initialize client
        Args:
            host: ip of the server to connect to
            port: port of the server to connect to
            username: name announced in the join
        """
        self.host = host
        self.port = port
        self.username = username
        self.writer: Optional[asyncio.StreamWriter] = None
        self.reader: Optional[asyncio.StreamReader] = None

    async def connect_to_server(self) -> Tuple[Optional[asyncio.StreamReader], Optional[asyncio.StreamWriter]]:
        """Handle the connection to the chat server"""
        try:
            reader, writer = await asyncio.open_connection(
                self.host,
                self.port
            )
            logger.info(f"Connected to {self.host}:{self.port}")
            self.reader, self.writer = reader, writer
            return reader, writer
        except ConnectionRefusedError:
            logger.error(f"ERROR: Server at {self.host}:{self.port} refused connection")
            return None, None
        except asyncio.TimeoutError:
            logger.error(f"ERROR: Connection to {self.host}:{self.port} timed out")
            return None, None
        except OSError as e:
            logger.error(f"ERROR: OS Error: {e}")
            return None, None

    async def send_envelope(self, envelope: Envelope) -> bool:
        """handle the sending of envelopes to server"""
        try:
            self.writer.write(encode(envelope))
            await self.writer.drain()
            return True
        except ConnectionResetError as e:
            logger.error(f"Connection reset: {e}")
        except BrokenPipeError as e:
            logger.error(f"Broken pipe: {e}")
        except OSError as e:
            logger.error(f"OS Error: {e}")
        return False

    async def join(self) -> bool:
        """Announce the username"""
        return await self.send_envelope(Envelope(MessageType.JOIN, self.username, None, None, now_ts()))

    def parse_input(self, text: str) -> Optional[Envelope]:
        """Turn one line of user input into an envelope, None if it should not be sent"""
        text = text.strip()
        if not text:
            return None

        if len(text) > MAX_MESSAGE_LENGTH:
            print(f"\nError: Message too long (max {MAX_MESSAGE_LENGTH} chars)")
            return None

        if text.startswith("/w "):
            parts = text[3:].strip().split(" ", 1)
            if len(parts) < 2 or not parts[1].strip():
                print("\nUsage: /w <username> <message>")
                return None
            return Envelope(MessageType.PM, self.username, parts[0], parts[1].strip(), now_ts())
        elif text == "/leave":
            return Envelope(MessageType.LEAVE, self.username, None, None, now_ts())
        elif text == "/typing":
            return Envelope(MessageType.TYPING, self.username, None, None, now_ts())
        elif text == "/stoptyping":
            return Envelope(MessageType.STOPTYPING, self.username, None, None, now_ts())
        elif text.startswith("/"):
            print(f"\nError: Unknown command. {USAGE}")
            return None
        return Envelope(MessageType.MSG, self.username, None, text, now_ts())

    @staticmethod
    def format_envelope(envelope: Envelope) -> str:
        """Render a received envelope as one line of text"""
        kind = envelope.type
        if kind == MessageType.SYS:
            return f"[sys] {envelope.text}"
        if kind == MessageType.MSG:
            return f"{envelope.sender}: {envelope.text}"
        if kind == MessageType.PM:
            return f"[pm] {envelope.sender} -> {envelope.to}: {envelope.text}"
        if kind == MessageType.USERLIST:
            names = [name for name in (envelope.text or "").split(",") if name]
            return f"[users] {', '.join(names)}"
        if kind == MessageType.TYPING:
            return f"{envelope.sender} is typing..."
        if kind == MessageType.STOPTYPING:
            return f"{envelope.sender} stopped typing"
        return f"[{kind}] {envelope.text or ''}"

    async def receive_message(self):
        """Handle the receiving of envelopes from the server"""
        try:
            while True:
                data = await self.reader.readline()
                if not data:
                    logger.info("Server disconnected")
                    break
                try:
                    envelope = decode(data)
                except DecodeError as e:
                    logger.warning(f"Ignoring bad record from server: {e}")
                    continue
                if envelope is None:
                    continue
                # own typing notices come back from the server
                if envelope.type in (MessageType.TYPING, MessageType.STOPTYPING) \
                        and envelope.sender == self.username:
                    continue
                print(f"\r{self.format_envelope(envelope)}")
                print("> ", end="", flush=True)
        except (ConnectionResetError, ConnectionAbortedError, BrokenPipeError) as e:
            logger.error(f"Connection ERROR: {e}")
        except asyncio.CancelledError:
            logger.info("Stopping receiver...")
            raise

    async def send_user_input(self):
        """Read user input and send to the server"""
        try:
            while True:
                print("> ", end="", flush=True)
                line = await asyncio.get_running_loop().run_in_executor(
                    None, sys.stdin.readline
                )
                if not line:
                    # stdin closed
                    await self.send_envelope(Envelope(MessageType.LEAVE, self.username, None, None, now_ts()))
                    break
                envelope = self.parse_input(line)
                if envelope is None:
                    continue
                status = await self.send_envelope(envelope)
                if not status or envelope.type == MessageType.LEAVE:
                    logger.info("Client wants to close down...")
                    break
        except asyncio.CancelledError:
            logger.info("Stopping sender...")
            raise

    async def run(self):
        """Main client loop"""
        await self.connect_to_server()

        if self.reader is None and self.writer is None:
            logger.error("Failed to connect to the server")
            return

        if not await self.join():
            logger.error("Failed to send join")
            return

        receiver_task = asyncio.create_task(self.receive_message())
        sender_task = asyncio.create_task(self.send_user_input())

        try:
            done, pending = await asyncio.wait(
                {receiver_task, sender_task},
                return_when=asyncio.FIRST_COMPLETED
            )

            for task in pending:
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        finally:
            if self.writer and not self.writer.is_closing():
                self.writer.close()
                await self.writer.wait_closed()
            logger.info("Disconnected from server")


def main():
    """Entry point for client"""
    parser = argparse.ArgumentParser(description="Chat Relay Client")
    parser.add_argument('--host', default='127.0.0.1', help='Server host')
    parser.add_argument('--port', type=int, default=9000, help='Server port')
    parser.add_argument('--username', required=True, help='Name to join with')
    parser.add_argument('--debug', action='store_true', help='Enable debug logging')
    args = parser.parse_args()
    # setup logging
    level = logging.DEBUG if args.debug else logging.INFO
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    client = Client(host=args.host, port=args.port, username=args.username)
    try:
        asyncio.run(client.run())
    except KeyboardInterrupt:
        logger.info("Client Stopped by user")


if __name__ == "__main__":
    main()
