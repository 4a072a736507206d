"""Upstream server - line-oriented passthrough listener.

Peers connecting here see every raw line received from the gateway and can
send raw gateway commands, one per line.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional, Set

from .protocol import LINE_TERMINATOR

logger = logging.getLogger("otgw2mqtt.bridge.upstream")

DEFAULT_SEND_TIMEOUT = 5.0

# Callback type for lines received from a peer
PeerLineHandler = Callable[[str, "ClientSession"], Awaitable[None]]


class ClientSession:
    """Represents a connected passthrough peer."""

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        session_id: int,
        send_timeout: float = DEFAULT_SEND_TIMEOUT,
    ):
        self.reader = reader
        self.writer = writer
        self.session_id = session_id
        self.send_timeout = send_timeout
        self.connected = True
        self._addr = writer.get_extra_info("peername")

    @property
    def address(self) -> str:
        if self._addr:
            return f"{self._addr[0]}:{self._addr[1]}"
        return "unknown"

    async def send(self, data: bytes) -> None:
        """Write to the peer; a peer that does not drain in time is dropped."""
        if not self.connected:
            return
        try:
            self.writer.write(data)
            await asyncio.wait_for(self.writer.drain(), timeout=self.send_timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "Client %s stopped reading, dropping it after %ss", self.address, self.send_timeout
            )
            self.connected = False
            # Discards the unsent buffer
            self.writer.transport.abort()
        except (OSError, RuntimeError) as e:
            logger.warning("Failed to send to client %s: %s", self.address, e)
            self.connected = False

    async def close(self) -> None:
        self.connected = False
        try:
            self.writer.close()
            await asyncio.wait_for(self.writer.wait_closed(), timeout=self.send_timeout)
        except asyncio.TimeoutError:
            self.writer.transport.abort()
        except (OSError, RuntimeError):
            pass


class PassthroughServer:
    """TCP server relaying raw gateway traffic to and from its peers."""

    def __init__(
        self,
        host: str = "0.0.0.0",
        port: int = 2323,
        encoding: str = "ascii",
        send_timeout: float = DEFAULT_SEND_TIMEOUT,
    ):
        self.host = host
        self.port = port
        self.encoding = encoding
        self.send_timeout = send_timeout

        self._server: Optional[asyncio.Server] = None
        self._clients: Set[ClientSession] = set()
        self._line_handler: Optional[PeerLineHandler] = None
        self._running = False
        self._session_counter = 0

    def set_line_handler(self, handler: PeerLineHandler) -> None:
        """Set the callback for lines received from peers."""
        self._line_handler = handler

    async def start(self) -> None:
        """Start listening."""
        self._running = True
        self._server = await asyncio.start_server(
            self._handle_client,
            self.host,
            self.port,
        )
        addrs = ", ".join(str(s.getsockname()) for s in self._server.sockets)
        logger.info("Passthrough server listening on %s", addrs)

    async def stop(self) -> None:
        """Stop listening and close all peer sessions."""
        if not self._running:
            return
        self._running = False

        if self._server:
            self._server.close()

        for client in list(self._clients):
            await client.close()
        self._clients.clear()

        if self._server:
            await self._server.wait_closed()
            self._server = None

        logger.info("Passthrough server stopped")

    async def broadcast(self, line: str) -> None:
        """Send one line (CR LF appended) to every connected peer."""
        if not self._clients:
            return
        data = (line + LINE_TERMINATOR).encode(self.encoding, errors="replace")
        for client in list(self._clients):
            await client.send(data)

    async def _handle_client(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        """Handle a connected peer."""
        self._session_counter += 1
        session = ClientSession(reader, writer, self._session_counter, self.send_timeout)
        self._clients.add(session)

        logger.info("Client connected: %s (session %d)", session.address, session.session_id)

        try:
            await self._client_loop(session)
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.exception("Error handling client %s: %s", session.address, e)
        finally:
            self._clients.discard(session)
            await session.close()
            logger.info("Client disconnected: %s", session.address)

    async def _client_loop(self, session: ClientSession) -> None:
        """Read lines from a peer and hand them to the line handler."""
        while self._running and session.connected:
            try:
                raw = await session.reader.readline()
            except (OSError, ValueError) as e:
                logger.warning("Error reading from %s: %s", session.address, e)
                break
            if not raw:
                break

            line = raw.decode(self.encoding, errors="replace").strip("\r\n")
            if not line:
                continue

            logger.debug("Received line from %s: %s", session.address, line)
            if self._line_handler:
                try:
                    await self._line_handler(line, session)
                except Exception:
                    logger.exception("Error processing TCP data from %s", session.address)

    # --- Properties ---

    @property
    def client_count(self) -> int:
        return len(self._clients)

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def bound_port(self) -> Optional[int]:
        """Actual listening port (useful when started on port 0)."""
        if not self._server or not self._server.sockets:
            return None
        return self._server.sockets[0].getsockname()[1]
