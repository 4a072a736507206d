from __future__ import annotations

import asyncio
import logging
from typing import Optional

from otgw2mqtt.bridge.upstream import ClientSession, PassthroughServer

from .core import MockGateway

logger = logging.getLogger(__name__)


class MockGatewayServer:
    """Serves a MockGateway over TCP the way the gateway's serial-to-LAN bridge does.

    Status lines are broadcast every ``interval`` seconds, except while the
    gateway is in summary mode; command responses go to every peer.
    """

    def __init__(
        self,
        gateway: MockGateway,
        host: str = "127.0.0.1",
        port: int = 2323,
        interval: float = 1.0,
    ) -> None:
        self.gateway = gateway
        self.interval = interval
        self._server = PassthroughServer(host=host, port=port)
        self._server.set_line_handler(self._handle_line)
        self._ticker: Optional[asyncio.Task] = None

    async def start(self) -> None:
        await self._server.start()
        self._ticker = asyncio.create_task(self._tick_loop())

    async def stop(self) -> None:
        if self._ticker is not None:
            self._ticker.cancel()
            try:
                await self._ticker
            except asyncio.CancelledError:
                pass
            self._ticker = None
        await self._server.stop()

    async def emit_status(self) -> None:
        """Broadcast the current status lines once."""
        for line in self.gateway.status_lines():
            await self._server.broadcast(line)

    async def emit_line(self, line: str) -> None:
        """Broadcast an arbitrary line, e.g. to inject malformed traffic."""
        await self._server.broadcast(line)

    async def _tick_loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            if self.gateway.summary_mode:
                continue
            await self.emit_status()

    async def _handle_line(self, line: str, session: ClientSession) -> None:
        response = self.gateway.handle_command(line)
        logger.debug("Command %r from %s -> %r", line, session.address, response)
        await self._server.broadcast(response)

    @property
    def bound_port(self) -> Optional[int]:
        return self._server.bound_port

    @property
    def client_count(self) -> int:
        return self._server.client_count
