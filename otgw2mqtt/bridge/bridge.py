"""Bridge orchestrator - coordinates the gateway link, MQTT bus and passthrough listener.

The GatewayBridge class is the main entry point for exposing an OpenTherm
Gateway on MQTT.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional

from .config import BridgeConfig
from .downstream import DeviceLink, LinkEvent
from .mqtt import MqttBus
from .protocol import CommandResponse, FrameCodec, StatusFrame, render_value
from .store import ValueStore
from .upstream import ClientSession, PassthroughServer

logger = logging.getLogger("otgw2mqtt.bridge")


class GatewayBridge:
    """Bridge between an OpenTherm Gateway and an MQTT broker.

    The bridge:
      - Decodes gateway status lines and publishes changed values, retained
      - Publishes command acknowledgements from the gateway
      - Writes commands received on ``<prefix>otgw/command/<CODE>`` to the gateway
      - Relays raw gateway traffic to and from passthrough peers

    Example:
        bridge = GatewayBridge(BridgeConfig(tcp_host="otgw.local", mqtt_broker="broker"))
        await bridge.run_forever()
    """

    def __init__(
        self,
        config: BridgeConfig,
        *,
        link: Optional[DeviceLink] = None,
        bus: Optional[MqttBus] = None,
        server: Optional[PassthroughServer] = None,
        codec: Optional[FrameCodec] = None,
        store: Optional[ValueStore] = None,
    ):
        self.config = config
        self.prefix = config.mqtt_prefix or ""

        # Create components
        self._codec = codec or FrameCodec()
        self._store = store or ValueStore()

        self._link = link
        if self._link is None and config.tcp_host:
            self._link = DeviceLink(
                host=config.tcp_host,
                port=config.tcp_port,
                reconnect_delay=config.reconnect_delay,
            )

        self._bus = bus
        if self._bus is None and config.mqtt_broker:
            self._bus = MqttBus(
                host=config.mqtt_broker,
                port=config.mqtt_port,
                username=config.mqtt_username,
                password=config.mqtt_password,
                reconnect_delay=max(1, int(config.reconnect_delay)),
            )

        self._server = server
        if self._server is None and config.listen_port:
            self._server = PassthroughServer(
                host=config.listen_host,
                port=config.listen_port,
            )

        # Wire up the handlers
        if self._link is not None:
            self._link.set_line_handler(self._handle_device_line)
            self._link.add_status_callback(self._on_link_status)
        if self._bus is not None:
            self._bus.set_message_handler(self._handle_bus_message)
        if self._server is not None:
            self._server.set_line_handler(self._handle_passthrough_line)

        self._running = False
        self._bus_started = False
        self._stats = {
            "lines_received": 0,
            "frames_decoded": 0,
            "values_published": 0,
            "command_results": 0,
            "commands_sent": 0,
        }

    # --- Topics ---

    @property
    def status_topic(self) -> str:
        return f"{self.prefix}otgw/status"

    @property
    def command_topic(self) -> str:
        return f"{self.prefix}otgw/command/+"

    # --- Lifecycle ---

    async def start(self) -> None:
        """Start the bus, the passthrough listener and the gateway link."""
        logger.info("Starting bridge...")

        missing = self.config.missing()
        if missing:
            logger.error("Configuration missing: %s", ", ".join(missing))

        self._running = True

        if self._bus is not None:
            await self._bus.start()
            self._bus.subscribe(self.command_topic, qos=2)
            self._bus_started = True

        if self._server is not None:
            await self._server.start()

        if self._link is not None:
            await self._link.start()

        logger.info("Bridge started")

    async def stop(self) -> None:
        """Stop the bridge."""
        logger.info("Stopping bridge...")
        self._running = False

        if self._bus is not None and self._bus_started:
            await self._bus.stop()
            self._bus_started = False

        if self._link is not None:
            await self._link.stop()

        if self._server is not None:
            await self._server.stop()

        logger.info("Bridge stopped")

    async def run_forever(self) -> None:
        """Run the bridge until cancelled."""
        await self.start()
        try:
            while self._running:
                await asyncio.sleep(1)
        except asyncio.CancelledError:
            pass
        finally:
            await self.stop()

    # --- Gateway -> bus / peers ---

    async def _handle_device_line(self, line: str) -> None:
        self._stats["lines_received"] += 1
        logger.debug("Received: %s", line)

        if self._server is not None:
            await self._server.broadcast(line)

        event = self._codec.decode(line)
        if isinstance(event, StatusFrame):
            self._stats["frames_decoded"] += 1
            for change in self._store.apply_all(event.values):
                await self._publish(
                    f"{self.status_topic}/{change.name}",
                    render_value(change.value),
                )
        elif isinstance(event, CommandResponse):
            await self._handle_command_response(event)

    async def _handle_command_response(self, response: CommandResponse) -> None:
        if response.follow_up is not None:
            await self._send_command(response.follow_up.code, response.follow_up.value)

        if not response.reportable:
            return

        logger.info(
            "Received ACK from OTGW for command %s, result %s",
            response.code,
            response.result,
        )
        self._stats["command_results"] += 1
        await self._publish(
            f"{self.status_topic}/command_{response.code.lower()}",
            response.result,
        )

    async def _publish(self, topic: str, payload: str) -> None:
        if self._bus is None:
            return
        if await self._bus.publish(topic, payload, qos=2, retain=True):
            self._stats["values_published"] += 1

    # --- Bus / peers -> gateway ---

    async def _handle_bus_message(self, topic: str, payload: bytes) -> None:
        code = topic.upper().split("/")[-1]
        value = payload.decode("ascii", errors="replace")
        await self._send_command(code, value)

    async def _handle_passthrough_line(self, line: str, session: ClientSession) -> None:
        logger.debug("Passthrough from %s: %s", session.address, line)
        if self._link is None:
            return
        await self._link.send(line)

    async def _send_command(self, code: str, value: str) -> None:
        if self._link is None:
            logger.warning("No OTGW connection configured, dropping command %s=%s", code, value)
            return
        if await self._link.send_command(code, value):
            self._stats["commands_sent"] += 1

    def _on_link_status(self, event: LinkEvent, error: Optional[BaseException]) -> None:
        if event == LinkEvent.CONNECTED:
            logger.info("OTGW link: Connected")
        elif event == LinkEvent.CONNECT_FAILED:
            logger.warning("OTGW link: Unable to connect (%s)", error)
        elif event == LinkEvent.CLOSED_BY_PEER:
            logger.info("OTGW link: Disconnected (clean)")
        else:
            logger.info("OTGW link: Disconnected (%s)", error)

    # --- Accessors ---

    @property
    def link(self) -> Optional[DeviceLink]:
        return self._link

    @property
    def bus(self) -> Optional[MqttBus]:
        return self._bus

    @property
    def server(self) -> Optional[PassthroughServer]:
        return self._server

    @property
    def store(self) -> ValueStore:
        return self._store

    @property
    def is_running(self) -> bool:
        return self._running

    def get_stats(self) -> Dict[str, Any]:
        """Get bridge statistics."""
        return {
            "running": self._running,
            "link_state": self._link.state.name if self._link else None,
            "bus_connected": self._bus.is_connected if self._bus else False,
            "passthrough_clients": self._server.client_count if self._server else 0,
            **self._stats,
        }
