from __future__ import annotations

import asyncio
import logging

import pytest
import pytest_asyncio

from otgw2mqtt.bridge import BridgeConfig, GatewayBridge, LinkEvent, PassthroughServer
from otgw2mqtt.mock_server import MockGateway, MockGatewayConfig, MockGatewayServer


class FakeBus:
    """Stands in for MqttBus, recording publishes."""

    def __init__(self) -> None:
        self.published: list[tuple[str, str, int, bool]] = []
        self.subscriptions: list[tuple[str, int]] = []
        self.handler = None
        self.started = False

    def set_message_handler(self, handler) -> None:
        self.handler = handler

    async def start(self) -> None:
        self.started = True

    async def stop(self) -> None:
        self.started = False

    def subscribe(self, topic: str, qos: int = 2) -> None:
        self.subscriptions.append((topic, qos))

    async def publish(self, topic: str, payload: str, qos: int = 2, retain: bool = True) -> bool:
        self.published.append((topic, payload, qos, retain))
        return True

    async def deliver(self, topic: str, payload: bytes) -> None:
        await self.handler(topic, payload)

    @property
    def is_connected(self) -> bool:
        return self.started

    def topics(self) -> list[str]:
        return [p[0] for p in self.published]


async def _wait_for(predicate, timeout: float = 2.0) -> None:
    async def poll():
        while not predicate():
            await asyncio.sleep(0.01)

    await asyncio.wait_for(poll(), timeout)


@pytest_asyncio.fixture
async def rig():
    gateway = MockGateway(MockGatewayConfig(interval=60.0))
    gateway_server = MockGatewayServer(gateway, host="127.0.0.1", port=0, interval=60.0)
    await gateway_server.start()

    config = BridgeConfig(
        tcp_host="127.0.0.1",
        tcp_port=gateway_server.bound_port,
        mqtt_broker="broker.invalid",
        mqtt_prefix="home/",
        reconnect_delay=0.05,
    )
    bus = FakeBus()
    passthrough = PassthroughServer(host="127.0.0.1", port=0)
    bridge = GatewayBridge(config, bus=bus, server=passthrough)
    await bridge.start()
    await bridge.link.wait_connected(2.0)
    await _wait_for(lambda: gateway_server.client_count == 1)

    yield bridge, bus, gateway, gateway_server

    await bridge.stop()
    await gateway_server.stop()


@pytest.mark.asyncio
async def test_start_subscribes_to_commands(rig) -> None:
    bridge, bus, _, _ = rig
    assert bus.started
    assert bus.subscriptions == [("home/otgw/command/+", 2)]
    assert bridge.status_topic == "home/otgw/status"
    assert bridge.is_running


@pytest.mark.asyncio
async def test_changed_values_are_published_once(rig) -> None:
    bridge, bus, _, gateway_server = rig

    await gateway_server.emit_line("B40191580")
    await _wait_for(lambda: bus.published)
    assert bus.published == [("home/otgw/status/boiler_water_temperature", "21.5", 2, True)]

    await gateway_server.emit_line("B40191580")
    await gateway_server.emit_line("B401B0500")
    await _wait_for(lambda: len(bus.published) == 2)
    assert bus.topics()[-1] == "home/otgw/status/outside_temperature"
    assert bridge.store.get(25) == 21.5


@pytest.mark.asyncio
async def test_flame_status_publishes_derived_flags(rig) -> None:
    _, bus, _, gateway_server = rig

    await gateway_server.emit_line("B40000480")
    await _wait_for(lambda: len(bus.published) == 7)
    assert [(t, p) for t, p, _, _ in bus.published] == [
        ("home/otgw/status/flame_status", "00000100/10000000"),
        ("home/otgw/status/cooling_mode", "0"),
        ("home/otgw/status/burner_on", "0"),
        ("home/otgw/status/central_heating_mode", "0"),
        ("home/otgw/status/domestic_hot_water_mode", "0"),
        ("home/otgw/status/domestic_hot_water_enabled", "0"),
        ("home/otgw/status/fault_indication", "0"),
    ]


@pytest.mark.asyncio
async def test_bus_command_reaches_gateway_and_result_is_published(rig) -> None:
    bridge, bus, gateway, _ = rig

    await bus.deliver("home/otgw/command/tt", b"20.5")
    await _wait_for(lambda: "home/otgw/status/command_tt" in bus.topics())

    assert gateway.commands == [("TT", "20.5")]
    assert gateway.get_value("room_setpoint") == 20.5
    assert ("home/otgw/status/command_tt", "20.5", 2, True) in bus.published
    stats = bridge.get_stats()
    assert stats["commands_sent"] == 1
    assert stats["command_results"] == 1


@pytest.mark.asyncio
async def test_summary_mode_is_switched_back_off(rig) -> None:
    _, bus, gateway, gateway_server = rig

    await gateway_server.emit_line("PS: 1")
    await _wait_for(lambda: ("PS", "0") in gateway.commands)
    # The gateway answers "PS: 0"; give the bridge time to process it
    await gateway_server.emit_line("B40191580")
    await _wait_for(lambda: bus.published)

    assert not gateway.summary_mode
    assert not any(t.endswith("command_ps") for t in bus.topics())


@pytest.mark.asyncio
async def test_passthrough_relays_both_ways(rig) -> None:
    bridge, _, gateway, gateway_server = rig

    reader, writer = await asyncio.open_connection("127.0.0.1", bridge.server.bound_port)
    try:
        await _wait_for(lambda: bridge.server.client_count == 1)

        await gateway_server.emit_line("T10101400")
        assert await asyncio.wait_for(reader.readline(), 2.0) == b"T10101400\r\n"

        writer.write(b"SW=55\r\n")
        await writer.drain()
        await _wait_for(lambda: ("SW", "55") in gateway.commands)
        # The gateway's answer is relayed back as a raw line
        assert await asyncio.wait_for(reader.readline(), 2.0) == b"SW: 55\r\n"
    finally:
        writer.close()


@pytest.mark.asyncio
async def test_malformed_lines_are_ignored(rig) -> None:
    bridge, bus, _, gateway_server = rig

    await gateway_server.emit_line("garbage")
    await gateway_server.emit_line("B40191G80")
    await gateway_server.emit_line("B40191580")
    await _wait_for(lambda: bus.published)

    assert bus.topics() == ["home/otgw/status/boiler_water_temperature"]
    assert bridge.link.is_connected
    assert bridge.get_stats()["lines_received"] == 3


@pytest.mark.asyncio
async def test_values_survive_reconnect(rig) -> None:
    bridge, bus, _, gateway_server = rig

    await gateway_server.emit_line("B40191580")
    await _wait_for(lambda: bus.published)

    events = []
    bridge.link.add_status_callback(lambda event, error: events.append(event))

    # Empty line counts as a link fault and forces a reconnect
    await gateway_server.emit_line("")
    await _wait_for(lambda: events[-2:] == [LinkEvent.CONNECTION_LOST, LinkEvent.CONNECTED])

    baseline = bridge.get_stats()["lines_received"]

    async def feed():
        # Keep emitting until the new session is registered on the gateway side
        while bridge.get_stats()["lines_received"] == baseline:
            await gateway_server.emit_line("B40191580")
            await asyncio.sleep(0.05)

    await asyncio.wait_for(feed(), 2.0)
    await gateway_server.emit_line("B40191600")
    await _wait_for(lambda: len(bus.published) == 2)
    # The unchanged value is not published again after the reconnect
    assert [p[1] for p in bus.published] == ["21.5", "22"]


@pytest.mark.asyncio
async def test_missing_settings_are_logged(caplog) -> None:
    bridge = GatewayBridge(BridgeConfig(listen_port=None))
    with caplog.at_level(logging.ERROR, logger="otgw2mqtt.bridge"):
        await bridge.start()
    try:
        assert "Configuration missing: mqtt_broker, tcp_host" in caplog.text
        assert bridge.link is None
        assert bridge.bus is None
        assert bridge.server is None
        stats = bridge.get_stats()
        assert stats["link_state"] is None
        assert stats["bus_connected"] is False
    finally:
        await bridge.stop()
