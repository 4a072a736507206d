from __future__ import annotations

import asyncio

import pytest

from otgw2mqtt.bridge.upstream import ClientSession, PassthroughServer


async def _wait_for(predicate, timeout: float = 2.0) -> None:
    async def poll():
        while not predicate():
            await asyncio.sleep(0.01)

    await asyncio.wait_for(poll(), timeout)


@pytest.mark.asyncio
async def test_broadcast_reaches_every_peer() -> None:
    server = PassthroughServer(host="127.0.0.1", port=0)
    await server.start()
    try:
        port = server.bound_port
        r1, w1 = await asyncio.open_connection("127.0.0.1", port)
        r2, w2 = await asyncio.open_connection("127.0.0.1", port)
        await _wait_for(lambda: server.client_count == 2)

        await server.broadcast("B40191580")
        assert await asyncio.wait_for(r1.readline(), 2.0) == b"B40191580\r\n"
        assert await asyncio.wait_for(r2.readline(), 2.0) == b"B40191580\r\n"

        w1.close()
        w2.close()
        await _wait_for(lambda: server.client_count == 0)
    finally:
        await server.stop()


@pytest.mark.asyncio
async def test_peer_lines_reach_handler() -> None:
    server = PassthroughServer(host="127.0.0.1", port=0)
    received: list[tuple[str, int]] = []

    async def on_line(line: str, session: ClientSession) -> None:
        received.append((line, session.session_id))

    server.set_line_handler(on_line)
    await server.start()
    try:
        _, writer = await asyncio.open_connection("127.0.0.1", server.bound_port)
        writer.write(b"TT=20.5\r\n\r\nPS=1\n")
        await writer.drain()
        await _wait_for(lambda: len(received) == 2)
        # Blank lines are skipped
        assert received == [("TT=20.5", 1), ("PS=1", 1)]
        writer.close()
    finally:
        await server.stop()


@pytest.mark.asyncio
async def test_handler_error_keeps_session_open() -> None:
    server = PassthroughServer(host="127.0.0.1", port=0)
    received: list[str] = []

    async def on_line(line: str, session: ClientSession) -> None:
        if line == "bad":
            raise ValueError("nope")
        received.append(line)

    server.set_line_handler(on_line)
    await server.start()
    try:
        _, writer = await asyncio.open_connection("127.0.0.1", server.bound_port)
        writer.write(b"bad\r\nCS=45\r\n")
        await writer.drain()
        await _wait_for(lambda: received == ["CS=45"])
        assert server.client_count == 1
        writer.close()
    finally:
        await server.stop()


@pytest.mark.asyncio
async def test_broadcast_without_peers_is_a_no_op() -> None:
    server = PassthroughServer(host="127.0.0.1", port=0)
    await server.start()
    try:
        await server.broadcast("B40191580")
        assert server.is_running
    finally:
        await server.stop()
    assert not server.is_running
    assert server.bound_port is None
    # Second stop does nothing
    await server.stop()


@pytest.mark.asyncio
async def test_peer_that_stops_reading_is_dropped() -> None:
    server = PassthroughServer(host="127.0.0.1", port=0, send_timeout=0.5)
    await server.start()
    try:
        port = server.bound_port
        # This peer connects and never reads
        _, stalled_writer = await asyncio.open_connection("127.0.0.1", port)
        reader, writer = await asyncio.open_connection("127.0.0.1", port)
        await _wait_for(lambda: server.client_count == 2)

        received = 0

        async def read_all():
            nonlocal received
            while True:
                raw = await reader.readline()
                if not raw or raw == b"END\r\n":
                    return
                received += 1

        read_task = asyncio.create_task(read_all())
        line = "B40191580" * 512

        async def flood():
            while server.client_count == 2:
                await server.broadcast(line)
                await asyncio.sleep(0)

        await asyncio.wait_for(flood(), 10.0)
        assert server.client_count == 1

        # The remaining peer keeps receiving
        await server.broadcast("END")
        await asyncio.wait_for(read_task, 5.0)
        assert received > 0

        stalled_writer.close()
        writer.close()
    finally:
        await server.stop()
