"""Downstream link - keeps the TCP connection to the OpenTherm Gateway alive.

Reads newline-delimited status lines, writes commands, and reconnects after
a fixed delay whenever the connection fails or the gateway closes it.
"""
from __future__ import annotations

import asyncio
import logging
from enum import Enum, auto
from typing import Awaitable, Callable, List, Optional, Tuple

from .protocol import LINE_TERMINATOR

logger = logging.getLogger("otgw2mqtt.bridge.downstream")

DEFAULT_RECONNECT_DELAY = 15.0
DEFAULT_CONNECT_TIMEOUT = 30.0


class LinkState(Enum):
    """Connection state of the device link."""
    DISCONNECTED = auto()
    CONNECTING = auto()
    CONNECTED = auto()
    RECONNECT_PENDING = auto()


class LinkEvent(Enum):
    """Notifications emitted on connection transitions."""
    CONNECTED = auto()
    CONNECT_FAILED = auto()
    CLOSED_BY_PEER = auto()
    CONNECTION_LOST = auto()


# Callback types
LineHandler = Callable[[str], Awaitable[None]]
StatusCallback = Callable[[LinkEvent, Optional[BaseException]], None]


class DeviceLink:
    """Resilient line-oriented TCP client for the gateway.

    One read task runs per connection attempt. When it ends for any reason
    other than ``stop()``, a single reconnect timer is scheduled.

    Example:
        link = DeviceLink("otgw.local", 2323)
        link.set_line_handler(handle_line)
        await link.start()
        await link.send_command("TT", "20.5")
    """

    def __init__(
        self,
        host: str,
        port: int = 2323,
        reconnect_delay: float = DEFAULT_RECONNECT_DELAY,
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
        encoding: str = "ascii",
    ):
        self.host = host
        self.port = port
        self.reconnect_delay = reconnect_delay
        self.connect_timeout = connect_timeout
        self.encoding = encoding

        self._state = LinkState.DISCONNECTED
        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None
        self._lock = asyncio.Lock()  # Serializes writes against connect/disconnect
        self._connected_event = asyncio.Event()
        self._connection_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._stopping = False

        self._line_handler: Optional[LineHandler] = None
        self._status_callbacks: List[StatusCallback] = []

    def set_line_handler(self, handler: LineHandler) -> None:
        """Set the coroutine awaited for every complete line received."""
        self._line_handler = handler

    def add_status_callback(self, callback: StatusCallback) -> None:
        self._status_callbacks.append(callback)

    # --- Lifecycle ---

    async def start(self) -> None:
        """Start connecting in the background and return immediately."""
        if self._state != LinkState.DISCONNECTED:
            return
        self._stopping = False
        logger.info(
            "Attempting to open connection to OTGW via %s:%d", self.host, self.port
        )
        self._spawn_connection()

    async def stop(self) -> None:
        """Disconnect and cancel any pending reconnect. Safe to call repeatedly."""
        if self._state != LinkState.DISCONNECTED:
            logger.info("Disconnecting from OTGW")
        self._stopping = True

        current = asyncio.current_task()
        for task in (self._reconnect_task, self._connection_task):
            if task is None or task is current or task.done():
                continue
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._reconnect_task = None
        self._connection_task = None

        await self._close_writer()
        self._set_state(LinkState.DISCONNECTED)

    async def wait_connected(self, timeout: Optional[float] = None) -> bool:
        """Wait until the link is connected; returns False on timeout."""
        try:
            await asyncio.wait_for(self._connected_event.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return True

    # --- Writing ---

    async def send(self, line: str) -> bool:
        """Write one line, terminated with CR LF.

        Returns False without queueing when not connected.
        """
        line = line.rstrip("\r\n")
        return await self._write((line + LINE_TERMINATOR).encode(self.encoding, errors="replace"))

    async def send_raw(self, data: bytes) -> bool:
        """Write bytes verbatim, bypassing line framing."""
        return await self._write(data)

    async def send_command(self, code: str, value: str) -> bool:
        logger.info(
            "Sending command %s=%s to TCP %s:%d", code, value, self.host, self.port
        )
        return await self.send(f"{code}={value}")

    async def _write(self, data: bytes) -> bool:
        async with self._lock:
            writer = self._writer
            if self._state != LinkState.CONNECTED or writer is None:
                logger.debug("Not connected to OTGW, dropping write: %r", data)
                return False
            try:
                writer.write(data)
                await writer.drain()
            except (OSError, RuntimeError) as e:
                # The read loop detects a dead connection on its own
                logger.error("Exception during writing to TCP stream: %s", e)
                return False
        logger.debug("Sent to OTGW: %r", data)
        return True

    # --- Connection ---

    def _spawn_connection(self) -> None:
        self._connection_task = asyncio.create_task(self._run_connection())

    async def _run_connection(self) -> None:
        self._set_state(LinkState.CONNECTING)
        try:
            reader, writer = await asyncio.wait_for(
                asyncio.open_connection(self.host, self.port),
                timeout=self.connect_timeout,
            )
        except (OSError, asyncio.TimeoutError) as e:
            logger.warning("Unable to connect to OTGW %s:%d (%s)", self.host, self.port, e)
            self._schedule_reconnect()
            self._notify(LinkEvent.CONNECT_FAILED, e)
            return

        async with self._lock:
            self._reader, self._writer = reader, writer
            self._set_state(LinkState.CONNECTED)
        logger.info("Connected to OTGW %s:%d", self.host, self.port)
        self._notify(LinkEvent.CONNECTED, None)

        event, error = await self._read_loop(reader)

        await self._close_writer()
        if self._stopping:
            return

        if event == LinkEvent.CLOSED_BY_PEER:
            logger.warning("OTGW %s:%d closed the connection", self.host, self.port)
        else:
            logger.error("Exception during reading from TCP stream: %s", error)
        self._schedule_reconnect()
        self._notify(event, error)

    async def _read_loop(
        self, reader: asyncio.StreamReader
    ) -> Tuple[LinkEvent, Optional[BaseException]]:
        """Read lines until the connection ends; returns why it ended."""
        while not self._stopping:
            try:
                raw = await reader.readline()
            except (OSError, ValueError) as e:
                return LinkEvent.CONNECTION_LOST, e

            if not raw.endswith(b"\n"):
                # EOF, possibly after a partial line
                return LinkEvent.CLOSED_BY_PEER, None

            line = raw.decode(self.encoding, errors="replace").rstrip("\r\n")
            if not line:
                return LinkEvent.CONNECTION_LOST, ConnectionError("Empty line received")

            if self._line_handler is None:
                continue
            try:
                await self._line_handler(line)
            except Exception:
                logger.exception("Error handling line from OTGW: '%s'", line)

        return LinkEvent.CLOSED_BY_PEER, None

    async def _close_writer(self) -> None:
        async with self._lock:
            writer = self._writer
            self._writer = None
            self._reader = None
            self._connected_event.clear()
        if writer is None:
            return
        try:
            writer.close()
            await writer.wait_closed()
        except (OSError, RuntimeError):
            pass

    # --- Reconnect ---

    def _schedule_reconnect(self) -> None:
        if self._stopping:
            return
        if self._reconnect_task is not None and not self._reconnect_task.done():
            return
        self._set_state(LinkState.RECONNECT_PENDING)
        logger.info("Scheduling reconnect after %s seconds", self.reconnect_delay)
        self._reconnect_task = asyncio.create_task(self._reconnect_after_delay())

    async def _reconnect_after_delay(self) -> None:
        await asyncio.sleep(self.reconnect_delay)
        self._reconnect_task = None
        if self._stopping:
            return
        logger.info(
            "Attempting to open connection to OTGW via %s:%d", self.host, self.port
        )
        self._spawn_connection()

    # --- Notifications ---

    def _set_state(self, state: LinkState) -> None:
        if state == self._state:
            return
        logger.debug("OTGW link state %s -> %s", self._state.name, state.name)
        self._state = state
        if state == LinkState.CONNECTED:
            self._connected_event.set()
        else:
            self._connected_event.clear()

    def _notify(self, event: LinkEvent, error: Optional[BaseException]) -> None:
        for cb in self._status_callbacks:
            try:
                cb(event, error)
            except Exception:
                logger.exception("Link status callback failed")

    # --- Properties ---

    @property
    def state(self) -> LinkState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state == LinkState.CONNECTED
