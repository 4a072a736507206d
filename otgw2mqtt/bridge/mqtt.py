"""MQTT bus client - paho-mqtt wrapped for use from asyncio.

Paho runs its network loop in its own thread; received messages are handed
to the event loop through a queue and dispatched one at a time, in order.
"""
from __future__ import annotations

import asyncio
import logging
import socket
from typing import Any, Awaitable, Callable, Dict, Optional

from paho.mqtt import client as mqtt

logger = logging.getLogger("otgw2mqtt.bridge.mqtt")

DEFAULT_KEEPALIVE = 60
DEFAULT_PUBLISH_TIMEOUT = 5.0
DEFAULT_RECONNECT_DELAY = 15

MessageHandler = Callable[[str, bytes], Awaitable[None]]


def default_client_id() -> str:
    return f"OpenThermGateway2Mqtt-{socket.gethostname()}"


class MqttBus:
    """Publish/subscribe access to the MQTT broker.

    Subscriptions are remembered and renewed on every (re)connect; paho
    handles reconnecting with a fixed delay.
    """

    def __init__(
        self,
        host: str,
        port: int = 1883,
        username: Optional[str] = None,
        password: Optional[str] = None,
        client_id: Optional[str] = None,
        keepalive: int = DEFAULT_KEEPALIVE,
        reconnect_delay: int = DEFAULT_RECONNECT_DELAY,
        publish_timeout: float = DEFAULT_PUBLISH_TIMEOUT,
    ):
        self.host = host
        self.port = port
        self.keepalive = keepalive
        self.publish_timeout = publish_timeout

        self.client = mqtt.Client(
            mqtt.CallbackAPIVersion.VERSION2,
            client_id=client_id or default_client_id(),
        )
        if username:
            self.client.username_pw_set(username, password)
        self.client.reconnect_delay_set(min_delay=reconnect_delay, max_delay=reconnect_delay)

        self.client.on_connect = self._on_connect
        self.client.on_disconnect = self._on_disconnect
        self.client.on_message = self._on_message

        self._subscriptions: Dict[str, int] = {}
        self._message_handler: Optional[MessageHandler] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._inbox: Optional[asyncio.Queue] = None
        self._dispatch_task: Optional[asyncio.Task] = None
        self._was_connected = False
        self._started = False

    def set_message_handler(self, handler: MessageHandler) -> None:
        """Set the coroutine awaited for every message on a subscribed topic."""
        self._message_handler = handler

    # --- Lifecycle ---

    async def start(self) -> None:
        """Connect in the background; paho keeps retrying until stopped."""
        if self._started:
            return
        self._loop = asyncio.get_running_loop()
        self._inbox = asyncio.Queue()
        self._dispatch_task = asyncio.create_task(self._dispatch_loop())

        logger.info("Connecting to %s:%d", self.host, self.port)
        self.client.connect_async(self.host, self.port, self.keepalive)
        self.client.loop_start()
        self._started = True

    async def stop(self) -> None:
        if not self._started:
            return
        self._started = False

        self.client.disconnect()
        await asyncio.to_thread(self.client.loop_stop)

        if self._dispatch_task:
            self._dispatch_task.cancel()
            try:
                await self._dispatch_task
            except asyncio.CancelledError:
                pass
            self._dispatch_task = None

        logger.info("MQTT Client: Stopped")

    # --- Publish / subscribe ---

    def subscribe(self, topic: str, qos: int = 2) -> None:
        """Subscribe now if connected, and again after every reconnect."""
        self._subscriptions[topic] = qos
        if self.is_connected:
            self.client.subscribe(topic, qos=qos)

    async def publish(
        self,
        topic: str,
        payload: str,
        qos: int = 2,
        retain: bool = True,
    ) -> bool:
        """Publish and wait (bounded) for the broker to acknowledge.

        Returns False when disconnected or the publish did not complete.
        """
        if not self.is_connected:
            logger.debug("MQTT Client: not connected, dropping %s", topic)
            return False

        info: mqtt.MQTTMessageInfo = self.client.publish(
            topic, payload=payload, qos=qos, retain=retain
        )
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            logger.warning("MQTT Client: publish to %s failed (%s)", topic, mqtt.error_string(info.rc))
            return False

        try:
            await asyncio.to_thread(info.wait_for_publish, self.publish_timeout)
        except (RuntimeError, ValueError) as e:
            logger.warning("MQTT Client: publish to %s failed (%s)", topic, e)
            return False

        if not info.is_published():
            logger.warning("MQTT Client: publish to %s not acknowledged within %ss", topic, self.publish_timeout)
            return False
        return True

    # --- Paho callbacks (run on the paho thread) ---

    def _on_connect(
        self,
        client: mqtt.Client,
        userdata: Any,
        flags: Any,
        reason_code: Any,
        properties: Any,
    ) -> None:
        if reason_code.is_failure:
            logger.warning("MQTT Client: Unable to connect (%s)", reason_code)
            return

        logger.info("MQTT Client: Connected")
        self._was_connected = True
        for topic, qos in self._subscriptions.items():
            client.subscribe(topic, qos=qos)

    def _on_disconnect(
        self,
        client: mqtt.Client,
        userdata: Any,
        disconnect_flags: Any,
        reason_code: Any,
        properties: Any,
    ) -> None:
        if self._was_connected:
            logger.info("MQTT Client: Disconnected (%s)", reason_code)
        else:
            logger.warning("MQTT Client: Unable to connect (%s)", reason_code)
        self._was_connected = False

    def _on_message(self, client: mqtt.Client, userdata: Any, msg: mqtt.MQTTMessage) -> None:
        if self._loop is None or self._inbox is None:
            return
        self._loop.call_soon_threadsafe(self._inbox.put_nowait, (msg.topic, msg.payload))

    async def _dispatch_loop(self) -> None:
        assert self._inbox is not None
        while True:
            topic, payload = await self._inbox.get()
            if self._message_handler is None:
                continue
            try:
                await self._message_handler(topic, payload)
            except Exception:
                logger.exception("Error handling MQTT message on %s", topic)

    # --- Properties ---

    @property
    def is_connected(self) -> bool:
        return self.client.is_connected()
