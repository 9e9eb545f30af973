"""MQTT transport for the realtime change feed."""

import asyncio
import json
import logging
from typing import Any

import paho.mqtt.client as mqtt

from ..config import FeedConfig
from ..errors import DecodeError
from ..models import ChangeEvent
from .subscription import ChangeHandler, ReadyCallback, Subscription, deliver

logger = logging.getLogger(__name__)


class MQTTChangeFeed:
    """Receives change events published as JSON on an MQTT topic.

    paho runs its network loop in a background thread; messages are handed
    to the asyncio loop through a queue and consumed by a single task, so
    the handler sees events one at a time, in arrival order.
    """

    def __init__(self, config: FeedConfig, client: mqtt.Client | None = None):
        self.config = config

        # Paho MQTT client
        self._client = client or mqtt.Client(mqtt.CallbackAPIVersion.VERSION2)
        self._client.on_connect = self._handle_connect
        self._client.on_message = self._handle_message
        self._client.on_disconnect = self._handle_disconnect

        # Connection state
        self._connected = False
        self._loop: asyncio.AbstractEventLoop | None = None
        self._queue: asyncio.Queue[ChangeEvent] | None = None
        self.messages_rejected = 0

    def _handle_connect(
        self,
        client: mqtt.Client,
        userdata: Any,
        flags: Any,
        reason_code: Any,
        properties: Any = None,
    ) -> None:
        """Handle connection to broker."""
        if reason_code == 0:
            self._connected = True
            logger.info(f"Connected to MQTT broker at {self.config.broker}:{self.config.port}")
            client.subscribe(self.config.topic, qos=1)
            logger.info(f"Subscribed to change topic: {self.config.topic}")
        else:
            logger.error(f"Failed to connect to MQTT broker: {reason_code}")

    def _handle_message(
        self,
        client: mqtt.Client,
        userdata: Any,
        msg: mqtt.MQTTMessage,
    ) -> None:
        """Decode an incoming message and queue it for the consumer."""
        try:
            event = ChangeEvent.from_dict(json.loads(msg.payload.decode("utf-8")))
        except (UnicodeDecodeError, ValueError, DecodeError) as e:
            self.messages_rejected += 1
            logger.warning(f"Skipping undecodable change on {msg.topic}: {e}")
            return

        logger.debug(
            f"Received {event.operation.value} for {event.entity_type}/{event.entity_id}"
        )

        if self._queue and self._loop:
            self._loop.call_soon_threadsafe(self._queue.put_nowait, event)

    def _handle_disconnect(
        self,
        client: mqtt.Client,
        userdata: Any,
        disconnect_flags: Any,
        reason_code: Any,
        properties: Any = None,
    ) -> None:
        """Handle disconnection from broker."""
        self._connected = False
        # paho reconnects on its own; missed events are reconciled by the next smart sync
        logger.warning(f"Disconnected from MQTT broker: {reason_code}")

    async def connect(self) -> bool:
        """Connect to the MQTT broker.

        Returns:
            True if connection successful.
        """
        self._loop = asyncio.get_running_loop()
        self._queue = asyncio.Queue()

        if self.config.username and self.config.password:
            self._client.username_pw_set(self.config.username, self.config.password)

        try:
            self._client.connect(self.config.broker, self.config.port, keepalive=60)
            self._client.loop_start()
        except OSError as e:
            logger.error(f"Failed to connect to MQTT broker: {e}")
            return False

        # Wait for connection
        attempts = max(1, int(self.config.connect_timeout_seconds / 0.1))
        for _ in range(attempts):
            if self._connected:
                return True
            await asyncio.sleep(0.1)

        logger.error("Timeout waiting for MQTT connection")
        self._client.loop_stop()
        return False

    def disconnect(self) -> None:
        """Disconnect from the MQTT broker."""
        self._client.loop_stop()
        self._client.disconnect()
        self._connected = False

    async def _consume(self, handler: ChangeHandler) -> None:
        while True:
            event = await self._queue.get()
            await deliver(handler, event)

    async def subscribe_to_changes(
        self,
        handler: ChangeHandler,
        on_ready: ReadyCallback | None = None,
    ) -> Subscription:
        """Connect and start delivering events to ``handler``.

        Args:
            handler: Called once per event, awaited before the next one.
            on_ready: Called after connecting, before the first delivery.

        Raises:
            ConnectionError: If the broker cannot be reached.
        """
        if not await self.connect():
            raise ConnectionError(
                f"Could not connect to MQTT broker {self.config.broker}:{self.config.port}"
            )

        if on_ready:
            on_ready()

        task = asyncio.create_task(self._consume(handler))
        subscription = Subscription(task, name=f"mqtt:{self.config.topic}")
        subscription.add_close_callback(self.disconnect)
        return subscription

    @property
    def is_connected(self) -> bool:
        """Check if connected to broker."""
        return self._connected

    async def check_connection(self) -> bool:
        """Check if broker is reachable."""
        if self._connected:
            return True

        try:
            test_client = mqtt.Client(mqtt.CallbackAPIVersion.VERSION2)
            test_client.connect(self.config.broker, self.config.port, keepalive=5)
            test_client.disconnect()
            return True
        except OSError:
            return False
