"""
Transport Service - publish/subscribe for simulated devices

One transport is shared by every simulator in the process. The MQTT
implementation wraps a single paho-mqtt client; the loopback
implementation is an in-process broker used for dry runs and tests.
"""

import asyncio
import json
import logging
import threading
import time
import uuid
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple
from urllib.parse import urlparse

import paho.mqtt.client as mqtt
from paho.mqtt.enums import CallbackAPIVersion

logger = logging.getLogger(__name__)


class Topics:
    """Topic layout for the simulated fleet"""

    def __init__(self, base: str = "obedio"):
        self.base = base.rstrip("/")

    def status(self, device_id: str) -> str:
        return f"{self.base}/status/{device_id}"

    def command(self, device_id: str) -> str:
        return f"{self.base}/command/{device_id}"

    def response(self, device_id: str) -> str:
        return f"{self.base}/response/{device_id}"

    def relay(self, repeater_id: str) -> str:
        return f"{self.base}/relay/{repeater_id}"

    def device(self, site: str, room: str, device_type: str, device_id: str, action: str) -> str:
        """Per-device sub-topic, e.g. ``obedio/yacht-1/salon/button/BTN-1/press``"""
        return f"{self.base}/{site}/{room}/{device_type}/{device_id}/{action}"


@dataclass
class TransportSubscription:
    """A callback registered for a topic filter"""

    subscription_id: str
    topic: str
    callback: Callable


class Transport(ABC):
    """Publish/subscribe contract used by simulators"""

    def __init__(self):
        self._subscriptions: Dict[str, TransportSubscription] = {}
        # Guards _subscriptions; the paho network thread reads it
        self._subscriptions_lock = threading.Lock()
        self._stats_lock = threading.Lock()
        self.messages_sent = 0
        self.messages_received = 0
        self.bytes_sent = 0
        self.bytes_received = 0
        self.errors = 0
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    @property
    @abstractmethod
    def connected(self) -> bool:
        pass

    @abstractmethod
    async def connect(self):
        pass

    @abstractmethod
    async def disconnect(self):
        pass

    @abstractmethod
    async def publish(self, topic: str, payload: Any, qos: int = 1, retain: bool = False) -> bool:
        """Publish a JSON-serializable payload. Returns False on failure."""
        pass

    async def subscribe(self, topic: str, callback: Callable) -> str:
        """Register ``callback(message: dict)`` for a topic filter"""
        subscription_id = str(uuid.uuid4())[:8]
        subscription = TransportSubscription(
            subscription_id=subscription_id, topic=topic, callback=callback
        )
        with self._subscriptions_lock:
            self._subscriptions[subscription_id] = subscription
        await self._on_subscribe(topic)
        logger.debug(f"Subscribed {subscription_id} to {topic}")
        return subscription_id

    async def unsubscribe(self, subscription_id: str) -> bool:
        with self._subscriptions_lock:
            subscription = self._subscriptions.pop(subscription_id, None)
            still_used = subscription is not None and any(
                s.topic == subscription.topic for s in self._subscriptions.values()
            )
        if subscription is None:
            return False
        if not still_used:
            await self._on_unsubscribe(subscription.topic)
        logger.debug(f"Unsubscribed {subscription_id} from {subscription.topic}")
        return True

    async def _on_subscribe(self, topic: str):
        pass

    async def _on_unsubscribe(self, topic: str):
        pass

    def subscription_count(self) -> int:
        with self._subscriptions_lock:
            return len(self._subscriptions)

    def subscriptions(self) -> List[TransportSubscription]:
        """Snapshot of the registered subscriptions, safe from any thread"""
        with self._subscriptions_lock:
            return list(self._subscriptions.values())

    def stats(self) -> Dict[str, int]:
        """Counters for the metrics collector"""
        with self._stats_lock:
            return {
                "messages_sent": self.messages_sent,
                "messages_received": self.messages_received,
                "bytes_sent": self.bytes_sent,
                "bytes_received": self.bytes_received,
                "errors": self.errors,
                "connections": 1 if self.connected else 0,
                "subscriptions": self.subscription_count(),
            }

    def _count_sent(self, size: int):
        with self._stats_lock:
            self.messages_sent += 1
            self.bytes_sent += size

    def _count_received(self, size: int):
        with self._stats_lock:
            self.messages_received += 1
            self.bytes_received += size

    def _count_error(self):
        with self._stats_lock:
            self.errors += 1

    def _matching(self, topic: str) -> List[TransportSubscription]:
        return [
            s for s in self.subscriptions()
            if mqtt.topic_matches_sub(s.topic, topic)
        ]

    @staticmethod
    def _encode(payload: Any) -> str:
        if isinstance(payload, (str, bytes)):
            return payload if isinstance(payload, str) else payload.decode("utf-8")
        return json.dumps(payload, default=str)

    @staticmethod
    def _decode(raw: str) -> Any:
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            return {"raw": raw}


class MqttTransport(Transport):
    """Shared paho-mqtt client for the whole fleet"""

    def __init__(
        self,
        broker_url: str = "mqtt://localhost:1883",
        client_id: Optional[str] = None,
        username: Optional[str] = None,
        password: Optional[str] = None,
        keepalive: int = 60,
        reconnect_period: float = 1.0,
        connect_timeout: float = 30.0,
        publish_retries: int = 3,
        will_topic: Optional[str] = None,
    ):
        super().__init__()
        parsed = urlparse(broker_url)
        self.broker = parsed.hostname or "localhost"
        self.port = parsed.port or (8883 if parsed.scheme in ("mqtts", "ssl") else 1883)
        self.use_tls = parsed.scheme in ("mqtts", "ssl")
        self.client_id = client_id or f"obedio-sim-{uuid.uuid4().hex[:8]}"
        self.username = username or parsed.username
        self.password = password or parsed.password
        self.keepalive = keepalive
        self.reconnect_period = reconnect_period
        self.connect_timeout = connect_timeout
        self.publish_retries = max(1, publish_retries)
        self.will_topic = will_topic
        self.error: Optional[str] = None
        self._client: Optional[mqtt.Client] = None
        self._connected = False

    @property
    def connected(self) -> bool:
        return self._connected

    async def connect(self):
        """Connect and wait for the broker to accept the session.

        Raises:
            RuntimeError: If the broker refuses or does not answer in time
        """
        if self._client is not None:
            return

        self._loop = asyncio.get_running_loop()
        client = mqtt.Client(
            callback_api_version=CallbackAPIVersion.VERSION2,
            client_id=self.client_id,
            protocol=mqtt.MQTTv311,
        )
        if self.username:
            client.username_pw_set(self.username, self.password)
        if self.use_tls:
            client.tls_set()
        client.reconnect_delay_set(
            min_delay=max(1, int(self.reconnect_period)), max_delay=30
        )
        if self.will_topic:
            # Broker-side notice for an unclean drop; devices publish their own lwt on stop
            client.will_set(
                self.will_topic,
                json.dumps({"client_id": self.client_id, "status": "offline"}),
                qos=1,
            )

        def on_connect(client, userdata, flags, reason_code, properties=None):
            if reason_code.is_failure:
                self._connected = False
                self.error = f"Connection failed with code {reason_code}"
                logger.error(f"MQTT connection failed: {self.error}")
                return
            self._connected = True
            self.error = None
            # Clean session: restore filters after every (re)connect
            for topic in {s.topic for s in self.subscriptions()}:
                client.subscribe(topic, qos=1)
            logger.info(f"Connected to MQTT broker {self.broker}:{self.port}")

        def on_disconnect(client, userdata, disconnect_flags, reason_code, properties=None):
            self._connected = False
            if reason_code.is_failure:
                self.error = f"Unexpected disconnect (code {reason_code})"
                logger.warning(f"MQTT disconnected: {self.error}")

        def on_message(client, userdata, msg):
            try:
                raw = msg.payload.decode("utf-8")
                self._count_received(len(msg.payload))
                message = {
                    "topic": msg.topic,
                    "payload": self._decode(raw),
                    "timestamp": time.time(),
                }
                for subscription in self._matching(msg.topic):
                    if asyncio.iscoroutinefunction(subscription.callback):
                        asyncio.run_coroutine_threadsafe(
                            subscription.callback(message), self._loop
                        )
                    else:
                        self._loop.call_soon_threadsafe(subscription.callback, message)
            except Exception as e:
                self._count_error()
                logger.error(f"Error processing MQTT message: {e}")

        client.on_connect = on_connect
        client.on_disconnect = on_disconnect
        client.on_message = on_message
        self._client = client

        try:
            client.connect_async(self.broker, self.port, keepalive=self.keepalive)
            client.loop_start()
            logger.info(f"Connecting to MQTT broker {self.broker}:{self.port} as {self.client_id}")

            deadline = time.monotonic() + self.connect_timeout
            while time.monotonic() < deadline:
                await asyncio.sleep(0.1)
                if self._connected:
                    return
                if self.error:
                    raise RuntimeError(self.error)
            raise RuntimeError(f"Connection timeout to {self.broker}:{self.port}")

        except Exception as e:
            self._count_error()
            client.loop_stop()
            self._client = None
            self._connected = False
            logger.error(f"Failed to connect to MQTT: {e}")
            raise RuntimeError(f"Failed to connect to MQTT broker: {e}")

    async def disconnect(self):
        if self._client is None:
            return
        self._client.disconnect()
        self._client.loop_stop()
        self._client = None
        self._connected = False
        logger.info("MQTT transport disconnected")

    async def publish(self, topic: str, payload: Any, qos: int = 1, retain: bool = False) -> bool:
        if self._client is None:
            self._count_error()
            logger.error(f"Cannot publish to {topic}: transport not connected")
            return False

        data = self._encode(payload)
        delay = 0.05
        last_error = None
        for attempt in range(1, self.publish_retries + 1):
            try:
                info = self._client.publish(topic, data, qos=qos, retain=retain)
            except (ValueError, RuntimeError) as e:
                last_error = str(e)
            else:
                if info.rc == mqtt.MQTT_ERR_SUCCESS:
                    self._count_sent(len(data))
                    return True
                if info.rc == mqtt.MQTT_ERR_NO_CONN and qos > 0:
                    # paho keeps QoS>0 messages queued until reconnect
                    self._count_sent(len(data))
                    logger.debug(f"Queued {topic} while broker is unreachable")
                    return True
                last_error = mqtt.error_string(info.rc)
            if attempt < self.publish_retries:
                await asyncio.sleep(delay)
                delay = min(1.0, delay * 2)

        self._count_error()
        logger.error(f"Publish to {topic} failed after {self.publish_retries} attempts: {last_error}")
        return False

    async def _on_subscribe(self, topic: str):
        if self._client is not None and self._connected:
            self._client.subscribe(topic, qos=1)

    async def _on_unsubscribe(self, topic: str):
        if self._client is not None and self._connected:
            self._client.unsubscribe(topic)


class LoopbackTransport(Transport):
    """In-process broker with the same contract as MqttTransport.

    Published messages are delivered to matching local subscribers and kept
    in a bounded history for inspection.
    """

    def __init__(self, history_size: int = 10000):
        super().__init__()
        self._connected = False
        self.history: Deque[Tuple[str, Any]] = deque(maxlen=history_size)

    @property
    def connected(self) -> bool:
        return self._connected

    async def connect(self):
        self._loop = asyncio.get_running_loop()
        self._connected = True
        logger.info("Loopback transport ready")

    async def disconnect(self):
        self._connected = False

    async def publish(self, topic: str, payload: Any, qos: int = 1, retain: bool = False) -> bool:
        if not self._connected:
            self._count_error()
            logger.error(f"Cannot publish to {topic}: transport not connected")
            return False
        data = self._encode(payload)
        self._count_sent(len(data))
        self.history.append((topic, self._decode(data)))
        await self._deliver(topic, data)
        return True

    async def inject(self, topic: str, payload: Any):
        """Deliver a message as if it arrived from the broker"""
        await self._deliver(topic, self._encode(payload))

    async def _deliver(self, topic: str, data: str):
        subscriptions = self._matching(topic)
        if not subscriptions:
            return
        self._count_received(len(data))
        message = {"topic": topic, "payload": self._decode(data), "timestamp": time.time()}
        for subscription in subscriptions:
            try:
                result = subscription.callback(message)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                self._count_error()
                logger.error(f"Error delivering {topic} to {subscription.subscription_id}: {e}")

    def messages(self, topic_filter: str = "#") -> List[Tuple[str, Any]]:
        """Published (topic, payload) pairs matching an MQTT topic filter"""
        return [(t, p) for t, p in self.history if mqtt.topic_matches_sub(topic_filter, t)]

    def clear(self):
        self.history.clear()


def create_transport(settings) -> Transport:
    """Build the transport selected in settings"""
    if settings.transport == "loopback":
        return LoopbackTransport()
    if settings.transport != "mqtt":
        raise ValueError(f"Unknown transport: {settings.transport}")
    client_id = f"{settings.mqtt_client_prefix}-{uuid.uuid4().hex[:8]}"
    return MqttTransport(
        broker_url=settings.mqtt_broker_url,
        client_id=client_id,
        username=settings.mqtt_username,
        password=settings.mqtt_password,
        keepalive=settings.mqtt_keepalive,
        reconnect_period=settings.mqtt_reconnect_period,
        connect_timeout=settings.mqtt_connect_timeout,
        publish_retries=settings.mqtt_publish_retries,
        will_topic=f"{Topics(settings.topic_base).base}/lwt/{client_id}",
    )
