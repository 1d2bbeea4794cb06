"""
Device Transport

How the coordinator sends commands to drones and listens to their events.
There are exactly two variants, picked once at startup from the deployment
mode:

- BrokerTransport: MQTT straight to the simulation's broker
- CloudTransport: commands through the cloud device registry, events from
  the shared Pub/Sub stream de-multiplexed by the EventSubscriptionBridge
"""

import asyncio
import json
import logging
import threading
import uuid
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from enum import Enum
from typing import AsyncIterator, Awaitable, Callable, Optional
from urllib.parse import urlparse

import paho.mqtt.client as mqtt

from ..errors import UpstreamError
from .events import EventMessage, EventSubscriptionBridge, Subscription, normalize_topic
from .registry import DeviceRegistryClient

logger = logging.getLogger(__name__)

MQTT_USERNAME = "dronsole"
CONNECT_TIMEOUT_SECONDS = 5.0
PUBLISH_TIMEOUT_SECONDS = 2.0

CONTROL_SUBFOLDER = "control"
VIDEO_SUBFOLDER = "videostream"
CONTROL_COMMANDS = ("takeoff", "land")


class TransportMode(str, Enum):
    """
    Supported device transports.

    Attributes:
        BROKER: Per-simulation MQTT brokers
        CLOUD: Cloud device registry and Pub/Sub
    """

    BROKER = "broker"
    CLOUD = "cloud"

    @classmethod
    def from_string(cls, value: str) -> "TransportMode":
        value_lower = value.lower().strip()
        for mode in cls:
            if mode.value == value_lower:
                return mode
        valid_modes = ", ".join([m.value for m in cls])
        raise ValueError(f"Invalid deployment mode: '{value}'. Valid modes: {valid_modes}")

    def __str__(self) -> str:
        return self.value


def command_topic(device_id: str, subfolder: str) -> str:
    return f"/devices/{device_id}/commands/{subfolder}"


def events_topic_prefix(device_id: str) -> str:
    return f"/devices/{device_id}/events"


def control_command_payload(command: str, now: Optional[datetime] = None) -> bytes:
    now = now or datetime.now(timezone.utc)
    return json.dumps({
        "Command": command,
        "Timestamp": now.strftime("%Y-%m-%dT%H:%M:%S.%fZ"),
    }).encode()


def video_command_payload(address: str) -> bytes:
    return json.dumps({"Command": "start", "Address": address}).encode()


class DeviceTransport(ABC):
    """Sends commands to and receives events from drones."""

    mode: TransportMode

    @abstractmethod
    async def send_command(self, simulation: str, device_id: str, subfolder: str, payload: bytes) -> None:
        """Deliver one command to a device."""

    @abstractmethod
    def subscribe(self, simulation: str, device_id: str, prefix: str):
        """
        Async context manager yielding a Subscription to the device's events
        under the topic prefix. Leaving the context ends the subscription.
        """

    async def close(self) -> None:
        pass


class BrokerTransport(DeviceTransport):
    """MQTT transport talking to each simulation's broker directly."""

    mode = TransportMode.BROKER

    def __init__(
        self,
        resolve_broker: Callable[[str], Awaitable[str]],
        password: str = "",
        buffer_size: int = 64,
        client_factory: Optional[Callable[[str], mqtt.Client]] = None,
        connect_timeout: float = CONNECT_TIMEOUT_SECONDS,
        publish_timeout: float = PUBLISH_TIMEOUT_SECONDS,
    ):
        self.resolve_broker = resolve_broker
        self.password = password
        self.buffer_size = buffer_size
        self.client_factory = client_factory or self._default_client
        self.connect_timeout = connect_timeout
        self.publish_timeout = publish_timeout

    @staticmethod
    def _default_client(client_id: str) -> mqtt.Client:
        return mqtt.Client(mqtt.CallbackAPIVersion.VERSION2, client_id=client_id)

    def _connect_blocking(self, url: str, client_id: str) -> mqtt.Client:
        parsed = urlparse(url)
        if not parsed.hostname:
            raise UpstreamError(f"invalid broker url: {url}")

        client = self.client_factory(client_id)
        client.username_pw_set(MQTT_USERNAME, self.password)
        if parsed.scheme in ("ssl", "tls", "mqtts"):
            client.tls_set()

        connected = threading.Event()
        failure = []

        def on_connect(_client, _userdata, _flags, reason_code, _properties):
            if reason_code.is_failure:
                failure.append(str(reason_code))
            connected.set()

        client.on_connect = on_connect
        client.connect(parsed.hostname, parsed.port or 1883, keepalive=60)
        client.loop_start()
        if not connected.wait(self.connect_timeout) or failure:
            client.loop_stop()
            client.disconnect()
            reason = failure[0] if failure else "timed out"
            raise UpstreamError(f"could not connect to broker {url}: {reason}")
        return client

    async def _connect(self, simulation: str) -> mqtt.Client:
        url = await self.resolve_broker(simulation)
        client_id = f"simulation-coordinator-{uuid.uuid4()}"
        try:
            return await asyncio.to_thread(self._connect_blocking, url, client_id)
        except UpstreamError:
            raise
        except Exception as e:
            raise UpstreamError(f"could not connect to broker {url}: {e}") from e

    @staticmethod
    def _disconnect(client: mqtt.Client) -> None:
        client.disconnect()
        client.loop_stop()

    async def send_command(self, simulation: str, device_id: str, subfolder: str, payload: bytes) -> None:
        client = await self._connect(simulation)
        topic = command_topic(device_id, subfolder)
        try:
            info = client.publish(topic, payload, qos=1)
            try:
                await asyncio.to_thread(info.wait_for_publish, self.publish_timeout)
            except (RuntimeError, ValueError) as e:
                raise UpstreamError(f"publishing to {topic} failed: {e}") from e
            if not info.is_published():
                raise UpstreamError(f"publishing to {topic} timed out")
            logger.info(f"[MQTT] Published {subfolder} command to {device_id} in {simulation}")
        finally:
            await asyncio.to_thread(self._disconnect, client)

    @asynccontextmanager
    async def subscribe(self, simulation: str, device_id: str, prefix: str) -> AsyncIterator[Subscription]:
        subscription = Subscription(device_id, prefix, self.buffer_size)
        events_prefix = events_topic_prefix(device_id)
        topic = f"{events_prefix}{subscription.prefix}#"

        def on_message(_client, _userdata, msg):
            subfolder = msg.topic[len(events_prefix):]
            subscription.deliver(EventMessage(device_id, normalize_topic(subfolder), msg.payload))

        client = await self._connect(simulation)
        try:
            client.message_callback_add(topic, on_message)
            client.subscribe(topic, qos=1)
            logger.info(f"[MQTT] Subscribed to {topic} in {simulation}")
            yield subscription
        finally:
            subscription.close()
            await asyncio.to_thread(self._disconnect, client)


class CloudTransport(DeviceTransport):
    """Cloud registry commands plus the shared Pub/Sub event stream."""

    mode = TransportMode.CLOUD

    def __init__(self, registry: DeviceRegistryClient, bridge: EventSubscriptionBridge, tenant_id: str):
        self.registry = registry
        self.bridge = bridge
        self.tenant_id = tenant_id

    async def send_command(self, simulation: str, device_id: str, subfolder: str, payload: bytes) -> None:
        await self.registry.send_command(self.tenant_id, device_id, subfolder, payload)

    @asynccontextmanager
    async def subscribe(self, simulation: str, device_id: str, prefix: str) -> AsyncIterator[Subscription]:
        async with self.bridge.subscription(device_id, prefix) as subscription:
            yield subscription


def create_transport(
    mode: TransportMode,
    resolve_broker: Callable[[str], Awaitable[str]],
    registry: Optional[DeviceRegistryClient] = None,
    bridge: Optional[EventSubscriptionBridge] = None,
    tenant_id: str = "",
    broker_password: str = "",
    buffer_size: int = 64,
) -> DeviceTransport:
    """
    Build the transport for a deployment mode.

    Args:
        mode: Deployment mode
        resolve_broker: Maps a simulation name to its broker URL (broker mode)
        registry: Device registry client (cloud mode)
        bridge: Shared event bridge (cloud mode)
        tenant_id: Registry the simulation devices live in (cloud mode)
        broker_password: MQTT password (broker mode)
        buffer_size: Events buffered per subscriber

    Returns:
        DeviceTransport
    """
    if mode == TransportMode.CLOUD:
        if registry is None or bridge is None:
            raise ValueError("cloud transport needs a device registry and an event bridge")
        logger.info("[TRANSPORT] Using cloud device transport")
        return CloudTransport(registry, bridge, tenant_id)
    logger.info("[TRANSPORT] Using MQTT broker device transport")
    return BrokerTransport(resolve_broker, password=broker_password, buffer_size=buffer_size)
