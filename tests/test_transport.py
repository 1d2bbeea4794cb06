"""
Tests for the broker and cloud device transports.

The paho client is replaced by a recording fake; the broker "connects"
as soon as its network loop starts.
"""

import asyncio
import json
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock, Mock

import pytest

from simulation_coordinator.errors import UpstreamError
from simulation_coordinator.services.events import EventSubscriptionBridge
from simulation_coordinator.services.transport import (
    BrokerTransport,
    CloudTransport,
    TransportMode,
    command_topic,
    control_command_payload,
    create_transport,
    video_command_payload,
)


class ReasonCode:
    def __init__(self, is_failure):
        self.is_failure = is_failure

    def __str__(self):
        return "Not authorized" if self.is_failure else "Success"


class FakeMqttClient:
    def __init__(self, client_id, refuse=False, published=True):
        self.client_id = client_id
        self.refuse = refuse
        self.published_ok = published
        self.on_connect = None
        self.credentials = None
        self.connected_to = None
        self.published = []
        self.subscriptions = []
        self.callbacks = {}
        self.tls = False
        self.disconnected = False

    def username_pw_set(self, username, password):
        self.credentials = (username, password)

    def tls_set(self):
        self.tls = True

    def connect(self, host, port, keepalive=60):
        self.connected_to = (host, port)

    def loop_start(self):
        self.on_connect(self, None, None, ReasonCode(self.refuse), None)

    def loop_stop(self):
        pass

    def disconnect(self):
        self.disconnected = True

    def publish(self, topic, payload, qos=0):
        self.published.append((topic, payload, qos))
        info = Mock()
        info.is_published.return_value = self.published_ok
        return info

    def subscribe(self, topic, qos=0):
        self.subscriptions.append((topic, qos))

    def message_callback_add(self, topic, callback):
        self.callbacks[topic] = callback


def _broker_transport(clients, url="tcp://mqtt-server-svc.sim-a:8883", **client_kwargs):
    def factory(client_id):
        client = FakeMqttClient(client_id, **client_kwargs)
        clients.append(client)
        return client

    return BrokerTransport(AsyncMock(return_value=url), password="secret", client_factory=factory)


@pytest.mark.unit
class TestPayloads:
    def test_control_command(self):
        now = datetime(2024, 5, 1, 12, 0, 0, 123456, tzinfo=timezone.utc)

        payload = json.loads(control_command_payload("takeoff", now))

        assert payload == {"Command": "takeoff", "Timestamp": "2024-05-01T12:00:00.123456Z"}

    def test_video_command(self):
        assert json.loads(video_command_payload("rtsp://h/alpha")) == {"Command": "start", "Address": "rtsp://h/alpha"}

    def test_command_topic(self):
        assert command_topic("alpha", "control") == "/devices/alpha/commands/control"

    def test_mode_from_string(self):
        assert TransportMode.from_string(" Cloud ") == TransportMode.CLOUD
        with pytest.raises(ValueError):
            TransportMode.from_string("carrier-pigeon")


@pytest.mark.unit
class TestBrokerTransport:
    """MQTT commands and event subscriptions."""

    @pytest.mark.asyncio
    async def test_send_command_publishes_with_qos_1(self):
        clients = []
        transport = _broker_transport(clients)

        await transport.send_command("sim-a", "alpha", "control", b"{}")

        client = clients[0]
        assert client.connected_to == ("mqtt-server-svc.sim-a", 8883)
        assert client.credentials == ("dronsole", "secret")
        assert client.published == [("/devices/alpha/commands/control", b"{}", 1)]
        assert client.disconnected
        transport.resolve_broker.assert_awaited_once_with("sim-a")

    @pytest.mark.asyncio
    async def test_tls_for_ssl_urls(self):
        clients = []
        transport = _broker_transport(clients, url="ssl://mqtt.example.com:8883")

        await transport.send_command("sim-a", "alpha", "control", b"{}")

        assert clients[0].tls

    @pytest.mark.asyncio
    async def test_refused_connection(self):
        transport = _broker_transport([], refuse=True)

        with pytest.raises(UpstreamError, match="could not connect"):
            await transport.send_command("sim-a", "alpha", "control", b"{}")

    @pytest.mark.asyncio
    async def test_unacknowledged_publish(self):
        clients = []
        transport = _broker_transport(clients, published=False)

        with pytest.raises(UpstreamError, match="timed out"):
            await transport.send_command("sim-a", "alpha", "control", b"{}")
        assert clients[0].disconnected

    @pytest.mark.asyncio
    async def test_subscription_receives_device_events(self):
        clients = []
        transport = _broker_transport(clients)

        async with transport.subscribe("sim-a", "alpha", "telemetry") as subscription:
            client = clients[0]
            assert client.subscriptions == [("/devices/alpha/events/telemetry/#", 1)]

            callback = client.callbacks["/devices/alpha/events/telemetry/#"]
            callback(client, None, Mock(topic="/devices/alpha/events/telemetry/gps", payload=b"42"))

            message = await asyncio.wait_for(subscription.get(), timeout=1)
            assert message.topic == "/telemetry/gps/"
            assert message.data == b"42"

        assert subscription.closed
        assert client.disconnected


@pytest.mark.unit
class TestCloudTransport:
    @pytest.mark.asyncio
    async def test_commands_go_through_registry(self):
        registry = MagicMock()
        registry.send_command = AsyncMock()
        transport = CloudTransport(registry, EventSubscriptionBridge(), "fleet")

        await transport.send_command("sim-a", "alpha", "control", b"{}")

        registry.send_command.assert_awaited_once_with("fleet", "alpha", "control", b"{}")

    @pytest.mark.asyncio
    async def test_events_come_from_bridge(self):
        bridge = EventSubscriptionBridge()
        transport = CloudTransport(MagicMock(), bridge, "fleet")

        async with transport.subscribe("sim-a", "alpha", "/") as subscription:
            bridge.publish("alpha", "telemetry", b"1")
            assert (await asyncio.wait_for(subscription.get(), timeout=1)).data == b"1"

        assert bridge.subscriber_count("alpha") == 0


@pytest.mark.unit
class TestCreateTransport:
    def test_broker_mode(self):
        transport = create_transport(TransportMode.BROKER, AsyncMock())
        assert isinstance(transport, BrokerTransport)

    def test_cloud_mode_needs_registry_and_bridge(self):
        with pytest.raises(ValueError):
            create_transport(TransportMode.CLOUD, AsyncMock())

        transport = create_transport(TransportMode.CLOUD, AsyncMock(), registry=MagicMock(),
                                     bridge=EventSubscriptionBridge(), tenant_id="fleet")
        assert isinstance(transport, CloudTransport)
        assert transport.tenant_id == "fleet"
