"""
Tests for the event subscription bridge and its Pub/Sub feed.
"""

import asyncio
from concurrent.futures import Future
from unittest.mock import MagicMock, Mock

import pytest

from simulation_coordinator.errors import MultiError
from simulation_coordinator.services.events import (
    EventSubscriptionBridge,
    PubSubEventSource,
    SubscriptionClosed,
    normalize_topic,
)


async def _drain(subscription):
    """Messages currently queued, without waiting for more."""
    received = []
    while True:
        try:
            received.append(await asyncio.wait_for(subscription.get(), timeout=0.05))
        except (asyncio.TimeoutError, SubscriptionClosed):
            return received


@pytest.mark.unit
class TestNormalizeTopic:
    @pytest.mark.parametrize("raw,expected", [
        ("", "/"),
        (None, "/"),
        ("/", "/"),
        ("telemetry", "/telemetry/"),
        ("/a/b", "/a/b/"),
        ("a/b/", "/a/b/"),
    ])
    def test_normalize(self, raw, expected):
        assert normalize_topic(raw) == expected


@pytest.mark.unit
class TestEventSubscriptionBridge:
    """Fan-out by device ID and topic prefix."""

    @pytest.mark.asyncio
    async def test_prefix_filtering(self):
        bridge = EventSubscriptionBridge(buffer_size=8)
        sub_a = bridge.subscribe("alpha", "/a/")
        sub_b = bridge.subscribe("alpha", "/b/")

        bridge.publish("alpha", "a/x", b"to-a")
        bridge.publish("alpha", "b", b"to-b")
        bridge.publish("bravo", "a/x", b"other-device")

        assert [m.data for m in await _drain(sub_a)] == [b"to-a"]
        assert [m.data for m in await _drain(sub_b)] == [b"to-b"]

    @pytest.mark.asyncio
    async def test_root_prefix_receives_everything(self):
        bridge = EventSubscriptionBridge(buffer_size=8)
        sub = bridge.subscribe("alpha", "")

        bridge.publish("alpha", "telemetry", b"1")
        bridge.publish("alpha", "", b"2")

        assert [m.data for m in await _drain(sub)] == [b"1", b"2"]

    @pytest.mark.asyncio
    async def test_message_for_other_device_reaches_nobody(self):
        bridge = EventSubscriptionBridge(buffer_size=8)
        sub = bridge.subscribe("alpha", "/")

        assert bridge.publish("bravo", "telemetry", b"x") == 0
        assert await _drain(sub) == []

    def test_upstream_traffic_does_not_grow_the_device_table(self):
        bridge = EventSubscriptionBridge()

        for i in range(1000):
            assert bridge.publish(f"device-{i}", "telemetry", b"x") == 0

        assert bridge.device_count() == 0
        assert bridge.subscriber_count("device-0") == 0
        assert bridge.device_count() == 0

    @pytest.mark.asyncio
    async def test_slow_subscriber_is_dropped_without_affecting_others(self):
        bridge = EventSubscriptionBridge(buffer_size=2)
        slow = bridge.subscribe("alpha", "/")
        fast = bridge.subscribe("alpha", "/")

        for i in range(3):
            bridge.publish("alpha", "t", str(i).encode())
            await _drain(fast)

        assert slow.closed and slow.overflowed
        assert not fast.closed
        with pytest.raises(SubscriptionClosed):
            await slow.get()

        # The closed subscriber is pruned on the next delivery
        bridge.publish("alpha", "t", b"3")
        assert bridge.subscriber_count("alpha") == 1
        assert [m.data for m in await _drain(fast)] == [b"3"]

    @pytest.mark.asyncio
    async def test_leaving_context_unsubscribes(self):
        bridge = EventSubscriptionBridge()
        async with bridge.subscription("alpha", "/a/") as sub:
            assert bridge.subscriber_count("alpha") == 1

        assert sub.closed
        assert bridge.subscriber_count("alpha") == 0
        # The device entry itself is kept
        assert bridge.device_count() == 1

    @pytest.mark.asyncio
    async def test_async_iteration_ends_on_close(self):
        bridge = EventSubscriptionBridge()
        sub = bridge.subscribe("alpha", "/")
        bridge.publish("alpha", "x", b"1")

        received = []

        async def consume():
            async for message in sub:
                received.append(message.data)

        task = asyncio.create_task(consume())
        await asyncio.sleep(0)
        bridge.unsubscribe(sub)
        await asyncio.wait_for(task, timeout=1)

        assert received == [b"1"]

    @pytest.mark.asyncio
    async def test_publish_from_worker_thread(self):
        bridge = EventSubscriptionBridge()
        sub = bridge.subscribe("alpha", "/")

        await asyncio.to_thread(bridge.publish, "alpha", "t", b"threaded")

        message = await asyncio.wait_for(sub.get(), timeout=1)
        assert message.data == b"threaded"
        assert message.topic == "/t/"


@pytest.mark.unit
class TestPubSubEventSource:
    def _message(self, attributes, data=b"{}"):
        message = Mock()
        message.attributes = attributes
        message.data = data
        return message

    @pytest.mark.asyncio
    async def test_routes_by_attributes(self):
        bridge = EventSubscriptionBridge()
        sub = bridge.subscribe("alpha", "/telemetry/")
        source = PubSubEventSource(bridge, "project", ["events"], subscriber=MagicMock())

        message = self._message({"deviceId": "alpha", "subFolder": "telemetry"}, b"42")
        source.handle_message(message)

        message.ack.assert_called_once()
        assert (await sub.get()).data == b"42"

    def test_messages_without_device_are_acked_and_dropped(self):
        bridge = MagicMock()
        source = PubSubEventSource(bridge, "project", ["events"], subscriber=MagicMock())

        message = self._message({"subFolder": "telemetry"})
        source.handle_message(message)

        message.ack.assert_called_once()
        bridge.publish.assert_not_called()

    @pytest.mark.asyncio
    async def test_run_collects_subscription_failures(self):
        failed = Future()
        failed.set_exception(RuntimeError("permission denied"))
        also_failed = Future()
        also_failed.set_exception(RuntimeError("not found"))
        subscriber = MagicMock()
        subscriber.subscription_path.side_effect = lambda project, name: f"projects/{project}/subscriptions/{name}"
        subscriber.subscribe.side_effect = [failed, also_failed]
        source = PubSubEventSource(EventSubscriptionBridge(), "project", ["a", "b"], subscriber=subscriber)

        with pytest.raises(MultiError) as exc_info:
            await source.run()

        assert len(exc_info.value) == 2
        assert subscriber.subscribe.call_args_list[0].args[0] == "projects/project/subscriptions/a"
