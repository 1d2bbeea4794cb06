"""
Event Subscription Bridge

De-multiplexes one shared upstream event stream (the cloud Pub/Sub
subscriptions every device publishes into) down to per-client
subscriptions keyed by device ID and topic prefix.

Each subscriber owns a bounded queue. A subscriber that falls behind far
enough to fill its queue is dropped and disconnected; delivery to every
other subscriber carries on unaffected.

The subscription table is guarded per device: adding, removing and
enumerating the subscribers of one device never blocks traffic for other
devices, and delivery happens outside the locks.
"""

import asyncio
import logging
import threading
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Dict, List, Optional

from ..errors import MultiError

logger = logging.getLogger(__name__)

DEFAULT_BUFFER_SIZE = 64


def normalize_topic(path: Optional[str]) -> str:
    """Give a topic path exactly one leading and one trailing slash."""
    path = (path or "").strip("/")
    if not path:
        return "/"
    return f"/{path}/"


@dataclass
class EventMessage:
    device_id: str
    topic: str
    data: bytes


class SubscriptionClosed(Exception):
    """Raised by Subscription.get once the subscription was closed."""


_CLOSED = object()


class Subscription:
    """
    One client's view of a device's events.

    Messages are offered from any thread; they're always enqueued on the
    event loop the subscription was created on.
    """

    def __init__(self, device_id: str, prefix: str, buffer_size: int = DEFAULT_BUFFER_SIZE,
                 loop: Optional[asyncio.AbstractEventLoop] = None):
        self.device_id = device_id
        self.prefix = normalize_topic(prefix)
        self.loop = loop or asyncio.get_running_loop()
        # One extra slot is reserved for the close marker
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=buffer_size + 1)
        self._buffer_size = buffer_size
        self.closed = False
        self.overflowed = False

    def matches(self, topic: str) -> bool:
        return topic.startswith(self.prefix)

    def _on_loop(self) -> bool:
        try:
            return asyncio.get_running_loop() is self.loop
        except RuntimeError:
            return False

    def deliver(self, message: EventMessage) -> None:
        """Offer a message from any thread."""
        if self._on_loop():
            self._offer(message)
        else:
            self.loop.call_soon_threadsafe(self._offer, message)

    def _offer(self, message: EventMessage) -> None:
        if self.closed:
            return
        if self._queue.qsize() >= self._buffer_size:
            logger.warning(
                f"[EVENTS] Subscriber for {self.device_id}{self.prefix} is too slow, disconnecting it"
            )
            self.overflowed = True
            self._close()
            return
        self._queue.put_nowait(message)

    def close(self) -> None:
        """Stop the subscription from any thread; pending messages are discarded."""
        if self.closed:
            return
        if self._on_loop():
            self._close()
        else:
            self.loop.call_soon_threadsafe(self._close)

    def _close(self) -> None:
        if self.closed:
            return
        self.closed = True
        while not self._queue.empty():
            self._queue.get_nowait()
        self._queue.put_nowait(_CLOSED)

    async def get(self) -> EventMessage:
        item = await self._queue.get()
        if item is _CLOSED:
            # Leave the marker for any other waiter
            self._queue.put_nowait(_CLOSED)
            raise SubscriptionClosed(f"subscription {self.device_id}{self.prefix} closed")
        return item

    def __aiter__(self):
        return self

    async def __anext__(self) -> EventMessage:
        try:
            return await self.get()
        except SubscriptionClosed:
            raise StopAsyncIteration


class EventSubscriptionBridge:
    """Fans upstream device events out to filtered subscriptions."""

    def __init__(self, buffer_size: int = DEFAULT_BUFFER_SIZE):
        self.buffer_size = buffer_size
        self._subscribers: Dict[str, List[Subscription]] = {}
        self._device_locks: Dict[str, threading.Lock] = {}
        self._table_lock = threading.Lock()

    def _lock_for(self, device_id: str) -> threading.Lock:
        with self._table_lock:
            lock = self._device_locks.get(device_id)
            if lock is None:
                lock = self._device_locks[device_id] = threading.Lock()
                self._subscribers[device_id] = []
            return lock

    def _existing_lock(self, device_id: str) -> Optional[threading.Lock]:
        with self._table_lock:
            return self._device_locks.get(device_id)

    def subscribe(self, device_id: str, prefix: str) -> Subscription:
        """Register a subscription. Must be called from the consuming event loop."""
        subscription = Subscription(device_id, prefix, self.buffer_size)
        with self._lock_for(device_id):
            self._subscribers[device_id].append(subscription)
        logger.debug(f"[EVENTS] Subscribed to {device_id}{subscription.prefix}")
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        """
        Remove a subscription from its device's set and close it.

        The device's (possibly empty) set stays in the table.
        """
        with self._lock_for(subscription.device_id):
            subscribers = self._subscribers[subscription.device_id]
            if subscription in subscribers:
                subscribers.remove(subscription)
        subscription.close()

    @asynccontextmanager
    async def subscription(self, device_id: str, prefix: str) -> AsyncIterator[Subscription]:
        subscription = self.subscribe(device_id, prefix)
        try:
            yield subscription
        finally:
            self.unsubscribe(subscription)

    def publish(self, device_id: str, subfolder: Optional[str], data: bytes) -> int:
        """
        Deliver an upstream message to the device's matching subscribers.

        Safe to call from any thread.

        Returns:
            Number of subscriptions the message was offered to
        """
        topic = normalize_topic(subfolder)
        # Only subscribe adds devices; upstream traffic for others is dropped
        lock = self._existing_lock(device_id)
        if lock is None:
            return 0
        with lock:
            snapshot = list(self._subscribers[device_id])

        message = EventMessage(device_id=device_id, topic=topic, data=data)
        offered = 0
        for subscription in snapshot:
            if subscription.closed:
                self.unsubscribe(subscription)
                continue
            if subscription.matches(topic):
                subscription.deliver(message)
                offered += 1
        return offered

    def device_count(self) -> int:
        with self._table_lock:
            return len(self._subscribers)

    def subscriber_count(self, device_id: str) -> int:
        lock = self._existing_lock(device_id)
        if lock is None:
            return 0
        with lock:
            return len(self._subscribers[device_id])


class PubSubEventSource:
    """
    Feeds the bridge from Google Cloud Pub/Sub streaming pulls.

    Messages carry the device in the "deviceId" attribute and the topic in
    "subFolder". Messages missing either are logged and acknowledged.
    """

    def __init__(self, bridge: EventSubscriptionBridge, project_id: str, subscriptions: List[str],
                 subscriber=None):
        self.bridge = bridge
        self.project_id = project_id
        self.subscriptions = subscriptions
        if subscriber is None:
            from google.cloud import pubsub_v1
            subscriber = pubsub_v1.SubscriberClient()
        self.subscriber = subscriber

    def handle_message(self, message) -> None:
        """Pub/Sub callback; runs on the client's worker threads."""
        attributes = message.attributes or {}
        device_id = attributes.get("deviceId")
        subfolder = attributes.get("subFolder")
        if not device_id or subfolder is None:
            logger.warning(f"[EVENTS] Dropping message {getattr(message, 'message_id', '?')} without device attributes")
            message.ack()
            return
        self.bridge.publish(device_id, subfolder, message.data)
        message.ack()

    async def run(self) -> None:
        """
        Listen on every subscription until cancelled.

        Raises:
            MultiError: with the failures of the subscriptions that stopped
        """
        if not self.subscriptions:
            logger.info("[EVENTS] No Pub/Sub subscriptions configured")
            await asyncio.Event().wait()
            return

        futures = []
        for name in self.subscriptions:
            path = self.subscriber.subscription_path(self.project_id, name)
            futures.append(self.subscriber.subscribe(path, callback=self.handle_message))
            logger.info(f"[EVENTS] Listening on {path}")

        try:
            results = await asyncio.gather(
                *(asyncio.to_thread(future.result) for future in futures),
                return_exceptions=True,
            )
        finally:
            for future in futures:
                future.cancel()

        errors = MultiError("listen on Pub/Sub subscriptions")
        for name, result in zip(self.subscriptions, results):
            if isinstance(result, BaseException):
                errors.add(RuntimeError(f"subscription {name}: {result}"))
        errors.raise_if_any()
