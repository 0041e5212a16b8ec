"""
In-Memory Broker

Broker implementation for testing and local runs. Mirrors the AMQP behaviour
the worker layer relies on: durable-queue declaration checks, per-consumer
prefetch, manual acknowledgement, per-message and per-queue TTL, dead-letter
exchanges and redelivery of unacknowledged messages when a channel or
connection goes away.
"""

import asyncio
import itertools
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Optional

from src.message_queue.base import (
    BrokerChannel,
    BrokerConnection,
    CloseListener,
    Delivery,
    DeliveryCallback,
)
from src.message_queue.envelope import Envelope, decode_envelope
from src.message_queue.errors import (
    BrokerConnectionError,
    DeclarationConflictError,
    PublishError,
    QueueError,
)

DEFAULT_EXCHANGE = ""

# Queue arguments that must match on redeclaration
_STRICT_ARGUMENTS = (
    "x-dead-letter-exchange",
    "x-dead-letter-routing-key",
    "x-message-ttl",
    "x-max-priority",
    "x-max-length",
)


@dataclass(eq=False)
class StoredMessage:
    """Message resident in a queue (ready or delivered-but-unacked)."""
    body: bytes
    routing_key: str
    message_id: Optional[str] = None
    correlation_id: Optional[str] = None
    headers: dict[str, Any] = field(default_factory=dict)
    expiration_ms: Optional[int] = None
    redelivered: bool = False
    expiry_handle: Optional[asyncio.TimerHandle] = None

    def envelope(self, queue_name: str) -> Envelope:
        return decode_envelope(
            self.body,
            queue_name=queue_name,
            message_id=self.message_id,
            correlation_id=self.correlation_id,
            headers=self.headers,
        )


@dataclass
class _Consumer:
    tag: str
    queue_name: str
    channel: "InMemoryChannel"
    callback: DeliveryCallback


@dataclass
class _Queue:
    name: str
    durable: bool
    arguments: dict[str, Any]
    ready: deque = field(default_factory=deque)
    consumers: list[_Consumer] = field(default_factory=list)
    next_consumer: int = 0
    dead_lettered: int = 0
    expired: int = 0


class InMemoryDelivery(Delivery):
    """Delivery handed out by the in-memory broker."""

    def __init__(self, broker: "InMemoryBroker", channel: "InMemoryChannel", queue_name: str, message: StoredMessage):
        self._broker = broker
        self._channel = channel
        self._message = message
        self._settled = False
        self.queue_name = queue_name
        self.body = message.body
        self.headers = dict(message.headers)
        self.message_id = message.message_id
        self.correlation_id = message.correlation_id
        self.redelivered = message.redelivered

    @property
    def settled(self) -> bool:
        return self._settled

    def _check_open(self) -> None:
        if self._channel.is_closed:
            raise BrokerConnectionError("Channel closed before settlement")
        if self._settled:
            raise QueueError(f"Delivery {self.message_id} already settled")

    async def ack(self) -> None:
        self._check_open()
        self._settled = True
        self._channel._unacked.remove(self)
        self._broker._acked.append((self.queue_name, self._message))
        self._broker._dispatch(self.queue_name)

    async def nack(self, requeue: bool = False) -> None:
        self._check_open()
        self._settled = True
        self._channel._unacked.remove(self)
        if requeue:
            self._broker._requeue(self.queue_name, self._message)
        else:
            self._broker._dead_letter(self.queue_name, self._message, reason="rejected")
        self._broker._dispatch(self.queue_name)

    def _release(self) -> None:
        """Return the message to its queue because the channel went away."""
        self._settled = True
        self._broker._requeue(self.queue_name, self._message)


class InMemoryChannel(BrokerChannel):
    """Channel on an in-memory connection."""

    def __init__(self, broker: "InMemoryBroker", connection: "InMemoryConnection"):
        self._broker = broker
        self._connection = connection
        self._closed = False
        self.prefetch_count = 0
        self._consumer_tags: set[str] = set()
        self._unacked: list[InMemoryDelivery] = []

    @property
    def is_closed(self) -> bool:
        return self._closed or self._connection.is_closed

    @property
    def unacked_count(self) -> int:
        return len(self._unacked)

    def has_capacity(self) -> bool:
        return self.prefetch_count == 0 or len(self._unacked) < self.prefetch_count

    def _ensure_open(self) -> None:
        if self.is_closed:
            raise BrokerConnectionError("Channel is closed")

    async def set_qos(self, prefetch_count: int) -> None:
        self._ensure_open()
        self.prefetch_count = prefetch_count

    async def declare_queue(
        self, name: str, durable: bool = True, arguments: Optional[dict[str, Any]] = None
    ) -> None:
        self._ensure_open()
        self._broker._declare_queue(name, durable, dict(arguments or {}))

    async def declare_exchange(
        self, name: str, exchange_type: str = "direct", durable: bool = True
    ) -> None:
        self._ensure_open()
        self._broker._declare_exchange(name, exchange_type, durable)

    async def bind_queue(self, queue_name: str, exchange_name: str, routing_key: str) -> None:
        self._ensure_open()
        self._broker._bind(queue_name, exchange_name, routing_key)

    async def publish(
        self,
        routing_key: str,
        body: bytes,
        *,
        message_id: Optional[str] = None,
        correlation_id: Optional[str] = None,
        headers: Optional[dict[str, Any]] = None,
        expiration_ms: Optional[int] = None,
    ) -> None:
        if self.is_closed:
            raise PublishError(routing_key, "channel is closed")
        if self._broker.reject_publishes:
            raise PublishError(routing_key, "broker nacked the message")
        message = StoredMessage(
            body=body,
            routing_key=routing_key,
            message_id=message_id,
            correlation_id=correlation_id,
            headers=dict(headers or {}),
            expiration_ms=expiration_ms,
        )
        if not self._broker._route(DEFAULT_EXCHANGE, routing_key, message):
            raise PublishError(routing_key, "message is unroutable")
        self._broker.published.append((routing_key, message))

    async def consume(self, queue_name: str, callback: DeliveryCallback) -> str:
        self._ensure_open()
        tag = self._broker._add_consumer(queue_name, self, callback)
        self._consumer_tags.add(tag)
        return tag

    async def cancel(self, consumer_tag: str) -> None:
        self._consumer_tags.discard(consumer_tag)
        self._broker._remove_consumer(consumer_tag)

    async def close(self) -> None:
        if self._closed:
            return
        self._shutdown()

    def _shutdown(self) -> None:
        self._closed = True
        for tag in list(self._consumer_tags):
            self._broker._remove_consumer(tag)
        self._consumer_tags.clear()
        # Unacked deliveries go back in delivery order, ahead of newer messages
        for delivery in reversed(self._unacked):
            delivery._release()
        queues = {d.queue_name for d in self._unacked}
        self._unacked.clear()
        for queue_name in queues:
            self._broker._dispatch(queue_name)


class InMemoryConnection(BrokerConnection):
    """Connection to an InMemoryBroker."""

    def __init__(self, broker: "InMemoryBroker"):
        self._broker = broker
        self._closed = False
        self._channels: list[InMemoryChannel] = []
        self._listeners: list[CloseListener] = []

    @property
    def is_closed(self) -> bool:
        return self._closed

    async def channel(self) -> InMemoryChannel:
        if self._closed:
            raise BrokerConnectionError("Connection is closed")
        channel = InMemoryChannel(self._broker, self)
        self._channels.append(channel)
        return channel

    def add_close_listener(self, listener: CloseListener) -> None:
        self._listeners.append(listener)

    async def close(self) -> None:
        self._terminate(None)

    def _terminate(self, exc: Optional[BaseException]) -> None:
        if self._closed:
            return
        for channel in self._channels:
            channel._shutdown()
        self._closed = True
        self._channels.clear()
        if self in self._broker.connections:
            self._broker.connections.remove(self)
        for listener in self._listeners:
            listener(exc)


class InMemoryBroker:
    """
    In-memory AMQP-like broker.

    Stores everything in process memory - data is lost on restart.

    Suitable for:
    - Testing
    - Local development without RabbitMQ

    Test helpers:
    - ``available``: set False to make connect() fail like an unreachable host
    - ``drop_connections()``: simulate a network failure or broker restart
    - ``ready_envelopes()``: inspect messages waiting in a queue
    """

    def __init__(self):
        self.queues: dict[str, _Queue] = {}
        self.exchanges: dict[str, dict[str, list[str]]] = {}
        self._exchange_types: dict[str, tuple[str, bool]] = {}
        self.connections: list[InMemoryConnection] = []
        self.published: list[tuple[str, StoredMessage]] = []
        self._acked: list[tuple[str, StoredMessage]] = []
        self.available = True
        self.reject_publishes = False
        self.connect_calls = 0
        self._tags = itertools.count(1)
        self._tasks: set[asyncio.Task] = set()

    async def connect(self) -> InMemoryConnection:
        """Open a connection; usable as a ConnectionManager connector."""
        self.connect_calls += 1
        if not self.available:
            raise ConnectionRefusedError("In-memory broker is unavailable")
        connection = InMemoryConnection(self)
        self.connections.append(connection)
        return connection

    def drop_connections(self, exc: Optional[BaseException] = None) -> None:
        """Close every connection as if the network failed."""
        error = exc or ConnectionResetError("Connection reset by broker")
        for connection in list(self.connections):
            connection._terminate(error)

    # ------------------------------------------------------------------
    # Inspection helpers
    # ------------------------------------------------------------------

    def ready_messages(self, queue_name: str) -> list[StoredMessage]:
        queue = self.queues.get(queue_name)
        return list(queue.ready) if queue else []

    def ready_envelopes(self, queue_name: str) -> list[Envelope]:
        return [m.envelope(queue_name) for m in self.ready_messages(queue_name)]

    def acked_messages(self, queue_name: str) -> list[StoredMessage]:
        return [m for name, m in self._acked if name == queue_name]

    def consumer_count(self, queue_name: str) -> int:
        queue = self.queues.get(queue_name)
        return len(queue.consumers) if queue else 0

    async def drain(self) -> None:
        """Wait for every dispatched consumer callback to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ------------------------------------------------------------------
    # Topology
    # ------------------------------------------------------------------

    def _declare_queue(self, name: str, durable: bool, arguments: dict[str, Any]) -> None:
        existing = self.queues.get(name)
        if existing is None:
            self.queues[name] = _Queue(name=name, durable=durable, arguments=arguments)
            return

        if existing.durable != durable:
            raise DeclarationConflictError(
                name, f"durable={existing.durable}, requested durable={durable}"
            )
        for key in _STRICT_ARGUMENTS:
            if existing.arguments.get(key) != arguments.get(key):
                raise DeclarationConflictError(
                    name,
                    f"{key}={existing.arguments.get(key)!r}, requested {arguments.get(key)!r}",
                )

    def _declare_exchange(self, name: str, exchange_type: str, durable: bool) -> None:
        existing = self._exchange_types.get(name)
        if existing is not None and existing != (exchange_type, durable):
            raise DeclarationConflictError(name, f"exchange declared as {existing}")
        self._exchange_types[name] = (exchange_type, durable)
        self.exchanges.setdefault(name, {})

    def _bind(self, queue_name: str, exchange_name: str, routing_key: str) -> None:
        if queue_name not in self.queues:
            raise QueueError(f"No queue '{queue_name}'")
        if exchange_name not in self.exchanges:
            raise QueueError(f"No exchange '{exchange_name}'")
        bound = self.exchanges[exchange_name].setdefault(routing_key, [])
        if queue_name not in bound:
            bound.append(queue_name)

    # ------------------------------------------------------------------
    # Routing & dispatch
    # ------------------------------------------------------------------

    def _route(self, exchange_name: str, routing_key: str, message: StoredMessage) -> bool:
        if exchange_name == DEFAULT_EXCHANGE:
            targets = [routing_key] if routing_key in self.queues else []
        else:
            targets = list(self.exchanges.get(exchange_name, {}).get(routing_key, []))

        for index, queue_name in enumerate(targets):
            copy = message if index == 0 else StoredMessage(
                body=message.body,
                routing_key=message.routing_key,
                message_id=message.message_id,
                correlation_id=message.correlation_id,
                headers=dict(message.headers),
                expiration_ms=message.expiration_ms,
            )
            self._enqueue(queue_name, copy)
        return bool(targets)

    def _enqueue(self, queue_name: str, message: StoredMessage, front: bool = False) -> None:
        queue = self.queues[queue_name]
        if front:
            queue.ready.appendleft(message)
        else:
            queue.ready.append(message)
        self._schedule_expiry(queue, message)
        self._dispatch(queue_name)

    def _schedule_expiry(self, queue: _Queue, message: StoredMessage) -> None:
        ttls = [
            ttl for ttl in (message.expiration_ms, queue.arguments.get("x-message-ttl"))
            if ttl is not None
        ]
        if not ttls:
            return
        loop = asyncio.get_running_loop()
        message.expiry_handle = loop.call_later(
            min(ttls) / 1000, self._expire, queue.name, message
        )

    def _expire(self, queue_name: str, message: StoredMessage) -> None:
        queue = self.queues.get(queue_name)
        if queue is None or message not in queue.ready:
            return
        queue.ready.remove(message)
        queue.expired += 1
        self._dead_letter(queue_name, message, reason="expired")

    def _requeue(self, queue_name: str, message: StoredMessage) -> None:
        message.redelivered = True
        self._enqueue(queue_name, message, front=True)

    def _dead_letter(self, queue_name: str, message: StoredMessage, reason: str) -> None:
        queue = self.queues[queue_name]
        exchange = queue.arguments.get("x-dead-letter-exchange")
        if exchange is None:
            return  # dropped, as RabbitMQ does without a DLX

        routing_key = queue.arguments.get("x-dead-letter-routing-key", message.routing_key)
        headers = dict(message.headers)
        headers.setdefault("x-first-death-queue", queue_name)
        headers.setdefault("x-first-death-reason", reason)
        deaths = list(headers.get("x-death", []))
        deaths.insert(0, {"queue": queue_name, "reason": reason, "count": 1})
        headers["x-death"] = deaths

        # Per-message expiration is dropped on dead-lettering
        dead = StoredMessage(
            body=message.body,
            routing_key=routing_key,
            message_id=message.message_id,
            correlation_id=message.correlation_id,
            headers=headers,
        )
        queue.dead_lettered += 1
        self._route(exchange, routing_key, dead)

    def _add_consumer(self, queue_name: str, channel: InMemoryChannel, callback: DeliveryCallback) -> str:
        if queue_name not in self.queues:
            raise QueueError(f"No queue '{queue_name}'")
        tag = f"ctag-{next(self._tags)}"
        self.queues[queue_name].consumers.append(
            _Consumer(tag=tag, queue_name=queue_name, channel=channel, callback=callback)
        )
        self._dispatch(queue_name)
        return tag

    def _remove_consumer(self, tag: str) -> None:
        for queue in self.queues.values():
            queue.consumers = [c for c in queue.consumers if c.tag != tag]

    def _next_consumer(self, queue: _Queue) -> Optional[_Consumer]:
        count = len(queue.consumers)
        for offset in range(count):
            index = (queue.next_consumer + offset) % count
            consumer = queue.consumers[index]
            if not consumer.channel.is_closed and consumer.channel.has_capacity():
                queue.next_consumer = (index + 1) % count
                return consumer
        return None

    def _dispatch(self, queue_name: str) -> None:
        queue = self.queues.get(queue_name)
        if queue is None:
            return
        while queue.ready:
            consumer = self._next_consumer(queue)
            if consumer is None:
                return
            message = queue.ready.popleft()
            if message.expiry_handle is not None:
                message.expiry_handle.cancel()
                message.expiry_handle = None
            delivery = InMemoryDelivery(self, consumer.channel, queue_name, message)
            consumer.channel._unacked.append(delivery)
            task = asyncio.get_running_loop().create_task(consumer.callback(delivery))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
