"""
RabbitMQ Transport

aio-pika implementation of the broker interfaces. Uses a plain (non-robust)
connection: reconnection is owned by the ConnectionManager so resubscription
order stays deterministic.
"""

from typing import Any, Optional

import aio_pika
from aio_pika import DeliveryMode, ExchangeType, Message
from aio_pika.abc import AbstractChannel, AbstractConnection, AbstractIncomingMessage, AbstractQueue
from aio_pika.exceptions import AMQPError, ChannelPreconditionFailed
from loguru import logger

from src.config import get_settings
from src.message_queue.base import (
    BrokerChannel,
    BrokerConnection,
    CloseListener,
    Delivery,
    DeliveryCallback,
)
from src.message_queue.envelope import CONTENT_TYPE
from src.message_queue.errors import (
    BrokerConnectionError,
    DeclarationConflictError,
    PublishError,
)


def _normalize_headers(headers: Optional[dict[str, Any]]) -> dict[str, Any]:
    """AMQP long strings may arrive as bytes."""
    normalized: dict[str, Any] = {}
    for key, value in (headers or {}).items():
        if isinstance(value, (bytes, bytearray)):
            value = bytes(value).decode("utf-8", errors="replace")
        normalized[key] = value
    return normalized


class RabbitMQDelivery(Delivery):
    """Wraps an aio-pika incoming message."""

    def __init__(self, message: AbstractIncomingMessage, queue_name: str):
        self._message = message
        self.queue_name = queue_name
        self.body = message.body
        self.headers = _normalize_headers(message.headers)
        self.message_id = message.message_id
        self.correlation_id = message.correlation_id
        self.redelivered = bool(message.redelivered)

    async def ack(self) -> None:
        try:
            await self._message.ack()
        except (AMQPError, RuntimeError) as e:
            raise BrokerConnectionError(f"Ack failed: {e}", cause=e) from e

    async def nack(self, requeue: bool = False) -> None:
        try:
            await self._message.nack(requeue=requeue)
        except (AMQPError, RuntimeError) as e:
            raise BrokerConnectionError(f"Nack failed: {e}", cause=e) from e


class RabbitMQChannel(BrokerChannel):
    """aio-pika channel with publisher confirms."""

    def __init__(self, channel: AbstractChannel):
        self._channel = channel
        self._queues: dict[str, AbstractQueue] = {}
        self._consumers: dict[str, AbstractQueue] = {}

    @property
    def is_closed(self) -> bool:
        return self._channel.is_closed

    async def set_qos(self, prefetch_count: int) -> None:
        await self._channel.set_qos(prefetch_count=prefetch_count)

    async def declare_queue(
        self, name: str, durable: bool = True, arguments: Optional[dict[str, Any]] = None
    ) -> None:
        try:
            queue = await self._channel.declare_queue(
                name, durable=durable, arguments=arguments or None
            )
        except ChannelPreconditionFailed as e:
            raise DeclarationConflictError(name, str(e)) from e
        self._queues[name] = queue

    async def declare_exchange(
        self, name: str, exchange_type: str = "direct", durable: bool = True
    ) -> None:
        try:
            await self._channel.declare_exchange(name, ExchangeType(exchange_type), durable=durable)
        except ChannelPreconditionFailed as e:
            raise DeclarationConflictError(name, str(e)) from e

    async def bind_queue(self, queue_name: str, exchange_name: str, routing_key: str) -> None:
        queue = await self._get_queue(queue_name)
        await queue.bind(exchange_name, routing_key=routing_key)

    async def _get_queue(self, name: str) -> AbstractQueue:
        if name not in self._queues:
            self._queues[name] = await self._channel.get_queue(name, ensure=True)
        return self._queues[name]

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
        message = Message(
            body,
            content_type=CONTENT_TYPE,
            content_encoding="utf-8",
            delivery_mode=DeliveryMode.PERSISTENT,
            message_id=message_id,
            correlation_id=correlation_id,
            headers=headers or {},
            expiration=expiration_ms / 1000 if expiration_ms is not None else None,
        )
        try:
            # Confirmed publish; mandatory makes unroutable messages fail
            await self._channel.default_exchange.publish(
                message, routing_key=routing_key, mandatory=True
            )
        except (AMQPError, RuntimeError) as e:
            raise PublishError(routing_key, str(e)) from e

    async def consume(self, queue_name: str, callback: DeliveryCallback) -> str:
        queue = await self._get_queue(queue_name)

        async def on_message(message: AbstractIncomingMessage) -> None:
            await callback(RabbitMQDelivery(message, queue_name))

        tag = await queue.consume(on_message, no_ack=False)
        self._consumers[tag] = queue
        return tag

    async def cancel(self, consumer_tag: str) -> None:
        queue = self._consumers.pop(consumer_tag, None)
        if queue is None:
            return
        try:
            await queue.cancel(consumer_tag)
        except (AMQPError, RuntimeError) as e:
            raise BrokerConnectionError(f"Cancel failed: {e}", cause=e) from e

    async def close(self) -> None:
        if not self._channel.is_closed:
            await self._channel.close()


class RabbitMQConnection(BrokerConnection):
    """aio-pika connection wrapper."""

    def __init__(self, connection: AbstractConnection):
        self._connection = connection

    @property
    def is_closed(self) -> bool:
        return self._connection.is_closed

    async def channel(self) -> RabbitMQChannel:
        try:
            channel = await self._connection.channel(publisher_confirms=True)
        except (AMQPError, RuntimeError) as e:
            raise BrokerConnectionError(f"Channel open failed: {e}", cause=e) from e
        return RabbitMQChannel(channel)

    def add_close_listener(self, listener: CloseListener) -> None:
        def on_close(_sender: Any, exc: Optional[BaseException] = None) -> None:
            listener(exc)

        self._connection.close_callbacks.add(on_close)

    async def close(self) -> None:
        if not self._connection.is_closed:
            await self._connection.close()


class RabbitMQConnector:
    """
    Connector for ConnectionManager.

    Usage:
        manager = ConnectionManager(connector=RabbitMQConnector())
    """

    def __init__(self, url: Optional[str] = None, heartbeat: Optional[int] = None):
        settings = get_settings()
        self.url = url or settings.rabbitmq_url
        self.heartbeat = heartbeat or settings.rabbitmq_heartbeat_seconds

    async def __call__(self) -> RabbitMQConnection:
        logger.info("Connecting to RabbitMQ", extra={"heartbeat": self.heartbeat})
        try:
            connection = await aio_pika.connect(self.url, heartbeat=self.heartbeat)
        except (AMQPError, OSError) as e:
            raise BrokerConnectionError(f"RabbitMQ connect failed: {e}", cause=e) from e
        return RabbitMQConnection(connection)


__all__ = [
    "RabbitMQChannel",
    "RabbitMQConnection",
    "RabbitMQConnector",
    "RabbitMQDelivery",
]
