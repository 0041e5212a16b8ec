"""
Base Broker Interface

Transport-neutral interfaces for broker connections, channels and deliveries.
The RabbitMQ adapter and the in-memory broker both implement them, so workers,
the publisher and the retry coordinator never depend on a client library.
"""

from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Optional


class Delivery(ABC):
    """
    A message handed to a consumer, awaiting settlement.

    Exactly one of ack() or nack() must be called per delivery. Unsettled
    deliveries return to their queue when the channel or connection closes.
    """

    queue_name: str
    body: bytes
    headers: dict[str, Any]
    message_id: Optional[str]
    correlation_id: Optional[str]
    redelivered: bool

    @abstractmethod
    async def ack(self) -> None:
        """
        Acknowledge the delivery; the broker forgets the message.

        Raises:
            BrokerConnectionError: If the channel carrying the delivery is gone
        """
        pass

    @abstractmethod
    async def nack(self, requeue: bool = False) -> None:
        """
        Negatively acknowledge the delivery.

        Args:
            requeue: Put the message back on its queue. When False the broker
                routes it through the queue's dead-letter exchange.

        Raises:
            BrokerConnectionError: If the channel carrying the delivery is gone
        """
        pass


DeliveryCallback = Callable[[Delivery], Awaitable[None]]
CloseListener = Callable[[Optional[BaseException]], None]


class BrokerChannel(ABC):
    """
    Channel on a broker connection.

    Implementations must provide:
    - QoS: Limit unacknowledged deliveries per consumer
    - Topology: Declare queues and exchanges, bind them
    - Publish: Send to the default exchange with confirmation
    - Consume/Cancel: Register and remove consumers
    """

    @property
    @abstractmethod
    def is_closed(self) -> bool:
        pass

    @abstractmethod
    async def set_qos(self, prefetch_count: int) -> None:
        """
        Limit unacknowledged deliveries per consumer on this channel.

        Args:
            prefetch_count: Maximum unacked deliveries (0 = unlimited)
        """
        pass

    @abstractmethod
    async def declare_queue(
        self, name: str, durable: bool = True, arguments: Optional[dict[str, Any]] = None
    ) -> None:
        """
        Declare a queue. Idempotent for identical settings.

        Raises:
            DeclarationConflictError: If the queue exists with different settings
        """
        pass

    @abstractmethod
    async def declare_exchange(
        self, name: str, exchange_type: str = "direct", durable: bool = True
    ) -> None:
        """Declare an exchange. Idempotent for identical settings."""
        pass

    @abstractmethod
    async def bind_queue(self, queue_name: str, exchange_name: str, routing_key: str) -> None:
        """Bind a queue to an exchange with a routing key."""
        pass

    @abstractmethod
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
        """
        Publish to the default exchange and wait for broker confirmation.

        Args:
            routing_key: Target queue name
            body: Serialized message
            message_id: AMQP message id
            correlation_id: AMQP correlation id
            headers: AMQP headers
            expiration_ms: Per-message TTL

        Raises:
            PublishError: If the message is unroutable or not confirmed
        """
        pass

    @abstractmethod
    async def consume(self, queue_name: str, callback: DeliveryCallback) -> str:
        """
        Register a consumer with manual acknowledgement.

        Returns:
            Consumer tag
        """
        pass

    @abstractmethod
    async def cancel(self, consumer_tag: str) -> None:
        """Stop a consumer; unsettled deliveries stay with the channel."""
        pass

    @abstractmethod
    async def close(self) -> None:
        """Close the channel. Idempotent."""
        pass


class BrokerConnection(ABC):
    """A single logical connection to the broker."""

    @property
    @abstractmethod
    def is_closed(self) -> bool:
        pass

    @abstractmethod
    async def channel(self) -> BrokerChannel:
        """Open a new channel with publisher confirms enabled."""
        pass

    @abstractmethod
    def add_close_listener(self, listener: CloseListener) -> None:
        """
        Register a listener called once when the connection closes.

        The listener receives the exception that closed the connection, or
        None for a requested close.
        """
        pass

    @abstractmethod
    async def close(self) -> None:
        """Close the connection. Idempotent."""
        pass


Connector = Callable[[], Awaitable[BrokerConnection]]
