"""
Envelope Publisher

Wraps payloads in Envelopes and publishes them with broker confirmation.
Delayed publishes go to the queue's delay queue, whose per-message TTL routes
the message back to the primary queue once the delay has elapsed.
"""

from typing import Any, Optional, Union

from loguru import logger
from pydantic import BaseModel

from src.message_queue.base import BrokerChannel
from src.message_queue.bindings import delay_queue_name
from src.message_queue.connection import ConnectionManager
from src.message_queue.envelope import (
    CONTENT_TYPE,
    RETRY_COUNT_HEADER,
    Envelope,
)
from src.message_queue.errors import BrokerConnectionError, PublishError

Payload = Union[BaseModel, dict[str, Any]]


def payload_to_dict(payload: Payload) -> dict[str, Any]:
    if isinstance(payload, BaseModel):
        return payload.model_dump(mode="json", by_alias=True, exclude_none=True)
    return dict(payload)


class Publisher:
    """
    Publishes Envelopes to named queues.

    Publishing is never fire-and-forget: publish() returns only once the
    broker confirmed the message, and raises PublishError otherwise.

    Attributes:
        connection_manager: Source of the channel used for publishing
    """

    def __init__(self, connection_manager: ConnectionManager):
        self.connection_manager = connection_manager
        self._channel: Optional[BrokerChannel] = None
        self._channel_generation = -1

    async def _get_channel(self) -> BrokerChannel:
        """Channel bound to the current connection; reopened after reconnects."""
        generation = self.connection_manager.generation
        if (
            self._channel is None
            or self._channel.is_closed
            or self._channel_generation != generation
        ):
            self._channel = await self.connection_manager.channel()
            self._channel_generation = generation
        return self._channel

    async def publish(
        self,
        queue_name: str,
        payload: Payload,
        *,
        envelope: Optional[Envelope] = None,
        correlation_id: Optional[str] = None,
        delay_ms: Optional[int] = None,
        headers: Optional[dict[str, Any]] = None,
    ) -> Envelope:
        """
        Wrap a payload in an Envelope and publish it.

        Args:
            queue_name: Target queue
            payload: Pydantic model or dict
            envelope: Existing envelope whose id, correlation id and retry
                metadata are reused (republish for retry)
            correlation_id: Correlation id for a new envelope
            delay_ms: Deliver to queue_name only after this delay
            headers: Extra AMQP headers

        Returns:
            The envelope that was published

        Raises:
            PublishError: If the broker did not confirm the message
        """
        data = payload_to_dict(payload)
        if envelope is not None:
            outgoing = envelope.model_copy(update={"payload": data})
        else:
            kwargs: dict[str, Any] = {"payload": data, "first_queue": queue_name}
            if correlation_id:
                kwargs["correlation_id"] = correlation_id
            outgoing = Envelope(**kwargs)

        await self.send(outgoing, queue_name, delay_ms=delay_ms, headers=headers)
        return outgoing

    async def republish(
        self,
        envelope: Envelope,
        queue_name: str,
        *,
        delay_ms: Optional[int] = None,
        headers: Optional[dict[str, Any]] = None,
    ) -> Envelope:
        """Publish an existing envelope again (retry path)."""
        await self.send(envelope, queue_name, delay_ms=delay_ms, headers=headers)
        return envelope

    async def send(
        self,
        envelope: Envelope,
        queue_name: str,
        *,
        delay_ms: Optional[int] = None,
        headers: Optional[dict[str, Any]] = None,
    ) -> None:
        """
        Serialize and publish an envelope as-is.

        Raises:
            PublishError: If the broker did not confirm the message
        """
        message_headers = {RETRY_COUNT_HEADER: envelope.retry_count}
        message_headers.update(headers or {})

        routing_key = queue_name
        expiration_ms = None
        if delay_ms is not None and delay_ms > 0:
            routing_key = delay_queue_name(queue_name)
            expiration_ms = int(delay_ms)

        try:
            channel = await self._get_channel()
        except BrokerConnectionError as e:
            raise PublishError(queue_name, str(e)) from e

        await channel.publish(
            routing_key,
            envelope.to_bytes(),
            message_id=envelope.id,
            correlation_id=envelope.correlation_id,
            headers=message_headers,
            expiration_ms=expiration_ms,
        )

        logger.debug(
            f"Published envelope {envelope.id} to {routing_key}",
            extra={
                "queue": queue_name,
                "correlation_id": envelope.correlation_id,
                "retry_count": envelope.retry_count,
                "delay_ms": expiration_ms,
                "content_type": CONTENT_TYPE,
            }
        )
