"""
Queue Bindings

Durable queue declarations with dead-letter wiring and a delay queue for
scheduled retries.

Topology per stage:
- ``<stage>``: primary queue, dead-letters to ``<stage>-dlx``
- ``<stage>-dlx``: direct exchange for dead letters
- ``<stage>.dead``: terminal queue bound to the DLX with routing key ``<stage>``
- ``<stage>.delay``: holding queue; messages expire after their per-message
  TTL and are dead-lettered back into ``<stage>`` through the default exchange

RabbitMQ only expires messages at the head of a queue. A long retry delay at
the head of ``<stage>.delay`` holds back shorter delays queued behind it, so a
retry can arrive later than its own backoff (never earlier). The in-memory
broker expires each message on its own timer and does not reproduce this.
"""

from typing import Any, Optional

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field

from src.config import get_settings
from src.message_queue.base import BrokerChannel
from src.message_queue.envelope import MAX_RETRIES_ARGUMENT

# Stage queue names
IMAGE_PROCESSING_QUEUE = "image-processing"
RECIPE_MATCHING_QUEUE = "recipe-matching"
NOTIFICATION_QUEUE = "notifications"
ANALYTICS_QUEUE = "analytics"


def dead_letter_exchange_name(stage: str) -> str:
    return f"{stage}-dlx"


def dead_letter_queue_name(stage: str) -> str:
    return f"{stage}.dead"


def delay_queue_name(stage: str) -> str:
    return f"{stage}.delay"


class QueueBinding(BaseModel):
    """
    Declaration of one stage queue.

    Attributes:
        name: Primary queue name
        durable: Always True for this layer
        dead_letter_exchange: Exchange that receives rejected/expired messages
        dead_letter_target: Terminal queue bound to the dead-letter exchange
        retry_queue: Delay queue used for scheduled retries
        message_ttl_ms: Residency bound before the broker dead-letters a message
        prefetch: Max unacknowledged deliveries per consumer
        max_retries: Handler retry ceiling, advertised as x-max-retries
        extra_arguments: Additional queue arguments (priority, max length...)
    """
    model_config = ConfigDict(frozen=True)

    name: str
    durable: bool = True
    dead_letter_exchange: str
    dead_letter_target: str
    retry_queue: str
    message_ttl_ms: Optional[int] = None
    prefetch: int = Field(default=10, ge=1)
    max_retries: int = Field(default=3, ge=0)
    extra_arguments: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def for_stage(
        cls,
        stage: str,
        prefetch: Optional[int] = None,
        message_ttl_ms: Optional[int] = None,
        max_retries: Optional[int] = None,
        extra_arguments: Optional[dict[str, Any]] = None,
    ) -> "QueueBinding":
        """Build a binding following the ``<stage>-dlx`` / ``<stage>.dead`` convention."""
        settings = get_settings()
        return cls(
            name=stage,
            dead_letter_exchange=dead_letter_exchange_name(stage),
            dead_letter_target=dead_letter_queue_name(stage),
            retry_queue=delay_queue_name(stage),
            message_ttl_ms=message_ttl_ms if message_ttl_ms is not None else settings.queue_message_ttl_ms,
            prefetch=prefetch or settings.rabbitmq_prefetch,
            max_retries=max_retries if max_retries is not None else settings.queue_max_retries,
            extra_arguments=extra_arguments or {},
        )

    def queue_arguments(self) -> dict[str, Any]:
        """Arguments for the primary queue."""
        arguments: dict[str, Any] = {
            "x-dead-letter-exchange": self.dead_letter_exchange,
            "x-dead-letter-routing-key": self.name,
            MAX_RETRIES_ARGUMENT: self.max_retries,
        }
        if self.message_ttl_ms is not None:
            arguments["x-message-ttl"] = self.message_ttl_ms
        arguments.update(self.extra_arguments)
        return arguments

    def retry_queue_arguments(self) -> dict[str, Any]:
        """Arguments for the delay queue: expired messages return to the primary queue."""
        return {
            "x-dead-letter-exchange": "",
            "x-dead-letter-routing-key": self.name,
        }


def default_bindings() -> dict[str, QueueBinding]:
    """Bindings for every stage, with per-stage arguments from settings."""
    settings = get_settings()
    return {
        IMAGE_PROCESSING_QUEUE: QueueBinding.for_stage(
            IMAGE_PROCESSING_QUEUE,
            extra_arguments={"x-max-priority": settings.image_queue_max_priority},
        ),
        RECIPE_MATCHING_QUEUE: QueueBinding.for_stage(
            RECIPE_MATCHING_QUEUE,
            extra_arguments={"x-max-length": settings.matching_queue_max_length},
        ),
        NOTIFICATION_QUEUE: QueueBinding.for_stage(
            NOTIFICATION_QUEUE,
            message_ttl_ms=settings.notification_message_ttl_ms,
        ),
        ANALYTICS_QUEUE: QueueBinding.for_stage(ANALYTICS_QUEUE),
    }


async def declare_queue(channel: BrokerChannel, binding: QueueBinding) -> None:
    """
    Declare the full topology for one binding.

    All declarations are idempotent - safe to call from every worker that
    touches the queue.

    Args:
        channel: Open broker channel
        binding: Queue to declare

    Raises:
        DeclarationConflictError: If an existing queue has incompatible settings
    """
    await channel.declare_exchange(binding.dead_letter_exchange, "direct", durable=True)
    await channel.declare_queue(binding.dead_letter_target, durable=True)
    await channel.bind_queue(binding.dead_letter_target, binding.dead_letter_exchange, binding.name)

    await channel.declare_queue(
        binding.retry_queue,
        durable=True,
        arguments=binding.retry_queue_arguments(),
    )
    await channel.declare_queue(
        binding.name,
        durable=binding.durable,
        arguments=binding.queue_arguments(),
    )

    logger.debug(
        f"Declared queue {binding.name}",
        extra={
            "dead_letter_target": binding.dead_letter_target,
            "retry_queue": binding.retry_queue,
            "prefetch": binding.prefetch,
        }
    )
