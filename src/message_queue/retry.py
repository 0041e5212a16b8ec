"""
Retry / Dead-Letter Coordinator

Handles transient handler failures:
- Retry count read from x-retry-count (default 0) and incremented
- Republished through the delay queue with exponential backoff while the
  incremented count is within max_retries
- Rejected without requeue once the ceiling is passed, so the broker's
  dead-letter wiring moves it to <stage>.dead

The original delivery is settled only after the outcome is durably recorded.
"""

from enum import StrEnum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from src.config import get_settings
from src.message_queue.base import Delivery
from src.message_queue.bindings import QueueBinding
from src.message_queue.envelope import (
    FIRST_DEATH_QUEUE_HEADER,
    ORIGINAL_CORRELATION_ID_HEADER,
    RETRY_COUNT_HEADER,
    Envelope,
    read_retry_count,
)
from src.message_queue.errors import BrokerConnectionError, PublishError
from src.message_queue.outcome import ProcessingOutcome
from src.message_queue.publisher import Publisher
from src.utils.observability import log_queue_event


class RetryState(StrEnum):
    """Lifecycle of a failed message."""
    FAILED = "failed"
    RETRYING = "retrying"
    EXHAUSTED = "exhausted"
    DEAD_LETTERED = "dead_lettered"


class RetryAction(StrEnum):
    RETRY = "retry"
    DEAD_LETTER = "dead_letter"


class RetryPolicy(BaseModel):
    """
    Retry ceiling and exponential backoff for one worker type.

    Attributes:
        max_retries: Retries allowed after the first failure
        base_delay_ms: Initial backoff unit
        max_delay_ms: Optional cap on a single delay
    """
    model_config = ConfigDict(frozen=True)

    max_retries: int = Field(default=3, ge=0)
    base_delay_ms: int = Field(default=1000, ge=0)
    max_delay_ms: Optional[int] = Field(default=None, ge=0)

    @model_validator(mode="after")
    def _cap_not_below_base(self) -> "RetryPolicy":
        if self.max_delay_ms is not None and self.max_delay_ms < self.base_delay_ms:
            raise ValueError("max_delay_ms must be >= base_delay_ms")
        return self

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        settings = get_settings()
        return cls(
            max_retries=settings.queue_max_retries,
            base_delay_ms=settings.queue_retry_base_delay_ms,
            max_delay_ms=settings.queue_retry_max_delay_ms,
        )

    def delay_for(self, retry_count: int) -> int:
        """delay = base_delay_ms * 2 ** retry_count, capped at max_delay_ms."""
        delay = self.base_delay_ms * (2 ** max(retry_count, 0))
        if self.max_delay_ms is not None:
            delay = min(delay, self.max_delay_ms)
        return delay


class RetryDecision(BaseModel):
    """What to do with a transiently failed message."""
    model_config = ConfigDict(frozen=True)

    action: RetryAction
    state: RetryState
    retry_count: int
    delay_ms: int = 0


class RetryCoordinator:
    """
    Decides and executes retry or dead-letter for failed deliveries.

    Usage:
        coordinator = RetryCoordinator(publisher, RetryPolicy(max_retries=3))
        decision = await coordinator.handle_failure(delivery, envelope, outcome, binding)
    """

    def __init__(
        self,
        publisher: Publisher,
        policy: Optional[RetryPolicy] = None,
        ttl_race_window_ms: Optional[int] = None,
    ):
        settings = get_settings()
        self.publisher = publisher
        self.policy = policy or RetryPolicy.from_settings()
        self._ttl_race_window_ms = (
            ttl_race_window_ms if ttl_race_window_ms is not None
            else settings.queue_ttl_race_window_ms
        )

    def decide(self, retry_count: int) -> RetryDecision:
        """Pure decision on the retry count carried by the failed delivery."""
        next_count = retry_count + 1
        if next_count <= self.policy.max_retries:
            return RetryDecision(
                action=RetryAction.RETRY,
                state=RetryState.RETRYING,
                retry_count=next_count,
                delay_ms=self.policy.delay_for(next_count),
            )
        return RetryDecision(
            action=RetryAction.DEAD_LETTER,
            state=RetryState.EXHAUSTED,
            retry_count=next_count,
        )

    @staticmethod
    def current_retry_count(delivery: Delivery, envelope: Envelope) -> int:
        """x-retry-count header, falling back to the envelope's own count."""
        return read_retry_count(delivery.headers, default=envelope.retry_count)

    async def handle_failure(
        self,
        delivery: Delivery,
        envelope: Envelope,
        outcome: ProcessingOutcome,
        binding: QueueBinding,
    ) -> RetryDecision:
        """
        Re-enqueue or dead-letter a transiently failed delivery.

        Args:
            delivery: The original delivery, still unsettled
            envelope: Decoded envelope of the delivery
            outcome: Failed handler outcome
            binding: Binding of the origin queue

        Returns:
            The decision that was executed
        """
        retry_count = self.current_retry_count(delivery, envelope)
        decision = self.decide(retry_count)
        error = outcome.error.message if outcome.error else None

        if decision.action == RetryAction.RETRY:
            await self._retry(delivery, envelope, decision, binding, error)
            return decision

        await self._dead_letter(delivery, envelope, retry_count, binding, error)
        return decision.model_copy(update={"state": RetryState.DEAD_LETTERED})

    async def _retry(
        self,
        delivery: Delivery,
        envelope: Envelope,
        decision: RetryDecision,
        binding: QueueBinding,
        error: Optional[str],
    ) -> None:
        retried = envelope.with_retry(decision.retry_count)
        headers = {
            RETRY_COUNT_HEADER: decision.retry_count,
            FIRST_DEATH_QUEUE_HEADER: binding.name,
            ORIGINAL_CORRELATION_ID_HEADER: envelope.correlation_id,
        }

        try:
            await self.publisher.republish(
                retried,
                binding.name,
                delay_ms=decision.delay_ms,
                headers=headers,
            )
        except PublishError as e:
            # Original stays live: the broker redelivers it
            log_queue_event(
                "retry_publish_failed",
                binding.name,
                correlation_id=envelope.correlation_id,
                level="ERROR",
                retry_count=decision.retry_count,
                error=str(e),
            )
            await self._settle(delivery, requeue=True, binding=binding)
            return

        await self._settle(delivery, ack=True, binding=binding)
        log_queue_event(
            "retry_scheduled",
            binding.name,
            correlation_id=envelope.correlation_id,
            retry_count=decision.retry_count,
            max_retries=self.policy.max_retries,
            delay_ms=decision.delay_ms,
            error=error,
        )

    async def _dead_letter(
        self,
        delivery: Delivery,
        envelope: Envelope,
        retry_count: int,
        binding: QueueBinding,
        error: Optional[str],
    ) -> None:
        await self._settle(delivery, requeue=False, binding=binding)
        log_queue_event(
            "dead_lettered",
            binding.name,
            correlation_id=envelope.correlation_id,
            level="WARNING",
            retry_count=retry_count,
            max_retries=self.policy.max_retries,
            dead_letter_target=binding.dead_letter_target,
            error=error,
        )
        self._check_ttl_race(envelope, binding)

    def _check_ttl_race(self, envelope: Envelope, binding: QueueBinding) -> None:
        """Flag dead-letters that happened close to the queue TTL expiry."""
        if binding.message_ttl_ms is None:
            return
        remaining = binding.message_ttl_ms - envelope.age_ms()
        if remaining <= self._ttl_race_window_ms:
            log_queue_event(
                "expiry_race",
                binding.name,
                correlation_id=envelope.correlation_id,
                level="WARNING",
                message_ttl_ms=binding.message_ttl_ms,
                remaining_ms=round(remaining, 2),
            )

    @staticmethod
    async def _settle(
        delivery: Delivery,
        binding: QueueBinding,
        ack: bool = False,
        requeue: bool = False,
    ) -> None:
        try:
            if ack:
                await delivery.ack()
            else:
                await delivery.nack(requeue=requeue)
        except BrokerConnectionError as e:
            # Channel is gone; the broker already returned the message to the queue
            log_queue_event(
                "settle_failed",
                binding.name,
                correlation_id=delivery.correlation_id,
                level="WARNING",
                error=str(e),
            )
