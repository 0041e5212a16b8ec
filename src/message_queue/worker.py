"""
Queue Worker

Base consumer bound to one stage queue. Decodes and validates deliveries,
runs the stage handler through the performance monitor, publishes follow-on
envelopes and settles every delivery exactly once.
"""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Generic, Optional, TypeVar, Union

from loguru import logger
from pydantic import BaseModel, ValidationError

from src.config import get_settings
from src.message_queue.base import BrokerChannel, Delivery
from src.message_queue.bindings import QueueBinding, declare_queue
from src.message_queue.connection import ConnectionManager
from src.message_queue.envelope import Envelope, decode_envelope
from src.message_queue.errors import (
    BrokerConnectionError,
    PayloadValidationError,
    PermanentMessageError,
    QueueError,
)
from src.message_queue.monitor import PerformanceMonitor
from src.message_queue.outcome import ProcessingOutcome
from src.message_queue.publisher import Publisher
from src.message_queue.retry import RetryAction, RetryCoordinator, RetryPolicy
from src.utils.observability import log_queue_event

P = TypeVar("P", bound=BaseModel)


@dataclass
class WorkerStats:
    """Lifetime counters for one worker (logged, never persisted)."""
    received: int = 0
    succeeded: int = 0
    retried: int = 0
    dead_lettered: int = 0
    dropped: int = 0
    requeued: int = 0


class QueueWorker(ABC, Generic[P]):
    """
    Consumer for one stage queue.

    Subclasses define:
    - payload_model: Pydantic model validating the envelope payload
    - handle(): Call the external capability and return a ProcessingOutcome
    - build_follow_on(): Payload for the downstream queue, if any

    Attributes:
        connection_manager: Shared broker connection
        publisher: Publisher for follow-on envelopes and retries
        binding: Queue this worker consumes
        downstream_binding: Next stage queue, if any
        coordinator: Retry/dead-letter coordinator
        monitor: Performance monitor wrapped around handler calls
    """

    payload_model: type[P]
    threshold_ms: Optional[float] = None

    def __init__(
        self,
        connection_manager: ConnectionManager,
        publisher: Publisher,
        binding: QueueBinding,
        retry_policy: Optional[RetryPolicy] = None,
        monitor: Optional[PerformanceMonitor] = None,
        downstream_binding: Optional[QueueBinding] = None,
        shutdown_timeout: Optional[float] = None,
    ):
        """
        Initialize queue worker.

        Args:
            connection_manager: Shared broker connection
            publisher: Publisher used for follow-ons and retries
            binding: Queue to consume
            retry_policy: Retry ceiling and backoff (default from settings)
            monitor: Performance monitor (default: new instance)
            downstream_binding: Queue receiving follow-on envelopes
            shutdown_timeout: Seconds stop() waits for in-flight handlers
        """
        settings = get_settings()
        self.connection_manager = connection_manager
        self.publisher = publisher
        self.binding = binding
        self.downstream_binding = downstream_binding
        self.coordinator = RetryCoordinator(publisher, retry_policy)
        self.monitor = monitor or PerformanceMonitor()
        self.shutdown_timeout = (
            shutdown_timeout if shutdown_timeout is not None
            else settings.worker_shutdown_timeout_seconds
        )
        self.stats = WorkerStats()
        self._running = False
        self._channel: Optional[BrokerChannel] = None
        self._consumer_tag: Optional[str] = None
        self._tasks: set[asyncio.Task] = set()
        self._register_lock = asyncio.Lock()

    @property
    def stage(self) -> str:
        return self.binding.name

    @property
    def retry_policy(self) -> RetryPolicy:
        return self.coordinator.policy

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    def __repr__(self) -> str:
        return f"{type(self).__name__}(queue={self.stage!r})"

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """
        Declare the queue, register the consumer and follow reconnects.
        """
        if self._running:
            logger.warning(f"Worker {self.stage} already running")
            return

        self._running = True
        try:
            await self._register()
        except Exception:
            self._running = False
            raise
        self.connection_manager.subscribe(self)

        logger.info(
            f"🚀 Worker started on {self.stage} (prefetch={self.binding.prefetch}, "
            f"max_retries={self.retry_policy.max_retries})"
        )

    async def _register(self) -> None:
        async with self._register_lock:
            channel = await self.connection_manager.channel()
            await channel.set_qos(self.binding.prefetch)
            await declare_queue(channel, self.binding)
            if self.downstream_binding is not None:
                await declare_queue(channel, self.downstream_binding)
            self._consumer_tag = await channel.consume(self.binding.name, self._on_delivery)
            self._channel = channel

    async def on_reconnect(self) -> None:
        """
        Re-register on a fresh connection.

        The old channel and consumer died with the previous connection and the
        broker already requeued their unacked deliveries, so nothing is
        carried over.
        """
        if not self._running:
            return
        self._channel = None
        self._consumer_tag = None
        await self._register()
        logger.info(f"Worker {self.stage} resubscribed after reconnect")

    async def stop(self) -> None:
        """
        Stop the worker.

        Gracefully shuts down:
        1. Stops accepting new deliveries
        2. Waits for in-flight handlers to complete
        3. Cancels any remaining tasks and closes the channel
        """
        if not self._running:
            return

        logger.info(f"Stopping worker {self.stage}...")
        self._running = False
        self.connection_manager.unsubscribe(self)

        channel = self._channel
        if channel is not None and not channel.is_closed and self._consumer_tag:
            try:
                await channel.cancel(self._consumer_tag)
            except BrokerConnectionError as e:
                logger.warning(f"Consumer cancel failed on {self.stage}: {e}")
        self._consumer_tag = None

        if self._tasks:
            logger.info(f"Waiting for {len(self._tasks)} in-flight messages on {self.stage}...")
            try:
                await asyncio.wait_for(
                    asyncio.gather(*self._tasks, return_exceptions=True),
                    timeout=self.shutdown_timeout
                )
            except asyncio.TimeoutError:
                logger.warning("Timeout waiting for handlers, cancelling remaining")
                for task in self._tasks:
                    task.cancel()

        if channel is not None and not channel.is_closed:
            await channel.close()
        self._channel = None

        logger.info(
            f"🛑 Worker {self.stage} stopped",
            extra={"stats": self.stats.__dict__},
        )

    # ------------------------------------------------------------------
    # Message flow
    # ------------------------------------------------------------------

    async def _on_delivery(self, delivery: Delivery) -> None:
        """Consumer callback; each delivery is processed in its own task."""
        if not self._running:
            # Raced with stop(): hand the message back untouched
            await self._settle(delivery, requeue=True)
            self.stats.requeued += 1
            return
        task = asyncio.create_task(self._process_delivery(delivery))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _process_delivery(self, delivery: Delivery) -> None:
        """
        Decode, validate, handle and settle one delivery.

        Args:
            delivery: Unsettled delivery from the stage queue
        """
        self.stats.received += 1
        envelope: Optional[Envelope] = None

        try:
            envelope = decode_envelope(
                delivery.body,
                queue_name=self.stage,
                message_id=delivery.message_id,
                correlation_id=delivery.correlation_id,
                headers=delivery.headers,
            )
            payload = self.parse_payload(envelope)
        except PermanentMessageError as e:
            await self._drop(delivery, envelope, str(e))
            return

        outcome = await self.monitor.track(
            self.stage, envelope, lambda: self.handle(envelope, payload)
        )

        if outcome.success:
            self.monitor.check_threshold(
                self.stage,
                envelope.correlation_id,
                outcome.duration_ms,
                self.threshold_ms,
                message_id=envelope.id,
            )
            try:
                await self._publish_follow_on(envelope, payload, outcome)
            except ValidationError as e:
                # Handler output can never form a valid downstream payload
                outcome = ProcessingOutcome.permanent_failure(
                    f"Invalid follow-on payload: {e.error_count()} error(s)", cause=e
                ).with_duration(outcome.duration_ms)
            except Exception as e:
                outcome = ProcessingOutcome.transient_failure(
                    "Follow-on publish failed", cause=e
                ).with_duration(outcome.duration_ms)
            else:
                await self._settle(delivery, ack=True)
                self.stats.succeeded += 1
                return

        if outcome.is_permanent:
            await self._drop(delivery, envelope, outcome.error.message if outcome.error else "")
            return

        try:
            decision = await self.coordinator.handle_failure(delivery, envelope, outcome, self.binding)
        except Exception as e:
            log_queue_event(
                "failure_handling_error",
                self.stage,
                correlation_id=envelope.correlation_id,
                level="ERROR",
                message_id=envelope.id,
                error=str(e),
            )
            await self._settle(delivery, requeue=True)
            self.stats.requeued += 1
            return

        if decision.action == RetryAction.RETRY:
            self.stats.retried += 1
        else:
            self.stats.dead_lettered += 1

    def parse_payload(self, envelope: Envelope) -> P:
        """
        Validate the envelope payload against payload_model.

        Raises:
            PayloadValidationError: On missing or malformed fields
        """
        try:
            return self.payload_model.model_validate(envelope.payload)
        except ValidationError as e:
            raise PayloadValidationError(
                f"Invalid {self.stage} payload: {e.error_count()} error(s): "
                + "; ".join(
                    f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
                )
            ) from e

    @abstractmethod
    async def handle(self, envelope: Envelope, payload: P) -> ProcessingOutcome:
        """
        Run the stage's external capability.

        Returns:
            SUCCEEDED with an optional result, TRANSIENT_FAILURE for failures a
            retry may fix, PERMANENT_FAILURE for failures it never will
        """
        pass

    def build_follow_on(
        self, envelope: Envelope, payload: P, outcome: ProcessingOutcome
    ) -> Optional[Union[BaseModel, dict[str, Any]]]:
        """Payload for the downstream queue; None publishes nothing."""
        return None

    async def _publish_follow_on(
        self, envelope: Envelope, payload: P, outcome: ProcessingOutcome
    ) -> None:
        if self.downstream_binding is None:
            return
        follow_on = self.build_follow_on(envelope, payload, outcome)
        if follow_on is None:
            return
        await self.publisher.publish(
            self.downstream_binding.name,
            follow_on,
            correlation_id=envelope.correlation_id,
        )

    async def _drop(self, delivery: Delivery, envelope: Optional[Envelope], reason: str) -> None:
        """Permanent failure: ack and drop, logged at error level."""
        await self._settle(delivery, ack=True)
        self.stats.dropped += 1
        log_queue_event(
            "permanent_failure_dropped",
            self.stage,
            correlation_id=envelope.correlation_id if envelope else delivery.correlation_id,
            level="ERROR",
            message_id=envelope.id if envelope else delivery.message_id,
            reason=reason,
        )

    async def _settle(self, delivery: Delivery, ack: bool = False, requeue: bool = False) -> None:
        try:
            if ack:
                await delivery.ack()
            else:
                await delivery.nack(requeue=requeue)
        except QueueError as e:
            # Channel died with the connection or the delivery was already settled
            log_queue_event(
                "settle_failed",
                self.stage,
                correlation_id=delivery.correlation_id,
                level="WARNING",
                error=str(e),
            )
