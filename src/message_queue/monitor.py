"""
Performance Monitor

Times every handler invocation and emits one structured log line per message.
Holds no state; log collectors downstream turn the lines into metrics.
"""

import time
from typing import Awaitable, Callable, Optional

from src.message_queue.envelope import Envelope
from src.message_queue.outcome import ProcessingOutcome
from src.utils.observability import log_message_processed, log_threshold_breach

Handler = Callable[[], Awaitable[ProcessingOutcome]]


class PerformanceMonitor:
    """Observability hook wrapped around handler calls."""

    async def track(
        self,
        stage: str,
        envelope: Envelope,
        handler: Handler,
    ) -> ProcessingOutcome:
        """
        Run a handler, measuring its wall-clock duration.

        An exception escaping the handler is reported as a transient failure
        carrying the cause, so the caller always gets a typed outcome.

        Args:
            stage: Worker stage name
            envelope: Envelope being processed
            handler: Zero-argument coroutine factory returning an outcome

        Returns:
            The handler outcome with duration_ms filled in
        """
        start = time.perf_counter()
        try:
            outcome = await handler()
        except Exception as e:
            outcome = ProcessingOutcome.transient_failure(
                f"Unhandled error in {stage} handler", cause=e
            )
        duration_ms = (time.perf_counter() - start) * 1000
        outcome = outcome.with_duration(duration_ms)

        context = {
            "message_id": envelope.id,
            "retry_count": envelope.retry_count,
        }
        if outcome.error is not None:
            context["error"] = outcome.error.message
            if outcome.error.cause:
                context["cause"] = outcome.error.cause

        log_message_processed(
            stage=stage,
            correlation_id=envelope.correlation_id,
            duration_ms=duration_ms,
            outcome=outcome.status.value,
            **context,
        )
        return outcome

    def check_threshold(
        self,
        stage: str,
        correlation_id: str,
        duration_ms: float,
        threshold_ms: Optional[float],
        **context,
    ) -> bool:
        """Log a breach warning when duration_ms exceeds threshold_ms."""
        if threshold_ms is None or duration_ms <= threshold_ms:
            return False
        log_threshold_breach(
            stage=stage,
            correlation_id=correlation_id,
            duration_ms=duration_ms,
            threshold_ms=threshold_ms,
            **context,
        )
        return True
