"""
Analytics Worker

Consumes ``analytics`` and records each event with the analytics store.
"""

from typing import Any, Optional

from src.message_queue.bindings import ANALYTICS_QUEUE, QueueBinding, default_bindings
from src.message_queue.connection import ConnectionManager
from src.message_queue.envelope import Envelope
from src.message_queue.outcome import ProcessingOutcome
from src.message_queue.publisher import Publisher
from src.message_queue.worker import QueueWorker
from src.models.payloads import AnalyticsEventType, AnalyticsPayload
from src.utils.observability import logger
from src.workers.collaborators import AnalyticsSink, CollaboratorError

# Warning levels for reported metrics (monitoring only)
CPU_USAGE_WARN_PERCENT = 70
MEMORY_USAGE_WARN_PERCENT = 80
RECOGNITION_TIME_WARN_MS = 3000


class AnalyticsWorker(QueueWorker[AnalyticsPayload]):
    """Hands analytics events to the sink, preserving their correlation id."""

    payload_model = AnalyticsPayload

    def __init__(
        self,
        connection_manager: ConnectionManager,
        publisher: Publisher,
        sink: AnalyticsSink,
        binding: Optional[QueueBinding] = None,
        **kwargs: Any,
    ):
        super().__init__(
            connection_manager,
            publisher,
            binding or default_bindings()[ANALYTICS_QUEUE],
            **kwargs,
        )
        self.sink = sink

    async def handle(self, envelope: Envelope, payload: AnalyticsPayload) -> ProcessingOutcome:
        event = payload.model_dump(mode="json", by_alias=True, exclude_none=True)
        event.setdefault("correlationId", envelope.correlation_id)

        self._warn_on_metrics(envelope, payload, event)

        try:
            await self.sink.record(event)
        except CollaboratorError as e:
            return ProcessingOutcome.transient_failure(
                f"Recording {payload.type} event failed", cause=e
            )
        return ProcessingOutcome.succeeded()

    def _warn_on_metrics(
        self, envelope: Envelope, payload: AnalyticsPayload, event: dict[str, Any]
    ) -> None:
        warnings: list[str] = []
        if payload.type == AnalyticsEventType.SYSTEM_PERFORMANCE:
            if _as_number(event.get("cpuUsage")) > CPU_USAGE_WARN_PERCENT:
                warnings.append(f"cpuUsage={event['cpuUsage']}")
            if _as_number(event.get("memoryUsage")) > MEMORY_USAGE_WARN_PERCENT:
                warnings.append(f"memoryUsage={event['memoryUsage']}")
        elif payload.type == AnalyticsEventType.INGREDIENT_RECOGNITION:
            if _as_number(event.get("processingTime")) > RECOGNITION_TIME_WARN_MS:
                warnings.append(f"processingTime={event['processingTime']}")

        if warnings:
            logger.warning(
                f"{payload.type} metrics exceeded thresholds: {', '.join(warnings)}",
                extra={"correlation_id": envelope.correlation_id}
            )


def _as_number(value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0
