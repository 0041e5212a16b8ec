"""
Structured Logging & Observability
Production-grade logging that's both human-readable and machine-parseable.
"""
import sys
from loguru import logger
from typing import Any, Optional
from src.config import get_settings


def configure_logging():
    """
    Configure loguru for production observability.

    In development: Human-readable colorized output
    In production: Structured JSON logs for ingestion (ELK, Datadog, etc.)
    """
    settings = get_settings()

    # Remove default handler
    logger.remove()

    # Development mode: Beautiful console output
    if not settings.enable_structured_logging:
        logger.add(
            sys.stderr,
            format=(
                "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
                "<level>{level: <8}</level> | "
                "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> | "
                "{message}"
            ),
            level=settings.log_level,
            colorize=True,
        )
    # Production mode: JSON structured logs
    else:
        logger.add(
            sys.stderr,
            format="{message}",
            level=settings.log_level,
            serialize=True,  # Output as JSON
        )

    logger.info(f"Logging configured: level={settings.log_level}, structured={settings.enable_structured_logging}")


def log_message_processed(
    stage: str,
    correlation_id: str,
    duration_ms: float,
    outcome: str,
    **context: Any
):
    """
    Structured log line emitted once per handled message.

    Args:
        stage: Worker stage name (e.g., "recipe-matching")
        correlation_id: Correlation id of the unit of work
        duration_ms: Handler wall-clock time in milliseconds
        outcome: "succeeded", "transient_failure" or "permanent_failure"
        **context: Additional context (retry_count, message_id, error, ...)

    Example:
        >>> log_message_processed(
        ...     stage="recipe-matching",
        ...     correlation_id="c0ffee",
        ...     duration_ms=48.2,
        ...     outcome="succeeded",
        ...     retry_count=0
        ... )
    """
    log_data = {
        "event_type": "message_processed",
        "stage": stage,
        "correlation_id": correlation_id,
        "duration_ms": round(duration_ms, 2),
        "outcome": outcome,
    }
    log_data.update(context)

    level = "INFO" if outcome == "succeeded" else "WARNING"
    logger.bind(**log_data).log(
        level,
        f"{stage} | {outcome} | {duration_ms:.1f}ms"
    )


def log_threshold_breach(
    stage: str,
    correlation_id: str,
    duration_ms: float,
    threshold_ms: float,
    **context: Any
):
    """
    Warn that a handler exceeded its service-level target.

    Monitoring only: the message outcome is not affected.
    """
    log_data = {
        "event_type": "threshold_breach",
        "stage": stage,
        "correlation_id": correlation_id,
        "duration_ms": round(duration_ms, 2),
        "threshold_ms": threshold_ms,
    }
    log_data.update(context)

    logger.bind(**log_data).warning(
        f"{stage} exceeded performance threshold: {duration_ms:.1f}ms > {threshold_ms:.0f}ms"
    )


def log_queue_event(
    event_type: str,
    queue: str,
    correlation_id: Optional[str] = None,
    level: str = "INFO",
    **details: Any
):
    """
    Log a queue lifecycle event (retry scheduled, dead-lettered, dropped...).

    Args:
        event_type: Type of event (e.g., "retry_scheduled", "dead_lettered")
        queue: Queue the event relates to
        correlation_id: Correlation id when the event concerns one message
        level: Loguru level name
        **details: Event-specific data
    """
    log_data = {
        "event_type": event_type,
        "queue": queue,
        **details
    }
    if correlation_id is not None:
        log_data["correlation_id"] = correlation_id

    logger.bind(**log_data).log(level, f"Queue Event: {event_type} | {queue}")
