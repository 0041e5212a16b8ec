"""
Message Envelope

The unit of work carried on every queue: identity, correlation id, payload
and delivery metadata. Envelopes are immutable; retries produce a copy with
an incremented retry count.
"""

import datetime as dt
import json
import uuid
from typing import Any, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_serializer
from pydantic.alias_generators import to_camel

from src.message_queue.errors import EnvelopeDecodeError

# Wire headers
RETRY_COUNT_HEADER = "x-retry-count"
FIRST_DEATH_QUEUE_HEADER = "x-first-death-queue"
ORIGINAL_CORRELATION_ID_HEADER = "x-original-correlation-id"
MAX_RETRIES_ARGUMENT = "x-max-retries"

CONTENT_TYPE = "application/json"


def new_id() -> str:
    return str(uuid.uuid4())


class Envelope(BaseModel):
    """
    Wrapped unit of work.

    Attributes:
        id: Unique identifier, assigned at creation
        correlation_id: Propagated across every envelope derived from one unit of work
        payload: Stage-specific structured data
        retry_count: Number of republishes so far, never decremented
        first_queue: Queue where the envelope first appeared
        created_at: Creation time, preserved across retries
    """
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
    )

    id: str = Field(default_factory=new_id)
    correlation_id: str = Field(default_factory=new_id)
    payload: dict[str, Any] = Field(default_factory=dict)
    retry_count: int = Field(default=0, ge=0)
    first_queue: Optional[str] = None
    created_at: dt.datetime = Field(default_factory=lambda: dt.datetime.now(dt.UTC))

    @field_serializer("created_at")
    def serialize_dt(self, value: dt.datetime):
        return value.isoformat()

    def with_retry(self, retry_count: int) -> "Envelope":
        """Copy of this envelope for a republish; retry_count may only grow."""
        if retry_count < self.retry_count:
            raise ValueError(
                f"retry_count cannot decrease ({self.retry_count} -> {retry_count})"
            )
        return self.model_copy(update={"retry_count": retry_count})

    def follow_on(self, payload: dict[str, Any], queue_name: str) -> "Envelope":
        """New envelope for the next stage, sharing this correlation id."""
        return Envelope(
            correlation_id=self.correlation_id,
            payload=payload,
            first_queue=queue_name,
        )

    def age_ms(self, now: Optional[dt.datetime] = None) -> float:
        now = now or dt.datetime.now(dt.UTC)
        return (now - self.created_at).total_seconds() * 1000

    def to_bytes(self) -> bytes:
        return self.model_dump_json(by_alias=True).encode("utf-8")


def _looks_like_envelope(data: Mapping[str, Any]) -> bool:
    return "id" in data and "payload" in data and isinstance(data["payload"], dict)


def decode_envelope(
    body: bytes,
    queue_name: str,
    message_id: Optional[str] = None,
    correlation_id: Optional[str] = None,
    headers: Optional[Mapping[str, Any]] = None,
) -> Envelope:
    """
    Decode a delivery body into an Envelope.

    Bodies published by this layer are full envelopes. Bare producer payloads
    (e.g. ``{"ingredientIds": ["a", "b"]}``) are wrapped: the id comes from the
    AMQP message id, the correlation id from the AMQP correlation id (or the
    ``x-original-correlation-id`` header), and new ids are generated when absent.

    Args:
        body: Raw delivery body
        queue_name: Queue the delivery was consumed from
        message_id: AMQP message id property
        correlation_id: AMQP correlation id property
        headers: AMQP headers

    Returns:
        Decoded envelope

    Raises:
        EnvelopeDecodeError: If the body is not a JSON object
    """
    try:
        data = json.loads(body)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise EnvelopeDecodeError(f"Body is not valid JSON: {e}") from e

    if not isinstance(data, dict):
        raise EnvelopeDecodeError(
            f"Body must be a JSON object, got {type(data).__name__}"
        )

    headers = headers or {}

    if _looks_like_envelope(data):
        try:
            envelope = Envelope.model_validate(data)
        except ValidationError as e:
            raise EnvelopeDecodeError(f"Malformed envelope: {e}") from e
        if envelope.first_queue is None:
            envelope = envelope.model_copy(update={"first_queue": queue_name})
        return envelope

    correlation = correlation_id or headers.get(ORIGINAL_CORRELATION_ID_HEADER)
    return Envelope(
        id=message_id or new_id(),
        correlation_id=correlation or new_id(),
        payload=data,
        retry_count=read_retry_count(headers),
        first_queue=headers.get(FIRST_DEATH_QUEUE_HEADER) or queue_name,
    )


def read_retry_count(headers: Optional[Mapping[str, Any]], default: int = 0) -> int:
    """Read x-retry-count from headers; missing or malformed values fall back to default."""
    if not headers:
        return default
    value = headers.get(RETRY_COUNT_HEADER)
    if value is None:
        return default
    try:
        count = int(value)
    except (TypeError, ValueError):
        return default
    return max(count, 0)
