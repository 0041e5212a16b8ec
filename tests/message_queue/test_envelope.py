"""
Tests for Envelope and delivery decoding.
"""

import json

import pytest
from pydantic import ValidationError

from src.message_queue.envelope import (
    FIRST_DEATH_QUEUE_HEADER,
    ORIGINAL_CORRELATION_ID_HEADER,
    RETRY_COUNT_HEADER,
    Envelope,
    decode_envelope,
    read_retry_count,
)
from src.message_queue.errors import EnvelopeDecodeError, PermanentMessageError


class TestEnvelope:
    """Test suite for the Envelope model."""

    def test_defaults_assign_ids(self):
        """Test that new envelopes get distinct ids and start at retry 0."""
        first = Envelope(payload={"a": 1})
        second = Envelope(payload={"a": 1})

        assert first.id != second.id
        assert first.correlation_id != second.correlation_id
        assert first.retry_count == 0

    def test_wire_format_uses_camel_case(self):
        """Test that serialized envelopes use camelCase keys."""
        envelope = Envelope(payload={"x": 1}, first_queue="recipe-matching")

        data = json.loads(envelope.to_bytes())

        assert data["correlationId"] == envelope.correlation_id
        assert data["retryCount"] == 0
        assert data["firstQueue"] == "recipe-matching"
        assert "createdAt" in data

    def test_with_retry_preserves_identity(self):
        """Test that a retry copy keeps id, correlation id and creation time."""
        envelope = Envelope(payload={"x": 1})

        retried = envelope.with_retry(2)

        assert retried.retry_count == 2
        assert retried.id == envelope.id
        assert retried.correlation_id == envelope.correlation_id
        assert retried.created_at == envelope.created_at
        assert envelope.retry_count == 0

    def test_with_retry_rejects_decrease(self):
        """Test that the retry count is never decremented."""
        envelope = Envelope(payload={}, retry_count=2)

        with pytest.raises(ValueError):
            envelope.with_retry(1)

    def test_follow_on_shares_correlation_id(self):
        """Test that follow-on envelopes keep the correlation id with a new id."""
        envelope = Envelope(payload={"x": 1}, retry_count=2)

        follow_on = envelope.follow_on({"y": 2}, "analytics")

        assert follow_on.correlation_id == envelope.correlation_id
        assert follow_on.id != envelope.id
        assert follow_on.retry_count == 0
        assert follow_on.first_queue == "analytics"

    def test_envelope_is_immutable(self):
        """Test that envelopes cannot be mutated in place."""
        envelope = Envelope(payload={})

        with pytest.raises(ValidationError):
            envelope.retry_count = 5


class TestDecodeEnvelope:
    """Test suite for decode_envelope."""

    def test_round_trips_full_envelope(self):
        """Test that envelopes published by this layer decode unchanged."""
        envelope = Envelope(payload={"ingredientIds": ["a"]}, retry_count=1, first_queue="recipe-matching")

        decoded = decode_envelope(envelope.to_bytes(), queue_name="recipe-matching")

        assert decoded == envelope

    def test_wraps_bare_payload(self):
        """Test that a bare producer payload is wrapped using AMQP properties."""
        body = json.dumps({"ingredientIds": ["a", "b"]}).encode()

        decoded = decode_envelope(
            body,
            queue_name="recipe-matching",
            message_id="m-1",
            correlation_id="c-1",
            headers={RETRY_COUNT_HEADER: 2},
        )

        assert decoded.id == "m-1"
        assert decoded.correlation_id == "c-1"
        assert decoded.retry_count == 2
        assert decoded.first_queue == "recipe-matching"
        assert decoded.payload == {"ingredientIds": ["a", "b"]}

    def test_bare_payload_uses_original_correlation_header(self):
        """Test that retried bare payloads recover their correlation id from headers."""
        body = json.dumps({"type": "push"}).encode()

        decoded = decode_envelope(
            body,
            queue_name="notifications",
            headers={
                ORIGINAL_CORRELATION_ID_HEADER: "corr-9",
                FIRST_DEATH_QUEUE_HEADER: "notifications",
            },
        )

        assert decoded.correlation_id == "corr-9"
        assert decoded.first_queue == "notifications"

    def test_bare_payload_without_ids_gets_new_ones(self):
        """Test that missing ids are generated."""
        decoded = decode_envelope(b'{"type": "push"}', queue_name="notifications")

        assert decoded.id
        assert decoded.correlation_id

    @pytest.mark.parametrize("body", [b"not json", b"\xff\xfe", b"[1, 2]", b'"text"'])
    def test_undecodable_body_is_permanent(self, body):
        """Test that non-object bodies raise a permanent decode error."""
        with pytest.raises(EnvelopeDecodeError) as exc_info:
            decode_envelope(body, queue_name="analytics")

        assert isinstance(exc_info.value, PermanentMessageError)

    def test_malformed_envelope_is_permanent(self):
        """Test that an envelope with an invalid retry count is rejected."""
        body = json.dumps({"id": "x", "payload": {}, "retryCount": -1}).encode()

        with pytest.raises(EnvelopeDecodeError):
            decode_envelope(body, queue_name="analytics")


class TestReadRetryCount:
    """Test suite for read_retry_count."""

    def test_missing_header_uses_default(self):
        """Test that a missing header falls back to the default."""
        assert read_retry_count({}) == 0
        assert read_retry_count(None, default=2) == 2

    def test_string_header_is_parsed(self):
        """Test that string header values are accepted."""
        assert read_retry_count({RETRY_COUNT_HEADER: "3"}) == 3

    def test_malformed_header_uses_default(self):
        """Test that garbage header values do not crash decoding."""
        assert read_retry_count({RETRY_COUNT_HEADER: "abc"}, default=1) == 1
