"""
Tests for the in-memory broker.
"""

import asyncio

import pytest

from src.message_queue.bindings import QueueBinding, declare_queue
from src.message_queue.errors import (
    BrokerConnectionError,
    DeclarationConflictError,
    PublishError,
    QueueError,
)
from src.message_queue.memory import InMemoryBroker


class TestInMemoryBroker:
    """Test suite for InMemoryBroker."""

    @pytest.fixture
    async def channel(self, broker):
        connection = await broker.connect()
        return await connection.channel()

    @pytest.mark.asyncio
    async def test_publish_to_undeclared_queue_fails(self, channel):
        """Test that unroutable publishes are reported, not silently lost."""
        with pytest.raises(PublishError):
            await channel.publish("missing", b"{}")

    @pytest.mark.asyncio
    async def test_redeclare_with_same_arguments_is_idempotent(self, channel):
        """Test that identical redeclarations succeed."""
        await channel.declare_queue("q", arguments={"x-message-ttl": 1000})
        await channel.declare_queue("q", arguments={"x-message-ttl": 1000})

    @pytest.mark.asyncio
    async def test_redeclare_with_different_arguments_conflicts(self, channel):
        """Test that an incompatible redeclaration raises."""
        await channel.declare_queue("q", arguments={"x-message-ttl": 1000})

        with pytest.raises(DeclarationConflictError) as exc_info:
            await channel.declare_queue("q", arguments={"x-message-ttl": 2000})

        assert exc_info.value.queue_name == "q"

    @pytest.mark.asyncio
    async def test_consumer_receives_and_acks(self, broker, channel):
        """Test basic consume and ack."""
        await channel.declare_queue("q")
        received = []

        async def on_delivery(delivery):
            received.append(delivery.body)
            await delivery.ack()

        await channel.consume("q", on_delivery)
        await channel.publish("q", b'{"a": 1}', message_id="m1")
        await broker.drain()

        assert received == [b'{"a": 1}']
        assert len(broker.acked_messages("q")) == 1
        assert broker.ready_messages("q") == []

    @pytest.mark.asyncio
    async def test_double_settlement_rejected(self, broker, channel):
        """Test that a delivery can only be settled once."""
        await channel.declare_queue("q")
        errors = []

        async def on_delivery(delivery):
            await delivery.ack()
            try:
                await delivery.nack()
            except QueueError as e:
                errors.append(e)

        await channel.consume("q", on_delivery)
        await channel.publish("q", b"{}")
        await broker.drain()

        assert len(errors) == 1

    @pytest.mark.asyncio
    async def test_prefetch_limits_unacked_deliveries(self, broker, channel):
        """Test that no more than prefetch deliveries are outstanding."""
        await channel.declare_queue("q")
        await channel.set_qos(2)
        held = []

        async def on_delivery(delivery):
            held.append(delivery)

        await channel.consume("q", on_delivery)
        for i in range(5):
            await channel.publish("q", f'{{"n": {i}}}'.encode())
        await broker.drain()

        assert len(held) == 2
        assert len(broker.ready_messages("q")) == 3

        await held[0].ack()
        await broker.drain()

        assert len(held) == 3

    @pytest.mark.asyncio
    async def test_nack_without_requeue_dead_letters(self, broker, channel):
        """Test that rejected messages follow the dead-letter wiring."""
        binding = QueueBinding.for_stage("stage", message_ttl_ms=60_000)
        await declare_queue(channel, binding)

        async def on_delivery(delivery):
            await delivery.nack(requeue=False)

        await channel.consume("stage", on_delivery)
        await channel.publish("stage", b'{"x": 1}', headers={"x-retry-count": 3})
        await broker.drain()

        dead = broker.ready_messages("stage.dead")
        assert len(dead) == 1
        assert dead[0].headers["x-retry-count"] == 3
        assert dead[0].headers["x-first-death-queue"] == "stage"
        assert dead[0].headers["x-first-death-reason"] == "rejected"

    @pytest.mark.asyncio
    async def test_nack_with_requeue_redelivers(self, broker, channel):
        """Test that requeued messages are redelivered flagged as such."""
        await channel.declare_queue("q")
        seen = []

        async def on_delivery(delivery):
            seen.append(delivery.redelivered)
            if len(seen) == 1:
                await delivery.nack(requeue=True)
            else:
                await delivery.ack()

        await channel.consume("q", on_delivery)
        await channel.publish("q", b"{}")
        await broker.drain()

        assert seen == [False, True]

    @pytest.mark.asyncio
    async def test_delay_queue_returns_message_after_expiration(self, broker, channel):
        """Test that per-message TTL on the delay queue routes back to the primary queue."""
        binding = QueueBinding.for_stage("stage", message_ttl_ms=60_000)
        await declare_queue(channel, binding)

        await channel.publish("stage.delay", b'{"x": 1}', expiration_ms=20)

        assert len(broker.ready_messages("stage.delay")) == 1
        await asyncio.sleep(0.1)

        assert broker.ready_messages("stage.delay") == []
        assert len(broker.ready_messages("stage")) == 1
        assert broker.ready_messages("stage")[0].expiration_ms is None

    @pytest.mark.asyncio
    async def test_queue_ttl_dead_letters_unconsumed_messages(self, broker, channel):
        """Test that queue-level TTL expires resident messages to the dead queue."""
        binding = QueueBinding.for_stage("stage", message_ttl_ms=20)
        await declare_queue(channel, binding)

        await channel.publish("stage", b'{"x": 1}')
        await asyncio.sleep(0.1)

        dead = broker.ready_messages("stage.dead")
        assert len(dead) == 1
        assert dead[0].headers["x-first-death-reason"] == "expired"

    @pytest.mark.asyncio
    async def test_dropped_connection_requeues_unacked(self, broker, channel):
        """Test that unacked deliveries return to the queue when the connection dies."""
        await channel.declare_queue("q")
        held = []

        async def on_delivery(delivery):
            held.append(delivery)

        await channel.consume("q", on_delivery)
        await channel.publish("q", b"{}")
        await broker.drain()

        broker.drop_connections()

        assert channel.is_closed
        assert broker.consumer_count("q") == 0
        ready = broker.ready_messages("q")
        assert len(ready) == 1
        assert ready[0].redelivered is True

        with pytest.raises(BrokerConnectionError):
            await held[0].ack()

    @pytest.mark.asyncio
    async def test_unavailable_broker_refuses_connections(self):
        """Test the unreachable-host simulation."""
        broker = InMemoryBroker()
        broker.available = False

        with pytest.raises(ConnectionRefusedError):
            await broker.connect()
        assert broker.connect_calls == 1
