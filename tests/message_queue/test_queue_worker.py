"""
Tests for QueueWorker against the in-memory broker.
"""

import asyncio
from unittest.mock import AsyncMock, Mock

import pytest

from src.message_queue.bindings import QueueBinding
from src.message_queue.envelope import RETRY_COUNT_HEADER
from src.message_queue.errors import PublishError
from src.message_queue.outcome import ProcessingOutcome


def succeed():
    return AsyncMock(return_value=ProcessingOutcome.succeeded())


class TestQueueWorkerLifecycle:
    """Test suite for worker start/stop."""

    @pytest.mark.asyncio
    async def test_start_declares_and_consumes(self, broker, make_echo_worker, echo_downstream_binding):
        """Test that start() declares its queues and registers one consumer."""
        worker = make_echo_worker(succeed(), downstream_binding=echo_downstream_binding)

        await worker.start()

        assert worker.is_running
        assert {"echo", "echo.dead", "echo.delay", "echo-next", "echo-next.dead"} <= set(broker.queues)
        assert broker.consumer_count("echo") == 1

    @pytest.mark.asyncio
    async def test_start_twice_is_noop(self, broker, make_echo_worker):
        """Test that a running worker does not register a second consumer."""
        worker = make_echo_worker(succeed())

        await worker.start()
        await worker.start()

        assert broker.consumer_count("echo") == 1

    @pytest.mark.asyncio
    async def test_stop_drains_in_flight_handlers(self, broker, publisher, make_echo_worker, eventually):
        """Test that stop() waits for running handlers to settle their messages."""
        async def slow(envelope, payload):
            await asyncio.sleep(0.05)
            return ProcessingOutcome.succeeded()

        worker = make_echo_worker(slow)
        await worker.start()
        await publisher.publish("echo", {"text": "a"})
        await publisher.publish("echo", {"text": "b"})
        await eventually(lambda: worker.in_flight == 2)

        await worker.stop()

        assert not worker.is_running
        assert len(broker.acked_messages("echo")) == 2
        assert broker.consumer_count("echo") == 0

    @pytest.mark.asyncio
    async def test_stop_timeout_cancels_and_returns_message(self, broker, publisher, make_echo_worker, eventually):
        """Test that handlers outliving the shutdown timeout are cancelled and their message kept."""
        async def hang(envelope, payload):
            await asyncio.sleep(10)
            return ProcessingOutcome.succeeded()

        worker = make_echo_worker(hang, shutdown_timeout=0.05)
        await worker.start()
        await publisher.publish("echo", {"text": "a"})
        await eventually(lambda: worker.in_flight == 1)

        await worker.stop()

        assert broker.acked_messages("echo") == []
        assert len(broker.ready_messages("echo")) == 1


class TestQueueWorkerProcessing:
    """Test suite for per-message processing."""

    @pytest.mark.asyncio
    async def test_success_acks_once_and_publishes_follow_on(
        self, broker, publisher, make_echo_worker, echo_downstream_binding, eventually
    ):
        """Test success path: follow-on with the same correlation id, then a single ack."""
        handler = succeed()
        worker = make_echo_worker(
            handler, downstream_binding=echo_downstream_binding, follow_on={"text": "next"}
        )
        await worker.start()

        sent = await publisher.publish("echo", {"text": "hello"})
        await eventually(lambda: worker.stats.succeeded == 1)

        handler.assert_awaited_once()
        envelope, payload = handler.await_args.args
        assert payload.text == "hello"
        assert envelope.correlation_id == sent.correlation_id
        assert len(broker.acked_messages("echo")) == 1
        assert broker.ready_messages("echo.delay") == []

        [follow_on] = broker.ready_envelopes("echo-next")
        assert follow_on.correlation_id == sent.correlation_id
        assert follow_on.id != sent.id
        assert follow_on.payload == {"text": "next"}

    @pytest.mark.asyncio
    async def test_invalid_payload_is_dropped(
        self, broker, publisher, make_echo_worker, eventually, log_records, find_events
    ):
        """Test that schema violations are acked and logged without calling the handler."""
        handler = succeed()
        worker = make_echo_worker(handler)
        await worker.start()

        sent = await publisher.publish("echo", {"wrong": "field"})
        await eventually(lambda: worker.stats.dropped == 1)

        handler.assert_not_called()
        assert len(broker.acked_messages("echo")) == 1
        assert broker.ready_messages("echo.dead") == []
        [record] = find_events(log_records, "permanent_failure_dropped")
        assert record["level"].name == "ERROR"
        assert record["extra"]["correlation_id"] == sent.correlation_id

    @pytest.mark.asyncio
    async def test_undecodable_body_is_dropped(
        self, broker, connection_manager, make_echo_worker, eventually
    ):
        """Test that non-JSON bodies are acked and dropped."""
        worker = make_echo_worker(succeed())
        await worker.start()

        channel = await connection_manager.channel()
        await channel.publish("echo", b"\x00not json", correlation_id="corr-raw")
        await eventually(lambda: worker.stats.dropped == 1)

        assert len(broker.acked_messages("echo")) == 1

    @pytest.mark.asyncio
    async def test_bare_payload_is_accepted(
        self, broker, connection_manager, make_echo_worker, eventually
    ):
        """Test that producers may publish plain payload objects."""
        handler = succeed()
        worker = make_echo_worker(handler)
        await worker.start()

        channel = await connection_manager.channel()
        await channel.publish("echo", b'{"text": "raw"}', correlation_id="corr-raw")
        await eventually(lambda: worker.stats.succeeded == 1)

        envelope, payload = handler.await_args.args
        assert payload.text == "raw"
        assert envelope.correlation_id == "corr-raw"

    @pytest.mark.asyncio
    async def test_permanent_failure_is_dropped(self, broker, publisher, make_echo_worker, eventually):
        """Test that a permanent outcome is acked without retry."""
        handler = AsyncMock(return_value=ProcessingOutcome.permanent_failure("unsupported"))
        worker = make_echo_worker(handler)
        await worker.start()

        await publisher.publish("echo", {"text": "x"})
        await eventually(lambda: worker.stats.dropped == 1)

        handler.assert_awaited_once()
        assert broker.ready_messages("echo.delay") == []
        assert broker.ready_messages("echo.dead") == []

    @pytest.mark.asyncio
    async def test_transient_failure_is_retried_until_success(
        self, broker, publisher, make_echo_worker, eventually
    ):
        """Test that a transient failure is retried with the same correlation id."""
        handler = AsyncMock(side_effect=[
            ProcessingOutcome.transient_failure("timeout"),
            ProcessingOutcome.succeeded(),
        ])
        worker = make_echo_worker(handler)
        await worker.start()

        sent = await publisher.publish("echo", {"text": "x"})
        await eventually(lambda: worker.stats.succeeded == 1)

        assert handler.await_count == 2
        first, second = [c.args[0] for c in handler.await_args_list]
        assert first.retry_count == 0
        assert second.retry_count == 1
        assert second.id == sent.id
        assert second.correlation_id == sent.correlation_id
        assert worker.stats.retried == 1
        assert broker.ready_messages("echo.dead") == []

    @pytest.mark.asyncio
    async def test_exhausted_retries_dead_letter_after_four_attempts(
        self, broker, publisher, make_echo_worker, eventually, log_records, find_events
    ):
        """Test that max_retries=3 means four attempts, then the dead queue."""
        handler = AsyncMock(return_value=ProcessingOutcome.transient_failure("down"))
        worker = make_echo_worker(handler)
        await worker.start()

        sent = await publisher.publish("echo", {"text": "x"})
        await eventually(lambda: len(broker.ready_messages("echo.dead")) == 1)

        assert handler.await_count == 4
        [dead] = broker.ready_messages("echo.dead")
        assert dead.headers[RETRY_COUNT_HEADER] == 3
        dead_envelope = dead.envelope("echo.dead")
        assert dead_envelope.correlation_id == sent.correlation_id
        assert dead_envelope.retry_count == 3
        assert worker.stats.retried == 3
        assert worker.stats.dead_lettered == 1
        assert len(find_events(log_records, "dead_lettered")) == 1

    @pytest.mark.asyncio
    async def test_handler_that_would_succeed_on_fifth_attempt_is_dead_lettered(
        self, broker, publisher, make_echo_worker, eventually
    ):
        """Test that a handler raising on the first attempt and three retries never gets a fifth call."""
        handler = AsyncMock(side_effect=[RuntimeError("flaky")] * 4 + [ProcessingOutcome.succeeded()])
        worker = make_echo_worker(handler)
        await worker.start()

        await publisher.publish("echo", {"text": "x"})
        await eventually(lambda: len(broker.ready_messages("echo.dead")) == 1)
        await asyncio.sleep(0.05)

        assert handler.await_count == 4
        assert worker.stats.succeeded == 0

    @pytest.mark.asyncio
    async def test_follow_on_publish_failure_is_transient(
        self, broker, publisher, make_echo_worker, echo_downstream_binding, eventually
    ):
        """Test that the original is not acked as success when the follow-on is not confirmed."""
        handler = succeed()
        worker = make_echo_worker(
            handler, downstream_binding=echo_downstream_binding, follow_on={"text": "next"}
        )
        await worker.start()
        await publisher.publish("echo", {"text": "x"})

        publisher.publish = AsyncMock(side_effect=PublishError("echo-next", "nacked"))
        await eventually(lambda: len(broker.ready_messages("echo.dead")) == 1)

        assert handler.await_count == 4
        assert worker.stats.succeeded == 0
        assert broker.ready_messages("echo-next") == []

    @pytest.mark.asyncio
    async def test_follow_on_build_error_is_transient(
        self, broker, publisher, make_echo_worker, echo_downstream_binding, eventually
    ):
        """Test that an unexpected error while building the follow-on is retried, never left unsettled."""
        worker = make_echo_worker(succeed(), downstream_binding=echo_downstream_binding)
        worker.build_follow_on = Mock(side_effect=[RuntimeError("serializer bug"), {"text": "next"}])
        await worker.start()

        await publisher.publish("echo", {"text": "x"})
        await eventually(lambda: worker.stats.succeeded == 1)

        assert worker.stats.retried == 1
        assert worker.in_flight == 0
        [follow_on] = broker.ready_envelopes("echo-next")
        assert follow_on.payload == {"text": "next"}

    @pytest.mark.asyncio
    async def test_retry_path_error_requeues_delivery(
        self, broker, publisher, make_echo_worker, eventually, log_records, find_events
    ):
        """Test that a failing retry path hands the message back to the broker."""
        handler = AsyncMock(side_effect=[
            ProcessingOutcome.transient_failure("timeout"),
            ProcessingOutcome.succeeded(),
        ])
        worker = make_echo_worker(handler)
        worker.coordinator.handle_failure = AsyncMock(side_effect=RuntimeError("coordinator bug"))
        await worker.start()

        sent = await publisher.publish("echo", {"text": "x"})
        await eventually(lambda: worker.stats.succeeded == 1)

        assert handler.await_count == 2
        assert worker.stats.requeued == 1
        assert worker.stats.retried == 0
        [record] = find_events(log_records, "failure_handling_error")
        assert record["level"].name == "ERROR"
        assert record["extra"]["correlation_id"] == sent.correlation_id

    @pytest.mark.asyncio
    async def test_prefetch_bounds_concurrency(self, broker, publisher, make_echo_worker, eventually):
        """Test that in-flight handlers never exceed the binding's prefetch."""
        running = 0
        peak = 0

        async def tracked(envelope, payload):
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            await asyncio.sleep(0.02)
            running -= 1
            return ProcessingOutcome.succeeded()

        binding = QueueBinding.for_stage("echo", prefetch=2, message_ttl_ms=60_000)
        worker = make_echo_worker(tracked, binding=binding)
        await worker.start()

        for i in range(6):
            await publisher.publish("echo", {"text": str(i)})
        await eventually(lambda: worker.stats.succeeded == 6)

        assert peak == 2

    @pytest.mark.asyncio
    async def test_redelivery_after_connection_loss(
        self, broker, publisher, connection_manager, make_echo_worker, eventually
    ):
        """Test that a message in flight during a connection drop is redelivered after resubscription."""
        release = asyncio.Event()
        seen = []

        async def handler(envelope, payload):
            seen.append(envelope.id)
            if len(seen) == 1:
                await release.wait()
            return ProcessingOutcome.succeeded()

        worker = make_echo_worker(handler)
        await worker.start()
        sent = await publisher.publish("echo", {"text": "x"})
        await eventually(lambda: len(seen) == 1)

        broker.drop_connections()
        await eventually(lambda: len(seen) == 2)
        release.set()
        await eventually(lambda: worker.in_flight == 0)

        assert seen == [sent.id, sent.id]
        assert len(broker.acked_messages("echo")) == 1
        assert broker.consumer_count("echo") == 1
        assert connection_manager.generation == 2
