import asyncio

import pytest
from loguru import logger
from pydantic import BaseModel

from src.config import get_settings
from src.message_queue import (
    ConnectionManager,
    Envelope,
    InMemoryBroker,
    ProcessingOutcome,
    Publisher,
    QueueBinding,
    QueueWorker,
    RetryPolicy,
)


@pytest.fixture(autouse=True)
def fresh_settings():
    """Each test sees settings built from its own environment."""
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def broker():
    """Fresh in-memory broker."""
    return InMemoryBroker()


@pytest.fixture
async def connection_manager(broker):
    """Connected manager with a short reconnect delay and a running supervisor."""
    manager = ConnectionManager(connector=broker.connect, connect_attempts=2, reconnect_delay=0.01)
    await manager.connect()
    manager.start_supervisor()
    yield manager
    await manager.close()


@pytest.fixture
def publisher(connection_manager):
    return Publisher(connection_manager)


@pytest.fixture
def fast_retry_policy():
    """Production ceiling with millisecond backoff."""
    return RetryPolicy(max_retries=3, base_delay_ms=5)


@pytest.fixture
def log_records():
    """Capture loguru records emitted during the test."""
    records = []
    handler_id = logger.add(lambda message: records.append(message.record), level="DEBUG")
    yield records
    logger.remove(handler_id)


@pytest.fixture
def eventually():
    """Poll an assertion-free predicate until it holds."""

    async def wait(predicate, timeout: float = 2.0, interval: float = 0.005):
        deadline = asyncio.get_running_loop().time() + timeout
        while not predicate():
            if asyncio.get_running_loop().time() > deadline:
                raise AssertionError("Condition not met before timeout")
            await asyncio.sleep(interval)

    return wait


def events_of(records, event_type):
    """Loguru records bound with the given event_type."""
    return [r for r in records if r["extra"].get("event_type") == event_type]


@pytest.fixture
def find_events():
    return events_of


# ============================================
# Generic worker used by queue-layer tests
# ============================================

class EchoPayload(BaseModel):
    text: str


class EchoWorker(QueueWorker[EchoPayload]):
    """Worker whose behaviour is delegated to an injectable coroutine."""

    payload_model = EchoPayload

    def __init__(self, *args, handler=None, follow_on=None, **kwargs):
        super().__init__(*args, **kwargs)
        self.handler = handler
        self.follow_on = follow_on

    async def handle(self, envelope: Envelope, payload: EchoPayload) -> ProcessingOutcome:
        return await self.handler(envelope, payload)

    def build_follow_on(self, envelope, payload, outcome):
        return self.follow_on


@pytest.fixture
def echo_binding():
    return QueueBinding.for_stage("echo", prefetch=4, message_ttl_ms=60_000)


@pytest.fixture
def echo_downstream_binding():
    return QueueBinding.for_stage("echo-next", prefetch=4, message_ttl_ms=60_000)


@pytest.fixture
async def make_echo_worker(connection_manager, publisher, echo_binding, fast_retry_policy):
    """Factory building EchoWorkers; started workers are stopped at teardown."""
    created = []

    def make(handler, **kwargs):
        kwargs.setdefault("binding", echo_binding)
        kwargs.setdefault("retry_policy", fast_retry_policy)
        kwargs.setdefault("shutdown_timeout", 1.0)
        worker = EchoWorker(connection_manager, publisher, handler=handler, **kwargs)
        created.append(worker)
        return worker

    yield make

    for worker in created:
        await worker.stop()
