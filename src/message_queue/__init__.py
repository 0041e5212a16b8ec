"""
Message Queue System

Durable worker layer on top of a message broker with:
- Transport-neutral broker interface (RabbitMQ via aio-pika, in-memory for tests)
- Single supervised broker connection with reconnect-and-resubscribe
- Durable queues with dead-letter exchanges and delay queues
- Confirmed publishing of Envelopes
- Retry with exponential backoff, dead-lettering after exhaustion
- Per-message performance logging
"""

from src.message_queue.base import BrokerChannel, BrokerConnection, Delivery
from src.message_queue.bindings import QueueBinding, declare_queue, default_bindings
from src.message_queue.connection import ConnectionManager, ConnectionState
from src.message_queue.envelope import Envelope, decode_envelope
from src.message_queue.errors import (
    BrokerConnectionError,
    DeclarationConflictError,
    EnvelopeDecodeError,
    PayloadValidationError,
    PublishError,
    QueueError,
)
from src.message_queue.memory import InMemoryBroker
from src.message_queue.monitor import PerformanceMonitor
from src.message_queue.outcome import OutcomeStatus, ProcessingOutcome
from src.message_queue.publisher import Publisher
from src.message_queue.retry import RetryCoordinator, RetryDecision, RetryPolicy, RetryState
from src.message_queue.worker import QueueWorker, WorkerStats

__all__ = [
    "BrokerChannel",
    "BrokerConnection",
    "Delivery",
    "QueueBinding",
    "declare_queue",
    "default_bindings",
    "ConnectionManager",
    "ConnectionState",
    "Envelope",
    "decode_envelope",
    "BrokerConnectionError",
    "DeclarationConflictError",
    "EnvelopeDecodeError",
    "PayloadValidationError",
    "PublishError",
    "QueueError",
    "InMemoryBroker",
    "PerformanceMonitor",
    "OutcomeStatus",
    "ProcessingOutcome",
    "Publisher",
    "RetryCoordinator",
    "RetryDecision",
    "RetryPolicy",
    "RetryState",
    "QueueWorker",
    "WorkerStats",
]
