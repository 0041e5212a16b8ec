"""
Broker Connection Manager

Owns the single logical broker connection of a worker process. Close
notifications from the transport are turned into events on an explicit
channel; a supervisor loop consumes them, reconnects after a fixed delay and
then resubscribes every registered worker in registration order.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import StrEnum
from typing import Optional, Protocol

from loguru import logger

from src.config import get_settings
from src.message_queue.base import BrokerChannel, BrokerConnection, Connector
from src.message_queue.errors import BrokerConnectionError


class ConnectionState(StrEnum):
    """Connection manager states."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    CLOSED = "closed"


class ConnectionEventType(StrEnum):
    DISCONNECTED = "disconnected"
    RECONNECTED = "reconnected"


@dataclass
class ConnectionEvent:
    """Notification flowing through the manager's event channel."""
    type: ConnectionEventType
    error: Optional[BaseException] = None
    generation: int = 0
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class ReconnectListener(Protocol):
    async def on_reconnect(self) -> None: ...


class ConnectionManager:
    """
    Single broker connection per process, with supervised reconnection.

    Usage:
        manager = ConnectionManager(connector=broker.connect)
        await manager.connect()
        manager.start_supervisor()
        channel = await manager.channel()
        ...
        await manager.close()
    """

    def __init__(
        self,
        connector: Connector,
        connect_attempts: Optional[int] = None,
        reconnect_delay: Optional[float] = None,
    ):
        """
        Initialize connection manager.

        Args:
            connector: Async factory opening a transport connection
            connect_attempts: Attempts per connect() call (default from settings)
            reconnect_delay: Seconds between attempts and before reconnecting
        """
        settings = get_settings()
        self._connector = connector
        self._connect_attempts = connect_attempts or settings.rabbitmq_connect_attempts
        self._reconnect_delay = (
            reconnect_delay if reconnect_delay is not None
            else settings.rabbitmq_reconnect_delay_seconds
        )
        self._connection: Optional[BrokerConnection] = None
        self._state = ConnectionState.DISCONNECTED
        self._generation = 0
        self._listeners: list[ReconnectListener] = []
        self._events: asyncio.Queue[ConnectionEvent] = asyncio.Queue()
        self._history: list[ConnectionEvent] = []
        self._supervisor: Optional[asyncio.Task] = None
        self._lock = asyncio.Lock()
        self._closing = False

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return (
            self._state == ConnectionState.CONNECTED
            and self._connection is not None
            and not self._connection.is_closed
        )

    @property
    def generation(self) -> int:
        """Number of successful connects; changes on every reconnect."""
        return self._generation

    @property
    def events(self) -> list[ConnectionEvent]:
        """Events processed by the supervisor so far."""
        return list(self._history)

    def subscribe(self, listener: ReconnectListener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def unsubscribe(self, listener: ReconnectListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def connect(self) -> None:
        """
        Establish the broker connection.

        Idempotent while connected; safe to call again after a disconnect.

        Raises:
            BrokerConnectionError: If every attempt failed
        """
        async with self._lock:
            if self.is_connected:
                logger.debug("Reusing healthy broker connection")
                return
            self._closing = False
            self._state = ConnectionState.CONNECTING
            await self._open(self._connect_attempts)

    async def _open(self, attempts: Optional[int]) -> None:
        """Try to connect; attempts=None retries until closed."""
        attempt = 0
        last_error: Optional[BaseException] = None

        while attempts is None or attempt < attempts:
            attempt += 1
            try:
                connection = await self._connector()
            except Exception as e:
                last_error = e
                logger.bind(attempt=attempt, max_attempts=attempts).warning(
                    f"Broker connection attempt {attempt} failed: {e}"
                )
                if self._closing:
                    break
                if attempts is None or attempt < attempts:
                    await asyncio.sleep(self._reconnect_delay)
                continue

            self._connection = connection
            self._generation += 1
            generation = self._generation
            connection.add_close_listener(
                lambda exc, generation=generation: self._on_connection_closed(exc, generation)
            )
            self._state = ConnectionState.CONNECTED
            logger.info(
                "Broker connection established",
                extra={"attempt": attempt, "generation": generation},
            )
            return

        self._state = ConnectionState.DISCONNECTED
        logger.error(f"Broker unreachable after {attempt} attempts: {last_error}")
        raise BrokerConnectionError(
            f"Broker unreachable after {attempt} attempts",
            attempts=attempt,
            cause=last_error,
        ) from last_error

    async def channel(self) -> BrokerChannel:
        """
        Open a new channel on the live connection.

        Raises:
            BrokerConnectionError: If not connected
        """
        if not self.is_connected:
            raise BrokerConnectionError("Broker not connected. Call await manager.connect() first.")
        return await self._connection.channel()

    def _on_connection_closed(self, exc: Optional[BaseException], generation: int) -> None:
        """Transport close notification; only queues an event."""
        if self._closing or generation != self._generation:
            return
        self._state = ConnectionState.DISCONNECTED
        self._events.put_nowait(
            ConnectionEvent(
                type=ConnectionEventType.DISCONNECTED,
                error=exc,
                generation=generation,
            )
        )

    def start_supervisor(self) -> asyncio.Task:
        """Start the loop that handles disconnect events. Idempotent."""
        if self._supervisor is None or self._supervisor.done():
            self._supervisor = asyncio.create_task(self.supervise())
        return self._supervisor

    async def supervise(self) -> None:
        """
        Consume connection events until close().

        On DISCONNECTED: wait the reconnect delay, reconnect (retrying until
        it works), then await each listener's on_reconnect() in registration
        order before emitting RECONNECTED.
        """
        while True:
            event = await self._events.get()
            self._history.append(event)

            if event.type != ConnectionEventType.DISCONNECTED or self._closing:
                continue

            logger.bind(generation=event.generation).warning(
                f"Broker connection lost: {event.error}; reconnecting in {self._reconnect_delay}s"
            )
            await self._reconnect()

    async def _reconnect(self) -> None:
        await asyncio.sleep(self._reconnect_delay)
        async with self._lock:
            if self._closing:
                return
            self._state = ConnectionState.RECONNECTING
            await self._open(None)

        for listener in list(self._listeners):
            try:
                await listener.on_reconnect()
            except Exception as e:
                logger.error(f"Resubscribe failed for {listener!r}: {e}", exc_info=True)

        reconnected = ConnectionEvent(
            type=ConnectionEventType.RECONNECTED,
            generation=self._generation,
        )
        self._history.append(reconnected)
        logger.info(
            "Broker connection restored",
            extra={"generation": self._generation, "listeners": len(self._listeners)},
        )

    async def close(self) -> None:
        """
        Close the connection and stop the supervisor without reconnecting.
        Idempotent - safe to call multiple times.
        """
        self._closing = True

        if self._supervisor is not None and not self._supervisor.done():
            self._supervisor.cancel()
            try:
                await self._supervisor
            except asyncio.CancelledError:
                pass
        self._supervisor = None

        if self._connection is not None and not self._connection.is_closed:
            logger.info("Closing broker connection")
            await self._connection.close()
        self._connection = None
        self._state = ConnectionState.CLOSED
