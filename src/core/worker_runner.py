"""
Worker Runner
Command-line entry point running one or all stage workers in a single process.

Usage:
    python -m src.core.worker_runner all
    python -m src.core.worker_runner matching notification
"""
import argparse
import asyncio
import signal
import sys
from typing import Optional, Sequence

from loguru import logger

from src.message_queue.base import Connector
from src.message_queue.bindings import QueueBinding, default_bindings
from src.message_queue.connection import ConnectionManager
from src.message_queue.errors import BrokerConnectionError
from src.message_queue.monitor import PerformanceMonitor
from src.message_queue.publisher import Publisher
from src.message_queue.rabbitmq import RabbitMQConnector
from src.message_queue.retry import RetryPolicy
from src.message_queue.worker import QueueWorker
from src.utils.observability import configure_logging
from src.workers.analytics import AnalyticsWorker
from src.workers.collaborators import (
    AnalyticsSink,
    HttpAnalyticsSink,
    HttpNotificationChannels,
    HttpRecipeMatcher,
    HttpRecognitionClient,
    IngredientRecognizer,
    NotificationChannels,
    RecipeMatcher,
)
from src.workers.image_recognition import ImageRecognitionWorker
from src.workers.notification import NotificationWorker
from src.workers.recipe_matching import RecipeMatchingWorker

WORKER_NAMES = ("image", "matching", "notification", "analytics")


def resolve_worker_names(names: Sequence[str]) -> list[str]:
    """Expand "all" and drop duplicates, keeping pipeline order."""
    if not names or "all" in names:
        return list(WORKER_NAMES)
    unknown = [n for n in names if n not in WORKER_NAMES]
    if unknown:
        raise ValueError(f"Unknown worker(s): {', '.join(unknown)}")
    return [n for n in WORKER_NAMES if n in names]


def build_workers(
    names: Sequence[str],
    connection_manager: ConnectionManager,
    publisher: Publisher,
    bindings: Optional[dict[str, QueueBinding]] = None,
    retry_policy: Optional[RetryPolicy] = None,
    recognizer: Optional[IngredientRecognizer] = None,
    matcher: Optional[RecipeMatcher] = None,
    channels: Optional[NotificationChannels] = None,
    sink: Optional[AnalyticsSink] = None,
) -> list[QueueWorker]:
    """
    Wire the requested workers with shared dependencies.

    Collaborators default to the HTTP clients configured from settings.
    """
    bindings = bindings or default_bindings()
    retry_policy = retry_policy or RetryPolicy.from_settings()
    monitor = PerformanceMonitor()
    common = {"retry_policy": retry_policy, "monitor": monitor}

    workers: list[QueueWorker] = []
    for name in resolve_worker_names(names):
        if name == "image":
            workers.append(ImageRecognitionWorker(
                connection_manager,
                publisher,
                recognizer or HttpRecognitionClient(),
                binding=bindings["image-processing"],
                downstream_binding=bindings["recipe-matching"],
                **common,
            ))
        elif name == "matching":
            workers.append(RecipeMatchingWorker(
                connection_manager,
                publisher,
                matcher or HttpRecipeMatcher(),
                binding=bindings["recipe-matching"],
                downstream_binding=bindings["analytics"],
                **common,
            ))
        elif name == "notification":
            workers.append(NotificationWorker(
                connection_manager,
                publisher,
                channels or HttpNotificationChannels(),
                binding=bindings["notifications"],
                **common,
            ))
        elif name == "analytics":
            workers.append(AnalyticsWorker(
                connection_manager,
                publisher,
                sink or HttpAnalyticsSink(),
                binding=bindings["analytics"],
                **common,
            ))
    return workers


def _install_signal_handlers(stop_event: asyncio.Event) -> list[signal.Signals]:
    loop = asyncio.get_running_loop()
    installed = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except (NotImplementedError, RuntimeError):
            # Not supported on this platform or outside the main thread
            logger.debug(f"Signal handler for {sig.name} not installed")
            continue
        installed.append(sig)
    return installed


async def run_workers(
    names: Sequence[str],
    connector: Optional[Connector] = None,
    stop_event: Optional[asyncio.Event] = None,
    install_signal_handlers: bool = True,
    **collaborators,
) -> list[QueueWorker]:
    """
    Run workers until stop_event is set (SIGINT/SIGTERM set it by default).

    Shutdown order: stop every worker (drains in-flight handlers), then close
    the broker connection.

    Returns:
        The stopped workers, for inspection of their stats
    """
    stop_event = stop_event or asyncio.Event()
    manager = ConnectionManager(connector or RabbitMQConnector())
    await manager.connect()
    manager.start_supervisor()

    publisher = Publisher(manager)
    workers = build_workers(names, manager, publisher, **collaborators)

    installed = _install_signal_handlers(stop_event) if install_signal_handlers else []
    try:
        for worker in workers:
            await worker.start()
        logger.info(f"🚀 Running {len(workers)} worker(s): {', '.join(w.stage for w in workers)}")
        await stop_event.wait()
        logger.info("Shutdown requested")
    finally:
        for worker in reversed(workers):
            await worker.stop()
        await manager.close()
        loop = asyncio.get_running_loop()
        for sig in installed:
            loop.remove_signal_handler(sig)
        logger.info("🛑 All workers stopped")

    return workers


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Run pantry queue workers")
    parser.add_argument(
        "workers",
        nargs="*",
        metavar="WORKER",
        help=f"One or more of: all, {', '.join(WORKER_NAMES)} (default: all)",
    )
    args = parser.parse_args(argv)
    try:
        names = resolve_worker_names(args.workers)
    except ValueError as e:
        parser.error(str(e))

    configure_logging()
    try:
        asyncio.run(run_workers(names))
    except BrokerConnectionError as e:
        logger.error(f"❌ Could not start workers: {e}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
