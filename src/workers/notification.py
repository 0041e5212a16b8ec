"""
Notification Worker

Consumes ``notifications`` and dispatches each message to the push, email or
socket channel named by its type.
"""

from typing import Any, Optional

from src.message_queue.bindings import NOTIFICATION_QUEUE, QueueBinding, default_bindings
from src.message_queue.connection import ConnectionManager
from src.message_queue.envelope import Envelope
from src.message_queue.outcome import ProcessingOutcome
from src.message_queue.publisher import Publisher
from src.message_queue.worker import QueueWorker
from src.models.payloads import NotificationPayload, NotificationType
from src.utils.observability import logger
from src.workers.collaborators import CollaboratorError, NotificationChannels


class NotificationWorker(QueueWorker[NotificationPayload]):
    """
    Multi-channel notification dispatch.

    Unknown types and missing recipients fail payload validation and are
    dropped; channel errors are retried.
    """

    payload_model = NotificationPayload

    def __init__(
        self,
        connection_manager: ConnectionManager,
        publisher: Publisher,
        channels: NotificationChannels,
        binding: Optional[QueueBinding] = None,
        **kwargs: Any,
    ):
        super().__init__(
            connection_manager,
            publisher,
            binding or default_bindings()[NOTIFICATION_QUEUE],
            **kwargs,
        )
        self.channels = channels

    async def handle(
        self, envelope: Envelope, payload: NotificationPayload
    ) -> ProcessingOutcome:
        try:
            if payload.type == NotificationType.PUSH:
                await self.channels.send_push(payload.user_id, payload.data)
            elif payload.type == NotificationType.EMAIL:
                await self.channels.send_email(payload.user_email, payload.data)
            elif payload.type == NotificationType.WEBSOCKET:
                await self.channels.send_socket(payload.user_id, payload.data)
            else:
                return ProcessingOutcome.permanent_failure(
                    f"Unknown notification type: {payload.type}"
                )
        except CollaboratorError as e:
            return ProcessingOutcome.transient_failure(
                f"{payload.type} notification failed", cause=e
            )

        logger.info(
            f"Notification sent via {payload.type}",
            extra={"correlation_id": envelope.correlation_id, "type": payload.type.value}
        )
        return ProcessingOutcome.succeeded()
