"""
Image Recognition Worker

Consumes ``image-processing``: runs ingredient recognition on the uploaded
image and hands the recognized ingredients to ``recipe-matching``.
"""

from typing import Any, Optional

from src.message_queue.bindings import (
    IMAGE_PROCESSING_QUEUE,
    RECIPE_MATCHING_QUEUE,
    QueueBinding,
    default_bindings,
)
from src.message_queue.connection import ConnectionManager
from src.message_queue.envelope import Envelope
from src.message_queue.outcome import ProcessingOutcome
from src.message_queue.publisher import Publisher
from src.message_queue.worker import QueueWorker
from src.models.payloads import (
    ImageRecognitionPayload,
    RecipeMatchingPayload,
    RecognitionResult,
)
from src.utils.observability import logger
from src.workers.collaborators import CollaboratorError, IngredientRecognizer


class ImageRecognitionWorker(QueueWorker[ImageRecognitionPayload]):
    """
    Recognizes ingredients in uploaded images.

    Usage:
        worker = ImageRecognitionWorker(manager, publisher, HttpRecognitionClient())
        await worker.start()
    """

    payload_model = ImageRecognitionPayload

    def __init__(
        self,
        connection_manager: ConnectionManager,
        publisher: Publisher,
        recognizer: IngredientRecognizer,
        binding: Optional[QueueBinding] = None,
        downstream_binding: Optional[QueueBinding] = None,
        **kwargs: Any,
    ):
        if binding is None or downstream_binding is None:
            bindings = default_bindings()
            binding = binding or bindings[IMAGE_PROCESSING_QUEUE]
            downstream_binding = downstream_binding or bindings[RECIPE_MATCHING_QUEUE]
        super().__init__(
            connection_manager,
            publisher,
            binding,
            downstream_binding=downstream_binding,
            **kwargs,
        )
        self.recognizer = recognizer

    async def handle(
        self, envelope: Envelope, payload: ImageRecognitionPayload
    ) -> ProcessingOutcome:
        try:
            result = await self.recognizer.recognize(payload.image_buffer, payload.file_name)
        except CollaboratorError as e:
            return ProcessingOutcome.transient_failure("Ingredient recognition failed", cause=e)

        logger.bind(
            correlation_id=envelope.correlation_id,
            image_id=payload.image_id or envelope.id,
            image_url=result.image_url,
        ).info(f"Recognized {len(result.ingredients)} ingredients in {payload.file_name}")
        return ProcessingOutcome.succeeded(
            result=result.model_dump(mode="json", by_alias=True, exclude_none=True)
        )

    def build_follow_on(
        self,
        envelope: Envelope,
        payload: ImageRecognitionPayload,
        outcome: ProcessingOutcome,
    ) -> Optional[RecipeMatchingPayload]:
        recognition = RecognitionResult.model_validate(outcome.result or {})
        if not recognition.ingredients:
            # Nothing to match against
            logger.bind(correlation_id=envelope.correlation_id).info(
                f"No ingredients recognized in {payload.file_name}, skipping matching"
            )
            return None

        return RecipeMatchingPayload(
            ingredient_ids=recognition.ingredient_ids,
            user_id=payload.user_id,
            image_id=payload.image_id or envelope.id,
            recognition=recognition,
        )
