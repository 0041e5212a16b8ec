"""
Recipe Matching Worker

Consumes ``recipe-matching``: matches recipes against a set of ingredient ids
and publishes a RECIPE_MATCHING summary to ``analytics``. Handler durations
above the matching threshold are logged as breaches but never fail a message.
"""

from typing import Any, Optional

from src.config import get_settings
from src.message_queue.bindings import (
    ANALYTICS_QUEUE,
    RECIPE_MATCHING_QUEUE,
    QueueBinding,
    default_bindings,
)
from src.message_queue.connection import ConnectionManager
from src.message_queue.envelope import Envelope
from src.message_queue.outcome import ProcessingOutcome
from src.message_queue.publisher import Publisher
from src.message_queue.worker import QueueWorker
from src.models.payloads import MatchResult, RecipeMatchingPayload, RecipeMatchingSummary
from src.workers.collaborators import CollaboratorError, RecipeMatcher


class RecipeMatchingWorker(QueueWorker[RecipeMatchingPayload]):
    """Matches recipes for recognized or user-selected ingredients."""

    payload_model = RecipeMatchingPayload

    def __init__(
        self,
        connection_manager: ConnectionManager,
        publisher: Publisher,
        matcher: RecipeMatcher,
        binding: Optional[QueueBinding] = None,
        downstream_binding: Optional[QueueBinding] = None,
        threshold_ms: Optional[float] = None,
        **kwargs: Any,
    ):
        if binding is None or downstream_binding is None:
            bindings = default_bindings()
            binding = binding or bindings[RECIPE_MATCHING_QUEUE]
            downstream_binding = downstream_binding or bindings[ANALYTICS_QUEUE]
        super().__init__(
            connection_manager,
            publisher,
            binding,
            downstream_binding=downstream_binding,
            **kwargs,
        )
        self.matcher = matcher
        self.threshold_ms = (
            threshold_ms if threshold_ms is not None else get_settings().matching_threshold_ms
        )

    async def handle(
        self, envelope: Envelope, payload: RecipeMatchingPayload
    ) -> ProcessingOutcome:
        try:
            result = await self.matcher.match(payload.ingredient_ids)
        except CollaboratorError as e:
            return ProcessingOutcome.transient_failure("Recipe matching failed", cause=e)
        return ProcessingOutcome.succeeded(
            result=result.model_dump(mode="json", by_alias=True, exclude_none=True)
        )

    def build_follow_on(
        self,
        envelope: Envelope,
        payload: RecipeMatchingPayload,
        outcome: ProcessingOutcome,
    ) -> RecipeMatchingSummary:
        matches = MatchResult.model_validate(outcome.result or {})
        return RecipeMatchingSummary(
            correlation_id=envelope.correlation_id,
            user_id=payload.user_id,
            ingredient_count=len(payload.ingredient_ids),
            match_count=len(matches.recipes),
            duration_ms=round(outcome.duration_ms, 2),
        )
