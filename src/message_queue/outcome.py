"""
Processing Outcome

Typed result returned by every handler. The retry coordinator branches on
the status, never on the type of an exception.
"""

from enum import StrEnum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict


class OutcomeStatus(StrEnum):
    """Handler result classification."""
    SUCCEEDED = "succeeded"
    TRANSIENT_FAILURE = "transient_failure"
    PERMANENT_FAILURE = "permanent_failure"


class OutcomeError(BaseModel):
    """Failure details: a message and, where available, the upstream cause."""
    message: str
    cause: Optional[str] = None
    cause_type: Optional[str] = None

    @classmethod
    def from_exception(cls, message: str, exc: Optional[BaseException] = None) -> "OutcomeError":
        if exc is None:
            return cls(message=message)
        return cls(message=message, cause=str(exc), cause_type=type(exc).__name__)


class ProcessingOutcome(BaseModel):
    """
    Ephemeral result of one handler invocation.

    Attributes:
        status: Succeeded, transient failure or permanent failure
        duration_ms: Wall-clock time of the handler invocation
        error: Present only when the handler did not succeed
        result: Handler output used to build follow-on envelopes
    """
    model_config = ConfigDict(frozen=True)

    status: OutcomeStatus
    duration_ms: float = 0.0
    error: Optional[OutcomeError] = None
    result: Optional[dict[str, Any]] = None

    @property
    def success(self) -> bool:
        return self.status == OutcomeStatus.SUCCEEDED

    @property
    def is_transient(self) -> bool:
        return self.status == OutcomeStatus.TRANSIENT_FAILURE

    @property
    def is_permanent(self) -> bool:
        return self.status == OutcomeStatus.PERMANENT_FAILURE

    @classmethod
    def succeeded(cls, result: Optional[dict[str, Any]] = None) -> "ProcessingOutcome":
        return cls(status=OutcomeStatus.SUCCEEDED, result=result)

    @classmethod
    def transient_failure(
        cls, message: str, cause: Optional[BaseException] = None
    ) -> "ProcessingOutcome":
        return cls(
            status=OutcomeStatus.TRANSIENT_FAILURE,
            error=OutcomeError.from_exception(message, cause),
        )

    @classmethod
    def permanent_failure(
        cls, message: str, cause: Optional[BaseException] = None
    ) -> "ProcessingOutcome":
        return cls(
            status=OutcomeStatus.PERMANENT_FAILURE,
            error=OutcomeError.from_exception(message, cause),
        )

    def with_duration(self, duration_ms: float) -> "ProcessingOutcome":
        return self.model_copy(update={"duration_ms": duration_ms})
