import base64
import binascii
import datetime as dt
from enum import StrEnum
from typing import Any, Optional

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    field_serializer,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel


class WireModel(BaseModel):
    """camelCase on the wire, snake_case in Python."""
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
    )


# ============================================
# IMAGE RECOGNITION
# ============================================

class ImageRecognitionPayload(WireModel):
    """
    Work item for the image-processing queue.
    The image arrives as raw bytes, base64 text, or a serialized Node Buffer.
    """
    image_buffer: bytes = Field(..., min_length=1)
    file_name: str = Field(..., min_length=1)
    user_id: Optional[str] = None
    image_id: Optional[str] = None

    @field_validator("image_buffer", mode="before")
    @classmethod
    def normalize_image(cls, value: Any) -> bytes:
        if isinstance(value, (bytes, bytearray)):
            return bytes(value)
        if isinstance(value, dict) and value.get("type") == "Buffer":
            value = value.get("data")
        if isinstance(value, list):
            try:
                return bytes(value)
            except (TypeError, ValueError) as e:
                raise ValueError(f"Invalid byte array: {e}") from e
        if isinstance(value, str):
            try:
                return base64.b64decode(value, validate=True)
            except (binascii.Error, ValueError) as e:
                raise ValueError(f"imageBuffer is not valid base64: {e}") from e
        raise ValueError("imageBuffer must be bytes or base64-encoded text")

    @field_serializer("image_buffer")
    def serialize_image(self, value: bytes) -> str:
        return base64.b64encode(value).decode("ascii")


class RecognizedIngredient(WireModel):
    model_config = ConfigDict(extra="allow")

    name: Optional[str] = None
    id: Optional[str] = None
    confidence: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    category: Optional[str] = None

    @model_validator(mode="after")
    def requires_identifier(self) -> "RecognizedIngredient":
        if not (self.id or "").strip() and not (self.name or "").strip():
            raise ValueError("ingredient needs a non-blank id or name")
        return self


class RecognitionResult(WireModel):
    """Output of the recognition capability."""
    ingredients: list[RecognizedIngredient] = Field(default_factory=list)
    image_url: Optional[str] = None

    @property
    def ingredient_ids(self) -> list[str]:
        return [i.id if i.id and i.id.strip() else i.name for i in self.ingredients]


# ============================================
# RECIPE MATCHING
# ============================================

class RecipeMatchingPayload(WireModel):
    """Work item for the recipe-matching queue."""
    ingredient_ids: list[str] = Field(..., min_length=1)
    user_id: Optional[str] = None
    image_id: Optional[str] = None
    recognition: Optional[RecognitionResult] = None

    @field_validator("ingredient_ids")
    @classmethod
    def ids_not_blank(cls, value: list[str]) -> list[str]:
        if any(not item.strip() for item in value):
            raise ValueError("ingredientIds must not contain blank ids")
        return value


class MatchedRecipe(WireModel):
    model_config = ConfigDict(extra="allow")

    id: str
    title: Optional[str] = None
    score: Optional[float] = None


class MatchResult(WireModel):
    """Output of the matching capability."""
    recipes: list[MatchedRecipe] = Field(default_factory=list)


# ============================================
# NOTIFICATIONS
# ============================================

class NotificationType(StrEnum):
    PUSH = "push"
    EMAIL = "email"
    WEBSOCKET = "websocket"


class NotificationPayload(WireModel):
    """
    Work item for the notifications queue.
    push and websocket need userId; email needs userEmail.
    """
    type: NotificationType
    data: dict[str, Any] = Field(default_factory=dict)
    user_id: Optional[str] = None
    user_email: Optional[str] = None

    @model_validator(mode="after")
    def channel_fields_present(self) -> "NotificationPayload":
        if self.type == NotificationType.EMAIL:
            if not self.user_email:
                raise ValueError("email notifications require userEmail")
        elif not self.user_id:
            raise ValueError(f"{self.type.value} notifications require userId")
        return self


# ============================================
# ANALYTICS
# ============================================

class AnalyticsEventType(StrEnum):
    RECIPE_MATCHING = "RECIPE_MATCHING"
    USER_ACTIVITY = "USER_ACTIVITY"
    SYSTEM_PERFORMANCE = "SYSTEM_PERFORMANCE"
    INGREDIENT_RECOGNITION = "INGREDIENT_RECOGNITION"


class AnalyticsPayload(WireModel):
    """
    Work item for the analytics queue.
    Event-specific metrics ride along as extra fields.
    """
    model_config = ConfigDict(extra="allow")

    type: AnalyticsEventType
    correlation_id: Optional[str] = None
    user_id: Optional[str] = None
    timestamp: dt.datetime = Field(default_factory=lambda: dt.datetime.now(dt.UTC))

    @field_serializer("timestamp")
    def serialize_dt(self, value: dt.datetime):
        return value.isoformat()


class RecipeMatchingSummary(AnalyticsPayload):
    """Summary published by the recipe-matching worker."""
    type: AnalyticsEventType = AnalyticsEventType.RECIPE_MATCHING
    ingredient_count: int = Field(..., ge=0)
    match_count: int = Field(..., ge=0)
    duration_ms: float = Field(..., ge=0.0)
