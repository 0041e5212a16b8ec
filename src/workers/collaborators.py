"""
External Collaborators

Capabilities the workers call but never implement: ingredient recognition,
recipe matching, notification channels and the analytics store.

Workers depend on the Protocols only; the httpx clients below are the
production adapters and can be swapped for fakes in tests.
"""

from typing import Any, Optional, Protocol

import httpx
from pydantic import ValidationError

from src.config import get_settings
from src.models.payloads import MatchResult, RecognitionResult
from src.utils.observability import logger


class CollaboratorError(Exception):
    """An external capability failed; a retry may succeed."""

    def __init__(self, service: str, detail: str):
        self.service = service
        self.detail = detail
        super().__init__(f"{service} failed: {detail}")


class IngredientRecognizer(Protocol):
    async def recognize(self, image: bytes, filename: str) -> RecognitionResult:
        ...


class RecipeMatcher(Protocol):
    async def match(self, ingredient_ids: list[str]) -> MatchResult:
        ...


class NotificationChannels(Protocol):
    """Push, email and socket delivery."""

    async def send_push(self, user_id: str, data: dict[str, Any]) -> None:
        ...

    async def send_email(self, email: str, data: dict[str, Any]) -> None:
        ...

    async def send_socket(self, user_id: str, data: dict[str, Any]) -> None:
        ...


class AnalyticsSink(Protocol):
    async def record(self, event: dict[str, Any]) -> None:
        ...


class HttpCollaborator:
    """
    Base for HTTP-backed collaborators.

    Pass ``client`` to share one AsyncClient (or inject a MockTransport);
    otherwise a client is created per request, as the handoff notifier does.
    """

    service_name = "collaborator"

    def __init__(
        self,
        base_url: str,
        timeout: Optional[float] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout if timeout is not None else get_settings().collaborator_timeout_seconds
        self._client = client

    async def _post(self, path: str, **kwargs: Any) -> httpx.Response:
        """
        POST to the collaborator.

        Raises:
            CollaboratorError: On transport errors or a non-2xx status
        """
        url = f"{self.base_url}{path}"
        try:
            if self._client is not None:
                response = await self._client.post(url, timeout=self.timeout, **kwargs)
                response.raise_for_status()
            else:
                async with httpx.AsyncClient() as client:
                    response = await client.post(url, timeout=self.timeout, **kwargs)
                    response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.warning(
                f"{self.service_name} returned {e.response.status_code}",
                extra={"url": url, "status_code": e.response.status_code}
            )
            raise CollaboratorError(
                self.service_name, f"HTTP {e.response.status_code} from {url}"
            ) from e
        except httpx.HTTPError as e:
            logger.bind(url=url).warning(f"{self.service_name} request failed: {e}")
            raise CollaboratorError(self.service_name, str(e) or type(e).__name__) from e
        return response

    def _json(self, response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError as e:
            raise CollaboratorError(self.service_name, f"Invalid JSON response: {e}") from e


class HttpRecognitionClient(HttpCollaborator):
    """Uploads the image as multipart form data to ``/recognize``."""

    service_name = "recognition"

    def __init__(self, base_url: Optional[str] = None, **kwargs: Any):
        super().__init__(base_url or get_settings().recognition_service_url, **kwargs)

    async def recognize(self, image: bytes, filename: str) -> RecognitionResult:
        response = await self._post("/recognize", files={"image": (filename, image)})
        try:
            return RecognitionResult.model_validate(self._json(response))
        except ValidationError as e:
            raise CollaboratorError(self.service_name, f"Unexpected response: {e}") from e


class HttpRecipeMatcher(HttpCollaborator):
    service_name = "matching"

    def __init__(self, base_url: Optional[str] = None, **kwargs: Any):
        super().__init__(base_url or get_settings().matching_service_url, **kwargs)

    async def match(self, ingredient_ids: list[str]) -> MatchResult:
        response = await self._post("/match", json={"ingredientIds": ingredient_ids})
        try:
            return MatchResult.model_validate(self._json(response))
        except ValidationError as e:
            raise CollaboratorError(self.service_name, f"Unexpected response: {e}") from e


class HttpNotificationChannels(HttpCollaborator):
    service_name = "notification"

    def __init__(self, base_url: Optional[str] = None, **kwargs: Any):
        super().__init__(base_url or get_settings().notification_service_url, **kwargs)

    async def send_push(self, user_id: str, data: dict[str, Any]) -> None:
        await self._post("/push", json={"userId": user_id, "data": data})

    async def send_email(self, email: str, data: dict[str, Any]) -> None:
        await self._post("/email", json={"email": email, "data": data})

    async def send_socket(self, user_id: str, data: dict[str, Any]) -> None:
        await self._post("/socket", json={"userId": user_id, "data": data})


class HttpAnalyticsSink(HttpCollaborator):
    service_name = "analytics"

    def __init__(self, base_url: Optional[str] = None, **kwargs: Any):
        super().__init__(base_url or get_settings().analytics_service_url, **kwargs)

    async def record(self, event: dict[str, Any]) -> None:
        await self._post("/events", json=event)
