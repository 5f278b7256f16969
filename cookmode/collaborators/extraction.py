"""HTTP client for the recipe extraction service"""

from typing import Any

import httpx

from cookmode.config.logging import get_logger
from cookmode.config.settings import Settings
from cookmode.core.exceptions import CollaboratorError, TerminalHandlerError

logger = get_logger(__name__)


class ExtractionClient:
    """
    Calls the extraction service on behalf of job handlers.

    Transport failures, timeouts and 5xx responses raise CollaboratorError
    (retried). 4xx responses, an "error" field in the body and unreadable
    bodies raise TerminalHandlerError.
    """

    def __init__(
        self,
        base_url: str = "http://localhost:8000",
        timeout: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            headers={"Content-Type": "application/json"},
            transport=transport,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "ExtractionClient":
        return cls(settings.extraction_service_url, settings.extraction_timeout_s)

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def close(self) -> None:
        await self.client.aclose()

    async def extract_recipe(
        self, url: str, user_id: str | None, idempotency_key: str
    ) -> dict[str, Any]:
        """Extract, enrich, embed and store the recipe at url."""
        return await self._post(
            "/extract-and-store-recipe",
            {"url": url, "user_id": user_id},
            idempotency_key,
        )

    async def parse_ingredients(
        self, image_url: str, idempotency_key: str
    ) -> dict[str, Any]:
        """Identify the food ingredients visible in an image."""
        return await self._post(
            "/parse-ingredients", {"image_url": image_url}, idempotency_key
        )

    async def _post(
        self, path: str, body: dict[str, Any], idempotency_key: str
    ) -> dict[str, Any]:
        try:
            response = await self.client.post(
                path, json=body, headers={"Idempotency-Key": idempotency_key}
            )
        except httpx.TimeoutException as e:
            raise CollaboratorError(f"Extraction service timed out: {e}") from e
        except httpx.RequestError as e:
            raise CollaboratorError(f"Extraction service unreachable: {e}") from e

        if response.status_code >= 500:
            raise CollaboratorError(
                f"Extraction service error {response.status_code}: {response.text}",
                {"status_code": response.status_code},
            )
        if response.status_code >= 400:
            raise TerminalHandlerError(
                f"Extraction service rejected request {response.status_code}: "
                f"{response.text}",
                {"status_code": response.status_code},
            )

        try:
            data = response.json()
        except ValueError:
            raise TerminalHandlerError(
                f"Invalid JSON response from extraction service: {response.text[:200]}"
            ) from None

        if not isinstance(data, dict):
            raise TerminalHandlerError("Extraction service returned a non-object body")
        if data.get("error"):
            raise TerminalHandlerError(f"Extraction service error: {data['error']}")

        logger.debug("Extraction service call succeeded", path=path)
        return data
