"""
Client for the AI generation worker.

The worker owns prompts and models; this service only forwards the request
body and passes the JSON response through unchanged.
"""

import logging
from typing import Any

import httpx

from cutglue.billing.errors import DownstreamServiceError
from cutglue.config import GenerationConfig
from cutglue.models.billing import Feature
from cutglue.observability.metrics import track_downstream_failure
from cutglue.resilience.circuit_breakers import (
    CircuitOpenError,
    call_with_breaker_async,
    get_generation_breaker,
)

logger = logging.getLogger(__name__)


class GenerationClient:
    def __init__(self, config: GenerationConfig, client: httpx.Client | None = None):
        self.config = config
        self.breaker = get_generation_breaker()
        headers = {}
        if config.api_token:
            headers["Authorization"] = f"Bearer {config.api_token}"
        self._client = client or httpx.Client(
            timeout=config.timeout_seconds,
            headers=headers,
        )

    def _post(self, feature: Feature, payload: dict[str, Any]) -> dict[str, Any]:
        url = f"{self.config.endpoint_url.rstrip('/')}/{feature.value}"
        response = self._client.post(url, json=payload)
        response.raise_for_status()
        return response.json()

    async def generate(self, feature: Feature, payload: dict[str, Any]) -> dict[str, Any]:
        """
        Run one AI operation.

        Args:
            feature: Metered AI feature (selects the worker route)
            payload: Request body forwarded as-is

        Returns:
            dict: Worker response

        Raises:
            DownstreamServiceError: worker unreachable, erroring, or circuit open
        """
        try:
            return await call_with_breaker_async(self.breaker, self._post, feature, payload)
        except (httpx.HTTPError, ValueError, CircuitOpenError) as e:
            track_downstream_failure("generation")
            logger.error(
                "AI generation failed",
                extra={"feature": feature.value, "error": str(e)},
            )
            raise DownstreamServiceError(f"AI generation failed: {e}") from e

    def close(self) -> None:
        self._client.close()
