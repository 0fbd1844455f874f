"""Shared plumbing for adapters that talk to a provider over HTTP."""
import json
from typing import Any, Dict, Optional, Tuple

import httpx
import structlog

from payment_orchestration.config import get_settings
from payment_orchestration.core.exceptions import ProviderTransportError
from payment_orchestration.providers.base import PaymentProvider

logger = structlog.get_logger(__name__)


class HttpPaymentProvider(PaymentProvider):
    """
    Base for REST and SOAP adapters.

    Network failures, timeouts, auth rejections and 5xx responses raise
    ``ProviderTransportError``. Other 4xx responses are returned to the
    adapter, which reports them as business failures.
    """

    def __init__(self, http_client: Optional[httpx.AsyncClient] = None):
        """
        Initialize adapter.

        Args:
            http_client: Optional client (tests pass one with a mock transport)
        """
        self.settings = get_settings()
        self._client = http_client
        self._owns_client = http_client is None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.settings.provider_timeout_seconds)
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def _send(
        self,
        method: str,
        url: str,
        *,
        operation: str,
        **kwargs: Any,
    ) -> httpx.Response:
        """
        Send a request and raise on transport-level failures.

        Args:
            method: HTTP method
            url: Absolute URL
            operation: Operation name for logs
            **kwargs: Passed through to ``httpx.AsyncClient.request``

        Returns:
            httpx.Response: Response with a 2xx or non-auth 4xx status

        Raises:
            ProviderTransportError: On network errors, timeouts, 401/403 or 5xx
        """
        try:
            response = await self.client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            logger.warning("provider_request_timeout", provider=self.name, operation=operation)
            raise ProviderTransportError(
                f"{self.name} request timed out",
                provider=self.name,
                error_code="provider_timeout",
                original_error=e,
            ) from e
        except httpx.HTTPError as e:
            logger.warning(
                "provider_request_failed",
                provider=self.name,
                operation=operation,
                error=str(e),
            )
            raise ProviderTransportError(
                f"{self.name} request failed: {e}",
                provider=self.name,
                original_error=e,
            ) from e

        if response.status_code in (401, 403) or response.status_code >= 500:
            logger.warning(
                "provider_request_rejected",
                provider=self.name,
                operation=operation,
                status_code=response.status_code,
            )
            raise ProviderTransportError(
                f"{self.name} API error {response.status_code}: {response.text[:500]}",
                provider=self.name,
                error_code=f"http_{response.status_code}",
            )

        logger.debug(
            "provider_request_completed",
            provider=self.name,
            operation=operation,
            status_code=response.status_code,
        )
        return response

    def _json(self, response: httpx.Response) -> Dict[str, Any]:
        """Decode a JSON object body; empty bodies decode to ``{}``."""
        if response.status_code == 204 or not response.content:
            return {}
        try:
            data = response.json()
        except json.JSONDecodeError as e:
            raise ProviderTransportError(
                f"{self.name} returned malformed JSON",
                provider=self.name,
                original_error=e,
            ) from e
        if not isinstance(data, dict):
            raise ProviderTransportError(
                f"{self.name} returned an unexpected response body", provider=self.name
            )
        return data

    def _error_details(self, response: httpx.Response) -> Tuple[str, str]:
        """Error message and code for a 4xx business rejection."""
        message = f"{self.name} API error {response.status_code}"
        try:
            body = response.json()
        except json.JSONDecodeError:
            body = None
        if isinstance(body, dict):
            detail = body.get("message") or body.get("Message") or body.get("error_description")
            errors = body.get("errors")
            if not detail and isinstance(errors, list) and errors:
                first = errors[0]
                detail = first.get("description") if isinstance(first, dict) else str(first)
            if detail:
                message = f"{message}: {detail}"
            code = body.get("code") or body.get("name") or body.get("Type")
            if code:
                return message, str(code)
        elif response.text:
            message = f"{message}: {response.text[:200]}"
        return message, f"http_{response.status_code}"
