"""HTTP client for the external voice-provisioning provider.

Every failure is classified and raised so the enforcement processor can
tell "the resource is already gone" (converge) apart from "try again
later" (retry):

* :class:`ProviderNotFoundError` -- HTTP 404.
* :class:`ProviderTimeoutError` -- the bounded request timeout elapsed.
* :class:`ProviderRequestError` -- any other HTTP error or transport failure;
  ``retryable`` is ``True`` for 408/409/425/429, any 5xx and transport
  errors.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

logger = logging.getLogger(__name__)

_RETRYABLE_STATUS = frozenset({408, 409, 425, 429})


class ProviderError(Exception):
    """Base class for voice provider failures."""


class ProviderNotFoundError(ProviderError):
    """The referenced resource does not exist upstream."""

    def __init__(self, path: str) -> None:
        super().__init__(f"Resource not found at provider: {path}")
        self.path = path


class ProviderTimeoutError(ProviderError):
    """The provider did not answer within the configured timeout."""


class ProviderRequestError(ProviderError):
    """Non-404 HTTP error or transport failure."""

    def __init__(self, message: str, *, status_code: int | None = None, retryable: bool = True) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.retryable = retryable


class VoiceProviderClient:
    """Thin async wrapper around the voice provider REST API.

    Parameters
    ----------
    base_url:
        Root URL of the provider API (e.g. ``https://api.vapi.ai``).
    api_key:
        Bearer token for the organisation account.
    timeout:
        Per-request timeout in seconds.
    transport:
        Optional ``httpx`` transport, used by tests to stub the provider.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout: float = 10.0,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        headers: dict[str, str] = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            timeout=httpx.Timeout(timeout),
            headers=headers,
            transport=transport,
        )

    # -- Assistants -----------------------------------------------------------

    async def list_assistants(self) -> list[dict[str, Any]]:
        """Return every assistant visible to the organisation (``GET /assistant``)."""
        data = await self._request("GET", "/assistant")
        if isinstance(data, dict):
            # Paginated shape: {"results": [...]}.
            data = data.get("results", [])
        return list(data or [])

    async def list_assistant_ids(self) -> set[str]:
        """Return the ids from :meth:`list_assistants`."""
        return {str(item["id"]) for item in await self.list_assistants() if item.get("id")}

    async def get_assistant(self, assistant_id: str) -> dict[str, Any]:
        return await self._request("GET", f"/assistant/{assistant_id}")

    async def update_assistant(self, assistant_id: str, changes: dict[str, Any]) -> dict[str, Any]:
        """Apply a partial update (``PATCH /assistant/{id}``)."""
        return await self._request("PATCH", f"/assistant/{assistant_id}", json=changes)

    async def delete_assistant(self, assistant_id: str) -> None:
        await self._request("DELETE", f"/assistant/{assistant_id}")

    # -- Phone numbers --------------------------------------------------------

    async def get_phone_number(self, phone_number_id: str) -> dict[str, Any]:
        return await self._request("GET", f"/phone-number/{phone_number_id}")

    async def phone_number_exists(self, phone_number_id: str) -> bool:
        """Per-id existence check; ``False`` only on a definite 404."""
        try:
            await self.get_phone_number(phone_number_id)
        except ProviderNotFoundError:
            return False
        return True

    async def update_phone_number(self, phone_number_id: str, changes: dict[str, Any]) -> dict[str, Any]:
        return await self._request("PATCH", f"/phone-number/{phone_number_id}", json=changes)

    async def delete_phone_number(self, phone_number_id: str) -> None:
        await self._request("DELETE", f"/phone-number/{phone_number_id}")

    # -- Health --------------------------------------------------------------

    async def health_check(self) -> bool:
        """Return ``True`` if the provider answers an authenticated listing."""
        try:
            await self._request("GET", "/assistant", params={"limit": 1})
        except ProviderError:
            return False
        return True

    # -- Lifecycle -----------------------------------------------------------

    async def close(self) -> None:
        """Close the underlying HTTP connection pool."""
        await self._client.aclose()

    # -- Internal ------------------------------------------------------------

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        """Send a request and translate failures into :class:`ProviderError`."""
        try:
            resp = await self._client.request(method, path, **kwargs)
        except httpx.TimeoutException as exc:
            logger.warning("Provider %s %s timed out", method, path)
            raise ProviderTimeoutError(f"{method} {path} timed out") from exc
        except httpx.RequestError as exc:
            logger.warning("Provider %s %s request error: %s", method, path, exc)
            raise ProviderRequestError(f"{method} {path} failed: {exc}") from exc

        if resp.status_code == 404:
            raise ProviderNotFoundError(path)
        if resp.status_code >= 400:
            retryable = resp.status_code >= 500 or resp.status_code in _RETRYABLE_STATUS
            logger.warning(
                "Provider %s %s returned %d: %s",
                method,
                path,
                resp.status_code,
                resp.text[:500],
            )
            raise ProviderRequestError(
                f"{method} {path} returned HTTP {resp.status_code}",
                status_code=resp.status_code,
                retryable=retryable,
            )

        if resp.status_code == 204 or not resp.content:
            return None
        return resp.json()
