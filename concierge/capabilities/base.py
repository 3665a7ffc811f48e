"""
Shared HTTP plumbing for the capability clients.

Each client talks to one third-party JSON API over an ``httpx.AsyncClient``
and authenticates with the owner's linked bearer token. Every failure mode
surfaces as a ``CapabilityError`` carrying an HTTP-like status and the
decoded error payload, so tool handlers only need to handle one type.
"""

from __future__ import annotations

from typing import Any, Optional

import httpx
import structlog

from concierge.capabilities.credentials import CredentialStore

logger = structlog.get_logger(__name__)


class CapabilityError(Exception):
    """A capability call failed with an HTTP-like status and error payload."""

    def __init__(self, status: int, payload: Any = None, message: str = ""):
        self.status = status
        self.payload = payload
        super().__init__(message or f"capability call failed with status {status}: {payload}")

    def to_dict(self) -> dict[str, Any]:
        return {"status": self.status, "error": self.payload}


class HTTPCapabilityClient:
    """Base class: token lookup, request dispatch, error mapping."""

    provider: str = ""

    def __init__(
        self,
        credentials: CredentialStore,
        base_url: str,
        timeout_seconds: float = 20.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._credentials = credentials
        self._base_url = base_url.rstrip("/")
        self._client = httpx.AsyncClient(timeout=timeout_seconds, transport=transport)

    async def close(self) -> None:
        await self._client.aclose()

    def _token(self, owner: str) -> str:
        token = self._credentials.get_token(owner, self.provider)
        if not token:
            raise CapabilityError(
                401,
                {"error": f"{self.provider} account not linked"},
                message=f"Owner has not linked a {self.provider} account",
            )
        return token

    async def _request(
        self,
        owner: str,
        method: str,
        path: str,
        *,
        params: Optional[dict[str, Any]] = None,
        json_body: Optional[dict[str, Any]] = None,
    ) -> Any:
        headers = {"Authorization": f"Bearer {self._token(owner)}"}
        url = f"{self._base_url}{path}"
        try:
            response = await self._client.request(
                method, url, params=params, json=json_body, headers=headers
            )
        except httpx.TimeoutException as exc:
            logger.warning("capability.timeout", provider=self.provider, path=path)
            raise CapabilityError(504, {"error": "timeout"}, message=str(exc)) from exc
        except httpx.HTTPError as exc:
            logger.warning(
                "capability.transport_error", provider=self.provider, path=path, error=str(exc)
            )
            raise CapabilityError(503, {"error": str(exc)}) from exc

        if response.status_code >= 400:
            try:
                payload: Any = response.json()
            except ValueError:
                payload = response.text
            logger.warning(
                "capability.error_status",
                provider=self.provider,
                path=path,
                status=response.status_code,
            )
            raise CapabilityError(response.status_code, payload)

        if not response.content:
            return {}
        return response.json()
