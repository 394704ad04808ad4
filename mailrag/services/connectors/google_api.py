from __future__ import annotations

import logging
from typing import Any

import httpx

from mailrag.core.errors import ProviderApiError, TokenInvalidError
from mailrag.services.connectors.base import CredentialProvider

LOGGER = logging.getLogger(__name__)

_REVOKED_MARKERS = ("invalid_grant", "oauth_invalid_grant", "no oauth tokens found", "token has been expired or revoked")


def is_token_failure(message: str | None) -> bool:
    lowered = (message or "").lower()
    return any(marker in lowered for marker in _REVOKED_MARKERS)


class GoogleApiClient:
    """Bearer-token REST access to one Google API, with provider errors mapped to typed exceptions."""

    def __init__(
        self,
        credentials: CredentialProvider,
        *,
        provider: str,
        base_url: str,
        timeout_seconds: float | None = None,
    ):
        if timeout_seconds is None:
            from mailrag.core.config import settings

            timeout_seconds = settings.GOOGLE_API_TIMEOUT_SECONDS
        self.credentials = credentials
        self.provider = provider
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = float(timeout_seconds)

    @classmethod
    def for_gmail(cls, credentials: CredentialProvider) -> "GoogleApiClient":
        from mailrag.core.config import settings

        return cls(credentials, provider="gmail", base_url=settings.GMAIL_API_BASE_URL)

    @classmethod
    def for_drive(cls, credentials: CredentialProvider) -> "GoogleApiClient":
        from mailrag.core.config import settings

        return cls(credentials, provider="drive", base_url=settings.DRIVE_API_BASE_URL)

    def _access_token(self, owner_id: str) -> str:
        try:
            token = self.credentials.get_access_token(owner_id, self.provider)
        except TokenInvalidError:
            raise
        except Exception as exc:  # noqa: BLE001
            if is_token_failure(str(exc)):
                raise TokenInvalidError(message=str(exc)) from exc
            raise ProviderApiError("CREDENTIALS_UNAVAILABLE", str(exc)) from exc
        if not token:
            raise TokenInvalidError(message=f"No OAuth tokens found for {self.provider}")
        return token

    def _request(self, owner_id: str, path: str, params: dict[str, Any] | None = None) -> httpx.Response:
        token = self._access_token(owner_id)
        url = f"{self.base_url}/{path.lstrip('/')}"
        try:
            with httpx.Client(timeout=self.timeout_seconds) as client:
                response = client.get(url, params=params, headers={"Authorization": f"Bearer {token}"})
        except httpx.TimeoutException as exc:
            raise ProviderApiError("PROVIDER_TIMEOUT", f"{self.provider} request timed out", retryable=True) from exc
        except httpx.TransportError as exc:
            raise ProviderApiError("PROVIDER_UNREACHABLE", str(exc), retryable=True) from exc
        self._raise_for_provider_error(response)
        return response

    def _raise_for_provider_error(self, response: httpx.Response) -> None:
        if response.status_code < 400:
            return
        body = response.text or ""
        if response.status_code == 401 or is_token_failure(body):
            raise TokenInvalidError(message=f"{self.provider} rejected the access token")
        raise ProviderApiError(
            message=f"{self.provider} API returned HTTP {response.status_code}",
            status_code=response.status_code,
            retryable=response.status_code == 429 or response.status_code >= 500,
        )

    def get_json(self, owner_id: str, path: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        response = self._request(owner_id, path, params)
        try:
            body = response.json()
        except ValueError as exc:
            raise ProviderApiError("PROVIDER_MALFORMED_RESPONSE", f"{self.provider} returned invalid JSON") from exc
        return body if isinstance(body, dict) else {}

    def get_text(self, owner_id: str, path: str, params: dict[str, Any] | None = None) -> str:
        return self._request(owner_id, path, params).text

    def get_bytes(self, owner_id: str, path: str, params: dict[str, Any] | None = None) -> bytes:
        return self._request(owner_id, path, params).content
