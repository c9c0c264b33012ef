"""Bearer-token validation against the credential/session service."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Protocol

import httpx

from ..config.loader import AuthConfig
from .logging import get_logger

__all__ = [
    "AuthenticatedUser",
    "CredentialError",
    "CredentialProvider",
    "CredentialServiceError",
    "HttpCredentialService",
    "StaticCredentialProvider",
    "build_credential_provider",
]

logger = get_logger(__name__)


class CredentialError(RuntimeError):
    """The token is missing, malformed, expired or unknown."""


class CredentialServiceError(RuntimeError):
    """The credential service could not be reached or answered unexpectedly."""

    def __init__(self, message: str, *, code: str, retryable: bool) -> None:
        super().__init__(message)
        self.code = code
        self.retryable = retryable


@dataclass(frozen=True)
class AuthenticatedUser:
    user_id: str
    email: Optional[str] = None
    claims: Dict[str, Any] = field(default_factory=dict)


class CredentialProvider(Protocol):  # pragma: no cover
    def authenticate(self, token: str) -> AuthenticatedUser: ...


class StaticCredentialProvider:
    """Token table for development and tests."""

    def __init__(self, tokens: Mapping[str, str]) -> None:
        self._tokens = dict(tokens)

    def authenticate(self, token: str) -> AuthenticatedUser:
        user_id = self._tokens.get((token or "").strip())
        if not user_id:
            raise CredentialError("unknown bearer token")
        return AuthenticatedUser(user_id=user_id)


class HttpCredentialService:
    """Supabase-style ``GET /auth/v1/user`` token check."""

    def __init__(
        self,
        base_url: str,
        *,
        api_key: Optional[str] = None,
        timeout_seconds: float = 10.0,
        client: Optional[httpx.Client] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._client = client or httpx.Client(timeout=timeout_seconds)

    def authenticate(self, token: str) -> AuthenticatedUser:
        token = (token or "").strip()
        if not token:
            raise CredentialError("bearer token is empty")
        headers = {"Authorization": f"Bearer {token}"}
        if self._api_key:
            headers["apikey"] = self._api_key
        try:
            response = self._client.get(f"{self.base_url}/auth/v1/user", headers=headers)
        except httpx.TimeoutException as exc:
            raise CredentialServiceError(
                str(exc), code="auth_timeout", retryable=True
            ) from exc
        except httpx.HTTPError as exc:
            raise CredentialServiceError(
                str(exc), code="auth_unavailable", retryable=True
            ) from exc

        if response.status_code in (401, 403):
            raise CredentialError("credential service rejected the token")
        if not response.is_success:
            logger.warning(
                "credential_service_error", extra={"status_code": response.status_code}
            )
            raise CredentialServiceError(
                f"credential service returned HTTP {response.status_code}",
                code="auth_upstream_error",
                retryable=response.status_code >= 500,
            )
        body = response.json()
        user = body.get("user") if isinstance(body.get("user"), dict) else body
        user_id = user.get("id") if isinstance(user, dict) else None
        if not user_id:
            raise CredentialError("credential service returned no user id")
        return AuthenticatedUser(user_id=str(user_id), email=user.get("email"), claims=user)


def build_credential_provider(config: AuthConfig) -> CredentialProvider:
    if config.provider == "http":
        return HttpCredentialService(
            config.base_url,
            api_key=config.api_key,
            timeout_seconds=config.timeout_seconds,
        )
    return StaticCredentialProvider(config.static_tokens)
