"""Access-token providers for the MacroLog API client."""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional, Protocol

import httpx

from ..infra.logging import get_logger

__all__ = [
    "SessionError",
    "SessionTokenProvider",
    "SessionTokens",
    "StaticTokenProvider",
    "TokenProvider",
]

logger = get_logger(__name__)

REFRESH_MARGIN_SECONDS = 60.0


class SessionError(RuntimeError):
    def __init__(self, message: str, *, code: str, retryable: bool) -> None:
        super().__init__(message)
        self.code = code
        self.retryable = retryable


class TokenProvider(Protocol):  # pragma: no cover
    def access_token(self) -> str: ...


class StaticTokenProvider:
    def __init__(self, token: str) -> None:
        self._token = token

    def access_token(self) -> str:
        return self._token


@dataclass(frozen=True)
class SessionTokens:
    access_token: str
    refresh_token: str
    expires_at: float


class SessionTokenProvider:
    """Holds a session and refreshes it shortly before the access token expires.

    Refresh goes through ``POST /auth/v1/token?grant_type=refresh_token`` on the
    credential service. A rejected refresh token is not retried.
    """

    def __init__(
        self,
        base_url: str,
        tokens: SessionTokens,
        *,
        api_key: Optional[str] = None,
        timeout_seconds: float = 10.0,
        client: Optional[httpx.Client] = None,
        clock: Callable[[], float] = time.time,
        refresh_margin_seconds: float = REFRESH_MARGIN_SECONDS,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._tokens = tokens
        self._api_key = api_key
        self._client = client or httpx.Client(timeout=timeout_seconds)
        self._clock = clock
        self._margin = refresh_margin_seconds
        self._lock = threading.Lock()

    @property
    def tokens(self) -> SessionTokens:
        return self._tokens

    def access_token(self) -> str:
        with self._lock:
            if self._clock() >= self._tokens.expires_at - self._margin:
                self._tokens = self._refresh(self._tokens.refresh_token)
            return self._tokens.access_token

    def _refresh(self, refresh_token: str) -> SessionTokens:
        headers = {"apikey": self._api_key} if self._api_key else {}
        try:
            response = self._client.post(
                f"{self.base_url}/auth/v1/token",
                params={"grant_type": "refresh_token"},
                json={"refresh_token": refresh_token},
                headers=headers,
            )
        except httpx.HTTPError as exc:
            raise SessionError(str(exc), code="session_unavailable", retryable=True) from exc

        if response.status_code in (400, 401, 403):
            raise SessionError(
                "refresh token rejected", code="session_expired", retryable=False
            )
        if not response.is_success:
            raise SessionError(
                f"credential service returned HTTP {response.status_code}",
                code="session_upstream_error",
                retryable=response.status_code >= 500,
            )
        body = response.json()
        access = body.get("access_token")
        if not access:
            raise SessionError(
                "refresh response carried no access token",
                code="session_upstream_error",
                retryable=False,
            )
        expires_in = float(body.get("expires_in") or 3600)
        logger.info("session_refreshed", extra={"expires_in": expires_in})
        return SessionTokens(
            access_token=access,
            refresh_token=body.get("refresh_token") or refresh_token,
            expires_at=self._clock() + expires_in,
        )
