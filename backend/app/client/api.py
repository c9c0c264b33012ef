"""HTTP client for the MacroLog entry endpoints."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx

from ..infra.logging import get_logger
from .session import SessionError, TokenProvider

__all__ = ["ApiClientError", "MacroLogApiClient", "UploadFile"]

logger = get_logger(__name__)


class ApiClientError(RuntimeError):
    """A request failed; ``retryable`` marks network hiccups and 5xx answers."""

    def __init__(
        self,
        message: str,
        *,
        code: str,
        retryable: bool,
        status_code: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.retryable = retryable
        self.status_code = status_code


@dataclass(frozen=True)
class UploadFile:
    filename: str
    data: bytes
    media_type: str


class MacroLogApiClient:
    def __init__(
        self,
        base_url: str,
        *,
        tokens: TokenProvider,
        timeout_seconds: float = 30.0,
        client: Optional[httpx.Client] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._tokens = tokens
        self._client = client or httpx.Client(timeout=timeout_seconds)

    def submit_entry(
        self,
        *,
        timezone: str,
        text: Optional[str] = None,
        image: Optional[UploadFile] = None,
        audio: Optional[UploadFile] = None,
    ) -> Dict[str, Any]:
        """POST a multipart meal submission; returns ``{entry_id, image_path, audio_path}``."""

        data = {"timezone": timezone}
        if text:
            data["text"] = text
        files = {}
        if image is not None:
            files["image"] = (image.filename, image.data, image.media_type)
        if audio is not None:
            files["audio"] = (audio.filename, audio.data, audio.media_type)
        return self._request(
            "POST", "/api/entries", data=data, files=files or None
        )

    def get_status(self, entry_id: str) -> Dict[str, Any]:
        return self._request("GET", f"/api/entries/{entry_id}/status")

    def get_entry(self, entry_id: str) -> Dict[str, Any]:
        return self._request("GET", f"/api/entries/{entry_id}")

    def _request(self, method: str, path: str, **kwargs: Any) -> Dict[str, Any]:
        try:
            token = self._tokens.access_token()
        except SessionError as exc:
            raise ApiClientError(str(exc), code=exc.code, retryable=exc.retryable) from exc
        headers = {"Authorization": f"Bearer {token}"}
        try:
            response = self._client.request(
                method, f"{self.base_url}{path}", headers=headers, **kwargs
            )
        except httpx.TimeoutException as exc:
            raise ApiClientError(str(exc), code="timeout", retryable=True) from exc
        except httpx.HTTPError as exc:
            raise ApiClientError(str(exc), code="transport_error", retryable=True) from exc

        if response.is_success:
            try:
                return response.json()
            except ValueError as exc:
                logger.warning(
                    "api_response_not_json",
                    extra={"path": path, "status_code": response.status_code},
                )
                raise ApiClientError(
                    f"{method} {path} returned a body that is not JSON",
                    code="bad_response",
                    retryable=True,
                    status_code=response.status_code,
                ) from exc

        code = _error_code(response)
        logger.info(
            "api_request_failed",
            extra={"path": path, "status_code": response.status_code, "error_code": code},
        )
        raise ApiClientError(
            f"{method} {path} returned HTTP {response.status_code}",
            code=code,
            retryable=response.status_code >= 500 or response.status_code == 429,
            status_code=response.status_code,
        )


def _error_code(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return f"http_{response.status_code}"
    detail = body.get("detail") if isinstance(body, dict) else None
    if isinstance(detail, dict) and detail.get("error_code"):
        return str(detail["error_code"])
    return f"http_{response.status_code}"
