"""Object storage adapters for entry photos and voice notes."""

from __future__ import annotations

import hashlib
import hmac
import os
import time
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Dict, Optional, Protocol, Tuple
from urllib.parse import quote, urlencode

import httpx

from ..config.loader import StorageConfig
from .logging import get_logger

__all__ = [
    "FilesystemObjectStore",
    "InMemoryObjectStore",
    "ObjectStore",
    "ObjectStoreError",
    "StoredObject",
    "SupabaseObjectStore",
    "build_object_store",
]

logger = get_logger(__name__)


class ObjectStoreError(RuntimeError):
    """Raised when an upload or signed-URL request fails."""

    def __init__(self, message: str, *, code: str, retryable: bool) -> None:
        super().__init__(message)
        self.code = code
        self.retryable = retryable


@dataclass(frozen=True)
class StoredObject:
    bucket: str
    path: str
    content_type: str
    size: int


class ObjectStore(Protocol):  # pragma: no cover
    def put_object(
        self, bucket: str, path: str, data: bytes, *, content_type: str
    ) -> StoredObject: ...

    def create_signed_url(self, bucket: str, path: str, *, expires_in: int) -> str: ...


def _validate_path(path: str) -> str:
    candidate = PurePosixPath(path)
    if candidate.is_absolute() or ".." in candidate.parts or not candidate.parts:
        raise ObjectStoreError(
            f"invalid object path '{path}'", code="invalid_path", retryable=False
        )
    return str(candidate)


class InMemoryObjectStore:
    """Dict-backed store used in tests; uploads never overwrite."""

    def __init__(self, base_url: str = "memory://objects") -> None:
        self.base_url = base_url.rstrip("/")
        self.objects: Dict[Tuple[str, str], Tuple[bytes, str]] = {}

    def put_object(
        self, bucket: str, path: str, data: bytes, *, content_type: str
    ) -> StoredObject:
        key = (bucket, _validate_path(path))
        if key in self.objects:
            raise ObjectStoreError(
                f"object {bucket}/{path} already exists", code="object_exists", retryable=False
            )
        self.objects[key] = (bytes(data), content_type)
        return StoredObject(bucket=bucket, path=key[1], content_type=content_type, size=len(data))

    def create_signed_url(self, bucket: str, path: str, *, expires_in: int) -> str:
        key = (bucket, _validate_path(path))
        if key not in self.objects:
            raise ObjectStoreError(
                f"object {bucket}/{path} not found", code="object_not_found", retryable=False
            )
        return f"{self.base_url}/{bucket}/{key[1]}?expires_in={expires_in}"


class FilesystemObjectStore:
    """Local-disk store for development with HMAC-signed download URLs."""

    def __init__(
        self,
        root_path: str | Path,
        *,
        base_url: str,
        signing_secret: Optional[str] = None,
        clock=time.time,
    ) -> None:
        self.root = Path(root_path).expanduser()
        self.base_url = base_url.rstrip("/")
        self._secret = (signing_secret or "macrolog-dev-signing").encode("utf-8")
        self._clock = clock

    def put_object(
        self, bucket: str, path: str, data: bytes, *, content_type: str
    ) -> StoredObject:
        relative = _validate_path(path)
        target = self.root / bucket / relative
        if target.exists():
            raise ObjectStoreError(
                f"object {bucket}/{relative} already exists",
                code="object_exists",
                retryable=False,
            )
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            staging = target.with_name(f".{target.name}.partial")
            staging.write_bytes(data)
            os.replace(staging, target)
        except OSError as exc:
            raise ObjectStoreError(
                f"failed to write {bucket}/{relative}: {exc}",
                code="storage_io_error",
                retryable=True,
            ) from exc
        logger.debug(
            "object_stored",
            extra={"bucket": bucket, "path": relative, "bytes": len(data)},
        )
        return StoredObject(bucket=bucket, path=relative, content_type=content_type, size=len(data))

    def create_signed_url(self, bucket: str, path: str, *, expires_in: int) -> str:
        relative = _validate_path(path)
        if not (self.root / bucket / relative).is_file():
            raise ObjectStoreError(
                f"object {bucket}/{relative} not found",
                code="object_not_found",
                retryable=False,
            )
        expires_at = int(self._clock()) + int(expires_in)
        signature = self.sign(bucket, relative, expires_at)
        query = urlencode({"expires": expires_at, "signature": signature})
        return f"{self.base_url}/{bucket}/{quote(relative)}?{query}"

    def sign(self, bucket: str, path: str, expires_at: int) -> str:
        message = f"{bucket}/{path}:{expires_at}".encode("utf-8")
        return hmac.new(self._secret, message, hashlib.sha256).hexdigest()

    def verify(self, bucket: str, path: str, expires_at: int, signature: str) -> bool:
        if expires_at < int(self._clock()):
            return False
        return hmac.compare_digest(self.sign(bucket, path, expires_at), signature)


class SupabaseObjectStore:
    """Supabase Storage REST adapter (service-role key)."""

    def __init__(
        self,
        base_url: str,
        *,
        service_key: str,
        timeout_seconds: float = 30.0,
        client: Optional[httpx.Client] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._client = client or httpx.Client(timeout=timeout_seconds)
        self._headers = {
            "Authorization": f"Bearer {service_key}",
            "apikey": service_key,
        }

    def put_object(
        self, bucket: str, path: str, data: bytes, *, content_type: str
    ) -> StoredObject:
        relative = _validate_path(path)
        url = f"{self.base_url}/storage/v1/object/{bucket}/{quote(relative)}"
        headers = dict(self._headers, **{"Content-Type": content_type, "x-upsert": "false"})
        response = self._send("POST", url, headers=headers, content=data)
        if response.status_code == 409:
            raise ObjectStoreError(
                f"object {bucket}/{relative} already exists", code="object_exists", retryable=False
            )
        _raise_for_status(response, action="upload")
        return StoredObject(bucket=bucket, path=relative, content_type=content_type, size=len(data))

    def create_signed_url(self, bucket: str, path: str, *, expires_in: int) -> str:
        relative = _validate_path(path)
        url = f"{self.base_url}/storage/v1/object/sign/{bucket}/{quote(relative)}"
        response = self._send(
            "POST", url, headers=self._headers, json={"expiresIn": int(expires_in)}
        )
        _raise_for_status(response, action="sign")
        body = response.json()
        signed = body.get("signedURL") or body.get("signedUrl")
        if not signed:
            raise ObjectStoreError(
                "signed url response missing signedURL", code="storage_bad_response", retryable=False
            )
        if signed.startswith("http"):
            return signed
        return f"{self.base_url}/storage/v1{signed}"

    def _send(self, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            return self._client.request(method, url, **kwargs)
        except httpx.TimeoutException as exc:
            raise ObjectStoreError(str(exc), code="storage_timeout", retryable=True) from exc
        except httpx.HTTPError as exc:
            raise ObjectStoreError(str(exc), code="storage_unavailable", retryable=True) from exc


def _raise_for_status(response: httpx.Response, *, action: str) -> None:
    if response.is_success:
        return
    logger.warning(
        "object_store_request_failed",
        extra={"action": action, "status_code": response.status_code},
    )
    raise ObjectStoreError(
        f"storage {action} failed with HTTP {response.status_code}",
        code="storage_rejected",
        retryable=response.status_code >= 500,
    )


def build_object_store(config: StorageConfig) -> ObjectStore:
    """Return the adapter selected by ``storage.backend``."""

    if config.backend == "supabase":
        if not config.service_key:
            raise ObjectStoreError(
                "storage.service_key is required for the supabase backend",
                code="storage_misconfigured",
                retryable=False,
            )
        return SupabaseObjectStore(
            config.base_url,
            service_key=config.service_key,
            timeout_seconds=config.timeout_seconds,
        )
    if config.backend == "memory":
        return InMemoryObjectStore(config.base_url)
    return FilesystemObjectStore(
        config.root_path,
        base_url=config.base_url,
        signing_secret=config.signing_secret,
    )
