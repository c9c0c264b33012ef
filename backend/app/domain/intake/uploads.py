"""Upload validation: size ceilings and media-type allow-lists per kind."""

from __future__ import annotations

import mimetypes
from dataclasses import dataclass
from pathlib import PurePath
from typing import Dict, Optional

from ...config.loader import UploadRule, UploadsConfig
from .errors import PayloadTooLarge, UnsupportedMediaType

__all__ = ["UploadedMedia", "UploadPolicy", "extension_for"]

GENERIC_MEDIA_TYPES = {"", "application/octet-stream", "binary/octet-stream"}

# Extensions mimetypes does not map (or maps inconsistently across platforms).
_EXTENSION_MEDIA_TYPES: Dict[str, str] = {
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".webp": "image/webp",
    ".heic": "image/heic",
    ".heif": "image/heif",
    ".m4a": "audio/m4a",
    ".mp4": "audio/mp4",
    ".mp3": "audio/mpeg",
    ".wav": "audio/wav",
    ".webm": "audio/webm",
    ".ogg": "audio/ogg",
    ".oga": "audio/ogg",
    ".aac": "audio/aac",
    ".flac": "audio/flac",
}
_MEDIA_TYPE_EXTENSIONS: Dict[str, str] = {
    "image/jpeg": "jpg",
    "image/png": "png",
    "image/webp": "webp",
    "image/heic": "heic",
    "image/heif": "heif",
    "audio/m4a": "m4a",
    "audio/x-m4a": "m4a",
    "audio/mp4": "m4a",
    "audio/mpeg": "mp3",
    "audio/wav": "wav",
    "audio/x-wav": "wav",
    "audio/webm": "webm",
    "audio/ogg": "ogg",
    "audio/aac": "aac",
    "audio/flac": "flac",
}


@dataclass(frozen=True)
class UploadedMedia:
    """One uploaded file after validation."""

    kind: str
    data: bytes
    media_type: str
    filename: Optional[str] = None

    @property
    def size(self) -> int:
        return len(self.data)

    @property
    def extension(self) -> str:
        return extension_for(self.media_type, self.filename)


def extension_for(media_type: str, filename: Optional[str] = None) -> str:
    known = _MEDIA_TYPE_EXTENSIONS.get(media_type)
    if known:
        return known
    if filename:
        suffix = PurePath(filename).suffix.lstrip(".").lower()
        if suffix:
            return suffix
    return "bin"


def _normalize_media_type(media_type: Optional[str]) -> str:
    return (media_type or "").split(";", 1)[0].strip().lower()


def _infer_media_type(filename: Optional[str]) -> str:
    if not filename:
        return ""
    suffix = PurePath(filename).suffix.lower()
    if suffix in _EXTENSION_MEDIA_TYPES:
        return _EXTENSION_MEDIA_TYPES[suffix]
    guessed, _ = mimetypes.guess_type(filename)
    return (guessed or "").lower()


class UploadPolicy:
    """Validates uploads before anything is persisted."""

    def __init__(self, config: UploadsConfig) -> None:
        self._rules: Dict[str, UploadRule] = {"image": config.image, "audio": config.audio}

    def rule(self, kind: str) -> UploadRule:
        try:
            return self._rules[kind]
        except KeyError:
            raise ValueError(f"unknown upload kind '{kind}'") from None

    def validate(
        self,
        kind: str,
        data: bytes,
        *,
        media_type: Optional[str],
        filename: Optional[str] = None,
    ) -> UploadedMedia:
        rule = self.rule(kind)
        if len(data) > rule.max_bytes:
            raise PayloadTooLarge(
                f"{kind} upload exceeds {rule.max_bytes} bytes",
                details={"kind": kind, "max_bytes": rule.max_bytes, "size": len(data)},
            )

        resolved = _normalize_media_type(media_type)
        if resolved in GENERIC_MEDIA_TYPES:
            resolved = _infer_media_type(filename)
        if resolved not in rule.media_types:
            raise UnsupportedMediaType(
                f"{kind} media type '{resolved or 'unknown'}' is not allowed",
                details={"kind": kind, "media_type": resolved or None},
            )
        return UploadedMedia(kind=kind, data=data, media_type=resolved, filename=filename)
