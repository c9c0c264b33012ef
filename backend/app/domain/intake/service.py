"""Intake handler: authenticate, validate, persist, upload, dispatch.

The entry row is created synchronously before any upload or model call so
the caller always receives an id to poll; the inference job finishes in the
background and completes the entry through the webhook.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Callable, Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from ...config.loader import StorageConfig
from ...infra.credentials import CredentialError, CredentialProvider
from ...infra.logging import get_logger
from ...infra.metrics import MetricsClient, get_metrics_client
from ...infra.object_store import ObjectStore
from ..entrystore.gateway import EntryStoreGateway
from ..entrystore.models import Entry
from ..entrystore.states import ENTRY_STATUS
from .dispatch import InferenceDispatcher
from .errors import IntakeError, Unauthorized
from .transcription import Transcriber
from .uploads import UploadedMedia, UploadPolicy

__all__ = [
    "IntakeHandler",
    "IntakeRequest",
    "IntakeResult",
    "RawUpload",
    "build_object_path",
    "resolve_timezone",
]

logger = get_logger(__name__)

DEFAULT_TIMEZONE = "UTC"


@dataclass(frozen=True)
class RawUpload:
    """An uploaded file exactly as the transport delivered it."""

    data: bytes
    media_type: Optional[str] = None
    filename: Optional[str] = None


@dataclass(frozen=True)
class IntakeRequest:
    token: Optional[str]
    text: Optional[str] = None
    timezone: Optional[str] = None
    image: Optional[RawUpload] = None
    audio: Optional[RawUpload] = None


@dataclass(frozen=True)
class IntakeResult:
    entry_id: str
    image_path: Optional[str] = None
    audio_path: Optional[str] = None


def resolve_timezone(name: Optional[str]) -> Tuple[ZoneInfo, str]:
    """Return the zone for ``name``; unknown or empty names fall back to UTC."""

    candidate = (name or "").strip()
    if candidate:
        try:
            return ZoneInfo(candidate), candidate
        except (ZoneInfoNotFoundError, ValueError):
            logger.info("intake_timezone_unknown", extra={"timezone": candidate})
    return ZoneInfo(DEFAULT_TIMEZONE), DEFAULT_TIMEZONE


def build_object_path(user_id: str, entry_id: str, kind: str, millis: int, ext: str) -> str:
    return f"user/{user_id}/entry/{entry_id}/{kind}_{millis}.{ext}"


class IntakeHandler:
    """Accepts one meal submission and guarantees eventual completion."""

    def __init__(
        self,
        *,
        credentials: CredentialProvider,
        upload_policy: UploadPolicy,
        entry_gateway: EntryStoreGateway,
        object_store: ObjectStore,
        transcriber: Transcriber,
        dispatcher: InferenceDispatcher,
        storage_config: StorageConfig,
        metrics: MetricsClient | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._credentials = credentials
        self._uploads = upload_policy
        self._entries = entry_gateway
        self._object_store = object_store
        self._transcriber = transcriber
        self._dispatcher = dispatcher
        self._storage = storage_config
        self._metrics = metrics or get_metrics_client()
        self._clock = clock

    def submit(self, request: IntakeRequest) -> IntakeResult:
        try:
            user_id = self._authenticate(request.token)
            image, audio = self._validate_uploads(request)
        except IntakeError as exc:
            self._metrics.increment(f"intake_rejected.{exc.error_code}")
            logger.info(
                "intake_rejected",
                extra={"error_code": exc.error_code, "details": exc.details},
            )
            raise

        zone, zone_name = resolve_timezone(request.timezone)
        text = (request.text or "").strip() or None
        entry = self._entries.create_entry(
            user_id=user_id,
            local_day=self._local_day(zone),
            timezone_snapshot=zone_name,
            raw_text=text,
            status=ENTRY_STATUS.PROCESSING,
        )
        logger.info(
            "intake_entry_created",
            extra={
                "entry_id": entry.entry_id,
                "has_text": entry.has_text,
                "has_image": image is not None,
                "has_audio": audio is not None,
            },
        )

        audio_path = None
        if audio is not None:
            audio_path, entry = self._ingest_audio(entry, audio, text)

        image_path = None
        image_url = None
        if image is not None:
            image_path, image_url = self._ingest_image(entry, image)

        job = self._dispatcher.dispatch(entry, image_url=image_url)
        self._metrics.increment("intake_accepted")
        logger.info(
            "intake_accepted",
            extra={"entry_id": entry.entry_id, "job_id": job.job_id},
        )
        return IntakeResult(
            entry_id=entry.entry_id, image_path=image_path, audio_path=audio_path
        )

    def _authenticate(self, token: Optional[str]) -> str:
        if not token or not token.strip():
            raise Unauthorized("missing bearer token")
        try:
            user = self._credentials.authenticate(token.strip())
        except CredentialError as exc:
            raise Unauthorized(str(exc)) from exc
        return user.user_id

    def _validate_uploads(
        self, request: IntakeRequest
    ) -> Tuple[Optional[UploadedMedia], Optional[UploadedMedia]]:
        image = None
        audio = None
        if request.image is not None:
            image = self._uploads.validate(
                "image",
                request.image.data,
                media_type=request.image.media_type,
                filename=request.image.filename,
            )
        if request.audio is not None:
            audio = self._uploads.validate(
                "audio",
                request.audio.data,
                media_type=request.audio.media_type,
                filename=request.audio.filename,
            )
        return image, audio

    def _ingest_audio(
        self, entry: Entry, audio: UploadedMedia, text: Optional[str]
    ) -> Tuple[str, Entry]:
        path = self._upload(entry, audio, bucket=self._storage.audio_bucket)
        entry = self._entries.record_upload(entry.entry_id, kind="audio", path=path)
        transcript = self._transcriber.transcribe(audio)
        raw_text = "\n".join(part for part in (text, transcript) if part)
        if raw_text:
            entry = self._entries.update_raw_text(entry.entry_id, raw_text=raw_text)
        logger.info(
            "intake_audio_transcribed",
            extra={"entry_id": entry.entry_id, "chars": len(transcript)},
        )
        return path, entry

    def _ingest_image(self, entry: Entry, image: UploadedMedia) -> Tuple[str, str]:
        path = self._upload(entry, image, bucket=self._storage.image_bucket)
        self._entries.record_upload(entry.entry_id, kind="image", path=path)
        url = self._object_store.create_signed_url(
            self._storage.image_bucket,
            path,
            expires_in=self._storage.signed_url_ttl_seconds,
        )
        return path, url

    def _upload(self, entry: Entry, media: UploadedMedia, *, bucket: str) -> str:
        path = build_object_path(
            entry.user_id,
            entry.entry_id,
            media.kind,
            int(self._clock() * 1000),
            media.extension,
        )
        self._object_store.put_object(
            bucket, path, media.data, content_type=media.media_type
        )
        logger.debug(
            "intake_upload_stored",
            extra={"entry_id": entry.entry_id, "kind": media.kind, "bytes": media.size},
        )
        return path

    def _local_day(self, zone: ZoneInfo) -> date:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc).astimezone(zone).date()
