"""Entry intake, status and detail endpoints."""

from __future__ import annotations

from datetime import date, datetime
from typing import Annotated, Any, Dict, Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, Path, UploadFile, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from ...api.dependencies import (
    get_bearer_token,
    get_credential_provider,
    get_entry_gateway,
    get_intake_handler,
    get_settings,
)
from ...config import Settings
from ...domain.entrystore.gateway import EntryStoreGateway
from ...domain.entrystore.models import Entry
from ...domain.intake.errors import IntakeError
from ...domain.intake.service import IntakeHandler, IntakeRequest, RawUpload
from ...infra.credentials import CredentialError, CredentialProvider
from ...infra.logging import get_logger

router = APIRouter(prefix="/api/entries", tags=["entries"])
logger = get_logger(__name__)

EntryId = Annotated[str, Path(..., min_length=1, max_length=64)]


class IntakeResponse(BaseModel):
    entry_id: str
    image_path: Optional[str] = None
    audio_path: Optional[str] = None


class EntryStatusResponse(BaseModel):
    id: str
    status: str
    protein_g: Optional[float] = None
    carbs_g: Optional[float] = None
    fat_g: Optional[float] = None
    calories_kcal: Optional[float] = None
    raw_text: Optional[str] = None


class EntryDetailResponse(BaseModel):
    id: str
    user_id: str
    status: str
    raw_text: Optional[str] = None
    has_text: bool = False
    has_image: bool = False
    has_audio: bool = False
    image_path: Optional[str] = None
    audio_path: Optional[str] = None
    protein_g: Optional[float] = None
    carbs_g: Optional[float] = None
    fat_g: Optional[float] = None
    calories_kcal: Optional[float] = None
    confidence: Optional[float] = None
    model_output: Optional[Dict[str, Any]] = None
    processed_at: Optional[datetime] = None
    local_day: date
    timezone_snapshot: str
    metadata: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[Dict[str, Any]] = None
    created_at: datetime
    updated_at: datetime


@router.post("", response_model=IntakeResponse, summary="Submit a meal entry")
def submit_entry(
    timezone: Optional[str] = Form(None),
    text: Optional[str] = Form(None),
    image: Optional[UploadFile] = File(None),
    audio: Optional[UploadFile] = File(None),
    token: Optional[str] = Depends(get_bearer_token),
    settings: Settings = Depends(get_settings),
    handler: IntakeHandler = Depends(get_intake_handler),
):
    request = IntakeRequest(
        token=token,
        text=text,
        timezone=timezone,
        image=_read_upload(image, limit=settings.uploads.image.max_bytes),
        audio=_read_upload(audio, limit=settings.uploads.audio.max_bytes),
    )
    try:
        result = handler.submit(request)
    except IntakeError as exc:
        raise _http_error(
            exc.status_code, exc.error_code, exc.message, details=exc.details
        ) from exc
    except Exception as exc:
        logger.exception("intake_failed", extra={"error_type": type(exc).__name__})
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": str(exc) or type(exc).__name__},
        )
    return IntakeResponse(
        entry_id=result.entry_id,
        image_path=result.image_path,
        audio_path=result.audio_path,
    )


@router.get(
    "/{entry_id}/status",
    response_model=EntryStatusResponse,
    summary="Poll an entry's status",
)
def get_entry_status(
    entry_id: EntryId,
    token: Optional[str] = Depends(get_bearer_token),
    credentials: CredentialProvider = Depends(get_credential_provider),
    entry_gateway: EntryStoreGateway = Depends(get_entry_gateway),
) -> EntryStatusResponse:
    entry = _owned_entry(entry_id, token, credentials, entry_gateway)
    return EntryStatusResponse(**entry.status_snapshot())


@router.get(
    "/{entry_id}",
    response_model=EntryDetailResponse,
    summary="Retrieve entry detail",
)
def get_entry_detail(
    entry_id: EntryId,
    token: Optional[str] = Depends(get_bearer_token),
    credentials: CredentialProvider = Depends(get_credential_provider),
    entry_gateway: EntryStoreGateway = Depends(get_entry_gateway),
) -> EntryDetailResponse:
    entry = _owned_entry(entry_id, token, credentials, entry_gateway)
    return _serialize_entry_detail(entry)


def _read_upload(upload: Optional[UploadFile], *, limit: int) -> Optional[RawUpload]:
    """Read at most ``limit + 1`` bytes; an empty part counts as absent."""

    if upload is None:
        return None
    data = upload.file.read(limit + 1)
    if not data:
        return None
    return RawUpload(data=data, media_type=upload.content_type, filename=upload.filename)


def _owned_entry(
    entry_id: str,
    token: Optional[str],
    credentials: CredentialProvider,
    entry_gateway: EntryStoreGateway,
) -> Entry:
    if not token:
        raise _http_error(status.HTTP_401_UNAUTHORIZED, "unauthorized", "Missing bearer token")
    try:
        user = credentials.authenticate(token)
    except CredentialError as exc:
        raise _http_error(
            status.HTTP_401_UNAUTHORIZED, "unauthorized", str(exc)
        ) from exc
    try:
        entry = entry_gateway.get_entry(entry_id)
    except KeyError as exc:
        raise _not_found(entry_id) from exc
    if entry.user_id != user.user_id:
        raise _not_found(entry_id)
    return entry


def _serialize_entry_detail(entry: Entry) -> EntryDetailResponse:
    return EntryDetailResponse(
        id=entry.entry_id,
        user_id=entry.user_id,
        status=entry.status,
        raw_text=entry.raw_text,
        has_text=entry.has_text,
        has_image=entry.has_image,
        has_audio=entry.has_audio,
        image_path=entry.image_path,
        audio_path=entry.audio_path,
        protein_g=entry.protein_g,
        carbs_g=entry.carbs_g,
        fat_g=entry.fat_g,
        calories_kcal=entry.calories_kcal,
        confidence=entry.confidence,
        model_output=entry.model_output,
        processed_at=entry.processed_at,
        local_day=entry.local_day,
        timezone_snapshot=entry.timezone_snapshot,
        metadata=dict(entry.metadata or {}),
        error=entry.error,
        created_at=entry.created_at,
        updated_at=entry.updated_at,
    )


def _http_error(
    status_code: int,
    error_code: str,
    message: str,
    *,
    details: Optional[Dict[str, object]] = None,
) -> HTTPException:
    return HTTPException(
        status_code=status_code,
        detail={"error_code": error_code, "message": message, "details": details or {}},
    )


def _not_found(entry_id: str) -> HTTPException:
    return _http_error(
        status.HTTP_404_NOT_FOUND,
        "not_found",
        f"Entry '{entry_id}' not found",
        details={"entry_id": entry_id},
    )
