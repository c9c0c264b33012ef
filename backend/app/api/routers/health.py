"""System health endpoint."""

from typing import Any

from fastapi import APIRouter, Depends

from ...api.dependencies import get_settings
from ...config import Settings
from ...infra.metrics import get_metrics_client

router = APIRouter(prefix="/api", tags=["health"])


@router.get("/healthz")
def healthcheck(settings: Settings = Depends(get_settings)) -> dict[str, Any]:
    """Return coarse-grained backend readiness information."""

    return {
        "status": "ok",
        "environment": settings.environment,
        "storageBackend": settings.storage.backend,
        "inferenceProvider": settings.inference.provider,
        "transcriptionProvider": settings.transcription.provider,
        "webhookVerification": settings.webhook_verification_enabled,
        "counters": get_metrics_client().snapshot()["counters"],
    }
