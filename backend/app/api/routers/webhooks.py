"""Inference provider webhook endpoint."""

from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException, Request, status
from starlette.concurrency import run_in_threadpool

from ...api.dependencies import get_webhook_receiver
from ...domain.webhook.receiver import WebhookPayloadError, WebhookReceiver
from ...domain.webhook.signature import WebhookSignatureError
from ...infra.logging import get_logger

router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])
logger = get_logger(__name__)


@router.post("/inference", summary="Receive inference job notifications")
async def receive_inference_webhook(
    request: Request,
    receiver: WebhookReceiver = Depends(get_webhook_receiver),
) -> Dict[str, Any]:
    raw_body = await request.body()
    try:
        outcome = await run_in_threadpool(
            receiver.handle, raw_body, dict(request.headers)
        )
    except WebhookSignatureError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={
                "error_code": "invalid_signature",
                "message": "Webhook signature verification failed",
                "details": {},
            },
        ) from exc
    except WebhookPayloadError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"error_code": "invalid_payload", "message": str(exc), "details": {}},
        ) from exc
    return outcome.to_dict()
