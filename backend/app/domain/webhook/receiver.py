"""Provider webhook handling: verify, resolve the job, normalize, complete."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional

from ...infra.llm_gateway.inference_client import InferenceJob, InferenceProvider
from ...infra.logging import get_logger
from ...infra.metrics import MetricsClient, get_metrics_client
from ..completion.writer import CompletionWriter
from ..entrystore.gateway import EntryStoreGateway
from ..entrystore.states import is_terminal
from ..intake.dispatch import (
    FIRST_ATTEMPT,
    RELAXED_ATTEMPT,
    InferenceDispatcher,
    dispatched_attempts,
)
from ..normalizer import NormalizedResult, normalize_inference_output
from .signature import WebhookSignatureError, verify_webhook_signature

__all__ = [
    "COMPLETED_EVENT",
    "WebhookOutcome",
    "WebhookPayloadError",
    "WebhookReceiver",
]

logger = get_logger(__name__)

COMPLETED_EVENT = "response.completed"


class WebhookPayloadError(Exception):
    """The verified body is not a JSON object; answered with 400."""


@dataclass(frozen=True)
class WebhookOutcome:
    """Acknowledgement returned to the provider (always HTTP 200)."""

    status: str
    entry_id: Optional[str] = None
    job_id: Optional[str] = None
    detail: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"status": self.status}
        if self.entry_id:
            body["entry_id"] = self.entry_id
        if self.job_id:
            body["job_id"] = self.job_id
        body.update(self.detail)
        return body


class WebhookReceiver:
    """Turns a verified ``response.completed`` delivery into a terminal write.

    The request body is only a completion signal: the job is re-fetched from
    the provider and the entry id comes from the job's own metadata.
    """

    def __init__(
        self,
        *,
        provider: InferenceProvider,
        entry_gateway: EntryStoreGateway,
        writer: CompletionWriter,
        dispatcher: InferenceDispatcher,
        secret: Optional[str],
        relaxed_retry: bool = True,
        metrics: MetricsClient | None = None,
    ) -> None:
        self._provider = provider
        self._entries = entry_gateway
        self._writer = writer
        self._dispatcher = dispatcher
        self._secret = secret
        self._relaxed_retry = relaxed_retry
        self._metrics = metrics or get_metrics_client()
        if not secret:
            logger.warning("webhook_signature_verification_disabled")

    def handle(self, raw_body: bytes, headers: Mapping[str, str]) -> WebhookOutcome:
        try:
            scheme = verify_webhook_signature(raw_body, headers, self._secret)
        except WebhookSignatureError as exc:
            self._metrics.increment("webhook_rejected")
            logger.warning("webhook_signature_rejected", extra={"reason": str(exc)})
            raise

        event = _parse_event(raw_body)
        event_type = str(event.get("type") or event.get("event") or "")
        job_id = _event_job_id(event)
        logger.info(
            "webhook_received",
            extra={"event_type": event_type, "job_id": job_id, "scheme": scheme},
        )

        if event_type and event_type != COMPLETED_EVENT:
            self._metrics.increment("webhook_ignored")
            return WebhookOutcome(status="ignored", job_id=job_id, detail={"event_type": event_type})
        if not job_id:
            self._metrics.increment("webhook_ignored")
            logger.warning("webhook_missing_job_id", extra={"event_type": event_type})
            return WebhookOutcome(status="ignored", detail={"reason": "missing_job_id"})

        try:
            return self._process(job_id)
        except Exception:
            self._metrics.increment("webhook_failed")
            logger.exception("webhook_processing_failed", extra={"job_id": job_id})
            return WebhookOutcome(status="failed", job_id=job_id)

    def _process(self, job_id: str) -> WebhookOutcome:
        job = self._provider.retrieve(job_id)
        entry_id = _job_entry_id(job)
        if not entry_id:
            self._metrics.increment("webhook_ignored")
            logger.error("webhook_job_missing_entry_id", extra={"job_id": job_id})
            return WebhookOutcome(status="ignored", job_id=job_id, detail={"reason": "missing_entry_id"})
        if not job.is_completed:
            self._metrics.increment("webhook_ignored")
            logger.warning(
                "webhook_job_not_completed",
                extra={"entry_id": entry_id, "job_id": job_id, "job_status": job.status},
            )
            return WebhookOutcome(
                status="ignored",
                entry_id=entry_id,
                job_id=job_id,
                detail={"reason": "job_not_completed", "job_status": job.status},
            )

        result = normalize_inference_output(job.raw)
        attempt = _job_attempt(job)
        if not result.structured and attempt == FIRST_ATTEMPT and self._relaxed_retry:
            return self._retry_relaxed(entry_id, job_id, result)

        outcome = self._writer.complete(entry_id, result, raw_json=job.raw)
        self._metrics.increment("webhook_completed")
        return WebhookOutcome(
            status="completed" if outcome.applied else "already_terminal",
            entry_id=entry_id,
            job_id=job_id,
            detail={"macro_source": result.source},
        )

    def _retry_relaxed(
        self, entry_id: str, job_id: str, result: NormalizedResult
    ) -> WebhookOutcome:
        # Providers redeliver; at most one relaxed job per entry, none once finished.
        entry = self._entries.get_entry(entry_id)
        if is_terminal(entry.status):
            self._metrics.increment("webhook_duplicate")
            return WebhookOutcome(
                status="already_terminal",
                entry_id=entry_id,
                job_id=job_id,
                detail={"macro_source": result.source},
            )
        if RELAXED_ATTEMPT in dispatched_attempts(entry):
            self._metrics.increment("webhook_duplicate")
            logger.info(
                "webhook_relaxed_retry_already_dispatched",
                extra={"entry_id": entry_id, "job_id": job_id},
            )
            return WebhookOutcome(status="already_retried", entry_id=entry_id, job_id=job_id)

        retry = self._dispatcher.dispatch_relaxed_retry(entry_id)
        self._metrics.increment("webhook_retry_dispatched")
        logger.info(
            "webhook_relaxed_retry_dispatched",
            extra={"entry_id": entry_id, "job_id": job_id, "retry_job_id": retry.job_id},
        )
        return WebhookOutcome(
            status="retry_dispatched",
            entry_id=entry_id,
            job_id=job_id,
            detail={"retry_job_id": retry.job_id},
        )


def _parse_event(raw_body: bytes) -> Dict[str, Any]:
    try:
        event = json.loads(raw_body)
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise WebhookPayloadError("webhook body is not valid JSON") from exc
    if not isinstance(event, dict):
        raise WebhookPayloadError("webhook body must be a JSON object")
    return event


def _event_job_id(event: Mapping[str, Any]) -> Optional[str]:
    for container_key in ("data", "response"):
        container = event.get(container_key)
        if isinstance(container, Mapping) and container.get("id"):
            return str(container["id"])
    value = event.get("id")
    return str(value) if value else None


def _job_entry_id(job: InferenceJob) -> Optional[str]:
    metadata = job.metadata or {}
    value = metadata.get("entry_id") or metadata.get("entryId")
    return str(value) if value else None


def _job_attempt(job: InferenceJob) -> int:
    raw = (job.metadata or {}).get("attempt")
    try:
        return int(raw) if raw is not None else FIRST_ATTEMPT
    except (TypeError, ValueError):
        return FIRST_ATTEMPT
