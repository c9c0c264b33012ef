"""Start background inference jobs for entries."""

from __future__ import annotations

from typing import Optional, Set

from ...config.loader import InferenceConfig, StorageConfig
from ...infra.llm_gateway.inference_client import (
    InferenceJob,
    InferenceProvider,
    InferenceRequest,
)
from ...infra.logging import get_logger
from ...infra.object_store import ObjectStore
from ..entrystore.gateway import EntryStoreGateway
from ..entrystore.models import PIPELINE_EVENTS_KEY, Entry
from .prompt import (
    RELAXED_INSTRUCTIONS,
    SYSTEM_INSTRUCTIONS,
    build_user_text,
    relaxed_response_format,
    strict_response_format,
)

__all__ = [
    "FIRST_ATTEMPT",
    "RELAXED_ATTEMPT",
    "InferenceDispatcher",
    "dispatched_attempts",
]

logger = get_logger(__name__)

FIRST_ATTEMPT = 1
RELAXED_ATTEMPT = 2
DISPATCH_EVENT = "inference_dispatched"


class InferenceDispatcher:
    """Builds inference requests from entries and submits them."""

    def __init__(
        self,
        *,
        provider: InferenceProvider,
        entry_gateway: EntryStoreGateway,
        object_store: ObjectStore,
        inference_config: InferenceConfig,
        storage_config: StorageConfig,
    ) -> None:
        self._provider = provider
        self._entries = entry_gateway
        self._object_store = object_store
        self._inference = inference_config
        self._storage = storage_config

    def dispatch(self, entry: Entry, *, image_url: Optional[str] = None) -> InferenceJob:
        """Submit the strict-schema first attempt."""

        request = self._build_request(
            entry,
            image_url=image_url,
            attempt=FIRST_ATTEMPT,
            relaxed=False,
        )
        return self._submit(entry, request, attempt=FIRST_ATTEMPT, relaxed=False)

    def dispatch_relaxed_retry(self, entry_id: str) -> InferenceJob:
        """Submit the single relaxed-schema retry for ``entry_id``.

        The image URL minted at intake has expired by now, so a fresh one is
        signed from the stored path.
        """

        entry = self._entries.get_entry(entry_id)
        image_url = None
        if entry.image_path:
            image_url = self._object_store.create_signed_url(
                self._storage.image_bucket,
                entry.image_path,
                expires_in=self._storage.signed_url_ttl_seconds,
            )
        request = self._build_request(
            entry,
            image_url=image_url,
            attempt=RELAXED_ATTEMPT,
            relaxed=True,
        )
        return self._submit(entry, request, attempt=RELAXED_ATTEMPT, relaxed=True)

    def _build_request(
        self,
        entry: Entry,
        *,
        image_url: Optional[str],
        attempt: int,
        relaxed: bool,
    ) -> InferenceRequest:
        return InferenceRequest(
            model=self._inference.model,
            instructions=RELAXED_INSTRUCTIONS if relaxed else SYSTEM_INSTRUCTIONS,
            user_text=build_user_text(entry.raw_text),
            response_format=(
                relaxed_response_format() if relaxed else strict_response_format()
            ),
            metadata={
                "entry_id": entry.entry_id,
                "user_id": entry.user_id,
                "attempt": str(attempt),
            },
            image_url=image_url,
            reasoning_effort=self._inference.reasoning_effort,
        )

    def _submit(
        self,
        entry: Entry,
        request: InferenceRequest,
        *,
        attempt: int,
        relaxed: bool,
    ) -> InferenceJob:
        job = self._provider.submit(request)
        self._entries.record_pipeline_event(
            entry.entry_id,
            event_type=DISPATCH_EVENT,
            data={
                "job_id": job.job_id,
                "attempt": attempt,
                "model": request.model,
                "relaxed": relaxed,
                "has_image": request.image_url is not None,
            },
        )
        logger.info(
            "inference_dispatched",
            extra={
                "entry_id": entry.entry_id,
                "job_id": job.job_id,
                "attempt": attempt,
                "relaxed": relaxed,
            },
        )
        return job


def dispatched_attempts(entry: Entry) -> Set[int]:
    """Attempt numbers already submitted for ``entry``, from its pipeline events."""

    attempts: Set[int] = set()
    for event in entry.metadata.get(PIPELINE_EVENTS_KEY) or []:
        if not isinstance(event, dict) or event.get("type") != DISPATCH_EVENT:
            continue
        data = event.get("data") or {}
        try:
            attempts.add(int(data.get("attempt")))
        except (TypeError, ValueError):
            continue
    return attempts
