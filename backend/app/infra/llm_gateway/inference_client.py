"""Background inference jobs against the OpenAI Responses API."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Protocol
from uuid import uuid4

import openai

from ...config.loader import InferenceConfig
from . import translate_openai_error

logger = logging.getLogger(__name__)

__all__ = [
    "InferenceGatewayError",
    "InferenceJob",
    "InferenceProvider",
    "InferenceRequest",
    "OpenAIResponsesProvider",
    "StubInferenceProvider",
    "build_inference_provider",
]


class InferenceGatewayError(RuntimeError):
    """Raised when a job cannot be dispatched or retrieved."""

    def __init__(self, message: str, *, code: str, retryable: bool) -> None:
        super().__init__(message)
        self.code = code
        self.retryable = retryable


@dataclass(frozen=True)
class InferenceRequest:
    """Everything needed to start one asynchronous inference job."""

    model: str
    instructions: str
    user_text: str
    response_format: Dict[str, Any]
    metadata: Dict[str, str]
    image_url: Optional[str] = None
    reasoning_effort: Optional[str] = None

    def input_messages(self) -> List[Dict[str, Any]]:
        content: List[Dict[str, Any]] = [{"type": "input_text", "text": self.user_text}]
        if self.image_url:
            content.append({"type": "input_image", "image_url": self.image_url})
        return [{"role": "user", "content": content}]


@dataclass(frozen=True)
class InferenceJob:
    """Provider view of a job; ``raw`` is the full response document."""

    job_id: str
    status: str
    metadata: Dict[str, str] = field(default_factory=dict)
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_completed(self) -> bool:
        return self.status == "completed"


class InferenceProvider(Protocol):  # pragma: no cover
    def submit(self, request: InferenceRequest) -> InferenceJob: ...

    def retrieve(self, job_id: str) -> InferenceJob: ...


class OpenAIResponsesProvider:
    """Dispatches background Responses jobs; completion arrives via webhook."""

    def __init__(
        self,
        *,
        api_key: Optional[str] = None,
        timeout_seconds: float = 30.0,
        client: Optional[Any] = None,
    ) -> None:
        self._client = client or openai.OpenAI(api_key=api_key, timeout=timeout_seconds)

    def submit(self, request: InferenceRequest) -> InferenceJob:
        params: Dict[str, Any] = {
            "model": request.model,
            "instructions": request.instructions,
            "input": request.input_messages(),
            "background": True,
            "metadata": dict(request.metadata),
            "text": {"format": request.response_format},
        }
        if request.reasoning_effort:
            params["reasoning"] = {"effort": request.reasoning_effort}
        try:
            response = self._client.responses.create(**params)
        except openai.OpenAIError as exc:
            raise translate_openai_error(exc, error_cls=InferenceGatewayError) from exc
        job = _response_to_job(response)
        logger.info(
            "inference_job_submitted",
            extra={"job_id": job.job_id, "model": request.model, "status": job.status},
        )
        return job

    def retrieve(self, job_id: str) -> InferenceJob:
        try:
            response = self._client.responses.retrieve(job_id)
        except openai.NotFoundError as exc:
            raise InferenceGatewayError(
                f"inference job {job_id} not found", code="job_not_found", retryable=False
            ) from exc
        except openai.OpenAIError as exc:
            raise translate_openai_error(exc, error_cls=InferenceGatewayError) from exc
        return _response_to_job(response)


Responder = Callable[[InferenceRequest], Dict[str, Any]]


def _zero_payload(request: InferenceRequest) -> Dict[str, Any]:
    return {
        "items": [],
        "entry_macros": {
            "protein_g": 0,
            "carbs_g": 0,
            "fat_g": 0,
            "calories_kcal": 0,
        },
        "notes": "stub inference provider",
    }


class StubInferenceProvider:
    """In-process provider for development and tests.

    Jobs complete immediately with the payload returned by ``responder``;
    nothing calls the webhook, so tests drive the receiver directly.
    """

    def __init__(self, responder: Optional[Responder] = None) -> None:
        self._responder = responder or _zero_payload
        self._jobs: Dict[str, InferenceJob] = {}
        self.requests: List[InferenceRequest] = []

    def submit(self, request: InferenceRequest) -> InferenceJob:
        self.requests.append(request)
        job_id = f"resp_stub_{uuid4().hex}"
        payload = self._responder(request)
        job = InferenceJob(
            job_id=job_id,
            status="completed",
            metadata=dict(request.metadata),
            raw={
                "id": job_id,
                "status": "completed",
                "model": request.model,
                "metadata": dict(request.metadata),
                "output_text": json.dumps(payload),
            },
        )
        self._jobs[job_id] = job
        return job

    @property
    def jobs(self) -> List[InferenceJob]:
        return list(self._jobs.values())

    def put_job(self, job: InferenceJob) -> None:
        self._jobs[job.job_id] = job

    def retrieve(self, job_id: str) -> InferenceJob:
        job = self._jobs.get(job_id)
        if job is None:
            raise InferenceGatewayError(
                f"inference job {job_id} not found", code="job_not_found", retryable=False
            )
        return job


def build_inference_provider(config: InferenceConfig) -> InferenceProvider:
    if config.provider == "openai":
        return OpenAIResponsesProvider(
            api_key=config.api_key, timeout_seconds=config.timeout_seconds
        )
    if config.provider != "stub":
        logger.warning(
            "inference_provider_unimplemented", extra={"provider": config.provider}
        )
    return StubInferenceProvider()


def _response_to_job(response: Any) -> InferenceJob:
    raw: Dict[str, Any] = response.model_dump(mode="json")
    output_text = getattr(response, "output_text", None)
    if output_text and "output_text" not in raw:
        raw["output_text"] = output_text
    metadata = {str(key): str(value) for key, value in (raw.get("metadata") or {}).items()}
    return InferenceJob(
        job_id=str(raw.get("id")),
        status=str(raw.get("status") or "unknown"),
        metadata=metadata,
        raw=raw,
    )
