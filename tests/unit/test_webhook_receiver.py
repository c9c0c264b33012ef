"""Tests for the inference webhook receiver and its HTTP endpoint."""

from __future__ import annotations

import json

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from backend.app.api.dependencies import get_webhook_receiver
from backend.app.api.routers import webhooks
from backend.app.domain.entrystore.states import ENTRY_STATUS
from backend.app.domain.intake.service import IntakeRequest
from backend.app.domain.webhook.receiver import WebhookPayloadError
from backend.app.domain.webhook.signature import WebhookSignatureError
from backend.app.infra.llm_gateway.inference_client import InferenceJob
from tests.helpers.pipeline_harness import (
    TEST_TOKEN,
    PipelineHarness,
    completed_event,
    sign_webhook,
)

pytestmark = [pytest.mark.webhook]

MEAL_PAYLOAD = {
    "items": [
        {
            "name": "chicken breast",
            "quantity": 150,
            "unit": "g",
            "macros": {"protein_g": 45, "carbs_g": 0, "fat_g": 5, "calories_kcal": 240},
            "confidence": 0.9,
        }
    ],
    "entry_macros": {"protein_g": 45, "carbs_g": 0, "fat_g": 5, "calories_kcal": 240},
    "notes": None,
}


@pytest.fixture()
def harness() -> PipelineHarness:
    return PipelineHarness(responder=lambda request: MEAL_PAYLOAD)


def _submit(harness: PipelineHarness, text: str = "grilled chicken") -> str:
    return harness.intake.submit(IntakeRequest(token=TEST_TOKEN, text=text)).entry_id


def _make_unparseable(harness: PipelineHarness, job_id: str) -> None:
    job = harness.provider.retrieve(job_id)
    harness.provider.put_job(
        InferenceJob(
            job_id=job.job_id,
            status="completed",
            metadata=job.metadata,
            raw={"id": job.job_id, "metadata": job.metadata, "output_text": "Looks tasty!"},
        )
    )


def test_completed_event_writes_macros(harness):
    entry_id = _submit(harness)
    job_id = harness.last_job_id()

    outcome = harness.deliver(job_id)

    assert outcome.status == "completed"
    assert outcome.entry_id == entry_id
    assert outcome.detail == {"macro_source": "entry_totals"}
    entry = harness.gateway.get_entry(entry_id)
    assert entry.status == ENTRY_STATUS.COMPLETE
    assert (entry.protein_g, entry.carbs_g, entry.fat_g, entry.calories_kcal) == (45, 0, 5, 240)
    assert entry.confidence == 0.9
    assert entry.processed_at is not None
    assert entry.model_output["raw_json"]["id"] == job_id
    assert harness.metrics.value("webhook_completed") == 1


def test_duplicate_delivery_is_idempotent(harness):
    entry_id = _submit(harness)
    job_id = harness.last_job_id()
    harness.deliver(job_id)
    first = harness.gateway.get_entry(entry_id)

    replay = harness.deliver(job_id)

    assert replay.status == "already_terminal"
    assert harness.gateway.get_entry(entry_id) == first


def test_other_event_types_are_ignored(harness):
    entry_id = _submit(harness)

    outcome = harness.deliver(harness.last_job_id(), event_type="response.in_progress")

    assert outcome.status == "ignored"
    assert outcome.detail == {"event_type": "response.in_progress"}
    assert harness.gateway.get_entry(entry_id).status == ENTRY_STATUS.PROCESSING
    assert harness.metrics.value("webhook_ignored") == 1


def test_event_without_job_id_is_ignored(harness):
    body = json.dumps({"type": "response.completed", "data": {}}).encode()

    outcome = harness.receiver.handle(body, sign_webhook(body))

    assert outcome.status == "ignored"
    assert outcome.detail == {"reason": "missing_job_id"}


def test_job_without_entry_metadata_is_ignored(harness):
    harness.provider.put_job(
        InferenceJob(job_id="resp_orphan", status="completed", metadata={}, raw={})
    )

    outcome = harness.deliver("resp_orphan")

    assert outcome.status == "ignored"
    assert outcome.detail == {"reason": "missing_entry_id"}


def test_unparseable_first_attempt_dispatches_one_relaxed_retry(harness):
    entry_id = _submit(harness)
    first_job = harness.last_job_id()
    _make_unparseable(harness, first_job)

    outcome = harness.deliver(first_job)

    assert outcome.status == "retry_dispatched"
    retry_job = outcome.detail["retry_job_id"]
    assert retry_job != first_job
    assert [req.metadata["attempt"] for req in harness.provider.requests] == ["1", "2"]
    assert harness.gateway.get_entry(entry_id).status == ENTRY_STATUS.PROCESSING

    completed = harness.deliver(retry_job)

    assert completed.status == "completed"
    assert harness.gateway.get_entry(entry_id).calories_kcal == 240


def test_unparseable_retry_completes_with_zero_macros(harness):
    entry_id = _submit(harness)
    first_job = harness.last_job_id()
    _make_unparseable(harness, first_job)
    retry_job = harness.deliver(first_job).detail["retry_job_id"]
    _make_unparseable(harness, retry_job)

    outcome = harness.deliver(retry_job)

    assert outcome.status == "completed"
    assert outcome.detail == {"macro_source": "none"}
    assert len(harness.provider.requests) == 2
    entry = harness.gateway.get_entry(entry_id)
    assert entry.status == ENTRY_STATUS.COMPLETE
    assert entry.calories_kcal == 0
    assert entry.confidence is None
    assert entry.model_output["raw_text"] == "Looks tasty!"


def test_redelivered_first_attempt_does_not_dispatch_a_second_retry(harness):
    entry_id = _submit(harness)
    first_job = harness.last_job_id()
    _make_unparseable(harness, first_job)
    retry_job = harness.deliver(first_job).detail["retry_job_id"]

    replay = harness.deliver(first_job)

    assert replay.status == "already_retried"
    assert replay.entry_id == entry_id
    assert [req.metadata["attempt"] for req in harness.provider.requests] == ["1", "2"]
    assert harness.metrics.value("webhook_retry_dispatched") == 1
    assert harness.metrics.value("webhook_duplicate") == 1

    assert harness.deliver(retry_job).status == "completed"
    late = harness.deliver(first_job)

    assert late.status == "already_terminal"
    assert len(harness.provider.requests) == 2
    assert harness.gateway.get_entry(entry_id).calories_kcal == 240


def test_job_that_has_not_completed_is_ignored(harness):
    entry_id = _submit(harness)
    job = harness.provider.retrieve(harness.last_job_id())
    harness.provider.put_job(
        InferenceJob(
            job_id=job.job_id,
            status="in_progress",
            metadata=job.metadata,
            raw={"id": job.job_id, "status": "in_progress", "metadata": job.metadata},
        )
    )

    outcome = harness.deliver(job.job_id)

    assert outcome.status == "ignored"
    assert outcome.entry_id == entry_id
    assert outcome.detail == {"reason": "job_not_completed", "job_status": "in_progress"}
    assert len(harness.provider.requests) == 1
    assert harness.gateway.get_entry(entry_id).status == ENTRY_STATUS.PROCESSING
    assert harness.metrics.value("webhook_ignored") == 1


def test_relaxed_retry_can_be_disabled():
    harness = PipelineHarness(responder=lambda request: MEAL_PAYLOAD, relaxed_retry=False)
    entry_id = _submit(harness)
    job_id = harness.last_job_id()
    _make_unparseable(harness, job_id)

    outcome = harness.deliver(job_id)

    assert outcome.status == "completed"
    assert len(harness.provider.requests) == 1
    assert harness.gateway.get_entry(entry_id).status == ENTRY_STATUS.COMPLETE


def test_provider_failure_is_acknowledged_as_failed(harness):
    outcome = harness.deliver("resp_unknown")

    assert outcome.status == "failed"
    assert outcome.job_id == "resp_unknown"
    assert harness.metrics.value("webhook_failed") == 1


def test_bad_signature_raises_and_counts(harness):
    body = completed_event("resp_1")
    headers = sign_webhook(body)

    with pytest.raises(WebhookSignatureError):
        harness.receiver.handle(body + b"\n", headers)

    assert harness.metrics.value("webhook_rejected") == 1


@pytest.mark.parametrize("body", [b"not json", b"[1, 2]"])
def test_invalid_payload_raises(harness, body):
    with pytest.raises(WebhookPayloadError):
        harness.receiver.handle(body, sign_webhook(body))


def test_unsigned_delivery_accepted_when_verification_disabled():
    harness = PipelineHarness(responder=lambda request: MEAL_PAYLOAD, secret=None)
    entry_id = _submit(harness)

    outcome = harness.receiver.handle(completed_event(harness.last_job_id()), {})

    assert outcome.status == "completed"
    assert outcome.entry_id == entry_id


@pytest.fixture()
def client(harness: PipelineHarness) -> TestClient:
    app = FastAPI()
    app.include_router(webhooks.router)
    app.dependency_overrides[get_webhook_receiver] = lambda: harness.receiver
    return TestClient(app)


def test_webhook_endpoint_completes_entry(client, harness):
    entry_id = _submit(harness)
    body = completed_event(harness.last_job_id())

    response = client.post(
        "/api/webhooks/inference",
        content=body,
        headers={**sign_webhook(body), "content-type": "application/json"},
    )

    assert response.status_code == 200
    assert response.json()["status"] == "completed"
    assert response.json()["entry_id"] == entry_id
    assert harness.gateway.get_entry(entry_id).status == ENTRY_STATUS.COMPLETE


def test_webhook_endpoint_rejects_bad_signature(client):
    body = completed_event("resp_1")
    headers = sign_webhook(body)
    headers["webhook-signature"] = "v1,AAAA"

    response = client.post("/api/webhooks/inference", content=body, headers=headers)

    assert response.status_code == 401
    assert response.json()["detail"]["error_code"] == "invalid_signature"


def test_webhook_endpoint_rejects_invalid_json(client):
    body = b"{not json"

    response = client.post("/api/webhooks/inference", content=body, headers=sign_webhook(body))

    assert response.status_code == 400
    assert response.json()["detail"]["error_code"] == "invalid_payload"


def test_webhook_endpoint_acknowledges_processing_failure(client):
    body = completed_event("resp_missing")

    response = client.post("/api/webhooks/inference", content=body, headers=sign_webhook(body))

    assert response.status_code == 200
    assert response.json() == {"status": "failed", "job_id": "resp_missing"}
