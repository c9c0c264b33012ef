"""Tests for the intake handler and the inference dispatcher."""

from __future__ import annotations

from datetime import date, datetime, timedelta, timezone

import pytest

from backend.app.domain.entrystore.states import ENTRY_STATUS
from backend.app.domain.intake import service as intake_service
from backend.app.domain.intake.errors import (
    PayloadTooLarge,
    Unauthorized,
    UnsupportedMediaType,
)
from backend.app.domain.intake.prompt import SCHEMA_NAME
from backend.app.domain.intake.service import (
    IntakeRequest,
    RawUpload,
    build_object_path,
    resolve_timezone,
)
from backend.app.infra.llm_gateway import TranscriptionGatewayError
from tests.helpers.logging import RecordingLogger, assert_extra_contains, find_log
from tests.helpers.pipeline_harness import FIXED_NOW, TEST_TOKEN, TEST_USER, PipelineHarness

pytestmark = [pytest.mark.intake]

FIXED_MILLIS = int(FIXED_NOW * 1000)


@pytest.fixture()
def harness() -> PipelineHarness:
    return PipelineHarness()


def test_text_only_submission_creates_entry_and_dispatches(harness):
    result = harness.intake.submit(
        IntakeRequest(token=TEST_TOKEN, text="  chicken salad  ", timezone="Europe/Rome")
    )

    entry = harness.gateway.get_entry(result.entry_id)
    assert entry.user_id == TEST_USER
    assert entry.status == ENTRY_STATUS.PROCESSING
    assert entry.raw_text == "chicken salad"
    assert entry.timezone_snapshot == "Europe/Rome"
    assert entry.local_day == date(2026, 10, 19)
    assert result.image_path is None and result.audio_path is None

    [request] = harness.provider.requests
    assert request.metadata == {"entry_id": entry.entry_id, "user_id": TEST_USER, "attempt": "1"}
    assert request.response_format["type"] == "json_schema"
    assert request.response_format["name"] == SCHEMA_NAME
    assert request.response_format["strict"] is True
    assert request.image_url is None
    assert request.user_text.endswith("chicken salad")

    events = entry.metadata["pipeline_events"]
    assert events[-1]["type"] == "inference_dispatched"
    assert events[-1]["data"]["job_id"] == harness.last_job_id()
    assert harness.metrics.value("intake_accepted") == 1


def test_image_upload_is_stored_and_signed_for_inference(harness):
    result = harness.intake.submit(
        IntakeRequest(
            token=TEST_TOKEN,
            image=RawUpload(data=b"jpeg-bytes", media_type="image/jpeg", filename="lunch.jpg"),
        )
    )

    expected_path = f"user/{TEST_USER}/entry/{result.entry_id}/image_{FIXED_MILLIS}.jpg"
    assert result.image_path == expected_path
    assert harness.object_store.objects[("entry-images", expected_path)] == (
        b"jpeg-bytes",
        "image/jpeg",
    )
    entry = harness.gateway.get_entry(result.entry_id)
    assert entry.has_image is True
    assert entry.has_text is False
    assert entry.image_path == expected_path

    [request] = harness.provider.requests
    assert request.image_url.startswith(f"memory://objects/entry-images/{expected_path}")
    content = request.input_messages()[0]["content"]
    assert content[-1] == {"type": "input_image", "image_url": request.image_url}


def test_audio_transcript_is_appended_to_typed_text(harness):
    harness.transcriber.transcript = "and a flat white"
    result = harness.intake.submit(
        IntakeRequest(
            token=TEST_TOKEN,
            text="croissant",
            audio=RawUpload(data=b"m4a-bytes", media_type="audio/m4a", filename="note.m4a"),
        )
    )

    entry = harness.gateway.get_entry(result.entry_id)
    assert entry.raw_text == "croissant\nand a flat white"
    assert entry.has_audio is True
    assert result.audio_path == f"user/{TEST_USER}/entry/{result.entry_id}/audio_{FIXED_MILLIS}.m4a"
    assert len(harness.transcriber.calls) == 1
    [request] = harness.provider.requests
    assert request.user_text.endswith("croissant\nand a flat white")


def test_audio_only_uses_transcript_as_text(harness):
    result = harness.intake.submit(
        IntakeRequest(
            token=TEST_TOKEN,
            audio=RawUpload(data=b"mp3", media_type="audio/mpeg", filename="memo.mp3"),
        )
    )

    assert harness.gateway.get_entry(result.entry_id).raw_text == "two eggs and toast"


def test_missing_token_is_unauthorized_and_creates_nothing(harness):
    with pytest.raises(Unauthorized):
        harness.intake.submit(IntakeRequest(token=None, text="soup"))

    with pytest.raises(Unauthorized):
        harness.intake.submit(IntakeRequest(token="nope", text="soup"))

    assert harness.gateway.find_stale_entries(older_than=_far_future()) == []
    assert harness.provider.requests == []
    assert harness.metrics.value("intake_rejected.unauthorized") == 2


def test_oversized_image_is_rejected_before_entry_creation(harness):
    too_big = b"x" * (6 * 1024 * 1024 + 1)

    with pytest.raises(PayloadTooLarge):
        harness.intake.submit(
            IntakeRequest(
                token=TEST_TOKEN,
                text="pasta",
                image=RawUpload(data=too_big, media_type="image/jpeg"),
            )
        )

    assert harness.gateway.find_stale_entries(older_than=_far_future()) == []
    assert harness.object_store.objects == {}
    assert harness.provider.requests == []


def test_unsupported_audio_type_is_rejected(harness):
    with pytest.raises(UnsupportedMediaType):
        harness.intake.submit(
            IntakeRequest(
                token=TEST_TOKEN,
                audio=RawUpload(data=b"riff", media_type="video/avi"),
            )
        )

    assert harness.transcriber.calls == []


def test_transcription_failure_propagates_and_entry_stays_processing(harness):
    harness.transcriber.error = TranscriptionGatewayError(
        "upstream down", code="llm_unavailable", retryable=True
    )

    with pytest.raises(TranscriptionGatewayError):
        harness.intake.submit(
            IntakeRequest(
                token=TEST_TOKEN,
                audio=RawUpload(data=b"m4a", media_type="audio/m4a"),
            )
        )

    [entry] = harness.gateway.find_stale_entries(older_than=_far_future())
    assert entry.status == ENTRY_STATUS.PROCESSING
    assert entry.has_audio is True
    assert harness.provider.requests == []


def test_local_day_follows_submitted_timezone(harness):
    result = harness.intake.submit(
        IntakeRequest(token=TEST_TOKEN, text="late dinner", timezone="Pacific/Auckland")
    )

    entry = harness.gateway.get_entry(result.entry_id)
    assert entry.local_day == date(2026, 10, 20)


def test_unknown_timezone_falls_back_to_utc(harness, monkeypatch):
    recorder = RecordingLogger()
    monkeypatch.setattr(intake_service, "logger", recorder)

    result = harness.intake.submit(
        IntakeRequest(token=TEST_TOKEN, text="tea", timezone="Mars/Olympus_Mons")
    )

    entry = harness.gateway.get_entry(result.entry_id)
    assert entry.timezone_snapshot == "UTC"
    assert entry.local_day == date(2026, 10, 19)
    record = find_log(recorder.records, level="info", message="intake_timezone_unknown")
    assert_extra_contains(record, timezone="Mars/Olympus_Mons")
    accepted = find_log(recorder.records, level="info", message="intake_accepted")
    assert_extra_contains(accepted, entry_id=result.entry_id)


@pytest.mark.parametrize("name", [None, "", "   "])
def test_resolve_timezone_defaults(name):
    zone, label = resolve_timezone(name)

    assert label == "UTC"
    assert zone.key == "UTC"


def test_build_object_path():
    assert build_object_path("u1", "e1", "audio", 1234, "m4a") == "user/u1/entry/e1/audio_1234.m4a"


def test_relaxed_retry_resigns_stored_image(harness):
    result = harness.intake.submit(
        IntakeRequest(
            token=TEST_TOKEN,
            image=RawUpload(data=b"png", media_type="image/png", filename="a.png"),
        )
    )

    job = harness.dispatcher.dispatch_relaxed_retry(result.entry_id)

    first, retry = harness.provider.requests
    assert retry.metadata["attempt"] == "2"
    assert retry.response_format == {"type": "json_object"}
    assert retry.instructions != first.instructions
    assert retry.image_url is not None
    events = harness.gateway.get_entry(result.entry_id).metadata["pipeline_events"]
    assert events[-1]["data"]["job_id"] == job.job_id
    assert events[-1]["data"]["relaxed"] is True


def _far_future() -> datetime:
    return datetime.now(timezone.utc) + timedelta(days=1)
