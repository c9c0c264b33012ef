"""Tests for the stale entry reconciliation sweep."""

from __future__ import annotations

from datetime import date, datetime, timedelta, timezone

import pytest

from backend.app.domain.entrystore.gateway import InMemoryEntryStoreGateway
from backend.app.domain.entrystore.models import MacroValues
from backend.app.domain.entrystore.states import ENTRY_STATUS
from backend.app.infra.metrics import InMemoryMetricsClient
from backend.app.jobs import stale_entry_sweeper
from backend.app.jobs.stale_entry_sweeper import TIMEOUT_ERROR_CODE, sweep
from tests.helpers.logging import RecordingLogger, assert_extra_contains, find_log

pytestmark = [pytest.mark.completion]

LATER = datetime.now(timezone.utc) + timedelta(hours=2)


def _open_entry(gateway: InMemoryEntryStoreGateway) -> str:
    return gateway.create_entry(
        user_id="user-1", local_day=date(2026, 10, 19), timezone_snapshot="UTC"
    ).entry_id


class RacingGateway(InMemoryEntryStoreGateway):
    """Completes every stale entry right after it is looked up."""

    def find_stale_entries(self, *, older_than, limit=100):
        stale = super().find_stale_entries(older_than=older_than, limit=limit)
        for entry in stale:
            self.complete_entry(
                entry.entry_id,
                macros=MacroValues(1, 1, 1, 17),
                confidence=None,
                model_output=None,
            )
        return stale


def test_sweep_fails_open_entries_past_the_cutoff(monkeypatch):
    recorder = RecordingLogger()
    monkeypatch.setattr(stale_entry_sweeper, "logger", recorder)
    gateway = InMemoryEntryStoreGateway()
    stuck = _open_entry(gateway)
    done = _open_entry(gateway)
    gateway.complete_entry(done, macros=MacroValues(1, 1, 1, 17), confidence=None, model_output=None)
    metrics = InMemoryMetricsClient()

    report = sweep(
        entry_gateway=gateway, stale_after_seconds=900, batch_size=10, now=LATER, metrics=metrics
    )

    assert report.swept == [stuck]
    assert report.examined == 1
    entry = gateway.get_entry(stuck)
    assert entry.status == ENTRY_STATUS.ERROR
    assert entry.error["code"] == TIMEOUT_ERROR_CODE
    assert gateway.get_entry(done).status == ENTRY_STATUS.COMPLETE
    assert metrics.value("entries_swept") == 1
    record = find_log(recorder.records, level="info", message="stale_entry_sweep_finished")
    assert_extra_contains(record, examined=1, swept=1, skipped=0)


def test_stale_pending_entry_passes_through_processing():
    gateway = InMemoryEntryStoreGateway()
    entry_id = gateway.create_entry(
        user_id="user-1",
        local_day=date(2026, 10, 19),
        timezone_snapshot="UTC",
        status=ENTRY_STATUS.PENDING,
    ).entry_id

    report = sweep(
        entry_gateway=gateway,
        stale_after_seconds=900,
        batch_size=10,
        now=LATER,
        metrics=InMemoryMetricsClient(),
    )

    assert report.swept == [entry_id]
    entry = gateway.get_entry(entry_id)
    assert entry.status == ENTRY_STATUS.ERROR
    assert [step["to_status"] for step in entry.metadata["status_history"]] == [
        "pending",
        "processing",
        "error",
    ]


def test_recent_entries_are_left_alone():
    gateway = InMemoryEntryStoreGateway()
    entry_id = _open_entry(gateway)

    report = sweep(
        entry_gateway=gateway,
        stale_after_seconds=900,
        batch_size=10,
        metrics=InMemoryMetricsClient(),
    )

    assert report.examined == 0
    assert gateway.get_entry(entry_id).status == ENTRY_STATUS.PROCESSING


def test_batch_size_limits_one_run():
    gateway = InMemoryEntryStoreGateway()
    for _ in range(3):
        _open_entry(gateway)

    report = sweep(
        entry_gateway=gateway,
        stale_after_seconds=60,
        batch_size=2,
        now=LATER,
        metrics=InMemoryMetricsClient(),
    )

    assert len(report.swept) == 2
    assert len(gateway.find_stale_entries(older_than=LATER)) == 1


def test_entries_completed_concurrently_are_skipped():
    gateway = RacingGateway()
    entry_id = _open_entry(gateway)

    report = sweep(
        entry_gateway=gateway,
        stale_after_seconds=60,
        batch_size=10,
        now=LATER,
        metrics=InMemoryMetricsClient(),
    )

    assert report.swept == []
    assert report.skipped == [entry_id]
    assert gateway.get_entry(entry_id).status == ENTRY_STATUS.COMPLETE


def test_sweep_rejects_non_positive_age():
    with pytest.raises(ValueError):
        sweep(
            entry_gateway=InMemoryEntryStoreGateway(),
            stale_after_seconds=0,
            batch_size=10,
        )


def test_report_serializes_cutoff():
    report = sweep(
        entry_gateway=InMemoryEntryStoreGateway(),
        stale_after_seconds=60,
        batch_size=5,
        now=LATER,
        metrics=InMemoryMetricsClient(),
    )

    assert report.to_dict() == {
        "cutoff": (LATER - timedelta(seconds=60)).isoformat(),
        "examined": 0,
        "swept": [],
        "skipped": [],
    }
