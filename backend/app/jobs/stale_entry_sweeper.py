"""Reconciliation sweep for entries stuck in a non-terminal status.

Intake aborts leave the entry ``processing`` and a lost webhook never
completes it; neither case is retried server-side. This job moves such
entries to ``error`` once they have not been touched for
``sweeper.stale_after_seconds``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from backend.app.config import load_settings
from backend.app.domain.completion.writer import CompletionWriter
from backend.app.domain.entrystore.gateway import (
    EntryStoreGateway,
    build_entry_store_gateway,
)
from backend.app.domain.entrystore.states import ENTRY_STATUS
from backend.app.infra.logging import get_logger
from backend.app.infra.metrics import MetricsClient, get_metrics_client

logger = get_logger(__name__)

TIMEOUT_ERROR_CODE = "processing_timeout"
TIMEOUT_MESSAGE = "Entry did not finish processing before the reconciliation deadline."


@dataclass
class SweepReport:
    cutoff: datetime
    examined: int = 0
    swept: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "cutoff": self.cutoff.isoformat(),
            "examined": self.examined,
            "swept": list(self.swept),
            "skipped": list(self.skipped),
        }


def sweep(
    *,
    entry_gateway: Optional[EntryStoreGateway] = None,
    stale_after_seconds: Optional[int] = None,
    batch_size: Optional[int] = None,
    now: Optional[datetime] = None,
    metrics: MetricsClient | None = None,
) -> SweepReport:
    """Fail every open entry last updated before ``now - stale_after_seconds``.

    ``pending`` entries are first moved to ``processing`` so the failure
    follows the regular status edges. Entries that reach a terminal status
    between the lookup and the write are reported as skipped; the
    conditional write leaves them untouched.
    """

    if stale_after_seconds is None or batch_size is None:
        sweeper_cfg = load_settings().sweeper
        if stale_after_seconds is None:
            stale_after_seconds = sweeper_cfg.stale_after_seconds
        if batch_size is None:
            batch_size = sweeper_cfg.batch_size
    if stale_after_seconds <= 0:
        raise ValueError("stale_after_seconds must be positive")

    gateway = entry_gateway or build_entry_store_gateway(fallback_to_memory=True)
    writer = CompletionWriter(gateway)
    metrics_client = metrics or get_metrics_client()
    current = now or datetime.now(timezone.utc)
    report = SweepReport(cutoff=current - timedelta(seconds=stale_after_seconds))

    stale = gateway.find_stale_entries(older_than=report.cutoff, limit=batch_size)
    report.examined = len(stale)
    for entry in stale:
        if entry.status == ENTRY_STATUS.PENDING:
            gateway.update_status(entry.entry_id, status=ENTRY_STATUS.PROCESSING)
        outcome = writer.fail(
            entry.entry_id, error_code=TIMEOUT_ERROR_CODE, message=TIMEOUT_MESSAGE
        )
        if outcome.applied:
            report.swept.append(entry.entry_id)
            metrics_client.increment("entries_swept")
        else:
            report.skipped.append(entry.entry_id)

    logger.info(
        "stale_entry_sweep_finished",
        extra={
            "examined": report.examined,
            "swept": len(report.swept),
            "skipped": len(report.skipped),
            "cutoff": report.cutoff.isoformat(),
        },
    )
    return report
