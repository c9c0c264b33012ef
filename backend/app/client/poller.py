"""Client-side completion discovery for submitted entries.

``EntryPoller`` runs the ``submitted -> polling -> {completed, errored,
timed_out}`` machine against the status endpoint with capped exponential
backoff. The deadline only stops the watching; the server keeps working on
the entry. ``SubmissionTracker`` wraps a submission with the optimistic
placeholder row a UI shows while the entry is processing.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from types import SimpleNamespace
from typing import Any, Callable, Dict, Iterator, Optional

from ..config.loader import PollerConfig
from ..infra.logging import get_logger
from .api import ApiClientError, MacroLogApiClient, UploadFile

__all__ = [
    "POLL_STATE",
    "POLL_STATE_TRANSITIONS",
    "TIMEOUT_MESSAGE",
    "EntryPoller",
    "PollOutcome",
    "PollPolicy",
    "SubmissionTracker",
    "TrackedSubmission",
    "build_placeholder",
]

logger = get_logger(__name__)

POLL_STATE = SimpleNamespace(
    SUBMITTED="submitted",
    POLLING="polling",
    COMPLETED="completed",
    ERRORED="errored",
    TIMED_OUT="timed_out",
)

POLL_STATE_TRANSITIONS = {
    POLL_STATE.SUBMITTED: {POLL_STATE.POLLING},
    POLL_STATE.POLLING: {
        POLL_STATE.COMPLETED,
        POLL_STATE.ERRORED,
        POLL_STATE.TIMED_OUT,
    },
    POLL_STATE.COMPLETED: set(),
    POLL_STATE.ERRORED: set(),
    POLL_STATE.TIMED_OUT: set(),
}

TERMINAL_ENTRY_STATUSES = {"complete": POLL_STATE.COMPLETED, "error": POLL_STATE.ERRORED}
TIMEOUT_MESSAGE = (
    "Processing is taking longer than expected. It will finish in the background."
)
TRANSPORT_FAILURES_REASON = "transport_failures"


@dataclass(frozen=True)
class PollPolicy:
    initial_interval_seconds: float = 0.6
    backoff_multiplier: float = 1.5
    max_interval_seconds: float = 5.0
    deadline_seconds: float = 120.0
    max_consecutive_failures: int = 3

    @classmethod
    def from_config(cls, config: PollerConfig) -> "PollPolicy":
        return cls(
            initial_interval_seconds=config.initial_interval_seconds,
            backoff_multiplier=config.backoff_multiplier,
            max_interval_seconds=config.max_interval_seconds,
            deadline_seconds=config.deadline_seconds,
            max_consecutive_failures=config.max_consecutive_failures,
        )

    def intervals(self) -> Iterator[float]:
        interval = self.initial_interval_seconds
        while True:
            yield min(interval, self.max_interval_seconds)
            interval = min(interval * self.backoff_multiplier, self.max_interval_seconds)


@dataclass(frozen=True)
class PollOutcome:
    state: str
    entry_id: str
    attempts: int
    status: Optional[Dict[str, Any]] = None
    entry: Optional[Dict[str, Any]] = None
    message: Optional[str] = None
    reason: Optional[str] = None

    @property
    def is_terminal_status(self) -> bool:
        """True when the entry itself reached ``complete`` or ``error``."""

        return self.reason is None and self.state in (
            POLL_STATE.COMPLETED,
            POLL_STATE.ERRORED,
        )


class EntryPoller:
    def __init__(
        self,
        api: MacroLogApiClient,
        *,
        policy: Optional[PollPolicy] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._api = api
        self._policy = policy or PollPolicy()
        self._clock = clock
        self._sleep = sleep

    def poll(
        self,
        entry_id: str,
        *,
        on_update: Optional[Callable[[Dict[str, Any]], None]] = None,
    ) -> PollOutcome:
        """Watch ``entry_id`` until a terminal status, a hard error or the deadline."""

        policy = self._policy
        state = _advance(POLL_STATE.SUBMITTED, POLL_STATE.POLLING)
        started = self._clock()
        intervals = policy.intervals()
        attempts = 0
        failures = 0
        last_status: Optional[Dict[str, Any]] = None

        while True:
            attempts += 1
            try:
                snapshot = self._api.get_status(entry_id)
            except ApiClientError as exc:
                if not exc.retryable:
                    logger.warning(
                        "entry_poll_failed",
                        extra={"entry_id": entry_id, "error_code": exc.code},
                    )
                    return PollOutcome(
                        state=_advance(state, POLL_STATE.ERRORED),
                        entry_id=entry_id,
                        attempts=attempts,
                        status=last_status,
                        message=str(exc),
                        reason=exc.code,
                    )
                failures += 1
                logger.info(
                    "entry_poll_transport_failure",
                    extra={"entry_id": entry_id, "failures": failures},
                )
                if failures > policy.max_consecutive_failures:
                    return PollOutcome(
                        state=_advance(state, POLL_STATE.TIMED_OUT),
                        entry_id=entry_id,
                        attempts=attempts,
                        status=last_status,
                        message=TIMEOUT_MESSAGE,
                        reason=TRANSPORT_FAILURES_REASON,
                    )
            else:
                failures = 0
                last_status = snapshot
                terminal_state = TERMINAL_ENTRY_STATUSES.get(str(snapshot.get("status")))
                if terminal_state is not None:
                    return PollOutcome(
                        state=_advance(state, terminal_state),
                        entry_id=entry_id,
                        attempts=attempts,
                        status=snapshot,
                        entry=self._refresh(entry_id) or snapshot,
                    )
                if on_update is not None:
                    on_update(snapshot)

            remaining = policy.deadline_seconds - (self._clock() - started)
            if remaining <= 0:
                logger.info(
                    "entry_poll_deadline_reached",
                    extra={"entry_id": entry_id, "attempts": attempts},
                )
                return PollOutcome(
                    state=_advance(state, POLL_STATE.TIMED_OUT),
                    entry_id=entry_id,
                    attempts=attempts,
                    status=last_status,
                    message=TIMEOUT_MESSAGE,
                    reason="deadline",
                )
            self._sleep(min(next(intervals), remaining))

    def _refresh(self, entry_id: str) -> Optional[Dict[str, Any]]:
        try:
            return self._api.get_entry(entry_id)
        except ApiClientError as exc:
            logger.warning(
                "entry_refresh_failed",
                extra={"entry_id": entry_id, "error_code": exc.code},
            )
            return None


def _advance(current: str, target: str) -> str:
    if target not in POLL_STATE_TRANSITIONS[current]:
        raise ValueError(f"Cannot move poll state from {current} to {target}")
    return target


def build_placeholder(
    entry_id: str,
    text: Optional[str],
    *,
    image_path: Optional[str] = None,
    created_at: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Optimistic row shown until the entry reaches a terminal status."""

    return {
        "id": entry_id,
        "status": "processing",
        "raw_text": text,
        "image_path": image_path,
        "protein_g": 0.0,
        "carbs_g": 0.0,
        "fat_g": 0.0,
        "calories_kcal": 0.0,
        "created_at": (created_at or datetime.now(timezone.utc)).isoformat(),
        "processing": True,
    }


@dataclass
class TrackedSubmission:
    entry_id: str
    row: Dict[str, Any]
    state: str = POLL_STATE.SUBMITTED
    image_path: Optional[str] = None
    audio_path: Optional[str] = None
    outcome: Optional[PollOutcome] = None
    notice: Optional[str] = None
    updates: list = field(default_factory=list)


class SubmissionTracker:
    """Submit an entry, show a placeholder, and swap in the real row when done."""

    def __init__(
        self,
        api: MacroLogApiClient,
        *,
        poller: Optional[EntryPoller] = None,
    ) -> None:
        self._api = api
        self._poller = poller or EntryPoller(api)

    def submit(
        self,
        *,
        timezone: str,
        text: Optional[str] = None,
        image: Optional[UploadFile] = None,
        audio: Optional[UploadFile] = None,
    ) -> TrackedSubmission:
        response = self._api.submit_entry(
            timezone=timezone, text=text, image=image, audio=audio
        )
        entry_id = str(response["entry_id"])
        image_path = response.get("image_path")
        return TrackedSubmission(
            entry_id=entry_id,
            row=build_placeholder(entry_id, text, image_path=image_path),
            image_path=image_path,
            audio_path=response.get("audio_path"),
        )

    def track(self, submission: TrackedSubmission) -> TrackedSubmission:
        submission.state = POLL_STATE.POLLING

        def _record(snapshot: Dict[str, Any]) -> None:
            submission.updates.append(snapshot)
            if snapshot.get("raw_text"):
                submission.row["raw_text"] = snapshot["raw_text"]

        outcome = self._poller.poll(submission.entry_id, on_update=_record)
        submission.outcome = outcome
        submission.state = outcome.state
        if outcome.is_terminal_status:
            row = dict(outcome.entry or outcome.status or submission.row)
            row["processing"] = False
            submission.row = row
        else:
            submission.notice = outcome.message
        return submission

    def submit_and_track(self, **kwargs: Any) -> TrackedSubmission:
        return self.track(self.submit(**kwargs))
