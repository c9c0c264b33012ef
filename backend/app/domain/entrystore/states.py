"""Canonical entry status state machine.

An entry moves ``pending -> processing -> {complete, error}``. Terminal
statuses never regress; gateways consult these helpers before persisting a
status change so the in-memory and SQL stores enforce the same edges.
"""

from __future__ import annotations

from types import SimpleNamespace
from typing import Dict, FrozenSet, Tuple

__all__ = [
    "ENTRY_STATUS",
    "ENTRY_STATUS_TRANSITIONS",
    "INITIAL_STATUSES",
    "OPEN_STATUSES",
    "TERMINAL_STATUSES",
    "allowed_next_statuses",
    "is_terminal",
    "resolve_next_status",
]


ENTRY_STATUS = SimpleNamespace(
    PENDING="pending",
    PROCESSING="processing",
    COMPLETE="complete",
    ERROR="error",
)


ENTRY_STATUS_TRANSITIONS: Dict[str, Tuple[str, ...]] = {
    ENTRY_STATUS.PENDING: (ENTRY_STATUS.PROCESSING,),
    ENTRY_STATUS.PROCESSING: (ENTRY_STATUS.COMPLETE, ENTRY_STATUS.ERROR),
    ENTRY_STATUS.COMPLETE: tuple(),
    ENTRY_STATUS.ERROR: tuple(),
}

TERMINAL_STATUSES: FrozenSet[str] = frozenset(
    status for status, targets in ENTRY_STATUS_TRANSITIONS.items() if not targets
)
OPEN_STATUSES: FrozenSet[str] = frozenset(ENTRY_STATUS_TRANSITIONS) - TERMINAL_STATUSES
INITIAL_STATUSES: FrozenSet[str] = frozenset(
    {ENTRY_STATUS.PENDING, ENTRY_STATUS.PROCESSING}
)


def is_terminal(status: str) -> bool:
    """Return True when ``status`` admits no further transitions."""

    return status in TERMINAL_STATUSES


def allowed_next_statuses(status: str) -> Tuple[str, ...]:
    """Return the statuses reachable in one step from ``status``."""

    return ENTRY_STATUS_TRANSITIONS.get(status, tuple())


def resolve_next_status(current_status: str, requested_status: str) -> str:
    """Validate ``current_status -> requested_status`` and return the target.

    Re-applying the current status is accepted (idempotent replay); every
    other edge outside ``ENTRY_STATUS_TRANSITIONS`` raises ``ValueError``.
    """

    if requested_status not in ENTRY_STATUS_TRANSITIONS:
        raise ValueError(f"unknown entry status '{requested_status}'")
    if requested_status == current_status:
        return current_status
    if requested_status in allowed_next_statuses(current_status):
        return requested_status
    raise ValueError(
        f"status '{requested_status}' is not allowed when status='{current_status}'"
    )
