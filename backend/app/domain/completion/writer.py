"""Single writer of terminal entry states."""

from __future__ import annotations

from typing import Any, Dict, Optional

from ...infra.logging import get_logger
from ..entrystore.gateway import EntryStoreGateway
from ..entrystore.models import MacroValues, TerminalWrite
from ..normalizer.types import NormalizedResult

__all__ = ["CompletionWriter"]

logger = get_logger(__name__)


class CompletionWriter:
    """Applies normalized results (or failures) to the entry store exactly once.

    Both operations are conditional on the entry still being open; a replay
    against a terminal entry returns the stored row with ``applied=False``.
    Datastore errors propagate to the caller.
    """

    def __init__(self, entry_gateway: EntryStoreGateway) -> None:
        self._entries = entry_gateway

    def complete(
        self,
        entry_id: str,
        result: NormalizedResult,
        *,
        raw_json: Optional[Dict[str, Any]] = None,
    ) -> TerminalWrite:
        macros = MacroValues(
            protein_g=result.macros.protein_g,
            carbs_g=result.macros.carbs_g,
            fat_g=result.macros.fat_g,
            calories_kcal=result.macros.calories_kcal,
        )
        outcome = self._entries.complete_entry(
            entry_id,
            macros=macros,
            confidence=result.confidence,
            model_output=result.model_output(raw_json),
        )
        if outcome.applied:
            logger.info(
                "entry_completed",
                extra={
                    "entry_id": entry_id,
                    "macro_source": result.source,
                    "calories_kcal": macros.calories_kcal,
                },
            )
        else:
            logger.info(
                "entry_completion_replayed",
                extra={"entry_id": entry_id, "status": outcome.entry.status},
            )
        return outcome

    def fail(self, entry_id: str, *, error_code: str, message: str) -> TerminalWrite:
        outcome = self._entries.fail_entry(
            entry_id, error_code=error_code, message=message
        )
        if outcome.applied:
            logger.warning(
                "entry_failed", extra={"entry_id": entry_id, "error_code": error_code}
            )
        return outcome
