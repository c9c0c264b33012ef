"""Macro resolution cascade and the normalizer entry point."""

from __future__ import annotations

from typing import Any, Callable, Dict, Mapping, Optional, Sequence, Tuple

from ...infra.logging import get_logger
from .extract import collect_output_text, resolve_payload
from .shapes import match_shape
from .types import (
    ItemBreakdown,
    Macros,
    NormalizedResult,
    PayloadShape,
    Resolution,
    Resolved,
    Unresolved,
    ZERO_MACROS,
)

__all__ = ["normalize_inference_output", "resolve_macros", "average_confidence"]

logger = get_logger(__name__)

MACRO_SOURCE_NONE = "none"


def normalize_inference_output(response: Mapping[str, Any]) -> NormalizedResult:
    """Reconcile a provider response into canonical macros.

    Never raises for malformed model output; the worst case is an all-zero
    result with ``confidence=None`` and ``structured=False``.
    """

    raw_text = collect_output_text(response)
    trace: Dict[str, str] = {}

    payload_outcome = resolve_payload(response)
    if isinstance(payload_outcome, Unresolved):
        trace["payload"] = f"unresolved: {payload_outcome.reason}"
        logger.info("normalizer_payload_unresolved", extra={"reason": payload_outcome.reason})
        return NormalizedResult(
            macros=ZERO_MACROS,
            items=tuple(),
            confidence=None,
            notes=None,
            source=MACRO_SOURCE_NONE,
            structured=False,
            payload=None,
            raw_text=raw_text,
            trace=trace,
        )

    payload = payload_outcome.value
    trace["payload"] = payload_outcome.source

    shape_outcome = match_shape(payload)
    if isinstance(shape_outcome, Resolved):
        shape = shape_outcome.value
        trace["shape"] = shape_outcome.source
    else:
        shape = PayloadShape()
        trace["shape"] = f"unresolved: {shape_outcome.reason}"

    macros_outcome = resolve_macros(shape)
    if isinstance(macros_outcome, Resolved):
        macros = macros_outcome.value
        source = macros_outcome.source
        confidence = average_confidence(shape.items)
    else:
        macros = ZERO_MACROS
        source = MACRO_SOURCE_NONE
        confidence = None
        trace["macros"] = f"unresolved: {macros_outcome.reason}"

    logger.debug(
        "normalizer_resolved",
        extra={"source": source, "items": len(shape.items), **trace},
    )
    return NormalizedResult(
        macros=macros,
        items=shape.items,
        confidence=confidence,
        notes=shape.notes,
        source=source,
        structured=True,
        payload=payload,
        raw_text=raw_text,
        trace=trace,
    )


def resolve_macros(shape: PayloadShape) -> Resolution[Macros]:
    """Run the stages in order and stop at the first non-zero total.

    Calories are derived from protein/carbs/fat when the winning stage
    reports them absent or zero.
    """

    for stage in _STAGES:
        outcome = stage(shape)
        if isinstance(outcome, Resolved):
            return Resolved(outcome.value.with_derived_calories(), outcome.source)
    return Unresolved("no stage produced a non-zero macro total")


def average_confidence(items: Sequence[ItemBreakdown]) -> Optional[float]:
    """Arithmetic mean over items that report a confidence."""

    reported = [item.confidence for item in items if item.confidence is not None]
    if not reported:
        return None
    return sum(reported) / len(reported)


def _entry_totals(shape: PayloadShape) -> Resolution[Macros]:
    if shape.entry_totals is None:
        return Unresolved("no entry totals")
    macros = shape.entry_totals.to_macros()
    if macros.is_zero:
        return Unresolved("entry totals are zero")
    return Resolved(macros, "entry_totals")


def _item_sum(shape: PayloadShape) -> Resolution[Macros]:
    if not shape.items:
        return Unresolved("no items")
    total = ZERO_MACROS
    for item in shape.items:
        total = total + item.macros.to_macros()
    if total.is_zero:
        return Unresolved("items sum to zero")
    return Resolved(total, "item_sum")


def _calculation_block(shape: PayloadShape) -> Resolution[Macros]:
    if shape.calculation is None:
        return Unresolved("no calculation block")
    macros = shape.calculation.to_macros()
    if macros.is_zero:
        return Unresolved("calculation block is zero")
    return Resolved(macros, "calculation")


_STAGES: Tuple[Callable[[PayloadShape], Resolution[Macros]], ...] = (
    _entry_totals,
    _item_sum,
    _calculation_block,
)
