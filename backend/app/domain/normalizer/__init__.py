"""Inference output normalizer."""

from .cascade import average_confidence, normalize_inference_output, resolve_macros
from .extract import extract_json_object
from .types import ItemBreakdown, Macros, NormalizedResult, Resolved, Unresolved

__all__ = [
    "ItemBreakdown",
    "Macros",
    "NormalizedResult",
    "Resolved",
    "Unresolved",
    "average_confidence",
    "extract_json_object",
    "normalize_inference_output",
    "resolve_macros",
]
