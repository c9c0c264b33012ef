"""Value types shared by the normalizer stages.

Every stage returns either ``Resolved(value, source)`` or
``Unresolved(reason)`` so callers branch on the variant instead of catching
exceptions for missing fields.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Generic, Optional, Tuple, TypeVar, Union

__all__ = [
    "ItemBreakdown",
    "MacroReading",
    "Macros",
    "NormalizedResult",
    "PayloadShape",
    "Resolution",
    "Resolved",
    "Unresolved",
    "ZERO_MACROS",
]

T = TypeVar("T")


@dataclass(frozen=True)
class Resolved(Generic[T]):
    value: T
    source: str


@dataclass(frozen=True)
class Unresolved:
    reason: str


Resolution = Union[Resolved[T], Unresolved]


@dataclass(frozen=True)
class Macros:
    """Canonical macro totals in grams and kcal."""

    protein_g: float = 0.0
    carbs_g: float = 0.0
    fat_g: float = 0.0
    calories_kcal: float = 0.0

    @property
    def total(self) -> float:
        return self.protein_g + self.carbs_g + self.fat_g + self.calories_kcal

    @property
    def is_zero(self) -> bool:
        return self.total == 0

    def __add__(self, other: "Macros") -> "Macros":
        return Macros(
            protein_g=self.protein_g + other.protein_g,
            carbs_g=self.carbs_g + other.carbs_g,
            fat_g=self.fat_g + other.fat_g,
            calories_kcal=self.calories_kcal + other.calories_kcal,
        )

    def with_derived_calories(self) -> "Macros":
        """Fill absent/zero calories from the Atwater factors (4/4/9)."""

        if self.calories_kcal > 0:
            return self
        grams = self.protein_g + self.carbs_g + self.fat_g
        if grams <= 0:
            return self
        derived = self.protein_g * 4 + self.carbs_g * 4 + self.fat_g * 9
        return Macros(self.protein_g, self.carbs_g, self.fat_g, derived)

    def to_dict(self) -> Dict[str, float]:
        return {
            "protein_g": self.protein_g,
            "carbs_g": self.carbs_g,
            "fat_g": self.fat_g,
            "calories_kcal": self.calories_kcal,
        }


ZERO_MACROS = Macros()


@dataclass(frozen=True)
class MacroReading:
    """Macro values as read from a payload; ``None`` marks a missing key."""

    protein_g: Optional[float] = None
    carbs_g: Optional[float] = None
    fat_g: Optional[float] = None
    calories_kcal: Optional[float] = None

    @property
    def is_empty(self) -> bool:
        return all(
            value is None
            for value in (self.protein_g, self.carbs_g, self.fat_g, self.calories_kcal)
        )

    def to_macros(self) -> Macros:
        return Macros(
            protein_g=self.protein_g or 0.0,
            carbs_g=self.carbs_g or 0.0,
            fat_g=self.fat_g or 0.0,
            calories_kcal=self.calories_kcal or 0.0,
        )


@dataclass(frozen=True)
class ItemBreakdown:
    name: str
    macros: MacroReading
    quantity: Optional[float] = None
    unit: Optional[str] = None
    confidence: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "quantity": self.quantity,
            "unit": self.unit,
            "macros": self.macros.to_macros().to_dict(),
            "confidence": self.confidence,
        }


@dataclass(frozen=True)
class PayloadShape:
    """A payload mapped onto the canonical item/entry-macro layout."""

    items: Tuple[ItemBreakdown, ...] = tuple()
    entry_totals: Optional[MacroReading] = None
    calculation: Optional[MacroReading] = None
    notes: Optional[str] = None


@dataclass(frozen=True)
class NormalizedResult:
    """Output of ``normalize_inference_output``."""

    macros: Macros
    items: Tuple[ItemBreakdown, ...]
    confidence: Optional[float]
    notes: Optional[str]
    source: str
    structured: bool
    payload: Optional[Dict[str, Any]] = None
    raw_text: Optional[str] = None
    trace: Dict[str, str] = field(default_factory=dict)

    def model_output(self, raw_json: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Audit record persisted alongside the canonical macros."""

        return {
            "parsed": self.payload,
            "raw_text": self.raw_text,
            "raw_json": raw_json,
            "normalization": {
                "source": self.source,
                "structured": self.structured,
                "items": [item.to_dict() for item in self.items],
                "notes": self.notes,
                **self.trace,
            },
        }
