"""Map recovered payloads onto the canonical item/entry-macro layout.

Matchers run in order (strict canonical decode, ``meals[].items[]``, loose
top-level keys); the first one that recognizes the payload wins.
"""

from __future__ import annotations

import math
import re
from typing import Any, Callable, List, Mapping, Optional, Sequence, Tuple

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .types import (
    ItemBreakdown,
    MacroReading,
    PayloadShape,
    Resolution,
    Resolved,
    Unresolved,
)

__all__ = [
    "CanonicalPayload",
    "coerce_number",
    "match_shape",
    "read_macros",
]

PROTEIN_KEYS = ("protein_g", "protein", "proteins")
CARB_KEYS = ("carbs_g", "carbohydrates_g", "carbohydrates", "carbs", "carb")
FAT_KEYS = ("fat_g", "fat", "fats", "total_fat")
CALORIE_KEYS = ("calories_kcal", "kcal", "calories", "energy_kcal")
ITEM_MACRO_CONTAINERS = ("macros_g", "macros", "nutrition", "nutrients")
ENTRY_TOTAL_KEYS = (
    "entry_macros",
    "macros",
    "macros_g",
    "nutrition",
    "nutrients",
    "total",
    "totals",
)
TOP_LEVEL_CALORIE_KEYS = ("estimated_calories_kcal", "estimated_calories")
CALCULATION_KEYS = ("calculation", "calculations", "nutrition_calculation")
ITEM_NAME_KEYS = ("name", "food", "item", "description")

_NUMERIC_PREFIX = re.compile(r"^\s*(\d+(?:\.\d+)?|\.\d+)")


class CanonicalMacros(BaseModel):
    model_config = ConfigDict(extra="ignore")

    protein_g: float = Field(strict=True, ge=0, allow_inf_nan=False)
    carbs_g: float = Field(strict=True, ge=0, allow_inf_nan=False)
    fat_g: float = Field(strict=True, ge=0, allow_inf_nan=False)
    calories_kcal: float = Field(strict=True, ge=0, allow_inf_nan=False)

    def reading(self) -> MacroReading:
        return MacroReading(
            protein_g=self.protein_g,
            carbs_g=self.carbs_g,
            fat_g=self.fat_g,
            calories_kcal=self.calories_kcal,
        )


class CanonicalItem(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: str = Field(strict=True, min_length=1)
    quantity: Optional[float] = None
    unit: Optional[str] = None
    macros: CanonicalMacros
    confidence: Optional[float] = Field(default=None, strict=True, ge=0, le=1)


class CanonicalPayload(BaseModel):
    """The shape the strict response schema asks the model for."""

    model_config = ConfigDict(extra="ignore")

    items: List[CanonicalItem]
    entry_macros: CanonicalMacros
    notes: Optional[str] = None


def coerce_number(value: Any) -> Resolution[float]:
    """Read a non-negative finite number from a number or numeric string."""

    if value is None:
        return Unresolved("missing")
    if isinstance(value, bool):
        return Unresolved("boolean is not a number")
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        match = _NUMERIC_PREFIX.match(value)
        if match is None:
            return Unresolved(f"non-numeric string {value!r}")
        number = float(match.group(1))
    else:
        return Unresolved(f"unsupported type {type(value).__name__}")
    if not math.isfinite(number):
        return Unresolved("non-finite number")
    if number < 0:
        return Unresolved("negative number")
    return Resolved(number, "number")


def read_macros(
    container: Mapping[str, Any], *, outer: Optional[Mapping[str, Any]] = None
) -> MacroReading:
    """Read aliased macro keys from ``container`` or its nested macro block.

    Calories missing from the nested block fall back to ``container`` and
    then ``outer``.
    """

    nested = _nested_macro_block(container)
    calories = _first_number(nested, CALORIE_KEYS)
    if calories is None and nested is not container:
        calories = _first_number(container, CALORIE_KEYS)
    if calories is None and outer is not None:
        calories = _first_number(outer, CALORIE_KEYS + TOP_LEVEL_CALORIE_KEYS)
    return MacroReading(
        protein_g=_first_number(nested, PROTEIN_KEYS),
        carbs_g=_first_number(nested, CARB_KEYS),
        fat_g=_first_number(nested, FAT_KEYS),
        calories_kcal=calories,
    )


def match_shape(payload: Mapping[str, Any]) -> Resolution[PayloadShape]:
    for matcher in _MATCHERS:
        outcome = matcher(payload)
        if isinstance(outcome, Resolved):
            return outcome
    return Unresolved("payload matched no known shape")


def _match_canonical(payload: Mapping[str, Any]) -> Resolution[PayloadShape]:
    try:
        decoded = CanonicalPayload.model_validate(dict(payload))
    except ValidationError as exc:
        return Unresolved(f"not canonical: {exc.error_count()} validation errors")
    items = tuple(
        ItemBreakdown(
            name=item.name,
            macros=item.macros.reading(),
            quantity=item.quantity,
            unit=item.unit,
            confidence=item.confidence,
        )
        for item in decoded.items
    )
    return Resolved(
        PayloadShape(
            items=items,
            entry_totals=decoded.entry_macros.reading(),
            calculation=_read_calculation(payload),
            notes=decoded.notes,
        ),
        "canonical",
    )


def _match_meals(payload: Mapping[str, Any]) -> Resolution[PayloadShape]:
    meals = payload.get("meals")
    if not isinstance(meals, list) or not meals:
        return Unresolved("no meals[] array")
    items: List[ItemBreakdown] = []
    for meal in meals:
        if not isinstance(meal, Mapping):
            continue
        meal_items = meal.get("items")
        if isinstance(meal_items, list) and meal_items:
            items.extend(_read_items(meal_items))
            continue
        as_item = _read_item(meal)
        if as_item is not None:
            items.append(as_item)
    return Resolved(
        PayloadShape(
            items=tuple(items),
            entry_totals=_read_entry_totals(payload),
            calculation=_read_calculation(payload),
            notes=_read_notes(payload),
        ),
        "meals",
    )


def _match_loose(payload: Mapping[str, Any]) -> Resolution[PayloadShape]:
    raw_items = payload.get("items")
    items = _read_items(raw_items) if isinstance(raw_items, list) else tuple()
    totals = _read_entry_totals(payload)
    calculation = _read_calculation(payload)
    if not items and totals is None and calculation is None:
        return Unresolved("no recognizable macro fields")
    return Resolved(
        PayloadShape(
            items=items,
            entry_totals=totals,
            calculation=calculation,
            notes=_read_notes(payload),
        ),
        "loose",
    )


_MATCHERS: Sequence[Callable[[Mapping[str, Any]], Resolution[PayloadShape]]] = (
    _match_canonical,
    _match_meals,
    _match_loose,
)


def _read_items(raw_items: Sequence[Any]) -> Tuple[ItemBreakdown, ...]:
    items = (_read_item(raw) for raw in raw_items if isinstance(raw, Mapping))
    return tuple(item for item in items if item is not None)


def _read_item(raw: Mapping[str, Any]) -> Optional[ItemBreakdown]:
    macros = read_macros(raw)
    name = next(
        (
            str(raw[key]).strip()
            for key in ITEM_NAME_KEYS
            if isinstance(raw.get(key), str) and raw[key].strip()
        ),
        None,
    )
    if macros.is_empty and name is None:
        return None
    confidence = _optional_number(raw.get("confidence"))
    if confidence is not None and confidence > 1:
        confidence = None
    return ItemBreakdown(
        name=name or "item",
        macros=macros,
        quantity=_optional_number(raw.get("quantity")),
        unit=raw.get("unit") if isinstance(raw.get("unit"), str) else None,
        confidence=confidence,
    )


def _read_entry_totals(payload: Mapping[str, Any]) -> Optional[MacroReading]:
    readings: List[MacroReading] = []
    for key in ENTRY_TOTAL_KEYS:
        container = payload.get(key)
        if isinstance(container, Mapping):
            readings.append(read_macros(container, outer=payload))
    readings.append(read_macros(payload, outer=payload))

    present = [reading for reading in readings if not reading.is_empty]
    for reading in present:
        if not reading.to_macros().is_zero:
            return reading
    return present[0] if present else None


def _read_calculation(payload: Mapping[str, Any]) -> Optional[MacroReading]:
    for key in CALCULATION_KEYS:
        block = payload.get(key)
        if not isinstance(block, Mapping):
            continue
        for inner_key in ("total", "totals"):
            inner = block.get(inner_key)
            if isinstance(inner, Mapping):
                block = inner
                break
        reading = read_macros(block)
        if not reading.is_empty:
            return reading
    return None


def _read_notes(payload: Mapping[str, Any]) -> Optional[str]:
    notes = payload.get("notes")
    return notes if isinstance(notes, str) and notes.strip() else None


def _nested_macro_block(container: Mapping[str, Any]) -> Mapping[str, Any]:
    for key in ITEM_MACRO_CONTAINERS:
        nested = container.get(key)
        if isinstance(nested, Mapping):
            return nested
    return container


def _first_number(container: Mapping[str, Any], keys: Sequence[str]) -> Optional[float]:
    for key in keys:
        if key not in container:
            continue
        outcome = coerce_number(container[key])
        if isinstance(outcome, Resolved):
            return outcome.value
    return None


def _optional_number(value: Any) -> Optional[float]:
    outcome = coerce_number(value)
    return outcome.value if isinstance(outcome, Resolved) else None
