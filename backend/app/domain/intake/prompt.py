"""Instructions and response formats for the nutrition estimation job."""

from __future__ import annotations

import copy
from typing import Any, Dict, Optional

__all__ = [
    "RESULT_SCHEMA",
    "SCHEMA_NAME",
    "SYSTEM_INSTRUCTIONS",
    "RELAXED_INSTRUCTIONS",
    "build_user_text",
    "relaxed_response_format",
    "strict_response_format",
]

SCHEMA_NAME = "macro_payload"

_MACROS_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "additionalProperties": False,
    "properties": {
        "protein_g": {"type": "number"},
        "carbs_g": {"type": "number"},
        "fat_g": {"type": "number"},
        "calories_kcal": {"type": "number"},
    },
    "required": ["protein_g", "carbs_g", "fat_g", "calories_kcal"],
}

# Strict structured outputs require every property to be listed as required;
# optional fields are expressed as nullable instead.
RESULT_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "additionalProperties": False,
    "properties": {
        "items": {
            "type": "array",
            "items": {
                "type": "object",
                "additionalProperties": False,
                "properties": {
                    "name": {"type": "string"},
                    "quantity": {"type": ["number", "null"]},
                    "unit": {"type": ["string", "null"], "enum": ["g", "ml", "piece", None]},
                    "macros": _MACROS_SCHEMA,
                    "confidence": {"type": ["number", "null"]},
                },
                "required": ["name", "quantity", "unit", "macros", "confidence"],
            },
        },
        "entry_macros": _MACROS_SCHEMA,
        "notes": {"type": ["string", "null"]},
    },
    "required": ["items", "entry_macros", "notes"],
}

SYSTEM_INSTRUCTIONS = "\n".join(
    [
        "You are a nutrition estimation model.",
        "Given the context, produce exact JSON that matches the provided schema.",
        "List each food item with its own macros, then the entry_macros totals.",
        "If quantities are unclear, estimate realistically from the image and text.",
        "All macro values in grams (g) and calories in kcal.",
        "Confidence is a number between 0 and 1 per item.",
    ]
)

RELAXED_INSTRUCTIONS = "\n".join(
    [
        SYSTEM_INSTRUCTIONS,
        "Respond with a single JSON object only, no prose and no code fences.",
        'Use the keys "items" (name, quantity, unit, macros, confidence),',
        '"entry_macros" (protein_g, carbs_g, fat_g, calories_kcal) and "notes".',
    ]
)


def build_user_text(raw_text: Optional[str]) -> str:
    return f"User-described context:\n{(raw_text or '').strip() or 'None'}"


def strict_response_format() -> Dict[str, Any]:
    return {
        "type": "json_schema",
        "name": SCHEMA_NAME,
        "schema": copy.deepcopy(RESULT_SCHEMA),
        "strict": True,
    }


def relaxed_response_format() -> Dict[str, Any]:
    return {"type": "json_object"}
