"""Entry store data models."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import date, datetime, timezone
from typing import Any, Dict, Optional
from uuid import uuid4

from .states import ENTRY_STATUS

__all__ = [
    "Entry",
    "MacroValues",
    "TerminalWrite",
    "UPLOAD_KINDS",
    "utcnow",
]

UPLOAD_KINDS = ("image", "audio")
STATUS_HISTORY_KEY = "status_history"
PIPELINE_EVENTS_KEY = "pipeline_events"


def utcnow() -> datetime:
    """Return timezone-aware UTC timestamp."""

    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class MacroValues:
    """Canonical macro numbers as persisted on an entry."""

    protein_g: float
    carbs_g: float
    fat_g: float
    calories_kcal: float


@dataclass(frozen=True)
class Entry:
    """Represents a stored ``entries`` row."""

    entry_id: str
    user_id: str
    status: str
    local_day: date
    timezone_snapshot: str
    created_at: datetime
    updated_at: datetime
    raw_text: Optional[str] = None
    has_text: bool = False
    has_image: bool = False
    has_audio: bool = False
    image_path: Optional[str] = None
    audio_path: Optional[str] = None
    model_output: Optional[Dict[str, Any]] = None
    protein_g: Optional[float] = None
    carbs_g: Optional[float] = None
    fat_g: Optional[float] = None
    calories_kcal: Optional[float] = None
    confidence: Optional[float] = None
    processed_at: Optional[datetime] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    error: Optional[Dict[str, Any]] = None

    @classmethod
    def new(
        cls,
        *,
        user_id: str,
        local_day: date,
        timezone_snapshot: str,
        raw_text: Optional[str] = None,
        status: str = ENTRY_STATUS.PROCESSING,
        metadata: Optional[Dict[str, Any]] = None,
        entry_id: Optional[str] = None,
        timestamp: Optional[datetime] = None,
    ) -> "Entry":
        """Factory that generates the id/timestamps and seeds the status history."""

        ts = timestamp or utcnow()
        meta = dict(metadata or {})
        meta[STATUS_HISTORY_KEY] = [
            {
                "from_status": None,
                "to_status": status,
                "occurred_at": ts.isoformat(),
            }
        ]
        text = raw_text.strip() if raw_text else None
        return cls(
            entry_id=entry_id or str(uuid4()),
            user_id=user_id,
            status=status,
            local_day=local_day,
            timezone_snapshot=timezone_snapshot,
            created_at=ts,
            updated_at=ts,
            raw_text=text or None,
            has_text=bool(text),
            metadata=meta,
        )

    @property
    def is_terminal(self) -> bool:
        return self.status in (ENTRY_STATUS.COMPLETE, ENTRY_STATUS.ERROR)

    @property
    def macros(self) -> Optional[MacroValues]:
        if self.status != ENTRY_STATUS.COMPLETE:
            return None
        return MacroValues(
            protein_g=self.protein_g or 0.0,
            carbs_g=self.carbs_g or 0.0,
            fat_g=self.fat_g or 0.0,
            calories_kcal=self.calories_kcal or 0.0,
        )

    def upload_path(self, kind: str) -> Optional[str]:
        if kind not in UPLOAD_KINDS:
            raise ValueError(f"unknown upload kind '{kind}'")
        return self.image_path if kind == "image" else self.audio_path

    def status_snapshot(self) -> Dict[str, Any]:
        """Return the filtered view the client poller reads."""

        return {
            "id": self.entry_id,
            "status": self.status,
            "protein_g": self.protein_g,
            "carbs_g": self.carbs_g,
            "fat_g": self.fat_g,
            "calories_kcal": self.calories_kcal,
            "raw_text": self.raw_text,
        }

    def with_status(
        self, status: str, *, timestamp: Optional[datetime] = None
    ) -> "Entry":
        """Return a copy with the new status appended to the status history."""

        ts = timestamp or utcnow()
        metadata = dict(self.metadata)
        history = list(metadata.get(STATUS_HISTORY_KEY) or [])
        history.append(
            {
                "from_status": self.status,
                "to_status": status,
                "occurred_at": ts.isoformat(),
            }
        )
        metadata[STATUS_HISTORY_KEY] = history
        return replace(self, status=status, metadata=metadata, updated_at=ts)

    def with_upload(
        self, kind: str, path: str, *, timestamp: Optional[datetime] = None
    ) -> "Entry":
        ts = timestamp or utcnow()
        if kind == "image":
            return replace(self, has_image=True, image_path=path, updated_at=ts)
        if kind == "audio":
            return replace(self, has_audio=True, audio_path=path, updated_at=ts)
        raise ValueError(f"unknown upload kind '{kind}'")

    def with_raw_text(
        self, raw_text: str, *, timestamp: Optional[datetime] = None
    ) -> "Entry":
        return replace(self, raw_text=raw_text, updated_at=timestamp or utcnow())

    def with_pipeline_event(
        self,
        *,
        event_type: str,
        data: Optional[Dict[str, Any]] = None,
        timestamp: Optional[datetime] = None,
    ) -> "Entry":
        ts = timestamp or utcnow()
        metadata = dict(self.metadata)
        events = list(metadata.get(PIPELINE_EVENTS_KEY) or [])
        event: Dict[str, Any] = {"type": event_type, "timestamp": ts.isoformat()}
        if data:
            event["data"] = data
        events.append(event)
        metadata[PIPELINE_EVENTS_KEY] = events
        return replace(self, metadata=metadata, updated_at=ts)

    def with_completion(
        self,
        *,
        macros: MacroValues,
        confidence: Optional[float],
        model_output: Optional[Dict[str, Any]],
        timestamp: Optional[datetime] = None,
    ) -> "Entry":
        ts = timestamp or utcnow()
        completed = self.with_status(ENTRY_STATUS.COMPLETE, timestamp=ts)
        return replace(
            completed,
            protein_g=macros.protein_g,
            carbs_g=macros.carbs_g,
            fat_g=macros.fat_g,
            calories_kcal=macros.calories_kcal,
            confidence=confidence,
            model_output=model_output,
            processed_at=ts,
        )

    def with_failure(
        self,
        *,
        error_code: str,
        message: str,
        timestamp: Optional[datetime] = None,
    ) -> "Entry":
        ts = timestamp or utcnow()
        failed = self.with_status(ENTRY_STATUS.ERROR, timestamp=ts)
        return replace(failed, error={"code": error_code, "message": message})


@dataclass(frozen=True)
class TerminalWrite:
    """Outcome of a conditional terminal-status write."""

    entry: Entry
    applied: bool
