"""Entry store gateway implementations."""

from __future__ import annotations

from datetime import date, datetime
from typing import Any, Dict, List, Mapping, Optional, Protocol

from sqlalchemy import Table, insert, select, update
from sqlalchemy.engine import Engine

from ...infra.db import ENTRIES_TABLE, get_engine
from ...infra.logging import get_logger
from .models import Entry, MacroValues, TerminalWrite, UPLOAD_KINDS, utcnow
from .states import (
    ENTRY_STATUS,
    INITIAL_STATUSES,
    OPEN_STATUSES,
    is_terminal,
    resolve_next_status,
)

__all__ = [
    "EntryStoreGateway",
    "InMemoryEntryStoreGateway",
    "PostgresEntryStoreGateway",
    "build_entry_store_gateway",
]

logger = get_logger(__name__)


class EntryStoreGateway(Protocol):  # pragma: no cover
    """Abstraction intake, webhook completion and the sweeper rely on."""

    def create_entry(
        self,
        *,
        user_id: str,
        local_day: date,
        timezone_snapshot: str,
        raw_text: Optional[str] = None,
        status: str = ENTRY_STATUS.PROCESSING,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Entry: ...

    def record_upload(self, entry_id: str, *, kind: str, path: str) -> Entry: ...

    def update_raw_text(self, entry_id: str, *, raw_text: str) -> Entry: ...

    def update_status(self, entry_id: str, *, status: str) -> Entry: ...

    def record_pipeline_event(
        self,
        entry_id: str,
        *,
        event_type: str,
        data: Optional[Dict[str, Any]] = None,
    ) -> Entry: ...

    def complete_entry(
        self,
        entry_id: str,
        *,
        macros: MacroValues,
        confidence: Optional[float],
        model_output: Optional[Dict[str, Any]],
    ) -> TerminalWrite: ...

    def fail_entry(
        self, entry_id: str, *, error_code: str, message: str
    ) -> TerminalWrite: ...

    def get_entry(self, entry_id: str) -> Entry: ...

    def find_stale_entries(
        self, *, older_than: datetime, limit: int = 100
    ) -> List[Entry]: ...


class InMemoryEntryStoreGateway(EntryStoreGateway):
    """Simple in-memory entry store used for local development and tests."""

    def __init__(self) -> None:
        self._entries: Dict[str, Entry] = {}

    def create_entry(
        self,
        *,
        user_id: str,
        local_day: date,
        timezone_snapshot: str,
        raw_text: Optional[str] = None,
        status: str = ENTRY_STATUS.PROCESSING,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Entry:
        _require_initial_status(status)
        record = Entry.new(
            user_id=user_id,
            local_day=local_day,
            timezone_snapshot=timezone_snapshot,
            raw_text=raw_text,
            status=status,
            metadata=metadata,
        )
        self._entries[record.entry_id] = record
        return record

    def record_upload(self, entry_id: str, *, kind: str, path: str) -> Entry:
        record = self.get_entry(entry_id)
        if _upload_already_recorded(record, kind, path):
            return record
        updated = record.with_upload(kind, path)
        self._entries[entry_id] = updated
        return updated

    def update_raw_text(self, entry_id: str, *, raw_text: str) -> Entry:
        updated = self.get_entry(entry_id).with_raw_text(raw_text)
        self._entries[entry_id] = updated
        return updated

    def update_status(self, entry_id: str, *, status: str) -> Entry:
        record = self.get_entry(entry_id)
        target = resolve_next_status(record.status, status)
        if target == record.status:
            return record
        updated = record.with_status(target)
        self._entries[entry_id] = updated
        return updated

    def record_pipeline_event(
        self,
        entry_id: str,
        *,
        event_type: str,
        data: Optional[Dict[str, Any]] = None,
    ) -> Entry:
        updated = self.get_entry(entry_id).with_pipeline_event(
            event_type=event_type, data=data
        )
        self._entries[entry_id] = updated
        return updated

    def complete_entry(
        self,
        entry_id: str,
        *,
        macros: MacroValues,
        confidence: Optional[float],
        model_output: Optional[Dict[str, Any]],
    ) -> TerminalWrite:
        record = self.get_entry(entry_id)
        if not _terminal_write_allowed(record, ENTRY_STATUS.COMPLETE):
            return TerminalWrite(entry=record, applied=False)
        updated = record.with_completion(
            macros=macros, confidence=confidence, model_output=model_output
        )
        self._entries[entry_id] = updated
        return TerminalWrite(entry=updated, applied=True)

    def fail_entry(
        self, entry_id: str, *, error_code: str, message: str
    ) -> TerminalWrite:
        record = self.get_entry(entry_id)
        if not _terminal_write_allowed(record, ENTRY_STATUS.ERROR):
            return TerminalWrite(entry=record, applied=False)
        updated = record.with_failure(error_code=error_code, message=message)
        self._entries[entry_id] = updated
        return TerminalWrite(entry=updated, applied=True)

    def get_entry(self, entry_id: str) -> Entry:
        record = self._entries.get(entry_id)
        if record is None:
            raise KeyError(f"Entry {entry_id} not found")
        return record

    def find_stale_entries(
        self, *, older_than: datetime, limit: int = 100
    ) -> List[Entry]:
        stale = [
            entry
            for entry in self._entries.values()
            if entry.status in OPEN_STATUSES and entry.updated_at < older_than
        ]
        stale.sort(key=lambda entry: entry.updated_at)
        return stale[:limit]


class PostgresEntryStoreGateway(EntryStoreGateway):
    """SQLAlchemy-backed adapter that persists entries to PostgreSQL.

    Terminal writes are single conditional ``UPDATE ... WHERE
    status = 'processing'`` statements; a zero-row result means another
    writer already finished the entry and the stored row is returned
    unchanged.
    """

    def __init__(
        self,
        engine: Optional[Engine] = None,
        *,
        table: Optional[Table] = None,
    ) -> None:
        self._engine = engine or get_engine()
        self._entries = table if table is not None else ENTRIES_TABLE

    # ------------------------------------------------------------------
    # Creation + lookups
    # ------------------------------------------------------------------
    def create_entry(
        self,
        *,
        user_id: str,
        local_day: date,
        timezone_snapshot: str,
        raw_text: Optional[str] = None,
        status: str = ENTRY_STATUS.PROCESSING,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Entry:
        _require_initial_status(status)
        entry = Entry.new(
            user_id=user_id,
            local_day=local_day,
            timezone_snapshot=timezone_snapshot,
            raw_text=raw_text,
            status=status,
            metadata=metadata,
        )
        insert_stmt = (
            insert(self._entries)
            .values(
                id=entry.entry_id,
                user_id=entry.user_id,
                status=entry.status,
                raw_text=entry.raw_text,
                has_text=entry.has_text,
                has_image=False,
                has_audio=False,
                local_day=entry.local_day,
                timezone_snapshot=entry.timezone_snapshot,
                metadata=entry.metadata,
                created_at=entry.created_at,
                updated_at=entry.updated_at,
            )
            .returning(self._entries)
        )
        with self._engine.begin() as conn:
            row = conn.execute(insert_stmt).mappings().first()
        if row is None:  # pragma: no cover
            raise RuntimeError("failed to insert entry")
        return _row_to_entry(row)

    def get_entry(self, entry_id: str) -> Entry:
        with self._engine.begin() as conn:
            row = self._fetch_entry(conn, entry_id)
        return _row_to_entry(row)

    def find_stale_entries(
        self, *, older_than: datetime, limit: int = 100
    ) -> List[Entry]:
        stmt = (
            select(self._entries)
            .where(
                self._entries.c.status.in_(sorted(OPEN_STATUSES)),
                self._entries.c.updated_at < older_than,
            )
            .order_by(self._entries.c.updated_at.asc())
            .limit(limit)
        )
        with self._engine.begin() as conn:
            rows = conn.execute(stmt).mappings().all()
        return [_row_to_entry(row) for row in rows]

    # ------------------------------------------------------------------
    # Intake-time updates
    # ------------------------------------------------------------------
    def record_upload(self, entry_id: str, *, kind: str, path: str) -> Entry:
        with self._engine.begin() as conn:
            current = _row_to_entry(self._fetch_entry(conn, entry_id))
            if _upload_already_recorded(current, kind, path):
                return current
            updated = current.with_upload(kind, path)
            values: Dict[str, Any] = {"updated_at": updated.updated_at}
            if kind == "image":
                values.update(has_image=True, image_path=path)
            else:
                values.update(has_audio=True, audio_path=path)
            row = self._execute_update(conn, entry_id, values)
        return _row_to_entry(row)

    def update_raw_text(self, entry_id: str, *, raw_text: str) -> Entry:
        with self._engine.begin() as conn:
            self._fetch_entry(conn, entry_id)
            row = self._execute_update(
                conn, entry_id, {"raw_text": raw_text, "updated_at": utcnow()}
            )
        return _row_to_entry(row)

    def update_status(self, entry_id: str, *, status: str) -> Entry:
        with self._engine.begin() as conn:
            current = _row_to_entry(self._fetch_entry(conn, entry_id))
            target = resolve_next_status(current.status, status)
            if target == current.status:
                return current
            updated = current.with_status(target)
            row = self._execute_update(
                conn,
                entry_id,
                {
                    "status": updated.status,
                    "metadata": updated.metadata,
                    "updated_at": updated.updated_at,
                },
                expected_status=current.status,
            )
        if row is None:
            raise ValueError(
                f"entry {entry_id} changed status concurrently; refusing '{status}'"
            )
        return _row_to_entry(row)

    def record_pipeline_event(
        self,
        entry_id: str,
        *,
        event_type: str,
        data: Optional[Dict[str, Any]] = None,
    ) -> Entry:
        with self._engine.begin() as conn:
            current = _row_to_entry(self._fetch_entry(conn, entry_id))
            updated = current.with_pipeline_event(event_type=event_type, data=data)
            row = self._execute_update(
                conn,
                entry_id,
                {"metadata": updated.metadata, "updated_at": updated.updated_at},
            )
        return _row_to_entry(row)

    # ------------------------------------------------------------------
    # Terminal writes
    # ------------------------------------------------------------------
    def complete_entry(
        self,
        entry_id: str,
        *,
        macros: MacroValues,
        confidence: Optional[float],
        model_output: Optional[Dict[str, Any]],
    ) -> TerminalWrite:
        with self._engine.begin() as conn:
            current = _row_to_entry(self._fetch_entry(conn, entry_id))
            if not _terminal_write_allowed(current, ENTRY_STATUS.COMPLETE):
                return TerminalWrite(entry=current, applied=False)
            updated = current.with_completion(
                macros=macros, confidence=confidence, model_output=model_output
            )
            row = self._execute_update(
                conn,
                entry_id,
                {
                    "status": updated.status,
                    "protein_g": macros.protein_g,
                    "carbs_g": macros.carbs_g,
                    "fat_g": macros.fat_g,
                    "calories_kcal": macros.calories_kcal,
                    "confidence": confidence,
                    "model_output": model_output,
                    "processed_at": updated.processed_at,
                    "metadata": updated.metadata,
                    "updated_at": updated.updated_at,
                },
                expected_status=ENTRY_STATUS.PROCESSING,
            )
            if row is None:
                stored = self._fetch_entry(conn, entry_id)
                return TerminalWrite(entry=_row_to_entry(stored), applied=False)
        return TerminalWrite(entry=_row_to_entry(row), applied=True)

    def fail_entry(
        self, entry_id: str, *, error_code: str, message: str
    ) -> TerminalWrite:
        with self._engine.begin() as conn:
            current = _row_to_entry(self._fetch_entry(conn, entry_id))
            if not _terminal_write_allowed(current, ENTRY_STATUS.ERROR):
                return TerminalWrite(entry=current, applied=False)
            updated = current.with_failure(error_code=error_code, message=message)
            row = self._execute_update(
                conn,
                entry_id,
                {
                    "status": updated.status,
                    "error": updated.error,
                    "metadata": updated.metadata,
                    "updated_at": updated.updated_at,
                },
                expected_status=ENTRY_STATUS.PROCESSING,
            )
            if row is None:
                stored = self._fetch_entry(conn, entry_id)
                return TerminalWrite(entry=_row_to_entry(stored), applied=False)
        return TerminalWrite(entry=_row_to_entry(row), applied=True)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _fetch_entry(self, conn, entry_id: str) -> Mapping[str, Any]:
        stmt = select(self._entries).where(self._entries.c.id == entry_id)
        row = conn.execute(stmt).mappings().first()
        if row is None:
            raise KeyError(f"Entry {entry_id} not found")
        return row

    def _execute_update(
        self,
        conn,
        entry_id: str,
        values: Dict[str, Any],
        *,
        expected_status: Optional[str] = None,
    ) -> Optional[Mapping[str, Any]]:
        conditions = [self._entries.c.id == entry_id]
        if expected_status is not None:
            conditions.append(self._entries.c.status == expected_status)
        stmt = (
            update(self._entries)
            .where(*conditions)
            .values(**values)
            .returning(self._entries)
        )
        return conn.execute(stmt).mappings().first()


def build_entry_store_gateway(
    *,
    prefer_postgres: bool = True,
    fallback_to_memory: bool = False,
) -> EntryStoreGateway:
    """Factory that returns the desired entry store implementation."""

    if prefer_postgres:
        try:
            return PostgresEntryStoreGateway()
        except Exception:
            if not fallback_to_memory:
                raise
            logger.warning(
                "postgres_entry_store_unavailable_falling_back",
                exc_info=True,
            )
    return InMemoryEntryStoreGateway()


def _require_initial_status(status: str) -> None:
    if status not in INITIAL_STATUSES:
        raise ValueError(f"entries cannot be created with status '{status}'")


def _terminal_write_allowed(entry: Entry, target: str) -> bool:
    """Return False for an already-terminal entry; raise on an illegal edge.

    Only ``processing`` entries may finish; a ``pending`` entry must be moved
    to ``processing`` with ``update_status`` first.
    """

    if is_terminal(entry.status):
        return False
    resolve_next_status(entry.status, target)
    return True


def _upload_already_recorded(entry: Entry, kind: str, path: str) -> bool:
    if kind not in UPLOAD_KINDS:
        raise ValueError(f"unknown upload kind '{kind}'")
    existing = entry.upload_path(kind)
    if existing is None:
        return False
    if existing == path:
        return True
    raise ValueError(
        f"{kind}_path already set for entry {entry.entry_id}; uploads are append-only"
    )


def _row_to_entry(row: Mapping[str, Any]) -> Entry:
    return Entry(
        entry_id=row["id"],
        user_id=row["user_id"],
        status=row["status"],
        local_day=row["local_day"],
        timezone_snapshot=row["timezone_snapshot"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        raw_text=row.get("raw_text"),
        has_text=bool(row.get("has_text")),
        has_image=bool(row.get("has_image")),
        has_audio=bool(row.get("has_audio")),
        image_path=row.get("image_path"),
        audio_path=row.get("audio_path"),
        model_output=row.get("model_output"),
        protein_g=row.get("protein_g"),
        carbs_g=row.get("carbs_g"),
        fat_g=row.get("fat_g"),
        calories_kcal=row.get("calories_kcal"),
        confidence=row.get("confidence"),
        processed_at=row.get("processed_at"),
        metadata=dict(row.get("metadata") or {}),
        error=row.get("error"),
    )
