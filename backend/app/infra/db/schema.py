"""SQLAlchemy Core definition of the ``entries`` table."""

from __future__ import annotations

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

__all__ = ["build_entries_table", "ENTRIES_METADATA", "ENTRIES_TABLE"]

JSON_TYPE = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")


def build_entries_table(metadata: sa.MetaData) -> sa.Table:
    """Attach the ``entries`` table to ``metadata`` and return it."""

    return sa.Table(
        "entries",
        metadata,
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("user_id", sa.String(64), nullable=False, index=True),
        sa.Column("status", sa.String(16), nullable=False),
        sa.Column("raw_text", sa.Text(), nullable=True),
        sa.Column("has_text", sa.Boolean(), nullable=False, default=False),
        sa.Column("has_image", sa.Boolean(), nullable=False, default=False),
        sa.Column("has_audio", sa.Boolean(), nullable=False, default=False),
        sa.Column("image_path", sa.Text(), nullable=True),
        sa.Column("audio_path", sa.Text(), nullable=True),
        sa.Column("model_output", JSON_TYPE, nullable=True),
        sa.Column("protein_g", sa.Float(), nullable=True),
        sa.Column("carbs_g", sa.Float(), nullable=True),
        sa.Column("fat_g", sa.Float(), nullable=True),
        sa.Column("calories_kcal", sa.Float(), nullable=True),
        sa.Column("confidence", sa.Float(), nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("local_day", sa.Date(), nullable=False),
        sa.Column("timezone_snapshot", sa.String(64), nullable=False),
        sa.Column("metadata", JSON_TYPE, nullable=False, default=dict),
        sa.Column("error", JSON_TYPE, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Index("ix_entries_status_updated_at", "status", "updated_at"),
    )


ENTRIES_METADATA = sa.MetaData()
ENTRIES_TABLE = build_entries_table(ENTRIES_METADATA)
