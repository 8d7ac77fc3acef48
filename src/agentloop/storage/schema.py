"""SQLAlchemy ORM schema for the checkpoint store.

Defines the tables: checkpoints (latest checkpoint per run) and
_agentloop_meta (schema version).
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, Index, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from agentloop.models.outcome import LoopStatus


class Base(DeclarativeBase):
    """Base class for all agentloop ORM models."""

    pass


class CheckpointRow(Base):
    """Latest serialized checkpoint of one loop run.

    ``payload_json`` holds the output of ``persistence.serialize``; the other
    columns duplicate summary fields so listings never decode payloads.
    """

    __tablename__ = "checkpoints"

    run_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    status: Mapped[LoopStatus] = mapped_column(nullable=False)
    turn_count: Mapped[int] = mapped_column(Integer, nullable=False)
    iterations: Mapped[int] = mapped_column(Integer, nullable=False)
    max_iterations: Mapped[int] = mapped_column(Integer, nullable=False)
    payload_json: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    __table_args__ = (Index("ix_checkpoints_updated", "updated_at"),)


class StoreMetaRow(Base):
    """Key-value metadata for the store itself (e.g., schema version)."""

    __tablename__ = "_agentloop_meta"

    key: Mapped[str] = mapped_column(String(255), primary_key=True)
    value: Mapped[str] = mapped_column(Text, nullable=False)
