"""Database models for the palette tagging pipeline."""

import enum
from datetime import datetime
from typing import Optional
from uuid import uuid4

from sqlalchemy import (
    JSON,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from palette_tagging.db.session import Base


class BatchStatus(str, enum.Enum):
    """Processing status reported by the external batch API."""

    IN_PROGRESS = "in_progress"
    CANCELING = "canceling"
    ENDED = "ended"


class PaletteSeed(Base):
    """A known palette seed eligible for tagging."""

    __tablename__ = "palette_seeds"

    seed: Mapped[str] = mapped_column(String(512), primary_key=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )


class ProviderTagResult(Base):
    """Raw output of one provider for one seed, run and prompt version."""

    __tablename__ = "palette_tags"
    __table_args__ = (
        CheckConstraint(
            "(tags IS NULL) <> (error IS NULL)", name="ck_palette_tags_tags_xor_error"
        ),
        Index("ix_palette_tags_seed_run_version", "seed", "run_number", "prompt_version"),
        Index("ix_palette_tags_prompt_version", "prompt_version"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid4()))
    seed: Mapped[str] = mapped_column(String(512), index=True)
    provider: Mapped[str] = mapped_column(String(100))
    model: Mapped[str] = mapped_column(String(200))
    run_number: Mapped[int] = mapped_column(Integer)
    prompt_version: Mapped[str] = mapped_column(String(32))
    tags: Mapped[Optional[dict]] = mapped_column(JSON(none_as_null=True), nullable=True)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )


class Refinement(Base):
    """Curated tag set for one seed at one source prompt version."""

    __tablename__ = "palette_tag_refinements"
    __table_args__ = (
        UniqueConstraint("seed", "source_prompt_version", name="uq_refinement_seed_source_version"),
        CheckConstraint(
            "(refined_tags IS NULL) <> (error IS NULL)",
            name="ck_refinements_tags_xor_error",
        ),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid4()))
    seed: Mapped[str] = mapped_column(String(512), index=True)
    model: Mapped[str] = mapped_column(String(200))
    prompt_version: Mapped[str] = mapped_column(String(32))  # Refinement instructions
    source_prompt_version: Mapped[str] = mapped_column(String(32), index=True)
    input_summary: Mapped[Optional[dict]] = mapped_column(JSON(none_as_null=True), nullable=True)
    refined_tags: Mapped[Optional[dict]] = mapped_column(JSON(none_as_null=True), nullable=True)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    batch_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )


class RefinementBatch(Base):
    """A submitted bulk refinement job and its correlation map."""

    __tablename__ = "refinement_batches"

    batch_id: Mapped[str] = mapped_column(String(100), primary_key=True)
    status: Mapped[str] = mapped_column(String(20), default=BatchStatus.IN_PROGRESS.value)
    model: Mapped[str] = mapped_column(String(200))
    source_prompt_version: Mapped[str] = mapped_column(String(32))
    request_count: Mapped[int] = mapped_column(Integer, default=0)
    correlation_map: Mapped[dict] = mapped_column(JSON, default=dict)  # correlation id -> seed

    # Reconciliation outcome
    stored_count: Mapped[int] = mapped_column(Integer, default=0)
    error_count: Mapped[int] = mapped_column(Integer, default=0)
    skipped_count: Mapped[int] = mapped_column(Integer, default=0)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    ended_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
