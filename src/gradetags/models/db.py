"""
SQLAlchemy database models for gradetags.

These models represent the taxonomy pipeline's state machines, the durable
tag and ability dictionaries, and the derived aggregate tables. The
``assignments`` and ``submissions`` tables belong to the grading platform;
only the columns the pipeline reads are mapped here.
"""

import enum
import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy.sql import func

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests); None stays SQL NULL
JSONType = JSON(none_as_null=True).with_variant(JSONB(none_as_null=True), "postgresql")


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class AssignmentTagStatus(str, enum.Enum):
    """Lifecycle of the per-assignment clustering state machine."""

    IDLE = "idle"
    PENDING = "pending"  # Debounce window open, waiting to become due
    RUNNING = "running"  # Claimed by a sweep
    READY = "ready"
    FAILED = "failed"  # Retryable
    INSUFFICIENT_SAMPLES = "insufficient_samples"  # Terminal, not an error


class MergeStateStatus(str, enum.Enum):
    """Lifecycle of the per-owner dictionary merge state machine."""

    IDLE = "idle"
    PENDING = "pending"
    RUNNING = "running"
    FAILED = "failed"


class DictionaryStatus(str, enum.Enum):
    """Status of a tag or ability dictionary entry."""

    ACTIVE = "active"
    MERGED = "merged"  # Superseded; merged_to_tag_id points at the canonical


class MappingSource(str, enum.Enum):
    """Origin of a tag to ability mapping."""

    AI = "ai"
    MANUAL = "manual"


class Assignment(Base):
    """Assignment owned by a teacher account (grading platform table)."""

    __tablename__ = "assignments"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    owner_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    domain: Mapped[Optional[str]] = mapped_column(
        String(128), nullable=True, index=True
    )  # Null maps to the "uncategorized" rollup bucket

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<Assignment(id={self.id!r}, owner_id={self.owner_id!r}, domain={self.domain!r})>"


class Submission(Base):
    """Student submission with its structured grading result (grading platform table)."""

    __tablename__ = "submissions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    owner_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    assignment_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    student_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    status: Mapped[str] = mapped_column(
        String(32), nullable=False, default="pending", server_default="pending"
    )  # 'pending', 'graded', ...
    grading_result: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    __table_args__ = (
        Index("ix_submissions_owner_assignment", "owner_id", "assignment_id"),
    )

    def __repr__(self) -> str:
        return (
            f"<Submission(id={self.id!r}, assignment_id={self.assignment_id!r}, "
            f"status={self.status!r})>"
        )


class AssignmentTagState(Base):
    """Debounce state machine driving the clustering job for one assignment."""

    __tablename__ = "assignment_tag_state"

    owner_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    assignment_id: Mapped[str] = mapped_column(String(64), primary_key=True)

    status: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        default=AssignmentTagStatus.IDLE.value,
        server_default=AssignmentTagStatus.IDLE.value,
        index=True,
    )
    sample_count: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    window_started_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    last_event_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    next_run_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True, index=True
    )
    last_generated_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    dirty: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default="false"
    )  # A grading event arrived since the last claim
    manual_locked: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default="false"
    )  # Pins status to ready and removes the row from scheduling

    model: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    prompt_version: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    def __repr__(self) -> str:
        return (
            f"<AssignmentTagState(owner_id={self.owner_id!r}, "
            f"assignment_id={self.assignment_id!r}, status={self.status!r}, "
            f"dirty={self.dirty}, manual_locked={self.manual_locked})>"
        )


class TagDictionaryEntry(Base):
    """Canonical tag label for one owner.

    Entries are never deleted; duplicates are superseded by pointing
    ``merged_to_tag_id`` at an active canonical entry.
    """

    __tablename__ = "tag_dictionary"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    owner_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    label: Mapped[str] = mapped_column(String(255), nullable=False)
    normalized_label: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        default=DictionaryStatus.ACTIVE.value,
        server_default=DictionaryStatus.ACTIVE.value,
    )
    merged_to_tag_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("tag_dictionary.id", ondelete="SET NULL"), nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    __table_args__ = (
        # Normalized labels are unique among active entries only
        Index(
            "uq_tag_dictionary_active_label",
            "owner_id",
            "normalized_label",
            unique=True,
            postgresql_where=text("status = 'active'"),
            sqlite_where=text("status = 'active'"),
        ),
        Index("ix_tag_dictionary_owner_normalized", "owner_id", "normalized_label"),
    )

    merged_to: Mapped[Optional["TagDictionaryEntry"]] = relationship(
        remote_side="TagDictionaryEntry.id"
    )

    @property
    def is_active(self) -> bool:
        return self.status == DictionaryStatus.ACTIVE.value

    def __repr__(self) -> str:
        return (
            f"<TagDictionaryEntry(id={self.id}, label={self.label!r}, "
            f"status={self.status!r})>"
        )


class TagDictionaryMergeState(Base):
    """Per-owner debounce state machine for the dictionary merge job."""

    __tablename__ = "tag_dictionary_state"

    owner_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    status: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        default=MergeStateStatus.IDLE.value,
        server_default=MergeStateStatus.IDLE.value,
        index=True,
    )
    dirty: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default="false"
    )  # New labels arrived while the merge was running
    window_started_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    next_run_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    last_merged_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    model: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    prompt_version: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    def __repr__(self) -> str:
        return (
            f"<TagDictionaryMergeState(owner_id={self.owner_id!r}, "
            f"status={self.status!r})>"
        )


class AssignmentTagAggregate(Base):
    """Ranked tag for one assignment. Replaced as a set on every run."""

    __tablename__ = "assignment_tag_aggregates"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    owner_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    assignment_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    tag_label: Mapped[str] = mapped_column(String(255), nullable=False)
    tag_count: Mapped[int] = mapped_column(Integer, nullable=False)
    examples: Mapped[Optional[list]] = mapped_column(JSONType, nullable=True)

    generated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    model: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)  # 'manual' for overrides
    prompt_version: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)

    __table_args__ = (
        UniqueConstraint(
            "owner_id",
            "assignment_id",
            "tag_label",
            name="uq_assignment_tag_aggregate",
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<AssignmentTagAggregate(assignment_id={self.assignment_id!r}, "
            f"tag_label={self.tag_label!r}, tag_count={self.tag_count})>"
        )


class DomainTagAggregate(Base):
    """Rule-based rollup of assignment tags over one domain."""

    __tablename__ = "domain_tag_aggregates"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    owner_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    domain: Mapped[str] = mapped_column(String(128), nullable=False)
    tag_label: Mapped[str] = mapped_column(String(255), nullable=False)
    tag_count: Mapped[int] = mapped_column(Integer, nullable=False)
    assignment_count: Mapped[int] = mapped_column(Integer, nullable=False)
    sample_count: Mapped[int] = mapped_column(Integer, nullable=False)

    generated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    model: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    prompt_version: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)

    __table_args__ = (
        UniqueConstraint(
            "owner_id", "domain", "tag_label", name="uq_domain_tag_aggregate"
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<DomainTagAggregate(domain={self.domain!r}, "
            f"tag_label={self.tag_label!r}, tag_count={self.tag_count})>"
        )


class AbilityDictionaryEntry(Base):
    """Coarse ability category for one owner (create-if-absent, no merging)."""

    __tablename__ = "ability_dictionary"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    owner_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    label: Mapped[str] = mapped_column(String(255), nullable=False)
    normalized_label: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        default=DictionaryStatus.ACTIVE.value,
        server_default=DictionaryStatus.ACTIVE.value,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    __table_args__ = (
        UniqueConstraint(
            "owner_id", "normalized_label", name="uq_ability_dictionary_label"
        ),
    )

    def __repr__(self) -> str:
        return f"<AbilityDictionaryEntry(id={self.id}, label={self.label!r})>"


class TagAbilityMapping(Base):
    """Classification of a tag into an ability category."""

    __tablename__ = "tag_ability_map"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    owner_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    tag_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("tag_dictionary.id", ondelete="CASCADE"), nullable=False
    )
    ability_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("ability_dictionary.id", ondelete="CASCADE"), nullable=False
    )
    confidence: Mapped[Optional[float]] = mapped_column(Float, nullable=True)  # 0.0 to 1.0
    source: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        default=MappingSource.AI.value,
        server_default=MappingSource.AI.value,
    )

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    __table_args__ = (
        UniqueConstraint(
            "owner_id", "tag_id", "ability_id", name="uq_tag_ability_mapping"
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<TagAbilityMapping(tag_id={self.tag_id}, ability_id={self.ability_id}, "
            f"source={self.source!r})>"
        )


class AbilityAggregate(Base):
    """Confidence-weighted rollup of tag counts per ability category."""

    __tablename__ = "ability_aggregates"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    owner_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    ability_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("ability_dictionary.id", ondelete="CASCADE"), nullable=False
    )
    total_count: Mapped[float] = mapped_column(Float, nullable=False)
    assignment_count: Mapped[int] = mapped_column(Integer, nullable=False)
    domain_count: Mapped[int] = mapped_column(Integer, nullable=False)

    generated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    model: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    prompt_version: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)

    __table_args__ = (
        UniqueConstraint("owner_id", "ability_id", name="uq_ability_aggregate"),
    )

    ability: Mapped["AbilityDictionaryEntry"] = relationship()

    def __repr__(self) -> str:
        return (
            f"<AbilityAggregate(ability_id={self.ability_id}, "
            f"total_count={self.total_count:.2f})>"
        )
