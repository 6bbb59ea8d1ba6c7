"""
KnowledgeMCP Models - Schema for captured knowledge and its relationship graph.

Tables:
- knowledge: Every record (checkpoints, checklists, technical debt, insights, work notes)
- relationships: Typed, directed graph edges between records
- overflow_sets: Full result sets persisted when a response exceeded its token budget
"""

from sqlalchemy import (
    Column, Integer, String, Text, JSON, DateTime, Boolean, ForeignKey, Index, UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase
from datetime import datetime, timezone


class Base(DeclarativeBase):
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Knowledge(Base):
    """
    A single captured record.

    Kinds:
    - Checkpoint: session snapshot; carries session_id + sequence_number
    - Checklist: ordered items with completion flags (kept in attributes)
    - TechnicalDebt, Insight, WorkNote: free-form notes

    Ids are chronological strings, so ordering by id is ordering by creation.
    """
    __tablename__ = "knowledge"

    id = Column(String, primary_key=True)

    kind = Column(String, nullable=False, index=True)

    body = Column(Text, nullable=False)

    workspace = Column(String, nullable=False, index=True)

    tags = Column(JSON, default=list)

    # Free-form filter values, never interpreted
    status = Column(String, nullable=True, index=True)
    priority = Column(String, nullable=True, index=True)

    # Kind-specific structured fields (checklist items, active files, ...)
    attributes = Column(JSON, default=dict)

    # Checkpoint sequencing - only set for kind == Checkpoint
    session_id = Column(String, nullable=True, index=True)
    sequence_number = Column(Integer, nullable=True)

    archived = Column(Boolean, default=False)

    access_count = Column(Integer, default=0)

    created_at = Column(DateTime, default=_utcnow, index=True)
    modified_at = Column(DateTime, default=_utcnow, index=True)
    last_accessed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint("workspace", "session_id", "sequence_number", name="uq_checkpoint_sequence"),
    )


class KnowledgeRelationship(Base):
    """
    Directed, typed edge between two records.

    The (from_id, to_id, relationship_type) triple is the primary key, so
    re-linking the same triple overwrites its metadata instead of duplicating.
    Edges are removed with either endpoint.
    """
    __tablename__ = "relationships"

    from_id = Column(String, ForeignKey("knowledge.id", ondelete="CASCADE"), primary_key=True)
    to_id = Column(String, ForeignKey("knowledge.id", ondelete="CASCADE"), primary_key=True)
    relationship_type = Column(String, primary_key=True)

    metadata_ = Column("metadata", JSON, default=dict)

    created_at = Column(DateTime, default=_utcnow)

    __table_args__ = (
        Index("idx_relationships_from", "from_id"),
        Index("idx_relationships_to", "to_id"),
    )


class OverflowSet(Base):
    """
    A full ranked result set that did not fit in a caller's token budget.

    Write-once; read back only by exact handle.
    """
    __tablename__ = "overflow_sets"

    handle = Column(String, primary_key=True)
    category = Column(String, nullable=False, index=True)
    item_count = Column(Integer, nullable=False)
    payload = Column(JSON, nullable=False)
    created_at = Column(DateTime, default=_utcnow)
