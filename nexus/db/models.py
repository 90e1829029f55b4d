"""
SQLAlchemy ORM models.

Projects own turns; every turn is projected into exactly one graph node, and
nodes are chained per project by ``follows`` edges.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base

Base = declarative_base()

EDGE_FOLLOWS = "follows"
EDGE_SIMILAR = "similar"
EDGE_TYPES = (EDGE_FOLLOWS, EDGE_SIMILAR)


def utcnow() -> datetime:
    """Naive UTC timestamp; all stored times use this convention."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid.uuid4())


class Project(Base):
    __tablename__ = "projects"

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String, nullable=False, index=True)
    name = Column(String, nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)


class MemorySession(Base):
    """Identifiers used to address the long-term memory store for a project."""

    __tablename__ = "project_memory"

    project_id = Column(String(36), ForeignKey("projects.id", ondelete="CASCADE"), primary_key=True)
    user_id = Column(String, nullable=False)
    session_id = Column(String, nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)


class Turn(Base):
    """
    One user/assistant exchange and the exact context that was sent.

    Compression columns are null when the pinned context went out uncompressed.
    """

    __tablename__ = "turns"

    id = Column(String(36), primary_key=True, default=new_id)
    project_id = Column(String(36), ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True)
    provider = Column(String, nullable=False)
    model = Column(String, nullable=False)
    user_text = Column(Text, nullable=False)
    assistant_text = Column(Text, nullable=False)
    injected_context_text = Column(Text, nullable=False)
    compression_aggressiveness = Column(Float, nullable=True)
    compression_max_output_tokens = Column(Integer, nullable=True)
    compression_min_output_tokens = Column(Integer, nullable=True)
    compression_input_tokens = Column(Integer, nullable=True)
    compression_output_tokens = Column(Integer, nullable=True)
    compression_ratio = Column(Float, nullable=True)
    compression_time_ms = Column(Float, nullable=True)
    latency_ms = Column(Integer, nullable=True)
    provider_request_id = Column(String, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class GraphNode(Base):
    __tablename__ = "graph_nodes"
    __table_args__ = (
        Index("ix_graph_nodes_project_created", "project_id", "created_at"),
    )

    id = Column(String(36), primary_key=True, default=new_id)
    project_id = Column(String(36), ForeignKey("projects.id", ondelete="CASCADE"), nullable=False)
    turn_id = Column(String(36), ForeignKey("turns.id", ondelete="CASCADE"), nullable=False, unique=True)
    # Per-project insertion order; breaks created_at ties
    position = Column(Integer, nullable=False, default=0)
    title = Column(String, nullable=True)
    summary = Column(Text, nullable=False)
    pinned = Column(Boolean, nullable=False, default=False)
    user_edited = Column(Boolean, nullable=False, default=False)
    deleted_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None


class GraphEdge(Base):
    __tablename__ = "graph_edges"
    __table_args__ = (
        UniqueConstraint("project_id", "src_node_id", "dst_node_id", "rel_type", name="uq_graph_edges"),
    )

    id = Column(String(36), primary_key=True, default=new_id)
    project_id = Column(String(36), ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True)
    src_node_id = Column(String(36), ForeignKey("graph_nodes.id", ondelete="CASCADE"), nullable=False)
    dst_node_id = Column(String(36), ForeignKey("graph_nodes.id", ondelete="CASCADE"), nullable=False)
    rel_type = Column(String, nullable=False, default=EDGE_FOLLOWS)
    weight = Column(Float, nullable=False, default=1.0)
