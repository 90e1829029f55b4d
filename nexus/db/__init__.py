"""Persistence layer."""

from nexus.db.engine import Database
from nexus.db.models import Base, GraphEdge, GraphNode, MemorySession, Project, Turn

__all__ = ["Base", "Database", "GraphEdge", "GraphNode", "MemorySession", "Project", "Turn"]
