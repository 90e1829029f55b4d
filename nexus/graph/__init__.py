"""Temporal memory graph."""

from nexus.graph.linker import GraphLinker
from nexus.graph.locks import ProjectLockRegistry

__all__ = ["GraphLinker", "ProjectLockRegistry"]
