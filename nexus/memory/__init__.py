"""Context assembly, summarization and the long-term memory store."""

from nexus.memory.assembler import AssembledContext, ContextAssembler, build_injected_context, filter_memory_context
from nexus.memory.longterm import (
    LongTermMemoryStore,
    MemoryStoreError,
    NullMemoryStore,
    ZepMemoryStore,
    create_memory_store,
)
from nexus.memory.summarizer import TurnSummarizer, TurnSummary

__all__ = [
    "AssembledContext",
    "ContextAssembler",
    "LongTermMemoryStore",
    "MemoryStoreError",
    "NullMemoryStore",
    "TurnSummarizer",
    "TurnSummary",
    "ZepMemoryStore",
    "build_injected_context",
    "create_memory_store",
    "filter_memory_context",
]
