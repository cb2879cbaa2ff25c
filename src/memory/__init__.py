"""Memory module: durable entries, similarity index, retention."""

from src.memory.contracts import (
    BackfillReport,
    CreateMemoryInput,
    MemoryCategory,
    MemoryEntry,
    MemoryPage,
    MemoryPatch,
    MemorySearchResult,
    MemoryStats,
)
from src.memory.index import IndexFilter, IndexHit, SimilarityIndex
from src.memory.models import MemoryEntryRecord
from src.memory.retention import RetentionPlan, RetentionPolicy
from src.memory.store import MemoryStore

__all__ = [
    "BackfillReport",
    "CreateMemoryInput",
    "IndexFilter",
    "IndexHit",
    "MemoryCategory",
    "MemoryEntry",
    "MemoryEntryRecord",
    "MemoryPage",
    "MemoryPatch",
    "MemorySearchResult",
    "MemoryStats",
    "MemoryStore",
    "RetentionPlan",
    "RetentionPolicy",
    "SimilarityIndex",
]
