"""In-memory cosine similarity index over active memory entries.

Lifecycle: created empty by MemoryStore, built lazily on first search or
explicitly via rebuild(). Rebuild constructs a fresh snapshot off to the side
while the live one keeps serving reads; mutations that land during the rebuild
are journaled and replayed before the atomic swap.

Vectors are stored L2-normalised and read-only, so cosine similarity is a dot
product and a reader can never observe a half-written vector.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from datetime import datetime

import numpy as np
import structlog

logger = structlog.get_logger()


@dataclass(frozen=True)
class IndexedVector:
    """Vector + filterable metadata for one memory entry."""

    entry_id: str
    vector: np.ndarray
    session_id: str
    user_id: str | None
    category: str
    importance: int
    created_at: datetime


@dataclass(frozen=True)
class IndexFilter:
    session_id: str | None = None
    user_id: str | None = None
    categories: frozenset[str] | None = None
    min_importance: int | None = None

    def matches(self, item: IndexedVector) -> bool:
        if self.session_id is not None and item.session_id != self.session_id:
            return False
        if self.user_id is not None and item.user_id != self.user_id:
            return False
        if self.categories is not None and item.category not in self.categories:
            return False
        if self.min_importance is not None and item.importance < self.min_importance:
            return False
        return True


@dataclass(frozen=True)
class IndexHit:
    entry_id: str
    score: float


def normalize(vector: Iterable[float], dimension: int) -> np.ndarray:
    """Return a read-only unit vector. Raises ValueError on bad shape or zero norm."""
    arr = np.asarray(list(vector), dtype=np.float32)
    if arr.ndim != 1 or arr.shape[0] != dimension:
        raise ValueError(f"Expected vector of dimension {dimension}, got shape {arr.shape}")
    norm = float(np.linalg.norm(arr))
    if norm == 0.0 or not np.isfinite(norm):
        raise ValueError("Cannot index a zero or non-finite vector")
    arr = arr / norm
    arr.setflags(write=False)
    return arr


class _Snapshot:
    """A plain id -> IndexedVector mapping. Replacing a key is a single assignment."""

    def __init__(self) -> None:
        self.items: dict[str, IndexedVector] = {}

    def upsert(self, item: IndexedVector) -> None:
        self.items[item.entry_id] = item

    def discard(self, entry_id: str) -> None:
        self.items.pop(entry_id, None)


Loader = Callable[[], Awaitable[Iterable[IndexedVector]]]


class SimilarityIndex:
    """Cosine nearest-neighbour search scoped by session/user/category/importance."""

    def __init__(self, dimension: int) -> None:
        self._dimension = dimension
        self._snapshot = _Snapshot()
        self._built = False
        self._rebuilding = False
        self._journal: list[tuple[str, IndexedVector | str]] = []
        self._rebuild_lock = asyncio.Lock()

    @property
    def dimension(self) -> int:
        return self._dimension

    @property
    def is_built(self) -> bool:
        return self._built

    @property
    def rebuilding(self) -> bool:
        return self._rebuilding

    def __len__(self) -> int:
        return len(self._snapshot.items)

    def __contains__(self, entry_id: object) -> bool:
        return entry_id in self._snapshot.items

    def make_item(
        self,
        entry_id: str,
        vector: Iterable[float],
        *,
        session_id: str,
        user_id: str | None,
        category: str,
        importance: int,
        created_at: datetime,
    ) -> IndexedVector:
        return IndexedVector(
            entry_id=entry_id,
            vector=normalize(vector, self._dimension),
            session_id=session_id,
            user_id=user_id,
            category=category,
            importance=importance,
            created_at=created_at,
        )

    def insert(self, item: IndexedVector) -> None:
        """Add or replace an entry."""
        if item.vector.shape != (self._dimension,):
            raise ValueError(
                f"Expected vector of dimension {self._dimension}, got {item.vector.shape}"
            )
        self._snapshot.upsert(item)
        if self._rebuilding:
            self._journal.append(("upsert", item))

    def remove(self, entry_id: str) -> None:
        self._snapshot.discard(entry_id)
        if self._rebuilding:
            self._journal.append(("remove", entry_id))

    def search(
        self,
        query_vector: Iterable[float],
        filters: IndexFilter | None = None,
        limit: int = 10,
        *,
        min_similarity: float | None = None,
    ) -> list[IndexHit]:
        """Rank matching entries by cosine similarity.

        Ties are broken by descending created_at, then entry id, so the order is
        total for any fixed query and filter set.
        """
        if limit <= 0:
            return []
        query = normalize(query_vector, self._dimension)
        filters = filters or IndexFilter()

        # Bind the snapshot once; a concurrent swap does not affect this scan.
        snapshot = self._snapshot
        candidates = [item for item in list(snapshot.items.values()) if filters.matches(item)]
        if not candidates:
            return []

        matrix = np.stack([item.vector for item in candidates])
        scores = matrix @ query

        ranked = sorted(
            zip(candidates, scores.tolist(), strict=True),
            key=lambda pair: (-pair[1], -pair[0].created_at.timestamp(), pair[0].entry_id),
        )
        hits: list[IndexHit] = []
        for item, score in ranked:
            if min_similarity is not None and score < min_similarity:
                continue
            hits.append(IndexHit(entry_id=item.entry_id, score=float(score)))
            if len(hits) >= limit:
                break
        return hits

    async def ensure_built(self, loader: Loader) -> None:
        """Build on first use. Concurrent first callers share one build."""
        if self._built:
            return
        async with self._rebuild_lock:
            if self._built:
                return
            await self._rebuild_locked(loader)

    async def rebuild(self, loader: Loader) -> int:
        """Full re-index from durable storage without blocking readers.

        Returns the number of entries in the swapped-in snapshot.
        """
        async with self._rebuild_lock:
            return await self._rebuild_locked(loader)

    async def _rebuild_locked(self, loader: Loader) -> int:
        self._rebuilding = True
        self._journal = []
        try:
            fresh = _Snapshot()
            skipped = 0
            for item in await loader():
                if item.vector.shape != (self._dimension,):
                    skipped += 1
                    continue
                fresh.upsert(item)

            # Replay mutations that raced with the load.
            for op, payload in self._journal:
                if op == "upsert":
                    fresh.upsert(payload)  # type: ignore[arg-type]
                else:
                    fresh.discard(payload)  # type: ignore[arg-type]

            self._snapshot = fresh
            self._built = True
        finally:
            self._rebuilding = False
            self._journal = []

        logger.info(
            "similarity_index_rebuilt",
            entries=len(fresh.items),
            skipped=skipped,
            dimension=self._dimension,
        )
        return len(fresh.items)
