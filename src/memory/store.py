"""Memory store: durable MemoryEntry lifecycle + similarity index maintenance.

The store is the only writer to the SimilarityIndex. Each write is applied as
one logical unit per entry: storage commit first, then the index mutation,
both under a per-entry lock. Search hydrates hits from storage and re-checks
is_active, so a reader never sees a soft-deleted entry.
"""

from __future__ import annotations

import asyncio
import uuid
import weakref
from collections.abc import Iterable, Sequence
from contextlib import AsyncExitStack
from typing import TYPE_CHECKING, Any

import structlog
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.infra.errors import (
    DependencyError,
    NotFoundError,
    ValidationError,
    from_pydantic,
)
from src.infra.retry import RetryPolicy, call_with_retry
from src.infra.timeutil import as_utc, utcnow
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
from src.memory.heuristics import estimate_importance
from src.memory.index import IndexedVector, IndexFilter, SimilarityIndex
from src.memory.models import MemoryEntryRecord

if TYPE_CHECKING:
    from src.config.settings import MemorySettings
    from src.providers.embedding import EmbeddingProvider

logger = structlog.get_logger()


def _coerce_category(value: MemoryCategory | str | None) -> MemoryCategory | None:
    if value is None or isinstance(value, MemoryCategory):
        return value
    try:
        return MemoryCategory(value)
    except ValueError:
        raise ValidationError(
            f"Unknown memory category '{value}'. "
            f"Expected one of: {', '.join(c.value for c in MemoryCategory)}"
        ) from None


def _check_page(limit: int, offset: int = 0) -> None:
    if limit <= 0:
        raise ValidationError(f"limit must be positive (got {limit})")
    if offset < 0:
        raise ValidationError(f"offset must be non-negative (got {offset})")


def _to_entry(record: MemoryEntryRecord) -> MemoryEntry:
    return MemoryEntry(
        id=record.id,
        session_id=record.session_id,
        user_id=record.user_id,
        content=record.content,
        category=MemoryCategory(record.category),
        importance=record.importance,
        tags=tuple(record.tags or ()),
        created_at=as_utc(record.created_at),
        updated_at=as_utc(record.updated_at),
        is_active=record.is_active,
        has_embedding=record.embedding is not None,
    )


class MemoryStore:
    """CRUD, soft-delete, listing, search and stats over memory entries."""

    def __init__(
        self,
        db_session_factory: async_sessionmaker[AsyncSession],
        embedder: EmbeddingProvider,
        settings: MemorySettings,
        *,
        index: SimilarityIndex | None = None,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self._db = db_session_factory
        self._embedder = embedder
        self._settings = settings
        self._index = index or SimilarityIndex(embedder.dimension)
        if self._index.dimension != embedder.dimension:
            raise ValueError(
                f"Index dimension {self._index.dimension} does not match "
                f"embedding provider dimension {embedder.dimension}"
            )
        self._retry = retry_policy or RetryPolicy()
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    @property
    def index(self) -> SimilarityIndex:
        return self._index

    # ── Internal helpers ──────────────────────────────────────────────────

    def _lock_for(self, entry_id: str) -> asyncio.Lock:
        lock = self._locks.get(entry_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[entry_id] = lock
        return lock

    async def _embed(self, text: str, *, context: str) -> list[float]:
        vector = await call_with_retry(
            lambda: self._embedder.embed(text), self._retry, context=context
        )
        if len(vector) != self._embedder.dimension:
            raise DependencyError(
                f"Embedding provider returned dimension {len(vector)}, "
                f"expected {self._embedder.dimension}"
            )
        return vector

    def _validate_create(self, data: CreateMemoryInput | dict[str, Any]) -> CreateMemoryInput:
        if isinstance(data, dict):
            payload = dict(data)
            if payload.get("importance") is None:
                content = payload.get("content")
                payload["importance"] = (
                    estimate_importance(content)
                    if self._settings.estimate_importance and isinstance(content, str)
                    else self._settings.default_importance
                )
            try:
                data = CreateMemoryInput.model_validate(payload)
            except PydanticValidationError as e:
                raise from_pydantic(e, context="memory input") from None
        if len(data.content) > self._settings.max_content_chars:
            raise ValidationError(
                f"content exceeds {self._settings.max_content_chars} characters"
            )
        return data

    def _index_item(self, record: MemoryEntryRecord) -> IndexedVector | None:
        if record.embedding is None or record.embedding_model != self._embedder.model:
            return None
        try:
            return self._index.make_item(
                record.id,
                record.embedding,
                session_id=record.session_id,
                user_id=record.user_id,
                category=record.category,
                importance=record.importance,
                created_at=as_utc(record.created_at),
            )
        except ValueError:
            logger.warning(
                "memory_vector_rejected",
                entry_id=record.id,
                dimension=len(record.embedding),
                expected=self._index.dimension,
            )
            return None

    def _sync_index(self, record: MemoryEntryRecord) -> None:
        item = self._index_item(record) if record.is_active else None
        if item is None:
            self._index.remove(record.id)
        else:
            self._index.insert(item)

    async def _load_index_items(self) -> list[IndexedVector]:
        async with self._db() as db:
            result = await db.execute(
                select(MemoryEntryRecord).where(
                    MemoryEntryRecord.is_active.is_(True),
                    MemoryEntryRecord.embedding.is_not(None),
                    MemoryEntryRecord.embedding_model == self._embedder.model,
                )
            )
            records = result.scalars().all()
        items = [self._index_item(r) for r in records]
        return [item for item in items if item is not None]

    # ── Public API ────────────────────────────────────────────────────────

    async def create_memory(self, data: CreateMemoryInput | dict[str, Any]) -> MemoryEntry:
        """Validate, embed, persist and index a new memory entry.

        Raises ValidationError before anything is written. If the embedding
        provider fails after retries the entry is still persisted (without
        vector, invisible to similarity search until backfilled) and
        DependencyError is raised with entry_id set.
        """
        data = self._validate_create(data)

        embedding: list[float] | None = None
        failure: DependencyError | None = None
        try:
            embedding = await self._embed(data.content, context="embed_memory")
        except DependencyError as e:
            failure = e

        now = utcnow()
        record = MemoryEntryRecord(
            id=str(uuid.uuid4()),
            session_id=data.session_id,
            user_id=data.user_id,
            content=data.content,
            category=data.category.value,
            importance=data.importance,
            tags=list(data.tags),
            embedding=embedding,
            embedding_model=self._embedder.model if embedding is not None else None,
            is_active=True,
            created_at=now,
            updated_at=now,
        )

        async with self._lock_for(record.id):
            async with self._db() as db:
                db.add(record)
                await db.commit()
            self._sync_index(record)

        if failure is not None:
            logger.warning(
                "memory_embedding_deferred",
                entry_id=record.id,
                session_id=record.session_id,
                error=str(failure),
            )
            raise DependencyError(
                f"Memory {record.id} stored without embedding: {failure}",
                entry_id=record.id,
            ) from failure

        logger.info(
            "memory_created",
            entry_id=record.id,
            session_id=record.session_id,
            category=record.category,
            importance=record.importance,
        )
        return _to_entry(record)

    async def get_memory(self, memory_id: str) -> MemoryEntry:
        async with self._db() as db:
            record = await db.get(MemoryEntryRecord, memory_id)
        if record is None or not record.is_active:
            raise NotFoundError(f"Memory {memory_id} not found")
        return _to_entry(record)

    async def update_memory(
        self, memory_id: str, patch: MemoryPatch | dict[str, Any]
    ) -> MemoryEntry:
        """Apply a partial update. Re-embeds only when content changed.

        If re-embedding fails, the patch is still saved with the stale vector
        dropped (entry leaves the index) and DependencyError is raised.
        """
        if isinstance(patch, dict):
            try:
                patch = MemoryPatch.model_validate(patch)
            except PydanticValidationError as e:
                raise from_pydantic(e, context="memory patch") from None
        if patch.content is not None and len(patch.content) > self._settings.max_content_chars:
            raise ValidationError(
                f"content exceeds {self._settings.max_content_chars} characters"
            )

        async with self._lock_for(memory_id):
            current = await self.get_memory(memory_id)
            content_changed = patch.content is not None and patch.content != current.content

            embedding: list[float] | None = None
            failure: DependencyError | None = None
            if content_changed:
                try:
                    embedding = await self._embed(patch.content, context="embed_memory_update")
                except DependencyError as e:
                    failure = e

            async with self._db() as db:
                record = await db.get(MemoryEntryRecord, memory_id)
                if record is None or not record.is_active:
                    raise NotFoundError(f"Memory {memory_id} not found")
                if content_changed:
                    record.content = patch.content
                    record.embedding = embedding
                    record.embedding_model = self._embedder.model if embedding is not None else None
                if patch.category is not None:
                    record.category = patch.category.value
                if patch.importance is not None:
                    record.importance = patch.importance
                if patch.tags is not None:
                    record.tags = list(patch.tags)
                record.updated_at = utcnow()
                await db.commit()
            self._sync_index(record)

        if failure is not None:
            raise DependencyError(
                f"Memory {memory_id} updated without embedding: {failure}",
                entry_id=memory_id,
            ) from failure

        logger.info(
            "memory_updated",
            entry_id=memory_id,
            content_changed=content_changed,
            importance=record.importance,
        )
        return _to_entry(record)

    async def delete_memory(self, memory_id: str) -> None:
        """Soft delete: flip is_active and drop the entry from the index."""
        async with self._lock_for(memory_id):
            async with self._db() as db:
                result = await db.execute(
                    update(MemoryEntryRecord)
                    .where(
                        MemoryEntryRecord.id == memory_id,
                        MemoryEntryRecord.is_active.is_(True),
                    )
                    .values(is_active=False, updated_at=utcnow())
                )
                await db.commit()
            if result.rowcount == 0:
                raise NotFoundError(f"Memory {memory_id} not found")
            self._index.remove(memory_id)

        logger.info("memory_deactivated", entry_id=memory_id)

    async def deactivate_many(self, session_id: str, memory_ids: Iterable[str]) -> int:
        """Soft-delete a set of entries of one session.

        Returns the number of rows actually flipped, so concurrent callers
        never count the same removal twice.
        """
        ids = sorted(set(memory_ids))
        if not ids:
            return 0

        async with AsyncExitStack() as stack:
            # Sorted acquisition order: no lock-order inversion between callers.
            for memory_id in ids:
                await stack.enter_async_context(self._lock_for(memory_id))
            async with self._db() as db:
                result = await db.execute(
                    update(MemoryEntryRecord)
                    .where(
                        MemoryEntryRecord.session_id == session_id,
                        MemoryEntryRecord.id.in_(ids),
                        MemoryEntryRecord.is_active.is_(True),
                    )
                    .values(is_active=False, updated_at=utcnow())
                )
                await db.commit()
            for memory_id in ids:
                self._index.remove(memory_id)

        return result.rowcount

    async def list_memories(
        self,
        session_id: str,
        *,
        category: MemoryCategory | str | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> MemoryPage:
        """Active entries of a session, newest first."""
        limit = limit or self._settings.list_default_limit
        _check_page(limit, offset)
        cat = _coerce_category(category)

        conditions = [
            MemoryEntryRecord.session_id == session_id,
            MemoryEntryRecord.is_active.is_(True),
        ]
        if cat is not None:
            conditions.append(MemoryEntryRecord.category == cat.value)

        async with self._db() as db:
            total = await db.scalar(
                select(func.count()).select_from(MemoryEntryRecord).where(*conditions)
            )
            result = await db.execute(
                select(MemoryEntryRecord)
                .where(*conditions)
                .order_by(MemoryEntryRecord.created_at.desc(), MemoryEntryRecord.id.desc())
                .limit(limit)
                .offset(offset)
            )
            records = result.scalars().all()

        total = total or 0
        return MemoryPage(
            entries=[_to_entry(r) for r in records],
            total=total,
            has_more=total > offset + limit,
        )

    async def list_top_memories(
        self,
        session_id: str,
        *,
        categories: Sequence[MemoryCategory | str] | None = None,
        limit: int | None = 10,
    ) -> list[MemoryEntry]:
        """Active entries ranked by importance, then recency. limit=None returns all."""
        if limit is not None:
            _check_page(limit)
        conditions = [
            MemoryEntryRecord.session_id == session_id,
            MemoryEntryRecord.is_active.is_(True),
        ]
        if categories:
            values = [_coerce_category(c).value for c in categories]  # type: ignore[union-attr]
            conditions.append(MemoryEntryRecord.category.in_(values))

        stmt = (
            select(MemoryEntryRecord)
            .where(*conditions)
            .order_by(
                MemoryEntryRecord.importance.desc(),
                MemoryEntryRecord.created_at.desc(),
                MemoryEntryRecord.id.desc(),
            )
        )
        async with self._db() as db:
            if limit is not None:
                stmt = stmt.limit(limit)
            result = await db.execute(stmt)
            return [_to_entry(r) for r in result.scalars().all()]

    async def search_memories(
        self,
        query: str,
        *,
        session_id: str | None = None,
        user_id: str | None = None,
        category: MemoryCategory | str | None = None,
        categories: Sequence[MemoryCategory | str] | None = None,
        min_importance: int | None = None,
        limit: int | None = None,
        min_similarity: float | None = None,
    ) -> list[MemorySearchResult]:
        """Embed the query and rank active entries by cosine similarity.

        Returns results sorted by similarity DESC. Blank queries and empty
        result sets are normal empty responses.
        """
        if not query or not query.strip():
            return []
        limit = limit or self._settings.search_default_limit
        _check_page(limit)

        wanted: set[str] = set()
        if category is not None:
            wanted.add(_coerce_category(category).value)  # type: ignore[union-attr]
        for c in categories or ():
            wanted.add(_coerce_category(c).value)  # type: ignore[union-attr]

        await self._index.ensure_built(self._load_index_items)
        vector = await self._embed(query.strip(), context="embed_query")

        filters = IndexFilter(
            session_id=session_id,
            user_id=user_id,
            categories=frozenset(wanted) if wanted else None,
            min_importance=min_importance,
        )
        threshold = (
            min_similarity if min_similarity is not None else self._settings.search_min_similarity
        )
        hits = self._index.search(vector, filters, limit, min_similarity=threshold)
        if not hits:
            logger.info("memory_search", query=query[:50], session_id=session_id, results=0)
            return []

        async with self._db() as db:
            result = await db.execute(
                select(MemoryEntryRecord).where(
                    MemoryEntryRecord.id.in_([h.entry_id for h in hits]),
                    MemoryEntryRecord.is_active.is_(True),
                )
            )
            by_id = {r.id: r for r in result.scalars().all()}

        results = [
            MemorySearchResult(entry=_to_entry(by_id[h.entry_id]), similarity=h.score)
            for h in hits
            if h.entry_id in by_id
        ]
        logger.info(
            "memory_search",
            query=query[:50],
            session_id=session_id,
            results=len(results),
        )
        return results

    async def get_stats(self, session_id: str) -> MemoryStats:
        """Totals include tombstones; category counts and average cover active entries."""
        active = [
            MemoryEntryRecord.session_id == session_id,
            MemoryEntryRecord.is_active.is_(True),
        ]
        async with self._db() as db:
            total = await db.scalar(
                select(func.count())
                .select_from(MemoryEntryRecord)
                .where(MemoryEntryRecord.session_id == session_id)
            )
            rows = await db.execute(
                select(MemoryEntryRecord.category, func.count())
                .where(*active)
                .group_by(MemoryEntryRecord.category)
            )
            by_category = {category: count for category, count in rows.all()}
            avg = await db.scalar(select(func.avg(MemoryEntryRecord.importance)).where(*active))

        return MemoryStats(
            total_memories=total or 0,
            active_memories=sum(by_category.values()),
            memories_by_category=by_category,
            average_importance=float(avg) if avg is not None else 0.0,
        )

    async def rebuild_index(self) -> int:
        """Full re-index from storage; readers keep using the old snapshot meanwhile."""
        return await self._index.rebuild(self._load_index_items)

    async def backfill_embeddings(
        self, *, session_id: str | None = None, batch_size: int | None = None
    ) -> BackfillReport:
        """Embed active entries that have no vector from the current model."""
        batch_size = batch_size or self._settings.backfill_batch_size
        _check_page(batch_size)

        conditions = [
            MemoryEntryRecord.is_active.is_(True),
            or_(
                MemoryEntryRecord.embedding.is_(None),
                MemoryEntryRecord.embedding_model.is_(None),
                MemoryEntryRecord.embedding_model != self._embedder.model,
            ),
        ]
        if session_id is not None:
            conditions.append(MemoryEntryRecord.session_id == session_id)

        async with self._db() as db:
            result = await db.execute(
                select(MemoryEntryRecord.id, MemoryEntryRecord.content)
                .where(*conditions)
                .order_by(MemoryEntryRecord.created_at)
                .limit(batch_size)
            )
            pending = result.all()

        report = BackfillReport()
        for memory_id, content in pending:
            try:
                vector = await self._embed(content, context="embed_backfill")
            except DependencyError:
                report.failed += 1
                report.failed_ids.append(memory_id)
                continue

            async with self._lock_for(memory_id):
                async with self._db() as db:
                    record = await db.get(MemoryEntryRecord, memory_id)
                    # Skip entries deleted or rewritten while we were embedding.
                    if record is None or not record.is_active or record.content != content:
                        continue
                    record.embedding = vector
                    record.embedding_model = self._embedder.model
                    await db.commit()
                self._sync_index(record)
            report.embedded += 1

        logger.info(
            "memory_backfill_complete",
            session_id=session_id,
            embedded=report.embedded,
            failed=report.failed,
        )
        return report

    async def bulk_import_memories(
        self, inputs: Sequence[CreateMemoryInput | dict[str, Any]]
    ) -> int:
        """Create many entries; failures are logged and skipped. Returns successes."""
        created = 0
        for data in inputs:
            try:
                await self.create_memory(data)
                created += 1
            except (ValidationError, DependencyError) as e:
                logger.warning("memory_import_failed", error=str(e), code=e.code)
        logger.info("memory_bulk_import_complete", created=created, total=len(inputs))
        return created

    async def health_check(self) -> dict[str, Any]:
        """Probe storage and the embedding provider. Never raises."""
        details: dict[str, Any] = {
            "timestamp": utcnow().isoformat(),
            "embedding_model": self._embedder.model,
            "embedding_dimension": self._embedder.dimension,
            "index_built": self._index.is_built,
            "index_entries": len(self._index),
        }
        try:
            async with self._db() as db:
                await db.execute(select(1))
            await self._embed("health check", context="embed_health")
        except Exception as e:  # driver-specific connection errors included
            logger.exception("memory_health_check_failed")
            details["error"] = str(e)
            return {"status": "unhealthy", "details": details}
        return {"status": "healthy", "details": details}
