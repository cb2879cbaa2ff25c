"""Integration tests for MemoryStore against a real database (SQLite or PostgreSQL).

Covers: create/validate, embedding failure persistence + backfill, update
re-embedding, soft delete, listing, similarity search, stats, index rebuild,
bulk import, health check, concurrent deactivation.
"""

from __future__ import annotations

import asyncio

import pytest

from src.infra.errors import DependencyError, NotFoundError, ValidationError
from src.memory.contracts import CreateMemoryInput, MemoryCategory, MemoryPatch
from src.memory.store import MemoryStore
from src.providers.embedding import HashEmbeddingProvider

pytestmark = pytest.mark.integration


class FlakyEmbedder(HashEmbeddingProvider):
    """Hash embeddings that can be switched off to simulate an outage."""

    def __init__(self, dimension: int) -> None:
        super().__init__(dimension)
        self.down = False

    async def embed(self, text: str) -> list[float]:
        if self.down:
            raise ConnectionError("embedding service down")
        return await super().embed(text)


def _input(content: str, *, session_id: str = "s1", **kwargs) -> CreateMemoryInput:
    return CreateMemoryInput(session_id=session_id, content=content, **kwargs)


@pytest.fixture
def flaky(embedder) -> FlakyEmbedder:
    return FlakyEmbedder(embedder.dimension)


@pytest.fixture
def flaky_store(db_session_factory, flaky, memory_settings, fast_retry) -> MemoryStore:
    return MemoryStore(db_session_factory, flaky, memory_settings, retry_policy=fast_retry)


class TestCreateMemory:
    async def test_create_and_get(self, store: MemoryStore) -> None:
        entry = await store.create_memory(
            _input(
                "Thorin is a dwarven fighter",
                user_id="u1",
                category=MemoryCategory.CHARACTER,
                importance=8,
                tags=["party", "party", " dwarf "],
            )
        )
        assert entry.is_active
        assert entry.has_embedding
        assert entry.tags == ("party", "dwarf")
        assert entry.id in store.index

        fetched = await store.get_memory(entry.id)
        assert fetched.content == "Thorin is a dwarven fighter"
        assert fetched.category is MemoryCategory.CHARACTER
        assert fetched.importance == 8
        assert fetched.created_at.tzinfo is not None

    async def test_dict_input_estimates_omitted_importance(self, store: MemoryStore) -> None:
        entry = await store.create_memory(
            {
                "session_id": "s1",
                "content": "URGENT: the dragon attack threatens the quest artifact? Everyone in danger.",
            }
        )
        # 1 base + 2 important + 3 urgent + 1 question
        assert entry.importance == 7
        assert entry.category is MemoryCategory.GENERAL

        plain = await store.create_memory({"session_id": "s1", "content": "The inn has a blue door"})
        assert plain.importance == 1

    async def test_dict_input_uses_default_importance_when_estimation_off(
        self, db_session_factory, embedder, memory_settings, fast_retry
    ) -> None:
        settings = memory_settings.model_copy(update={"estimate_importance": False})
        store = MemoryStore(db_session_factory, embedder, settings, retry_policy=fast_retry)
        entry = await store.create_memory(
            {"session_id": "s1", "content": "The secret quest artifact is cursed"}
        )
        assert entry.importance == 5

    @pytest.mark.parametrize(
        "payload",
        [
            {"session_id": "s1", "content": "x", "importance": 11},
            {"session_id": "s1", "content": "x", "importance": 0},
            {"session_id": "s1", "content": "x", "importance": "5"},
            {"session_id": "s1", "content": "x", "category": "WEATHER"},
            {"session_id": "s1", "content": "   "},
            {"session_id": "", "content": "x"},
            {"session_id": "s1", "content": "x", "mood": "grim"},
        ],
    )
    async def test_invalid_input_leaves_no_record(self, store: MemoryStore, payload) -> None:
        with pytest.raises(ValidationError):
            await store.create_memory(payload)
        page = await store.list_memories("s1")
        assert page.total == 0
        stats = await store.get_stats("s1")
        assert stats.total_memories == 0

    async def test_content_limit_from_settings(
        self, db_session_factory, embedder, memory_settings, fast_retry
    ) -> None:
        small = MemoryStore(
            db_session_factory,
            embedder,
            memory_settings.model_copy(update={"max_content_chars": 10}),
            retry_policy=fast_retry,
        )
        with pytest.raises(ValidationError, match="exceeds 10"):
            await small.create_memory(_input("a" * 11))

    async def test_embedding_failure_persists_without_vector(
        self, flaky_store: MemoryStore, flaky: FlakyEmbedder
    ) -> None:
        flaky.down = True
        with pytest.raises(DependencyError) as exc_info:
            await flaky_store.create_memory(_input("The dragon sleeps under the mountain"))
        entry_id = exc_info.value.entry_id
        assert entry_id is not None

        stored = await flaky_store.get_memory(entry_id)
        assert stored.is_active
        assert not stored.has_embedding
        assert entry_id not in flaky_store.index

        flaky.down = False
        assert await flaky_store.search_memories("dragon mountain", session_id="s1") == []

        report = await flaky_store.backfill_embeddings()
        assert report.embedded == 1
        assert report.failed == 0
        results = await flaky_store.search_memories("dragon mountain", session_id="s1")
        assert [r.entry.id for r in results] == [entry_id]

    async def test_backfill_reports_failures(
        self, flaky_store: MemoryStore, flaky: FlakyEmbedder
    ) -> None:
        flaky.down = True
        with pytest.raises(DependencyError):
            await flaky_store.create_memory(_input("The lich hides a phylactery"))
        report = await flaky_store.backfill_embeddings(session_id="s1")
        assert report.embedded == 0
        assert report.failed == 1
        assert len(report.failed_ids) == 1


class TestUpdateMemory:
    async def test_content_change_reembeds(self, store: MemoryStore) -> None:
        entry = await store.create_memory(_input("The blacksmith sells swords"))
        updated = await store.update_memory(entry.id, {"content": "The baker sells pies"})
        assert updated.content == "The baker sells pies"
        assert updated.has_embedding
        assert updated.updated_at >= entry.updated_at

        hits = await store.search_memories("The baker sells pies", session_id="s1")
        assert hits[0].entry.id == entry.id
        assert hits[0].similarity == pytest.approx(1.0, abs=1e-5)

    async def test_importance_change_refreshes_index_metadata(self, store: MemoryStore) -> None:
        entry = await store.create_memory(_input("The queen distrusts wizards", importance=2))
        assert await store.search_memories("queen", session_id="s1", min_importance=5) == []

        await store.update_memory(entry.id, MemoryPatch(importance=9))
        hits = await store.search_memories("queen", session_id="s1", min_importance=5)
        assert [h.entry.id for h in hits] == [entry.id]

    async def test_tag_update_normalized_like_create(self, store: MemoryStore) -> None:
        entry = await store.create_memory(_input("The ferryman wants silver", tags=["npc"]))
        updated = await store.update_memory(entry.id, {"tags": ["b", "b", " b ", "", "river"]})
        assert updated.tags == ("b", "river")
        assert (await store.get_memory(entry.id)).tags == ("b", "river")

    async def test_update_embed_failure_drops_vector(
        self, flaky_store: MemoryStore, flaky: FlakyEmbedder
    ) -> None:
        entry = await flaky_store.create_memory(_input("The bridge is guarded by trolls"))
        flaky.down = True
        with pytest.raises(DependencyError) as exc_info:
            await flaky_store.update_memory(entry.id, {"content": "The bridge collapsed"})
        assert exc_info.value.entry_id == entry.id

        stored = await flaky_store.get_memory(entry.id)
        assert stored.content == "The bridge collapsed"
        assert not stored.has_embedding
        assert entry.id not in flaky_store.index

    async def test_invalid_patch_rejected(self, store: MemoryStore) -> None:
        entry = await store.create_memory(_input("Rules say crits deal double damage"))
        with pytest.raises(ValidationError):
            await store.update_memory(entry.id, {"importance": 42})
        with pytest.raises(ValidationError):
            await store.update_memory(entry.id, {"category": "NOPE"})

    async def test_update_missing_raises_not_found(self, store: MemoryStore) -> None:
        with pytest.raises(NotFoundError):
            await store.update_memory("does-not-exist", {"importance": 3})


class TestDeleteMemory:
    async def test_soft_delete(self, store: MemoryStore) -> None:
        entry = await store.create_memory(_input("The mayor is a vampire", importance=9))
        await store.delete_memory(entry.id)

        with pytest.raises(NotFoundError):
            await store.get_memory(entry.id)
        assert entry.id not in store.index
        assert await store.search_memories("mayor vampire", session_id="s1") == []

        stats = await store.get_stats("s1")
        assert stats.total_memories == 1
        assert stats.active_memories == 0

    async def test_delete_twice_raises_not_found(self, store: MemoryStore) -> None:
        entry = await store.create_memory(_input("A hidden door in the cellar"))
        await store.delete_memory(entry.id)
        with pytest.raises(NotFoundError):
            await store.delete_memory(entry.id)

    async def test_concurrent_deactivate_counts_each_row_once(self, store: MemoryStore) -> None:
        ids = [(await store.create_memory(_input(f"Memory number {i}"))).id for i in range(6)]
        first, second = await asyncio.gather(
            store.deactivate_many("s1", ids[:4]),
            store.deactivate_many("s1", ids[2:]),
        )
        assert first + second == 6
        assert (await store.list_memories("s1")).total == 0

    async def test_deactivate_many_scoped_to_session(self, store: MemoryStore) -> None:
        other = await store.create_memory(_input("Belongs elsewhere", session_id="s2"))
        assert await store.deactivate_many("s1", [other.id]) == 0
        assert (await store.get_memory(other.id)).is_active


class TestListing:
    async def test_list_newest_first_with_pagination(self, store: MemoryStore) -> None:
        created = [await store.create_memory(_input(f"Entry {i}")) for i in range(5)]
        await store.create_memory(_input("Other session", session_id="s2"))

        page = await store.list_memories("s1", limit=2)
        assert page.total == 5
        assert page.has_more
        assert [e.id for e in page.entries] == [created[4].id, created[3].id]

        last = await store.list_memories("s1", limit=2, offset=4)
        assert [e.id for e in last.entries] == [created[0].id]
        assert not last.has_more

    async def test_list_by_category(self, store: MemoryStore) -> None:
        await store.create_memory(_input("Elara the ranger", category=MemoryCategory.CHARACTER))
        await store.create_memory(_input("The Misty Forest", category=MemoryCategory.LOCATION))
        page = await store.list_memories("s1", category="LOCATION")
        assert [e.content for e in page.entries] == ["The Misty Forest"]

        with pytest.raises(ValidationError):
            await store.list_memories("s1", category="WEATHER")

    async def test_invalid_paging_rejected(self, store: MemoryStore) -> None:
        with pytest.raises(ValidationError):
            await store.list_memories("s1", limit=5, offset=-1)

    async def test_list_top_by_importance_then_recency(self, store: MemoryStore) -> None:
        low = await store.create_memory(_input("Low", importance=2))
        high_old = await store.create_memory(_input("High old", importance=9))
        high_new = await store.create_memory(_input("High new", importance=9))
        top = await store.list_top_memories("s1", limit=3)
        assert [e.id for e in top] == [high_new.id, high_old.id, low.id]


class TestSearch:
    async def test_results_non_increasing_similarity(self, store: MemoryStore) -> None:
        await store.create_memory(_input("The red dragon guards the bridge"))
        await store.create_memory(_input("A dragon egg was found in the cave"))
        await store.create_memory(_input("The tavern serves ale"))

        results = await store.search_memories("dragon bridge", session_id="s1", limit=10)
        assert results
        sims = [r.similarity for r in results]
        assert sims == sorted(sims, reverse=True)
        assert results[0].entry.content == "The red dragon guards the bridge"

    async def test_blank_query_returns_empty(self, store: MemoryStore) -> None:
        await store.create_memory(_input("Anything"))
        assert await store.search_memories("   ", session_id="s1") == []

    async def test_filters_by_session_and_category(self, store: MemoryStore) -> None:
        await store.create_memory(_input("Dragon lore", category=MemoryCategory.STORY_BEAT))
        await store.create_memory(_input("Dragon lair", category=MemoryCategory.LOCATION))
        await store.create_memory(_input("Dragon lore", session_id="s2"))

        results = await store.search_memories(
            "dragon", session_id="s1", categories=[MemoryCategory.LOCATION], min_similarity=-1.0
        )
        assert [r.entry.content for r in results] == ["Dragon lair"]

    async def test_lazy_build_from_storage(
        self, store: MemoryStore, db_session_factory, embedder, memory_settings, fast_retry
    ) -> None:
        entry = await store.create_memory(_input("The oracle speaks in riddles"))

        fresh = MemoryStore(db_session_factory, embedder, memory_settings, retry_policy=fast_retry)
        assert not fresh.index.is_built
        results = await fresh.search_memories("oracle riddles", session_id="s1")
        assert fresh.index.is_built
        assert [r.entry.id for r in results] == [entry.id]

    async def test_rebuild_index(self, store: MemoryStore) -> None:
        for i in range(3):
            await store.create_memory(_input(f"Fact {i} about the kingdom"))
        doomed = await store.create_memory(_input("Soon forgotten"))
        await store.delete_memory(doomed.id)

        assert await store.rebuild_index() == 3
        assert doomed.id not in store.index

    async def test_other_embedding_model_never_mixed(
        self, store: MemoryStore, db_session_factory, memory_settings, fast_retry
    ) -> None:
        entry = await store.create_memory(_input("The moon temple is sealed"))

        migrated = MemoryStore(
            db_session_factory, HashEmbeddingProvider(32), memory_settings, retry_policy=fast_retry
        )
        assert await migrated.search_memories("moon temple", session_id="s1") == []

        report = await migrated.backfill_embeddings()
        assert report.embedded == 1
        results = await migrated.search_memories("moon temple", session_id="s1")
        assert [r.entry.id for r in results] == [entry.id]


class TestStatsAndMaintenance:
    async def test_stats(self, store: MemoryStore) -> None:
        await store.create_memory(_input("A", category=MemoryCategory.CHARACTER, importance=8))
        await store.create_memory(_input("B", category=MemoryCategory.CHARACTER, importance=4))
        gone = await store.create_memory(_input("C", category=MemoryCategory.EVENT, importance=1))
        await store.delete_memory(gone.id)

        stats = await store.get_stats("s1")
        assert stats.total_memories == 3
        assert stats.active_memories == 2
        assert stats.memories_by_category == {"CHARACTER": 2}
        assert stats.average_importance == pytest.approx(6.0)

    async def test_stats_empty_session(self, store: MemoryStore) -> None:
        stats = await store.get_stats("nobody")
        assert stats.total_memories == 0
        assert stats.average_importance == 0.0

    async def test_bulk_import_skips_failures(self, store: MemoryStore) -> None:
        created = await store.bulk_import_memories(
            [
                {"session_id": "s1", "content": "One"},
                {"session_id": "s1", "content": "Two", "importance": 99},
                _input("Three"),
            ]
        )
        assert created == 2
        assert (await store.list_memories("s1")).total == 2

    async def test_health_check(self, flaky_store: MemoryStore, flaky: FlakyEmbedder) -> None:
        healthy = await flaky_store.health_check()
        assert healthy["status"] == "healthy"
        assert healthy["details"]["embedding_dimension"] == flaky.dimension

        flaky.down = True
        unhealthy = await flaky_store.health_check()
        assert unhealthy["status"] == "unhealthy"
        assert "error" in unhealthy["details"]
