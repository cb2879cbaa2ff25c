"""Tests for SimilarityIndex: ranking, filtering, tie-breaks and rebuild-while-serving."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta

import numpy as np
import pytest

from src.memory.index import IndexFilter, SimilarityIndex, normalize

DIM = 4
T0 = datetime(2026, 1, 1, tzinfo=UTC)


def _item(
    index: SimilarityIndex,
    entry_id: str,
    vector: list[float],
    *,
    session_id: str = "s1",
    user_id: str | None = None,
    category: str = "GENERAL",
    importance: int = 5,
    age_minutes: int = 0,
):
    return index.make_item(
        entry_id,
        vector,
        session_id=session_id,
        user_id=user_id,
        category=category,
        importance=importance,
        created_at=T0 - timedelta(minutes=age_minutes),
    )


class TestNormalize:
    def test_unit_length_and_read_only(self) -> None:
        v = normalize([3.0, 4.0, 0.0, 0.0], DIM)
        assert np.isclose(np.linalg.norm(v), 1.0)
        with pytest.raises(ValueError):
            v[0] = 1.0

    def test_wrong_dimension_rejected(self) -> None:
        with pytest.raises(ValueError, match="dimension"):
            normalize([1.0, 0.0], DIM)

    def test_zero_vector_rejected(self) -> None:
        with pytest.raises(ValueError):
            normalize([0.0] * DIM, DIM)


class TestSearch:
    def test_ranked_by_cosine_similarity(self) -> None:
        index = SimilarityIndex(DIM)
        index.insert(_item(index, "exact", [1, 0, 0, 0]))
        index.insert(_item(index, "close", [1, 1, 0, 0]))
        index.insert(_item(index, "orthogonal", [0, 0, 1, 0]))

        hits = index.search([1, 0, 0, 0], limit=3)
        assert [h.entry_id for h in hits] == ["exact", "close", "orthogonal"]
        scores = [h.score for h in hits]
        assert scores == sorted(scores, reverse=True)
        assert hits[0].score == pytest.approx(1.0)

    def test_ties_broken_by_recency_then_id(self) -> None:
        index = SimilarityIndex(DIM)
        index.insert(_item(index, "old", [1, 0, 0, 0], age_minutes=10))
        index.insert(_item(index, "new-b", [1, 0, 0, 0], age_minutes=0))
        index.insert(_item(index, "new-a", [1, 0, 0, 0], age_minutes=0))

        hits = index.search([1, 0, 0, 0], limit=3)
        assert [h.entry_id for h in hits] == ["new-a", "new-b", "old"]

    def test_filters_applied(self) -> None:
        index = SimilarityIndex(DIM)
        index.insert(_item(index, "a", [1, 0, 0, 0], session_id="s1", category="CHARACTER", importance=8))
        index.insert(_item(index, "b", [1, 0, 0, 0], session_id="s2", category="CHARACTER", importance=8))
        index.insert(_item(index, "c", [1, 0, 0, 0], session_id="s1", category="LOCATION", importance=8))
        index.insert(_item(index, "d", [1, 0, 0, 0], session_id="s1", category="CHARACTER", importance=2))
        index.insert(_item(index, "e", [1, 0, 0, 0], session_id="s1", user_id="u9", category="CHARACTER", importance=9))

        filters = IndexFilter(session_id="s1", categories=frozenset({"CHARACTER"}), min_importance=5)
        assert {h.entry_id for h in index.search([1, 0, 0, 0], filters, 10)} == {"a", "e"}

        by_user = IndexFilter(user_id="u9")
        assert [h.entry_id for h in index.search([1, 0, 0, 0], by_user, 10)] == ["e"]

    def test_min_similarity_and_limit(self) -> None:
        index = SimilarityIndex(DIM)
        index.insert(_item(index, "a", [1, 0, 0, 0]))
        index.insert(_item(index, "b", [1, 1, 0, 0]))
        index.insert(_item(index, "c", [0, 1, 0, 0]))

        hits = index.search([1, 0, 0, 0], limit=10, min_similarity=0.5)
        assert [h.entry_id for h in hits] == ["a", "b"]
        assert len(index.search([1, 0, 0, 0], limit=1)) == 1
        assert index.search([1, 0, 0, 0], limit=0) == []

    def test_insert_replaces_and_remove_deletes(self) -> None:
        index = SimilarityIndex(DIM)
        index.insert(_item(index, "a", [1, 0, 0, 0]))
        index.insert(_item(index, "a", [0, 1, 0, 0]))
        assert len(index) == 1
        assert index.search([0, 1, 0, 0], limit=1)[0].score == pytest.approx(1.0)

        index.remove("a")
        index.remove("missing")
        assert "a" not in index
        assert index.search([1, 0, 0, 0]) == []

    def test_wrong_dimension_query_rejected(self) -> None:
        index = SimilarityIndex(DIM)
        with pytest.raises(ValueError):
            index.search([1.0, 0.0])


class TestRebuild:
    async def test_ensure_built_loads_once(self) -> None:
        index = SimilarityIndex(DIM)
        calls = 0

        async def loader():
            nonlocal calls
            calls += 1
            return [_item(index, "a", [1, 0, 0, 0])]

        await asyncio.gather(index.ensure_built(loader), index.ensure_built(loader))
        await index.ensure_built(loader)
        assert calls == 1
        assert index.is_built
        assert "a" in index

    async def test_rebuild_replays_concurrent_mutations(self) -> None:
        index = SimilarityIndex(DIM)
        index.insert(_item(index, "stale", [0, 0, 1, 0]))
        index.insert(_item(index, "doomed", [0, 1, 0, 0]))
        loader_started = asyncio.Event()
        release_loader = asyncio.Event()

        async def loader():
            loader_started.set()
            await release_loader.wait()
            # Snapshot of storage taken before the concurrent writes below.
            return [_item(index, "doomed", [0, 1, 0, 0]), _item(index, "kept", [1, 0, 0, 0])]

        task = asyncio.create_task(index.rebuild(loader))
        await loader_started.wait()
        assert index.rebuilding

        # Live index keeps serving reads and accepting writes during the rebuild.
        assert {h.entry_id for h in index.search([0, 0, 1, 0], limit=5)} >= {"stale"}
        index.insert(_item(index, "fresh", [1, 1, 0, 0]))
        index.remove("doomed")

        release_loader.set()
        count = await task

        assert not index.rebuilding
        assert count == 2
        assert "fresh" in index
        assert "kept" in index
        assert "doomed" not in index
        assert "stale" not in index
