"""Retention policy: bound the number of active memories per session."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import structlog

from src.constants import IMPORTANCE_MAX, IMPORTANCE_MIN
from src.infra.errors import ValidationError

if TYPE_CHECKING:
    from src.config.settings import MemorySettings
    from src.memory.store import MemoryStore

logger = structlog.get_logger()


@dataclass
class RetentionPlan:
    """Dry-run outcome: which active entries would survive a cleanup."""

    keep_ids: list[str] = field(default_factory=list)
    evict_ids: list[str] = field(default_factory=list)


class RetentionPolicy:
    """Keeps the keep_count most important active entries at or above a floor.

    Entries below min_importance are always evicted; the rest are ranked by
    (importance desc, recency desc) and everything past keep_count is
    soft-deleted through the store.
    """

    def __init__(self, store: MemoryStore, settings: MemorySettings) -> None:
        self._store = store
        self._settings = settings

    def _resolve(self, keep_count: int | None, min_importance: int | None) -> tuple[int, int]:
        keep = self._settings.retention_keep_count if keep_count is None else keep_count
        floor = (
            self._settings.retention_min_importance if min_importance is None else min_importance
        )
        if keep < 0:
            raise ValidationError(f"keep_count must be non-negative (got {keep})")
        if not IMPORTANCE_MIN <= floor <= IMPORTANCE_MAX:
            raise ValidationError(
                f"min_importance must be between {IMPORTANCE_MIN} and {IMPORTANCE_MAX} "
                f"(got {floor})"
            )
        return keep, floor

    async def evaluate(
        self,
        session_id: str,
        keep_count: int | None = None,
        min_importance: int | None = None,
    ) -> RetentionPlan:
        keep, floor = self._resolve(keep_count, min_importance)
        ranked = await self._store.list_top_memories(session_id, limit=None)

        plan = RetentionPlan()
        for entry in ranked:
            if entry.importance >= floor and len(plan.keep_ids) < keep:
                plan.keep_ids.append(entry.id)
            else:
                plan.evict_ids.append(entry.id)
        return plan

    async def cleanup_memories(
        self,
        session_id: str,
        keep_count: int | None = None,
        min_importance: int | None = None,
    ) -> int:
        """Soft-delete everything outside the plan. Returns rows actually flipped."""
        plan = await self.evaluate(session_id, keep_count, min_importance)
        if not plan.evict_ids:
            logger.info("memory_cleanup_noop", session_id=session_id, kept=len(plan.keep_ids))
            return 0

        removed = await self._store.deactivate_many(session_id, plan.evict_ids)
        logger.info(
            "memory_cleanup_complete",
            session_id=session_id,
            kept=len(plan.keep_ids),
            planned=len(plan.evict_ids),
            removed=removed,
        )
        return removed
