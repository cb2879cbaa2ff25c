"""Context assembly: turn conversations into memories and memories into prompt context."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import structlog
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.exc import SQLAlchemyError

from src.context.token_budget import BudgetStatus, TokenCounter
from src.conversation.contracts import NewMessage
from src.infra.errors import DependencyError, ValidationError, from_pydantic
from src.infra.retry import RetryPolicy, call_with_retry
from src.memory.contracts import (
    CreateMemoryInput,
    MemoryCategory,
    MemoryEntry,
    MemoryStats,
)
from src.providers.extraction import RuleBasedExtractionProvider

if TYPE_CHECKING:
    from src.config.settings import ContextSettings
    from src.conversation.contracts import ConversationMessage
    from src.conversation.manager import ConversationHistoryManager
    from src.memory.store import MemoryStore
    from src.providers.extraction import ExtractionProvider, FactCandidate, Turn

logger = structlog.get_logger()


@dataclass
class ExtractionReport:
    candidates: int = 0
    created: int = 0
    failed: int = 0
    memory_ids: list[str] = field(default_factory=list)
    # Persisted without embedding; recover with backfill_embeddings.
    deferred_ids: list[str] = field(default_factory=list)


@dataclass
class MemoryContext:
    """Memories, recent excerpt and stats for one narrative generation call."""

    session_id: str
    memories: list[MemoryEntry] = field(default_factory=list)
    similarities: dict[str, float] = field(default_factory=dict)
    recent_messages: list[ConversationMessage] = field(default_factory=list)
    stats: MemoryStats = field(default_factory=MemoryStats)
    query: str | None = None
    degraded: bool = False
    memory_max_chars: int = 300
    budget: BudgetStatus | None = None

    def render_lines(self) -> list[str]:
        lines: list[str] = []
        if self.memories:
            lines.append("[Campaign Memories]")
            for entry in self.memories:
                content = entry.content
                if len(content) > self.memory_max_chars:
                    content = content[: self.memory_max_chars].rstrip() + "..."
                score = self.similarities.get(entry.id)
                relevance = f", relevance {score:.2f}" if score is not None else ""
                lines.append(
                    f"- ({entry.category.value}, importance {entry.importance}{relevance}) {content}"
                )
        if self.recent_messages:
            lines.append("[Recent Conversation]")
            for message in self.recent_messages:
                lines.append(f"{message.role.value}: {message.content}")
        if self.stats.total_memories:
            categories = ", ".join(
                f"{name}={count}" for name, count in sorted(self.stats.memories_by_category.items())
            )
            lines.append(
                f"[Memory Stats] {self.stats.active_memories} active of "
                f"{self.stats.total_memories} total; {categories}"
            )
        return lines

    def render(self) -> str:
        return "\n".join(self.render_lines())


class ContextAssembler:
    """Bridges the conversation log, the extraction provider and the memory store."""

    def __init__(
        self,
        store: MemoryStore,
        conversations: ConversationHistoryManager,
        extractor: ExtractionProvider,
        settings: ContextSettings,
        *,
        extraction_fallback: bool = True,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self._store = store
        self._conversations = conversations
        self._extractor = extractor
        self._settings = settings
        self._fallback = RuleBasedExtractionProvider() if extraction_fallback else None
        self._retry = retry_policy or RetryPolicy()
        self._counter = TokenCounter(settings.tokenizer_model)

    async def _extract(self, messages: Sequence[Turn]) -> list[FactCandidate]:
        extractor = self._extractor
        try:
            return await call_with_retry(
                lambda: extractor.extract_facts(messages), self._retry, context="extract_facts"
            )
        except DependencyError as e:
            if self._fallback is None or extractor is self._fallback:
                raise
            logger.warning("extraction_fallback", error=str(e), messages=len(messages))
            return await self._fallback.extract_facts(messages)

    async def process_conversation_into_memories(
        self,
        session_id: str,
        user_id: str | None,
        messages: Sequence[Turn | dict[str, Any]],
    ) -> ExtractionReport:
        """Extract durable facts from messages and store each as a memory.

        Plain dict messages are validated like add_messages input; a malformed
        one raises ValidationError before extraction. Per-candidate failures are
        counted, not raised. Raises DependencyError only when extraction itself
        fails and fallback is disabled.
        """
        turns: list[Turn] = []
        for raw in messages:
            if not isinstance(raw, dict):
                turns.append(raw)
                continue
            try:
                turns.append(NewMessage.model_validate(raw))
            except PydanticValidationError as e:
                raise from_pydantic(e, context="message") from None

        report = ExtractionReport()
        if not turns:
            return report

        candidates = await self._extract(turns)
        report.candidates = len(candidates)

        for candidate in candidates:
            tags = list(dict.fromkeys([*candidate.tags, "conversation"]))
            try:
                data = CreateMemoryInput(
                    session_id=session_id,
                    user_id=user_id,
                    content=candidate.content,
                    category=candidate.category,
                    importance=candidate.importance,
                    tags=tags,
                )
            except ValueError as e:
                # pydantic.ValidationError subclasses ValueError
                report.failed += 1
                logger.warning("memory_candidate_invalid", session_id=session_id, error=str(e))
                continue

            try:
                entry = await self._store.create_memory(data)
            except ValidationError as e:
                report.failed += 1
                logger.warning("memory_candidate_invalid", session_id=session_id, error=str(e))
            except DependencyError as e:
                report.failed += 1
                if e.entry_id is not None:
                    report.deferred_ids.append(e.entry_id)
                logger.warning("memory_candidate_deferred", session_id=session_id, entry_id=e.entry_id)
            except SQLAlchemyError:
                report.failed += 1
                logger.exception("memory_candidate_storage_failed", session_id=session_id)
            else:
                report.created += 1
                report.memory_ids.append(entry.id)

        logger.info(
            "conversation_processed",
            session_id=session_id,
            messages=len(turns),
            candidates=report.candidates,
            created=report.created,
            failed=report.failed,
        )
        return report

    async def get_memory_context(
        self,
        session_id: str,
        *,
        query: str | None = None,
        categories: Sequence[MemoryCategory | str] | None = None,
        limit: int | None = None,
    ) -> MemoryContext:
        """Relevant (or most important) memories + recent excerpt + stats, within max_tokens."""
        limit = limit or self._settings.memory_limit
        context = MemoryContext(
            session_id=session_id,
            query=query,
            memory_max_chars=self._settings.memory_max_chars,
        )

        if query and query.strip():
            try:
                results = await self._store.search_memories(
                    query, session_id=session_id, categories=categories, limit=limit
                )
                context.memories = [r.entry for r in results]
                context.similarities = {r.entry.id: r.similarity for r in results}
            except DependencyError as e:
                logger.warning("memory_context_degraded", session_id=session_id, error=str(e))
                context.degraded = True
                context.memories = await self._store.list_top_memories(
                    session_id, categories=categories, limit=limit
                )
        else:
            context.memories = await self._store.list_top_memories(
                session_id, categories=categories, limit=limit
            )

        context.recent_messages = await self._conversations.get_recent_messages(
            session_id, self._settings.recent_window
        )
        context.stats = await self._store.get_stats(session_id)

        self._trim(context)
        return context

    def _trim(self, context: MemoryContext) -> None:
        """Drop oldest excerpt messages, then lowest-ranked memories, until within budget."""
        max_tokens = self._settings.max_tokens
        used = self._counter.count_lines(context.render_lines())
        dropped_messages = dropped_memories = 0
        while used > max_tokens and (context.recent_messages or context.memories):
            if context.recent_messages:
                context.recent_messages.pop(0)
                dropped_messages += 1
            else:
                removed = context.memories.pop()
                context.similarities.pop(removed.id, None)
                dropped_memories += 1
            used = self._counter.count_lines(context.render_lines())

        if dropped_messages or dropped_memories:
            logger.info(
                "memory_context_trimmed",
                session_id=context.session_id,
                dropped_messages=dropped_messages,
                dropped_memories=dropped_memories,
                tokens=used,
                max_tokens=max_tokens,
            )
        context.budget = BudgetStatus(
            used_tokens=used,
            max_tokens=max_tokens,
            tokenizer_mode=self._counter.tokenizer_mode,
        )
        if not context.budget.within_budget:
            # Only the stats line is left and it alone exceeds max_tokens.
            logger.warning(
                "memory_context_over_budget",
                session_id=context.session_id,
                tokens=used,
                max_tokens=max_tokens,
            )
