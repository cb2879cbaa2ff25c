"""Append-only conversation log with history, keyword search, summaries and cleanup."""

from __future__ import annotations

import re
from collections import Counter
from collections.abc import Sequence
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

import structlog
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import and_, delete, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.conversation.contracts import (
    ConversationMessage,
    ConversationStats,
    ConversationSummary,
    HistoryPage,
    MessageRole,
    NewMessage,
    SearchHit,
    TimeRange,
)
from src.conversation.models import ConversationMessageRecord, ConversationSessionRecord
from src.infra.database import upsert_for
from src.infra.errors import DependencyError, ValidationError, from_pydantic
from src.infra.retry import RetryPolicy, call_with_retry
from src.infra.timeutil import as_utc, utcnow
from src.providers.extraction import extract_key_topics, participants_of

if TYPE_CHECKING:
    from src.config.settings import ConversationSettings
    from src.providers.extraction import ExtractionProvider

logger = structlog.get_logger()

EMPTY_SUMMARY = "No messages found in the specified time range."
FALLBACK_SUMMARY = "Summary unavailable."

_WORD_RE = re.compile(r"\w+", re.UNICODE)


def _to_message(record: ConversationMessageRecord) -> ConversationMessage:
    return ConversationMessage(
        session_id=record.session_id,
        seq=record.seq,
        role=MessageRole(record.role),
        content=record.content,
        timestamp=as_utc(record.timestamp),
        user_id=record.user_id,
    )


def _check_session_id(session_id: str) -> None:
    if not session_id or not session_id.strip() or len(session_id) > 128:
        raise ValidationError("session_id must be a non-empty string of at most 128 characters")


def _escape_like(text: str) -> str:
    return text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def relevance_score(content: str, query: str) -> float:
    """Phrase hit +10, each query word present +5, damped for long messages."""
    lowered = content.lower()
    phrase = query.lower().strip()
    score = 0.0
    if phrase and phrase in lowered:
        score += 10
    words = set(_WORD_RE.findall(lowered))
    for qword in dict.fromkeys(_WORD_RE.findall(phrase)):
        if qword in words:
            score += 5
    return score / max(len(content) / 100, 1)


class ConversationHistoryManager:
    """Ordered per-session message log backed by SQLAlchemy.

    Sequence numbers are allocated in blocks by an atomic upsert on the
    session row, so concurrent appends to one session never collide or
    reorder messages within a batch.
    """

    def __init__(
        self,
        db_session_factory: async_sessionmaker[AsyncSession],
        settings: ConversationSettings,
        *,
        summarizer: ExtractionProvider | None = None,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self._db = db_session_factory
        self._settings = settings
        self._summarizer = summarizer
        self._retry = retry_policy or RetryPolicy()

    # ── Writes ────────────────────────────────────────────────────────────

    async def add_messages(
        self, session_id: str, messages: Sequence[NewMessage | dict[str, Any]]
    ) -> list[ConversationMessage]:
        """Append a batch in order. Validates everything before writing anything."""
        _check_session_id(session_id)
        validated: list[NewMessage] = []
        for raw in messages:
            if isinstance(raw, NewMessage):
                validated.append(raw)
                continue
            try:
                validated.append(NewMessage.model_validate(raw))
            except PydanticValidationError as e:
                raise from_pydantic(e, context="message") from None
        if not validated:
            return []

        n = len(validated)
        now = utcnow()
        async with self._db() as db:
            table = ConversationSessionRecord.__table__
            stmt = upsert_for(db, table).values(
                id=session_id, next_seq=n, created_at=now, updated_at=now
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=["id"],
                set_={"next_seq": table.c.next_seq + n, "updated_at": now},
            ).returning(table.c.next_seq - n)
            first_seq = (await db.execute(stmt)).scalar_one()

            records = [
                ConversationMessageRecord(
                    session_id=session_id,
                    seq=first_seq + i,
                    role=msg.role.value,
                    content=msg.content,
                    user_id=msg.user_id,
                    timestamp=msg.timestamp or now,
                )
                for i, msg in enumerate(validated)
            ]
            db.add_all(records)
            await db.commit()

        logger.info(
            "messages_appended",
            session_id=session_id,
            count=n,
            first_seq=first_seq,
        )
        return [_to_message(r) for r in records]

    async def cleanup_old_conversations(
        self,
        session_id: str,
        keep_days: int | None = None,
        keep_count: int | None = None,
    ) -> int:
        """Delete messages that are older than keep_days AND outside the newest keep_count.

        A message survives if either condition protects it. Single statement;
        returns the number of rows deleted.
        """
        keep_days = self._settings.keep_days if keep_days is None else keep_days
        keep_count = self._settings.keep_count if keep_count is None else keep_count
        if keep_days < 0 or keep_count < 0:
            raise ValidationError("keep_days and keep_count must be non-negative")

        cutoff = utcnow() - timedelta(days=keep_days)
        msg = ConversationMessageRecord
        # seq of the newest message NOT protected by keep_count (NULL if all are protected).
        boundary = (
            select(msg.seq)
            .where(msg.session_id == session_id)
            .order_by(msg.seq.desc())
            .offset(keep_count)
            .limit(1)
            .scalar_subquery()
        )
        async with self._db() as db:
            result = await db.execute(
                delete(msg).where(
                    msg.session_id == session_id,
                    msg.timestamp < cutoff,
                    msg.seq <= boundary,
                )
            )
            await db.commit()

        removed = result.rowcount or 0
        logger.info(
            "conversation_cleanup_complete",
            session_id=session_id,
            keep_days=keep_days,
            keep_count=keep_count,
            removed=removed,
        )
        return removed

    # ── Reads ─────────────────────────────────────────────────────────────

    @staticmethod
    def _window_conditions(
        session_id: str, start_date: datetime | None, end_date: datetime | None
    ) -> list[Any]:
        conditions: list[Any] = [ConversationMessageRecord.session_id == session_id]
        if start_date is not None:
            conditions.append(ConversationMessageRecord.timestamp >= as_utc(start_date))
        if end_date is not None:
            conditions.append(ConversationMessageRecord.timestamp <= as_utc(end_date))
        return conditions

    async def get_conversation_history(
        self,
        session_id: str,
        *,
        limit: int | None = None,
        offset: int = 0,
        start_date: datetime | None = None,
        end_date: datetime | None = None,
    ) -> HistoryPage:
        """A page of the log, oldest to newest."""
        limit = self._settings.history_default_limit if limit is None else limit
        if limit <= 0 or offset < 0:
            raise ValidationError("limit must be positive and offset non-negative")
        conditions = self._window_conditions(session_id, start_date, end_date)

        async with self._db() as db:
            total = await db.scalar(
                select(func.count()).select_from(ConversationMessageRecord).where(*conditions)
            )
            result = await db.execute(
                select(ConversationMessageRecord)
                .where(*conditions)
                .order_by(ConversationMessageRecord.seq)
                .limit(limit)
                .offset(offset)
            )
            records = result.scalars().all()

        total = total or 0
        return HistoryPage(
            messages=[_to_message(r) for r in records],
            total_count=total,
            has_more=total > offset + limit,
        )

    async def get_recent_messages(self, session_id: str, limit: int = 10) -> list[ConversationMessage]:
        """Newest `limit` messages, returned chronologically."""
        if limit <= 0:
            return []
        async with self._db() as db:
            result = await db.execute(
                select(ConversationMessageRecord)
                .where(ConversationMessageRecord.session_id == session_id)
                .order_by(ConversationMessageRecord.seq.desc())
                .limit(limit)
            )
            records = list(result.scalars().all())
        records.reverse()
        return [_to_message(r) for r in records]

    async def _neighbours(
        self, db: AsyncSession, session_id: str, seq: int, context_size: int
    ) -> tuple[list[ConversationMessageRecord], list[ConversationMessageRecord]]:
        if context_size <= 0:
            return [], []
        msg = ConversationMessageRecord
        before = await db.execute(
            select(msg)
            .where(msg.session_id == session_id, msg.seq < seq)
            .order_by(msg.seq.desc())
            .limit(context_size)
        )
        after = await db.execute(
            select(msg)
            .where(msg.session_id == session_id, msg.seq > seq)
            .order_by(msg.seq)
            .limit(context_size)
        )
        earlier = list(before.scalars().all())
        earlier.reverse()
        return earlier, list(after.scalars().all())

    async def search_conversation_history(
        self,
        session_id: str,
        query: str,
        *,
        limit: int | None = None,
        context_size: int | None = None,
    ) -> list[SearchHit]:
        """Case-insensitive keyword search with surrounding context.

        A message matches when it contains the whole query phrase or every
        query word. The top `limit` matches by relevance (newest first on ties)
        each get up to `context_size` neighbours on either side; windows that
        overlap are merged into a single hit.
        """
        limit = self._settings.search_default_limit if limit is None else limit
        context_size = self._settings.search_context_size if context_size is None else context_size
        if limit <= 0 or context_size < 0:
            raise ValidationError("limit must be positive and context_size non-negative")
        phrase = query.strip() if query else ""
        if not phrase:
            return []

        msg = ConversationMessageRecord
        words = list(dict.fromkeys(_WORD_RE.findall(phrase.lower())))
        phrase_match = msg.content.ilike(f"%{_escape_like(phrase)}%", escape="\\")
        match_clause = phrase_match
        if words:
            match_clause = or_(
                phrase_match,
                and_(*[msg.content.ilike(f"%{_escape_like(w)}%", escape="\\") for w in words]),
            )

        async with self._db() as db:
            result = await db.execute(
                select(msg).where(msg.session_id == session_id, match_clause)
            )
            matched = list(result.scalars().all())

            scored = sorted(
                ((relevance_score(r.content, phrase), r) for r in matched),
                key=lambda pair: (-pair[0], -pair[1].seq),
            )[:limit]

            windows: list[tuple[float, list[ConversationMessageRecord], list[ConversationMessageRecord]]] = []
            for score, record in scored:
                earlier, later = await self._neighbours(db, session_id, record.seq, context_size)
                windows.append((score, [record], [*earlier, record, *later]))

        hits = self._merge_windows(windows)
        logger.info(
            "conversation_search",
            session_id=session_id,
            query=phrase[:50],
            matches=len(scored),
            hits=len(hits),
        )
        return hits

    @staticmethod
    def _merge_windows(
        windows: list[tuple[float, list[ConversationMessageRecord], list[ConversationMessageRecord]]],
    ) -> list[SearchHit]:
        if not windows:
            return []
        windows.sort(key=lambda w: w[2][0].seq)
        merged: list[tuple[float, dict[int, ConversationMessageRecord], dict[int, ConversationMessageRecord]]] = []
        for score, matches, context in windows:
            if merged and context[0].seq <= max(merged[-1][2]):
                best, prev_matches, prev_context = merged[-1]
                prev_matches.update({m.seq: m for m in matches})
                prev_context.update({m.seq: m for m in context})
                merged[-1] = (max(best, score), prev_matches, prev_context)
            else:
                merged.append(
                    (score, {m.seq: m for m in matches}, {m.seq: m for m in context})
                )

        hits = [
            SearchHit(
                matches=[_to_message(matches[s]) for s in sorted(matches)],
                messages=[_to_message(context[s]) for s in sorted(context)],
                relevance_score=score,
            )
            for score, matches, context in merged
        ]
        hits.sort(key=lambda h: (-h.relevance_score, -h.matches[-1].seq))
        return hits

    async def get_conversation_summary(
        self,
        session_id: str,
        *,
        start_date: datetime | None = None,
        end_date: datetime | None = None,
        max_messages: int | None = None,
    ) -> ConversationSummary:
        """Summarize the most recent `max_messages` messages in the window.

        Falls back to a deterministic keyword summary (degraded=True) when the
        summarization provider is missing or fails after retries.
        """
        max_messages = self._settings.summary_max_messages if max_messages is None else max_messages
        if max_messages <= 0:
            raise ValidationError("max_messages must be positive")
        conditions = self._window_conditions(session_id, start_date, end_date)

        async with self._db() as db:
            result = await db.execute(
                select(ConversationMessageRecord)
                .where(*conditions)
                .order_by(ConversationMessageRecord.seq.desc())
                .limit(max_messages)
            )
            records = list(result.scalars().all())
        records.reverse()
        window = [_to_message(r) for r in records]

        if not window:
            return ConversationSummary(summary=EMPTY_SUMMARY, message_count=0)

        time_range = TimeRange(start=window[0].timestamp, end=window[-1].timestamp)
        local_participants = participants_of(window)

        if self._summarizer is not None:
            summarizer = self._summarizer
            try:
                draft = await call_with_retry(
                    lambda: summarizer.summarize(window, max_messages),
                    self._retry,
                    context="summarize_conversation",
                )
            except DependencyError as e:
                logger.warning("conversation_summary_degraded", session_id=session_id, error=str(e))
            else:
                return ConversationSummary(
                    summary=draft.summary,
                    message_count=len(window),
                    key_topics=draft.topics or extract_key_topics(window),
                    participants=draft.participants or local_participants,
                    time_range=time_range,
                )

        return ConversationSummary(
            summary=FALLBACK_SUMMARY,
            message_count=len(window),
            key_topics=extract_key_topics(window),
            participants=local_participants,
            time_range=time_range,
            degraded=True,
        )

    async def get_conversation_stats(self, session_id: str) -> ConversationStats:
        async with self._db() as db:
            result = await db.execute(
                select(
                    ConversationMessageRecord.role,
                    ConversationMessageRecord.content,
                    ConversationMessageRecord.timestamp,
                )
                .where(ConversationMessageRecord.session_id == session_id)
                .order_by(ConversationMessageRecord.seq)
            )
            rows = result.all()

        if not rows:
            return ConversationStats()

        total = len(rows)
        by_role = Counter(role for role, _, _ in rows)
        stamps = [as_utc(ts) for _, _, ts in rows]
        duration = (max(stamps) - min(stamps)).total_seconds()
        hours = Counter(ts.hour for ts in stamps)
        # Ties go to the earliest hour of the day.
        busiest = min(hours, key=lambda h: (-hours[h], h))

        return ConversationStats(
            total_messages=total,
            messages_by_role=dict(by_role),
            average_message_length=sum(len(content) for _, content, _ in rows) / total,
            duration_seconds=duration,
            messages_per_hour=total / (duration / 3600) if duration > 0 else 0.0,
            most_active_hour=f"{busiest:02d}:00",
        )
