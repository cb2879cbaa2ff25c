"""Fact extraction and conversation summarization providers.

LLMExtractionProvider asks a chat model for structured JSON.
RuleBasedExtractionProvider is the deterministic keyword fallback used when
the model is unavailable (or configured as the primary provider offline).
"""

from __future__ import annotations

import json
import re
from abc import ABC, abstractmethod
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any, Protocol

import structlog

from src.constants import IMPORTANCE_MAX, IMPORTANCE_MIN
from src.memory.contracts import MemoryCategory
from src.memory.heuristics import estimate_importance

if TYPE_CHECKING:
    from src.providers.model_client import ModelClient

logger = structlog.get_logger()


class Turn(Protocol):
    """Anything with a role and content (NewMessage, ConversationMessage)."""

    role: Any
    content: str


@dataclass(frozen=True)
class FactCandidate:
    content: str
    category: MemoryCategory = MemoryCategory.GENERAL
    importance: int = 5
    tags: tuple[str, ...] = ()


@dataclass
class SummaryDraft:
    summary: str
    topics: list[str] = field(default_factory=list)
    participants: list[str] = field(default_factory=list)


class ExtractionProvider(ABC):
    @abstractmethod
    async def extract_facts(self, messages: Sequence[Turn]) -> list[FactCandidate]:
        """Identify durable facts worth remembering."""
        ...

    @abstractmethod
    async def summarize(self, messages: Sequence[Turn], max_messages: int) -> SummaryDraft:
        """Condense the last max_messages turns into a narrative summary."""
        ...


# ---------------------------------------------------------------------------
# Keyword heuristics
# ---------------------------------------------------------------------------

TOPIC_KEYWORDS = (
    "character", "story", "quest", "adventure", "combat", "magic",
    "treasure", "location", "npc", "skill", "spell", "weapon",
    "monster", "dungeon", "town", "forest", "castle", "dragon",
)

# First match wins.
_CATEGORY_PATTERNS: list[tuple[MemoryCategory, re.Pattern[str]]] = [
    (MemoryCategory.PREFERENCE, re.compile(
        r"\b(i prefer|i like|i don'?t like|i hate|please always|please never|from now on)\b",
        re.IGNORECASE,
    )),
    (MemoryCategory.RULE, re.compile(r"\b(rule|rules|house rule|must roll|allowed to)\b", re.IGNORECASE)),
    (MemoryCategory.CHARACTER, re.compile(r"\b(character|player|npc|hero|villain)\b", re.IGNORECASE)),
    (MemoryCategory.LOCATION, re.compile(r"\b(location|place|town|city|castle|dungeon|forest)\b", re.IGNORECASE)),
    (MemoryCategory.EVENT, re.compile(r"\b(event|happen|happened|happens|battle)\b", re.IGNORECASE)),
    (MemoryCategory.STORY_BEAT, re.compile(r"\b(story|plot|chapter|quest)\b", re.IGNORECASE)),
]

_SKIP_PATTERN = re.compile(
    r"^(ok|okay|yes|no|sure|thanks|thank you|got it|cool|nice)[.!]*$", re.IGNORECASE
)

MIN_FACT_CHARS = 20


def extract_key_topics(messages: Sequence[Turn]) -> list[str]:
    """Keywords from TOPIC_KEYWORDS that occur anywhere in the messages."""
    text = " ".join(m.content for m in messages).lower()
    return [kw for kw in TOPIC_KEYWORDS if kw in text]


def classify_category(content: str) -> MemoryCategory:
    for category, pattern in _CATEGORY_PATTERNS:
        if pattern.search(content):
            return category
    return MemoryCategory.GENERAL


def participants_of(messages: Sequence[Turn]) -> list[str]:
    """Distinct participant ids (user_id when known, else role), first-seen order."""
    seen: list[str] = []
    for m in messages:
        who = getattr(m, "user_id", None) or str(getattr(m.role, "value", m.role))
        if who not in seen:
            seen.append(who)
    return seen


def _role_name(m: Turn) -> str:
    return str(getattr(m.role, "value", m.role))


def _format_span(messages: Sequence[Turn]) -> str:
    stamps: list[datetime] = [
        ts for m in messages if isinstance(ts := getattr(m, "timestamp", None), datetime)
    ]
    if len(stamps) < 2:
        return "0m"
    seconds = int((max(stamps) - min(stamps)).total_seconds())
    hours, minutes = seconds // 3600, (seconds % 3600) // 60
    return f"{hours}h {minutes}m" if hours > 0 else f"{minutes}m"


class RuleBasedExtractionProvider(ExtractionProvider):
    """Keyword heuristics. Deterministic, no I/O."""

    async def extract_facts(self, messages: Sequence[Turn]) -> list[FactCandidate]:
        candidates: list[FactCandidate] = []
        for m in messages:
            text = m.content.strip()
            if len(text) < MIN_FACT_CHARS or _SKIP_PATTERN.match(text):
                continue
            candidates.append(
                FactCandidate(
                    content=text,
                    category=classify_category(text),
                    importance=estimate_importance(text),
                    tags=(_role_name(m), "conversation"),
                )
            )
        return candidates

    async def summarize(self, messages: Sequence[Turn], max_messages: int) -> SummaryDraft:
        window = list(messages)[-max_messages:] if max_messages > 0 else []
        topics = extract_key_topics(window)
        users = sum(1 for m in window if _role_name(m) == "user")
        assistants = sum(1 for m in window if _role_name(m) == "assistant")
        topic_part = f"Key topics: {', '.join(topics)}. " if topics else ""
        summary = (
            f"{topic_part}Conversation included {users} user messages and "
            f"{assistants} assistant responses spanning {_format_span(window)}."
        )
        return SummaryDraft(summary=summary, topics=topics, participants=participants_of(window))


# ---------------------------------------------------------------------------
# LLM-backed provider
# ---------------------------------------------------------------------------

_EXTRACTION_PROMPT = """\
You maintain the long-term memory of a tabletop role-playing campaign.

From the conversation below, extract durable facts worth remembering in later
sessions: characters, locations, rules, events, player preferences, story beats.
Skip greetings, chit-chat and anything already implied by another fact.

Conversation:
{conversation}

Output a JSON object with exactly one key "facts": a list of objects with keys
- "content": the fact as one self-contained sentence
- "category": one of {categories}
- "importance": integer 1-10 (10 = campaign-defining)
- "tags": list of short lowercase strings
Output ONLY the JSON object.
"""

_SUMMARY_PROMPT = """\
Summarize the following role-playing conversation for the game master.

Conversation:
{conversation}

Output a JSON object with exactly these keys:
- "summary": a concise narrative summary (at most 6 sentences)
- "topics": list of key topics (short lowercase phrases)
- "participants": list of participant names or roles
Output ONLY the JSON object.
"""


def _conversation_text(messages: Sequence[Turn]) -> str:
    return "\n".join(f"[{_role_name(m)}] {m.content}" for m in messages)


def _load_json(raw: str) -> dict[str, Any]:
    text = raw.strip()
    if text.startswith("```"):
        text = re.sub(r"^```(?:json)?\s*|\s*```$", "", text)
    data = json.loads(text)
    if not isinstance(data, dict):
        raise ValueError("Provider returned non-object JSON")
    return data


def _coerce_category(value: Any) -> MemoryCategory:
    try:
        return MemoryCategory(str(value).strip().upper())
    except ValueError:
        return MemoryCategory.GENERAL


def _coerce_tags(value: Any) -> tuple[str, ...]:
    # A bare string is one tag, not a sequence of characters.
    if isinstance(value, str):
        value = [value]
    elif not isinstance(value, list):
        return ()
    return tuple(dict.fromkeys(str(t).strip() for t in value if str(t).strip()))


def _coerce_importance(value: Any) -> int:
    try:
        score = int(value)
    except (TypeError, ValueError):
        return 5
    return max(IMPORTANCE_MIN, min(IMPORTANCE_MAX, score))


class LLMExtractionProvider(ExtractionProvider):
    """Extraction and summarization through an OpenAI-compatible chat model."""

    def __init__(self, model_client: ModelClient, *, model: str, temperature: float = 0.1) -> None:
        self._model_client = model_client
        self._model = model
        self._temperature = temperature

    async def _complete(self, prompt: str) -> dict[str, Any]:
        raw = await self._model_client.chat(
            [{"role": "user", "content": prompt}],
            self._model,
            temperature=self._temperature,
            json_mode=True,
        )
        return _load_json(raw)

    async def extract_facts(self, messages: Sequence[Turn]) -> list[FactCandidate]:
        if not messages:
            return []
        data = await self._complete(
            _EXTRACTION_PROMPT.format(
                conversation=_conversation_text(messages),
                categories=", ".join(c.value for c in MemoryCategory),
            )
        )
        facts = data.get("facts")
        if not isinstance(facts, list):
            raise ValueError("Extraction response is missing a 'facts' list")

        candidates: list[FactCandidate] = []
        for item in facts:
            if not isinstance(item, dict):
                continue
            content = str(item.get("content", "")).strip()
            if not content:
                continue
            candidates.append(
                FactCandidate(
                    content=content,
                    category=_coerce_category(item.get("category")),
                    importance=_coerce_importance(item.get("importance")),
                    tags=_coerce_tags(item.get("tags")),
                )
            )
        logger.info("facts_extracted", messages=len(messages), candidates=len(candidates))
        return candidates

    async def summarize(self, messages: Sequence[Turn], max_messages: int) -> SummaryDraft:
        window = list(messages)[-max_messages:] if max_messages > 0 else []
        data = await self._complete(_SUMMARY_PROMPT.format(conversation=_conversation_text(window)))
        summary = str(data.get("summary", "")).strip()
        if not summary:
            raise ValueError("Summary response is missing 'summary'")
        topics = [str(t) for t in data.get("topics") or [] if str(t).strip()]
        participants = [str(p) for p in data.get("participants") or [] if str(p).strip()]
        return SummaryDraft(summary=summary, topics=topics, participants=participants)
