"""Memory-side shared contract types.

Memory layer owns these DTOs. Zero dependency on src.context.* or providers;
the assembler maps extraction output onto CreateMemoryInput at the boundary.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field, field_validator

from src.constants import IMPORTANCE_MAX, IMPORTANCE_MIN


def _normalize_tags(tags: list[str]) -> list[str]:
    """Strip, drop empties, dedupe in first-seen order."""
    seen: list[str] = []
    for tag in tags:
        tag = tag.strip()
        if tag and tag not in seen:
            seen.append(tag)
    return seen


class MemoryCategory(StrEnum):
    """Closed category taxonomy. Unknown values fail at the input boundary."""

    GENERAL = "GENERAL"
    CHARACTER = "CHARACTER"
    LOCATION = "LOCATION"
    EVENT = "EVENT"
    RULE = "RULE"
    PREFERENCE = "PREFERENCE"
    STORY_BEAT = "STORY_BEAT"


class CreateMemoryInput(BaseModel):
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    session_id: str = Field(min_length=1, max_length=128)
    user_id: str | None = Field(None, max_length=128)
    content: str = Field(min_length=1, max_length=8192)
    category: MemoryCategory = MemoryCategory.GENERAL
    importance: int = Field(5, ge=IMPORTANCE_MIN, le=IMPORTANCE_MAX, strict=True)
    tags: list[str] = Field(default_factory=list)

    @field_validator("tags")
    @classmethod
    def _clean_tags(cls, v: list[str]) -> list[str]:
        return _normalize_tags(v)


class MemoryPatch(BaseModel):
    """Partial update. Fields left as None are untouched."""

    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    content: str | None = Field(None, min_length=1, max_length=8192)
    category: MemoryCategory | None = None
    importance: int | None = Field(None, ge=IMPORTANCE_MIN, le=IMPORTANCE_MAX, strict=True)
    tags: list[str] | None = None

    @field_validator("tags")
    @classmethod
    def _clean_tags(cls, v: list[str] | None) -> list[str] | None:
        return None if v is None else _normalize_tags(v)


@dataclass(frozen=True)
class MemoryEntry:
    id: str
    session_id: str
    user_id: str | None
    content: str
    category: MemoryCategory
    importance: int
    tags: tuple[str, ...]
    created_at: datetime
    updated_at: datetime
    is_active: bool = True
    has_embedding: bool = False


@dataclass(frozen=True)
class MemorySearchResult:
    """Single ranked similarity hit."""

    entry: MemoryEntry
    similarity: float


@dataclass
class MemoryPage:
    entries: list[MemoryEntry]
    total: int
    has_more: bool


@dataclass
class MemoryStats:
    total_memories: int = 0
    active_memories: int = 0
    memories_by_category: dict[str, int] = field(default_factory=dict)
    average_importance: float = 0.0


@dataclass
class BackfillReport:
    embedded: int = 0
    failed: int = 0
    failed_ids: list[str] = field(default_factory=list)
