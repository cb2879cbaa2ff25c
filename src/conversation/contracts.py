"""Conversation-log DTOs shared with the context assembler and providers."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field, field_validator

from src.infra.timeutil import as_utc


class MessageRole(StrEnum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class NewMessage(BaseModel):
    """A message as submitted to add_messages (before seq assignment)."""

    model_config = ConfigDict(extra="forbid")

    role: MessageRole
    content: str = Field(min_length=1)
    timestamp: datetime | None = None
    user_id: str | None = Field(None, max_length=128)

    @field_validator("content")
    @classmethod
    def _reject_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("content must not be empty")
        return v

    @field_validator("timestamp")
    @classmethod
    def _to_utc(cls, v: datetime | None) -> datetime | None:
        if v is None:
            return None
        return as_utc(v)


@dataclass(frozen=True)
class ConversationMessage:
    session_id: str
    seq: int
    role: MessageRole
    content: str
    timestamp: datetime
    user_id: str | None = None


@dataclass
class HistoryPage:
    messages: list[ConversationMessage]
    total_count: int
    has_more: bool


@dataclass
class SearchHit:
    """One merged context window around one or more keyword matches."""

    matches: list[ConversationMessage]
    messages: list[ConversationMessage]
    relevance_score: float


@dataclass(frozen=True)
class TimeRange:
    start: datetime
    end: datetime


@dataclass
class ConversationSummary:
    summary: str
    message_count: int
    key_topics: list[str] = field(default_factory=list)
    participants: list[str] = field(default_factory=list)
    time_range: TimeRange | None = None
    degraded: bool = False


@dataclass
class ConversationStats:
    total_messages: int = 0
    messages_by_role: dict[str, int] = field(default_factory=dict)
    average_message_length: float = 0.0
    duration_seconds: float = 0.0
    messages_per_hour: float = 0.0
    most_active_hour: str | None = None
