from __future__ import annotations

import math
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Literal

import structlog

logger = structlog.get_logger()

# Separator overhead per rendered line (newline + bullet).
_LINE_OVERHEAD_TOKENS = 1


class TokenCounter:
    """Token counter with tiktoken precision and chars/4 fallback.

    Binds to a specific model at construction time. Falls back to estimate
    mode if no encoding is known for the model (non-OpenAI models) or the
    encoding cannot be loaded.
    """

    def __init__(self, model: str) -> None:
        self._model = model
        self._encoding = None
        self._mode: Literal["exact", "estimate"] = "estimate"

        try:
            import tiktoken

            self._encoding = tiktoken.encoding_for_model(model)
            self._mode = "exact"
        except Exception:
            logger.warning("tokenizer_fallback", model=model, mode="estimate")

    @property
    def tokenizer_mode(self) -> Literal["exact", "estimate"]:
        return self._mode

    def count_text(self, text: str) -> int:
        """Count tokens for a plain text string."""
        if not text:
            return 0
        if self._encoding is not None:
            return len(self._encoding.encode(text))
        return math.ceil(len(text) / 4)

    def count_lines(self, lines: Iterable[str]) -> int:
        """Count tokens for rendered lines, including per-line overhead."""
        return sum(self.count_text(line) + _LINE_OVERHEAD_TOKENS for line in lines)


@dataclass(frozen=True)
class BudgetStatus:
    """Token usage of an assembled context against its budget."""

    used_tokens: int
    max_tokens: int
    tokenizer_mode: str  # "exact" | "estimate"

    @property
    def within_budget(self) -> bool:
        return self.used_tokens <= self.max_tokens
