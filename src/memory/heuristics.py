"""Content heuristics shared by the store and the rule-based extractor."""

from __future__ import annotations

from src.constants import IMPORTANCE_MAX

_IMPORTANT_KEYWORDS = (
    "character", "quest", "story", "important", "critical",
    "death", "victory", "defeat", "discovery", "secret",
    "treasure", "magic", "spell", "artifact", "legendary",
)

_URGENT_KEYWORDS = (
    "emergency", "urgent", "danger", "threat", "immediate",
    "crisis", "alarm", "warning", "attack", "combat",
)


def estimate_importance(content: str) -> int:
    """Heuristic importance score in [1, 10] from length and keywords."""
    importance = 1
    lowered = content.lower()
    if len(content) > 200:
        importance += 1
    if len(content) > 500:
        importance += 1
    if any(kw in lowered for kw in _IMPORTANT_KEYWORDS):
        importance += 2
    if any(kw in lowered for kw in _URGENT_KEYWORDS):
        importance += 3
    if "?" in content:
        importance += 1
    return min(importance, IMPORTANCE_MAX)
