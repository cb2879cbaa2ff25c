"""Project-wide constants."""

from __future__ import annotations

# PostgreSQL schema that owns every Lorekeeper table.
DB_SCHEMA = "lorekeeper"

# Default vector width (OpenAI text-embedding-3-small).
EMBEDDING_DIMENSION = 1536

IMPORTANCE_MIN = 1
IMPORTANCE_MAX = 10
