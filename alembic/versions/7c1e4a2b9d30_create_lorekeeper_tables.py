"""create conversation log and memory entry tables

Revision ID: 7c1e4a2b9d30
Revises:
Create Date: 2026-10-18

Embeddings are stored as float8[]; cosine similarity is computed by the
in-process SimilarityIndex, so no vector extension is required.
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import ARRAY, JSONB

# revision identifiers, used by Alembic.
revision = "7c1e4a2b9d30"
down_revision = None
branch_labels = None
depends_on = None

SCHEMA = "lorekeeper"


def upgrade() -> None:
    op.create_table(
        "conversation_sessions",
        sa.Column("id", sa.String(length=128), nullable=False),
        sa.Column("next_seq", sa.Integer(), nullable=False, server_default="0"),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.PrimaryKeyConstraint("id"),
        schema=SCHEMA,
    )

    op.create_table(
        "conversation_messages",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("session_id", sa.String(length=128), nullable=False),
        sa.Column("seq", sa.Integer(), nullable=False),
        sa.Column("role", sa.String(length=16), nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("user_id", sa.String(length=128), nullable=True),
        sa.Column(
            "timestamp",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["session_id"], [f"{SCHEMA}.conversation_sessions.id"]),
        sa.UniqueConstraint("session_id", "seq", name="uq_conversation_messages_session_seq"),
        schema=SCHEMA,
    )
    op.create_index(
        "ix_conversation_messages_session_id",
        "conversation_messages",
        ["session_id"],
        schema=SCHEMA,
    )
    op.create_index(
        "idx_conversation_messages_session_ts",
        "conversation_messages",
        ["session_id", "timestamp"],
        schema=SCHEMA,
    )

    op.create_table(
        "memory_entries",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("session_id", sa.String(length=128), nullable=False),
        sa.Column("user_id", sa.String(length=128), nullable=True),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("category", sa.String(length=16), nullable=False),
        sa.Column("importance", sa.Integer(), nullable=False),
        sa.Column("tags", JSONB(), nullable=False, server_default="[]"),
        sa.Column("embedding", ARRAY(sa.Float()), nullable=True),
        sa.Column("embedding_model", sa.String(length=64), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint("importance BETWEEN 1 AND 10", name="ck_memory_entries_importance"),
        schema=SCHEMA,
    )
    op.create_index(
        "idx_memory_entries_session_active",
        "memory_entries",
        ["session_id", "is_active"],
        schema=SCHEMA,
    )
    op.create_index("idx_memory_entries_user", "memory_entries", ["user_id"], schema=SCHEMA)


def downgrade() -> None:
    op.drop_index("idx_memory_entries_user", table_name="memory_entries", schema=SCHEMA)
    op.drop_index("idx_memory_entries_session_active", table_name="memory_entries", schema=SCHEMA)
    op.drop_table("memory_entries", schema=SCHEMA)
    op.drop_index(
        "idx_conversation_messages_session_ts",
        table_name="conversation_messages",
        schema=SCHEMA,
    )
    op.drop_index(
        "ix_conversation_messages_session_id",
        table_name="conversation_messages",
        schema=SCHEMA,
    )
    op.drop_table("conversation_messages", schema=SCHEMA)
    op.drop_table("conversation_sessions", schema=SCHEMA)
