"""
PostgreSQL schema for the conversation memory store.

Provides:
  - get_pg_connection(dsn): open a psycopg3 connection
  - ensure_pg_schema(conn): idempotently apply the full schema
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    # Only imported for type-checking; psycopg is lazy-loaded at runtime.
    import psycopg  # type: ignore[import]

_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS conversation_memories (
    id                 BIGSERIAL   PRIMARY KEY,
    user_id            TEXT        NOT NULL,
    conversation_id    TEXT        NOT NULL,
    system_memory      JSONB       NOT NULL DEFAULT '{}',
    rolling_summary    TEXT        NOT NULL DEFAULT '',
    summary_tokens     INTEGER     NOT NULL DEFAULT 0,
    total_messages     INTEGER     NOT NULL DEFAULT 0,
    last_summarized_at TIMESTAMPTZ,
    created_at         TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at         TIMESTAMPTZ NOT NULL DEFAULT now(),
    UNIQUE (user_id, conversation_id)
);

CREATE INDEX IF NOT EXISTS idx_conversation_memories_user
    ON conversation_memories (user_id);

CREATE TABLE IF NOT EXISTS raw_messages (
    id            BIGSERIAL   PRIMARY KEY,
    memory_id     BIGINT      NOT NULL
                  REFERENCES conversation_memories (id) ON DELETE CASCADE,
    role          TEXT        NOT NULL CHECK (role IN ('user', 'assistant')),
    content       TEXT        NOT NULL,
    token_count   INTEGER     NOT NULL DEFAULT 0,
    message_index INTEGER     NOT NULL,
    created_at    TIMESTAMPTZ NOT NULL DEFAULT now(),
    UNIQUE (memory_id, message_index)
);

CREATE INDEX IF NOT EXISTS idx_raw_messages_memory
    ON raw_messages (memory_id, message_index);
"""


# ---------------------------------------------------------------------------
# Connection helper
# ---------------------------------------------------------------------------


def get_pg_connection(dsn: str, *, connect_timeout: int = 10) -> psycopg.Connection[Any]:
    """
    Open and return a psycopg3 connection.

    The import is deferred so that psycopg is only loaded when the PostgreSQL
    backend is actually selected.

    Raises:
        ImportError: if psycopg is not installed.
        psycopg.OperationalError: if the connection cannot be established.
    """
    try:
        import psycopg  # type: ignore[import]
    except ImportError as exc:
        raise ImportError(
            "psycopg (psycopg3) is required for PostgreSQL support. "
            "Install it with: pip install psycopg[binary]"
        ) from exc

    return psycopg.connect(dsn, connect_timeout=connect_timeout)


# ---------------------------------------------------------------------------
# Schema bootstrap
# ---------------------------------------------------------------------------


def ensure_pg_schema(conn: psycopg.Connection[Any]) -> None:
    """
    Idempotently create all tables and indexes.

    All DDL statements use ``IF NOT EXISTS`` guards so the function is safe
    to call on every application startup.  The schema is applied inside a
    single transaction and committed before returning.
    """
    try:
        with conn.cursor() as cur:  # type: ignore[attr-defined]
            cur.execute(_SCHEMA_SQL)  # type: ignore[arg-type]
        conn.commit()
    except Exception:
        conn.rollback()
        raise
