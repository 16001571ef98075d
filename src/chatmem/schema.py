"""
SQLite schema creation for the conversation memory store.
"""

from __future__ import annotations

import re
import sqlite3

_SAFE_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

SCHEMA_VERSION = "1"


def _validate_identifier(name: str) -> None:
    """Reject SQL identifiers that aren't simple alphanumeric names."""
    if not _SAFE_IDENTIFIER.match(name):
        raise ValueError(f"Invalid SQL identifier: {name!r}")


def ensure_memory_schema(db: sqlite3.Connection) -> dict[str, object]:
    """
    Create all required tables and indexes.
    Returns {"schema_version": str, "created": bool}.
    """
    cur = db.cursor()
    cur.execute(
        "SELECT name FROM sqlite_master WHERE type='table' AND name='conversation_memories'"
    )
    existed = cur.fetchone() is not None

    cur.executescript("""
        CREATE TABLE IF NOT EXISTS meta (
            key   TEXT PRIMARY KEY,
            value TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS conversation_memories (
            id                 INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id            TEXT    NOT NULL,
            conversation_id    TEXT    NOT NULL,
            system_memory      TEXT    NOT NULL DEFAULT '{}',
            rolling_summary    TEXT    NOT NULL DEFAULT '',
            summary_tokens     INTEGER NOT NULL DEFAULT 0,
            total_messages     INTEGER NOT NULL DEFAULT 0,
            last_summarized_at TEXT,
            created_at         TEXT    NOT NULL,
            updated_at         TEXT    NOT NULL,
            UNIQUE (user_id, conversation_id)
        );

        CREATE TABLE IF NOT EXISTS raw_messages (
            id            INTEGER PRIMARY KEY AUTOINCREMENT,
            memory_id     INTEGER NOT NULL
                          REFERENCES conversation_memories(id) ON DELETE CASCADE,
            role          TEXT    NOT NULL CHECK (role IN ('user', 'assistant')),
            content       TEXT    NOT NULL,
            token_count   INTEGER NOT NULL DEFAULT 0,
            message_index INTEGER NOT NULL,
            created_at    TEXT    NOT NULL,
            UNIQUE (memory_id, message_index)
        );
    """)

    # Ensure columns exist (migration-safe)
    _ensure_column(cur, "conversation_memories", "last_summarized_at", "TEXT")

    cur.execute(
        "CREATE INDEX IF NOT EXISTS idx_conversation_memories_user "
        "ON conversation_memories(user_id);"
    )
    cur.execute(
        "CREATE INDEX IF NOT EXISTS idx_raw_messages_memory "
        "ON raw_messages(memory_id, message_index);"
    )
    cur.execute(
        "INSERT OR REPLACE INTO meta (key, value) VALUES ('schemaVersion', ?)",
        (SCHEMA_VERSION,),
    )

    db.commit()
    return {"schema_version": SCHEMA_VERSION, "created": not existed}


def _ensure_column(cur: sqlite3.Cursor, table: str, column: str, definition: str) -> None:
    _validate_identifier(table)
    _validate_identifier(column)
    cur.execute(f"PRAGMA table_info({table})")
    rows = cur.fetchall()
    existing = {row[1] for row in rows}
    if column not in existing:
        cur.execute(f"ALTER TABLE {table} ADD COLUMN {column} {definition}")
