"""
Persistence gateway for conversation memory records and raw messages.

Two backends share one SQL core:
  - SqliteGateway  : local file, ``BEGIN IMMEDIATE`` serializes writers.
  - PostgresGateway: psycopg3, READ COMMITTED with ``SELECT ... FOR UPDATE``
    on the memory row.

Reads run in their own snapshot (deferred ``BEGIN`` on SQLite, REPEATABLE
READ on PostgreSQL).

Every unit of work opens its own connection, so a single gateway instance can
be shared by many threads.  Driver errors are rolled back and re-raised as
:class:`~chatmem.errors.StorageError`.
"""

from __future__ import annotations

import logging
import os
import sqlite3
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from datetime import datetime
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from .config import MemoryConfig
from .errors import StorageError
from .internal import to_datetime, to_iso, utc_now
from .pg_schema import ensure_pg_schema, get_pg_connection
from .schema import ensure_memory_schema
from .types import ConversationMemoryRecord, RawMessage, SystemMemory, parse_system_memory

if TYPE_CHECKING:
    import psycopg

logger = logging.getLogger(__name__)

_MEMORY_COLUMNS = (
    "id, user_id, conversation_id, system_memory, rolling_summary, summary_tokens, "
    "total_messages, last_summarized_at, created_at, updated_at"
)
_MESSAGE_COLUMNS = "id, memory_id, role, content, token_count, message_index, created_at"

_UPDATABLE_MEMORY_FIELDS = frozenset({
    "system_memory",
    "rolling_summary",
    "summary_tokens",
    "total_messages",
    "last_summarized_at",
})


# ---------------------------------------------------------------------------
# Protocols
# ---------------------------------------------------------------------------


@runtime_checkable
class GatewayTransaction(Protocol):
    def lock_memory(self, memory_id: int) -> ConversationMemoryRecord | None: ...

    def find_memory(
        self, user_id: str, conversation_id: str, *, lock: bool = False
    ) -> ConversationMemoryRecord | None: ...

    def list_messages(self, memory_id: int) -> list[RawMessage]: ...

    def recent_messages(self, memory_id: int, limit: int) -> list[RawMessage]: ...

    def next_message_index(self, memory_id: int) -> int: ...

    def insert_message(
        self,
        memory_id: int,
        *,
        role: str,
        content: str,
        token_count: int,
        message_index: int,
        created_at: datetime,
    ) -> int: ...

    def update_memory(self, memory_id: int, **fields: Any) -> None: ...

    def delete_messages(self, message_ids: Iterable[int]) -> int: ...

    def reindex_messages(self, message_ids: list[int]) -> None: ...

    def delete_all_messages(self, memory_id: int) -> int: ...

    def delete_memory(self, memory_id: int) -> int: ...


@runtime_checkable
class MemoryGateway(Protocol):
    def find_memory(
        self, user_id: str, conversation_id: str
    ) -> ConversationMemoryRecord | None: ...

    def create_memory(
        self, user_id: str, conversation_id: str, system_memory: SystemMemory
    ) -> ConversationMemoryRecord: ...

    def list_messages(self, memory_id: int, *, limit: int | None = None) -> list[RawMessage]: ...

    def read_context(
        self, user_id: str, conversation_id: str, *, limit: int
    ) -> tuple[ConversationMemoryRecord | None, list[RawMessage]]: ...

    def count_messages(self, memory_id: int) -> int: ...

    def list_conversations(self, user_id: str) -> list[str]: ...

    def transaction(self) -> Any: ...

    def close(self) -> None: ...


# ---------------------------------------------------------------------------
# Shared SQL core
# ---------------------------------------------------------------------------


class _SqlTransaction:
    """Statements issued on one open connection inside one transaction."""

    def __init__(self, gateway: _SqlGateway, conn: Any) -> None:
        self._gw = gateway
        self._conn = conn

    def _execute(self, sql: str, params: tuple[Any, ...] = ()) -> Any:
        cur = self._conn.cursor()
        cur.execute(self._gw._q(sql), params)
        return cur

    def lock_memory(self, memory_id: int) -> ConversationMemoryRecord | None:
        sql = f"SELECT {_MEMORY_COLUMNS} FROM conversation_memories WHERE id = %s"
        row = self._execute(self._gw._lock(sql), (memory_id,)).fetchone()
        return self._gw._row_to_memory(row) if row else None

    def find_memory(
        self, user_id: str, conversation_id: str, *, lock: bool = False
    ) -> ConversationMemoryRecord | None:
        sql = (
            f"SELECT {_MEMORY_COLUMNS} FROM conversation_memories "
            "WHERE user_id = %s AND conversation_id = %s"
        )
        if lock:
            sql = self._gw._lock(sql)
        row = self._execute(sql, (user_id, conversation_id)).fetchone()
        return self._gw._row_to_memory(row) if row else None

    def insert_memory_if_absent(
        self, user_id: str, conversation_id: str, system_memory: SystemMemory
    ) -> None:
        now = self._gw._ts(utc_now())
        self._execute(
            """
            INSERT INTO conversation_memories
                (user_id, conversation_id, system_memory, rolling_summary,
                 summary_tokens, total_messages, created_at, updated_at)
            VALUES (%s, %s, %s::jsonb, '', 0, 0, %s, %s)
            ON CONFLICT (user_id, conversation_id) DO NOTHING
            """,
            (user_id, conversation_id, system_memory.to_json(), now, now),
        )

    def list_messages(self, memory_id: int) -> list[RawMessage]:
        rows = self._execute(
            f"SELECT {_MESSAGE_COLUMNS} FROM raw_messages "
            "WHERE memory_id = %s ORDER BY message_index ASC",
            (memory_id,),
        ).fetchall()
        return [self._gw._row_to_message(r) for r in rows]

    def recent_messages(self, memory_id: int, limit: int) -> list[RawMessage]:
        """Newest *limit* live messages, ascending by index."""
        rows = self._execute(
            f"SELECT {_MESSAGE_COLUMNS} FROM raw_messages "
            "WHERE memory_id = %s ORDER BY message_index DESC LIMIT %s",
            (memory_id, max(0, int(limit))),
        ).fetchall()
        messages = [self._gw._row_to_message(r) for r in rows]
        return sorted(messages, key=lambda m: m.message_index)

    def next_message_index(self, memory_id: int) -> int:
        row = self._execute(
            "SELECT COALESCE(MAX(message_index), -1) + 1 FROM raw_messages WHERE memory_id = %s",
            (memory_id,),
        ).fetchone()
        return int(row[0]) if row else 0

    def insert_message(
        self,
        memory_id: int,
        *,
        role: str,
        content: str,
        token_count: int,
        message_index: int,
        created_at: datetime,
    ) -> int:
        return self._gw._insert_returning_id(
            self._conn,
            """
            INSERT INTO raw_messages
                (memory_id, role, content, token_count, message_index, created_at)
            VALUES (%s, %s, %s, %s, %s, %s)
            """,
            (memory_id, role, content, token_count, message_index, self._gw._ts(created_at)),
        )

    def update_memory(self, memory_id: int, **fields: Any) -> None:
        unknown = set(fields) - _UPDATABLE_MEMORY_FIELDS
        if unknown:
            raise ValueError(f"Unknown memory fields: {sorted(unknown)}")

        assignments: list[str] = []
        params: list[Any] = []
        for name, value in fields.items():
            if name == "system_memory":
                assignments.append("system_memory = %s::jsonb")
                params.append(value.to_json() if isinstance(value, SystemMemory) else value)
            elif name == "last_summarized_at":
                assignments.append("last_summarized_at = %s")
                params.append(self._gw._ts(value) if value is not None else None)
            else:
                assignments.append(f"{name} = %s")
                params.append(value)
        assignments.append("updated_at = %s")
        params.append(self._gw._ts(utc_now()))
        params.append(memory_id)

        self._execute(
            f"UPDATE conversation_memories SET {', '.join(assignments)} WHERE id = %s",
            tuple(params),
        )

    def delete_messages(self, message_ids: Iterable[int]) -> int:
        deleted = 0
        for message_id in message_ids:
            cur = self._execute("DELETE FROM raw_messages WHERE id = %s", (message_id,))
            deleted += max(cur.rowcount, 0)
        return deleted

    def reindex_messages(self, message_ids: list[int]) -> None:
        """
        Renumber *message_ids* to ``0..len-1`` in the given order.

        Two passes through negative indices keep UNIQUE(memory_id, message_index)
        satisfied at every statement.
        """
        for position, message_id in enumerate(message_ids):
            self._execute(
                "UPDATE raw_messages SET message_index = %s WHERE id = %s",
                (-(position + 1), message_id),
            )
        for position, message_id in enumerate(message_ids):
            self._execute(
                "UPDATE raw_messages SET message_index = %s WHERE id = %s",
                (position, message_id),
            )

    def delete_all_messages(self, memory_id: int) -> int:
        cur = self._execute("DELETE FROM raw_messages WHERE memory_id = %s", (memory_id,))
        return max(cur.rowcount, 0)

    def delete_memory(self, memory_id: int) -> int:
        cur = self._execute("DELETE FROM conversation_memories WHERE id = %s", (memory_id,))
        return max(cur.rowcount, 0)


class _SqlGateway:
    """Backend-agnostic gateway logic. Subclasses supply connection and dialect hooks."""

    backend = "sql"
    _driver_errors: tuple[type[BaseException], ...] = ()

    # -- dialect hooks -------------------------------------------------

    def _connect(self) -> Any:
        raise NotImplementedError

    def _begin(self, conn: Any) -> None:
        raise NotImplementedError

    def _begin_read(self, conn: Any) -> None:
        raise NotImplementedError

    def _q(self, sql: str) -> str:
        return sql

    def _lock(self, sql: str) -> str:
        return sql

    def _ts(self, value: datetime) -> Any:
        return value

    def _insert_returning_id(self, conn: Any, sql: str, params: tuple[Any, ...]) -> int:
        raise NotImplementedError

    # -- units of work -------------------------------------------------

    @contextmanager
    def transaction(self) -> Iterator[_SqlTransaction]:
        """
        Open a write transaction.  Commits on clean exit, rolls back on any
        exception; driver errors are re-raised as ``StorageError``.
        """
        conn = self._open()
        try:
            self._begin(conn)
            yield _SqlTransaction(self, conn)
            conn.commit()
        except self._driver_errors as exc:
            _safe_rollback(conn)
            raise StorageError(f"{self.backend} transaction failed: {exc}") from exc
        except BaseException:
            _safe_rollback(conn)
            raise
        finally:
            conn.close()

    @contextmanager
    def _reader(self) -> Iterator[_SqlTransaction]:
        """Read-only unit of work; every statement in it sees one snapshot."""
        conn = self._open()
        try:
            self._begin_read(conn)
            yield _SqlTransaction(self, conn)
            conn.rollback()
        except self._driver_errors as exc:
            _safe_rollback(conn)
            raise StorageError(f"{self.backend} read failed: {exc}") from exc
        finally:
            conn.close()

    def _open(self) -> Any:
        try:
            return self._connect()
        except self._driver_errors as exc:
            raise StorageError(f"cannot connect to {self.backend} store: {exc}") from exc

    # -- public read API -----------------------------------------------

    def find_memory(self, user_id: str, conversation_id: str) -> ConversationMemoryRecord | None:
        with self._reader() as tx:
            return tx.find_memory(user_id, conversation_id)

    def create_memory(
        self, user_id: str, conversation_id: str, system_memory: SystemMemory
    ) -> ConversationMemoryRecord:
        """Insert the record unless it already exists; return the stored row."""
        with self.transaction() as tx:
            tx.insert_memory_if_absent(user_id, conversation_id, system_memory)
            record = tx.find_memory(user_id, conversation_id)
        if record is None:
            raise StorageError(
                f"memory row for user={user_id} conv={conversation_id} vanished after insert"
            )
        return record

    def list_messages(self, memory_id: int, *, limit: int | None = None) -> list[RawMessage]:
        """
        Return live messages in ascending index order.

        With *limit*, only the newest ``limit`` messages are returned.
        """
        with self._reader() as tx:
            if limit is None:
                return tx.list_messages(memory_id)
            return tx.recent_messages(memory_id, limit)

    def read_context(
        self, user_id: str, conversation_id: str, *, limit: int
    ) -> tuple[ConversationMemoryRecord | None, list[RawMessage]]:
        """
        Read the record and its newest *limit* messages from one snapshot, so
        a compaction committing meanwhile is seen either entirely or not at all.
        """
        with self._reader() as tx:
            record = tx.find_memory(user_id, conversation_id)
            if record is None:
                return None, []
            return record, tx.recent_messages(record.id, limit)

    def count_messages(self, memory_id: int) -> int:
        with self._reader() as tx:
            row = tx._execute(
                "SELECT COUNT(*) FROM raw_messages WHERE memory_id = %s", (memory_id,)
            ).fetchone()
        return int(row[0]) if row else 0

    def list_conversations(self, user_id: str) -> list[str]:
        with self._reader() as tx:
            rows = tx._execute(
                "SELECT conversation_id FROM conversation_memories "
                "WHERE user_id = %s ORDER BY updated_at DESC, id DESC",
                (user_id,),
            ).fetchall()
        return [str(r[0]) for r in rows]

    def close(self) -> None:
        """Connections are per unit of work; nothing is held open."""

    def __enter__(self) -> _SqlGateway:
        return self

    def __exit__(self, *_: Any) -> None:
        self.close()

    # -- row mapping ---------------------------------------------------

    def _row_to_memory(self, row: Any) -> ConversationMemoryRecord:
        return ConversationMemoryRecord(
            id=int(row[0]),
            user_id=str(row[1]),
            conversation_id=str(row[2]),
            system_memory=parse_system_memory(row[3]),
            rolling_summary=row[4] or "",
            summary_tokens=int(row[5] or 0),
            total_messages=int(row[6] or 0),
            last_summarized_at=to_datetime(row[7]),
            created_at=to_datetime(row[8]),
            updated_at=to_datetime(row[9]),
        )

    def _row_to_message(self, row: Any) -> RawMessage:
        return RawMessage(
            id=int(row[0]),
            memory_id=int(row[1]),
            role=str(row[2]),
            content=row[3],
            token_count=int(row[4] or 0),
            message_index=int(row[5]),
            created_at=to_datetime(row[6]),
        )


def _safe_rollback(conn: Any) -> None:
    try:
        conn.rollback()
    except Exception:
        logger.debug("rollback on a broken connection failed", exc_info=True)


# ---------------------------------------------------------------------------
# SQLite
# ---------------------------------------------------------------------------


class SqliteGateway(_SqlGateway):
    """
    SQLite-backed gateway.

    ``BEGIN IMMEDIATE`` takes the database write lock up front, so concurrent
    writers (add_message, compaction) are fully serialized; that is the
    SQLite equivalent of the row lock the PostgreSQL backend takes.
    """

    backend = "sqlite"
    _driver_errors = (sqlite3.Error,)

    def __init__(self, db_path: str, *, busy_timeout_s: float = 30.0) -> None:
        if not db_path or db_path == ":memory:":
            raise ValueError("SqliteGateway needs a file path; connections are per unit of work")
        self.db_path = db_path
        self._busy_timeout_s = busy_timeout_s
        os.makedirs(os.path.dirname(os.path.abspath(db_path)) or ".", exist_ok=True)

        conn = self._open()
        try:
            conn.execute("PRAGMA journal_mode=WAL")
            ensure_memory_schema(conn)
        except sqlite3.Error as exc:
            raise StorageError(f"cannot initialise sqlite schema: {exc}") from exc
        finally:
            conn.close()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(
            self.db_path,
            timeout=self._busy_timeout_s,
            isolation_level=None,
            check_same_thread=False,
        )
        conn.execute("PRAGMA foreign_keys=ON")
        conn.execute("PRAGMA synchronous=NORMAL")
        return conn

    def _begin(self, conn: sqlite3.Connection) -> None:
        conn.execute("BEGIN IMMEDIATE")

    def _begin_read(self, conn: sqlite3.Connection) -> None:
        # Deferred: the WAL read snapshot is pinned at the first SELECT.
        conn.execute("BEGIN")

    def _q(self, sql: str) -> str:
        return sql.replace("%s::jsonb", "?").replace("%s", "?")

    def _ts(self, value: datetime) -> Any:
        return to_iso(value)

    def _insert_returning_id(self, conn: Any, sql: str, params: tuple[Any, ...]) -> int:
        cur = conn.execute(self._q(sql), params)
        return int(cur.lastrowid)


# ---------------------------------------------------------------------------
# PostgreSQL
# ---------------------------------------------------------------------------


class PostgresGateway(_SqlGateway):
    """PostgreSQL-backed gateway (psycopg3, READ COMMITTED, row-level locks)."""

    backend = "postgres"

    def __init__(self, dsn: str, *, connect_timeout: int = 10) -> None:
        if not dsn:
            raise ValueError("PostgresGateway requires a DSN")
        import psycopg  # type: ignore[import]  # lazy import

        self._psycopg = psycopg
        self._driver_errors = (psycopg.Error,)
        self.dsn = dsn
        self._connect_timeout = connect_timeout

        conn = self._open()
        try:
            ensure_pg_schema(conn)
        except psycopg.Error as exc:
            raise StorageError(f"cannot initialise postgres schema: {exc}") from exc
        finally:
            conn.close()

    def _connect(self) -> psycopg.Connection[Any]:
        conn = get_pg_connection(self.dsn, connect_timeout=self._connect_timeout)
        conn.isolation_level = self._psycopg.IsolationLevel.READ_COMMITTED
        return conn

    def _begin(self, conn: Any) -> None:
        # psycopg opens a transaction implicitly on the first statement.
        conn.autocommit = False

    def _begin_read(self, conn: Any) -> None:
        conn.autocommit = False
        conn.isolation_level = self._psycopg.IsolationLevel.REPEATABLE_READ

    def _lock(self, sql: str) -> str:
        return f"{sql} FOR UPDATE"

    def _insert_returning_id(self, conn: Any, sql: str, params: tuple[Any, ...]) -> int:
        with conn.cursor() as cur:
            cur.execute(f"{sql.rstrip()} RETURNING id", params)
            row = cur.fetchone()
        return int(row[0])


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------


def create_gateway(config: MemoryConfig) -> SqliteGateway | PostgresGateway:
    """Build the gateway selected by ``config.driver``."""
    if config.driver == "postgres":
        return PostgresGateway(config.pg.dsn, connect_timeout=config.pg.connect_timeout)
    return SqliteGateway(config.db_path)
