"""Config resolution for the conversational memory store."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Any

# ---------------------------------------------------------------------------
# Defaults
# ---------------------------------------------------------------------------

DEFAULT_MAX_RAW_MESSAGES = 3
DEFAULT_SUMMARY_THRESHOLD = 6
DEFAULT_MAX_SUMMARY_TOKENS = 500
DEFAULT_MAX_MESSAGE_CONTENT_FOR_SUMMARY = 200
DEFAULT_MAX_SYSTEM_MEMORY_KEYS = 50
DEFAULT_MAX_FACT_VALUE_LENGTH = 500
GLOBAL_MEMORY_ID = "__GLOBAL_USER_MEMORY__"

_VALID_DRIVERS = frozenset({"sqlite", "postgres"})
_VALID_COMPACTION_MODES = frozenset({"background", "inline"})

_STATE_DIR_DEFAULT = os.path.join(os.path.expanduser("~"), ".chatmem")


# ---------------------------------------------------------------------------
# Sub-configs
# ---------------------------------------------------------------------------


@dataclass
class PostgresConfig:
    """Connection settings for the PostgreSQL backend."""

    dsn: str = field(default_factory=lambda: os.environ.get("CHATMEM_PG_DSN", ""))
    connect_timeout: int = 10


# ---------------------------------------------------------------------------
# Top-level config
# ---------------------------------------------------------------------------


@dataclass
class MemoryConfig:
    max_raw_messages: int = DEFAULT_MAX_RAW_MESSAGES
    summary_threshold: int = DEFAULT_SUMMARY_THRESHOLD
    max_summary_tokens: int = DEFAULT_MAX_SUMMARY_TOKENS
    max_message_content_for_summary: int = DEFAULT_MAX_MESSAGE_CONTENT_FOR_SUMMARY
    max_system_memory_keys: int = DEFAULT_MAX_SYSTEM_MEMORY_KEYS
    max_fact_value_length: int = DEFAULT_MAX_FACT_VALUE_LENGTH
    global_memory_id: str = GLOBAL_MEMORY_ID
    compaction_mode: str = "background"  # "background" | "inline"
    compaction_workers: int = 2
    compaction_max_attempts: int = 3
    compaction_retry_delay_s: float = 0.5
    write_through_global: bool = True
    driver: str = "sqlite"  # "sqlite" | "postgres"
    db_path: str = ""
    pg: PostgresConfig = field(default_factory=PostgresConfig)

    @property
    def max_summary_chars(self) -> int:
        return self.max_summary_tokens * 4


# ---------------------------------------------------------------------------
# Resolution helpers
# ---------------------------------------------------------------------------


def _resolve_state_dir() -> str:
    return os.environ.get("CHATMEM_STATE_DIR", _STATE_DIR_DEFAULT)


def _resolve_db_path() -> str:
    """Default DB path: ~/.chatmem/memory.sqlite"""
    env = os.environ.get("CHATMEM_DB_PATH")
    if env:
        return env
    return os.path.join(_resolve_state_dir(), "memory.sqlite")


def _resolve_driver() -> str:
    env = os.environ.get("CHATMEM_DRIVER", "").strip().lower()
    if env in _VALID_DRIVERS:
        return env
    if os.environ.get("CHATMEM_PG_DSN"):
        return "postgres"
    return "sqlite"


def _resolve_compaction_mode(raw: str | None) -> str:
    mode = (raw or "").strip().lower()
    if mode in _VALID_COMPACTION_MODES:
        return mode
    return "background"


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def resolve_memory_config(overrides: dict[str, Any] | None = None) -> MemoryConfig:
    """
    Resolve memory config from environment variables and an optional overrides dict.

    Environment variables:
        CHATMEM_STATE_DIR         : base state directory (default: ~/.chatmem)
        CHATMEM_DB_PATH           : SQLite DB path
        CHATMEM_DRIVER            : storage driver (sqlite/postgres)
        CHATMEM_PG_DSN            : PostgreSQL DSN (implies driver=postgres)
        CHATMEM_MAX_RAW_MESSAGES  : keep window size
        CHATMEM_SUMMARY_THRESHOLD : live message count that triggers compaction
        CHATMEM_MAX_SUMMARY_TOKENS: rolling summary budget (tokens, ~4 chars each)
        CHATMEM_COMPACTION_MODE   : background/inline
    """
    overrides = overrides or {}

    max_raw = max(1, int(overrides.get(
        "max_raw_messages", _env_int("CHATMEM_MAX_RAW_MESSAGES", DEFAULT_MAX_RAW_MESSAGES)
    )))
    threshold = max(1, int(overrides.get(
        "summary_threshold", _env_int("CHATMEM_SUMMARY_THRESHOLD", DEFAULT_SUMMARY_THRESHOLD)
    )))
    threshold = max(threshold, max_raw)
    summary_tokens = max(1, int(overrides.get(
        "max_summary_tokens",
        _env_int("CHATMEM_MAX_SUMMARY_TOKENS", DEFAULT_MAX_SUMMARY_TOKENS),
    )))

    dsn = overrides.get("pg_dsn") or os.environ.get("CHATMEM_PG_DSN", "")
    driver = overrides.get("driver") or _resolve_driver()
    if driver not in _VALID_DRIVERS:
        driver = "sqlite"

    return MemoryConfig(
        max_raw_messages=max_raw,
        summary_threshold=threshold,
        max_summary_tokens=summary_tokens,
        max_message_content_for_summary=max(1, int(overrides.get(
            "max_message_content_for_summary", DEFAULT_MAX_MESSAGE_CONTENT_FOR_SUMMARY
        ))),
        max_system_memory_keys=max(1, int(overrides.get(
            "max_system_memory_keys", DEFAULT_MAX_SYSTEM_MEMORY_KEYS
        ))),
        max_fact_value_length=max(1, int(overrides.get(
            "max_fact_value_length", DEFAULT_MAX_FACT_VALUE_LENGTH
        ))),
        global_memory_id=overrides.get("global_memory_id", GLOBAL_MEMORY_ID),
        compaction_mode=_resolve_compaction_mode(
            overrides.get("compaction_mode") or os.environ.get("CHATMEM_COMPACTION_MODE")
        ),
        compaction_workers=max(1, int(overrides.get("compaction_workers", 2))),
        compaction_max_attempts=max(1, int(overrides.get("compaction_max_attempts", 3))),
        compaction_retry_delay_s=max(0.0, float(overrides.get("compaction_retry_delay_s", 0.5))),
        write_through_global=bool(overrides.get("write_through_global", True)),
        driver=driver,
        db_path=overrides.get("db_path") or _resolve_db_path(),
        pg=PostgresConfig(dsn=dsn),
    )
