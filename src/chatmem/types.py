"""Core types for the conversational memory store."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from .internal import utc_now

Role = str  # "user" | "assistant"

VALID_ROLES = frozenset({"user", "assistant"})
SYSTEM_MEMORY_VERSION = 1
MEMORY_SECTIONS = ("facts", "preferences", "decisions")


# ---------------------------------------------------------------------------
# System memory (long-term layer)
# ---------------------------------------------------------------------------


@dataclass
class SystemMemory:
    facts: dict[str, str] = field(default_factory=dict)
    preferences: dict[str, str] = field(default_factory=dict)
    decisions: dict[str, str] = field(default_factory=dict)
    last_updated: str = field(default_factory=lambda: utc_now().isoformat())
    version: int = SYSTEM_MEMORY_VERSION

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "facts": dict(self.facts),
            "preferences": dict(self.preferences),
            "decisions": dict(self.decisions),
            "lastUpdated": self.last_updated,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False)

    def is_empty(self) -> bool:
        return not (self.facts or self.preferences or self.decisions)


def _decode_section(raw: Any) -> dict[str, str]:
    if not isinstance(raw, dict):
        return {}
    section: dict[str, str] = {}
    for key, value in raw.items():
        if value is None:
            continue
        section[str(key)] = value if isinstance(value, str) else str(value)
    return section


def parse_system_memory(raw: Any) -> SystemMemory:
    """
    Decode a stored system-memory blob.

    Accepts a dict (psycopg JSONB), a JSON string (SQLite TEXT) or ``None``.
    Missing or malformed sections default to empty maps, a missing timestamp
    defaults to now.
    """
    data: Any = raw
    if isinstance(raw, (bytes, bytearray)):
        data = raw.decode("utf-8", errors="replace")
    if isinstance(data, str):
        try:
            data = json.loads(data)
        except (json.JSONDecodeError, TypeError):
            data = None
    if not isinstance(data, dict):
        return SystemMemory()

    last_updated = data.get("lastUpdated") or data.get("last_updated")
    try:
        version = int(data.get("version", SYSTEM_MEMORY_VERSION))
    except (TypeError, ValueError):
        version = SYSTEM_MEMORY_VERSION

    return SystemMemory(
        facts=_decode_section(data.get("facts")),
        preferences=_decode_section(data.get("preferences")),
        decisions=_decode_section(data.get("decisions")),
        last_updated=last_updated if isinstance(last_updated, str) else utc_now().isoformat(),
        version=version,
    )


# ---------------------------------------------------------------------------
# Persisted records
# ---------------------------------------------------------------------------


@dataclass
class RawMessage:
    id: int
    memory_id: int
    role: Role
    content: str
    token_count: int
    message_index: int
    created_at: datetime | None = None


@dataclass
class ConversationMemoryRecord:
    id: int
    user_id: str
    conversation_id: str
    system_memory: SystemMemory
    rolling_summary: str = ""
    summary_tokens: int = 0
    total_messages: int = 0
    last_summarized_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


# ---------------------------------------------------------------------------
# Read-side views
# ---------------------------------------------------------------------------


@dataclass
class RecentMessage:
    role: Role
    content: str
    timestamp: datetime | None = None


@dataclass
class MemoryMeta:
    raw_message_count: int = 0
    summary_tokens: int = 0
    last_summarized_at: datetime | None = None


@dataclass
class MemoryContext:
    system_memory: SystemMemory
    rolling_summary: str = ""
    recent_messages: list[RecentMessage] = field(default_factory=list)
    total_messages: int = 0
    meta: MemoryMeta = field(default_factory=MemoryMeta)


@dataclass
class MemoryStats:
    conversation_id: str
    exists: bool
    total_messages: int = 0
    raw_message_count: int = 0
    summary_tokens: int = 0
    system_memory_keys: dict[str, int] = field(
        default_factory=lambda: {name: 0 for name in MEMORY_SECTIONS}
    )
    last_summarized_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


# ---------------------------------------------------------------------------
# Write-side inputs
# ---------------------------------------------------------------------------


@dataclass
class AddMessageInput:
    user_id: str
    conversation_id: str
    role: Role
    content: str
    token_count: int | None = None
    timestamp: datetime | None = None


# ---------------------------------------------------------------------------
# Orchestration-facing types
# ---------------------------------------------------------------------------


@dataclass
class ExtractedFacts:
    facts: dict[str, str] = field(default_factory=dict)
    preferences: dict[str, str] = field(default_factory=dict)
    tokens_used: int = 0

    def is_empty(self) -> bool:
        return not (self.facts or self.preferences)


@dataclass
class ChatMemoryContext:
    prompt_context: str
    raw: dict[str, Any]
    estimated_tokens: int
