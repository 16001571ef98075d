"""
MemoryService: three-layer conversational memory per (user, conversation).

Layers:
  L1  System memory   (facts / preferences / decisions, bounded maps)
  L2  Rolling summary (compacted text of evicted turns)
  L3  Raw messages    (short window of recent turns, gapless 0..k-1 indices)

Write path:
    add_message -> one transaction: lock record, insert at next index,
    bump total_messages -> schedule compaction once total > summary_threshold

Read path:
    get_combined_memory_context -> global record + conversation record
    -> facts merged with the conversation winning on collisions

Global memory is an ordinary record stored under ``config.global_memory_id``.
Every ``update_system_memory`` on a regular conversation is written through
to it inside the same transaction.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from datetime import datetime
from typing import Any

from .bounding import merge_system_memory, normalize_updates
from .compaction import CompactionResult, Summarizer, compact_memory, truncating_summarizer
from .config import MemoryConfig, resolve_memory_config
from .errors import CompactionError, StorageError, ValidationError
from .gateway import MemoryGateway, create_gateway
from .internal import estimate_tokens, utc_now
from .prompt import build_prompt_context
from .types import (
    MEMORY_SECTIONS,
    VALID_ROLES,
    AddMessageInput,
    ConversationMemoryRecord,
    MemoryContext,
    MemoryMeta,
    MemoryStats,
    RawMessage,
    RecentMessage,
    SystemMemory,
)
from .worker import BackgroundWorker

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def _require_id(name: str, value: Any) -> str:
    if not isinstance(value, str) or not value:
        raise ValidationError(f"{name} is required and must be a string")
    return value


def validate_message_input(message: AddMessageInput) -> None:
    """Raise ``ValidationError`` unless *message* can be stored as-is."""
    _require_id("user_id", message.user_id)
    _require_id("conversation_id", message.conversation_id)
    if message.role not in VALID_ROLES:
        raise ValidationError('role must be "user" or "assistant"')
    if not isinstance(message.content, str) or not message.content:
        raise ValidationError("content is required and must be a non-empty string")
    if message.token_count is not None and (
        isinstance(message.token_count, bool)
        or not isinstance(message.token_count, int)
        or message.token_count < 0
    ):
        raise ValidationError("token_count must be a non-negative integer")
    if message.timestamp is not None and not isinstance(message.timestamp, datetime):
        raise ValidationError("timestamp must be a datetime")


def _to_context(record: ConversationMemoryRecord, messages: list[RawMessage]) -> MemoryContext:
    ordered = sorted(messages, key=lambda m: m.message_index)
    return MemoryContext(
        system_memory=record.system_memory,
        rolling_summary=record.rolling_summary,
        recent_messages=[
            RecentMessage(role=m.role, content=m.content, timestamp=m.created_at)
            for m in ordered
        ],
        total_messages=record.total_messages,
        meta=MemoryMeta(
            raw_message_count=len(ordered),
            summary_tokens=record.summary_tokens,
            last_summarized_at=record.last_summarized_at,
        ),
    )


# ---------------------------------------------------------------------------
# MemoryService
# ---------------------------------------------------------------------------


class MemoryService:
    """
    Coordinator for conversation and global memory records.

    Holds no per-conversation state; every call round-trips through the
    gateway, so one instance can be shared by any number of threads.

    Args:
        gateway:    Persistence gateway. Built from *config* when omitted.
        config:     Resolved config. Defaults to ``resolve_memory_config()``.
        summarizer: ``(old_summary, new_lines) -> new_summary``. Defaults to
                    truncation at ``max_summary_tokens * 4`` characters.
        worker:     Background worker for compaction. Created on demand in
                    ``background`` mode; an injected worker is not shut down
                    by ``close()``.
    """

    def __init__(
        self,
        gateway: MemoryGateway | None = None,
        *,
        config: MemoryConfig | None = None,
        summarizer: Summarizer | None = None,
        worker: BackgroundWorker | None = None,
    ) -> None:
        self._config = config or resolve_memory_config()
        self._gateway = gateway if gateway is not None else create_gateway(self._config)
        self._summarizer = summarizer or truncating_summarizer(self._config.max_summary_chars)

        self._owns_worker = worker is None
        if worker is None and self._config.compaction_mode == "background":
            worker = BackgroundWorker(
                max_workers=self._config.compaction_workers,
                max_attempts=self._config.compaction_max_attempts,
                retry_delay_s=self._config.compaction_retry_delay_s,
                name="chatmem-compaction",
            )
        self._worker = worker

        logger.info(
            "Memory service initialised (max_raw_messages=%d, summary_threshold=%d, "
            "max_summary_tokens=%d, compaction=%s)",
            self._config.max_raw_messages,
            self._config.summary_threshold,
            self._config.max_summary_tokens,
            self._config.compaction_mode,
        )

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def config(self) -> MemoryConfig:
        return self._config

    @property
    def gateway(self) -> MemoryGateway:
        return self._gateway

    @property
    def worker(self) -> BackgroundWorker | None:
        return self._worker

    @property
    def global_memory_id(self) -> str:
        return self._config.global_memory_id

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _lock_or_create(
        self, tx: Any, user_id: str, conversation_id: str
    ) -> ConversationMemoryRecord:
        """Inside *tx*: return the locked record, inserting an empty one first if needed."""
        record = tx.find_memory(user_id, conversation_id, lock=True)
        if record is not None:
            return record
        tx.insert_memory_if_absent(user_id, conversation_id, SystemMemory())
        record = tx.find_memory(user_id, conversation_id, lock=True)
        if record is None:
            raise StorageError(
                f"memory row for user={user_id} conv={conversation_id} vanished after insert"
            )
        logger.info("Created new memory for user=%s, conv=%s", user_id, conversation_id)
        return record

    def _merge_updates(self, current: SystemMemory, updates: Mapping[str, Any]) -> SystemMemory:
        return merge_system_memory(
            current,
            updates,
            max_keys=self._config.max_system_memory_keys,
            max_value_len=self._config.max_fact_value_length,
        )

    def _normalize(self, updates: Any) -> dict[str, dict[str, Any]]:
        try:
            return normalize_updates(updates)
        except TypeError as exc:
            raise ValidationError(str(exc)) from exc

    # ------------------------------------------------------------------
    # Records
    # ------------------------------------------------------------------

    def get_or_create_memory(self, user_id: str, conversation_id: str) -> ConversationMemoryRecord:
        """Return the record for (user, conversation), persisting an empty one on first use."""
        _require_id("user_id", user_id)
        _require_id("conversation_id", conversation_id)

        record = self._gateway.find_memory(user_id, conversation_id)
        if record is not None:
            return record
        record = self._gateway.create_memory(user_id, conversation_id, SystemMemory())
        logger.info("Created new memory for user=%s, conv=%s", user_id, conversation_id)
        return record

    def get_memory_context(self, user_id: str, conversation_id: str) -> MemoryContext:
        """
        Read the three layers of one conversation.

        Read-only: an unknown conversation yields the empty state without
        creating a record.  ``recent_messages`` holds at most
        ``max_raw_messages`` turns, ascending by index.
        """
        _require_id("user_id", user_id)
        _require_id("conversation_id", conversation_id)

        record, messages = self._gateway.read_context(
            user_id, conversation_id, limit=self._config.max_raw_messages
        )
        if record is None:
            return MemoryContext(system_memory=SystemMemory())
        return _to_context(record, messages)

    # ------------------------------------------------------------------
    # Write path
    # ------------------------------------------------------------------

    def add_message(
        self,
        user_id: str,
        conversation_id: str,
        role: str,
        content: str,
        *,
        token_count: int | None = None,
        timestamp: datetime | None = None,
    ) -> RawMessage:
        """
        Append one turn.

        The index lookup, insert and counter bump run in a single transaction
        with the memory row locked, so concurrent writers never share an index.
        Crossing ``summary_threshold`` schedules a compaction that this call
        does not wait for.

        Raises:
            ValidationError: malformed ids, role, content, or token_count.
            StorageError:    the transaction failed and was rolled back.
        """
        message = AddMessageInput(
            user_id=user_id,
            conversation_id=conversation_id,
            role=role,
            content=content,
            token_count=token_count,
            timestamp=timestamp,
        )
        return self.add_message_input(message)

    def add_message_input(self, message: AddMessageInput) -> RawMessage:
        """Same as :meth:`add_message`, taking a prepared ``AddMessageInput``."""
        validate_message_input(message)

        created_at = message.timestamp or utc_now()
        tokens = (
            message.token_count
            if message.token_count is not None
            else estimate_tokens(message.content)
        )

        with self._gateway.transaction() as tx:
            record = self._lock_or_create(tx, message.user_id, message.conversation_id)
            index = tx.next_message_index(record.id)
            message_id = tx.insert_message(
                record.id,
                role=message.role,
                content=message.content,
                token_count=tokens,
                message_index=index,
                created_at=created_at,
            )
            new_total = record.total_messages + 1
            tx.update_memory(record.id, total_messages=new_total)

        logger.debug(
            "Message saved: user=%s, conv=%s, role=%s, index=%d",
            message.user_id, message.conversation_id, message.role, index,
        )

        if new_total > self._config.summary_threshold:
            self._schedule_compaction(record.id)

        return RawMessage(
            id=message_id,
            memory_id=record.id,
            role=message.role,
            content=message.content,
            token_count=tokens,
            message_index=index,
            created_at=created_at,
        )

    # ------------------------------------------------------------------
    # Compaction
    # ------------------------------------------------------------------

    def _compact_by_id(self, memory_id: int) -> CompactionResult:
        return compact_memory(
            self._gateway,
            memory_id,
            keep_count=self._config.max_raw_messages,
            max_content_chars=self._config.max_message_content_for_summary,
            summarizer=self._summarizer,
        )

    def _schedule_compaction(self, memory_id: int) -> None:
        if self._worker is not None:
            try:
                self._worker.submit(f"compact:{memory_id}", self._compact_by_id, memory_id)
            except RuntimeError as exc:
                logger.warning("Compaction for memory %s not scheduled: %s", memory_id, exc)
            return

        try:
            self._compact_by_id(memory_id)
        except CompactionError as exc:
            logger.error("Compaction failed for memory %s: %s", memory_id, exc)

    def compact(self, user_id: str, conversation_id: str) -> CompactionResult:
        """Compact one conversation now, on the calling thread."""
        _require_id("user_id", user_id)
        _require_id("conversation_id", conversation_id)

        record = self._gateway.find_memory(user_id, conversation_id)
        if record is None:
            return CompactionResult(memory_id=0, skipped=True, reason="missing")
        return self._compact_by_id(record.id)

    def flush_compactions(self, timeout: float | None = None) -> bool:
        """Wait for scheduled background compactions. ``False`` if *timeout* expired."""
        if self._worker is None:
            return True
        return self._worker.wait_idle(timeout)

    # ------------------------------------------------------------------
    # System memory
    # ------------------------------------------------------------------

    def update_system_memory(
        self,
        user_id: str,
        conversation_id: str,
        updates: Mapping[str, Any] | SystemMemory,
    ) -> SystemMemory:
        """
        Merge *updates* into the conversation's facts / preferences / decisions.

        Unless *conversation_id* is the global id, the same updates are applied
        to the user's global record in the same transaction.  Returns the
        conversation's merged system memory.
        """
        _require_id("user_id", user_id)
        _require_id("conversation_id", conversation_id)
        normalized = self._normalize(updates)

        write_through = (
            self._config.write_through_global and conversation_id != self.global_memory_id
        )

        with self._gateway.transaction() as tx:
            record = self._lock_or_create(tx, user_id, conversation_id)
            merged = self._merge_updates(record.system_memory, normalized)
            tx.update_memory(record.id, system_memory=merged)

            if write_through:
                global_record = self._lock_or_create(tx, user_id, self.global_memory_id)
                global_merged = self._merge_updates(global_record.system_memory, normalized)
                tx.update_memory(global_record.id, system_memory=global_merged)

        logger.info("System memory updated for user=%s, conv=%s", user_id, conversation_id)
        if write_through:
            logger.info("Global user memory updated for user=%s", user_id)
        return merged

    def get_global_user_memory(self, user_id: str) -> SystemMemory:
        """Facts valid across all of *user_id*'s conversations (empty if none yet)."""
        _require_id("user_id", user_id)
        record = self._gateway.find_memory(user_id, self.global_memory_id)
        return record.system_memory if record is not None else SystemMemory()

    def update_global_user_memory(
        self, user_id: str, updates: Mapping[str, Any] | SystemMemory
    ) -> SystemMemory:
        """Merge *updates* into the global record only."""
        return self.update_system_memory(user_id, self.global_memory_id, updates)

    def get_combined_memory_context(self, user_id: str, conversation_id: str) -> MemoryContext:
        """
        Global facts overlaid with conversation facts (conversation wins on
        collisions).  Summary and recent messages come from the conversation
        record only.
        """
        global_memory = self.get_global_user_memory(user_id)
        context = self.get_memory_context(user_id, conversation_id)
        local = context.system_memory

        context.system_memory = SystemMemory(
            facts={**global_memory.facts, **local.facts},
            preferences={**global_memory.preferences, **local.preferences},
            decisions={**global_memory.decisions, **local.decisions},
            last_updated=utc_now().isoformat(),
        )
        return context

    # ------------------------------------------------------------------
    # Prompt
    # ------------------------------------------------------------------

    def build_prompt_context(self, context: MemoryContext) -> str:
        return build_prompt_context(context)

    # ------------------------------------------------------------------
    # Maintenance / diagnostics
    # ------------------------------------------------------------------

    def clear_memory(self, user_id: str, conversation_id: str) -> bool:
        """Delete the record and all of its messages. Returns ``False`` if there was none."""
        _require_id("user_id", user_id)
        _require_id("conversation_id", conversation_id)

        with self._gateway.transaction() as tx:
            record = tx.find_memory(user_id, conversation_id, lock=True)
            if record is None:
                return False
            deleted = tx.delete_all_messages(record.id)
            tx.delete_memory(record.id)

        logger.info(
            "Cleared memory for user=%s, conv=%s (%d messages)", user_id, conversation_id, deleted
        )
        return True

    def get_stats(self, user_id: str, conversation_id: str) -> MemoryStats:
        _require_id("user_id", user_id)
        _require_id("conversation_id", conversation_id)

        record = self._gateway.find_memory(user_id, conversation_id)
        if record is None:
            return MemoryStats(conversation_id=conversation_id, exists=False)

        system_memory = record.system_memory
        return MemoryStats(
            conversation_id=conversation_id,
            exists=True,
            total_messages=record.total_messages,
            raw_message_count=self._gateway.count_messages(record.id),
            summary_tokens=record.summary_tokens,
            system_memory_keys={
                name: len(getattr(system_memory, name)) for name in MEMORY_SECTIONS
            },
            last_summarized_at=record.last_summarized_at,
            created_at=record.created_at,
            updated_at=record.updated_at,
        )

    def list_conversations(self, user_id: str) -> list[str]:
        """Conversation ids with a stored record, most recently updated first."""
        _require_id("user_id", user_id)
        return [
            cid for cid in self._gateway.list_conversations(user_id)
            if cid != self.global_memory_id
        ]

    # ------------------------------------------------------------------
    # Close
    # ------------------------------------------------------------------

    def close(self) -> None:
        if self._worker is not None and self._owns_worker:
            self._worker.shutdown(wait=True)
        self._gateway.close()

    def __enter__(self) -> MemoryService:
        return self

    def __exit__(self, *_: Any) -> None:
        self.close()
