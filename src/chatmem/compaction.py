"""
Compaction: fold overflow raw messages into the rolling summary.

Live messages beyond the keep window are rendered as ``role: content`` lines,
handed to a summarizer together with the previous summary, deleted, and the
survivors are renumbered ``0..len-1``.  Everything after the initial read
happens in one gateway transaction with the memory row locked, so two
overlapping runs cannot double-delete: the second one re-reads under the lock,
finds at most ``keep_count`` messages and does nothing.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass

from .errors import CompactionError, StorageError
from .internal import estimate_tokens, utc_now
from .types import RawMessage

logger = logging.getLogger(__name__)

SUMMARY_SEPARATOR = "\n---\n"

# (old_summary, new_lines) -> new_summary
Summarizer = Callable[[str, str], str]


@dataclass
class CompactionResult:
    memory_id: int
    compacted: int = 0
    kept: int = 0
    summary_tokens: int = 0
    skipped: bool = False
    reason: str = ""


# ---------------------------------------------------------------------------
# Summaries
# ---------------------------------------------------------------------------


def render_messages(messages: Sequence[RawMessage], max_content_chars: int) -> str:
    """Render messages as ``"<role>: <content[:max]>"`` lines joined by newlines."""
    return "\n".join(f"{m.role}: {m.content[:max_content_chars]}" for m in messages)


def truncating_summarizer(max_chars: int) -> Summarizer:
    """
    Default summarizer: append the new block after a ``---`` separator and
    hard-truncate the result to *max_chars*, keeping the front (oldest text).
    """

    def summarize(old_summary: str, new_lines: str) -> str:
        combined = f"{old_summary}{SUMMARY_SEPARATOR}{new_lines}" if old_summary else new_lines
        return combined[:max_chars]

    return summarize


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


def compact_memory(
    gateway: object,
    memory_id: int,
    *,
    keep_count: int,
    max_content_chars: int,
    summarizer: Summarizer,
) -> CompactionResult:
    """
    Compact one memory record.

    No-op (``skipped=True``) when the record is gone or holds at most
    *keep_count* live messages.  Any failure is raised as ``CompactionError``;
    the transaction is rolled back and the record is left untouched.
    """
    try:
        with gateway.transaction() as tx:  # type: ignore[attr-defined]
            memory = tx.lock_memory(memory_id)
            if memory is None:
                return CompactionResult(memory_id=memory_id, skipped=True, reason="missing")

            messages = tx.list_messages(memory_id)
            if len(messages) <= keep_count:
                return CompactionResult(
                    memory_id=memory_id,
                    kept=len(messages),
                    summary_tokens=memory.summary_tokens,
                    skipped=True,
                    reason="within keep window",
                )

            to_compress = messages[:-keep_count] if keep_count > 0 else list(messages)
            to_keep = messages[-keep_count:] if keep_count > 0 else []

            new_lines = render_messages(to_compress, max_content_chars)
            summary = summarizer(memory.rolling_summary, new_lines)
            summary_tokens = estimate_tokens(summary)

            tx.delete_messages(m.id for m in to_compress)
            tx.reindex_messages([m.id for m in to_keep])
            tx.update_memory(
                memory_id,
                rolling_summary=summary,
                summary_tokens=summary_tokens,
                last_summarized_at=utc_now(),
                total_messages=len(to_keep),
            )
    except StorageError as exc:
        raise CompactionError(f"compaction of memory {memory_id} failed: {exc}") from exc
    except CompactionError:
        raise
    except Exception as exc:
        raise CompactionError(f"compaction of memory {memory_id} failed: {exc}") from exc

    logger.info(
        "Compacted %d messages into summary for memory %s, kept %d (summary ~%d tokens)",
        len(to_compress),
        memory_id,
        len(to_keep),
        summary_tokens,
    )
    return CompactionResult(
        memory_id=memory_id,
        compacted=len(to_compress),
        kept=len(to_keep),
        summary_tokens=summary_tokens,
    )
