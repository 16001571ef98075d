"""
Integration tests for the compaction engine on a real SQLite gateway.
"""
from __future__ import annotations

from datetime import datetime, timezone

import pytest

from chatmem.compaction import compact_memory, truncating_summarizer
from chatmem.errors import CompactionError
from chatmem.gateway import SqliteGateway
from chatmem.types import SystemMemory
from tests.helpers.fakes import RecordingSummarizer


def _seed(gateway: SqliteGateway, count: int) -> int:
    record = gateway.create_memory("u1", "c1", SystemMemory())
    with gateway.transaction() as tx:
        for i in range(count):
            tx.insert_message(
                record.id,
                role="user" if i % 2 == 0 else "assistant",
                content=f"m{i}",
                token_count=1,
                message_index=i,
                created_at=datetime.now(timezone.utc),
            )
        tx.update_memory(record.id, total_messages=count)
    return record.id


class TestCompactMemory:
    def test_compacts_overflow_and_reindexes(self, gateway: SqliteGateway) -> None:
        memory_id = _seed(gateway, 7)
        summarizer = RecordingSummarizer()

        result = compact_memory(
            gateway, memory_id, keep_count=3, max_content_chars=200, summarizer=summarizer
        )

        assert (result.compacted, result.kept, result.skipped) == (4, 3, False)
        assert summarizer.calls == [("", "user: m0\nassistant: m1\nuser: m2\nassistant: m3")]
        messages = gateway.list_messages(memory_id)
        assert [(m.message_index, m.content) for m in messages] == [
            (0, "m4"),
            (1, "m5"),
            (2, "m6"),
        ]
        record = gateway.find_memory("u1", "c1")
        assert record is not None
        assert record.rolling_summary == "S1"
        assert record.summary_tokens == 1
        assert record.total_messages == 3
        assert record.last_summarized_at is not None

    def test_previous_summary_passed_to_summarizer(self, gateway: SqliteGateway) -> None:
        memory_id = _seed(gateway, 5)
        with gateway.transaction() as tx:
            tx.update_memory(memory_id, rolling_summary="earlier")
        summarizer = RecordingSummarizer()
        compact_memory(gateway, memory_id, keep_count=3, max_content_chars=200, summarizer=summarizer)
        assert summarizer.calls[0][0] == "earlier"

    def test_within_window_is_noop(self, gateway: SqliteGateway) -> None:
        memory_id = _seed(gateway, 3)
        summarizer = RecordingSummarizer()
        result = compact_memory(
            gateway, memory_id, keep_count=3, max_content_chars=200, summarizer=summarizer
        )
        assert result.skipped is True
        assert summarizer.calls == []
        record = gateway.find_memory("u1", "c1")
        assert record is not None
        assert record.rolling_summary == ""
        assert record.total_messages == 3
        assert record.last_summarized_at is None

    def test_second_run_is_noop(self, gateway: SqliteGateway) -> None:
        memory_id = _seed(gateway, 7)
        summarize = truncating_summarizer(2000)
        compact_memory(gateway, memory_id, keep_count=3, max_content_chars=200, summarizer=summarize)
        again = compact_memory(
            gateway, memory_id, keep_count=3, max_content_chars=200, summarizer=summarize
        )
        assert again.skipped is True
        assert gateway.count_messages(memory_id) == 3

    def test_missing_record_is_noop(self, gateway: SqliteGateway) -> None:
        result = compact_memory(
            gateway, 12345, keep_count=3, max_content_chars=200, summarizer=RecordingSummarizer()
        )
        assert result.skipped is True
        assert result.reason == "missing"

    def test_summarizer_failure_rolls_back(self, gateway: SqliteGateway) -> None:
        memory_id = _seed(gateway, 7)

        def broken(old: str, new: str) -> str:
            raise RuntimeError("no summaries today")

        with pytest.raises(CompactionError):
            compact_memory(gateway, memory_id, keep_count=3, max_content_chars=200, summarizer=broken)

        assert gateway.count_messages(memory_id) == 7
        record = gateway.find_memory("u1", "c1")
        assert record is not None and record.total_messages == 7

    def test_keep_zero_compacts_everything(self, gateway: SqliteGateway) -> None:
        memory_id = _seed(gateway, 2)
        result = compact_memory(
            gateway,
            memory_id,
            keep_count=0,
            max_content_chars=200,
            summarizer=truncating_summarizer(2000),
        )
        assert result.compacted == 2
        assert gateway.count_messages(memory_id) == 0
