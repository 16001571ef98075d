"""
Integration tests for MemoryIntegration (chat-flow helpers).
"""
from __future__ import annotations

from unittest.mock import patch

import pytest

from chatmem.errors import StorageError, ValidationError
from chatmem.extraction import LLMFactExtractor
from chatmem.integration import MemoryIntegration
from chatmem.store import MemoryService
from chatmem.worker import BackgroundWorker
from tests.helpers.fakes import FakeLLM

_FACTS_RESPONSE = {"facts": {"name": "Aman", "city": "Delhi"}, "preferences": {"food": "dosa"}}


class TestGetContextForChat:
    def test_empty_memory(self, service: MemoryService) -> None:
        result = MemoryIntegration(service).get_context_for_chat("u1", "c1")
        assert result is not None
        assert result.prompt_context == ""
        assert result.estimated_tokens == 0
        assert result.raw["recent_messages"] == []
        assert result.raw["total_messages"] == 0

    def test_renders_prompt_and_raw(self, service: MemoryService) -> None:
        integration = MemoryIntegration(service)
        integration.update_facts("u1", "c1", {"name": "Aman"})
        integration.save_exchange("u1", "c1", "hello", "hi there")

        result = integration.get_context_for_chat("u1", "c1")
        assert result is not None
        assert result.prompt_context == "[KNOWN FACTS]\n- name: Aman"
        assert result.estimated_tokens == 7
        assert result.raw["system_memory"]["facts"] == {"name": "Aman"}
        assert result.raw["recent_messages"] == [
            {"role": "user", "content": "hello"},
            {"role": "assistant", "content": "hi there"},
        ]

    def test_storage_failure_returns_none(self, service: MemoryService) -> None:
        integration = MemoryIntegration(service)
        with patch.object(
            service, "get_combined_memory_context", side_effect=StorageError("db down")
        ):
            assert integration.get_context_for_chat("u1", "c1") is None

    def test_unexpected_error_returns_none(self, service: MemoryService) -> None:
        integration = MemoryIntegration(service)
        with patch.object(
            service.gateway, "read_context", side_effect=RuntimeError("driver exploded")
        ):
            assert integration.get_context_for_chat("u1", "c1") is None


class TestSaveExchange:
    def test_saves_both_turns_in_order(self, service: MemoryService) -> None:
        integration = MemoryIntegration(service)
        assert integration.save_exchange("u1", "c1", "question", "answer") is True
        context = service.get_memory_context("u1", "c1")
        assert [(m.role, m.content) for m in context.recent_messages] == [
            ("user", "question"),
            ("assistant", "answer"),
        ]

    def test_token_counts_passed_through(self, service: MemoryService) -> None:
        MemoryIntegration(service).save_exchange(
            "u1", "c1", "q", "a", user_token_count=11, assistant_token_count=22
        )
        record = service.get_or_create_memory("u1", "c1")
        counts = [m.token_count for m in service.gateway.list_messages(record.id)]
        assert counts == [11, 22]

    def test_validation_error_propagates(self, service: MemoryService) -> None:
        with pytest.raises(ValidationError):
            MemoryIntegration(service).save_exchange("u1", "c1", "", "answer")
        assert service.get_stats("u1", "c1").exists is False

    def test_invalid_assistant_turn_stores_nothing(self, service: MemoryService) -> None:
        with pytest.raises(ValidationError):
            MemoryIntegration(service).save_exchange("u1", "c1", "hello there", "")
        stats = service.get_stats("u1", "c1")
        assert stats.exists is False
        assert stats.total_messages == 0

    def test_invalid_token_count_stores_nothing(self, service: MemoryService) -> None:
        integration = MemoryIntegration(service)
        integration.save_exchange("u1", "c1", "q", "a")
        with pytest.raises(ValidationError):
            integration.save_exchange("u1", "c1", "q2", "a2", assistant_token_count=-1)
        assert service.get_stats("u1", "c1").total_messages == 2

    def test_storage_error_returns_false(self, service: MemoryService) -> None:
        integration = MemoryIntegration(service)
        with patch.object(service, "add_message_input", side_effect=StorageError("db down")):
            assert integration.save_exchange("u1", "c1", "q", "a") is False

    def test_extraction_saves_facts_inline(self, service: MemoryService) -> None:
        llm = FakeLLM(_FACTS_RESPONSE)
        integration = MemoryIntegration(service, LLMFactExtractor(llm))
        integration.save_exchange(
            "u1", "c1", "My name is Aman and I live in Delhi", "Nice!", extract_facts=True
        )
        assert llm.call_count == 1
        memory = service.get_memory_context("u1", "c1").system_memory
        assert memory.facts == {"name": "Aman", "city": "Delhi"}
        assert memory.preferences == {"food": "dosa"}
        assert service.get_global_user_memory("u1").facts["name"] == "Aman"

    def test_extraction_off_by_default(self, service: MemoryService) -> None:
        llm = FakeLLM(_FACTS_RESPONSE)
        MemoryIntegration(service, LLMFactExtractor(llm)).save_exchange(
            "u1", "c1", "My name is Aman and I live in Delhi", "Nice!"
        )
        assert llm.call_count == 0

    def test_gate_skips_trivial_messages(self, service: MemoryService) -> None:
        llm = FakeLLM(_FACTS_RESPONSE)
        MemoryIntegration(service, LLMFactExtractor(llm)).save_exchange(
            "u1", "c1", "thanks a lot!", "You're welcome", extract_facts=True
        )
        assert llm.call_count == 0

    def test_extraction_failure_treated_as_no_facts(self, service: MemoryService) -> None:
        llm = FakeLLM(error=ConnectionError("offline"))
        integration = MemoryIntegration(service, LLMFactExtractor(llm))
        assert integration.save_exchange(
            "u1", "c1", "My name is Aman and I live in Delhi", "Nice!", extract_facts=True
        ) is True
        assert service.get_memory_context("u1", "c1").system_memory.is_empty()
        assert service.get_stats("u1", "c1").total_messages == 2

    def test_extraction_on_background_worker(self, service: MemoryService) -> None:
        llm = FakeLLM(_FACTS_RESPONSE)
        worker = BackgroundWorker(max_workers=1, retry_delay_s=0.0)
        try:
            integration = MemoryIntegration(service, LLMFactExtractor(llm), worker=worker)
            integration.save_exchange(
                "u1", "c1", "My name is Aman and I live in Delhi", "Nice!", extract_facts=True
            )
            assert integration.wait_idle(timeout=10)
        finally:
            worker.shutdown()
        assert service.get_memory_context("u1", "c1").system_memory.facts["city"] == "Delhi"


class TestPassThroughs:
    def test_update_preferences(self, service: MemoryService) -> None:
        integration = MemoryIntegration(service)
        integration.update_preferences("u1", "c1", {"tone": "casual"})
        assert service.get_memory_context("u1", "c1").system_memory.preferences == {
            "tone": "casual"
        }

    def test_clear_and_stats(self, service: MemoryService) -> None:
        integration = MemoryIntegration(service)
        integration.save_exchange("u1", "c1", "q", "a")
        assert integration.get_stats("u1", "c1").total_messages == 2
        assert integration.clear_conversation_memory("u1", "c1") is True
        assert integration.get_stats("u1", "c1").exists is False

    def test_extract_without_extractor_is_noop(self, service: MemoryService) -> None:
        integration = MemoryIntegration(service)
        assert integration._extract_and_save("u1", "c1", "My name is Aman", "Hi") == 0
        assert service.get_stats("u1", "c1").exists is False
