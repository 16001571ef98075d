"""Unit tests for chatmem.prompt."""
from __future__ import annotations

from chatmem.prompt import build_prompt_context
from chatmem.types import MemoryContext, RecentMessage, SystemMemory


def _context(**kwargs) -> MemoryContext:
    system_memory = SystemMemory(
        facts=kwargs.pop("facts", {}), preferences=kwargs.pop("preferences", {})
    )
    return MemoryContext(system_memory=system_memory, **kwargs)


class TestBuildPromptContext:
    def test_empty_context_renders_empty_string(self) -> None:
        assert build_prompt_context(_context()) == ""

    def test_summary_only_has_no_empty_headers(self) -> None:
        text = build_prompt_context(_context(rolling_summary="user: hi"))
        assert text == "[CONVERSATION HISTORY]\nuser: hi"
        assert "[KNOWN FACTS]" not in text
        assert "[USER PREFERENCES]" not in text

    def test_all_sections_in_fixed_order(self) -> None:
        text = build_prompt_context(
            _context(
                facts={"name": "Aman", "city": "Delhi"},
                preferences={"tone": "casual"},
                rolling_summary="earlier talk",
            )
        )
        assert text == (
            "[KNOWN FACTS]\n- name: Aman\n- city: Delhi\n\n"
            "[USER PREFERENCES]\n- tone: casual\n\n"
            "[CONVERSATION HISTORY]\nearlier talk"
        )

    def test_recent_messages_never_rendered(self) -> None:
        text = build_prompt_context(
            _context(
                facts={"name": "Aman"},
                recent_messages=[RecentMessage(role="user", content="secret recent turn")],
            )
        )
        assert "secret recent turn" not in text

    def test_decisions_not_rendered(self) -> None:
        context = MemoryContext(system_memory=SystemMemory(decisions={"plan": "pro"}))
        assert build_prompt_context(context) == ""
