"""
Prompt assembly: render a MemoryContext as a system-prompt block.

Sections, in order, each omitted when empty:
  [KNOWN FACTS]           - key: value lines
  [USER PREFERENCES]      - key: value lines
  [CONVERSATION HISTORY]  rolling summary text

Recent raw messages are not included; callers send them to the model as
separate chat turns.
"""

from __future__ import annotations

from collections.abc import Mapping

from .types import MemoryContext

FACTS_HEADER = "[KNOWN FACTS]"
PREFERENCES_HEADER = "[USER PREFERENCES]"
HISTORY_HEADER = "[CONVERSATION HISTORY]"


def _format_map(header: str, values: Mapping[str, str]) -> str:
    lines = [header]
    lines.extend(f"- {key}: {value}" for key, value in values.items())
    return "\n".join(lines)


def build_prompt_context(context: MemoryContext) -> str:
    parts: list[str] = []
    system_memory = context.system_memory

    if system_memory.facts:
        parts.append(_format_map(FACTS_HEADER, system_memory.facts))
    if system_memory.preferences:
        parts.append(_format_map(PREFERENCES_HEADER, system_memory.preferences))
    if context.rolling_summary:
        parts.append(f"{HISTORY_HEADER}\n{context.rolling_summary}")

    return "\n\n".join(parts)
