"""
Size- and length-bounded merging of fact / preference / decision maps.

New keys are admitted first-come-first-served until the map holds
``max_keys`` entries; existing keys can always be overwritten.  Nothing is
ever evicted automatically.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from .internal import utc_now
from .types import MEMORY_SECTIONS, SystemMemory


def merge_with_limit(
    existing: Mapping[str, str],
    updates: Mapping[str, Any] | None,
    *,
    max_keys: int,
    max_value_len: int,
) -> dict[str, str]:
    """Return a copy of *existing* with *updates* applied under the caps."""
    merged = dict(existing)
    if not updates:
        return merged

    for key, value in updates.items():
        if value is None:
            continue
        key = str(key)
        text = value if isinstance(value, str) else str(value)
        if key not in merged and len(merged) >= max_keys:
            continue
        merged[key] = text[:max_value_len]
    return merged


def merge_system_memory(
    current: SystemMemory,
    updates: Mapping[str, Any],
    *,
    max_keys: int,
    max_value_len: int,
) -> SystemMemory:
    """Apply a partial ``{facts, preferences, decisions}`` update to *current*."""
    sections = {
        name: merge_with_limit(
            getattr(current, name),
            updates.get(name) or {},
            max_keys=max_keys,
            max_value_len=max_value_len,
        )
        for name in MEMORY_SECTIONS
    }
    return SystemMemory(
        facts=sections["facts"],
        preferences=sections["preferences"],
        decisions=sections["decisions"],
        last_updated=utc_now().isoformat(),
        version=current.version,
    )


def normalize_updates(updates: Any) -> dict[str, dict[str, Any]]:
    """
    Accept either a mapping or a ``SystemMemory`` and return plain section maps.

    Unknown top-level keys are ignored.  Raises ``TypeError`` for anything else.
    """
    if isinstance(updates, SystemMemory):
        return {name: dict(getattr(updates, name)) for name in MEMORY_SECTIONS}
    if not isinstance(updates, Mapping):
        raise TypeError(f"updates must be a mapping, got {type(updates).__name__}")
    normalized: dict[str, dict[str, Any]] = {}
    for name in MEMORY_SECTIONS:
        section = updates.get(name)
        if section is None:
            continue
        if not isinstance(section, Mapping):
            raise TypeError(f"updates[{name!r}] must be a mapping")
        normalized[name] = dict(section)
    return normalized
