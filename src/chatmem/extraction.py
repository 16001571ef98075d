"""
LLM-based fact extraction from a single user/assistant exchange.

The extractor is optional: the memory store works without it, and any
failure is reported as ``ExtractionError`` so the caller can treat it as
"no facts found".
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Callable
from typing import Any, Protocol, runtime_checkable

from .errors import ExtractionError
from .internal import estimate_tokens
from .types import ExtractedFacts

logger = logging.getLogger(__name__)

EXTRACTION_PROMPT = (
    "You are a fact extractor. Extract personal information from the conversation below.\n\n"
    "RULES:\n"
    "1. Extract ONLY explicit facts stated by the user\n"
    "2. Do NOT infer or assume anything\n"
    "3. Return valid JSON only, no markdown, no explanation\n"
    "4. Use snake_case for keys\n"
    "5. Keep values concise (max 50 chars)\n\n"
    "CATEGORIES TO EXTRACT:\n"
    "- Personal: name, age, gender, location, profession, company\n"
    "- Preferences: favourite_book, favourite_movie, favourite_food, favourite_color, "
    "favourite_sport, favourite_music\n"
    "- Relationships: spouse_name, children, pet_name, pet_type\n"
    "- Interests: hobbies, skills, languages_spoken\n"
    "- Other: any other personal fact explicitly stated\n\n"
    "OUTPUT FORMAT:\n"
    '{"facts": {"key": "value"}, "preferences": {"key": "value"}}\n\n'
    'If no facts found, return: {"facts": {}, "preferences": {}}\n\n'
    "CONVERSATION:\n"
    "User: {user_message}\n"
    "Assistant: {assistant_message}\n\n"
    "JSON:"
)

_MIN_MESSAGE_CHARS = 10
_SHORT_QUESTION_CHARS = 50

_SKIP_OPENERS = re.compile(
    r"^(hi|hello|hey|thanks|ok|yes|no|bye|good|nice|cool|great|hmm|haan|nahi|theek|accha)\b",
    re.IGNORECASE,
)
_QUESTION_ONLY = re.compile(
    r"^(what|how|why|when|where|who|can|could|would|will|is|are|do|does"
    r"|kya|kaise|kyun|kab|kahan|kaun)\b.*\?$",
    re.IGNORECASE | re.DOTALL,
)


@runtime_checkable
class FactExtractor(Protocol):
    def should_extract(self, message: str) -> bool: ...

    def extract_facts(self, user_message: str, assistant_message: str) -> ExtractedFacts: ...


# ---------------------------------------------------------------------------
# Gate
# ---------------------------------------------------------------------------


def should_extract(message: str) -> bool:
    """Cheap gate: skip greetings, acknowledgements and short bare questions."""
    if len(message) < _MIN_MESSAGE_CHARS:
        return False
    stripped = message.strip()
    if _SKIP_OPENERS.match(stripped):
        return False
    if len(message) < _SHORT_QUESTION_CHARS and _QUESTION_ONLY.match(stripped):
        return False
    return True


# ---------------------------------------------------------------------------
# Response parsing
# ---------------------------------------------------------------------------


def sanitize_key(key: str, max_len: int = 50) -> str:
    key = re.sub(r"[^a-z0-9_]", "_", key.lower())
    key = re.sub(r"_+", "_", key)
    return key[:max_len]


def _clean_section(raw: Any, *, max_key_len: int, max_value_len: int) -> dict[str, str]:
    if not isinstance(raw, dict):
        return {}
    cleaned: dict[str, str] = {}
    for key, value in raw.items():
        if not isinstance(value, str) or not value.strip():
            continue
        name = sanitize_key(str(key), max_key_len)
        if not name:
            continue
        cleaned[name] = value.strip()[:max_value_len]
    return cleaned


def parse_extraction_response(
    response: str, *, max_key_len: int = 50, max_value_len: int = 200
) -> tuple[dict[str, str], dict[str, str]]:
    """Parse ``{"facts": {...}, "preferences": {...}}``; malformed input yields two empty maps."""
    text = (response or "").strip()

    # Strip markdown code fences if present
    text = re.sub(r"^```(?:json)?\s*", "", text)
    text = re.sub(r"\s*```$", "", text)
    text = text.strip()

    if not text:
        return {}, {}
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        logger.warning("Fact extraction response is not valid JSON; ignoring")
        return {}, {}
    if not isinstance(data, dict):
        return {}, {}

    facts = _clean_section(data.get("facts"), max_key_len=max_key_len, max_value_len=max_value_len)
    preferences = _clean_section(
        data.get("preferences"), max_key_len=max_key_len, max_value_len=max_value_len
    )
    return facts, preferences


# ---------------------------------------------------------------------------
# Extractor
# ---------------------------------------------------------------------------


class LLMFactExtractor:
    """
    Extract facts and preferences with any ``llm_fn(prompt) -> str`` callable.

    Args:
        llm_fn:          Prompt in, raw model text out.
        max_input_chars: Each message is truncated to this many characters.
        max_key_len:     Sanitized keys are cut to this length.
        max_value_len:   Values are trimmed and cut to this length.
    """

    def __init__(
        self,
        llm_fn: Callable[[str], str],
        *,
        max_input_chars: int = 1000,
        max_key_len: int = 50,
        max_value_len: int = 200,
        prompt_template: str = EXTRACTION_PROMPT,
    ) -> None:
        self.llm_fn = llm_fn
        self.max_input_chars = max_input_chars
        self.max_key_len = max_key_len
        self.max_value_len = max_value_len
        self.prompt_template = prompt_template

    def should_extract(self, message: str) -> bool:
        return should_extract(message)

    def build_prompt(self, user_message: str, assistant_message: str) -> str:
        return self.prompt_template.replace(
            "{user_message}", user_message[: self.max_input_chars]
        ).replace("{assistant_message}", assistant_message[: self.max_input_chars])

    def extract_facts(self, user_message: str, assistant_message: str) -> ExtractedFacts:
        prompt = self.build_prompt(user_message, assistant_message)
        try:
            response = self.llm_fn(prompt)
        except Exception as exc:
            raise ExtractionError(f"fact extraction call failed: {exc}") from exc

        facts, preferences = parse_extraction_response(
            response, max_key_len=self.max_key_len, max_value_len=self.max_value_len
        )
        tokens_used = estimate_tokens(prompt) + estimate_tokens(response or "")
        logger.info(
            "Extracted %d facts, %d preferences (~%d tokens)",
            len(facts), len(preferences), tokens_used,
        )
        return ExtractedFacts(facts=facts, preferences=preferences, tokens_used=tokens_used)
