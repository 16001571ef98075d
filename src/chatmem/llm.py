"""
OpenAI adapter producing the ``llm_fn(prompt) -> str`` callable the fact
extractor expects.
"""

from __future__ import annotations

import os
from collections.abc import Callable

DEFAULT_EXTRACTION_MODEL = "gpt-4o-mini"


def _supports_temperature(model: str) -> bool:
    return not model.startswith("gpt-5")


def make_openai_llm_fn(
    model: str = DEFAULT_EXTRACTION_MODEL,
    *,
    api_key: str | None = None,
    base_url: str | None = None,
    temperature: float = 0.1,
    max_tokens: int = 200,
    timeout_s: float = 5.0,
) -> Callable[[str], str]:
    """
    Build an ``llm_fn`` over the OpenAI chat completions API.

    ``api_key`` defaults to ``OPENAI_API_KEY``.  The openai package is only
    imported here, so the store itself never needs it.

    Raises:
        RuntimeError: no API key is available.
    """
    key = api_key or os.environ.get("OPENAI_API_KEY")
    if not key:
        raise RuntimeError("No API key found for provider openai")

    import openai  # lazy import

    client_kwargs: dict = {"api_key": key, "timeout": timeout_s}
    if base_url:
        client_kwargs["base_url"] = base_url
    client = openai.OpenAI(**client_kwargs)

    def llm_fn(prompt: str) -> str:
        chat_kwargs: dict = {
            "model": model,
            "messages": [{"role": "user", "content": prompt}],
            "max_tokens": max_tokens,
        }
        if _supports_temperature(model):
            chat_kwargs["temperature"] = temperature
        resp = client.chat.completions.create(**chat_kwargs)
        return (resp.choices[0].message.content or "").strip()

    return llm_fn
