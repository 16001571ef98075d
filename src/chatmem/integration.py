"""
Chat-flow facing helpers on top of MemoryService.

Reads never break a chat turn: ``get_context_for_chat`` returns ``None`` on any
failure and the turn proceeds without memory.  Fact extraction is
optional and runs off the request path.
"""

from __future__ import annotations

import logging
from typing import Any

from .errors import ChatMemoryError, ExtractionError, StorageError
from .extraction import FactExtractor
from .internal import estimate_tokens
from .store import MemoryService, validate_message_input
from .types import AddMessageInput, ChatMemoryContext, MemoryStats
from .worker import BackgroundWorker

logger = logging.getLogger(__name__)


class MemoryIntegration:
    """
    Args:
        service:   The memory service to read from and write to.
        extractor: Optional fact extractor used by ``save_exchange``.
        worker:    Runs extraction jobs.  Defaults to the service's worker;
                   when neither exists, extraction runs on the calling thread.
    """

    def __init__(
        self,
        service: MemoryService,
        extractor: FactExtractor | None = None,
        worker: BackgroundWorker | None = None,
    ) -> None:
        self.service = service
        self.extractor = extractor
        self._worker = worker if worker is not None else service.worker

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    def get_context_for_chat(
        self, user_id: str, conversation_id: str
    ) -> ChatMemoryContext | None:
        """Global plus conversation memory rendered for the system prompt, or ``None``."""
        try:
            context = self.service.get_combined_memory_context(user_id, conversation_id)
            prompt_context = self.service.build_prompt_context(context)
        except Exception:
            logger.exception(
                "Memory context unavailable for user=%s, conv=%s", user_id, conversation_id
            )
            return None

        raw: dict[str, Any] = {
            "system_memory": context.system_memory.to_dict(),
            "rolling_summary": context.rolling_summary,
            "recent_messages": [
                {"role": m.role, "content": m.content} for m in context.recent_messages
            ],
            "total_messages": context.total_messages,
        }
        return ChatMemoryContext(
            prompt_context=prompt_context,
            raw=raw,
            estimated_tokens=estimate_tokens(prompt_context),
        )

    # ------------------------------------------------------------------
    # Write
    # ------------------------------------------------------------------

    def save_exchange(
        self,
        user_id: str,
        conversation_id: str,
        user_message: str,
        assistant_message: str,
        *,
        extract_facts: bool = False,
        user_token_count: int | None = None,
        assistant_token_count: int | None = None,
    ) -> bool:
        """
        Store the user turn then the assistant turn.

        Both turns are validated before either is written.  Returns ``False``
        if storage failed.  Bad input still raises ``ValidationError``.
        """
        turns = [
            AddMessageInput(
                user_id=user_id,
                conversation_id=conversation_id,
                role="user",
                content=user_message,
                token_count=user_token_count,
            ),
            AddMessageInput(
                user_id=user_id,
                conversation_id=conversation_id,
                role="assistant",
                content=assistant_message,
                token_count=assistant_token_count,
            ),
        ]
        for turn in turns:
            validate_message_input(turn)

        try:
            for turn in turns:
                self.service.add_message_input(turn)
        except StorageError as exc:
            logger.error(
                "Saving exchange failed for user=%s, conv=%s: %s", user_id, conversation_id, exc
            )
            return False

        logger.debug("Exchange saved: user=%s, conv=%s", user_id, conversation_id)

        if (
            extract_facts
            and self.extractor is not None
            and self.extractor.should_extract(user_message)
        ):
            self._schedule_extraction(user_id, conversation_id, user_message, assistant_message)
        return True

    def _schedule_extraction(
        self, user_id: str, conversation_id: str, user_message: str, assistant_message: str
    ) -> None:
        args = (user_id, conversation_id, user_message, assistant_message)
        if self._worker is not None:
            try:
                self._worker.submit(f"extract:{conversation_id}", self._extract_and_save, *args)
            except RuntimeError as exc:
                logger.warning("Fact extraction not scheduled: %s", exc)
            return

        try:
            self._extract_and_save(*args)
        except ChatMemoryError as exc:
            logger.warning("Saving extracted facts failed for conv=%s: %s", conversation_id, exc)

    def _extract_and_save(
        self, user_id: str, conversation_id: str, user_message: str, assistant_message: str
    ) -> int:
        """Run the extractor and merge its output; returns the number of keys saved."""
        if self.extractor is None:
            return 0
        try:
            extracted = self.extractor.extract_facts(user_message, assistant_message)
        except ExtractionError as exc:
            logger.warning("Fact extraction failed for conv=%s: %s", conversation_id, exc)
            return 0

        if extracted.is_empty():
            return 0

        self.service.update_system_memory(
            user_id,
            conversation_id,
            {"facts": extracted.facts, "preferences": extracted.preferences},
        )
        saved = len(extracted.facts) + len(extracted.preferences)
        logger.info(
            "Facts extracted and saved for conv=%s: facts=%s preferences=%s (~%d tokens)",
            conversation_id,
            sorted(extracted.facts),
            sorted(extracted.preferences),
            extracted.tokens_used,
        )
        return saved

    def update_facts(self, user_id: str, conversation_id: str, facts: dict[str, str]) -> None:
        self.service.update_system_memory(user_id, conversation_id, {"facts": facts})

    def update_preferences(
        self, user_id: str, conversation_id: str, preferences: dict[str, str]
    ) -> None:
        self.service.update_system_memory(user_id, conversation_id, {"preferences": preferences})

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def clear_conversation_memory(self, user_id: str, conversation_id: str) -> bool:
        return self.service.clear_memory(user_id, conversation_id)

    def get_stats(self, user_id: str, conversation_id: str) -> MemoryStats:
        return self.service.get_stats(user_id, conversation_id)

    def wait_idle(self, timeout: float | None = None) -> bool:
        """Wait for pending extraction and compaction jobs."""
        if self._worker is None:
            return True
        return self._worker.wait_idle(timeout)
