"""Exception hierarchy for chatmem."""

from __future__ import annotations


class ChatMemoryError(Exception):
    """Base class for every error raised by chatmem."""


class ValidationError(ChatMemoryError, ValueError):
    """Malformed input to a memory operation. Not retried; the caller must fix it."""


class StorageError(ChatMemoryError, RuntimeError):
    """A transaction or connection to the backing store failed and was rolled back."""


class CompactionError(ChatMemoryError):
    """A compaction attempt failed. Only surfaces inside the background worker."""


class ExtractionError(ChatMemoryError):
    """The fact extractor's LLM call failed."""
