"""
chatmem: bounded, hierarchical conversational memory.

Public API:
    MemoryService       : per-conversation and global memory store
    MemoryIntegration   : chat-flow helpers (context for a turn, save an exchange)
    LLMFactExtractor    : optional fact extraction over any llm_fn
    resolve_memory_config: config resolution from env vars
"""

from .compaction import CompactionResult, truncating_summarizer
from .config import MemoryConfig, resolve_memory_config
from .errors import (
    ChatMemoryError,
    CompactionError,
    ExtractionError,
    StorageError,
    ValidationError,
)
from .extraction import FactExtractor, LLMFactExtractor
from .gateway import MemoryGateway, PostgresGateway, SqliteGateway, create_gateway
from .integration import MemoryIntegration
from .prompt import build_prompt_context
from .store import MemoryService
from .types import (
    AddMessageInput,
    ChatMemoryContext,
    ConversationMemoryRecord,
    ExtractedFacts,
    MemoryContext,
    MemoryStats,
    RawMessage,
    SystemMemory,
)

__all__ = [
    "MemoryService",
    "MemoryIntegration",
    "MemoryConfig",
    "resolve_memory_config",
    "MemoryGateway",
    "SqliteGateway",
    "PostgresGateway",
    "create_gateway",
    "CompactionResult",
    "truncating_summarizer",
    "build_prompt_context",
    "FactExtractor",
    "LLMFactExtractor",
    "SystemMemory",
    "RawMessage",
    "ConversationMemoryRecord",
    "MemoryContext",
    "MemoryStats",
    "AddMessageInput",
    "ExtractedFacts",
    "ChatMemoryContext",
    "ChatMemoryError",
    "ValidationError",
    "StorageError",
    "CompactionError",
    "ExtractionError",
]
