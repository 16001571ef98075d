"""
Shared pytest fixtures for chatmem tests.
"""
from __future__ import annotations

from collections.abc import Callable, Iterator
from pathlib import Path
from typing import Any

import pytest

from chatmem.config import MemoryConfig, resolve_memory_config
from chatmem.gateway import SqliteGateway
from chatmem.store import MemoryService


# ---------------------------------------------------------------------------
# Environment isolation
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    """Keep developer env vars from redirecting tests to a real store."""
    for name in (
        "CHATMEM_DB_PATH",
        "CHATMEM_DRIVER",
        "CHATMEM_PG_DSN",
        "CHATMEM_MAX_RAW_MESSAGES",
        "CHATMEM_SUMMARY_THRESHOLD",
        "CHATMEM_MAX_SUMMARY_TOKENS",
        "CHATMEM_COMPACTION_MODE",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("CHATMEM_STATE_DIR", str(tmp_path / "state"))


# ---------------------------------------------------------------------------
# Store fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def db_path(tmp_path: Path) -> str:
    """Return a path to a (not-yet-existing) SQLite DB file inside tmp_path."""
    return str(tmp_path / "chatmem.db")


@pytest.fixture()
def gateway(db_path: str) -> SqliteGateway:
    return SqliteGateway(db_path)


@pytest.fixture()
def make_config(db_path: str) -> Callable[..., MemoryConfig]:
    """Build a SQLite config with inline compaction; keyword args override."""

    def _make(**overrides: Any) -> MemoryConfig:
        base: dict[str, Any] = {
            "driver": "sqlite",
            "db_path": db_path,
            "compaction_mode": "inline",
            "compaction_retry_delay_s": 0.0,
        }
        base.update(overrides)
        return resolve_memory_config(base)

    return _make


@pytest.fixture()
def service(gateway: SqliteGateway, make_config: Callable[..., MemoryConfig]) -> Iterator[MemoryService]:
    """MemoryService that compacts on the calling thread."""
    svc = MemoryService(gateway, config=make_config())
    yield svc
    svc.close()


@pytest.fixture()
def background_service(
    gateway: SqliteGateway, make_config: Callable[..., MemoryConfig]
) -> Iterator[MemoryService]:
    """MemoryService with a background compaction worker."""
    svc = MemoryService(gateway, config=make_config(compaction_mode="background"))
    yield svc
    svc.close()
