"""Unit tests for chatmem.config."""
from __future__ import annotations

import os

import pytest

from chatmem.config import GLOBAL_MEMORY_ID, MemoryConfig, resolve_memory_config


class TestDefaults:
    def test_defaults_match_documented_constants(self) -> None:
        config = resolve_memory_config()
        assert config.max_raw_messages == 3
        assert config.summary_threshold == 6
        assert config.max_summary_tokens == 500
        assert config.max_message_content_for_summary == 200
        assert config.max_system_memory_keys == 50
        assert config.max_fact_value_length == 500
        assert config.global_memory_id == GLOBAL_MEMORY_ID == "__GLOBAL_USER_MEMORY__"
        assert config.compaction_mode == "background"
        assert config.driver == "sqlite"

    def test_summary_budget_in_chars(self) -> None:
        assert MemoryConfig(max_summary_tokens=500).max_summary_chars == 2000

    def test_default_db_path_under_state_dir(self) -> None:
        config = resolve_memory_config()
        assert config.db_path == os.path.join(os.environ["CHATMEM_STATE_DIR"], "memory.sqlite")


class TestEnvironment:
    def test_env_overrides_defaults(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("CHATMEM_MAX_RAW_MESSAGES", "5")
        monkeypatch.setenv("CHATMEM_SUMMARY_THRESHOLD", "10")
        monkeypatch.setenv("CHATMEM_COMPACTION_MODE", "inline")
        config = resolve_memory_config()
        assert config.max_raw_messages == 5
        assert config.summary_threshold == 10
        assert config.compaction_mode == "inline"

    def test_invalid_numeric_env_falls_back(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("CHATMEM_MAX_RAW_MESSAGES", "many")
        assert resolve_memory_config().max_raw_messages == 3

    def test_unknown_compaction_mode_falls_back(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("CHATMEM_COMPACTION_MODE", "eventually")
        assert resolve_memory_config().compaction_mode == "background"

    def test_pg_dsn_implies_postgres(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("CHATMEM_PG_DSN", "postgresql://localhost/chatmem")
        config = resolve_memory_config()
        assert config.driver == "postgres"
        assert config.pg.dsn == "postgresql://localhost/chatmem"

    def test_db_path_env(self, monkeypatch: pytest.MonkeyPatch, tmp_path) -> None:
        monkeypatch.setenv("CHATMEM_DB_PATH", str(tmp_path / "x.db"))
        assert resolve_memory_config().db_path == str(tmp_path / "x.db")


class TestOverrides:
    def test_overrides_win_over_env(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("CHATMEM_MAX_RAW_MESSAGES", "5")
        config = resolve_memory_config({"max_raw_messages": 2})
        assert config.max_raw_messages == 2

    def test_threshold_never_below_keep_window(self) -> None:
        config = resolve_memory_config({"max_raw_messages": 8, "summary_threshold": 4})
        assert config.summary_threshold == 8

    def test_values_clamped_to_at_least_one(self) -> None:
        config = resolve_memory_config({"max_raw_messages": 0, "max_system_memory_keys": -3})
        assert config.max_raw_messages == 1
        assert config.max_system_memory_keys == 1

    def test_unknown_driver_falls_back_to_sqlite(self) -> None:
        assert resolve_memory_config({"driver": "mongo"}).driver == "sqlite"

    def test_write_through_can_be_disabled(self) -> None:
        assert resolve_memory_config({"write_through_global": False}).write_through_global is False
