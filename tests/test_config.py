"""Tests for configuration management."""

from pathlib import Path

import pytest

from grocery_inventory.config import SECRET_FILE_NAME, ConfigManager


@pytest.fixture
def full_config(tmp_path):
    """Create a config file that sets every section."""
    data_dir = tmp_path / "data"
    data_dir.mkdir()
    config_path = tmp_path / "config.toml"
    config_path.write_text(f"""
[data]
storage_dir = "{data_dir.as_posix()}"
backend = "memory"

[llm]
api_key = "sk-from-config"
model = "gpt-4o"
agent_max_turns = 4

[ingestion]
max_text_chars = 1000
run_triggers = false
background_triggers = false
trigger_workers = 2

[uploads]
max_bytes = 2048
bucket = "groceries"

[audit]
max_item_ids = 10

[logging]
level = "DEBUG"

[auth.tokens]
"abc" = "owner-1"
""")
    return config_path


class TestConfigManager:
    """Tests for ConfigManager."""

    def test_load_config_file(self, full_config, tmp_path):
        manager = ConfigManager(config_path=full_config)

        assert manager.data.storage_dir == tmp_path / "data"
        assert manager.data.backend == "memory"
        assert manager.llm.model == "gpt-4o"
        assert manager.llm.vision_model == "gpt-4o-mini"
        assert manager.llm.agent_max_turns == 4
        assert manager.ingestion.max_text_chars == 1000
        assert manager.ingestion.run_triggers is False
        assert manager.ingestion.background_triggers is False
        assert manager.ingestion.trigger_workers == 2
        assert manager.uploads.max_bytes == 2048
        assert manager.uploads.bucket == "groceries"
        assert manager.uploads.url_expiry_seconds == 900
        assert manager.audit.max_item_ids == 10
        assert manager.audit.max_results == 50
        assert manager.logging.level == "DEBUG"
        assert manager.auth_tokens == {"abc": "owner-1"}

    def test_missing_file_uses_defaults(self, tmp_path):
        manager = ConfigManager(config_path=tmp_path / "missing.toml")

        assert manager.data.storage_dir == Path.home() / "grocery-inventory" / "data"
        assert manager.data.backend == "sqlite"
        assert manager.ingestion.max_text_chars == 6000
        assert manager.ingestion.background_triggers is True
        assert manager.ingestion.trigger_workers == 4
        assert manager.uploads.max_bytes == 25 * 1024 * 1024
        assert manager.auth_tokens == {}

    def test_get_dot_path(self, full_config):
        manager = ConfigManager(config_path=full_config)

        assert manager.get("uploads.bucket") == "groceries"
        assert manager.get("auth.tokens.abc") == "owner-1"
        assert manager.get("uploads.nope", "fallback") == "fallback"
        assert manager.get("nope.deeper") is None


class TestSecrets:
    """Tests for secret lookup order."""

    def test_environment_wins(self, full_config, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", "sk-from-env")
        manager = ConfigManager(config_path=full_config)
        assert manager.openai_api_key == "sk-from-env"

    def test_secret_file_beats_config(self, full_config, tmp_path):
        (tmp_path / "data" / SECRET_FILE_NAME).write_text(
            "# local secrets\nOPENAI_API_KEY='sk-from-file'\n", encoding="utf-8"
        )
        manager = ConfigManager(config_path=full_config)
        assert manager.openai_api_key == "sk-from-file"

    def test_config_is_last_resort(self, full_config):
        manager = ConfigManager(config_path=full_config)
        assert manager.openai_api_key == "sk-from-config"

    def test_unknown_secret(self, full_config):
        manager = ConfigManager(config_path=full_config)
        assert manager.get_secret("UPLOAD_SIGNING_KEY") is None
