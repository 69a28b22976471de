"""Tests for configuration loading and validation."""

from pathlib import Path

import pytest

from ledger_intake.config import (
    AIMode,
    AIStrategy,
    Config,
    ConfigValidationError,
    create_default_config,
    load_config,
)

ENV_VARS = [
    "LEDGER_INTAKE_AI_MODE",
    "LEDGER_INTAKE_AI_STRATEGY",
    "LEDGER_INTAKE_PRIVACY_MODE",
    "GEMINI_API_KEY",
    "OPENAI_API_KEY",
    "OLLAMA_URL",
    "OLLAMA_MODEL",
    "OLLAMA_AUTH_HEADER",
    "LEDGER_INTAKE_OLLAMA_ENABLED",
    "LEDGER_INTAKE_STATE_DB",
    "LEDGER_INTAKE_USER_ID",
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


class TestLoadConfig:
    """Tests for YAML loading and environment overrides."""

    def test_missing_file_gives_defaults(self, tmp_path):
        config = load_config(tmp_path / "missing.yaml")

        assert config.ai.mode == AIMode.AUTO
        assert config.ai.strategy == AIStrategy.SPEED
        assert config.ai.confidence_threshold == 0.7
        assert config.timeouts.single_seconds == 60.0
        assert config.timeouts.multi_seconds == 90.0
        assert config.queue.max_retry_count == 3
        assert config.providers.order == ["gemini", "openai", "ollama"]
        assert config.user_id is None
        assert config.validate() == []

    def test_values_from_yaml(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text(
            """
ai:
  mode: cloud_only
  strategy: accuracy
  confidence_threshold: 0.8
providers:
  order: [openai, gemini]
  preferred:
    categorization: gemini
  openai:
    api_key: sk-test
categories:
  - id: groceries
    name: Groceries
  - id: salary
    type: income
import_defaults:
  default_category: groceries
user_id: alice
state_db_path: /tmp/ledger.db
"""
        )

        config = load_config(path)

        assert config.ai.mode == AIMode.CLOUD_ONLY
        assert config.ai.strategy == AIStrategy.ACCURACY
        assert config.providers.order == ["openai", "gemini"]
        assert config.providers.preferred == {"categorization": "gemini"}
        assert config.providers.openai.api_key == "sk-test"
        assert [c.id for c in config.categories] == ["groceries", "salary"]
        assert config.categories[1].name == "salary"
        assert config.categories[1].type == "income"
        assert config.user_id == "alice"
        assert config.state_db_path == Path("/tmp/ledger.db")
        assert config.validate() == []

    def test_environment_overrides(self, tmp_path, monkeypatch):
        monkeypatch.setenv("LEDGER_INTAKE_AI_MODE", "local_only")
        monkeypatch.setenv("LEDGER_INTAKE_PRIVACY_MODE", "true")
        monkeypatch.setenv("GEMINI_API_KEY", "gem-key")
        monkeypatch.setenv("LEDGER_INTAKE_OLLAMA_ENABLED", "1")
        monkeypatch.setenv("LEDGER_INTAKE_USER_ID", "bob")

        config = load_config(tmp_path / "missing.yaml")

        assert config.ai.mode == AIMode.LOCAL_ONLY
        assert config.ai.privacy_mode is True
        assert config.providers.gemini.api_key == "gem-key"
        assert config.providers.ollama.enabled is True
        assert config.user_id == "bob"

    def test_invalid_mode_is_rejected(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("ai:\n  mode: turbo\n")

        with pytest.raises(ConfigValidationError, match="ai.mode"):
            load_config(path)

    def test_default_config_round_trips(self, tmp_path):
        path = tmp_path / "config.yaml"
        create_default_config(path)

        assert path.exists()
        config = load_config(path)
        assert config.validate() == []
        assert config.providers.ollama.model == "llava:7b"


class TestValidate:
    """Tests for Config.validate."""

    def test_threshold_out_of_range(self):
        config = Config()
        config.ai.confidence_threshold = 1.5

        assert any("confidence_threshold" in e for e in config.validate())

    def test_unknown_provider(self):
        config = Config()
        config.providers.order = ["gemini", "claude"]
        config.providers.preferred = {"receipt_scanning": "mystery"}

        errors = config.validate()

        assert any("claude" in e for e in errors)
        assert any("mystery" in e for e in errors)

    def test_unknown_default_category(self):
        config = Config()
        config.import_defaults.default_category = "nope"

        assert any("default_category" in e for e in config.validate())

    def test_non_positive_limits(self):
        config = Config()
        config.timeouts.single_seconds = 0
        config.queue.max_retry_count = 0

        errors = config.validate()

        assert "timeouts must be positive" in errors
        assert "queue.max_retry_count must be at least 1" in errors
