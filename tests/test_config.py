"""Tests for devchronicle.config."""

from __future__ import annotations

import os
from pathlib import Path
from unittest.mock import patch

from devchronicle.config import (
    ACTIVITY_LOG_NAME,
    DEFAULT_DB_PATH,
    DEFAULT_MAX_BULLETS,
    DEFAULT_MODEL,
    Config,
)

ENV_KEYS = [
    "ANTHROPIC_API_KEY",
    "DEVCHRONICLE_DB_PATH",
    "DEVCHRONICLE_MODEL",
    "DEVCHRONICLE_MAX_BULLETS",
    "DEVCHRONICLE_LOG_PATH",
]


def _clean_env() -> dict[str, str]:
    return {k: v for k, v in os.environ.items() if k not in ENV_KEYS}


class TestConfigDefaults:
    def test_default_values(self):
        config = Config()
        assert config.anthropic_api_key == ""
        assert config.db_path == DEFAULT_DB_PATH
        assert config.model == DEFAULT_MODEL
        assert config.max_bullets == DEFAULT_MAX_BULLETS
        assert config.log_path is None

    def test_activity_log_defaults_next_to_database(self):
        config = Config(db_path=Path("/data/chronicle.db"))
        assert config.activity_log_path == Path("/data") / ACTIVITY_LOG_NAME

    def test_explicit_log_path_wins(self):
        config = Config(log_path=Path("/var/log/dc.jsonl"))
        assert config.activity_log_path == Path("/var/log/dc.jsonl")


class TestConfigLoad:
    def test_load_from_env(self):
        env = {
            **_clean_env(),
            "ANTHROPIC_API_KEY": "sk-ant-test",
            "DEVCHRONICLE_DB_PATH": "/tmp/test.db",
            "DEVCHRONICLE_MODEL": "claude-test",
            "DEVCHRONICLE_MAX_BULLETS": "4",
            "DEVCHRONICLE_LOG_PATH": "/tmp/activity.jsonl",
        }
        with patch.dict(os.environ, env, clear=True):
            config = Config.load()
        assert config.anthropic_api_key == "sk-ant-test"
        assert config.db_path == Path("/tmp/test.db")
        assert config.model == "claude-test"
        assert config.max_bullets == 4
        assert config.log_path == Path("/tmp/activity.jsonl")

    def test_load_defaults_when_env_empty(self):
        with patch.dict(os.environ, _clean_env(), clear=True):
            config = Config.load()
        assert config.anthropic_api_key == ""
        assert config.db_path == DEFAULT_DB_PATH
        assert config.model == DEFAULT_MODEL
        assert config.validate() == []

    def test_non_integer_bullets_reported(self):
        env = {**_clean_env(), "DEVCHRONICLE_MAX_BULLETS": "lots"}
        with patch.dict(os.environ, env, clear=True):
            config = Config.load()
        assert config.max_bullets == DEFAULT_MAX_BULLETS
        issues = config.validate()
        assert len(issues) == 1
        assert "DEVCHRONICLE_MAX_BULLETS" in issues[0]


class TestConfigValidate:
    def test_valid_config(self):
        assert Config(anthropic_api_key="sk-ant-xxx").validate() == []

    def test_api_key_is_optional(self):
        assert Config().validate() == []

    def test_bullets_must_be_positive(self):
        issues = Config(max_bullets=0).validate()
        assert any("at least 1" in i for i in issues)

    def test_empty_model(self):
        issues = Config(model="").validate()
        assert any("Model" in i for i in issues)
