"""
Unit tests for settings loading.
"""
from pathlib import Path

import pytest
from pydantic import ValidationError

from saathi.core.config import DEFAULT_SCHEME_DATA_PATH, Settings


def test_defaults(monkeypatch):
    for name in ("REDIS_URL", "LLM_TIMEOUT_SECONDS", "SESSION_HISTORY_CAP", "SCHEME_DATA_PATH"):
        monkeypatch.delenv(name, raising=False)

    settings = Settings(_env_file=None)

    assert settings.redis_url is None
    assert settings.llm_timeout_seconds == 3.5
    assert settings.session_history_cap is None
    assert settings.scheme_data_path == DEFAULT_SCHEME_DATA_PATH


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("REDIS_URL", "redis://cache:6379/0")
    monkeypatch.setenv("LLM_TIMEOUT_SECONDS", "2.5")
    monkeypatch.setenv("SESSION_HISTORY_CAP", "20")
    monkeypatch.setenv("LOG_JSON", "false")
    monkeypatch.setenv("QUERY_ABBREVIATION_DICT_PATH", "/tmp/abbreviations.json")

    settings = Settings(_env_file=None)

    assert settings.redis_url == "redis://cache:6379/0"
    assert settings.llm_timeout_seconds == 2.5
    assert settings.session_history_cap == 20
    assert settings.log_json is False
    assert settings.query_abbreviation_dict_path == Path("/tmp/abbreviations.json")


def test_empty_values_fall_back_to_defaults(monkeypatch):
    monkeypatch.setenv("REDIS_URL", "")
    monkeypatch.setenv("PROMPT_TOP_K", "")

    settings = Settings(_env_file=None)

    assert settings.redis_url is None
    assert settings.prompt_top_k == 3


def test_invalid_number_is_rejected(monkeypatch):
    monkeypatch.setenv("PROMPT_TOP_K", "three")

    with pytest.raises(ValidationError):
        Settings(_env_file=None)


def test_settings_are_frozen():
    settings = Settings(_env_file=None)

    with pytest.raises(ValidationError):
        settings.prompt_top_k = 5
