from __future__ import annotations

import pytest

from mediator.core.config import Settings, get_settings


def test_defaults_match_documented_values() -> None:
    settings = Settings()

    assert settings.orchestrator.max_tool_round_trips == 5
    assert settings.watchdog.timeout_seconds == 3.0
    assert settings.watchdog.summary_chars == 400
    assert settings.worker.port == 11434


def test_nested_environment_overrides(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("WATCHDOG__TIMEOUT_SECONDS", "1.5")
    monkeypatch.setenv("ORCHESTRATOR__MAX_TOOL_ROUND_TRIPS", "2")

    settings = Settings()

    assert settings.watchdog.timeout_seconds == 1.5
    assert settings.orchestrator.max_tool_round_trips == 2


def test_overrides_bypass_cache() -> None:
    cached = get_settings()
    custom = get_settings({"environment": "test"})

    assert custom is not cached
    assert custom.environment == "test"
    assert get_settings() is cached


def test_api_key_tokens_are_secret() -> None:
    settings = Settings(policy={"api_keys": [{"key_id": "k", "token": "super-secret-token"}]})

    assert "super-secret-token" not in repr(settings.policy.api_keys[0])
