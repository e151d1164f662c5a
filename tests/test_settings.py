from __future__ import annotations

import pytest

from coder_agent.config.settings import Settings, get_settings
from coder_agent.models import AgentSettings
from coder_agent.workspace import resolve_workspace_root


def test_settings_read_prefixed_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("CODER_AGENT_STORE_BACKEND", "postgres")
    monkeypatch.setenv("CODER_AGENT_TOOL_TIMEOUT_S", "2.5")

    settings = Settings()

    assert settings.store_backend == "postgres"
    assert settings.tool_timeout_s == 2.5


def test_database_url_falls_back_to_orchestrator_variable(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("CODER_AGENT_DATABASE_URL", raising=False)
    monkeypatch.setenv("ORCHESTRATOR_DATABASE_URL", "postgresql://fallback/db")

    assert Settings().resolved_database_url() == "postgresql://fallback/db"
    assert Settings(database_url="postgresql://own/db").resolved_database_url() == "postgresql://own/db"


def test_openai_key_falls_back_to_standard_variable(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("CODER_AGENT_OPENAI_API_KEY", raising=False)
    monkeypatch.setenv("OPENAI_API_KEY", "sk-env")

    assert Settings().resolved_openai_api_key() == "sk-env"


def test_get_settings_is_cached() -> None:
    assert get_settings() is get_settings()


def test_workspace_override_wins_over_task_settings(monkeypatch: pytest.MonkeyPatch, tmp_path) -> None:
    agent_settings = AgentSettings(workspace_path=str(tmp_path / "task"))

    assert resolve_workspace_root(agent_settings) == (tmp_path / "task").resolve()

    monkeypatch.setenv("CODER_AGENT_WORKSPACE_PATH", str(tmp_path / "override"))
    get_settings.cache_clear()

    assert resolve_workspace_root(agent_settings) == (tmp_path / "override").resolve()
