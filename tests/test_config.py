"""Tests for YAML configuration loading."""

import pytest
from pydantic import ValidationError

from shop_agent.config import load_config

MINIMAL = """
anthropic:
  api_key: ${TEST_ANTHROPIC_KEY}
"""


def test_defaults_applied(tmp_path, monkeypatch):
    monkeypatch.setenv("TEST_ANTHROPIC_KEY", "sk-test")
    path = tmp_path / "config.yaml"
    path.write_text(MINIMAL, encoding="utf-8")

    config = load_config(path, env_path=tmp_path / "missing.env")

    assert config.anthropic.api_key == "sk-test"
    assert config.router.threshold == 0.80
    assert config.router.margin == 0.05
    assert config.action_queue.ttl_seconds == 3600
    assert config.orchestrator.max_tool_iterations == 10
    assert config.tools.mutating == []


def test_data_dir_and_env_file_interpolation(tmp_path, monkeypatch):
    # registered with monkeypatch so the value loaded from .env is undone afterwards
    monkeypatch.setenv("FROM_DOTENV_KEY", "placeholder")
    monkeypatch.delenv("FROM_DOTENV_KEY")
    (tmp_path / ".env").write_text("FROM_DOTENV_KEY=sk-dotenv\n", encoding="utf-8")
    path = tmp_path / "config.yaml"
    path.write_text(
        "log_level: debug\n"
        "data_dir: /srv/shop\n"
        "anthropic:\n  api_key: ${FROM_DOTENV_KEY}\n"
        "storage:\n  db_path: ${data_dir}/agent.db\n"
        "router:\n  threshold: 0.7\n  margin: 0.1\n",
        encoding="utf-8",
    )

    config = load_config(path, env_path=tmp_path / ".env")

    assert config.anthropic.api_key == "sk-dotenv"
    assert config.storage.db_path == "/srv/shop/agent.db"
    assert config.log_level == "DEBUG"
    assert config.router.threshold == 0.7


def test_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_config(tmp_path / "nope.yaml")


def test_invalid_values_rejected(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(
        "anthropic:\n  api_key: k\naction_queue:\n  ttl_seconds: 0\n", encoding="utf-8"
    )

    with pytest.raises(ValidationError):
        load_config(path, env_path=tmp_path / "missing.env")
