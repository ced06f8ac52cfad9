"""Configuration loader with YAML parsing, env-var interpolation, and Pydantic validation."""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator


class AnthropicConfig(BaseModel):
    api_key: str
    base_url: Optional[str] = None
    model: str = "claude-sonnet-4-20250514"
    max_tokens: int = 4096
    temperature: float = 0.2
    timeout: int = 120
    system_prompt: str = (
        "You are the store's admin assistant. Use the available tools to look up "
        "orders, customers, products and inventory. Write operations are sent to a "
        "human for approval before they run; tell the admin when that happens."
    )


class EmbeddingsConfig(BaseModel):
    api_key: str = ""
    base_url: str = "https://api.openai.com/v1"
    model: str = "text-embedding-3-small"
    dimensions: int = 1536
    timeout: float = 30.0


class RouterConfig(BaseModel):
    threshold: float = Field(default=0.80, ge=-1.0, le=1.0)
    margin: float = Field(default=0.05, ge=0.0)
    top_k: int = Field(default=5, ge=1)
    learning: bool = True
    # narrow the embedding search with a small-model domain classifier first
    classify_domains: bool = True
    classifier_model: str = "claude-3-5-haiku-latest"


class ActionQueueConfig(BaseModel):
    ttl_seconds: int = Field(default=3600, gt=0)
    sweep_interval_seconds: int = Field(default=60, gt=0)


class OrchestratorConfig(BaseModel):
    max_tool_iterations: int = Field(default=10, ge=1)
    retry_backoff_seconds: float = Field(default=1.0, ge=0.0)
    title_max_length: int = 50


class NotificationConfig(BaseModel):
    backend: str = "telegram"  # "telegram" | "log"
    token: str = ""
    chat_id: str = ""


class CommerceConfig(BaseModel):
    base_url: str = "http://localhost:8080/api"
    token: str = ""
    timeout: float = 30.0


class ToolsConfig(BaseModel):
    mutating: list[str] = Field(default_factory=list)


class StorageConfig(BaseModel):
    db_path: str = "./data/shop_agent.db"


class AppConfig(BaseModel):
    log_level: str = "INFO"
    log_json: bool = False
    data_dir: str = "./data"
    anthropic: AnthropicConfig
    embeddings: EmbeddingsConfig = Field(default_factory=EmbeddingsConfig)
    router: RouterConfig = Field(default_factory=RouterConfig)
    action_queue: ActionQueueConfig = Field(default_factory=ActionQueueConfig)
    orchestrator: OrchestratorConfig = Field(default_factory=OrchestratorConfig)
    notification: NotificationConfig = Field(default_factory=NotificationConfig)
    commerce: CommerceConfig = Field(default_factory=CommerceConfig)
    tools: ToolsConfig = Field(default_factory=ToolsConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)

    @field_validator("log_level")
    @classmethod
    def _upper_level(cls, value: str) -> str:
        return value.upper()


_ENV_VAR_PATTERN = re.compile(r"\$\{(\w+)\}")


def _interpolate_env_vars(text: str, extra: dict[str, str] | None = None) -> str:
    """Replace ${VAR_NAME} patterns with environment variable values."""

    def _replace(match: re.Match) -> str:
        var_name = match.group(1)
        if extra and var_name in extra:
            return extra[var_name]
        value = os.environ.get(var_name)
        if value is None:
            return match.group(0)
        return value

    return _ENV_VAR_PATTERN.sub(_replace, text)


def load_config(config_path: str | Path = "config.yaml", env_path: str | Path = ".env") -> AppConfig:
    """Load and validate configuration from YAML file with env-var interpolation."""
    env_file = Path(env_path)
    if env_file.exists():
        load_dotenv(env_file)

    config_file = Path(config_path)
    if not config_file.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_file}")

    raw_text = config_file.read_text(encoding="utf-8")

    # data_dir may be referenced as ${data_dir} elsewhere in the file
    raw_data = yaml.safe_load(raw_text) or {}
    data_dir = _interpolate_env_vars(str(raw_data.get("data_dir", "./data")))

    interpolated = _interpolate_env_vars(raw_text, extra={"data_dir": data_dir})
    data = yaml.safe_load(interpolated) or {}

    return AppConfig(**data)
