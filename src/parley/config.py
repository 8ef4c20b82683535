"""Configuration loader with YAML parsing, env-var interpolation, and Pydantic validation."""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Annotated, Literal, Optional, Union

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError, model_validator

from parley.errors import ConfigError

DEFAULT_REQUEST_TIMEOUT = 120.0
DEFAULT_MAX_TOOL_ROUNDS = 10
# The CLI backend forgets conversations after 30 idle minutes.
BACKEND_IDLE_TIMEOUT = 30 * 60.0
SESSION_STALE_THRESHOLD = 25 * 60.0
DEFAULT_AZURE_API_VERSION = "2024-08-01-preview"


class _ProviderBase(BaseModel):
    model: str = ""
    streaming: bool = True
    system_prompt: str = ""
    max_tool_rounds: int = Field(default=DEFAULT_MAX_TOOL_ROUNDS, ge=1)
    request_timeout: float = Field(default=DEFAULT_REQUEST_TIMEOUT, gt=0)


class CliProviderConfig(_ProviderBase):
    provider: Literal["cli"] = "cli"
    model: str = "sonnet"
    cli_path: str = "claude"
    working_dir: Optional[str] = None
    projects_dir: Optional[str] = None  # where the CLI keeps conversation transcripts
    allowed_tools: list[str] = Field(default_factory=list)
    permission_mode: str = "default"
    idle_timeout: float = Field(default=BACKEND_IDLE_TIMEOUT, gt=0)
    stale_threshold: float = Field(default=SESSION_STALE_THRESHOLD, gt=0)
    stop_timeout: float = Field(default=10.0, gt=0)

    @model_validator(mode="after")
    def _threshold_below_backend_timeout(self) -> "CliProviderConfig":
        if self.stale_threshold >= self.idle_timeout:
            raise ValueError(
                f"stale_threshold ({self.stale_threshold}s) must be below "
                f"idle_timeout ({self.idle_timeout}s)"
            )
        return self


class OpenAIProviderConfig(_ProviderBase):
    provider: Literal["openai"] = "openai"
    model: str = "gpt-4o"
    api_key: Optional[str] = None
    base_url: Optional[str] = None
    organization: Optional[str] = None
    max_tokens: Optional[int] = None
    temperature: Optional[float] = Field(default=None, ge=0, le=2)


class AzureOpenAIProviderConfig(_ProviderBase):
    provider: Literal["azure-openai"] = "azure-openai"
    api_key: Optional[str] = None
    endpoint: str = ""
    deployment_name: str = ""
    api_version: str = DEFAULT_AZURE_API_VERSION
    max_tokens: Optional[int] = None
    temperature: Optional[float] = Field(default=None, ge=0, le=2)


ProviderConfig = Annotated[
    Union[CliProviderConfig, OpenAIProviderConfig, AzureOpenAIProviderConfig],
    Field(discriminator="provider"),
]


class StorageConfig(BaseModel):
    db_path: str = "./data/parley.db"


class SessionConfig(BaseModel):
    max_messages: int = Field(default=100, ge=2)
    context_messages: int = Field(default=40, ge=0)  # replayed to stateless providers


class BotChannelConfig(BaseModel):
    enabled: bool = False
    save_conversations: bool = True
    formatting_context: str = (
        "You are replying through a chat bot. Keep answers short and use plain "
        "Markdown that renders in a messenger."
    )


class AppConfig(BaseModel):
    log_level: str = "INFO"
    data_dir: str = "./data"
    provider: ProviderConfig = Field(default_factory=CliProviderConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    session: SessionConfig = Field(default_factory=SessionConfig)
    bot: BotChannelConfig = Field(default_factory=BotChannelConfig)


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

    # First pass: extract data_dir for self-referencing
    raw_data = yaml.safe_load(raw_text) or {}
    data_dir = _interpolate_env_vars(str(raw_data.get("data_dir", "./data")))

    # Second pass: interpolate all env vars
    interpolated = _interpolate_env_vars(raw_text, extra={"data_dir": data_dir})
    data = yaml.safe_load(interpolated) or {}

    try:
        return AppConfig(**data)
    except ValidationError as e:
        raise ConfigError(str(e)) from e
