"""Build a provider session from its configuration."""

from __future__ import annotations

from typing import Iterable, assert_never

from parley.ai.providers.azure import AzureOpenAIProviderSession
from parley.ai.providers.base import ProviderSession
from parley.ai.providers.cli import CliProviderSession
from parley.ai.providers.openai_chat import OpenAIProviderSession
from parley.ai.tools.base import Tool
from parley.config import AzureOpenAIProviderConfig, CliProviderConfig, OpenAIProviderConfig, ProviderConfig


def create_provider_session(config: ProviderConfig, tools: Iterable[Tool] = ()) -> ProviderSession:
    match config:
        case CliProviderConfig():
            return CliProviderSession(config, tools)
        case OpenAIProviderConfig():
            return OpenAIProviderSession(config, tools)
        case AzureOpenAIProviderConfig():
            return AzureOpenAIProviderSession(config, tools)
        case _:
            assert_never(config)
