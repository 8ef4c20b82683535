"""Azure OpenAI provider: chat completions against a named deployment."""

from __future__ import annotations

import os
from typing import Iterable

from openai import AsyncAzureOpenAI

from parley.ai.providers.openai_chat import ChatCompletionsSession
from parley.ai.tools.base import Tool
from parley.config import AzureOpenAIProviderConfig
from parley.errors import InitializationError

# Azure has no model listing endpoint; these are the chat models it deploys.
AZURE_CHAT_MODELS = (
    "gpt-5",
    "gpt-5-mini",
    "gpt-4o",
    "gpt-4o-mini",
    "gpt-4-turbo",
    "gpt-4",
    "gpt-4-32k",
    "gpt-35-turbo",
    "gpt-35-turbo-16k",
    "o1",
    "o1-mini",
    "o1-preview",
    "o3-mini",
)


def resolve_azure_api_key(configured: str | None) -> str | None:
    return configured or os.environ.get("AZURE_OPENAI_KEY") or os.environ.get("AZURE_OPENAI_API_KEY")


class AzureOpenAIProviderSession(ChatCompletionsSession):
    def __init__(self, config: AzureOpenAIProviderConfig, tools: Iterable[Tool] = ()):
        super().__init__(config, tools)

    @property
    def model(self) -> str:
        return self._config.deployment_name

    @property
    def _model_name(self) -> str:
        return self._config.deployment_name

    def _create_client(self) -> AsyncAzureOpenAI:
        api_key = resolve_azure_api_key(self._config.api_key)
        if not api_key:
            raise InitializationError(
                "Azure OpenAI API key not configured. Set provider.api_key or the "
                "AZURE_OPENAI_KEY environment variable."
            )
        if not self._config.endpoint:
            raise InitializationError("Azure OpenAI endpoint not configured.")
        if not self._config.deployment_name:
            raise InitializationError("Azure OpenAI deployment name not configured.")

        return AsyncAzureOpenAI(
            api_key=api_key,
            azure_endpoint=self._config.endpoint,
            api_version=self._config.api_version,
            timeout=self._config.request_timeout,
        )

    async def _probe(self) -> None:
        await self.client.chat.completions.create(
            model=self._model_name,
            messages=[{"role": "user", "content": "test"}],
            max_tokens=1,
        )

    async def list_models(self) -> list[str]:
        return sorted(AZURE_CHAT_MODELS)
