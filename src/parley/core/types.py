"""Shared types and enumerations."""

from __future__ import annotations

from enum import StrEnum


class ChannelSource(StrEnum):
    INTERACTIVE = "interactive"
    BOT = "bot"


class InputType(StrEnum):
    TEXT = "text"
    VOICE = "voice"


class ProviderKind(StrEnum):
    CLI = "cli"
    OPENAI = "openai"
    AZURE_OPENAI = "azure-openai"
