"""Exception hierarchy for parley."""

from __future__ import annotations


class ParleyError(Exception):
    """Base class for all parley errors."""


class ConfigError(ParleyError):
    """Configuration is present but invalid."""


class InitializationError(ParleyError):
    """A provider could not be set up (missing credentials, binary or endpoint)."""


class ProviderError(ParleyError):
    """The backend reported an error while producing a response."""


class RequestTimeoutError(ParleyError):
    """No backend activity was observed within the request timeout."""

    def __init__(self, elapsed: float, streaming: bool = False):
        self.elapsed = elapsed
        kind = "Streaming request" if streaming else "Request"
        suffix = " of inactivity" if streaming else ""
        super().__init__(f"{kind} timed out after {elapsed:g} seconds{suffix}")


class SessionStaleError(ParleyError):
    """An idle remote conversation could not be recreated."""


class ConversationNotFoundError(ParleyError):
    """The backend does not know the requested conversation id."""

    def __init__(self, conversation_id: str):
        self.conversation_id = conversation_id
        super().__init__(f"Conversation not found: {conversation_id}")


class SessionDestroyedError(ParleyError):
    """The provider session was destroyed and cannot be used again."""


class ContextDepthError(ParleyError):
    """Isolated context frames were nested deeper than allowed."""


class ToolExecutionError(ParleyError):
    """A tool handler failed. Converted into a structured tool result."""

    def __init__(self, tool_name: str, message: str):
        self.tool_name = tool_name
        super().__init__(message)

    def to_result(self) -> dict[str, str]:
        return {"error": str(self)}
