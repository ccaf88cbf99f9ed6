"""Exception hierarchy used throughout the package."""


class AgentError(Exception):
    """Base class for every error raised by the agent."""


class ProviderError(AgentError):
    """The LLM (or embedding) provider failed or answered unexpectedly."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"LLM provider error: {message}")


class ToolError(AgentError):
    """A tool invoked by the model failed."""

    def __init__(self, tool: str, reason: str) -> None:
        self.tool = tool
        self.reason = reason
        super().__init__(f"Tool execution failed: {tool} — {reason}")


class TelegramError(AgentError):
    """The Telegram Bot API reported a failure."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Telegram error: {message}")


class ConfigError(AgentError):
    """The configuration is missing, malformed or invalid."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Config error: {message}")


class DatabaseError(AgentError):
    """The persistent store failed."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Database error: {message}")