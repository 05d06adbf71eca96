"""Exception taxonomy shared by the model adapters, the registry and the loop."""

from __future__ import annotations


class TaskloopError(Exception):
    """Base class for all engine errors. Messages are human readable and secret-free."""


class ProviderTransportError(TaskloopError):
    """A model provider call failed.

    ``retryable`` is True for timeouts, connection failures, HTTP 5xx and 429;
    False for auth/validation failures (other 4xx) and missing credentials.
    """

    def __init__(
        self,
        message: str,
        *,
        provider: str = "",
        status: int | None = None,
        retryable: bool = False,
    ) -> None:
        super().__init__(message)
        self.provider = provider
        self.status = status
        self.retryable = retryable


class ToolError(TaskloopError):
    """Base class for tool-level failures. These never escape a turn."""

    code = "tool_error"

    def __init__(self, tool_name: str, message: str) -> None:
        super().__init__(message)
        self.tool_name = tool_name


class ToolNotFound(ToolError):
    code = "unknown_tool"


class ToolInputInvalid(ToolError):
    code = "invalid_input"


class ToolExecutionError(ToolError):
    code = "execution_failed"


class ApprovalTimeout(TaskloopError):
    """An approval request was not answered in time. Treated as a denial."""


class ConversationOverflow(TaskloopError):
    """The conversation cannot be brought under budget by removing messages."""


class TaskCancelled(TaskloopError):
    """The task was cancelled. A normal terminal status, not a failure."""
