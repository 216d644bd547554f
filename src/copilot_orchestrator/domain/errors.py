"""Exception taxonomy for the copilot turn pipeline."""

from __future__ import annotations


class CopilotError(Exception):
    """Base class for errors raised by this package."""


class InvalidTurnRequestError(CopilotError):
    """The inbound request is malformed or misses required fields."""


class RunNotFoundError(CopilotError):
    def __init__(self, run_id: str) -> None:
        super().__init__(f"Run {run_id} does not exist")
        self.run_id = run_id


class TenantMismatchError(CopilotError):
    """An id that is already owned by another tenant was reused."""


class UnknownToolError(CopilotError):
    def __init__(self, tool_name: str) -> None:
        super().__init__(f"Unknown tool: {tool_name}")
        self.tool_name = tool_name


class ModelInvocationError(CopilotError):
    """The language model provider failed or returned an unusable response."""


class TurnCancelledError(CopilotError):
    """The caller went away before the turn finished."""


class StorageError(CopilotError):
    """A persistence backend failed."""
