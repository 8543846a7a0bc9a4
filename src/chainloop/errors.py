from __future__ import annotations


class ChainloopError(RuntimeError):
    """Base class for chainloop runtime failures."""


class StreamReadError(ChainloopError):
    """Reading a snapshot from the monitored stream failed."""


class SendError(ChainloopError):
    """Delivering text over the outbound channel failed."""

    def __init__(self, message: str, *, transient: bool = True) -> None:
        super().__init__(message)
        self.transient = transient


class ActionError(ChainloopError):
    """A stage action failed after its retries were exhausted."""

    def __init__(self, action: str, cause: BaseException) -> None:
        super().__init__(f"Action {action} failed: {cause}")
        self.action = action
        self.cause = cause


class AgentError(ChainloopError):
    """An agent collaborator returned an unusable result."""


class WorkItemError(ChainloopError):
    """The work-item source could not be read."""
