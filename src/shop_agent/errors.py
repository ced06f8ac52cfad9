"""Exception hierarchy shared by every component."""

from __future__ import annotations


class ShopAgentError(Exception):
    """Base class for all shop-agent errors."""


class StorageError(ShopAgentError):
    """Persistence is unreachable or a constraint was violated."""


class SessionNotFound(ShopAgentError):
    def __init__(self, session_id: int):
        super().__init__(f"chat session {session_id} not found")
        self.session_id = session_id


class ActionNotFound(ShopAgentError):
    def __init__(self, action_id: str):
        super().__init__(f"pending action {action_id} not found")
        self.action_id = action_id


class InvalidTransition(ShopAgentError):
    """An action-queue transition was attempted from a non-matching status."""

    def __init__(self, action_id: str, current: str, attempted: str):
        super().__init__(
            f"cannot move action {action_id} to '{attempted}' from '{current}'"
        )
        self.action_id = action_id
        self.current = current
        self.attempted = attempted


class Expired(ShopAgentError):
    """Approval or rejection attempted after the action's TTL."""

    def __init__(self, action_id: str):
        super().__init__(f"action {action_id} has expired; this request is no longer valid")
        self.action_id = action_id


class UnknownReference(ShopAgentError):
    """A decision callback arrived for an external reference with no action."""

    def __init__(self, external_ref: str):
        super().__init__(f"no pending action for external reference '{external_ref}'")
        self.external_ref = external_ref


class ToolLoopExceeded(ShopAgentError):
    def __init__(self, max_iterations: int):
        super().__init__(f"tool-call loop exceeded {max_iterations} iterations")
        self.max_iterations = max_iterations


class CompletionError(ShopAgentError):
    """The completion API rejected the request (not retryable)."""


class TransientCompletionError(CompletionError):
    """Rate limit, timeout or network failure; safe to retry."""


class EmbeddingError(ShopAgentError):
    pass


class NotificationError(ShopAgentError):
    """Posting to or updating the approval channel failed."""


class SeedConfigError(ShopAgentError):
    pass


class ToolExecutionError(ShopAgentError):
    """A tool's backend call failed."""
