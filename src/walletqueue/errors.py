"""Exception types raised by walletqueue."""

from __future__ import annotations


class WorkQueueError(Exception):
    """Base class for every error raised by the engine itself."""


class ConfigurationError(WorkQueueError):
    """The runtime is wired incorrectly. Never retried."""


class ProviderNotFoundError(ConfigurationError, LookupError):
    """A task depends on a provider that was never registered."""

    def __init__(self, name: str) -> None:
        super().__init__(f"Provider {name} not found")
        self.name = name


class TaskNotRegisteredError(ConfigurationError, LookupError):
    """A queue record names a task type the registry does not know."""

    def __init__(self, task_name: str) -> None:
        super().__init__(f"Task constructor not found: {task_name}")
        self.task_name = task_name


class SerializationError(WorkQueueError, TypeError):
    """A value cannot be encoded for persistent storage."""


class TaskExpiredError(WorkQueueError):
    """The task's deadline passed before it could run; it was discarded."""

    def __init__(self, task_name: str, expires_at: int | None) -> None:
        super().__init__(f"Task {task_name} expired at {expires_at}, discarded")
        self.task_name = task_name
        self.expires_at = expires_at


class RelayConnectionTimeout(WorkQueueError, TimeoutError):
    """No relay became connected within the allowed time."""

    def __init__(self, timeout: float) -> None:
        super().__init__(f"No relay connected after {timeout:.1f}s")
        self.timeout = timeout


class ApprovalDeferred(WorkQueueError):
    """
    A user decision is needed but the app is not in the foreground.

    A notification has been sent. The owning queue record is kept so the
    whole flow starts over (and prompts in the foreground) on next launch.
    """

    def __init__(self, request_id: str) -> None:
        super().__init__(f"Approval for request {request_id} deferred to next launch")
        self.request_id = request_id


class WalletUnavailableError(WorkQueueError):
    """The task needs a wallet but none is connected."""

    def __init__(self, message: str = "No wallet found") -> None:
        super().__init__(message)
