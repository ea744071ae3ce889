class RemoteUnavailable(Exception):
    """Raised when the remote task service cannot be reached or refuses the request."""


class AuthenticationError(RemoteUnavailable):
    """Raised when OAuth credentials are missing or invalid."""


class IntegrationError(RemoteUnavailable):
    """Raised when a Tasks API call fails."""


class RateLimitError(RemoteUnavailable):
    """Raised when the Tasks API rate limit is hit."""


class MalformedHierarchy(Exception):
    """Raised when parent references cannot be arranged into a bounded forest."""

    def __init__(self, message: str, task_ids: list[str] | None = None):
        super().__init__(message)
        self.task_ids = task_ids or []


class PersistenceFailure(Exception):
    """Raised when the local cache file cannot be written or decoded."""


class TaskNotFoundError(KeyError):
    """Raised when a task id is not present in the local tree."""

    def __str__(self) -> str:
        return f"Task not found: {self.args[0]}" if self.args else "Task not found"
