from __future__ import annotations


class WorkflowError(Exception):
    """Base class for every failure the dinner workflow surfaces to callers."""


class NotFoundError(WorkflowError):
    """A referenced channel, vote, dinner or key is absent."""


class InvalidInputError(WorkflowError):
    """The request itself is malformed; nothing was written."""


class PreconditionFailedError(WorkflowError):
    """The request is well formed but the current state does not allow it."""


class CollaboratorError(WorkflowError):
    """Slack or the LLM failed or timed out."""

    def __init__(self, operation: str, cause: BaseException | None = None) -> None:
        self.operation = operation
        self.cause = cause
        detail = f"{type(cause).__name__}: {cause}" if cause else "failed"
        super().__init__(f"{operation} {detail}")


class StoreError(WorkflowError):
    """The persistence layer failed."""


class VersionConflictError(StoreError):
    """A versioned write lost the race against a concurrent writer."""

    def __init__(self, key: str, expected: int | None, actual: int | None) -> None:
        self.key = key
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"version conflict on {key}: expected {expected}, found {actual}"
        )


__all__ = [
    "CollaboratorError",
    "InvalidInputError",
    "NotFoundError",
    "PreconditionFailedError",
    "StoreError",
    "VersionConflictError",
    "WorkflowError",
]
