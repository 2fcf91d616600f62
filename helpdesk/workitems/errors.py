"""Error taxonomy raised by the lifecycle engine and its collaborators."""

from __future__ import annotations

from typing import Any, Mapping


class WorkItemError(RuntimeError):
    """Base error for work item operations."""

    code: str = "work_item_error"
    http_status: int = 400

    def __init__(self, message: str, *, details: Mapping[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = dict(details or {})

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details:
            body["details"] = self.details
        return body


class ValidationFailedError(WorkItemError):
    """Malformed input, rejected before the state machine runs."""

    code = "validation_failed"
    http_status = 422


class InvalidEdgeError(WorkItemError):
    """The transition is not defined from the item's current state."""

    code = "invalid_edge"
    http_status = 409


class ForbiddenError(WorkItemError):
    """The actor's role does not permit the operation."""

    code = "forbidden"
    http_status = 403


class MissingResolutionError(WorkItemError):
    """Closing a ticket requires a non-empty resolution note."""

    code = "missing_resolution"
    http_status = 422


class NotFoundError(WorkItemError):
    code = "not_found"
    http_status = 404


class StorageError(WorkItemError):
    """Transaction or infrastructure failure."""

    code = "storage_error"
    http_status = 503


class TransientStorageError(StorageError):
    """Storage failure worth retrying, e.g. a serialization conflict."""

    code = "storage_conflict"
