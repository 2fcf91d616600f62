from fastapi import HTTPException

from helpdesk.workitems.errors import WorkItemError


def to_http_exception(exc: WorkItemError) -> HTTPException:
    """Translate an engine error into the API's ``{"detail": {"code", "message"}}`` shape."""

    return HTTPException(status_code=exc.http_status, detail=exc.to_dict())
