from __future__ import annotations

from http import HTTPStatus
from typing import Any, Dict, List, Optional

PROBLEM_CONTENT_TYPE = "application/problem+json"


class StorageError(Exception):
    """Raised by the storage layer when the database rejects an operation."""

    def __init__(self, message: str, operation: str) -> None:
        super().__init__(message)
        self.message = message
        self.operation = operation


# PUBLIC_INTERFACE
class ProblemError(Exception):
    """
    An error that is reported to the client as a Problem Details body.

    Args:
        status: HTTP status code to respond with.
        detail: Human readable explanation for this occurrence.
        errors: Optional list of {field, message} entries.
    """

    def __init__(
        self,
        status: int,
        detail: str,
        errors: Optional[List[Dict[str, str]]] = None,
    ) -> None:
        super().__init__(detail)
        self.status = int(status)
        self.detail = detail
        self.errors = errors or []

    def to_problem(self) -> Dict[str, Any]:
        return problem_body(self.status, self.detail, self.errors)


def problem_body(
    status: int, detail: str, errors: Optional[List[Dict[str, str]]] = None
) -> Dict[str, Any]:
    """
    Build an RFC 7807 style body. `errors` is only included when non-empty.
    """
    try:
        title = HTTPStatus(status).phrase
    except ValueError:
        title = "Error"
    body: Dict[str, Any] = {
        "type": "about:blank",
        "title": title,
        "status": status,
        "detail": detail,
    }
    if errors:
        body["errors"] = errors
    return body


def field_error(field: str, message: str) -> Dict[str, str]:
    return {"field": field, "message": message}


def bad_request(detail: str, errors: Optional[List[Dict[str, str]]] = None) -> ProblemError:
    return ProblemError(400, detail, errors)


def not_found(detail: str = "Task not found") -> ProblemError:
    return ProblemError(404, detail)


def unprocessable(errors: List[Dict[str, str]]) -> ProblemError:
    return ProblemError(422, "Validation failed.", errors)
