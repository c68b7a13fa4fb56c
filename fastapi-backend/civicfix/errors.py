"""Error taxonomy for the report workflow.

Every error carries the HTTP status the API layer maps it to, so route
handlers can let them propagate and a single exception handler renders them.
"""

from typing import Optional


class WorkflowError(Exception):
    """Base class for failures raised by the workflow engine and its collaborators."""

    status_code = 400

    def __init__(self, message: str, *, report_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.report_id = report_id


class NotFoundError(WorkflowError):
    """The referenced report (or profile) does not exist."""

    status_code = 404


class ValidationError(WorkflowError):
    """Malformed input: unknown status, missing report fields, bad agent."""

    status_code = 400


class AuthorizationError(WorkflowError):
    """The principal's role or identity does not permit the request."""

    status_code = 403


class InvalidTransitionError(WorkflowError):
    """An out-of-order transition, raised instead of clamping in strict mode."""

    status_code = 409


class ConflictError(WorkflowError):
    """The report changed between read and conditional write."""

    status_code = 409


class TransientStorageError(WorkflowError):
    """The storage collaborator failed to read or write."""

    status_code = 503


__all__ = [
    "WorkflowError",
    "NotFoundError",
    "ValidationError",
    "AuthorizationError",
    "InvalidTransitionError",
    "ConflictError",
    "TransientStorageError",
]
