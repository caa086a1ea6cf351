"""Error taxonomy raised by the workflow core.

Every failure an operation reports to its caller is one of the five
``WorkflowError`` subclasses below. Routes translate them to HTTP in
``main.py``; collaborator failures never reach this layer.
"""


class WorkflowError(Exception):
    """Base class for workflow errors."""

    kind = "error"
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFound(WorkflowError):
    """Entity id does not resolve."""

    kind = "not_found"
    status_code = 404


class ValidationError(WorkflowError):
    """Malformed or missing field, out-of-range value, bad enum."""

    kind = "validation_error"
    status_code = 422


class Forbidden(WorkflowError):
    """Actor lacks the role or ownership for the operation."""

    kind = "forbidden"
    status_code = 403


class Conflict(WorkflowError):
    """Uniqueness or mutual-exclusion invariant would be violated."""

    kind = "conflict"
    status_code = 409


class InvalidState(WorkflowError):
    """Operation is not valid for the entity's current status."""

    kind = "invalid_state"
    status_code = 400
