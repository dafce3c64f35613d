"""
Error taxonomy for the promotion workflow.

Every failure the engine reports is one of these. Each carries the HTTP status
the API layer answers with, so routes never have to map exceptions by hand.
"""
from typing import Optional


class WorkflowError(Exception):
    """Base class for every failure reported to callers of the workflow."""
    http_status = 500

    def __init__(self, message: str):
        self.message = message
        super().__init__(self.message)


class ValidationError(WorkflowError):
    """Malformed or inconsistent input. The caller can fix it and retry."""
    http_status = 400


class Forbidden(WorkflowError):
    """The actor lacks the permission for this action."""
    http_status = 403


class NotFound(WorkflowError):
    """The referenced rule, version or approval does not exist."""
    http_status = 404

    def __init__(self, entity: str, entity_id: Optional[object] = None):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} not found")


class Conflict(WorkflowError):
    """Duplicate pending approval, duplicate version number or duplicate slug."""
    http_status = 409


class InvalidState(WorkflowError):
    """The entity is not in a state that allows the operation."""
    http_status = 400


class StorageFailure(WorkflowError):
    """
    The database failed mid-operation.

    The operation's transaction has been rolled back; no partial state remains.
    The caller may retry the whole operation.
    """
    http_status = 500
