"""Exception taxonomy for schedule recalculation."""
from __future__ import annotations


class SchedulingError(Exception):
    """Base class for scheduling failures."""


class TransientCollaboratorError(SchedulingError):
    """A snapshot read or write-back failed; the caller may retry the run."""

    def __init__(self, operation: str, owner: str, project_number: int, cause: BaseException | None = None):
        self.operation = operation
        self.owner = owner
        self.project_number = project_number
        self.cause = cause
        detail = f": {cause}" if cause else ""
        super().__init__(f"{operation} failed for {owner}/{project_number}{detail}")


class InvariantViolation(SchedulingError):
    """Input that cannot be scheduled without silently corrupting data."""


class ProjectNotFoundError(SchedulingError):
    """No tracked project exists for the requested owner and number."""

    def __init__(self, owner: str, project_number: int):
        self.owner = owner
        self.project_number = project_number
        super().__init__(f"Project {owner}/{project_number} is not tracked")
