"""Schedule propagation engine."""

from backend.scheduling.coordinator import (
    AuditSink,
    ProjectKey,
    RunCoordinator,
    SnapshotProvider,
    WriteBackSink,
    compute_run,
)
from backend.scheduling.emitter import EchoGuard, emit_changes
from backend.scheduling.errors import (
    InvariantViolation,
    ProjectNotFoundError,
    SchedulingError,
    TransientCollaboratorError,
)
from backend.scheduling.graph import ProjectGraph, build_project_graph
from backend.scheduling.risk import calculate_item_risk, project_risks

__all__ = [
    "AuditSink",
    "EchoGuard",
    "InvariantViolation",
    "ProjectGraph",
    "ProjectKey",
    "ProjectNotFoundError",
    "RunCoordinator",
    "SchedulingError",
    "SnapshotProvider",
    "TransientCollaboratorError",
    "WriteBackSink",
    "build_project_graph",
    "calculate_item_risk",
    "compute_run",
    "emit_changes",
    "project_risks",
]
