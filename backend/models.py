"""Pydantic models for the schedule propagation engine and its API."""
from __future__ import annotations

from datetime import date
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field


# ── Work-item graph models ─────────────────────────────────────────

class WorkItem(BaseModel):
    id: str  # "<repo>#<number>"
    repo: str = ""
    number: int = 0
    title: str = ""
    nodeId: str = ""  # board item content node id
    estimate: Optional[float] = None  # days; None means unscheduled
    confidence: Optional[float] = Field(default=None, ge=0, le=100)  # None means 100
    startDate: Optional[date] = None
    targetDate: Optional[date] = None
    startPinned: bool = False
    targetPinned: bool = False
    closed: bool = False
    actualEndDate: Optional[date] = None
    milestoneId: Optional[str] = None
    percentComplete: Optional[float] = Field(default=None, ge=0, le=100)
    baselineStart: Optional[date] = None
    baselineTarget: Optional[date] = None
    # Derived flags written back by the engine
    cyclic: bool = False
    milestoneOverrun: bool = False

    @property
    def sort_key(self) -> tuple[str, int, str]:
        return (self.repo, self.number, self.id)


class DependencyEdge(BaseModel):
    blockerId: str
    blockedId: str


class Milestone(BaseModel):
    id: str
    title: str = ""
    dueDate: Optional[date] = None


class ProjectSnapshot(BaseModel):
    items: list[WorkItem] = Field(default_factory=list)
    edges: list[DependencyEdge] = Field(default_factory=list)
    milestones: list[Milestone] = Field(default_factory=list)
    cap: Optional[int] = None  # None means unlimited
    workingDaysOnly: bool = False
    weekendDays: list[int] = Field(default_factory=lambda: [5, 6])
    holidays: list[date] = Field(default_factory=list)


# ── Run output models ──────────────────────────────────────────────

ScheduleField = Literal[
    "startDate",
    "targetDate",
    "cyclic",
    "milestoneOverrun",
    "actualEndDate",
    "baselineStart",
    "baselineTarget",
]

WarningKind = Literal[
    "cycle",
    "dangling_edge",
    "self_edge",
    "zero_confidence",
    "milestone_overrun",
]


class FieldUpdate(BaseModel):
    itemId: str
    field: ScheduleField
    value: Any = None  # ISO date string, bool, or None
    origin: str = "engine"


class DataQualityWarning(BaseModel):
    kind: WarningKind
    itemIds: list[str] = Field(default_factory=list)
    message: str = ""


class RunSummary(BaseModel):
    runId: str = ""
    trigger: str = "api"
    itemsTotal: int = 0
    itemsProcessed: int = 0
    itemsSkippedByCap: int = 0
    capTruncated: bool = False
    cyclicItems: list[str] = Field(default_factory=list)
    milestoneOverruns: list[str] = Field(default_factory=list)
    zeroConfidenceItems: list[str] = Field(default_factory=list)
    droppedEdges: int = 0
    updatesEmitted: int = 0
    warnings: list[DataQualityWarning] = Field(default_factory=list)


class RunResult(BaseModel):
    status: Literal["completed", "busy", "superseded"] = "completed"
    runId: str = ""
    owner: str = ""
    projectNumber: int = 0
    updates: list[FieldUpdate] = Field(default_factory=list)
    summary: Optional[RunSummary] = None


# ── Project / reporting models ─────────────────────────────────────

class TrackedProject(BaseModel):
    installationId: int
    owner: str
    repo: str = ""
    projectNumber: int
    nodeId: str = ""
    tier: str = "free"


class VarianceItem(BaseModel):
    itemId: str
    title: str = ""
    baselineStart: Optional[date] = None
    baselineTarget: Optional[date] = None
    currentStart: Optional[date] = None
    currentTarget: Optional[date] = None
    variance: int = 0
    status: Literal["ahead", "onTrack", "behind", "done"] = "onTrack"


class VarianceSummary(BaseModel):
    ahead: int = 0
    onTrack: int = 0
    behind: int = 0
    noBaseline: int = 0


class VarianceReport(BaseModel):
    items: list[VarianceItem] = Field(default_factory=list)
    summary: VarianceSummary = Field(default_factory=VarianceSummary)


RiskLevel = Literal["critical", "high", "medium", "low", "none"]


class RiskFactor(BaseModel):
    type: str
    message: str = ""
    weight: int = 0
    severity: Literal["critical", "high", "medium", "low"] = "low"
    blockingItems: list[str] = Field(default_factory=list)


class ItemRisk(BaseModel):
    itemId: str
    title: str = ""
    score: int = 0
    level: RiskLevel = "none"
    risks: list[RiskFactor] = Field(default_factory=list)
    isCompleted: bool = False
    targetDate: Optional[date] = None
    estimate: Optional[float] = None
    confidence: Optional[float] = None
    percentComplete: Optional[float] = None


class RiskSummary(BaseModel):
    total: int = 0
    byLevel: dict[str, int] = Field(
        default_factory=lambda: {"critical": 0, "high": 0, "medium": 0, "low": 0, "none": 0}
    )
    byType: dict[str, int] = Field(default_factory=dict)
    averageScore: int = 0
    highestScore: int = 0


class RiskReport(BaseModel):
    items: list[ItemRisk] = Field(default_factory=list)
    summary: RiskSummary = Field(default_factory=RiskSummary)
