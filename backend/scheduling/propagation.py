"""Date propagation over the acyclic part of a project graph.

Items are visited in topological order (ties broken by the graph's
stable order). Closed and cyclic items are fixed points: their stored dates
feed successors but are never recomputed. Pinned fields keep their stored
value and that value is what successors see.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date

import networkx as nx

from backend.date_utils import ScheduleCalendar, max_date
from backend.models import DataQualityWarning, Milestone, WorkItem
from backend.scheduling.errors import InvariantViolation
from backend.scheduling.graph import ProjectGraph

logger = logging.getLogger("projectflow.scheduling")

# Confidence 0 would make the window unbounded; schedule as if it were 1%.
MIN_CONFIDENCE = 1.0


@dataclass
class ItemSchedule:
    item_id: str
    start: date | None
    target: date | None
    milestone_overrun: bool = False
    zero_confidence: bool = False
    duration_days: float | None = None


@dataclass
class ScheduleResult:
    order: list[str]
    schedules: dict[str, ItemSchedule]
    warnings: list[DataQualityWarning] = field(default_factory=list)

    @property
    def milestone_overruns(self) -> list[str]:
        return [item_id for item_id in self.order if self.schedules[item_id].milestone_overrun]

    @property
    def zero_confidence_items(self) -> list[str]:
        return [item_id for item_id in self.order if self.schedules[item_id].zero_confidence]


def finish_date(item: WorkItem) -> date | None:
    """Date a fixed (closed or cyclic) item hands to its successors."""
    if item.closed and item.actualEndDate:
        return item.actualEndDate
    return item.targetDate or item.startDate


def effective_duration(item: WorkItem) -> tuple[float | None, bool]:
    """Return the confidence-stretched duration and whether confidence was zero."""
    if item.estimate is None:
        return None, False
    if item.estimate < 0:
        raise InvariantViolation(f"{item.id} has a negative estimate ({item.estimate})")
    confidence = 100.0 if item.confidence is None else float(item.confidence)
    zero = confidence <= 0
    if zero:
        confidence = MIN_CONFIDENCE
    return item.estimate / (confidence / 100.0), zero


def topological_order(graph: ProjectGraph, cyclic_ids: set[str]) -> list[str]:
    """Topological order of the non-cyclic items, ties broken by stable order."""
    acyclic = graph.digraph.subgraph(item_id for item_id in graph.order if item_id not in cyclic_ids)
    try:
        return list(nx.lexicographical_topological_sort(acyclic, key=graph.position))
    except nx.NetworkXUnfeasible as exc:
        raise InvariantViolation("Unresolved dependency order after cycle removal") from exc


def propagate(
    graph: ProjectGraph,
    cyclic_ids: set[str],
    milestones: list[Milestone],
    *,
    today: date,
    calendar: ScheduleCalendar | None = None,
) -> ScheduleResult:
    calendar = calendar or ScheduleCalendar()
    due_dates = {m.id: m.dueDate for m in milestones if m.dueDate}
    order = topological_order(graph, cyclic_ids)
    schedules: dict[str, ItemSchedule] = {}
    # Date each item hands to its successors as their earliest start.
    handoff: dict[str, date | None] = {}
    warnings: list[DataQualityWarning] = []

    for item_id in graph.order:
        if item_id in cyclic_ids:
            handoff[item_id] = finish_date(graph.items[item_id])

    for item_id in order:
        item = graph.items[item_id]
        if item_id in graph.predecessors[item_id]:
            raise InvariantViolation(f"{item_id} is its own predecessor")

        if item.closed:
            schedules[item_id] = ItemSchedule(item_id, item.startDate, item.targetDate)
            handoff[item_id] = finish_date(item)
            continue

        start = max_date(handoff.get(p) for p in graph.predecessors[item_id])
        if start is None:
            start = item.startDate or today
        start = calendar.next_working_day(start)
        if item.startPinned and item.startDate:
            start = item.startDate

        duration, zero_confidence = effective_duration(item)
        target = calendar.add_days(start, duration) if duration is not None else None
        if item.targetPinned and item.targetDate:
            target = item.targetDate

        overrun = False
        due = due_dates.get(item.milestoneId or "")
        if due and target and target > due:
            overrun = True

        if zero_confidence:
            logger.warning("%s has zero confidence; scheduled at %.0f%%", item_id, MIN_CONFIDENCE)
            warnings.append(
                DataQualityWarning(
                    kind="zero_confidence",
                    itemIds=[item_id],
                    message=f"{item_id} has 0% confidence; duration computed at {MIN_CONFIDENCE:.0f}%",
                )
            )
        if overrun:
            warnings.append(
                DataQualityWarning(
                    kind="milestone_overrun",
                    itemIds=[item_id],
                    message=f"{item_id} targets {target.isoformat()} after milestone due {due.isoformat()}",
                )
            )

        schedules[item_id] = ItemSchedule(
            item_id,
            start,
            target,
            milestone_overrun=overrun,
            zero_confidence=zero_confidence,
            duration_days=duration,
        )
        # Without an estimate the stored target stays on the board, so successors
        # must not start before it.
        handoff[item_id] = target or max_date([item.targetDate, start])

    return ScheduleResult(order=order, schedules=schedules, warnings=warnings)
