"""Diff computed schedules against the snapshot and summarize the run."""
from __future__ import annotations

import logging
import time
from typing import Any, Callable, Iterable

from backend.date_utils import format_date
from backend.models import DataQualityWarning, FieldUpdate, RunSummary
from backend.scheduling.graph import ProjectGraph
from backend.scheduling.propagation import ScheduleResult

logger = logging.getLogger("projectflow.scheduling")


def emit_changes(
    graph: ProjectGraph,
    cyclic_ids: set[str],
    schedule: ScheduleResult,
    *,
    run_id: str = "",
    trigger: str = "api",
    extra_warnings: Iterable[DataQualityWarning] = (),
) -> tuple[list[FieldUpdate], RunSummary]:
    """Return only the field writes that change stored state, plus the run summary.

    Capped-out items never appear (they are not in the graph). Cyclic items only
    ever get their `cyclic` flag written. Closed items and pinned fields keep
    their stored dates.
    """
    updates: list[FieldUpdate] = []
    for item_id in graph.order:
        item = graph.items[item_id]
        is_cyclic = item_id in cyclic_ids
        if item.cyclic != is_cyclic:
            updates.append(FieldUpdate(itemId=item_id, field="cyclic", value=is_cyclic))
        if is_cyclic or item.closed:
            continue

        computed = schedule.schedules[item_id]
        if not item.startPinned and computed.start and computed.start != item.startDate:
            updates.append(FieldUpdate(itemId=item_id, field="startDate", value=format_date(computed.start)))
        if not item.targetPinned and computed.target and computed.target != item.targetDate:
            updates.append(FieldUpdate(itemId=item_id, field="targetDate", value=format_date(computed.target)))
        if computed.milestone_overrun != item.milestoneOverrun:
            updates.append(
                FieldUpdate(itemId=item_id, field="milestoneOverrun", value=computed.milestone_overrun)
            )

    warnings = [*graph.warnings, *extra_warnings, *schedule.warnings]
    summary = RunSummary(
        runId=run_id,
        trigger=trigger,
        itemsTotal=graph.total_items,
        itemsProcessed=len(graph.order),
        itemsSkippedByCap=len(graph.skipped_ids),
        capTruncated=graph.cap_truncated,
        cyclicItems=[item_id for item_id in graph.order if item_id in cyclic_ids],
        milestoneOverruns=schedule.milestone_overruns,
        zeroConfidenceItems=schedule.zero_confidence_items,
        droppedEdges=graph.dropped_edges,
        updatesEmitted=len(updates),
        warnings=warnings,
    )
    return updates, summary


def _normalize_value(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value).strip()


class EchoGuard:
    """Remembers engine-originated writes so their webhook echoes can be ignored.

    Board edits made by the engine come back as `projects_v2_item.edited`
    events. Without this guard each write would trigger another recalculation.
    """

    def __init__(
        self,
        ttl_seconds: float = 10.0,
        *,
        max_projects: int = 500,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl_seconds = ttl_seconds
        self.max_projects = max_projects
        self._clock = clock
        # (owner, project_number) -> {(item_id, field): (value, expires_at)}
        self._writes: dict[tuple[str, int], dict[tuple[str, str], tuple[str, float]]] = {}

    def record(self, owner: str, project_number: int, updates: Iterable[FieldUpdate]) -> None:
        expires_at = self._clock() + self.ttl_seconds
        key = (owner.lower(), int(project_number))
        entries = self._writes.pop(key, {})
        for update in updates:
            entries[(update.itemId, update.field)] = (_normalize_value(update.value), expires_at)
        if entries:
            # Re-insert so dict order tracks recency for eviction.
            self._writes[key] = entries
        while len(self._writes) > self.max_projects:
            self._writes.pop(next(iter(self._writes)))

    def is_echo(
        self,
        owner: str,
        project_number: int,
        *,
        item_id: str | None = None,
        field: str | None = None,
        value: Any = None,
    ) -> bool:
        """True when a live engine write matches every filter that was given."""
        key = (owner.lower(), int(project_number))
        entries = self._writes.get(key)
        if not entries:
            return False
        now = self._clock()
        live = {k: v for k, v in entries.items() if v[1] > now}
        if len(live) != len(entries):
            if live:
                self._writes[key] = live
            else:
                self._writes.pop(key, None)
        wanted = None if value is None else _normalize_value(value)
        for (written_item, written_field), (written_value, _) in live.items():
            if item_id is not None and written_item != item_id:
                continue
            if field is not None and written_field != field:
                continue
            if wanted is not None and written_value != wanted:
                continue
            return True
        return False
