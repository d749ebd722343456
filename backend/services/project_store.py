"""Storage-backed snapshot provider, write-back sink and audit sink.

Rows from the repositories are mapped into `WorkItem` / `ProjectSnapshot`
here, so the scheduling package never sees raw rows. Owners are normalized
to lowercase on every read and write.
"""
from __future__ import annotations

import logging
from datetime import date
from typing import Any, Callable

from backend.date_utils import format_date, parse_date, utc_today
from backend.db import factory
from backend.models import (
    DependencyEdge,
    FieldUpdate,
    Milestone,
    ProjectSnapshot,
    RiskReport,
    RunSummary,
    TrackedProject,
    VarianceReport,
    WorkItem,
)
from backend.scheduling.baseline import baseline_updates, variance_report
from backend.scheduling.errors import ProjectNotFoundError
from backend.scheduling.risk import project_risks
from backend.services.plan_settings import estimate_days, get_settings, plan_cap

logger = logging.getLogger("projectflow.store")


def _owner(owner: str) -> str:
    return owner.strip().lower()


def _item_from_row(row: dict[str, Any]) -> WorkItem:
    return WorkItem(
        id=row["id"],
        repo=row.get("repo") or "",
        number=int(row.get("number") or 0),
        title=row.get("title") or "",
        nodeId=row.get("content_node_id") or "",
        estimate=row.get("estimate"),
        confidence=row.get("confidence"),
        startDate=parse_date(row.get("start_date")),
        targetDate=parse_date(row.get("target_date")),
        startPinned=bool(row.get("start_pinned")),
        targetPinned=bool(row.get("target_pinned")),
        closed=bool(row.get("closed")),
        actualEndDate=parse_date(row.get("actual_end_date")),
        milestoneId=row.get("milestone_id"),
        percentComplete=row.get("percent_complete"),
        baselineStart=parse_date(row.get("baseline_start")),
        baselineTarget=parse_date(row.get("baseline_target")),
        cyclic=bool(row.get("cyclic")),
        milestoneOverrun=bool(row.get("milestone_overrun")),
    )


def _expand_holidays(rows: list[dict[str, Any]], today: date) -> list[date]:
    """Resolve holiday rows; recurring ones repeat for this year and next."""
    days: set[date] = set()
    for row in rows:
        day = parse_date(row.get("date"))
        if day is None:
            continue
        days.add(day)
        if row.get("recurring"):
            for year in (today.year, today.year + 1):
                try:
                    days.add(day.replace(year=year))
                except ValueError:
                    # Feb 29 in a non-leap year
                    continue
    return sorted(days)


class ProjectStore:
    """Implements SnapshotProvider, WriteBackSink and AuditSink over one DB connection."""

    def __init__(self, db: Any, *, settings: dict[str, Any] | None = None, today: Callable[[], date] = utc_today):
        self.db = db
        self.projects = factory.get_project_repository(db)
        self.work_items = factory.get_work_item_repository(db)
        self.audit = factory.get_audit_repository(db)
        self._settings = settings
        self._today = today

    @property
    def settings(self) -> dict[str, Any]:
        if self._settings is None:
            self._settings = get_settings()
        return self._settings

    # ── SnapshotProvider ────────────────────────────────────────────

    async def get_project_snapshot(self, owner: str, project_number: int) -> ProjectSnapshot:
        owner = _owner(owner)
        project = await self.projects.get_project(owner, project_number)
        if project is None:
            raise ProjectNotFoundError(owner, project_number)

        installation = await self.projects.get_installation(project["installation_id"]) or {}
        calendar = dict(self.settings.get("calendar", {}))
        calendar.update({k: v for k, v in (installation.get("settings") or {}).items() if k in {"workingDaysOnly", "weekendDays"}})
        holiday_rows = await self.projects.list_holidays(project["installation_id"])

        items = [_item_from_row(row) for row in await self.work_items.list_items(owner, project_number)]
        edges = [
            DependencyEdge(blockerId=row["blocker_id"], blockedId=row["blocked_id"])
            for row in await self.work_items.list_edges(owner, project_number)
        ]
        milestones = [
            Milestone(id=row["id"], title=row.get("title") or "", dueDate=parse_date(row.get("due_date")))
            for row in await self.work_items.list_milestones(owner, project_number)
        ]
        return ProjectSnapshot(
            items=items,
            edges=edges,
            milestones=milestones,
            cap=plan_cap(project.get("tier"), self.settings),
            workingDaysOnly=bool(calendar.get("workingDaysOnly", False)),
            weekendDays=list(calendar.get("weekendDays") or [5, 6]),
            holidays=_expand_holidays(holiday_rows, self._today()),
        )

    async def find_projects_for_item(self, owner: str, repo: str, item_number: int) -> list[int]:
        return await self.work_items.find_projects_with_item(_owner(owner), repo, int(item_number))

    async def find_item_id(self, owner: str, project_number: int, node_id: str) -> str | None:
        """Map a board item's content node id to its `<repo>#<number>` id."""
        row = await self.work_items.find_item_by_node_id(_owner(owner), project_number, node_id)
        return row["id"] if row else None

    # ── WriteBackSink ───────────────────────────────────────────────

    async def apply_field_updates(self, owner: str, project_number: int, updates: list[FieldUpdate]) -> None:
        if not updates:
            return
        touched = await self.work_items.apply_field_updates(
            _owner(owner),
            project_number,
            [update.model_dump(mode="json") for update in updates],
        )
        logger.debug("Applied %d field updates to %s/%s (%d rows)", len(updates), owner, project_number, touched)

    # ── AuditSink ───────────────────────────────────────────────────

    async def log_run_summary(self, owner: str, project_number: int, summary: RunSummary) -> None:
        await self.audit.log(_owner(owner), project_number, "recalculate", summary.model_dump(mode="json"))

    # ── Board mirror maintenance ────────────────────────────────────

    async def track_project(self, project: TrackedProject) -> None:
        await self.projects.upsert_project(
            project.installationId,
            _owner(project.owner),
            project.projectNumber,
            repo=project.repo,
            node_id=project.nodeId,
        )

    async def upsert_item(self, owner: str, project_number: int, item: dict[str, Any]) -> WorkItem:
        """Store one board item. `estimate` may be a number of days or a size label."""
        payload = dict(item)
        payload["estimate"] = estimate_days(payload.get("estimate"), self.settings)
        model = WorkItem.model_validate(payload)
        await self.work_items.upsert_item(_owner(owner), project_number, model.model_dump(mode="json"))
        return model

    async def update_issue(self, owner: str, repo: str, number: int, fields: dict[str, Any]) -> int:
        fields = dict(fields)
        if "estimate" in fields:
            fields["estimate"] = estimate_days(fields["estimate"], self.settings)
        if "actualEndDate" in fields:
            fields["actualEndDate"] = format_date(parse_date(fields["actualEndDate"]))
        return await self.work_items.update_issue(_owner(owner), repo, int(number), fields)

    async def upsert_milestone(self, owner: str, project_number: int, milestone: Milestone) -> None:
        await self.work_items.upsert_milestone(
            _owner(owner),
            project_number,
            milestone.id,
            title=milestone.title,
            due_date=format_date(milestone.dueDate),
        )

    # ── Baseline, variance & risk ─────────────────────────────────────────

    async def capture_baseline(self, owner: str, project_number: int) -> list[FieldUpdate]:
        snapshot = await self.get_project_snapshot(owner, project_number)
        updates = baseline_updates(snapshot)
        if updates:
            await self.apply_field_updates(owner, project_number, updates)
        await self.audit.log(
            _owner(owner),
            project_number,
            "baseline",
            {"fieldsSet": len(updates), "items": sorted({u.itemId for u in updates})},
        )
        logger.info("Captured baseline for %s/%s: %d fields set", owner, project_number, len(updates))
        return updates

    async def get_variance(self, owner: str, project_number: int) -> VarianceReport:
        snapshot = await self.get_project_snapshot(owner, project_number)
        return variance_report(snapshot)

    async def get_risks(self, owner: str, project_number: int) -> RiskReport:
        snapshot = await self.get_project_snapshot(owner, project_number)
        return project_risks(snapshot, today=self._today())
