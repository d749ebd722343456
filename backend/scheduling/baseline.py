"""Baseline capture and schedule variance reporting."""
from __future__ import annotations

from backend.date_utils import ScheduleCalendar, format_date
from backend.models import FieldUpdate, ProjectSnapshot, VarianceItem, VarianceReport


def _calendar_for(snapshot: ProjectSnapshot) -> ScheduleCalendar:
    return ScheduleCalendar(
        working_days_only=snapshot.workingDaysOnly,
        weekend_days=snapshot.weekendDays,
        holidays=snapshot.holidays,
    )


def baseline_updates(snapshot: ProjectSnapshot) -> list[FieldUpdate]:
    """Copy current dates into empty baseline fields. Existing baselines are kept."""
    updates: list[FieldUpdate] = []
    for item in sorted(snapshot.items, key=lambda i: i.sort_key):
        if item.startDate and not item.baselineStart:
            updates.append(FieldUpdate(itemId=item.id, field="baselineStart", value=format_date(item.startDate)))
        if item.targetDate and not item.baselineTarget:
            updates.append(FieldUpdate(itemId=item.id, field="baselineTarget", value=format_date(item.targetDate)))
    return updates


def variance_report(snapshot: ProjectSnapshot) -> VarianceReport:
    calendar = _calendar_for(snapshot)
    report = VarianceReport()
    for item in sorted(snapshot.items, key=lambda i: i.sort_key):
        if not item.baselineTarget:
            report.summary.noBaseline += 1
            continue

        current_target = item.targetDate or item.baselineTarget
        variance = calendar.days_between(item.baselineTarget, current_target)
        if item.closed:
            status = "done"
        elif variance > 0:
            status = "behind"
        elif variance < 0:
            status = "ahead"
        else:
            status = "onTrack"

        report.items.append(
            VarianceItem(
                itemId=item.id,
                title=item.title,
                baselineStart=item.baselineStart,
                baselineTarget=item.baselineTarget,
                currentStart=item.startDate,
                currentTarget=item.targetDate,
                variance=variance,
                status=status,
            )
        )
        if status in {"done", "onTrack"}:
            report.summary.onTrack += 1
        elif status == "ahead":
            report.summary.ahead += 1
        else:
            report.summary.behind += 1
    return report
