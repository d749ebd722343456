"""Schedule risk scoring for open board items.

Each open item collects weighted risk factors (overdue, due soon with little
progress, low confidence, missing estimate or dates, open blockers, slipped
past its baseline). The summed score maps to a level; closed items score 0.
"""
from __future__ import annotations

import math
from datetime import date
from typing import Iterable

from backend.models import ItemRisk, ProjectSnapshot, RiskFactor, RiskReport, WorkItem

RISK_WEIGHTS = {
    "overdue": 35,
    "approachingDeadline": 20,
    "lowConfidence": 15,
    "noEstimate": 10,
    "noTargetDate": 10,
    "blocked": 15,
    "behindBaseline": 15,
    "noStartDate": 5,
}

# Minimum score per level, checked in order.
RISK_LEVELS = (("critical", 50), ("high", 30), ("medium", 15), ("low", 1))

APPROACHING_DEADLINE_DAYS = 5
PROGRESS_THRESHOLD = 80
# Confidence percentages below this count as a low-confidence estimate.
LOW_CONFIDENCE_THRESHOLD = 50


def _days(count: int) -> str:
    return f"{count} day{'' if count == 1 else 's'}"


def risk_level(score: int) -> str:
    for level, minimum in RISK_LEVELS:
        if score >= minimum:
            return level
    return "none"


def calculate_item_risk(
    item: WorkItem,
    items_by_id: dict[str, WorkItem],
    blocked_by: Iterable[str] = (),
    *,
    today: date,
) -> ItemRisk:
    if item.closed:
        return ItemRisk(itemId=item.id, title=item.title, isCompleted=True)

    risks: list[RiskFactor] = []

    def add(kind: str, message: str, severity: str, **extra) -> None:
        risks.append(RiskFactor(type=kind, message=message, weight=RISK_WEIGHTS[kind], severity=severity, **extra))

    target = item.targetDate
    if target and target < today:
        add("overdue", f"Overdue by {_days((today - target).days)}", "critical")
    if target and target >= today:
        days_left = (target - today).days
        progress = int(item.percentComplete or 0)
        if days_left <= APPROACHING_DEADLINE_DAYS and progress < PROGRESS_THRESHOLD:
            add("approachingDeadline", f"Due in {_days(days_left)} with only {progress}% complete", "high")
    if item.confidence is not None and item.confidence < LOW_CONFIDENCE_THRESHOLD:
        add("lowConfidence", "Low confidence estimate", "medium")
    if not item.estimate:
        add("noEstimate", "Missing size estimate", "medium")
    if not target:
        add("noTargetDate", "No target date set", "medium")

    open_blockers = [
        blocker_id
        for blocker_id in blocked_by
        if blocker_id in items_by_id and not items_by_id[blocker_id].closed
    ]
    if open_blockers:
        noun = "item" if len(open_blockers) == 1 else "items"
        add("blocked", f"Blocked by {len(open_blockers)} incomplete {noun}", "high", blockingItems=open_blockers)

    if item.baselineTarget and target and target > item.baselineTarget:
        add("behindBaseline", f"{_days((target - item.baselineTarget).days)} behind baseline", "medium")
    if target and not item.startDate:
        add("noStartDate", "No start date set", "low")

    score = sum(risk.weight for risk in risks)
    return ItemRisk(
        itemId=item.id,
        title=item.title,
        score=score,
        level=risk_level(score),
        risks=risks,
        targetDate=target,
        estimate=item.estimate,
        confidence=item.confidence,
        percentComplete=item.percentComplete,
    )


def project_risks(snapshot: ProjectSnapshot, *, today: date) -> RiskReport:
    """Score every item; the report lists items by descending score."""
    items = sorted(snapshot.items, key=lambda i: i.sort_key)
    items_by_id = {item.id: item for item in items}
    blocked_by: dict[str, list[str]] = {}
    for edge in snapshot.edges:
        if edge.blockerId != edge.blockedId:
            blocked_by.setdefault(edge.blockedId, []).append(edge.blockerId)

    assessments = [
        calculate_item_risk(item, items_by_id, sorted(set(blocked_by.get(item.id, []))), today=today)
        for item in items
    ]
    assessments.sort(key=lambda a: a.score, reverse=True)

    report = RiskReport(items=assessments)
    summary = report.summary
    summary.total = len(assessments)
    for assessment in assessments:
        summary.byLevel[assessment.level] += 1
        for risk in assessment.risks:
            summary.byType[risk.type] = summary.byType.get(risk.type, 0) + 1
        summary.highestScore = max(summary.highestScore, assessment.score)

    open_scores = [a.score for a in assessments if not a.isCompleted]
    if open_scores:
        summary.averageScore = math.floor(sum(open_scores) / len(open_scores) + 0.5)
    return report
