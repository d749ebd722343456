"""Project recalculation, baseline, variance and risk API."""
from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel, Field

from backend.models import DependencyEdge, Milestone, RiskReport, RunResult, TrackedProject, VarianceReport
from backend.scheduling.errors import (
    InvariantViolation,
    ProjectNotFoundError,
    SchedulingError,
    TransientCollaboratorError,
)

logger = logging.getLogger("projectflow.api")

projects_router = APIRouter(prefix="/api/projects", tags=["projects"])


class BoardSyncRequest(BaseModel):
    items: list[dict[str, Any]] = Field(default_factory=list)
    edges: list[DependencyEdge] = Field(default_factory=list)
    milestones: list[Milestone] = Field(default_factory=list)


def _get_coordinator(request: Request):
    coordinator = getattr(request.app.state, "coordinator", None)
    if not coordinator:
        raise HTTPException(status_code=503, detail="Run coordinator not initialized")
    return coordinator


def _get_store(request: Request):
    store = getattr(request.app.state, "store", None)
    if not store:
        raise HTTPException(status_code=503, detail="Project store not initialized")
    return store


def _http_error(exc: SchedulingError) -> HTTPException:
    if isinstance(exc, ProjectNotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, TransientCollaboratorError):
        return HTTPException(status_code=503, detail=str(exc))
    if isinstance(exc, InvariantViolation):
        logger.error("Invariant violation: %s", exc)
        return HTTPException(status_code=500, detail=str(exc))
    return HTTPException(status_code=500, detail=str(exc))


@projects_router.post("", response_model=TrackedProject)
async def track_project(request: Request, project: TrackedProject):
    """Register a board for scheduling."""
    store = _get_store(request)
    await store.track_project(project)
    return project


@projects_router.put("/{owner}/{project_number}/board")
async def sync_board(request: Request, owner: str, project_number: int, body: BoardSyncRequest):
    """Upsert mirrored board items, dependency edges and milestones."""
    store = _get_store(request)
    try:
        for milestone in body.milestones:
            await store.upsert_milestone(owner, project_number, milestone)
        for item in body.items:
            await store.upsert_item(owner, project_number, item)
        for edge in body.edges:
            await store.work_items.add_edge(owner.lower(), project_number, edge.blockerId, edge.blockedId)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {
        "status": "ok",
        "items": len(body.items),
        "edges": len(body.edges),
        "milestones": len(body.milestones),
    }


@projects_router.post("/{owner}/{project_number}/recalculate", response_model=RunResult)
async def recalculate_project(request: Request, owner: str, project_number: int):
    """Run one recalculation for the board, or join the pending follow-up."""
    coordinator = _get_coordinator(request)
    try:
        result = await coordinator.recalculate_project(owner, project_number, trigger="api")
    except SchedulingError as exc:
        raise _http_error(exc) from exc
    if result.status == "busy":
        raise HTTPException(status_code=409, detail=f"Recalculation already running for {owner}/{project_number}")
    return result


@projects_router.post("/{owner}/{project_number}/baseline")
async def capture_baseline(request: Request, owner: str, project_number: int):
    """Copy current dates into empty baseline fields."""
    store = _get_store(request)
    try:
        updates = await store.capture_baseline(owner, project_number)
    except SchedulingError as exc:
        raise _http_error(exc) from exc
    return {
        "status": "ok",
        "fieldsSet": len(updates),
        "updates": [update.model_dump(mode="json") for update in updates],
    }


@projects_router.get("/{owner}/{project_number}/variance", response_model=VarianceReport)
async def get_variance(request: Request, owner: str, project_number: int):
    store = _get_store(request)
    try:
        return await store.get_variance(owner, project_number)
    except SchedulingError as exc:
        raise _http_error(exc) from exc


@projects_router.get("/{owner}/{project_number}/risks", response_model=RiskReport)
async def get_risks(request: Request, owner: str, project_number: int):
    """Risk score per open item, highest first, with level and type counts."""
    store = _get_store(request)
    try:
        return await store.get_risks(owner, project_number)
    except SchedulingError as exc:
        raise _http_error(exc) from exc
