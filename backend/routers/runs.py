"""Recalculation run history and coordinator status API."""
from __future__ import annotations

from fastapi import APIRouter, HTTPException, Query, Request

from backend.routers.projects import _get_coordinator

runs_router = APIRouter(prefix="/api/runs", tags=["runs"])


@runs_router.get("")
async def list_runs(request: Request, limit: int = Query(20, ge=1, le=200)):
    """List recent recalculation runs, newest first."""
    coordinator = _get_coordinator(request)
    runs = await coordinator.list_runs(limit=limit)
    return {"status": "ok", "count": len(runs), "items": runs}


@runs_router.get("/status")
async def get_run_status(request: Request):
    """Live coordinator state: policy, active runs, busy projects, pending follow-ups."""
    coordinator = _get_coordinator(request)
    return await coordinator.get_observability_snapshot()


@runs_router.get("/{run_id}")
async def get_run(request: Request, run_id: str):
    coordinator = _get_coordinator(request)
    run = await coordinator.get_run(run_id)
    if not run:
        raise HTTPException(status_code=404, detail=f"Run {run_id} not found")
    return run
