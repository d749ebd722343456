"""ProjectFlow scheduler FastAPI backend, main application entry point."""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from backend import config
from backend.routers.projects import projects_router
from backend.routers.runs import runs_router
from backend.routers.webhooks import webhooks_router

from backend.db import connection, migrations
from backend.observability import initialize as initialize_observability, shutdown as shutdown_observability
from backend.scheduling import EchoGuard, RunCoordinator
from backend.services.project_store import ProjectStore
from backend.services.webhook_events import WebhookEventRouter

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("projectflow")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown lifecycle."""
    logger.info("ProjectFlow backend starting up")
    initialize_observability(app)

    # 1. Initialize DB connection
    db = await connection.get_connection()

    # 2. Run migrations
    await migrations.run_migrations(db)

    # 3. Wire the engine: one store serves as snapshot provider, write-back and audit sink
    store = ProjectStore(db)
    echo_guard = EchoGuard(ttl_seconds=config.ECHO_GUARD_TTL_SECONDS)
    coordinator = RunCoordinator(
        store,
        store,
        store,
        policy=config.CONCURRENCY_POLICY,
        echo_guard=echo_guard,
        max_history=config.MAX_RUN_HISTORY,
    )
    app.state.store = store
    app.state.echo_guard = echo_guard
    app.state.coordinator = coordinator
    app.state.webhook_router = WebhookEventRouter(store, coordinator, echo_guard)

    yield

    logger.info("ProjectFlow backend shutting down")

    # Let pending follow-up runs finish before the connection goes away
    await coordinator.close()
    shutdown_observability(app)
    await connection.close_connection()


app = FastAPI(
    title="ProjectFlow Scheduler API",
    description="Schedule propagation engine for GitHub project boards",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        config.FRONTEND_ORIGIN,
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Register routers
app.include_router(projects_router)
app.include_router(runs_router)
app.include_router(webhooks_router)


@app.get("/api/health")
def health():
    """Health check endpoint."""
    coordinator = getattr(app.state, "coordinator", None)
    return {
        "status": "ok",
        "db": "connected" if connection.is_connected() else "disconnected",
        "coordinator": coordinator.policy if coordinator else "stopped",
    }
