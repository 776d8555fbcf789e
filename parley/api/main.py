"""
parley.api.main — FastAPI application entry point
===================================================

Run with::

    uvicorn parley.api.main:app --reload --port 8000

or ``python -m parley``.
"""

from __future__ import annotations

import asyncio
import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

load_dotenv()

from parley.api.deps import get_config, get_engine, get_hub  # noqa: E402
from parley.api.rate_limit import configure_rate_limiter  # noqa: E402
from parley.api.routes.communities import router as communities_router  # noqa: E402
from parley.api.routes.members import router as members_router  # noqa: E402
from parley.api.routes.messages import router as messages_router  # noqa: E402
from parley.api.routes.moderation import router as moderation_router  # noqa: E402
from parley.api.routes.realtime import router as realtime_router  # noqa: E402
from parley.database.engine import run_db  # noqa: E402
from parley.database.seed import seed_communities  # noqa: E402
from parley.errors import ParleyError, RateLimited  # noqa: E402
from parley.services.broadcast import EventPublisher  # noqa: E402
from parley.services.realtime import ConnectionHub  # noqa: E402
from parley.services.reconciliation_service import reconcile_expired_moderation  # noqa: E402

logger = logging.getLogger(__name__)


def _cors_origins() -> list[str]:
    """Resolve allowed CORS origins from env with safe defaults.

    Priority:
      1) CORS_ALLOW_ORIGINS (comma-separated)
      2) FRONTEND_URL (single origin)
    """
    raw = os.getenv("CORS_ALLOW_ORIGINS", "").strip()
    if raw:
        return [origin.strip().rstrip("/") for origin in raw.split(",") if origin.strip()]

    frontend_url = os.getenv("FRONTEND_URL", "").strip()
    if frontend_url:
        return [frontend_url.rstrip("/")]

    return []


async def _reconcile_loop(engine, events: EventPublisher, interval: int) -> None:
    """Lift expired bans and mutes every *interval* seconds."""
    while True:
        await asyncio.sleep(interval)
        try:
            await run_db(reconcile_expired_moderation, engine, events=events)
        except Exception:
            logger.exception("Periodic moderation reconciliation failed")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup/shutdown lifecycle — warm the DB engine, start the hub."""
    engine = get_engine()
    cfg = get_config()
    configure_rate_limiter(engine=engine)

    if cfg.seed_communities:
        await run_db(seed_communities, engine, cfg.seed_communities, cfg.seed_creator_id)

    hub = get_hub()
    hub.bind_loop(asyncio.get_running_loop())
    hub.start_heartbeat(cfg.ws_heartbeat_seconds)

    reconcile_task = None
    if cfg.reconcile_interval_seconds > 0:
        reconcile_task = asyncio.create_task(
            _reconcile_loop(engine, EventPublisher(hub), cfg.reconcile_interval_seconds)
        )

    logger.info("%s API started — engine ready (%s)", cfg.service_name, engine.url.database)
    yield

    if reconcile_task is not None:
        reconcile_task.cancel()
        try:
            await reconcile_task
        except asyncio.CancelledError:
            pass
    await hub.stop_heartbeat()
    logger.info("%s API shutting down", cfg.service_name)


app = FastAPI(
    title="Parley API",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(ParleyError)
async def parley_error_handler(request: Request, exc: ParleyError) -> JSONResponse:
    headers = None
    if isinstance(exc, RateLimited):
        headers = {"Retry-After": str(exc.retry_after_seconds)}
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    else:
        logger.debug("%s %s rejected: %s", request.method, request.url.path, exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.to_detail()},
        headers=headers,
    )


# Mount routers
app.include_router(communities_router, prefix="/api")
app.include_router(members_router, prefix="/api")
app.include_router(messages_router, prefix="/api")
app.include_router(moderation_router, prefix="/api")
app.include_router(realtime_router, prefix="/api")


@app.get("/api/health")
def health():
    return {"status": "ok"}


@app.get("/api/health/realtime")
def realtime_health(hub: ConnectionHub = Depends(get_hub)):
    """Connection counts for the WebSocket hub."""
    return hub.get_stats()
