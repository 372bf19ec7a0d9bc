from __future__ import annotations

import asyncio
import logging
import os
from typing import List, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from src.ruler.config import EngineConfig, load_config
from src.ruler.routers import alerts, health, metrics, rules
from src.ruler.services.bootstrap import Engine, close_engine
from src.ruler.state import get_state, init_state

openapi_tags = [
    {"name": "Health", "description": "Service health and query backend connectivity."},
    {"name": "Rules", "description": "Loaded rule groups, per-rule health and hot reload."},
    {"name": "Alerts", "description": "Current alert instances and persisted alert transitions."},
    {"name": "Metrics", "description": "Engine self-metrics in Prometheus exposition format."},
]

logger = logging.getLogger(__name__)


def _env_cors_origins() -> List[str]:
    # Comma-separated list; empty disables CORS.
    raw = os.getenv("CORS_ALLOW_ORIGINS") or ""
    parts = [p.strip() for p in raw.split(",") if p.strip()]
    # De-dupe while preserving order
    seen = set()
    return [o for o in parts if not (o in seen or seen.add(o))]


# PUBLIC_INTERFACE
def create_app(config: Optional[EngineConfig] = None, engine: Optional[Engine] = None) -> FastAPI:
    """Build the API app. Config defaults to env; the engine defaults to one wired from config."""
    app = FastAPI(
        title="Rule Evaluation Engine API",
        description=(
            "Evaluates Prometheus-style alerting and recording rules against a query backend, "
            "tracks alert state across ticks, writes recorded series and hands alert transitions "
            "to notifiers. Rule files are hot-reloadable."
        ),
        version="0.1.0",
        openapi_tags=openapi_tags,
    )
    init_state(app, config or load_config(), engine)

    @app.on_event("startup")
    async def _on_startup() -> None:
        """Startup hook: connect to Mongo (if configured), load rules and start the scheduler."""
        state = get_state(app)

        if state.mongo is not None:
            # Connect + verify early so misconfigured Mongo doesn't silently break writes.
            state.mongo.connect()
            if not state.mongo.ping():
                raise RuntimeError("Mongo connectivity check failed during startup. Verify BACKEND_MONGO_URI.")
            state.mongo.init_indexes()

        # Invalid rule files are fatal at startup.
        await state.engine.scheduler.reload()

        app.state._scheduler_shutdown = asyncio.Event()
        state.scheduler_task = asyncio.create_task(state.engine.scheduler.run(app.state._scheduler_shutdown))

    @app.on_event("shutdown")
    async def _on_shutdown() -> None:
        """Shutdown hook: stop the scheduler, close clients and Mongo connections."""
        state = get_state(app)

        shutdown = getattr(app.state, "_scheduler_shutdown", None)
        if shutdown is not None:
            shutdown.set()
        task = state.scheduler_task
        if task is not None:
            try:
                await asyncio.wait_for(task, timeout=5.0)
            except Exception:
                logger.exception("Error stopping rule scheduler task")

        await close_engine(state.engine)
        if state.mongo is not None:
            state.mongo.close()

    origins = _env_cors_origins()
    if origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    app.include_router(health.router)
    app.include_router(rules.router)
    app.include_router(alerts.router)
    app.include_router(metrics.router)
    return app


app = create_app()
