from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from fastapi import FastAPI

from src.ruler.config import EngineConfig
from src.ruler.db.mongo import MongoManager
from src.ruler.services.bootstrap import Engine, build_engine


@dataclass
class AppState:
    """Typed app.state container for shared singletons."""

    config: EngineConfig
    engine: Engine
    mongo: Optional[MongoManager] = None
    scheduler_task: Optional[object] = None  # asyncio.Task, but kept loose to avoid import cycles


# PUBLIC_INTERFACE
def init_state(app: FastAPI, config: EngineConfig, engine: Optional[Engine] = None) -> None:
    """Initialize app.state with config, optional Mongo manager and the engine."""
    mongo = MongoManager(config.mongo_uri) if config.mongo_uri else None
    if engine is None:
        engine = build_engine(config, mongo)
    app.state.state = AppState(config=config, engine=engine, mongo=mongo)


# PUBLIC_INTERFACE
def get_state(app: FastAPI) -> AppState:
    """Fetch typed AppState from a FastAPI app."""
    return app.state.state  # type: ignore[attr-defined]
