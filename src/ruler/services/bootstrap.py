from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, List, Optional

from src.ruler.config import EngineConfig
from src.ruler.db.mongo import MongoManager
from src.ruler.errors import ConfigError
from src.ruler.services.engine_metrics import EngineMetrics
from src.ruler.services.materializer import (
    Materializer,
    MongoSeriesWriter,
    NoOpSeriesWriter,
    PushgatewaySeriesWriter,
    SeriesWriter,
)
from src.ruler.services.notifier import AlertmanagerNotifier, AlertNotifier, LogAlertNotifier, MongoAlertEventSink
from src.ruler.services.query_client import PrometheusQueryClient, QueryBackend
from src.ruler.services.rule_group import EvaluationContext
from src.ruler.services.scheduler import Scheduler

logger = logging.getLogger(__name__)


@dataclass
class Engine:
    """A scheduler plus the clients it owns (closed on shutdown)."""

    scheduler: Scheduler
    query: QueryBackend
    closeables: List[Any] = field(default_factory=list)


def build_series_writer(config: EngineConfig, mongo: Optional[MongoManager]) -> SeriesWriter:
    if config.record_sink == "mongo":
        if mongo is None:
            raise ConfigError("RECORD_SINK=mongo requires BACKEND_MONGO_URI")
        return MongoSeriesWriter(mongo.collections().recorded_series)
    if config.record_sink == "pushgateway":
        assert config.pushgateway_url
        return PushgatewaySeriesWriter(config.pushgateway_url)
    return NoOpSeriesWriter()


def build_notifiers(config: EngineConfig, mongo: Optional[MongoManager]) -> List[AlertNotifier]:
    notifiers: List[AlertNotifier] = [LogAlertNotifier()]
    if mongo is not None:
        notifiers.append(MongoAlertEventSink(mongo.collections().alert_events))
    if config.alertmanager_url:
        notifiers.append(
            AlertmanagerNotifier(
                config.alertmanager_url,
                resend_delay=timedelta(seconds=config.notify_resend_delay_sec),
                external_url=config.external_url,
            )
        )
    return notifiers


# PUBLIC_INTERFACE
def build_engine(
    config: EngineConfig,
    mongo: Optional[MongoManager] = None,
    *,
    query: Optional[QueryBackend] = None,
    writer: Optional[SeriesWriter] = None,
    notifiers: Optional[List[AlertNotifier]] = None,
    **scheduler_kwargs: Any,
) -> Engine:
    """
    Wire query client, series writer, notifiers and scheduler from config.

    Collaborators passed explicitly replace the configured ones (tests, embedding).
    Rules are not loaded here; call `scheduler.reload()` afterwards.
    """
    closeables: List[Any] = []
    if query is None:
        client = PrometheusQueryClient(
            config.query_backend_url,
            username=config.query_backend_username,
            password=config.query_backend_password,
            token=config.query_backend_token,
            timeout_sec=config.query_timeout_sec or config.eval_interval_sec,
        )
        closeables.append(client)
        query = client
    if writer is None:
        writer = build_series_writer(config, mongo)
    if notifiers is None:
        notifiers = build_notifiers(config, mongo)
        closeables.extend(n for n in notifiers if hasattr(n, "aclose"))

    ctx = EvaluationContext(
        query=query,
        materializer=Materializer(writer),
        metrics=EngineMetrics(),
        notifiers=list(notifiers),
        query_timeout=timedelta(seconds=config.query_timeout_sec) if config.query_timeout_sec else None,
    )
    scheduler = Scheduler(
        ctx,
        rule_files=config.rule_files,
        default_interval=timedelta(seconds=config.eval_interval_sec),
        max_concurrency=config.max_concurrent_groups,
        stagger=config.eval_stagger,
        **scheduler_kwargs,
    )
    logger.info(
        "Engine wired: writer=%s notifiers=%s",
        type(writer).__name__,
        ",".join(n.name for n in notifiers),
    )
    return Engine(scheduler=scheduler, query=query, closeables=closeables)


# PUBLIC_INTERFACE
async def close_engine(engine: Engine) -> None:
    """Stop in-flight ticks and close owned HTTP clients."""
    await engine.scheduler.close()
    for c in engine.closeables:
        try:
            await c.aclose()
        except Exception:
            logger.exception("Error closing %s", type(c).__name__)
