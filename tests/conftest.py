from __future__ import annotations

import inspect
import textwrap
from collections.abc import AsyncIterator
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import httpx
import pytest

from src.ruler.config import EngineConfig
from src.ruler.services.engine_metrics import EngineMetrics
from src.ruler.services.materializer import Materializer, RecordedSample
from src.ruler.services.notifier import NotificationBatch
from src.ruler.services.query_client import Sample
from src.ruler.services.rule_group import EvaluationContext

T0 = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


class FakeQueryBackend:
    """
    In-memory query backend keyed by expression.

    A result may be a list of samples, an exception to raise, or a callable taking the
    query timestamp (sync or async) that returns either.
    """

    def __init__(self):
        self.results: Dict[str, Any] = {}
        self.calls: List[tuple] = []
        self.timeouts: List[Optional[float]] = []

    def set(self, expr: str, result: Any) -> None:
        self.results[expr] = result

    async def query(self, expr: str, at: datetime, timeout: Optional[float] = None) -> List[Sample]:
        self.calls.append((expr, at))
        self.timeouts.append(timeout)
        result = self.results.get(expr, [])
        if callable(result):
            result = result(at)
            if inspect.isawaitable(result):
                result = await result
        if isinstance(result, Exception):
            raise result
        return list(result)

    async def ping(self) -> bool:
        return True


class FakeSeriesWriter:
    """Keeps every written batch; `error` makes the next writes fail."""

    def __init__(self):
        self.batches: List[List[RecordedSample]] = []
        self.error: Optional[Exception] = None

    async def write(self, series: List[RecordedSample]) -> None:
        if self.error is not None:
            raise self.error
        self.batches.append(list(series))

    @property
    def samples(self) -> List[RecordedSample]:
        return [s for b in self.batches for s in b]

    def latest(self, name: str) -> List[RecordedSample]:
        for batch in reversed(self.batches):
            if batch and batch[0].name == name:
                return batch
        return []


class RecordingNotifier:
    name = "recording"

    def __init__(self):
        self.batches: List[NotificationBatch] = []

    async def notify(self, batch: NotificationBatch) -> None:
        self.batches.append(batch)

    @property
    def transitions(self):
        return [t for b in self.batches for t in b.transitions]


@pytest.fixture
def backend() -> FakeQueryBackend:
    return FakeQueryBackend()


@pytest.fixture
def writer() -> FakeSeriesWriter:
    return FakeSeriesWriter()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def ctx(backend: FakeQueryBackend, writer: FakeSeriesWriter, notifier: RecordingNotifier) -> EvaluationContext:
    return EvaluationContext(
        query=backend,
        materializer=Materializer(writer),
        metrics=EngineMetrics(),
        notifiers=[notifier],
    )


@pytest.fixture
def write_rules(tmp_path: Path) -> Callable[..., str]:
    """Write a rule file under tmp_path and return its path."""

    def _write(text: str, name: str = "rules.yml") -> str:
        path = tmp_path / name
        path.write_text(textwrap.dedent(text), encoding="utf-8")
        return str(path)

    return _write


class ManualClock:
    """Settable clock for scheduler tests."""

    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


def make_config(**overrides: Any) -> EngineConfig:
    values: Dict[str, Any] = dict(
        rule_files=(),
        eval_interval_sec=15,
        query_timeout_sec=0,
        max_concurrent_groups=4,
        eval_stagger=False,
        query_backend_url="http://prometheus.test:9090",
        query_backend_username=None,
        query_backend_password=None,
        query_backend_token=None,
        mongo_uri=None,
        record_sink="noop",
        pushgateway_url=None,
        alertmanager_url=None,
        notify_resend_delay_sec=60,
        external_url="http://ruler.test",
    )
    values.update(overrides)
    return EngineConfig(**values)


@pytest.fixture
def config_factory() -> Callable[..., EngineConfig]:
    return make_config


@pytest.fixture
def app(write_rules, backend: FakeQueryBackend, writer: FakeSeriesWriter, notifier: RecordingNotifier, clock: ManualClock):
    """FastAPI app wired to in-memory collaborators and a small rule file."""
    from src.ruler.main import create_app
    from src.ruler.services.bootstrap import build_engine

    path = write_rules(
        """
        groups:
          - name: node
            interval: 1m
            rules:
              - record: instance:up:sum
                expr: sum by (instance) (up)
              - alert: InstanceDown
                expr: up == 0
                for: 5m
                labels:
                  severity: critical
                annotations:
                  summary: "{{ $labels.instance }} is down"
        """
    )
    config = make_config(rule_files=(path,))
    engine = build_engine(config, query=backend, writer=writer, notifiers=[notifier], clock=clock)
    return create_app(config, engine)


@pytest.fixture
async def async_client(app) -> AsyncIterator[httpx.AsyncClient]:
    """
    Async HTTP client bound to the FastAPI ASGI app.

    ASGITransport does not run startup hooks; tests load rules via the scheduler.
    """
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
