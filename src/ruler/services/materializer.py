from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Protocol, Set

from prometheus_client import CollectorRegistry, pushadd_to_gateway
from prometheus_client.core import Metric
from pymongo.collection import Collection
from pymongo.errors import PyMongoError

from src.ruler.errors import DuplicateLabelSetError, WriteError
from src.ruler.services.query_client import METRIC_NAME_LABEL, LabelKey, Labels, Sample, label_key
from src.ruler.services.rules import merge_labels

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RecordedSample:
    """A materialized recording-rule output sample."""

    name: str
    labels: Labels = field(default_factory=dict)
    value: float = 0.0
    timestamp: Optional[datetime] = None


class SeriesWriter(Protocol):
    """Storage collaborator for recorded series."""

    async def write(self, series: List[RecordedSample]) -> None: ...


async def _run_in_thread(func, *args, **kwargs):
    """Run blocking client calls in a worker thread."""
    return await asyncio.to_thread(func, *args, **kwargs)


class NoOpSeriesWriter:
    """Discards recorded series. Default when no record sink is configured."""

    async def write(self, series: List[RecordedSample]) -> None:
        pass


class MongoSeriesWriter:
    """Appends recorded samples to the recorded_series collection."""

    def __init__(self, collection: Collection):
        self._collection = collection

    async def write(self, series: List[RecordedSample]) -> None:
        if not series:
            return
        docs = [
            {
                "name": s.name,
                "labels": {k: v for k, v in s.labels.items() if k != METRIC_NAME_LABEL},
                "value": s.value,
                "ts": s.timestamp,
            }
            for s in series
        ]
        try:
            await _run_in_thread(self._collection.insert_many, docs, ordered=False)
        except PyMongoError as exc:
            raise WriteError(f"mongo insert of {len(docs)} samples failed: {exc}") from exc


class _RecordedSeriesCollector:
    """One-shot collector exposing a batch of recorded samples as gauges."""

    def __init__(self, series: List[RecordedSample]):
        self._series = series

    def collect(self) -> List[Metric]:
        families: Dict[str, Metric] = {}
        for s in self._series:
            fam = families.get(s.name)
            if fam is None:
                fam = Metric(s.name, f"Recording rule output {s.name}", "gauge")
                families[s.name] = fam
            fam.add_sample(s.name, {k: v for k, v in s.labels.items() if k != METRIC_NAME_LABEL}, s.value)
        return list(families.values())


class PushgatewaySeriesWriter:
    """
    Pushes recorded samples to a Prometheus Pushgateway.

    Uses push-add (POST) so that one rule's write only replaces metrics of the same name.
    The Pushgateway assigns its own scrape timestamp.
    """

    def __init__(self, gateway_url: str, job: str = "rule_engine", timeout_sec: float = 10.0):
        self._gateway_url = gateway_url
        self._job = job
        self._timeout_sec = timeout_sec

    def _push(self, series: List[RecordedSample]) -> None:
        registry = CollectorRegistry()
        registry.register(_RecordedSeriesCollector(series))
        pushadd_to_gateway(self._gateway_url, job=self._job, registry=registry, timeout=self._timeout_sec)

    async def write(self, series: List[RecordedSample]) -> None:
        if not series:
            return
        try:
            await _run_in_thread(self._push, series)
        except OSError as exc:
            # urllib errors (URLError/HTTPError) are OSError subclasses
            raise WriteError(f"pushgateway write failed: {exc}") from exc


class Materializer:
    """
    Turns a recording rule's result vector into recorded samples and writes them.

    Query-produced labels win over the rule's static labels; recorded series must stay
    queryable with the labels the expression produced.
    """

    def __init__(self, writer: SeriesWriter):
        self.writer = writer

    @staticmethod
    def build_series(
        metric_name: str,
        samples: Iterable[Sample],
        ts: datetime,
        static_labels: Optional[Dict[str, str]] = None,
    ) -> List[RecordedSample]:
        out: List[RecordedSample] = []
        seen: Set[LabelKey] = set()
        for sample in samples:
            labels = merge_labels(sample.labels, static_labels or {})
            labels[METRIC_NAME_LABEL] = metric_name
            key = label_key(labels)
            if key in seen:
                raise DuplicateLabelSetError(
                    f"vector contains metrics with the same labelset after applying rule labels: {labels}"
                )
            seen.add(key)
            out.append(RecordedSample(name=metric_name, labels=labels, value=float(sample.value), timestamp=ts))
        return out

    # PUBLIC_INTERFACE
    async def write(
        self,
        metric_name: str,
        samples: Iterable[Sample],
        ts: datetime,
        static_labels: Optional[Dict[str, str]] = None,
    ) -> int:
        """Write one recording rule's output. Returns the number of samples written."""
        series = self.build_series(metric_name, samples, ts, static_labels)
        try:
            await self.writer.write(series)
        except WriteError:
            raise
        except Exception as exc:
            raise WriteError(f"writing {metric_name} failed: {exc}") from exc
        return len(series)

