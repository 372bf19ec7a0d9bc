from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Protocol, Sequence, Tuple

import httpx
from pymongo.collection import Collection

from src.ruler.services.alert_state import Alert, AlertState, AlertTransition

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NotificationBatch:
    """What one group tick hands to notifiers."""

    group: str
    interval: timedelta
    ts: datetime
    transitions: Sequence[AlertTransition] = field(default_factory=tuple)
    firing: Sequence[Alert] = field(default_factory=tuple)


class AlertNotifier(Protocol):
    """Notification collaborator. Raising is allowed; callers log and count failures."""

    name: str

    async def notify(self, batch: NotificationBatch) -> None: ...


def event_type(transition: AlertTransition) -> str:
    """pending | firing | resolved | cleared (pending alert that never fired)."""
    state = transition.alert.state
    if state is AlertState.inactive:
        return "resolved" if transition.previous is AlertState.firing else "cleared"
    return state.value


def _iso(dt: Optional[datetime]) -> Optional[str]:
    return dt.isoformat() if dt else None


class LogAlertNotifier:
    """Default: log every transition."""

    name = "log"

    async def notify(self, batch: NotificationBatch) -> None:
        for t in batch.transitions:
            kind = event_type(t)
            log = logger.warning if kind == "firing" else logger.info
            log(
                "Alert %s group=%s rule=%s labels=%s value=%s annotations=%s",
                kind,
                batch.group,
                t.alert.rule,
                t.alert.labels,
                t.alert.value,
                t.alert.annotations,
            )


class MongoAlertEventSink:
    """Persists one alert_events document per state transition."""

    name = "mongo"

    def __init__(self, collection: Collection):
        self._collection = collection

    @staticmethod
    def transition_doc(batch: NotificationBatch, t: AlertTransition) -> Dict[str, Any]:
        a = t.alert
        return {
            "group": batch.group,
            "rule": a.rule,
            "fingerprint": a.fingerprint,
            "labels": dict(a.labels),
            "annotations": dict(a.annotations),
            "eventType": event_type(t),
            "state": a.state.value,
            "previousState": t.previous.value,
            "value": a.value,
            "activeSince": a.active_since,
            "firedAt": a.fired_at,
            "resolvedAt": a.resolved_at,
            "createdAt": batch.ts,
        }

    async def notify(self, batch: NotificationBatch) -> None:
        if not batch.transitions:
            return
        docs = [self.transition_doc(batch, t) for t in batch.transitions]
        await asyncio.to_thread(self._collection.insert_many, docs, ordered=False)


class AlertmanagerNotifier:
    """
    Sends firing and resolved alerts to Alertmanager's v2 API.

    Firing alerts are re-sent every `resend_delay` with an endsAt far enough in the future
    that Alertmanager does not resolve them between sends. Pending alerts are never sent.
    """

    name = "alertmanager"

    def __init__(
        self,
        base_url: str,
        *,
        resend_delay: timedelta = timedelta(minutes=1),
        external_url: str = "",
        timeout_sec: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._resend_delay = resend_delay
        self._external_url = external_url.rstrip("/")
        self._client = httpx.AsyncClient(base_url=base_url.rstrip("/"), timeout=timeout_sec, transport=transport)
        self._last_sent: Dict[Tuple[str, str], datetime] = {}

    def _payload(self, alert: Alert, ends_at: datetime) -> Dict[str, Any]:
        return {
            "labels": dict(alert.labels),
            "annotations": dict(alert.annotations),
            "startsAt": _iso(alert.active_since),
            "endsAt": _iso(ends_at),
            "generatorURL": f"{self._external_url}/api/v1/alerts",
        }

    async def notify(self, batch: NotificationBatch) -> None:
        now = batch.ts
        valid_for = 4 * max(self._resend_delay, batch.interval)
        payload: List[Dict[str, Any]] = []
        sent_keys: List[Tuple[str, str]] = []
        resolved_keys: List[Tuple[str, str]] = []

        for t in batch.transitions:
            if t.alert.state is AlertState.inactive and t.previous is AlertState.firing:
                payload.append(self._payload(t.alert, t.alert.resolved_at or now))
                resolved_keys.append((batch.group, t.alert.fingerprint))

        for a in batch.firing:
            key = (batch.group, a.fingerprint)
            last = self._last_sent.get(key)
            if last is not None and now - last < self._resend_delay:
                continue
            payload.append(self._payload(a, now + valid_for))
            sent_keys.append(key)

        if not payload:
            return

        res = await self._client.post("/api/v2/alerts", json=payload)
        res.raise_for_status()

        for key in sent_keys:
            self._last_sent[key] = now
        for key in resolved_keys:
            self._last_sent.pop(key, None)

    async def aclose(self) -> None:
        await self._client.aclose()
