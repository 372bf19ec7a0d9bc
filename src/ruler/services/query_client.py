from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol, Tuple

import httpx

from src.ruler.errors import QueryError, QueryTimeoutError

logger = logging.getLogger(__name__)

Labels = Dict[str, str]
LabelKey = Tuple[Tuple[str, str], ...]

METRIC_NAME_LABEL = "__name__"


def label_key(labels: Labels) -> LabelKey:
    """Hashable identity of a label set (order independent)."""
    return tuple(sorted(labels.items()))


def fingerprint(labels: Labels) -> str:
    """Stable short digest of a label set, used to address alert instances."""
    raw = "\xff".join(f"{k}\xfe{v}" for k, v in sorted(labels.items()))
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()[:16]


@dataclass(frozen=True)
class Sample:
    """One element of an instant vector: a label set and its value."""

    labels: Labels = field(default_factory=dict)
    value: float = 0.0


class QueryBackend(Protocol):
    """Evaluates an expression at a timestamp. Result order is unspecified."""

    async def query(self, expr: str, at: datetime, timeout: Optional[float] = None) -> List[Sample]: ...


def _parse_value(pair: Any) -> float:
    # Prometheus encodes values as [unix_ts, "string float"]
    try:
        return float(pair[1])
    except (TypeError, ValueError, IndexError) as exc:
        raise QueryError(f"unexpected sample value {pair!r}") from exc


def parse_query_response(body: Dict[str, Any]) -> List[Sample]:
    """Convert a successful /api/v1/query payload into samples."""
    data = body.get("data") or {}
    result_type = data.get("resultType")
    result = data.get("result")

    if result_type == "vector":
        samples: List[Sample] = []
        for item in result or []:
            metric = item.get("metric") or {}
            samples.append(Sample(labels={str(k): str(v) for k, v in metric.items()}, value=_parse_value(item.get("value"))))
        return samples

    if result_type == "scalar":
        return [Sample(labels={}, value=_parse_value(result))]

    raise QueryError(f"rule result is not a vector or scalar (resultType={result_type})")


class PrometheusQueryClient:
    """
    Instant-query client for the Prometheus HTTP API.

    - POST /api/v1/query with query/time/timeout form fields
    - basic auth or bearer token when configured
    - backend and transport failures are mapped to QueryError / QueryTimeoutError
    """

    def __init__(
        self,
        base_url: str,
        *,
        username: Optional[str] = None,
        password: Optional[str] = None,
        token: Optional[str] = None,
        timeout_sec: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        headers: Dict[str, str] = {}
        auth: Optional[httpx.BasicAuth] = None
        if username and password:
            auth = httpx.BasicAuth(username, password)
        elif token:
            headers["Authorization"] = f"Bearer {token}"

        self._timeout_sec = float(timeout_sec)
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            auth=auth,
            headers=headers,
            timeout=self._timeout_sec,
            transport=transport,
        )

    # PUBLIC_INTERFACE
    async def query(self, expr: str, at: datetime, timeout: Optional[float] = None) -> List[Sample]:
        """Run an instant query; `timeout` (seconds) overrides the client default for this request."""
        budget = float(timeout) if timeout else self._timeout_sec
        form = {
            "query": expr,
            "time": f"{at.timestamp():.3f}",
            "timeout": f"{budget:g}s",
        }
        try:
            res = await self._client.post("/api/v1/query", data=form, timeout=budget)
        except httpx.TimeoutException as exc:
            raise QueryTimeoutError(f"query backend timed out: {exc}") from exc
        except httpx.HTTPError as exc:
            raise QueryError(f"query backend unreachable: {exc}") from exc

        try:
            body = res.json()
        except ValueError as exc:
            raise QueryError(f"query backend returned non-JSON response (status={res.status_code})") from exc

        if body.get("status") != "success":
            error_type = body.get("errorType") or "unknown"
            message = body.get("error") or res.text
            if error_type == "timeout" or res.status_code == 503:
                raise QueryTimeoutError(f"{error_type}: {message}")
            raise QueryError(f"{error_type}: {message}")

        warnings = body.get("warnings") or []
        if warnings:
            # Warnings don't invalidate the result.
            logger.warning("Query backend warnings for expr=%r: %s", expr, warnings)

        return parse_query_response(body)

    # PUBLIC_INTERFACE
    async def ping(self) -> bool:
        """Return True when the backend reports itself ready."""
        try:
            res = await self._client.get("/-/ready")
            return res.status_code == 200
        except httpx.HTTPError:
            logger.exception("Query backend readiness check failed")
            return False

    async def aclose(self) -> None:
        await self._client.aclose()
