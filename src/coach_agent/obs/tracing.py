"""Turn tracing, latency summaries and fire-and-forget side effects."""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections import Counter, deque
from collections.abc import Awaitable
from dataclasses import dataclass, field
from datetime import datetime, timezone

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class TurnRecord:
    trace_id: str
    timestamp_utc: str
    question: str
    route: str
    rule: str
    followup: str
    reco_slug: str | None
    rag_count: int
    latency_ms: float
    errors: list[str] = field(default_factory=list)


class TraceStore:
    """In-memory trace storage for API-level observability."""

    def __init__(self, max_records: int = 1000) -> None:
        self._records: dict[str, TurnRecord] = {}
        self._max_records = max_records

    def __len__(self) -> int:
        return len(self._records)

    def create_record(
        self,
        *,
        question: str,
        route: str,
        rule: str,
        followup: str,
        reco_slug: str | None,
        rag_count: int,
        latency_ms: float,
        errors: list[str] | None = None,
    ) -> TurnRecord:
        record = TurnRecord(
            trace_id=str(uuid.uuid4()),
            timestamp_utc=datetime.now(timezone.utc).isoformat(),
            question=question,
            route=route,
            rule=rule,
            followup=followup,
            reco_slug=reco_slug,
            rag_count=rag_count,
            latency_ms=latency_ms,
            errors=list(errors or []),
        )
        self._records[record.trace_id] = record
        while len(self._records) > self._max_records:
            self._records.pop(next(iter(self._records)))
        return record

    def get(self, trace_id: str) -> TurnRecord:
        record = self._records.get(trace_id)
        if record is None:
            raise KeyError(f"Trace not found: {trace_id}")
        return record

    def list_recent(self, limit: int = 20) -> list[TurnRecord]:
        return list(self._records.values())[-limit:]

    def summary(self) -> dict[str, object]:
        """Aggregate request count, latency and route mix for dashboard display."""
        records = list(self._records.values())
        total = len(records)
        if total == 0:
            return {
                "total_requests": 0,
                "avg_latency_ms": 0.0,
                "p95_latency_ms": 0.0,
                "route_counts": {},
                "reco_count": 0,
            }

        latencies = sorted(record.latency_ms for record in records)
        p95_index = max(0, int((len(latencies) * 0.95) - 1))
        return {
            "total_requests": total,
            "avg_latency_ms": sum(latencies) / total,
            "p95_latency_ms": latencies[p95_index],
            "route_counts": dict(Counter(record.route for record in records)),
            "reco_count": sum(1 for record in records if record.reco_slug),
        }


class Timer:
    """Simple context timer used by planner."""

    def __init__(self) -> None:
        self._start = 0.0
        self.elapsed_ms = 0.0

    def __enter__(self) -> "Timer":
        self._start = time.perf_counter()
        return self

    def __exit__(self, exc_type: object, exc: object, tb: object) -> None:
        self.elapsed_ms = (time.perf_counter() - self._start) * 1000.0


class BackgroundEmitter:
    """Runs side-effect coroutines without blocking the caller.

    Failures are logged and kept in a bounded sink; they never propagate.
    """

    def __init__(self, max_errors: int = 100) -> None:
        self._tasks: set[asyncio.Task[None]] = set()
        self.errors: deque[str] = deque(maxlen=max_errors)

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def emit(self, label: str, coro: Awaitable[object]) -> None:
        task = asyncio.get_running_loop().create_task(self._run(label, coro))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run(self, label: str, coro: Awaitable[object]) -> None:
        try:
            await coro
        except Exception as exc:
            logger.warning("%s failed: %s", label, exc)
            self.errors.append(f"{label}: {exc}")

    async def drain(self) -> None:
        """Wait for every side effect scheduled so far."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks))
