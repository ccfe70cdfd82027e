from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum

import httpx

from cluster.clusterer import AlertHistory, merge_alerts
from health.health import record_source_result
from ingest.adapter import fetch_source
from ingest.feed_config import SourcePolicy
from ingest.scheduler import PollingScheduler
from ingest.sources import SourcePlugin
from normalize.enrich import AlertEnricher
from normalize.models import Alert, CyclePayload, SourceResult
from store.db import Database


logger = logging.getLogger(__name__)


class CycleState(str, Enum):
    IDLE = "idle"
    POLLING = "polling"
    ENRICHING = "enriching"
    DEDUPLICATING = "deduplicating"
    PUBLISHED = "published"


@dataclass
class AggregatorState:
    """Everything the aggregator carries from one cycle to the next."""

    cycle: CycleState = CycleState.IDLE
    transitions: list[CycleState] = field(default_factory=list)
    last_payload: CyclePayload | None = None
    # source id -> (fetched at, alerts) of the last successful call
    last_success: dict[str, tuple[datetime, list[Alert]]] = field(default_factory=dict)
    cycles: int = 0


class AlertAggregator:
    """Runs polling cycles: gate, fetch, enrich, merge, publish.

    A cycle never raises. Sources the scheduler refuses reuse their last
    successful alerts while those are younger than ``cache_max_age``;
    sources that fail or miss the cycle deadline contribute nothing.
    """

    def __init__(
        self,
        *,
        client: httpx.AsyncClient,
        plugins: list[SourcePlugin],
        policies: dict[str, SourcePolicy],
        scheduler: PollingScheduler,
        enricher: AlertEnricher,
        db: Database | None = None,
        history: AlertHistory | None = None,
        workers: int = 4,
        cycle_timeout_seconds: float = 40.0,
        merge_distance_m: float = 150.0,
        cache_max_age: timedelta = timedelta(minutes=15),
        user_agent: str = "traffic-alerts/0.1",
    ) -> None:
        self.client = client
        self.plugins = plugins
        self.policies = policies
        self.scheduler = scheduler
        self.enricher = enricher
        self.db = db
        self.history = history if history is not None else AlertHistory()
        self.workers = max(1, workers)
        self.cycle_timeout_seconds = cycle_timeout_seconds
        self.merge_distance_m = merge_distance_m
        self.cache_max_age = cache_max_age
        self.user_agent = user_agent
        self.state = AggregatorState()
        self._refresh_lock = asyncio.Lock()

    @property
    def last_payload(self) -> CyclePayload | None:
        return self.state.last_payload

    def _enter(self, cycle: CycleState) -> None:
        self.state.cycle = cycle
        self.state.transitions.append(cycle)

    async def refresh(self, now: datetime | None = None) -> CyclePayload:
        async with self._refresh_lock:
            return await self.run_cycle(now)

    def _cached(self, source_id: str, now: datetime) -> list[Alert] | None:
        entry = self.state.last_success.get(source_id)
        if entry is None:
            return None
        fetched_at, alerts = entry
        if now - fetched_at > self.cache_max_age:
            return None
        return alerts

    async def _run_source(
        self, sem: asyncio.Semaphore, plugin: SourcePlugin, now: datetime
    ) -> tuple[list[Alert], SourceResult]:
        async with sem:
            return await fetch_source(
                self.client,
                plugin,
                self.policies[plugin.source_id],
                self.enricher,
                now=now,
                user_agent=self.user_agent,
            )

    async def _poll(
        self, now: datetime
    ) -> tuple[dict[str, list[Alert]], dict[str, SourceResult], set[str]]:
        alerts: dict[str, list[Alert]] = {}
        results: dict[str, SourceResult] = {}
        attempted: set[str] = set()
        tasks: dict[asyncio.Task, SourcePlugin] = {}
        sem = asyncio.Semaphore(self.workers)

        for plugin in self.plugins:
            source_id = plugin.source_id
            if not plugin.enabled:
                results[source_id] = SourceResult(
                    success=False, method=plugin.method, error=plugin.disabled_reason
                )
                continue
            if source_id not in self.policies:
                results[source_id] = SourceResult(
                    success=False, method="scheduler", error="no polling policy"
                )
                continue

            allowed, reason = self.scheduler.try_acquire(source_id, now)
            if not allowed:
                cached = self._cached(source_id, now)
                if cached is not None:
                    alerts[source_id] = cached
                    results[source_id] = SourceResult(
                        success=False, count=len(cached), method="cache", error=reason
                    )
                else:
                    results[source_id] = SourceResult(
                        success=False, method="scheduler", error=reason
                    )
                continue

            attempted.add(source_id)
            tasks[asyncio.create_task(self._run_source(sem, plugin, now))] = plugin

        if tasks:
            done, pending = await asyncio.wait(
                tasks.keys(), timeout=self.cycle_timeout_seconds
            )
            for task in pending:
                task.cancel()
            for task in pending:
                plugin = tasks[task]
                logger.warning("source %s missed the cycle deadline", plugin.source_id)
                results[plugin.source_id] = SourceResult(
                    success=False, method=plugin.method, error="timeout"
                )
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)

            for task in done:
                plugin = tasks[task]
                error = task.exception()
                if error is not None:
                    logger.warning(
                        "source %s raised %s",
                        plugin.source_id,
                        error.__class__.__name__,
                        exc_info=error,
                    )
                    results[plugin.source_id] = SourceResult(
                        success=False,
                        method=plugin.method,
                        error=f"adapter_error:{error.__class__.__name__}",
                    )
                    continue
                source_alerts, result = task.result()
                results[plugin.source_id] = result
                if result.success:
                    alerts[plugin.source_id] = source_alerts
                    self.state.last_success[plugin.source_id] = (now, source_alerts)

        return alerts, results, attempted

    async def run_cycle(self, now: datetime | None = None) -> CyclePayload:
        now = now or datetime.now(tz=UTC)
        self.state.transitions = []
        self.state.cycles += 1
        logger.info("cycle %d started", self.state.cycles)

        self._enter(CycleState.POLLING)
        by_source, results, attempted = await self._poll(now)

        # Sources enrich their own alerts; here the union is only made unique.
        self._enter(CycleState.ENRICHING)
        unioned: dict[str, Alert] = {}
        for source_id in sorted(by_source):
            for alert in by_source[source_id]:
                unioned.setdefault(alert.id, alert)

        self._enter(CycleState.DEDUPLICATING)
        merged = merge_alerts(
            list(unioned.values()),
            distance_m=self.merge_distance_m,
            history=self.history,
        )
        self.history.remember(merged)

        self._enter(CycleState.PUBLISHED)
        payload = CyclePayload(alerts=tuple(merged), sources=results, last_updated=now)
        self.state.last_payload = payload
        if self.db is not None:
            for source_id in sorted(attempted):
                record_source_result(
                    self.db, source_id=source_id, result=results[source_id], at=now
                )
        logger.info(
            "cycle %d published %d alerts (%d before merge)",
            self.state.cycles,
            len(merged),
            len(unioned),
        )

        self._enter(CycleState.IDLE)
        return payload
