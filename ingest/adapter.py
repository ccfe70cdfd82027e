from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime

import httpx

from ingest.feed_config import SourcePolicy
from ingest.fetch import fetch
from ingest.sources import SourcePlugin
from normalize.enrich import AlertEnricher
from normalize.models import Alert, RawIncident, SourceResult


logger = logging.getLogger(__name__)


def _failure(plugin: SourcePlugin, error: str) -> tuple[list[Alert], SourceResult]:
    logger.warning("source %s failed: %s", plugin.source_id, error)
    return [], SourceResult(success=False, method=plugin.method, error=error)


def normalize_records(
    plugin: SourcePlugin, records: list[dict], *, now: datetime, limit: int
) -> list[RawIncident]:
    """Normalize up to ``limit`` records, skipping the malformed ones."""
    if plugin.normalize is None:
        raise ValueError(f"source {plugin.source_id} has no normalizer")
    incidents: list[RawIncident] = []
    seen: set[str] = set()
    skipped = 0
    for record in records:
        if len(incidents) >= limit:
            break
        try:
            incident = plugin.normalize(record, now)
        except (KeyError, TypeError, ValueError, AttributeError, IndexError):
            skipped += 1
            continue
        if incident is None or incident.alert_id in seen:
            continue
        seen.add(incident.alert_id)
        incidents.append(incident)
    if skipped:
        logger.warning("source %s: skipped %d malformed records", plugin.source_id, skipped)
    return incidents


async def _fetch_records(
    client: httpx.AsyncClient,
    plugin: SourcePlugin,
    policy: SourcePolicy,
    *,
    user_agent: str,
) -> list[dict] | str:
    """Provider records, or an error code when the call failed."""
    if plugin.parse is None:
        raise ValueError(f"source {plugin.source_id} has no parser")
    params = plugin.build_params(policy) if plugin.build_params else None
    try:
        status_code, content, elapsed_ms = await asyncio.wait_for(
            fetch(
                client,
                url=plugin.url,
                user_agent=user_agent,
                params=params,
                extra_headers=plugin.headers,
                read_timeout_seconds=policy.timeout_seconds,
            ),
            timeout=policy.timeout_seconds,
        )
    except (httpx.TimeoutException, asyncio.TimeoutError):
        return "timeout"
    except httpx.RequestError as e:
        return f"request_error:{e.__class__.__name__}"

    if status_code != 200 or content is None:
        return f"http_{status_code}"

    try:
        records = plugin.parse(content)
    except (ValueError, json.JSONDecodeError):
        return "parse_error"
    logger.info(
        "source %s: %d records in %d ms", plugin.source_id, len(records), elapsed_ms
    )
    return records


async def fetch_source(
    client: httpx.AsyncClient,
    plugin: SourcePlugin,
    policy: SourcePolicy,
    enricher: AlertEnricher,
    *,
    now: datetime,
    user_agent: str = "traffic-alerts/0.1",
) -> tuple[list[Alert], SourceResult]:
    """Run one source end to end: fetch, parse, normalize and enrich.

    Upstream failures come back as ``SourceResult(success=False)`` with an
    empty alert list; nothing raised by the provider escapes.
    """
    if not plugin.enabled:
        return _failure(plugin, plugin.disabled_reason or "disabled")

    if plugin.load_alerts is not None:
        alerts = [enricher.with_routes(a) for a in plugin.load_alerts()]
        alerts = alerts[: policy.max_records]
        return alerts, SourceResult(success=True, count=len(alerts), method=plugin.method)

    if plugin.load is not None:
        records = plugin.load()
    else:
        fetched = await _fetch_records(client, plugin, policy, user_agent=user_agent)
        if isinstance(fetched, str):
            return _failure(plugin, fetched)
        records = fetched

    incidents = normalize_records(plugin, records, now=now, limit=policy.max_records)
    alerts = list(
        await asyncio.gather(*(enricher.enrich(i, now=now) for i in incidents))
    )
    return alerts, SourceResult(success=True, count=len(alerts), method=plugin.method)
