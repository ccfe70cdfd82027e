import asyncio
import json
from datetime import UTC, datetime, timedelta
from pathlib import Path

import httpx
import pytest

from app.settings import Settings
from cluster.clusterer import AlertHistory
from geo.gazetteer import load_gazetteer
from geo.location import LocationResolver, ReverseGeocoder, default_strategies
from gtfs.loader import load_gtfs
from gtfs.matcher import RouteMatcher
from gtfs.patterns import load_route_patterns
from health.health import source_health
from ingest.adapter import normalize_records
from ingest.aggregator import AlertAggregator, CycleState
from ingest.feed_config import load_source_policies
from ingest.fetch import fetch
from ingest.scheduler import PollingScheduler
from ingest.sources import SourcePlugin, local_sources, provider_sources
from ingest.streetmanager import RoadworksStore
from normalize.enrich import AlertEnricher
from normalize.models import AlertType, RawIncident
from store.db import Database, open_database
from store.manual_incidents import ManualIncidentStore


ROOT = Path(__file__).resolve().parents[1]
FIXTURES = Path(__file__).resolve().parent / "fixtures"
NOON = datetime(2026, 1, 15, 12, 0, tzinfo=UTC)

SOURCES_YAML = """
coverage:
  bbox: {south: 54.80, west: -1.80, north: 55.10, east: -1.40}
defaults:
  window_start: "00:00"
  window_end: "00:00"
  timeout_seconds: 5
sources:
  - {id: tomtom, daily_quota: 1, min_interval_seconds: 30}
  - {id: here, daily_quota: 100, min_interval_seconds: 30}
  - {id: streetmanager, daily_quota: 100}
  - {id: manual_incidents, daily_quota: 100}
"""

TOMTOM_BODY = {
    "incidents": [
        {
            "type": "Feature",
            "geometry": {"type": "Point", "coordinates": [-1.6172, 54.9690]},
            "properties": {
                "id": "TT-1",
                "iconCategory": 1,
                "magnitudeOfDelay": 3,
                "from": "Neville Street",
                "to": "Westgate Road",
                "roadNumbers": ["A695"],
                "startTime": "2026-01-15T11:30:00Z",
            },
        }
    ]
}

HERE_BODY = {
    "results": [
        {
            "location": {
                "description": {"value": "Neville Street"},
                "shape": {"links": [{"points": [{"lat": 54.9693, "lng": -1.6170}]}]},
            },
            "incidentDetails": {
                "id": "H-1",
                "type": "accident",
                "criticality": "major",
                "summary": {"value": "Accident on Neville Street"},
                "startTime": "2026-01-15T11:00:00Z",
            },
        }
    ]
}


def _provider_handler(status: dict[str, int]):
    """Serve canned bodies; ``status`` maps host -> HTTP status for this call."""

    def handler(request: httpx.Request) -> httpx.Response:
        host = request.url.host
        code = status.get(host, 200)
        if code != 200:
            return httpx.Response(code, text="upstream error")
        if host == "api.tomtom.com":
            return httpx.Response(200, json=TOMTOM_BODY)
        if host == "data.traffic.hereapi.com":
            return httpx.Response(200, json=HERE_BODY)
        return httpx.Response(404)

    return handler


class _Harness:
    def __init__(
        self,
        tmp_path: Path,
        handler,
        *,
        cycle_timeout_seconds: float = 5.0,
        geocode_timeout_seconds: float | None = None,
    ):
        sources = tmp_path / "sources.yaml"
        sources.write_text(SOURCES_YAML, encoding="utf-8")
        policies = load_source_policies(sources)

        self.db: Database = open_database(tmp_path / "aggregator.db")
        self.manual = ManualIncidentStore(self.db)
        self.roadworks = RoadworksStore(self.db)
        self.client = httpx.AsyncClient(transport=httpx.MockTransport(handler))

        gazetteer = load_gazetteer(ROOT / "geo" / "data" / "regions.yaml")
        matcher = RouteMatcher(
            load_gtfs(FIXTURES / "gtfs"),
            load_route_patterns(ROOT / "gtfs" / "data" / "route_patterns.yaml"),
        )
        geocoder = None
        if geocode_timeout_seconds is not None:
            geocoder = ReverseGeocoder(
                self.client,
                url="https://nominatim.test/reverse",
                user_agent="test-agent",
                timeout_seconds=geocode_timeout_seconds,
            )
        resolver = LocationResolver(
            default_strategies(gazetteer, geocoder),
            service_region=gazetteer.service_region,
        )
        settings = Settings(TOMTOM_API_KEY="tt-key", HERE_API_KEY="here-key")
        self.scheduler = PollingScheduler(policies, timezone="Europe/London", db=self.db)
        self.aggregator = AlertAggregator(
            client=self.client,
            plugins=provider_sources(settings, policies)
            + local_sources(
                load_roadworks=self.roadworks.list_recent,
                load_manual=self.manual.list_active,
            ),
            policies=policies,
            scheduler=self.scheduler,
            enricher=AlertEnricher(resolver, matcher),
            db=self.db,
            history=AlertHistory(),
            cycle_timeout_seconds=cycle_timeout_seconds,
        )

    def close(self) -> None:
        asyncio.run(self.client.aclose())
        with self.db.lock:
            self.db.conn.close()


def test_two_providers_reporting_one_incident_publish_one_alert(tmp_path) -> None:
    h = _Harness(tmp_path, _provider_handler({}))
    try:
        payload = asyncio.run(h.aggregator.run_cycle(NOON)).to_dict()
    finally:
        h.close()

    assert payload["success"] is True
    assert payload["metadata"]["totalAlerts"] == 1
    alert = payload["alerts"][0]
    assert alert["sources"] == ["here", "tomtom"]
    assert alert["affectsRoutes"] == ["21", "Q3"]
    assert alert["routeMatchMethod"] == "coordinate_grid"
    assert alert["severity"] == "High"
    assert alert["lastUpdated"] == "2026-01-15T12:00:00Z"

    sources = payload["metadata"]["sources"]
    assert sources["tomtom"] == {
        "success": True,
        "count": 1,
        "method": "tomtom_incident_details_v5",
    }
    assert sources["here"]["count"] == 1
    assert sources["mapquest"] == {
        "success": False,
        "count": 0,
        "method": "mapquest_traffic_v2",
        "error": "api_key_missing",
    }
    assert sources["national_highways"]["error"] == "api_key_missing"
    assert sources["streetmanager"] == {
        "success": True,
        "count": 0,
        "method": "streetmanager_webhook",
    }
    assert sources["manual_incidents"]["success"] is True


def test_cycle_walks_every_state(tmp_path) -> None:
    h = _Harness(tmp_path, _provider_handler({}))
    try:
        asyncio.run(h.aggregator.run_cycle(NOON))
        assert h.aggregator.state.transitions == [
            CycleState.POLLING,
            CycleState.ENRICHING,
            CycleState.DEDUPLICATING,
            CycleState.PUBLISHED,
            CycleState.IDLE,
        ]
        assert h.aggregator.state.cycle is CycleState.IDLE
        assert h.aggregator.last_payload is not None
    finally:
        h.close()


def test_failing_source_does_not_block_the_cycle(tmp_path) -> None:
    h = _Harness(tmp_path, _provider_handler({"data.traffic.hereapi.com": 500}))
    try:
        payload = asyncio.run(h.aggregator.run_cycle(NOON))
        health = {row["source_id"]: row for row in source_health(h.db)}
    finally:
        h.close()

    assert [a.id for a in payload.alerts] == ["tomtom_TT-1"]
    assert payload.sources["here"].success is False
    assert payload.sources["here"].error == "http_500"
    assert health["here"]["degraded"] is True
    assert health["here"]["consecutive_failures"] == 1
    assert health["tomtom"]["degraded"] is False
    assert health["tomtom"]["last_count"] == 1
    assert "mapquest" not in health


def test_all_sources_failing_publishes_an_empty_payload(tmp_path) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    h = _Harness(tmp_path, handler)
    try:
        payload = asyncio.run(h.aggregator.run_cycle(NOON)).to_dict()
    finally:
        h.close()

    assert payload["success"] is True
    assert payload["alerts"] == []
    assert payload["metadata"]["sources"]["tomtom"]["error"] == "request_error:ConnectError"
    assert payload["metadata"]["sources"]["here"]["error"] == "request_error:ConnectError"


def test_slow_source_misses_the_cycle_deadline(tmp_path) -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "data.traffic.hereapi.com":
            await asyncio.sleep(5)
        return _provider_handler({})(request)

    h = _Harness(tmp_path, handler, cycle_timeout_seconds=0.2)
    try:
        payload = asyncio.run(h.aggregator.run_cycle(NOON))
    finally:
        h.close()

    assert [a.id for a in payload.alerts] == ["tomtom_TT-1"]
    assert payload.sources["here"].error == "timeout"
    assert payload.sources["here"].method == "here_incidents_v7"


def test_adapter_exception_is_contained(tmp_path) -> None:
    h = _Harness(tmp_path, _provider_handler({}))

    def broken() -> list[dict]:
        raise RuntimeError("store unavailable")

    h.aggregator.plugins = provider_sources(
        Settings(TOMTOM_API_KEY="tt-key"), h.aggregator.policies
    ) + local_sources(load_roadworks=broken, load_manual=h.manual.list_active)
    try:
        payload = asyncio.run(h.aggregator.run_cycle(NOON))
    finally:
        h.close()

    assert payload.sources["streetmanager"].error == "adapter_error:RuntimeError"
    assert [a.id for a in payload.alerts] == ["tomtom_TT-1"]


def test_refused_source_reuses_cached_alerts_and_ids_stay_stable(tmp_path) -> None:
    status = {"data.traffic.hereapi.com": 500}
    h = _Harness(tmp_path, _provider_handler(status))

    async def run() -> list:
        first = await h.aggregator.run_cycle(NOON)
        status.clear()
        second = await h.aggregator.run_cycle(NOON + timedelta(minutes=1))
        third = await h.aggregator.run_cycle(NOON + timedelta(minutes=20))
        return [first, second, third]

    try:
        first, second, third = asyncio.run(run())
    finally:
        h.close()

    assert [a.id for a in first.alerts] == ["tomtom_TT-1"]

    # tomtom's quota is spent: its alert comes from the cache and merges with here.
    tomtom = second.sources["tomtom"]
    assert (tomtom.success, tomtom.method, tomtom.count) == (False, "cache", 1)
    assert tomtom.error == "daily quota exhausted (1/1)"
    assert len(second.alerts) == 1
    assert second.alerts[0].id == "tomtom_TT-1"
    assert second.alerts[0].sources == ("here", "tomtom")

    # Past the cache age only the refusal is reported.
    assert third.sources["tomtom"].method == "scheduler"
    assert [a.source for a in third.alerts] == ["here"]
    assert third.alerts[0].id == "tomtom_TT-1"


def test_manual_incident_anchors_merged_alert(tmp_path) -> None:
    h = _Harness(tmp_path, _provider_handler({"data.traffic.hereapi.com": 500}))
    try:
        incident = h.manual.create(
            type="incident",
            location="Central Station, Neville Street",
            created_by="controller",
            title="Vehicle fire outside Central Station",
            lat=54.9691,
            lng=-1.6171,
            severity="High",
        )
        payload = asyncio.run(h.aggregator.run_cycle(NOON))
    finally:
        h.close()

    assert len(payload.alerts) == 1
    alert = payload.alerts[0]
    assert alert.id == incident["alertId"]
    assert alert.title == "Vehicle fire outside Central Station"
    assert alert.sources == ("manual_incidents", "tomtom")
    assert alert.affects_routes == ("21", "Q3")


def test_roadworks_notifications_are_published(tmp_path) -> None:
    h = _Harness(
        tmp_path,
        _provider_handler({"api.tomtom.com": 503, "data.traffic.hereapi.com": 503}),
    )
    try:
        h.roadworks.add(
            object_type="PERMIT",
            event_type="PERMIT_GRANTED",
            data={
                "object_type": "PERMIT",
                "event_type": "PERMIT_GRANTED",
                "object_reference": "GC-0042",
                "object_data": {
                    "street_name": "Durham Road",
                    "area_name": "Gateshead",
                    "traffic_management_type": "multi_way_signals",
                },
            },
            received_at=NOON - timedelta(hours=1),
        )
        payload = asyncio.run(h.aggregator.run_cycle(NOON))
    finally:
        h.close()

    (alert,) = payload.alerts
    assert alert.id == "streetmanager_permit_GC-0042"
    assert alert.location == "Durham Road, Gateshead"
    assert alert.coordinates is None
    assert alert.route_match_method.value == "text_pattern"
    assert "21" in alert.affects_routes
    assert payload.sources["streetmanager"].count == 1
    assert json.loads(json.dumps(payload.to_dict()))["metadata"]["totalAlerts"] == 1


def test_coordinate_routes_win_over_arterial_road_text(tmp_path) -> None:
    body = {
        "incidents": [
            {
                "type": "Feature",
                "geometry": {"type": "Point", "coordinates": [-1.6171, 54.9688]},
                "properties": {
                    "id": "TT-9",
                    "iconCategory": 8,
                    "from": "Western Bypass",
                    "roadNumbers": ["A1"],
                },
            }
        ]
    }

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "api.tomtom.com":
            return httpx.Response(200, json=body)
        return httpx.Response(503)

    h = _Harness(tmp_path, handler)
    try:
        payload = asyncio.run(h.aggregator.run_cycle(NOON))
    finally:
        h.close()

    (alert,) = payload.alerts
    assert "A1" in alert.title
    assert alert.affects_routes == ("21", "Q3")
    assert alert.route_match_method.value == "coordinate_grid"


def test_fetch_returns_status_body_and_elapsed_time() -> None:
    client = httpx.AsyncClient(
        transport=httpx.MockTransport(lambda request: httpx.Response(200, json={"ok": True}))
    )

    async def run() -> tuple[int, bytes | None, int]:
        try:
            return await fetch(client, url="https://api.tomtom.com/x", user_agent="test")
        finally:
            await client.aclose()

    status, body, elapsed_ms = asyncio.run(run())
    assert status == 200
    assert json.loads(body) == {"ok": True}
    assert elapsed_ms >= 0


def test_provider_timeout_is_reported_while_other_sources_publish(tmp_path) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "data.traffic.hereapi.com":
            raise httpx.ReadTimeout("slow upstream", request=request)
        return _provider_handler({})(request)

    h = _Harness(tmp_path, handler)
    try:
        payload = asyncio.run(h.aggregator.run_cycle(NOON))
    finally:
        h.close()

    here = payload.sources["here"]
    assert (here.success, here.count, here.error) == (False, 0, "timeout")
    tomtom = payload.sources["tomtom"]
    assert (tomtom.success, tomtom.count) == (True, 1)
    assert [a.id for a in payload.alerts] == ["tomtom_TT-1"]
    assert payload.alerts[0].sources == ("tomtom",)


def test_slow_geocoder_degrades_locations_instead_of_dropping_the_source(tmp_path) -> None:
    incidents = [
        {
            "type": "Feature",
            "geometry": {"type": "Point", "coordinates": [-1.60, 54.90 + i * 0.01]},
            "properties": {"id": f"TT-{i}", "iconCategory": 1},
        }
        for i in range(10)
    ]

    async def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "nominatim.test":
            await asyncio.sleep(0.25)
            return httpx.Response(
                200, json={"address": {"road": "Test Road", "city": "Newcastle upon Tyne"}}
            )
        if request.url.host == "api.tomtom.com":
            return httpx.Response(200, json={"incidents": incidents})
        return httpx.Response(503)

    h = _Harness(
        tmp_path, handler, cycle_timeout_seconds=1.5, geocode_timeout_seconds=0.3
    )
    try:
        payload = asyncio.run(h.aggregator.run_cycle(NOON))
    finally:
        h.close()

    tomtom = payload.sources["tomtom"]
    assert (tomtom.success, tomtom.count) == (True, 10)
    locations = [a.location for a in payload.alerts]
    assert len(locations) == 10
    assert "Test Road, Newcastle upon Tyne" in locations
    assert all(locations)


def test_planned_start_does_not_become_the_creation_time(tmp_path) -> None:
    h = _Harness(tmp_path, _provider_handler({}))
    planned = RawIncident(
        source="national_highways",
        external_id="NH-1",
        type=AlertType.ROADWORK,
        title="Planned Closure - A1",
        start_time=NOON + timedelta(days=3),
    )
    try:
        alert = asyncio.run(h.aggregator.enricher.enrich(planned, now=NOON))
    finally:
        h.close()

    assert alert.created_at == NOON
    assert alert.last_updated == NOON


def test_plugin_without_normalizer_is_rejected() -> None:
    plugin = SourcePlugin(source_id="broken", name="Broken", method="broken_v1")
    with pytest.raises(ValueError, match="broken"):
        normalize_records(plugin, [{}], now=NOON, limit=10)
