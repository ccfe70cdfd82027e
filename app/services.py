from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta

import httpx

from app.settings import Settings
from cluster.clusterer import AlertHistory
from geo.gazetteer import load_gazetteer
from geo.location import LocationResolver, ReverseGeocoder, default_strategies
from gtfs.loader import load_gtfs
from gtfs.matcher import RouteMatcher
from gtfs.patterns import load_route_patterns
from ingest.aggregator import AlertAggregator
from ingest.feed_config import load_source_policies
from ingest.scheduler import PollingScheduler
from ingest.sources import local_sources, provider_sources
from ingest.streetmanager import RoadworksStore
from normalize.enrich import AlertEnricher
from store.db import Database
from store.manual_incidents import ManualIncidentStore


@dataclass(frozen=True)
class Services:
    aggregator: AlertAggregator
    scheduler: PollingScheduler
    matcher: RouteMatcher
    resolver: LocationResolver
    manual_incidents: ManualIncidentStore
    roadworks: RoadworksStore


def build_services(
    settings: Settings, db: Database, client: httpx.AsyncClient
) -> Services:
    """Wire the core from settings. Raises ``GtfsLoadError`` without GTFS data."""
    matcher = RouteMatcher(
        load_gtfs(settings.gtfs_dir),
        load_route_patterns(settings.route_patterns_path),
        radius_m=settings.match_radius_meters,
        cell_m=settings.grid_cell_meters,
    )
    gazetteer = load_gazetteer(
        settings.regions_path, service_region=settings.service_region_name
    )
    geocoder = (
        ReverseGeocoder(
            client,
            url=settings.nominatim_url,
            user_agent=settings.user_agent,
            timeout_seconds=settings.geocode_timeout_seconds,
            cache_size=settings.geocode_cache_size,
        )
        if settings.geocoding_enabled
        else None
    )
    resolver = LocationResolver(
        default_strategies(gazetteer, geocoder),
        service_region=gazetteer.service_region,
    )

    policies = load_source_policies(settings.feeds_path)
    scheduler = PollingScheduler(policies, timezone=settings.timezone, db=db)
    manual_incidents = ManualIncidentStore(db)
    roadworks = RoadworksStore(db)
    plugins = provider_sources(settings, policies) + local_sources(
        load_roadworks=roadworks.list_recent,
        load_manual=manual_incidents.list_active,
    )

    aggregator = AlertAggregator(
        client=client,
        plugins=plugins,
        policies=policies,
        scheduler=scheduler,
        enricher=AlertEnricher(resolver, matcher),
        db=db,
        history=AlertHistory(),
        workers=settings.cycle_workers,
        cycle_timeout_seconds=settings.cycle_timeout_seconds,
        merge_distance_m=settings.merge_distance_meters,
        cache_max_age=timedelta(seconds=settings.source_cache_seconds),
        user_agent=settings.user_agent,
    )
    return Services(
        aggregator=aggregator,
        scheduler=scheduler,
        matcher=matcher,
        resolver=resolver,
        manual_incidents=manual_incidents,
        roadworks=roadworks,
    )
