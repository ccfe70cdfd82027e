from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime

from geo.location import LocationResolver
from gtfs.matcher import RouteMatcher
from normalize.models import Alert, RawIncident, RouteMatchMethod


logger = logging.getLogger(__name__)


class AlertEnricher:
    """Turns a ``RawIncident`` into an ``Alert`` with a location and routes.

    Both steps degrade rather than fail: the resolver always yields a
    string, and a matcher error leaves the alert with no routes.
    """

    def __init__(self, resolver: LocationResolver, matcher: RouteMatcher) -> None:
        self.resolver = resolver
        self.matcher = matcher

    def match_routes(
        self, location: str, coords: tuple[float, float] | None, free_text: str
    ) -> tuple[list[str], RouteMatchMethod]:
        try:
            return self.matcher.match(location, coords, free_text)
        except Exception:
            logger.warning("route matching failed for %r", location, exc_info=True)
            return [], RouteMatchMethod.NONE

    async def enrich(self, raw: RawIncident, *, now: datetime) -> Alert:
        location = await self.resolver.resolve(
            raw.lat, raw.lng, hint=raw.location_hint, context=raw.context
        )
        routes, method = self.match_routes(location, raw.coordinates, raw.free_text)
        logger.debug(
            "enriched %s: %s, %d routes via %s",
            raw.alert_id,
            location,
            len(routes),
            method.value,
        )
        return Alert(
            id=raw.alert_id,
            type=raw.type,
            title=raw.title,
            description=raw.description,
            location=location,
            coordinates=raw.coordinates,
            severity=raw.severity,
            status=raw.status,
            source=raw.source,
            sources=(raw.source,),
            affects_routes=tuple(routes),
            route_match_method=method,
            last_updated=raw.updated_at or now,
            created_at=raw.updated_at or now,
        )

    def with_routes(self, alert: Alert) -> Alert:
        """Fill routes for an already normalized alert that has none."""
        if alert.affects_routes:
            return alert
        routes, method = self.match_routes(
            alert.location, alert.coordinates, f"{alert.title} {alert.description}"
        )
        return replace(alert, affects_routes=tuple(routes), route_match_method=method)
