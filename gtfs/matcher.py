from __future__ import annotations

import logging

from geo.distance import valid_coordinates
from gtfs.loader import GtfsData
from gtfs.patterns import RoutePatterns
from gtfs.spatial import SpatialGrid
from normalize.models import RouteMatchMethod


logger = logging.getLogger(__name__)


_STOP = "stop:"
_SHAPE = "shape:"


class RouteMatcher:
    """Maps an alert location to the bus routes it affects.

    Coordinates are matched against stops and shape points bucketed in a
    ``SpatialGrid``; text falls back to keyword rules. A non-empty coordinate
    result always wins over the text result.
    """

    def __init__(
        self,
        gtfs: GtfsData,
        patterns: RoutePatterns | None = None,
        *,
        radius_m: float = 250.0,
        cell_m: float = 500.0,
    ) -> None:
        self.gtfs = gtfs
        self.patterns = patterns
        self.radius_m = radius_m

        points: list[tuple[float, float, str]] = [
            (s.lat, s.lng, _STOP + s.stop_id) for s in gtfs.stops.values()
        ]
        shape_points: list[tuple[float, float, str]] = []
        for shape in gtfs.shapes.values():
            if shape.shape_id not in gtfs.shape_routes:
                continue
            for lat, lng in shape.points:
                shape_points.append((lat, lng, _SHAPE + shape.shape_id))
        points.extend(shape_points)
        self.grid = SpatialGrid.build(points, cell_m)

        if gtfs.stop_routes_derived:
            self.stop_routes = self._derive_stop_routes(shape_points, cell_m)
        else:
            self.stop_routes = gtfs.stop_routes

    def _derive_stop_routes(
        self, shape_points: list[tuple[float, float, str]], cell_m: float
    ) -> dict[str, set[str]]:
        shape_grid = SpatialGrid.build(shape_points, cell_m)
        derived: dict[str, set[str]] = {}
        for stop in self.gtfs.stops.values():
            routes: set[str] = set()
            for key in shape_grid.within(stop.lat, stop.lng, self.radius_m):
                routes.update(self.gtfs.shape_routes.get(key[len(_SHAPE) :], ()))
            if routes:
                derived[stop.stop_id] = routes
        logger.info("derived routes for %d stops from shapes", len(derived))
        return derived

    def routes_near(self, lat: float, lng: float) -> set[str]:
        route_ids: set[str] = set()
        for key in self.grid.within(lat, lng, self.radius_m):
            if key.startswith(_STOP):
                route_ids.update(self.stop_routes.get(key[len(_STOP) :], ()))
            else:
                route_ids.update(self.gtfs.shape_routes.get(key[len(_SHAPE) :], ()))
        return {self.gtfs.route_label(r) for r in route_ids}

    def routes_for_text(self, text: str) -> set[str]:
        if self.patterns is None or not text.strip():
            return set()
        return self.patterns.routes_for(text)

    def match(
        self,
        location: str,
        coords: tuple[float, float] | None,
        free_text: str = "",
    ) -> tuple[list[str], RouteMatchMethod]:
        if coords is not None and valid_coordinates(coords[0], coords[1]):
            routes = self.routes_near(coords[0], coords[1])
            if routes:
                return sorted(routes), RouteMatchMethod.COORDINATE_GRID

        routes = self.routes_for_text(f"{location} {free_text}")
        if routes:
            return sorted(routes), RouteMatchMethod.TEXT_PATTERN
        return [], RouteMatchMethod.NONE

    def gtfs_stats(self) -> dict:
        return {
            "stops": len(self.gtfs.stops),
            "routes": len(self.gtfs.routes),
            "shapes": len(self.gtfs.shapes),
            "shapesWithRoutes": len(self.gtfs.shape_routes),
            "stopsWithRoutes": len(self.stop_routes),
            "stopRoutesDerived": self.gtfs.stop_routes_derived,
            "gridPoints": len(self.grid),
            "gridCells": self.grid.cell_count,
            "radiusMeters": self.radius_m,
            "patternsVersion": self.patterns.version if self.patterns else None,
            "patternKeywords": len(self.patterns.patterns) if self.patterns else 0,
        }
