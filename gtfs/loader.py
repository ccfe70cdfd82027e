from __future__ import annotations

import csv
import logging
from collections import defaultdict
from collections.abc import Iterator
from dataclasses import dataclass, field
from pathlib import Path

from geo.distance import valid_coordinates


logger = logging.getLogger(__name__)


REQUIRED_TABLES = ("stops.txt", "routes.txt", "trips.txt", "shapes.txt")


class GtfsLoadError(ValueError):
    pass


@dataclass(frozen=True)
class Stop:
    stop_id: str
    name: str
    lat: float
    lng: float


@dataclass(frozen=True)
class Route:
    route_id: str
    short_name: str

    @property
    def label(self) -> str:
        return self.short_name or self.route_id


@dataclass(frozen=True)
class Shape:
    shape_id: str
    points: tuple[tuple[float, float], ...]


@dataclass
class GtfsData:
    stops: dict[str, Stop] = field(default_factory=dict)
    routes: dict[str, Route] = field(default_factory=dict)
    shapes: dict[str, Shape] = field(default_factory=dict)
    shape_routes: dict[str, set[str]] = field(default_factory=dict)
    stop_routes: dict[str, set[str]] = field(default_factory=dict)
    stop_routes_derived: bool = False

    def route_label(self, route_id: str) -> str:
        route = self.routes.get(route_id)
        return route.label if route is not None else route_id


def _iter_rows(path: Path) -> Iterator[dict[str, str]]:
    # utf-8-sig strips the BOM that some exporters put on the header row.
    with path.open(newline="", encoding="utf-8-sig") as handle:
        reader = csv.DictReader(handle)
        for row in reader:
            yield {(k or "").strip(): (v or "").strip() for k, v in row.items()}


def _float_or_none(value: str | None) -> float | None:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except ValueError:
        return None


def _load_stops(path: Path) -> dict[str, Stop]:
    stops: dict[str, Stop] = {}
    skipped = 0
    for row in _iter_rows(path):
        stop_id = row.get("stop_id") or ""
        lat = _float_or_none(row.get("stop_lat"))
        lng = _float_or_none(row.get("stop_lon"))
        if not stop_id or lat is None or lng is None or not valid_coordinates(lat, lng):
            skipped += 1
            continue
        stops[stop_id] = Stop(
            stop_id=stop_id, name=row.get("stop_name") or stop_id, lat=lat, lng=lng
        )
    if skipped:
        logger.warning("skipped %d stops without usable coordinates", skipped)
    return stops


def _load_routes(path: Path) -> dict[str, Route]:
    routes: dict[str, Route] = {}
    for row in _iter_rows(path):
        route_id = row.get("route_id") or ""
        if not route_id:
            continue
        routes[route_id] = Route(
            route_id=route_id, short_name=row.get("route_short_name") or ""
        )
    return routes


def _load_shapes(path: Path) -> dict[str, Shape]:
    points: dict[str, list[tuple[float, float, float]]] = defaultdict(list)
    for row in _iter_rows(path):
        shape_id = row.get("shape_id") or ""
        lat = _float_or_none(row.get("shape_pt_lat"))
        lng = _float_or_none(row.get("shape_pt_lon"))
        seq = _float_or_none(row.get("shape_pt_sequence"))
        if not shape_id or lat is None or lng is None or not valid_coordinates(lat, lng):
            continue
        points[shape_id].append((seq if seq is not None else 0.0, lat, lng))

    return {
        shape_id: Shape(
            shape_id=shape_id,
            points=tuple((lat, lng) for _, lat, lng in sorted(pts, key=lambda p: p[0])),
        )
        for shape_id, pts in points.items()
    }


def _load_trips(path: Path) -> tuple[dict[str, str], dict[str, set[str]]]:
    trip_route: dict[str, str] = {}
    shape_routes: dict[str, set[str]] = defaultdict(set)
    for row in _iter_rows(path):
        trip_id = row.get("trip_id") or ""
        route_id = row.get("route_id") or ""
        if not route_id:
            continue
        if trip_id:
            trip_route[trip_id] = route_id
        shape_id = row.get("shape_id") or ""
        if shape_id:
            shape_routes[shape_id].add(route_id)
    return trip_route, dict(shape_routes)


def _load_stop_times(path: Path, trip_route: dict[str, str]) -> dict[str, set[str]]:
    stop_routes: dict[str, set[str]] = defaultdict(set)
    for row in _iter_rows(path):
        route_id = trip_route.get(row.get("trip_id") or "")
        stop_id = row.get("stop_id") or ""
        if route_id and stop_id:
            stop_routes[stop_id].add(route_id)
    return dict(stop_routes)


def load_gtfs(gtfs_dir: Path) -> GtfsData:
    """Load the static GTFS tables the route matcher needs.

    ``stop_times.txt`` is optional. Without it the stop -> routes index is
    left empty here and derived from shapes when the matcher builds its grid.
    """
    if not gtfs_dir.is_dir():
        raise GtfsLoadError(f"GTFS directory not found: {gtfs_dir}")
    missing = [name for name in REQUIRED_TABLES if not (gtfs_dir / name).is_file()]
    if missing:
        raise GtfsLoadError(f"GTFS tables missing in {gtfs_dir}: {', '.join(missing)}")

    try:
        stops = _load_stops(gtfs_dir / "stops.txt")
        routes = _load_routes(gtfs_dir / "routes.txt")
        shapes = _load_shapes(gtfs_dir / "shapes.txt")
        trip_route, shape_routes = _load_trips(gtfs_dir / "trips.txt")
        stop_times_path = gtfs_dir / "stop_times.txt"
        stop_routes = (
            _load_stop_times(stop_times_path, trip_route)
            if stop_times_path.is_file()
            else {}
        )
    except (OSError, UnicodeDecodeError, csv.Error) as e:
        raise GtfsLoadError(f"GTFS tables unreadable in {gtfs_dir}: {e}") from e

    if not routes:
        raise GtfsLoadError(f"no routes in {gtfs_dir / 'routes.txt'}")

    data = GtfsData(
        stops=stops,
        routes=routes,
        shapes=shapes,
        shape_routes=shape_routes,
        stop_routes=stop_routes,
        stop_routes_derived=not stop_times_path.is_file(),
    )
    logger.info(
        "loaded GTFS: %d stops, %d routes, %d shapes",
        len(stops),
        len(routes),
        len(shapes),
    )
    return data
