import shutil
from pathlib import Path

import pytest

from geo.distance import METERS_PER_DEGREE_LAT
from gtfs.loader import GtfsLoadError, load_gtfs
from gtfs.matcher import RouteMatcher
from gtfs.patterns import load_route_patterns
from gtfs.spatial import SpatialGrid
from normalize.models import RouteMatchMethod


ROOT = Path(__file__).resolve().parents[1]
GTFS_DIR = Path(__file__).resolve().parent / "fixtures" / "gtfs"
PATTERNS_PATH = ROOT / "gtfs" / "data" / "route_patterns.yaml"

CENTRAL_STATION = (54.9690, -1.6172)


def _matcher(gtfs_dir: Path = GTFS_DIR) -> RouteMatcher:
    return RouteMatcher(load_gtfs(gtfs_dir), load_route_patterns(PATTERNS_PATH))


def test_load_gtfs_strips_bom_and_skips_bad_stops() -> None:
    gtfs = load_gtfs(GTFS_DIR)
    assert set(gtfs.stops) == {"S1", "S2", "S3", "S4"}
    assert gtfs.stops["S1"].name == "Central Station"
    assert gtfs.route_label("RQ3") == "Q3"
    assert gtfs.stop_routes["S1"] == {"R21", "RQ3"}
    assert not gtfs.stop_routes_derived


def test_load_gtfs_orders_shape_points_by_sequence() -> None:
    shape = load_gtfs(GTFS_DIR).shapes["SH21"]
    assert shape.points[0] == (54.9686, -1.6170)
    assert shape.points[-1] == (54.9143, -1.5896)
    assert len(shape.points) == 4


def test_load_gtfs_missing_tables(tmp_path) -> None:
    (tmp_path / "stops.txt").write_text("stop_id,stop_name,stop_lat,stop_lon\n")
    with pytest.raises(GtfsLoadError, match="shapes.txt"):
        load_gtfs(tmp_path)
    with pytest.raises(GtfsLoadError):
        load_gtfs(tmp_path / "nope")


def test_coordinates_match_nearby_stops_and_shapes() -> None:
    routes, method = _matcher().match("Neville Street", CENTRAL_STATION)
    assert routes == ["21", "Q3"]
    assert method is RouteMatchMethod.COORDINATE_GRID


def test_coordinate_result_wins_over_text() -> None:
    routes, method = _matcher().match("A1 near Central Station", CENTRAL_STATION)
    assert routes == ["21", "Q3"]
    assert method is RouteMatchMethod.COORDINATE_GRID


def test_text_fallback_when_nothing_is_near() -> None:
    routes, method = _matcher().match("Tyne Bridge closed", (51.5072, -0.1276))
    assert method is RouteMatchMethod.TEXT_PATTERN
    assert routes == ["10", "21", "Q3", "Q3X"]


def test_text_keywords_respect_word_boundaries() -> None:
    matcher = _matcher()
    a19, _ = matcher.match("A19 southbound at Silverlink", None)
    assert "307" in a19
    assert "X21" not in a19

    a1, method = matcher.match("A1(M) northbound", None)
    assert method is RouteMatchMethod.TEXT_PATTERN
    assert a1 == ["21", "25", "28", "28B", "X21", "X25"]


def test_no_match() -> None:
    assert _matcher().match("Somewhere else", (51.5072, -0.1276)) == (
        [],
        RouteMatchMethod.NONE,
    )
    assert _matcher().match("", None) == ([], RouteMatchMethod.NONE)


def test_stop_routes_derived_from_shapes_without_stop_times(tmp_path) -> None:
    gtfs_dir = tmp_path / "gtfs"
    shutil.copytree(GTFS_DIR, gtfs_dir)
    (gtfs_dir / "stop_times.txt").unlink()

    matcher = _matcher(gtfs_dir)
    assert matcher.gtfs.stop_routes_derived
    assert matcher.stop_routes["S1"] == {"R21", "RQ3"}
    assert matcher.stop_routes["S4"] == {"R1"}
    assert matcher.match("", CENTRAL_STATION)[0] == ["21", "Q3"]
    assert matcher.gtfs_stats()["stopRoutesDerived"] is True


def test_spatial_grid_radius_lookup() -> None:
    grid = SpatialGrid.build(
        [(54.9686, -1.6170, "a"), (54.9700, -1.6170, "b"), (54.9900, -1.6170, "c")],
        500.0,
    )
    found = grid.within(54.9686, -1.6170, 250.0)
    assert set(found) == {"a", "b"}
    assert found["a"] == pytest.approx(0.0)
    assert set(grid.within(54.9686, -1.6170, 2500.0)) == {"a", "b", "c"}


def test_spatial_grid_finds_pairs_just_inside_a_cell_sized_radius() -> None:
    # Sweep one point across a whole cell in 5 cm steps; its partner sits
    # 149.99 m due north, so some pairs straddle two cell boundaries.
    gap = 149.99 / METERS_PER_DEGREE_LAT
    step = 0.05 / METERS_PER_DEGREE_LAT
    for i in range(3100):
        lat = 54.97 + i * step
        grid = SpatialGrid.build([(lat + gap, -1.6170, "north")], 150.0)
        assert "north" in grid.within(lat, -1.6170, 150.0), i
