from __future__ import annotations

import math
from collections import defaultdict
from collections.abc import Iterable

from geo.distance import METERS_PER_DEGREE_LAT, haversine_m


Cell = tuple[int, int]

_CELL_PADDING = 1.001


class SpatialGrid:
    """Uniform lat/lng bucket grid for radius lookups.

    Cell sizes are fixed in degrees from ``cell_meters`` at ``max_abs_lat``,
    the highest latitude in the data, so every cell spans at least
    ``cell_meters`` in both directions anywhere in the indexed area. Steps are
    padded slightly so rounding and the gap between a parallel and a great
    circle never shrink a cell below that size.
    """

    def __init__(self, cell_meters: float, *, max_abs_lat: float) -> None:
        if cell_meters <= 0:
            raise ValueError("cell_meters must be positive")
        self.cell_meters = cell_meters
        padded = cell_meters * _CELL_PADDING
        self.lat_step = padded / METERS_PER_DEGREE_LAT
        cos_lat = max(math.cos(math.radians(min(abs(max_abs_lat), 89.0))), 1e-6)
        self.lng_step = padded / (METERS_PER_DEGREE_LAT * cos_lat)
        self._cells: dict[Cell, list[tuple[float, float, str]]] = defaultdict(list)
        self._size = 0

    @classmethod
    def build(
        cls, points: Iterable[tuple[float, float, str]], cell_meters: float
    ) -> SpatialGrid:
        items = list(points)
        max_abs_lat = max((abs(lat) for lat, _, _ in items), default=0.0)
        grid = cls(cell_meters, max_abs_lat=max_abs_lat)
        for lat, lng, key in items:
            grid.add(lat, lng, key)
        return grid

    def __len__(self) -> int:
        return self._size

    @property
    def cell_count(self) -> int:
        return len(self._cells)

    def cell_for(self, lat: float, lng: float) -> Cell:
        return (math.floor(lat / self.lat_step), math.floor(lng / self.lng_step))

    def add(self, lat: float, lng: float, key: str) -> None:
        self._cells[self.cell_for(lat, lng)].append((lat, lng, key))
        self._size += 1

    def within(self, lat: float, lng: float, radius_m: float) -> dict[str, float]:
        """Keys within ``radius_m`` of the point, mapped to their nearest distance.

        A radius no larger than the cell size visits the 3x3 neighbourhood.
        """
        rings = max(1, math.ceil(radius_m / self.cell_meters))
        row, col = self.cell_for(lat, lng)
        found: dict[str, float] = {}
        for d_row in range(-rings, rings + 1):
            for d_col in range(-rings, rings + 1):
                bucket = self._cells.get((row + d_row, col + d_col))
                if not bucket:
                    continue
                for p_lat, p_lng, key in bucket:
                    dist = haversine_m(lat, lng, p_lat, p_lng)
                    if dist <= radius_m and dist < found.get(key, math.inf):
                        found[key] = dist
        return found
