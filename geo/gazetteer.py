from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path

import yaml


_NAME_CLEAN_RE = re.compile(r"[^\w\s]+", flags=re.UNICODE)
_WS_RE = re.compile(r"\s+")


def normalize_place_name(name: str) -> str:
    cleaned = _NAME_CLEAN_RE.sub(" ", name.strip().casefold())
    return _WS_RE.sub(" ", cleaned).strip()


def match_keywords_in_text(keywords: list[str], text: str) -> list[str]:
    """Return every keyword that occurs in ``text`` on word boundaries.

    Keywords must already be normalized with ``normalize_place_name``.
    """
    normalized = normalize_place_name(text)
    if not normalized:
        return []
    joined = f" {normalized} "
    return [kw for kw in keywords if kw and f" {kw} " in joined]


@dataclass(frozen=True)
class Region:
    name: str
    south: float
    west: float
    north: float
    east: float

    def contains(self, lat: float, lng: float) -> bool:
        return self.south <= lat <= self.north and self.west <= lng <= self.east

    @property
    def area(self) -> float:
        return (self.north - self.south) * (self.east - self.west)


@dataclass(frozen=True)
class Gazetteer:
    service_region: str
    regions: tuple[Region, ...]
    corridors: tuple[Region, ...]

    def region_for(self, lat: float, lng: float) -> Region | None:
        containing = [r for r in self.regions if r.contains(lat, lng)]
        if not containing:
            return None
        return min(containing, key=lambda r: (r.area, r.name))

    def corridor_for(self, lat: float, lng: float) -> Region | None:
        for corridor in self.corridors:
            if corridor.contains(lat, lng):
                return corridor
        return None


def _parse_region(entry: object, path: Path) -> Region:
    if not isinstance(entry, dict):
        raise ValueError(f"invalid region entry in: {path}")
    bounds = entry.get("bounds")
    if not isinstance(bounds, dict):
        raise ValueError(f"region without bounds in: {path}")
    region = Region(
        name=str(entry["name"]),
        south=float(bounds["south"]),
        west=float(bounds["west"]),
        north=float(bounds["north"]),
        east=float(bounds["east"]),
    )
    if region.south > region.north or region.west > region.east:
        raise ValueError(f"inverted bounds for {region.name} in: {path}")
    return region


def load_gazetteer(path: Path, *, service_region: str | None = None) -> Gazetteer:
    raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    if not isinstance(raw, dict):
        raise ValueError(f"invalid regions file: {path}")

    return Gazetteer(
        service_region=service_region
        or str(raw.get("service_region") or "Service area"),
        regions=tuple(_parse_region(e, path) for e in raw.get("regions") or []),
        corridors=tuple(_parse_region(e, path) for e in raw.get("corridors") or []),
    )
