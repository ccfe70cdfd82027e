from __future__ import annotations

from dataclasses import dataclass
from datetime import time
from pathlib import Path

import yaml

from geo.gazetteer import Region


def parse_clock(value: object, path: Path) -> time:
    """``"HH:MM"`` to a time; ``"24:00"`` reads as midnight."""
    text = str(value).strip()
    try:
        hours, minutes = (int(p) for p in text.split(":"))
    except ValueError:
        raise ValueError(f"invalid time {text!r} in: {path}") from None
    if hours == 24 and minutes == 0:
        return time(0, 0)
    if not (0 <= hours < 24 and 0 <= minutes < 60):
        raise ValueError(f"invalid time {text!r} in: {path}")
    return time(hours, minutes)


def clock_in_range(t: time, start: time, end: time, *, inclusive_end: bool) -> bool:
    """Whether ``t`` falls in [start, end], wrapping past midnight if end <= start."""
    if start == end:
        return True
    if start < end:
        return start <= t <= end if inclusive_end else start <= t < end
    if inclusive_end:
        return t >= start or t <= end
    return t >= start or t < end


@dataclass(frozen=True)
class IntervalBand:
    start: time
    end: time
    seconds: int

    def contains(self, t: time) -> bool:
        return clock_in_range(t, self.start, self.end, inclusive_end=False)


@dataclass(frozen=True)
class SourcePolicy:
    source_id: str
    name: str
    enabled: bool
    daily_quota: int
    min_interval_seconds: int
    window_start: time
    window_end: time
    timeout_seconds: float
    max_records: int
    bbox: Region
    center: tuple[float, float]
    radius_m: int
    interval_schedule: tuple[IntervalBand, ...] = ()

    def interval_at(self, t: time) -> int:
        for band in self.interval_schedule:
            if band.contains(t):
                return band.seconds
        return self.min_interval_seconds

    def within_window(self, t: time) -> bool:
        return clock_in_range(t, self.window_start, self.window_end, inclusive_end=True)


def _bounds(raw: object, path: Path, name: str) -> Region:
    if not isinstance(raw, dict):
        raise ValueError(f"invalid {name} bounds in: {path}")
    region = Region(
        name=name,
        south=float(raw["south"]),
        west=float(raw["west"]),
        north=float(raw["north"]),
        east=float(raw["east"]),
    )
    if region.south >= region.north or region.west >= region.east:
        raise ValueError(f"inverted {name} bounds in: {path}")
    return region


def load_source_policies(path: Path) -> dict[str, SourcePolicy]:
    raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    if not isinstance(raw, dict) or not isinstance(raw.get("sources"), list):
        raise ValueError(f"invalid source config: {path}")

    defaults = raw.get("defaults") or {}
    coverage = raw.get("coverage") or {}
    if not isinstance(defaults, dict) or not isinstance(coverage, dict):
        raise ValueError(f"invalid source config: {path}")
    coverage_bounds = _bounds(coverage.get("bbox"), path, "coverage")
    center = coverage.get("center") or {}
    default_center = (
        float(center.get("lat", (coverage_bounds.south + coverage_bounds.north) / 2)),
        float(center.get("lng", (coverage_bounds.west + coverage_bounds.east) / 2)),
    )
    default_radius = int(coverage.get("radius_m") or 25_000)

    policies: dict[str, SourcePolicy] = {}
    for entry in raw["sources"]:
        if not isinstance(entry, dict) or "id" not in entry:
            raise ValueError(f"invalid source entry in: {path}")
        merged = {**defaults, **entry}
        source_id = str(merged["id"])
        if source_id in policies:
            raise ValueError(f"duplicate source {source_id} in: {path}")

        bands = tuple(
            IntervalBand(
                start=parse_clock(band["start"], path),
                end=parse_clock(band["end"], path),
                seconds=int(band["seconds"]),
            )
            for band in merged.get("interval_schedule") or []
        )
        policy = SourcePolicy(
            source_id=source_id,
            name=str(merged.get("name") or source_id),
            enabled=bool(merged.get("enabled", True)),
            daily_quota=int(merged.get("daily_quota") or 0),
            min_interval_seconds=int(merged.get("min_interval_seconds") or 0),
            window_start=parse_clock(merged.get("window_start") or "00:00", path),
            window_end=parse_clock(merged.get("window_end") or "00:00", path),
            timeout_seconds=float(merged.get("timeout_seconds") or 15.0),
            max_records=int(merged.get("max_records") or 100),
            bbox=(
                _bounds(merged["bbox"], path, source_id)
                if merged.get("bbox")
                else coverage_bounds
            ),
            center=default_center,
            radius_m=int(merged.get("radius_m") or default_radius),
            interval_schedule=bands,
        )
        if policy.daily_quota <= 0:
            raise ValueError(f"daily_quota must be positive for {source_id} in: {path}")
        if policy.min_interval_seconds < 0 or any(b.seconds <= 0 for b in bands):
            raise ValueError(f"invalid interval for {source_id} in: {path}")
        policies[source_id] = policy

    return policies
