from __future__ import annotations

import re
from collections import defaultdict
from dataclasses import replace

from geo.distance import haversine_m
from gtfs.spatial import SpatialGrid
from normalize.models import Alert


UNRESOLVED_LOCATION_MARKER = "location being determined"

_TITLE_WHITESPACE_RE = re.compile(r"\s+")
_TITLE_PUNCT_RE = re.compile(r"[^\w\s]+", flags=re.UNICODE)

_STOP_WORDS = {
    "the",
    "and",
    "near",
    "from",
    "into",
    "onto",
    "with",
    "between",
    "for",
    "off",
    "via",
}

# Lower rank is more authoritative.
_SOURCE_AUTHORITY = {
    "manual_incidents": 0,
    "streetmanager": 1,
    "national_highways": 1,
    "tomtom": 2,
    "here": 2,
    "mapquest": 2,
}
_UNKNOWN_AUTHORITY = 3


def normalize_title(title: str) -> str:
    normalized = title.strip().casefold()
    normalized = _TITLE_PUNCT_RE.sub(" ", normalized)
    normalized = _TITLE_WHITESPACE_RE.sub(" ", normalized).strip()
    return normalized


def location_token_prefix(location: str, size: int = 2) -> tuple[str, ...]:
    """First ``size`` meaningful tokens of a location string.

    Stop words and tokens shorter than three characters are dropped unless
    the token carries a digit (road numbers like "a1"). Unresolved fallback
    locations have no prefix.
    """
    normalized = normalize_title(location)
    if not normalized or UNRESOLVED_LOCATION_MARKER in normalized:
        return ()
    tokens = [
        t
        for t in normalized.split(" ")
        if t not in _STOP_WORDS and (len(t) >= 3 or any(c.isdigit() for c in t))
    ]
    return tuple(tokens[:size])


def source_authority(source: str) -> int:
    return _SOURCE_AUTHORITY.get(source, _UNKNOWN_AUTHORITY)


def _anchor_key(alert: Alert) -> tuple:
    return (source_authority(alert.source), alert.created_at, alert.id)


def same_event(a: Alert, b: Alert, distance_m: float) -> bool:
    if a.coordinates is not None and b.coordinates is not None:
        return (
            haversine_m(a.coordinates[0], a.coordinates[1], b.coordinates[0], b.coordinates[1])
            <= distance_m
        )
    prefix_a = location_token_prefix(a.location)
    return bool(prefix_a) and prefix_a == location_token_prefix(b.location)


class _UnionFind:
    def __init__(self, size: int) -> None:
        self.parent = list(range(size))

    def find(self, i: int) -> int:
        while self.parent[i] != i:
            self.parent[i] = self.parent[self.parent[i]]
            i = self.parent[i]
        return i

    def union(self, a: int, b: int) -> None:
        ra, rb = self.find(a), self.find(b)
        if ra != rb:
            self.parent[max(ra, rb)] = min(ra, rb)


class AlertHistory:
    """Member id -> published id from the previous cycle only."""

    def __init__(self) -> None:
        self._published: dict[str, str] = {}

    def __len__(self) -> int:
        return len(self._published)

    def previous_ids(self, member_ids: tuple[str, ...]) -> list[str]:
        return sorted({self._published[m] for m in member_ids if m in self._published})

    def remember(self, alerts: list[Alert]) -> None:
        self._published = {
            member: alert.id for alert in alerts for member in alert.members
        }


def _group_indices(alerts: list[Alert], distance_m: float) -> list[list[int]]:
    uf = _UnionFind(len(alerts))

    located = [
        (a.coordinates[0], a.coordinates[1], str(i))
        for i, a in enumerate(alerts)
        if a.coordinates is not None
    ]
    if located:
        grid = SpatialGrid.build(located, max(distance_m, 1.0))
        for lat, lng, key in located:
            for other in grid.within(lat, lng, distance_m):
                uf.union(int(key), int(other))

    # Text grouping only pairs alerts where at least one side has no
    # coordinates, so a bucket is joined whole once it holds an unlocated one.
    by_prefix: dict[tuple[str, ...], list[int]] = defaultdict(list)
    for i, alert in enumerate(alerts):
        prefix = location_token_prefix(alert.location)
        if prefix:
            by_prefix[prefix].append(i)
    for members in by_prefix.values():
        if len(members) < 2:
            continue
        if any(alerts[i].coordinates is None for i in members):
            for i in members[1:]:
                uf.union(members[0], i)

    groups: dict[int, list[int]] = defaultdict(list)
    for i in range(len(alerts)):
        groups[uf.find(i)].append(i)
    return list(groups.values())


def _merge_group(group: list[Alert]) -> Alert:
    if len(group) == 1:
        return group[0]
    ranked = sorted(group, key=_anchor_key)
    anchor = ranked[0]
    coordinates = next(
        (a.coordinates for a in ranked if a.coordinates is not None), None
    )
    return replace(
        anchor,
        coordinates=coordinates,
        severity=max((a.severity for a in group), key=lambda s: s.rank),
        sources=tuple(s for a in group for s in a.sources),
        affects_routes=tuple(r for a in group for r in a.affects_routes),
        route_match_method=max(
            (a.route_match_method for a in group), key=lambda m: m.rank
        ),
        created_at=min(a.created_at for a in group),
        last_updated=max(a.last_updated for a in group),
        members=tuple(m for a in group for m in a.members),
    )


def _stable_ids(merged: list[Alert], history: AlertHistory) -> list[Alert]:
    # Each group owns its anchor id; a group may only take over a previous id
    # that no other group owns or has already claimed.
    owned = {a.id: a for a in merged}
    taken: set[str] = set()
    stable: list[Alert] = []
    for alert in sorted(merged, key=_anchor_key):
        candidates = [*history.previous_ids(alert.members), alert.id, *alert.members]
        new_id = next(
            (
                c
                for c in candidates
                if c not in taken and owned.get(c, alert) is alert
            ),
            alert.id,
        )
        taken.add(new_id)
        stable.append(alert if new_id == alert.id else replace(alert, id=new_id))
    return stable


def sort_alerts(alerts: list[Alert]) -> list[Alert]:
    ordered = sorted(alerts, key=lambda a: a.id)
    ordered.sort(key=lambda a: a.last_updated, reverse=True)
    ordered.sort(key=lambda a: a.severity.rank, reverse=True)
    return ordered


def merge_alerts(
    alerts: list[Alert],
    *,
    distance_m: float = 150.0,
    history: AlertHistory | None = None,
) -> list[Alert]:
    """Collapse alerts describing the same real-world event.

    Two alerts are the same event when both have coordinates within
    ``distance_m`` of each other, or, when either lacks coordinates, their
    locations share the same two-token prefix. Groups are the transitive
    closure of that relation. The result does not depend on input order and
    merging an already merged list returns it unchanged.
    """
    if not alerts:
        return []

    merged = [
        _merge_group([alerts[i] for i in group])
        for group in _group_indices(alerts, distance_m)
    ]

    if history is not None and len(history):
        merged = _stable_ids(merged, history)

    return sort_alerts(merged)
