from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum


class AlertType(str, Enum):
    INCIDENT = "incident"
    ROADWORK = "roadwork"
    CONGESTION = "congestion"


class Severity(str, Enum):
    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {Severity.LOW: 0, Severity.MEDIUM: 1, Severity.HIGH: 2}


class AlertStatus(str, Enum):
    RED = "red"
    AMBER = "amber"
    GREEN = "green"


class RouteMatchMethod(str, Enum):
    COORDINATE_GRID = "coordinate_grid"
    TEXT_PATTERN = "text_pattern"
    NONE = "none"

    @property
    def rank(self) -> int:
        return _METHOD_RANK[self]


_METHOD_RANK = {
    RouteMatchMethod.COORDINATE_GRID: 2,
    RouteMatchMethod.TEXT_PATTERN: 1,
    RouteMatchMethod.NONE: 0,
}


def iso_z(ts: datetime) -> str:
    return ts.astimezone(tz=UTC).isoformat().replace("+00:00", "Z")


def parse_iso(ts: str) -> datetime:
    if ts.endswith("Z"):
        ts = ts.removesuffix("Z") + "+00:00"
    parsed = datetime.fromisoformat(ts)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


@dataclass(frozen=True)
class RawIncident:
    """A provider record translated into the fields every feed can offer.

    Only ``source``, ``external_id`` and ``title`` are guaranteed; everything
    else is whatever the provider happened to supply.
    """

    source: str
    external_id: str
    type: AlertType
    title: str
    description: str = ""
    lat: float | None = None
    lng: float | None = None
    location_hint: str = ""
    context: str = ""
    severity: Severity = Severity.MEDIUM
    status: AlertStatus = AlertStatus.RED
    start_time: datetime | None = None
    end_time: datetime | None = None
    updated_at: datetime | None = None

    @property
    def alert_id(self) -> str:
        return f"{self.source}_{self.external_id}"

    @property
    def coordinates(self) -> tuple[float, float] | None:
        if self.lat is None or self.lng is None:
            return None
        return (self.lat, self.lng)

    @property
    def free_text(self) -> str:
        return f"{self.title} {self.description}".strip()


@dataclass(frozen=True)
class Alert:
    id: str
    type: AlertType
    title: str
    description: str
    location: str
    coordinates: tuple[float, float] | None
    severity: Severity
    status: AlertStatus
    source: str
    sources: tuple[str, ...]
    affects_routes: tuple[str, ...]
    route_match_method: RouteMatchMethod
    last_updated: datetime
    created_at: datetime
    members: tuple[str, ...] = field(default=())

    def __post_init__(self) -> None:
        object.__setattr__(
            self, "affects_routes", tuple(sorted(set(self.affects_routes)))
        )
        object.__setattr__(self, "sources", tuple(sorted(set(self.sources))))
        object.__setattr__(
            self, "members", tuple(sorted(set(self.members) or {self.id}))
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "type": self.type.value,
            "title": self.title,
            "description": self.description,
            "location": self.location,
            "coordinates": list(self.coordinates) if self.coordinates else None,
            "severity": self.severity.value,
            "status": self.status.value,
            "source": self.source,
            "sources": list(self.sources),
            "affectsRoutes": list(self.affects_routes),
            "routeMatchMethod": self.route_match_method.value,
            "lastUpdated": iso_z(self.last_updated),
        }


@dataclass(frozen=True)
class SourceResult:
    success: bool
    count: int = 0
    method: str = ""
    error: str | None = None

    def to_dict(self) -> dict:
        out: dict = {"success": self.success, "count": self.count, "method": self.method}
        if self.error is not None:
            out["error"] = self.error
        return out


@dataclass(frozen=True)
class CyclePayload:
    alerts: tuple[Alert, ...]
    sources: dict[str, SourceResult]
    last_updated: datetime

    def to_dict(self) -> dict:
        return {
            "success": True,
            "alerts": [a.to_dict() for a in self.alerts],
            "metadata": {
                "totalAlerts": len(self.alerts),
                "sources": {
                    source_id: result.to_dict()
                    for source_id, result in sorted(self.sources.items())
                },
                "lastUpdated": iso_z(self.last_updated),
            },
        }
