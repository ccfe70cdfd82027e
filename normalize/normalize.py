from __future__ import annotations

import hashlib
import json
from datetime import UTC, datetime, timedelta

from cluster.clusterer import normalize_title
from geo.distance import valid_coordinates
from geo.gazetteer import Region
from normalize.models import AlertStatus, AlertType, RawIncident, Severity, parse_iso


UPCOMING_WINDOW = timedelta(days=7)


def _ts(value: object) -> datetime | None:
    """ISO-8601 strings and epoch milliseconds; anything else is ``None``."""
    if value is None or value == "":
        return None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return datetime.fromtimestamp(float(value) / 1000.0, tz=UTC)
    try:
        return parse_iso(str(value).strip())
    except ValueError:
        return None


def _text(value: object) -> str:
    if isinstance(value, dict):
        value = value.get("value")
    if value is None:
        return ""
    return " ".join(str(value).split())


def _float(value: object) -> float | None:
    if value is None or value == "" or isinstance(value, bool):
        return None
    try:
        return float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return None


def _first_vertex(geometry: dict | None) -> tuple[float, float] | None:
    """(lat, lng) of a GeoJSON Point, or the first vertex of a line."""
    if not geometry:
        return None
    geom_type = geometry.get("type")
    coords = geometry.get("coordinates")
    if not coords:
        return None
    if geom_type == "Point":
        point = coords
    elif geom_type == "LineString":
        point = coords[0]
    elif geom_type in {"MultiLineString", "Polygon"}:
        point = coords[0][0] if coords[0] else None
    else:
        return None
    if not point or len(point) < 2:
        return None
    lng, lat = _float(point[0]), _float(point[1])
    if not valid_coordinates(lat, lng):
        return None
    return (lat, lng)  # type: ignore[return-value]


def classify_status(
    start: datetime | None,
    end: datetime | None,
    now: datetime,
    *,
    default: AlertStatus,
) -> AlertStatus:
    """red while running, amber when starting within a week, green otherwise."""
    if start is None and end is None:
        return default
    if end is not None and end < now:
        return AlertStatus.GREEN
    if start is None or start <= now:
        return AlertStatus.RED
    if start - now <= UPCOMING_WINDOW:
        return AlertStatus.AMBER
    return AlertStatus.GREEN


def stable_external_id(
    provider_id: object, title: str, lat: float | None, lng: float | None
) -> str:
    provider = str(provider_id).strip() if provider_id is not None else ""
    if provider:
        return provider
    coords = (
        f"{round(lat, 4)},{round(lng, 4)}" if lat is not None and lng is not None else ""
    )
    digest = hashlib.sha1(f"{normalize_title(title)}|{coords}".encode("utf-8"))
    return digest.hexdigest()[:12]


# TomTom Traffic API v5 iconCategory codes.
_TOMTOM_CATEGORIES: dict[int, tuple[str, AlertType, Severity]] = {
    0: ("Traffic Incident", AlertType.INCIDENT, Severity.MEDIUM),
    1: ("Accident", AlertType.INCIDENT, Severity.HIGH),
    2: ("Fog", AlertType.INCIDENT, Severity.LOW),
    3: ("Dangerous Conditions", AlertType.INCIDENT, Severity.MEDIUM),
    4: ("Rain", AlertType.INCIDENT, Severity.LOW),
    5: ("Ice", AlertType.INCIDENT, Severity.MEDIUM),
    6: ("Queuing Traffic", AlertType.CONGESTION, Severity.MEDIUM),
    7: ("Lane Closed", AlertType.ROADWORK, Severity.MEDIUM),
    8: ("Road Closed", AlertType.ROADWORK, Severity.HIGH),
    9: ("Road Works", AlertType.ROADWORK, Severity.MEDIUM),
    10: ("Wind", AlertType.INCIDENT, Severity.LOW),
    11: ("Flooding", AlertType.INCIDENT, Severity.MEDIUM),
    14: ("Broken Down Vehicle", AlertType.INCIDENT, Severity.LOW),
}

# magnitudeOfDelay: 0 unknown, 1 minor, 2 moderate, 3 major, 4 indefinite.
_TOMTOM_DELAY_SEVERITY = {2: Severity.MEDIUM, 3: Severity.HIGH, 4: Severity.HIGH}


def _max_severity(*values: Severity) -> Severity:
    return max(values, key=lambda s: s.rank)


def normalize_tomtom_incident(
    *, source_id: str, record: dict, fetched_at: datetime
) -> RawIncident:
    props = record["properties"]
    category = int(props.get("iconCategory") or 0)
    label, alert_type, severity = _TOMTOM_CATEGORIES.get(
        category, _TOMTOM_CATEGORIES[0]
    )
    delay = props.get("magnitudeOfDelay")
    if isinstance(delay, int) and delay in _TOMTOM_DELAY_SEVERITY:
        severity = _max_severity(severity, _TOMTOM_DELAY_SEVERITY[delay])

    coords = _first_vertex(record.get("geometry"))
    lat, lng = coords if coords is not None else (None, None)

    road_numbers = [str(r) for r in props.get("roadNumbers") or [] if r]
    origin = _text(props.get("from"))
    destination = _text(props.get("to"))
    road = road_numbers[0] if road_numbers else ""
    if origin and destination:
        stretch = f"{origin} to {destination}"
    else:
        stretch = origin or destination
    hint = " ".join(p for p in (road, stretch) if p)

    descriptions = [
        _text(e.get("description"))
        for e in props.get("events") or []
        if isinstance(e, dict) and _text(e.get("description"))
    ]
    title = f"{label} - {road or stretch}" if (road or stretch) else label

    start = _ts(props.get("startTime"))
    end = _ts(props.get("endTime"))
    return RawIncident(
        source=source_id,
        external_id=stable_external_id(props.get("id"), title, lat, lng),
        type=alert_type,
        title=title,
        description="; ".join(descriptions) or label,
        lat=lat,
        lng=lng,
        location_hint=hint,
        severity=severity,
        status=classify_status(start, end, fetched_at, default=AlertStatus.RED),
        start_time=start,
        end_time=end,
        updated_at=fetched_at,
    )


_HERE_CRITICALITY: dict[str, Severity] = {
    "0": Severity.LOW,
    "low": Severity.LOW,
    "1": Severity.MEDIUM,
    "minor": Severity.MEDIUM,
    "2": Severity.HIGH,
    "major": Severity.HIGH,
    "3": Severity.HIGH,
    "critical": Severity.HIGH,
}

_HERE_ROADWORK_TYPES = {"construction", "roadclosure", "lanerestriction"}


def normalize_here_incident(
    *, source_id: str, record: dict, fetched_at: datetime
) -> RawIncident:
    details = record["incidentDetails"]
    location = record.get("location") or {}

    kind = str(details.get("type") or "").replace("_", "").casefold()
    if kind in _HERE_ROADWORK_TYPES or details.get("roadClosed") is True:
        alert_type = AlertType.ROADWORK
    elif kind == "congestion":
        alert_type = AlertType.CONGESTION
    else:
        alert_type = AlertType.INCIDENT

    criticality = str(details.get("criticality", "")).strip().casefold()
    severity = _HERE_CRITICALITY.get(criticality, Severity.MEDIUM)
    status = AlertStatus.RED if severity is Severity.HIGH else AlertStatus.AMBER

    lat = lng = None
    for link in (location.get("shape") or {}).get("links") or []:
        points = link.get("points") or []
        if points:
            lat, lng = _float(points[0].get("lat")), _float(points[0].get("lng"))
            break
    if not valid_coordinates(lat, lng):
        lat = lng = None

    summary = _text(details.get("summary"))
    description = _text(details.get("description"))
    title = summary or description or "Traffic Incident"
    return RawIncident(
        source=source_id,
        external_id=stable_external_id(details.get("id"), title, lat, lng),
        type=alert_type,
        title=title,
        description=description or summary,
        lat=lat,
        lng=lng,
        location_hint=_text(location.get("description")),
        severity=severity,
        status=status,
        start_time=_ts(details.get("startTime")),
        end_time=_ts(details.get("endTime")),
        updated_at=fetched_at,
    )


def normalize_mapquest_incident(
    *, source_id: str, record: dict, fetched_at: datetime
) -> RawIncident:
    kind = int(record.get("type") or 4)
    if kind == 1:
        alert_type = AlertType.ROADWORK
    elif kind == 3:
        alert_type = AlertType.CONGESTION
    else:
        alert_type = AlertType.INCIDENT

    level = int(record.get("severity") or 0)
    if level >= 3:
        severity = Severity.HIGH
    elif level >= 2:
        severity = Severity.MEDIUM
    else:
        severity = Severity.LOW

    lat, lng = _float(record.get("lat")), _float(record.get("lng"))
    if not valid_coordinates(lat, lng):
        lat = lng = None

    short = _text(record.get("shortDesc"))
    full = _text(record.get("fullDesc"))
    title = short or full or "Traffic Incident"
    start = _ts(record.get("startTime"))
    end = _ts(record.get("endTime"))
    return RawIncident(
        source=source_id,
        external_id=stable_external_id(record.get("id"), title, lat, lng),
        type=alert_type,
        title=title,
        description=full or short,
        lat=lat,
        lng=lng,
        context=short,
        severity=severity,
        status=classify_status(start, end, fetched_at, default=AlertStatus.RED),
        start_time=start,
        end_time=end,
        updated_at=fetched_at,
    )


def normalize_national_highways_closure(
    *,
    source_id: str,
    record: dict,
    fetched_at: datetime,
    bounds: Region | None = None,
) -> RawIncident | None:
    """Closures outside ``bounds`` are dropped; records without geometry stay."""
    props = record["properties"]
    coords = _first_vertex(record.get("geometry"))
    if coords is not None and bounds is not None and not bounds.contains(*coords):
        return None
    lat, lng = coords if coords is not None else (None, None)

    category = _text(props.get("category"))
    closure = "closure" in category.casefold()
    description = _text(props.get("description")) or _text(props.get("comment"))
    title = _text(props.get("title")) or description or "National Highways Closure"
    start = _ts(props.get("startDate"))
    end = _ts(props.get("endDate"))
    return RawIncident(
        source=source_id,
        external_id=stable_external_id(props.get("id"), title, lat, lng),
        type=AlertType.ROADWORK,
        title=title,
        description=description or "Planned closure or roadworks",
        lat=lat,
        lng=lng,
        location_hint=_text(props.get("location")) or _text(props.get("roadName")),
        context=category,
        severity=Severity.HIGH if closure else Severity.MEDIUM,
        status=classify_status(
            start,
            end,
            fetched_at,
            default=AlertStatus.RED if closure else AlertStatus.GREEN,
        ),
        start_time=start,
        end_time=end,
        updated_at=fetched_at,
    )


_STREETMANAGER_FINISHED = {"WORK_STOP", "PERMIT_CANCELLED", "ACTIVITY_CANCELLED"}


def _streetmanager_severity(traffic_management: str) -> Severity:
    kind = traffic_management.casefold()
    if "road_closure" in kind or kind == "road closure":
        return Severity.HIGH
    if "signal" in kind or "lane_closure" in kind:
        return Severity.MEDIUM
    return Severity.LOW


def normalize_streetmanager_notification(
    *, source_id: str, record: dict, fetched_at: datetime
) -> RawIncident | None:
    data = record["data"]
    if isinstance(data, str):
        data = json.loads(data)
    event_type = str(data.get("event_type") or record.get("event_type") or "")
    if event_type.upper() in _STREETMANAGER_FINISHED:
        return None

    object_type = str(data.get("object_type") or record.get("object_type") or "")
    details = data.get("object_data") or {}
    if str(details.get("work_status") or "").casefold() == "completed":
        return None

    reference = (
        data.get("object_reference")
        or details.get("permit_reference_number")
        or details.get("activity_reference_number")
        or details.get("work_reference_number")
    )
    street = _text(details.get("street_name"))
    area = _text(details.get("area_name")) or _text(details.get("town"))
    hint = ", ".join(p for p in (street, area) if p)
    title = _text(details.get("activity_name")) or (
        f"Roadworks on {street}" if street else "Roadworks"
    )
    promoter = _text(details.get("promoter_organisation"))
    description = _text(details.get("work_description")) or (
        f"{title} ({promoter})" if promoter else title
    )

    start = _ts(
        details.get("actual_start_date_time")
        or details.get("proposed_start_date")
        or details.get("start_date")
    )
    end = _ts(
        details.get("actual_end_date_time")
        or details.get("proposed_end_date")
        or details.get("end_date")
    )
    external = stable_external_id(reference, title, None, None)
    return RawIncident(
        source=source_id,
        external_id=f"{object_type.casefold()}_{external}" if object_type else external,
        type=AlertType.ROADWORK,
        title=title,
        description=description,
        location_hint=hint,
        context=_text(details.get("highway_authority")),
        severity=_streetmanager_severity(
            str(details.get("traffic_management_type") or "")
        ),
        status=classify_status(start, end, fetched_at, default=AlertStatus.AMBER),
        start_time=start,
        end_time=end,
        updated_at=_ts(record.get("received_at")) or fetched_at,
    )
