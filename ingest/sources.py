from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from app.settings import Settings
from ingest.feed_config import SourcePolicy
from ingest.parsers.geojson import parse_geojson
from ingest.parsers.traffic import (
    parse_here_incidents,
    parse_mapquest_incidents,
    parse_tomtom_incidents,
)
from normalize.models import Alert, RawIncident
from normalize.normalize import (
    normalize_here_incident,
    normalize_mapquest_incident,
    normalize_national_highways_closure,
    normalize_streetmanager_notification,
    normalize_tomtom_incident,
)


ParseFn = Callable[[bytes], list[dict]]
NormalizeFn = Callable[[dict, datetime], RawIncident | None]
BuildParamsFn = Callable[[SourcePolicy], dict[str, str]]
LoadFn = Callable[[], list[dict]]
LoadAlertsFn = Callable[[], list[Alert]]


@dataclass(frozen=True)
class SourcePlugin:
    source_id: str
    name: str
    method: str
    url: str = ""
    parse: ParseFn | None = None
    normalize: NormalizeFn | None = None
    build_params: BuildParamsFn | None = None
    headers: dict[str, str] | None = None
    load: LoadFn | None = None
    load_alerts: LoadAlertsFn | None = None
    disabled_reason: str | None = None

    @property
    def enabled(self) -> bool:
        return self.disabled_reason is None


TOMTOM_URL = "https://api.tomtom.com/traffic/services/5/incidentDetails"
HERE_URL = "https://data.traffic.hereapi.com/v7/incidents"
MAPQUEST_URL = "https://www.mapquestapi.com/traffic/v2/incidents"
NATIONAL_HIGHWAYS_URL = "https://api.data.nationalhighways.co.uk/roads/v2.0/closures"

_TOMTOM_FIELDS = (
    "{incidents{type,geometry{type,coordinates},properties{id,iconCategory,"
    "magnitudeOfDelay,events{description,code,iconCategory},startTime,endTime,"
    "from,to,length,delay,roadNumbers,timeValidity}}}"
)


def _missing(key: str | None) -> str | None:
    return None if key else "api_key_missing"


def provider_sources(
    settings: Settings, policies: dict[str, SourcePolicy]
) -> list[SourcePlugin]:
    def tomtom_params(policy: SourcePolicy) -> dict[str, str]:
        b = policy.bbox
        return {
            "key": settings.tomtom_api_key or "",
            "bbox": f"{b.west},{b.south},{b.east},{b.north}",
            "fields": _TOMTOM_FIELDS,
            "language": "en-GB",
            "timeValidityFilter": "present",
        }

    def here_params(policy: SourcePolicy) -> dict[str, str]:
        lat, lng = policy.center
        return {
            "apiKey": settings.here_api_key or "",
            "in": f"circle:{lat},{lng};r={policy.radius_m}",
            "locationReferencing": "shape",
        }

    def mapquest_params(policy: SourcePolicy) -> dict[str, str]:
        b = policy.bbox
        return {
            "key": settings.mapquest_api_key or "",
            "boundingBox": f"{b.north},{b.west},{b.south},{b.east}",
            "filters": "construction,incidents,congestion,event",
        }

    nh_policy = policies.get("national_highways")
    nh_bounds = nh_policy.bbox if nh_policy is not None else None

    return [
        SourcePlugin(
            source_id="tomtom",
            name="TomTom Traffic Incidents",
            method="tomtom_incident_details_v5",
            url=TOMTOM_URL,
            parse=parse_tomtom_incidents,
            normalize=lambda r, fetched_at: normalize_tomtom_incident(
                source_id="tomtom", record=r, fetched_at=fetched_at
            ),
            build_params=tomtom_params,
            disabled_reason=_missing(settings.tomtom_api_key),
        ),
        SourcePlugin(
            source_id="here",
            name="HERE Traffic Incidents",
            method="here_incidents_v7",
            url=HERE_URL,
            parse=parse_here_incidents,
            normalize=lambda r, fetched_at: normalize_here_incident(
                source_id="here", record=r, fetched_at=fetched_at
            ),
            build_params=here_params,
            disabled_reason=_missing(settings.here_api_key),
        ),
        SourcePlugin(
            source_id="mapquest",
            name="MapQuest Traffic",
            method="mapquest_traffic_v2",
            url=MAPQUEST_URL,
            parse=parse_mapquest_incidents,
            normalize=lambda r, fetched_at: normalize_mapquest_incident(
                source_id="mapquest", record=r, fetched_at=fetched_at
            ),
            build_params=mapquest_params,
            disabled_reason=_missing(settings.mapquest_api_key),
        ),
        SourcePlugin(
            source_id="national_highways",
            name="National Highways Closures",
            method="national_highways_closures_v2",
            url=NATIONAL_HIGHWAYS_URL,
            parse=parse_geojson,
            normalize=lambda r, fetched_at: normalize_national_highways_closure(
                source_id="national_highways",
                record=r,
                fetched_at=fetched_at,
                bounds=nh_bounds,
            ),
            headers=(
                {"Ocp-Apim-Subscription-Key": settings.national_highways_api_key}
                if settings.national_highways_api_key
                else None
            ),
            disabled_reason=_missing(settings.national_highways_api_key),
        ),
    ]


def local_sources(
    *, load_roadworks: LoadFn, load_manual: LoadAlertsFn
) -> list[SourcePlugin]:
    return [
        SourcePlugin(
            source_id="streetmanager",
            name="StreetManager Roadworks",
            method="streetmanager_webhook",
            load=load_roadworks,
            normalize=lambda r, fetched_at: normalize_streetmanager_notification(
                source_id="streetmanager", record=r, fetched_at=fetched_at
            ),
        ),
        SourcePlugin(
            source_id="manual_incidents",
            name="Control Room Incidents",
            method="manual_store",
            load_alerts=load_manual,
        ),
    ]
