from __future__ import annotations

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


_ROOT = Path(__file__).resolve().parents[1]


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    db_path: Path = Field(
        default=Path("data/traffic-alerts.db"), validation_alias="DB_PATH"
    )
    gtfs_dir: Path = Field(default=Path("data/gtfs"), validation_alias="GTFS_DIR")
    feeds_path: Path = Field(
        default=_ROOT / "feeds" / "sources.yaml", validation_alias="FEEDS_PATH"
    )
    regions_path: Path = Field(
        default=_ROOT / "geo" / "data" / "regions.yaml",
        validation_alias="REGIONS_PATH",
    )
    route_patterns_path: Path = Field(
        default=_ROOT / "gtfs" / "data" / "route_patterns.yaml",
        validation_alias="ROUTE_PATTERNS_PATH",
    )

    user_agent: str = Field(default="traffic-alerts/0.1", validation_alias="USER_AGENT")

    tomtom_api_key: str | None = Field(default=None, validation_alias="TOMTOM_API_KEY")
    here_api_key: str | None = Field(default=None, validation_alias="HERE_API_KEY")
    mapquest_api_key: str | None = Field(
        default=None, validation_alias="MAPQUEST_API_KEY"
    )
    national_highways_api_key: str | None = Field(
        default=None, validation_alias="NATIONAL_HIGHWAYS_API_KEY"
    )

    nominatim_url: str = Field(
        default="https://nominatim.openstreetmap.org/reverse",
        validation_alias="NOMINATIM_URL",
    )
    geocoding_enabled: bool = Field(default=True, validation_alias="GEOCODING_ENABLED")
    geocode_timeout_seconds: float = Field(
        default=3.0, validation_alias="GEOCODE_TIMEOUT_SECONDS"
    )
    geocode_cache_size: int = Field(default=500, validation_alias="GEOCODE_CACHE_SIZE")

    timezone: str = Field(default="Europe/London", validation_alias="TIMEZONE")
    service_region_name: str = Field(
        default="North East England", validation_alias="SERVICE_REGION_NAME"
    )

    polling_enabled: bool = Field(default=True, validation_alias="POLLING_ENABLED")
    poll_every_seconds: int = Field(default=60, validation_alias="POLL_EVERY_SECONDS")
    cycle_timeout_seconds: float = Field(
        default=40.0, validation_alias="CYCLE_TIMEOUT_SECONDS"
    )
    cycle_workers: int = Field(default=4, validation_alias="CYCLE_WORKERS")

    match_radius_meters: float = Field(
        default=250.0, validation_alias="MATCH_RADIUS_METERS"
    )
    grid_cell_meters: float = Field(default=500.0, validation_alias="GRID_CELL_METERS")
    merge_distance_meters: float = Field(
        default=150.0, validation_alias="MERGE_DISTANCE_METERS"
    )
    source_cache_seconds: int = Field(
        default=900, validation_alias="SOURCE_CACHE_SECONDS"
    )
