from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from datetime import UTC, datetime

from geo.distance import valid_coordinates
from normalize.models import (
    Alert,
    AlertStatus,
    AlertType,
    RouteMatchMethod,
    Severity,
    iso_z,
    parse_iso,
)
from store.db import Database


logger = logging.getLogger(__name__)


SOURCE_ID = "manual_incidents"

# Stored status -> published alert status; anything else is not listed.
_LISTED_STATUSES = {"active": AlertStatus.RED, "monitoring": AlertStatus.AMBER}


class ManualIncidentStore:
    """Control-room incidents kept in SQLite and published as alerts."""

    def __init__(self, db: Database) -> None:
        self.db = db

    def create(
        self,
        *,
        type: str,
        location: str,
        created_by: str,
        title: str = "",
        description: str = "",
        lat: float | None = None,
        lng: float | None = None,
        severity: str = "Medium",
        status: str = "active",
        affects_routes: list[str] | None = None,
        start_time: datetime | None = None,
        end_time: datetime | None = None,
        now: datetime | None = None,
    ) -> dict:
        alert_type = AlertType(type)
        level = Severity(severity)
        if status not in _LISTED_STATUSES:
            raise ValueError(f"invalid status: {status}")
        if not location.strip():
            raise ValueError("location is required")
        if (lat is None) != (lng is None):
            raise ValueError("lat and lng must be given together")
        if lat is not None and not valid_coordinates(lat, lng):
            raise ValueError("invalid coordinates")

        incident_id = uuid.uuid4().hex[:12]
        now_iso = iso_z(now or datetime.now(tz=UTC))
        routes = sorted({r.strip() for r in affects_routes or [] if r.strip()})
        with self.db.lock:
            self.db.conn.execute(
                """
                INSERT INTO manual_incidents(
                  incident_id, type, title, description, location, lat, lng, severity,
                  status, affects_routes, created_by, created_at, updated_at,
                  start_time, end_time
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?);
                """,
                (
                    incident_id,
                    alert_type.value,
                    title.strip() or f"{alert_type.value.title()} - {location.strip()}",
                    description.strip(),
                    location.strip(),
                    lat,
                    lng,
                    level.value,
                    status,
                    json.dumps(routes),
                    created_by,
                    now_iso,
                    now_iso,
                    iso_z(start_time) if start_time else None,
                    iso_z(end_time) if end_time else None,
                ),
            )
            self.db.conn.commit()
            row = self.db.conn.execute(
                "SELECT * FROM manual_incidents WHERE incident_id = ?;", (incident_id,)
            ).fetchone()
        logger.info("manual incident %s created by %s", incident_id, created_by)
        return _row_to_dict(row)

    def get(self, incident_id: str) -> dict | None:
        with self.db.lock:
            row = self.db.conn.execute(
                "SELECT * FROM manual_incidents WHERE incident_id = ?;", (incident_id,)
            ).fetchone()
        return _row_to_dict(row) if row is not None else None

    def list_all(self) -> list[dict]:
        with self.db.lock:
            rows = self.db.conn.execute(
                "SELECT * FROM manual_incidents ORDER BY created_at DESC, incident_id ASC;"
            ).fetchall()
        return [_row_to_dict(r) for r in rows]

    def resolve(self, incident_id: str, *, now: datetime | None = None) -> bool:
        now_iso = iso_z(now or datetime.now(tz=UTC))
        with self.db.lock:
            cur = self.db.conn.execute(
                """
                UPDATE manual_incidents
                SET status = 'resolved', updated_at = ?
                WHERE incident_id = ? AND status <> 'resolved';
                """,
                (now_iso, incident_id),
            )
            self.db.conn.commit()
        if cur.rowcount:
            logger.info("manual incident %s resolved", incident_id)
        return cur.rowcount > 0

    def list_active(self) -> list[Alert]:
        with self.db.lock:
            rows = self.db.conn.execute(
                """
                SELECT * FROM manual_incidents
                WHERE status IN ('active', 'monitoring')
                ORDER BY created_at ASC, incident_id ASC;
                """
            ).fetchall()
        return [_row_to_alert(r) for r in rows]


def _row_to_dict(row: sqlite3.Row) -> dict:
    return {
        "id": str(row["incident_id"]),
        "alertId": f"{SOURCE_ID}_{row['incident_id']}",
        "type": str(row["type"]),
        "title": str(row["title"]),
        "description": str(row["description"]),
        "location": str(row["location"]),
        "coordinates": (
            [float(row["lat"]), float(row["lng"])]
            if row["lat"] is not None and row["lng"] is not None
            else None
        ),
        "severity": str(row["severity"]),
        "status": str(row["status"]),
        "affectsRoutes": json.loads(row["affects_routes"] or "[]"),
        "createdBy": str(row["created_by"]),
        "createdAt": str(row["created_at"]),
        "updatedAt": str(row["updated_at"]),
        "startTime": row["start_time"],
        "endTime": row["end_time"],
    }


def _row_to_alert(row: sqlite3.Row) -> Alert:
    routes = tuple(json.loads(row["affects_routes"] or "[]"))
    coordinates = (
        (float(row["lat"]), float(row["lng"]))
        if row["lat"] is not None and row["lng"] is not None
        else None
    )
    return Alert(
        id=f"{SOURCE_ID}_{row['incident_id']}",
        type=AlertType(str(row["type"])),
        title=str(row["title"]),
        description=str(row["description"]),
        location=str(row["location"]),
        coordinates=coordinates,
        severity=Severity(str(row["severity"])),
        status=_LISTED_STATUSES[str(row["status"])],
        source=SOURCE_ID,
        sources=(SOURCE_ID,),
        affects_routes=routes,
        # Operator-entered routes did not come from the matcher.
        route_match_method=RouteMatchMethod.NONE,
        last_updated=parse_iso(str(row["updated_at"])),
        created_at=parse_iso(str(row["created_at"])),
    )
