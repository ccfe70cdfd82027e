from __future__ import annotations

from datetime import UTC, datetime

from normalize.models import SourceResult, iso_z
from store.db import Database


def _utc_now_iso() -> str:
    return datetime.now(tz=UTC).isoformat().replace("+00:00", "Z")


def record_source_success(
    db: Database,
    *,
    source_id: str,
    count: int,
    method: str,
    at: str | None = None,
) -> None:
    now_iso = at or _utc_now_iso()
    with db.lock:
        db.conn.execute(
            """
            INSERT INTO source_health(
              source_id, last_attempt_at, last_success_at, last_count, last_method,
              consecutive_failures, success_count
            )
            VALUES (?, ?, ?, ?, ?, 0, 1)
            ON CONFLICT(source_id) DO UPDATE SET
              last_attempt_at = excluded.last_attempt_at,
              last_success_at = excluded.last_success_at,
              last_count = excluded.last_count,
              last_method = excluded.last_method,
              consecutive_failures = 0,
              success_count = source_health.success_count + 1;
            """,
            (source_id, now_iso, now_iso, count, method),
        )
        db.conn.commit()


def record_source_error(
    db: Database,
    *,
    source_id: str,
    error: str,
    method: str,
    at: str | None = None,
) -> int:
    """Record a failed attempt; returns the new consecutive failure count."""
    now_iso = at or _utc_now_iso()
    with db.lock:
        db.conn.execute(
            """
            INSERT INTO source_health(
              source_id, last_attempt_at, last_error_at, last_error, last_method,
              consecutive_failures, error_count
            )
            VALUES (?, ?, ?, ?, ?, 1, 1)
            ON CONFLICT(source_id) DO UPDATE SET
              last_attempt_at = excluded.last_attempt_at,
              last_error_at = excluded.last_error_at,
              last_error = excluded.last_error,
              last_method = excluded.last_method,
              last_count = 0,
              consecutive_failures = source_health.consecutive_failures + 1,
              error_count = source_health.error_count + 1;
            """,
            (source_id, now_iso, now_iso, error, method),
        )
        row = db.conn.execute(
            "SELECT consecutive_failures FROM source_health WHERE source_id = ?;",
            (source_id,),
        ).fetchone()
        db.conn.commit()
    return int(row["consecutive_failures"])


def record_source_result(
    db: Database, *, source_id: str, result: SourceResult, at: datetime
) -> None:
    if result.success:
        record_source_success(
            db,
            source_id=source_id,
            count=result.count,
            method=result.method,
            at=iso_z(at),
        )
    else:
        record_source_error(
            db,
            source_id=source_id,
            error=result.error or "unknown_error",
            method=result.method,
            at=iso_z(at),
        )


def source_health(db: Database) -> list[dict]:
    with db.lock:
        rows = db.conn.execute(
            """
            SELECT source_id, last_attempt_at, last_success_at, last_error_at, last_error,
                   last_count, last_method, consecutive_failures, success_count, error_count
            FROM source_health
            ORDER BY source_id ASC;
            """
        ).fetchall()
    return [
        {
            "source_id": str(r["source_id"]),
            "last_attempt_at": r["last_attempt_at"],
            "last_success_at": r["last_success_at"],
            "last_error_at": r["last_error_at"],
            "last_error": r["last_error"],
            "last_count": int(r["last_count"]),
            "last_method": r["last_method"],
            "consecutive_failures": int(r["consecutive_failures"]),
            "success_count": int(r["success_count"]),
            "error_count": int(r["error_count"]),
            "degraded": int(r["consecutive_failures"]) > 0,
        }
        for r in rows
    ]
