from __future__ import annotations

import sqlite3
import threading
from dataclasses import dataclass
from pathlib import Path


@dataclass(frozen=True)
class Database:
    conn: sqlite3.Connection
    lock: threading.Lock


_MIGRATIONS: list[tuple[int, str]] = [
    (
        1,
        """
        CREATE TABLE IF NOT EXISTS schema_migrations (
          version INTEGER NOT NULL PRIMARY KEY
        );

        CREATE TABLE IF NOT EXISTS polling_state (
          source_id TEXT NOT NULL PRIMARY KEY,
          calls_today INTEGER NOT NULL DEFAULT 0,
          window_date TEXT NOT NULL,
          last_call_at TEXT NULL
        );

        CREATE TABLE IF NOT EXISTS source_health (
          source_id TEXT NOT NULL PRIMARY KEY,
          last_attempt_at TEXT NULL,
          last_success_at TEXT NULL,
          last_error_at TEXT NULL,
          last_error TEXT NULL,
          last_count INTEGER NOT NULL DEFAULT 0,
          last_method TEXT NULL,
          consecutive_failures INTEGER NOT NULL DEFAULT 0,
          success_count INTEGER NOT NULL DEFAULT 0,
          error_count INTEGER NOT NULL DEFAULT 0
        );
        """,
    ),
    (
        2,
        """
        CREATE TABLE IF NOT EXISTS manual_incidents (
          incident_id TEXT NOT NULL PRIMARY KEY,
          type TEXT NOT NULL,
          title TEXT NOT NULL,
          description TEXT NOT NULL DEFAULT '',
          location TEXT NOT NULL,
          lat REAL NULL,
          lng REAL NULL,
          severity TEXT NOT NULL,
          status TEXT NOT NULL,
          affects_routes TEXT NOT NULL DEFAULT '[]',
          created_by TEXT NOT NULL,
          created_at TEXT NOT NULL,
          updated_at TEXT NOT NULL,
          start_time TEXT NULL,
          end_time TEXT NULL
        );

        CREATE INDEX IF NOT EXISTS manual_incidents_status_idx ON manual_incidents(status);
        """,
    ),
    (
        3,
        """
        CREATE TABLE IF NOT EXISTS roadworks_notifications (
          notification_id TEXT NOT NULL PRIMARY KEY,
          object_type TEXT NOT NULL,
          event_type TEXT NOT NULL,
          payload TEXT NOT NULL,
          received_at TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS roadworks_notifications_type_received_idx
          ON roadworks_notifications(object_type, received_at);
        """,
    ),
]


def open_database(path: Path) -> Database:
    path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(path, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA synchronous=NORMAL;")
    conn.execute("PRAGMA foreign_keys=ON;")
    conn.execute("PRAGMA busy_timeout=5000;")
    _apply_migrations(conn)
    return Database(conn=conn, lock=threading.Lock())


def _apply_migrations(conn: sqlite3.Connection) -> None:
    conn.execute(
        "CREATE TABLE IF NOT EXISTS schema_migrations (version INTEGER NOT NULL PRIMARY KEY);"
    )
    row = conn.execute(
        "SELECT COALESCE(MAX(version), 0) AS v FROM schema_migrations;"
    ).fetchone()
    current_version = int(row["v"])

    for version, sql in _MIGRATIONS:
        if version <= current_version:
            continue
        conn.executescript(sql)
        conn.execute("INSERT INTO schema_migrations(version) VALUES (?);", (version,))
        conn.commit()
