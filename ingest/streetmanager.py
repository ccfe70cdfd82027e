from __future__ import annotations

import json
import logging
import uuid
from datetime import UTC, datetime
from urllib.parse import urlsplit

import httpx

from ingest.fetch import request_timeout
from normalize.models import iso_z
from store.db import Database


logger = logging.getLogger(__name__)


KEEP_PER_OBJECT_TYPE = 100
OBJECT_TYPES = {"PERMIT", "ACTIVITY"}


class RoadworksStore:
    """Most recent roadworks notifications, bounded per object type."""

    def __init__(self, db: Database, *, keep: int = KEEP_PER_OBJECT_TYPE) -> None:
        self.db = db
        self.keep = keep

    def add(
        self,
        *,
        object_type: str,
        event_type: str,
        data: dict,
        notification_id: str | None = None,
        received_at: datetime | None = None,
    ) -> str:
        reference = str(data.get("object_reference") or "").strip()
        notification_id = notification_id or (
            f"{object_type.casefold()}_{reference}_{event_type.casefold()}"
            if reference
            else uuid.uuid4().hex
        )
        received_iso = iso_z(received_at or datetime.now(tz=UTC))
        with self.db.lock:
            self.db.conn.execute(
                """
                INSERT INTO roadworks_notifications(
                  notification_id, object_type, event_type, payload, received_at
                )
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(notification_id) DO UPDATE SET
                  payload = excluded.payload,
                  received_at = excluded.received_at;
                """,
                (notification_id, object_type, event_type, json.dumps(data), received_iso),
            )
            self.db.conn.execute(
                """
                DELETE FROM roadworks_notifications
                WHERE object_type = ?
                  AND notification_id NOT IN (
                    SELECT notification_id FROM roadworks_notifications
                    WHERE object_type = ?
                    ORDER BY received_at DESC, notification_id DESC
                    LIMIT ?
                  );
                """,
                (object_type, object_type, self.keep),
            )
            self.db.conn.commit()
        return notification_id

    def list_recent(self) -> list[dict]:
        """Latest notification per referenced work, oldest first."""
        with self.db.lock:
            rows = self.db.conn.execute(
                """
                SELECT notification_id, object_type, event_type, payload, received_at
                FROM roadworks_notifications
                ORDER BY received_at ASC, notification_id ASC;
                """
            ).fetchall()

        latest: dict[str, dict] = {}
        for row in rows:
            data = json.loads(row["payload"])
            reference = str(data.get("object_reference") or row["notification_id"])
            latest[f"{row['object_type']}:{reference}"] = {
                "notification_id": str(row["notification_id"]),
                "object_type": str(row["object_type"]),
                "event_type": str(row["event_type"]),
                "received_at": str(row["received_at"]),
                "data": data,
            }
        return list(latest.values())

    def counts(self) -> dict[str, int]:
        with self.db.lock:
            rows = self.db.conn.execute(
                """
                SELECT object_type, COUNT(*) AS n
                FROM roadworks_notifications
                GROUP BY object_type;
                """
            ).fetchall()
        return {str(r["object_type"]): int(r["n"]) for r in rows}


def _confirmable(url: str) -> bool:
    parts = urlsplit(url)
    return parts.scheme == "https" and parts.netloc.casefold().endswith(".amazonaws.com")


async def handle_webhook_message(
    message: dict,
    *,
    store: RoadworksStore,
    client: httpx.AsyncClient,
    user_agent: str,
    now: datetime | None = None,
) -> dict:
    """Handle one SNS-style message posted by the roadworks notification feed."""
    kind = str(message.get("Type") or "")

    if kind == "SubscriptionConfirmation":
        url = str(message.get("SubscribeURL") or "")
        if not _confirmable(url):
            logger.warning("refusing subscription confirmation to %r", url)
            return {"status": "rejected", "reason": "invalid_subscribe_url"}
        try:
            res = await client.get(
                url, headers={"User-Agent": user_agent}, timeout=request_timeout(10.0)
            )
        except httpx.TimeoutException:
            return {"status": "error", "reason": "timeout"}
        except httpx.RequestError as e:
            return {"status": "error", "reason": f"request_error:{e.__class__.__name__}"}
        if res.status_code != 200:
            return {"status": "error", "reason": f"http_{res.status_code}"}
        logger.info("roadworks subscription confirmed")
        return {"status": "subscription_confirmed"}

    if kind == "Notification":
        try:
            data = json.loads(str(message.get("Message") or ""))
        except json.JSONDecodeError:
            return {"status": "error", "reason": "parse_error"}
        if not isinstance(data, dict):
            return {"status": "error", "reason": "parse_error"}
        object_type = str(data.get("object_type") or "").upper()
        if object_type not in OBJECT_TYPES:
            return {"status": "ignored", "type": object_type or None}
        notification_id = store.add(
            object_type=object_type,
            event_type=str(data.get("event_type") or "UNKNOWN"),
            data=data,
            notification_id=(str(message["MessageId"]) if message.get("MessageId") else None),
            received_at=now,
        )
        return {"status": "processed", "type": object_type, "id": notification_id}

    return {"status": "ignored", "type": kind or None}
