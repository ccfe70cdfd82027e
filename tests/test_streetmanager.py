import asyncio
import json
from datetime import UTC, datetime, timedelta

import httpx

from ingest.streetmanager import RoadworksStore, handle_webhook_message
from store.db import open_database


T0 = datetime(2026, 10, 16, 7, 0, tzinfo=UTC)


def _notification(reference: str, event_type: str = "PERMIT_SUBMITTED", **extra) -> dict:
    return {
        "Type": "Notification",
        "Message": json.dumps(
            {
                "object_type": "PERMIT",
                "event_type": event_type,
                "object_reference": reference,
                "object_data": {"street_name": "Grey Street", "area_name": "Newcastle"},
                **extra,
            }
        ),
    }


def _handle(store: RoadworksStore, message: dict, handler=None, now=T0) -> dict:
    async def run() -> dict:
        transport = httpx.MockTransport(handler or (lambda r: httpx.Response(200)))
        async with httpx.AsyncClient(transport=transport) as client:
            return await handle_webhook_message(
                message, store=store, client=client, user_agent="test-agent", now=now
            )

    return asyncio.run(run())


def test_notification_is_stored_and_latest_event_wins(tmp_path) -> None:
    db = open_database(tmp_path / "test.db")
    try:
        store = RoadworksStore(db)
        first = _handle(store, _notification("NC-1"))
        assert first["status"] == "processed"
        assert first["type"] == "PERMIT"

        _handle(store, _notification("NC-1", "PERMIT_GRANTED"), now=T0 + timedelta(minutes=5))
        recent = store.list_recent()
        assert len(recent) == 1
        assert recent[0]["event_type"] == "PERMIT_GRANTED"
        assert recent[0]["data"]["object_reference"] == "NC-1"
        assert store.counts() == {"PERMIT": 2}
    finally:
        with db.lock:
            db.conn.close()


def test_store_keeps_most_recent_per_object_type(tmp_path) -> None:
    db = open_database(tmp_path / "test.db")
    try:
        store = RoadworksStore(db, keep=3)
        for i in range(5):
            store.add(
                object_type="PERMIT",
                event_type="PERMIT_SUBMITTED",
                data={"object_reference": f"P-{i}"},
                received_at=T0 + timedelta(minutes=i),
            )
        store.add(
            object_type="ACTIVITY",
            event_type="ACTIVITY_CREATED",
            data={"object_reference": "A-1"},
            received_at=T0,
        )
        assert store.counts() == {"PERMIT": 3, "ACTIVITY": 1}
        references = [r["data"]["object_reference"] for r in store.list_recent()]
        assert sorted(references) == ["A-1", "P-2", "P-3", "P-4"]
    finally:
        with db.lock:
            db.conn.close()


def test_other_object_types_are_ignored(tmp_path) -> None:
    db = open_database(tmp_path / "test.db")
    try:
        store = RoadworksStore(db)
        message = _notification("S-1", object_type="SECTION_58")
        assert _handle(store, message) == {"status": "ignored", "type": "SECTION_58"}
        assert _handle(store, {"Type": "UnsubscribeConfirmation"})["status"] == "ignored"
        assert store.list_recent() == []
    finally:
        with db.lock:
            db.conn.close()


def test_malformed_notification(tmp_path) -> None:
    db = open_database(tmp_path / "test.db")
    try:
        store = RoadworksStore(db)
        result = _handle(store, {"Type": "Notification", "Message": "not json"})
        assert result == {"status": "error", "reason": "parse_error"}
    finally:
        with db.lock:
            db.conn.close()


def test_subscription_confirmation_only_follows_aws_urls(tmp_path) -> None:
    db = open_database(tmp_path / "test.db")
    try:
        store = RoadworksStore(db)
        calls: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(str(request.url))
            return httpx.Response(200, text="<ConfirmSubscriptionResponse/>")

        ok = _handle(
            store,
            {
                "Type": "SubscriptionConfirmation",
                "SubscribeURL": "https://sns.eu-west-2.amazonaws.com/?Action=ConfirmSubscription",
            },
            handler,
        )
        assert ok == {"status": "subscription_confirmed"}

        for url in ("http://sns.eu-west-2.amazonaws.com/", "https://amazonaws.com.evil.test/"):
            result = _handle(
                store, {"Type": "SubscriptionConfirmation", "SubscribeURL": url}, handler
            )
            assert result["status"] == "rejected"
        assert len(calls) == 1
    finally:
        with db.lock:
            db.conn.close()


def test_subscription_confirmation_upstream_error(tmp_path) -> None:
    db = open_database(tmp_path / "test.db")
    try:
        result = _handle(
            RoadworksStore(db),
            {
                "Type": "SubscriptionConfirmation",
                "SubscribeURL": "https://sns.eu-west-2.amazonaws.com/confirm",
            },
            lambda r: httpx.Response(403),
        )
        assert result == {"status": "error", "reason": "http_403"}
    finally:
        with db.lock:
            db.conn.close()
