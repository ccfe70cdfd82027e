from __future__ import annotations

import asyncio
import json
import logging
from contextlib import asynccontextmanager, suppress
from datetime import UTC, datetime
from typing import Literal

import httpx
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from app.services import Services, build_services
from app.settings import Settings
from health.health import source_health
from ingest.scheduler import run_scheduler
from ingest.streetmanager import handle_webhook_message
from normalize.models import AlertType, Severity
from store.db import open_database


logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(tz=UTC)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = Settings()
    db = open_database(settings.db_path)
    client = httpx.AsyncClient(follow_redirects=True)
    try:
        # GtfsLoadError propagates: the service does not start without GTFS.
        services = build_services(settings, db, client)
    except Exception:
        await client.aclose()
        with db.lock:
            db.conn.close()
        raise
    app.state.settings = settings
    app.state.db = db
    app.state.client = client
    app.state.services = services

    scheduler_task = asyncio.create_task(
        run_scheduler(settings=settings, aggregator=services.aggregator)
    )
    try:
        yield
    finally:
        scheduler_task.cancel()
        with suppress(asyncio.CancelledError):
            await scheduler_task
        await client.aclose()
        with db.lock:
            db.conn.close()


app = FastAPI(lifespan=lifespan)


def _services(request: Request) -> Services:
    return request.app.state.services


class IncidentIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    type: AlertType = AlertType.INCIDENT
    location: str = Field(min_length=1)
    title: str = ""
    description: str = ""
    coordinates: tuple[float, float] | None = None
    severity: Severity = Severity.MEDIUM
    status: Literal["active", "monitoring"] = "active"
    created_by: str = Field(default="control_room", alias="createdBy")
    affects_routes: list[str] = Field(default_factory=list, alias="affectsRoutes")


class OverrideIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    reason: str = "manual high-priority refresh"
    duration_minutes: int = Field(default=60, ge=1, le=720, alias="durationMinutes")


@app.get("/api/alerts")
async def api_alerts(request: Request) -> JSONResponse:
    aggregator = _services(request).aggregator
    payload = aggregator.last_payload
    if payload is None:
        payload = await aggregator.refresh()
    return JSONResponse(payload.to_dict())


@app.post("/api/alerts/refresh")
async def api_alerts_refresh(request: Request) -> JSONResponse:
    payload = await _services(request).aggregator.refresh()
    return JSONResponse(payload.to_dict())


@app.get("/api/scheduler")
def api_scheduler(request: Request) -> JSONResponse:
    scheduler = _services(request).scheduler
    now = _utc_now()
    return JSONResponse(
        {**scheduler.status(now), "schedule": scheduler.schedule(now)}
    )


@app.post("/api/scheduler/override")
def api_scheduler_override(request: Request, body: OverrideIn) -> JSONResponse:
    scheduler = _services(request).scheduler
    scheduler.enable_override(body.reason, duration_minutes=body.duration_minutes)
    return JSONResponse(scheduler.status()["override"])


@app.delete("/api/scheduler/override")
def api_scheduler_override_off(request: Request) -> JSONResponse:
    was_active = _services(request).scheduler.disable_override()
    return JSONResponse({"active": False, "wasActive": was_active})


@app.get("/api/health")
def api_health(request: Request) -> JSONResponse:
    services = _services(request)
    payload = services.aggregator.last_payload
    return JSONResponse(
        {
            "now": _utc_now().isoformat().replace("+00:00", "Z"),
            "cycle": services.aggregator.state.cycle.value,
            "cycles": services.aggregator.state.cycles,
            "lastPublished": (
                payload.last_updated.isoformat().replace("+00:00", "Z")
                if payload is not None
                else None
            ),
            "sources": source_health(request.app.state.db),
        }
    )


@app.get("/api/gtfs-status")
def api_gtfs_status(request: Request) -> JSONResponse:
    services = _services(request)
    return JSONResponse(
        {
            **services.matcher.gtfs_stats(),
            "locationStrategies": services.resolver.strategy_names,
        }
    )


@app.get("/api/incidents")
def api_incidents(request: Request) -> JSONResponse:
    return JSONResponse(_services(request).manual_incidents.list_all())


@app.post("/api/incidents")
def api_incidents_create(request: Request, body: IncidentIn) -> JSONResponse:
    lat, lng = body.coordinates if body.coordinates is not None else (None, None)
    try:
        incident = _services(request).manual_incidents.create(
            type=body.type.value,
            location=body.location,
            created_by=body.created_by,
            title=body.title,
            description=body.description,
            lat=lat,
            lng=lng,
            severity=body.severity.value,
            status=body.status,
            affects_routes=body.affects_routes,
        )
    except ValueError as e:
        return JSONResponse({"error": str(e)}, status_code=400)
    return JSONResponse(incident, status_code=201)


@app.delete("/api/incidents/{incident_id}")
def api_incidents_resolve(request: Request, incident_id: str) -> JSONResponse:
    if not _services(request).manual_incidents.resolve(incident_id):
        return JSONResponse({"error": "not_found"}, status_code=404)
    return JSONResponse({"id": incident_id, "status": "resolved"})


@app.post("/api/streetmanager/webhook")
async def api_streetmanager_webhook(request: Request) -> JSONResponse:
    # SNS posts JSON with a text/plain content type.
    try:
        message = json.loads(await request.body())
    except json.JSONDecodeError:
        return JSONResponse({"error": "invalid_json"}, status_code=400)
    if not isinstance(message, dict):
        return JSONResponse({"error": "invalid_message"}, status_code=400)

    result = await handle_webhook_message(
        message,
        store=_services(request).roadworks,
        client=request.app.state.client,
        user_agent=request.app.state.settings.user_agent,
    )
    logger.info("roadworks webhook: %s", result.get("status"))
    return JSONResponse(result, status_code=400 if result["status"] == "error" else 200)


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(level=logging.INFO)
    uvicorn.run(app, host="0.0.0.0", port=8000)
