"""
CTA Fleet Stats Service - BusTime proxy API (FastAPI)

Purpose
=======
Proxy the CTA BusTime API for the map front end: route list, live vehicle
positions, and a per-route count of active buses split into north/east and
south/west bound.

Key features
------------
- Route list and vehicle positions decoded into stable camelCase records.
- Fleet-wide vehicle fetch batched ten routes per upstream call.
- Route statistics joining the route list with every active vehicle.
- Upstream call counting in a local SQLite file.

Run
---
$ uvicorn app:app --port ${PORT:-8080}

Environment
-----------
- PYTHON >= 3.10
- CTA_API_KEY (required), CTA_ROUTES_URL, CTA_VEHICLES_URL, CTA_HTTP_TIMEOUT_S
- API_TRACKER_DB_PATH (default data/api_tracker.db)
"""

from __future__ import annotations
from typing import List, Optional
import os
import sqlite3
from pathlib import Path

from fastapi import FastAPI, HTTPException, Request, Query
from fastapi.responses import JSONResponse, PlainTextResponse

from api_call_tracker import APICallTracker, open_tracker
from bustime_client import (
    MAX_ROUTES_PER_REQUEST,
    BusTimeClient,
    BusTimeError,
    ConfigurationError,
    UpstreamReportedError,
)
from fleet_service import FleetService

# ---------------------------
# Config
# ---------------------------
API_TRACKER_DB_PATH = Path(
    os.getenv("API_TRACKER_DB_PATH") or str(Path("data") / "api_tracker.db")
)
RT_PARAM_REQUIRED = "query parameter 'rt' is required (comma-separated route designators)"

# ---------------------------
# App & state
# ---------------------------
app = FastAPI(title="CTA Fleet Stats")


@app.on_event("startup")
async def init_tracker() -> None:
    app.state.api_tracker = open_tracker(API_TRACKER_DB_PATH)


@app.on_event("startup")
async def init_bustime_client() -> None:
    app.state.config_error = None
    app.state.fleet_service = None
    try:
        client = BusTimeClient.from_env(tracker=getattr(app.state, "api_tracker", None))
    except ConfigurationError as exc:
        print(f"[startup] BusTime client not configured: {exc}")
        app.state.bustime_client = None
        app.state.config_error = exc.message
        return
    app.state.bustime_client = client
    app.state.fleet_service = FleetService(client)


@app.on_event("shutdown")
async def shutdown_clients() -> None:
    client = getattr(app.state, "bustime_client", None)
    if client is not None:
        await client.aclose()
    tracker = getattr(app.state, "api_tracker", None)
    if tracker is not None:
        tracker.close()


@app.exception_handler(BusTimeError)
async def bustime_error_handler(request: Request, exc: BusTimeError):
    print(f"[api] {request.method} {request.url.path} failed: {exc.message}")
    if isinstance(exc, UpstreamReportedError) and exc.payload is not None:
        return JSONResponse(exc.payload, status_code=exc.status_code)
    return JSONResponse({"detail": exc.message}, status_code=exc.status_code)


def _fleet_service() -> FleetService:
    service = getattr(app.state, "fleet_service", None)
    if service is None:
        detail = getattr(app.state, "config_error", None) or "BusTime client unavailable"
        raise HTTPException(status_code=503, detail=detail)
    return service


def _parse_route_param(rt: Optional[str]) -> List[str]:
    text = (rt or "").strip()
    route_ids = [part.strip() for part in text.split(",") if part.strip()]
    if not route_ids:
        raise HTTPException(status_code=400, detail=RT_PARAM_REQUIRED)
    if len(route_ids) > MAX_ROUTES_PER_REQUEST:
        raise HTTPException(
            status_code=400,
            detail=f"a maximum of {MAX_ROUTES_PER_REQUEST} routes can be requested at once",
        )
    return route_ids


# ---------------------------
# REST
# ---------------------------
@app.get("/", response_class=PlainTextResponse)
async def health():
    return "CTA backend is running"


@app.get("/api/routes")
async def get_routes():
    routes = await _fleet_service().get_routes()
    return [r.to_dict() for r in routes]


@app.get("/api/routes/stats")
async def get_route_stats():
    stats = await _fleet_service().get_route_stats()
    return [s.to_dict() for s in stats]


@app.get("/api/vehicles/locations")
async def get_vehicle_locations(rt: Optional[str] = Query(None)):
    route_ids = _parse_route_param(rt)
    vehicles = await _fleet_service().get_vehicles(route_ids)
    return [v.to_dict() for v in vehicles]


@app.get("/api/vehicles/all")
async def get_all_vehicle_locations():
    vehicles = await _fleet_service().get_all_vehicles()
    return [v.to_dict() for v in vehicles]


@app.get("/api/tracking/counts")
async def get_api_call_counts():
    tracker: Optional[APICallTracker] = getattr(app.state, "api_tracker", None)
    if tracker is None:
        raise HTTPException(status_code=503, detail="API call tracking unavailable")
    try:
        return tracker.summary()
    except (sqlite3.Error, RuntimeError) as exc:
        print(f"[tracker] count query failed: {exc}")
        raise HTTPException(status_code=503, detail="API call tracking unavailable") from exc
