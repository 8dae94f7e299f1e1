"""
Fleet Status Dashboard Service (FastAPI)

Purpose
=======
Track buses and their onboard devices (driver consoles, fare validators,
cameras), derive a health status for every device and bus from the raw
component readings, and show bus positions and status on a map.

Key features
------------
- Console / validator status derived on every read from component readings.
- Bus status rolled up from its devices on every read (never stored).
- Camera status written directly, validated, persisted atomically.
- Optional AVL poller keeping bus positions fresh for the map.

Run
---
$ uvicorn app:app --reload --port 8080

Environment
-----------
- PYTHON >= 3.10
- pip install -e .
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from pathlib import Path
from typing import Any, Dict, Optional

import httpx
from fastapi import Body, FastAPI, HTTPException
from fastapi.responses import HTMLResponse

from avl_client import AvlClient
from device_status import InvalidStatusError, Status
from fleet_status import marker_color
from fleet_store import FleetStore, NotFoundError

# ---------------------------
# Config
# ---------------------------
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger("fleet_dashboard")

DATA_DIR = Path(os.getenv("DATA_DIR", "/data"))
FLEET_PATH = Path(os.getenv("FLEET_PATH", str(DATA_DIR / "fleet.json")))

AVL_REFRESH_S = float(os.getenv("AVL_REFRESH_S", "10"))

# Palma de Mallorca
MAP_CENTER_LAT = float(os.getenv("MAP_CENTER_LAT", "39.5789"))
MAP_CENTER_LON = float(os.getenv("MAP_CENTER_LON", "2.6445"))

fleet_store = FleetStore(FLEET_PATH)


# ---------------------------
# App & state
# ---------------------------
app = FastAPI(title="Fleet Status Dashboard")


class State:
    def __init__(self):
        self.lock = asyncio.Lock()
        self.last_error: str = ""
        self.last_error_ts: float = 0.0
        self.last_avl_ts: float = 0.0
        self.avl_task: Optional[asyncio.Task] = None


state = State()


async def _record_error(message: str) -> None:
    async with state.lock:
        state.last_error = message
        state.last_error_ts = time.time()


async def poll_avl_once(client: AvlClient, store: FleetStore) -> int:
    """Fetch one round of positions and apply them to known buses."""
    positions = await client.get_positions()
    applied, skipped = await store.update_bus_positions(p.as_fix() for p in positions)
    if skipped:
        logger.debug("AVL positions for unknown buses skipped: %s", ", ".join(skipped))
    async with state.lock:
        state.last_avl_ts = time.time()
        state.last_error = ""
        state.last_error_ts = 0.0
    return applied


async def run_avl_poll(client: AvlClient, store: FleetStore) -> int:
    """One poller iteration; failures are logged and surfaced through health."""
    try:
        applied = await poll_avl_once(client, store)
    except (httpx.HTTPError, ValueError) as exc:
        logger.warning("AVL poll failed: %s", exc)
        await _record_error(f"avl: {exc}")
        return 0
    except Exception as exc:
        logger.exception("AVL poll crashed")
        await _record_error(f"avl: {exc!r}")
        return 0
    logger.debug("AVL poll applied %d positions", applied)
    return applied


async def avl_poller(client: AvlClient) -> None:
    await asyncio.sleep(0.1)
    while True:
        start = time.time()
        await run_avl_poll(client, fleet_store)
        dt = max(0.5, AVL_REFRESH_S - (time.time() - start))
        await asyncio.sleep(dt)


@app.on_event("startup")
async def init_avl_client() -> None:
    try:
        app.state.avl_client = AvlClient.from_env()
    except RuntimeError as exc:
        logger.info("AVL feed not configured: %s", exc)
        app.state.avl_client = None
        return
    state.avl_task = asyncio.create_task(avl_poller(app.state.avl_client))


@app.on_event("shutdown")
async def shutdown_avl_client() -> None:
    task = state.avl_task
    if task is not None:
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        state.avl_task = None
    client = getattr(app.state, "avl_client", None)
    if client is not None:
        await client.aclose()


BASE_DIR = Path(__file__).resolve().parent
HTML_DIR = BASE_DIR / "html"


def _load_html(name: str) -> str:
    return (HTML_DIR / name).read_text(encoding="utf-8")


MAP_HTML = (
    _load_html("map.html")
    .replace("{{MAP_CENTER_LAT}}", repr(MAP_CENTER_LAT))
    .replace("{{MAP_CENTER_LON}}", repr(MAP_CENTER_LON))
)


# ---------------------------
# Helpers
# ---------------------------
def _status_filter(value: Optional[str]) -> Optional[Status]:
    """Listing filter; values outside the enumeration mean no filter."""
    if not value:
        return None
    try:
        return Status(value.strip().upper())
    except ValueError:
        return None


def _require_body(payload: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    if not payload:
        raise HTTPException(status_code=400, detail="JSON object body required")
    return payload


def _not_found(exc: NotFoundError) -> HTTPException:
    return HTTPException(status_code=404, detail=f"{exc.kind} not found")


@app.get("/api/health")
async def health():
    async with state.lock:
        ok = not bool(state.last_error)
        body = {
            "ok": ok,
            "last_error": (state.last_error or None),
            "last_error_ts": (state.last_error_ts or None),
            "last_avl_ts": (state.last_avl_ts or None),
        }
    body["fleet"] = await fleet_store.counts()
    return body


# ---------------------------
# REST: Buses
# ---------------------------
@app.get("/api/buses")
async def list_buses(status: Optional[str] = None):
    buses = await fleet_store.list_buses(_status_filter(status))
    return {"buses": buses}


@app.get("/api/buses/{bus_id}")
async def get_bus(bus_id: str):
    try:
        bus = await fleet_store.get_bus(bus_id)
    except NotFoundError as exc:
        raise _not_found(exc) from exc
    return {"bus": bus}


# ---------------------------
# REST: Consoles
# ---------------------------
@app.get("/api/consoles")
async def list_consoles(status: Optional[str] = None):
    consoles = await fleet_store.list_consoles(_status_filter(status))
    return {"consoles": consoles}


@app.get("/api/consoles/{console_id}")
async def get_console(console_id: str):
    try:
        console = await fleet_store.get_console(console_id)
    except NotFoundError as exc:
        raise _not_found(exc) from exc
    return {"console": console}


@app.put("/api/consoles/{console_id}/status")
async def update_console_status(console_id: str, payload: Optional[Dict[str, Any]] = Body(None)):
    payload = _require_body(payload)
    try:
        console = await fleet_store.update_console_status(console_id, payload.get("status"))
    except NotFoundError as exc:
        raise _not_found(exc) from exc
    except InvalidStatusError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"console": console}


@app.put("/api/consoles/{console_id}/components")
async def update_console_components(console_id: str, payload: Optional[Dict[str, Any]] = Body(None)):
    payload = _require_body(payload)
    try:
        console = await fleet_store.update_console_components(console_id, payload)
    except NotFoundError as exc:
        raise _not_found(exc) from exc
    except InvalidStatusError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"console": console}


# ---------------------------
# REST: Validators
# ---------------------------
@app.get("/api/validators")
async def list_validators(status: Optional[str] = None):
    validators = await fleet_store.list_validators(_status_filter(status))
    return {"validators": validators}


@app.get("/api/validators/{validator_id}")
async def get_validator(validator_id: str):
    try:
        validator = await fleet_store.get_validator(validator_id)
    except NotFoundError as exc:
        raise _not_found(exc) from exc
    return {"validator": validator}


@app.put("/api/validators/{validator_id}/status")
async def update_validator_status(validator_id: str, payload: Optional[Dict[str, Any]] = Body(None)):
    payload = _require_body(payload)
    try:
        validator = await fleet_store.update_validator_status(validator_id, payload.get("status"))
    except NotFoundError as exc:
        raise _not_found(exc) from exc
    except InvalidStatusError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"validator": validator}


@app.put("/api/validators/{validator_id}/components")
async def update_validator_components(validator_id: str, payload: Optional[Dict[str, Any]] = Body(None)):
    payload = _require_body(payload)
    try:
        validator = await fleet_store.update_validator_components(validator_id, payload)
    except NotFoundError as exc:
        raise _not_found(exc) from exc
    except InvalidStatusError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"validator": validator}


# ---------------------------
# REST: Cameras
# ---------------------------
@app.get("/api/cameras")
async def list_cameras(status: Optional[str] = None):
    cameras = await fleet_store.list_cameras(_status_filter(status))
    return {"cameras": cameras}


@app.get("/api/cameras/{camera_id}")
async def get_camera(camera_id: str):
    try:
        camera = await fleet_store.get_camera(camera_id)
    except NotFoundError as exc:
        raise _not_found(exc) from exc
    return {"camera": camera}


@app.put("/api/cameras/{camera_id}/status")
async def update_camera_status(camera_id: str, payload: Optional[Dict[str, Any]] = Body(None)):
    payload = _require_body(payload)
    try:
        camera = await fleet_store.update_camera_status(camera_id, payload.get("status"))
    except NotFoundError as exc:
        raise _not_found(exc) from exc
    except InvalidStatusError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"camera": camera}


# ---------------------------
# MAP
# ---------------------------
@app.get("/api/map/buses")
async def map_buses():
    """Marker payload for the map: positioned buses with their status color."""
    markers = []
    for bus in await fleet_store.list_buses():
        if bus.get("latitude") is None or bus.get("longitude") is None:
            continue
        markers.append({
            "id": bus["id"],
            "name": bus.get("name"),
            "latitude": bus["latitude"],
            "longitude": bus["longitude"],
            "updated_at": bus.get("updated_at"),
            "status": bus["status"],
            "color": marker_color(bus["status"]),
        })
    return {"buses": markers}


@app.get("/map")
async def map_page():
    return HTMLResponse(MAP_HTML)
