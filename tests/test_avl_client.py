import asyncio
import json
import sys
from pathlib import Path

import httpx
import pytest

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

import app as app_module  # noqa: E402
from avl_client import AvlClient, parse_positions  # noqa: E402
from fleet_store import FleetStore  # noqa: E402


def test_parse_plain_list():
    positions = parse_positions(
        [
            {"bus_id": 12, "latitude": "39.57", "longitude": 2.64, "updated_at": "2024-05-01T10:00:00Z"},
            {"id": "13", "lat": 39.6, "lon": 2.7, "ts": 1714557600},
        ]
    )
    assert [p.bus_id for p in positions] == ["12", "13"]
    assert positions[0].latitude == 39.57
    assert positions[0].updated_at == "2024-05-01T10:00:00Z"
    assert positions[1].updated_at == "2024-05-01T10:00:00Z"


def test_parse_wrapped_payload_and_milliseconds():
    payload = {"d": [{"VehicleID": "7", "Latitude": 39.5, "Longitude": 2.6, "Timestamp": 1714557600000}]}
    (position,) = parse_positions(payload)
    assert position.bus_id == "7"
    assert position.updated_at == "2024-05-01T10:00:00Z"


def test_parse_skips_malformed_records():
    payload = {
        "vehicles": [
            {"bus_id": "1", "latitude": 95.0, "longitude": 2.6},
            {"bus_id": "2", "latitude": "nan", "longitude": 2.6},
            {"latitude": 39.5, "longitude": 2.6},
            "garbage",
            {"bus_id": "3", "latitude": 39.5, "longitude": 2.6, "ts": "not a time"},
        ]
    }
    positions = parse_positions(payload)
    assert [p.bus_id for p in positions] == ["3"]
    assert positions[0].updated_at is None


def test_parse_unknown_shape_is_empty():
    assert parse_positions({"unexpected": True}) == []
    assert parse_positions(None) == []


def test_from_env_requires_url(monkeypatch):
    monkeypatch.delenv("AVL_POSITIONS_URL", raising=False)
    with pytest.raises(RuntimeError):
        AvlClient.from_env()


def test_get_positions_sends_token():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["auth"] = request.headers.get("Authorization")
        return httpx.Response(200, json=[{"bus_id": "1", "latitude": 39.5, "longitude": 2.6}])

    async def run():
        client = AvlClient(
            "https://avl.example.com/positions",
            api_key="secret",
            transport=httpx.MockTransport(handler),
        )
        try:
            return await client.get_positions()
        finally:
            await client.aclose()

    positions = asyncio.run(run())
    assert seen["auth"] == "Token secret"
    assert positions[0].bus_id == "1"


def test_get_positions_raises_on_http_error():
    transport = httpx.MockTransport(lambda request: httpx.Response(503))

    async def run():
        client = AvlClient("https://avl.example.com/positions", transport=transport)
        try:
            await client.get_positions()
        finally:
            await client.aclose()

    with pytest.raises(httpx.HTTPStatusError):
        asyncio.run(run())


def test_poll_applies_known_buses_only(tmp_path, monkeypatch):
    data_path = tmp_path / "fleet.json"
    data_path.write_text(json.dumps({"buses": [{"id": "1"}, {"id": "2"}]}))
    store = FleetStore(data_path)
    monkeypatch.setattr(app_module, "state", app_module.State())

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            json={
                "d": [
                    {"bus_id": "1", "latitude": 39.57, "longitude": 2.64},
                    {"bus_id": "404", "latitude": 39.58, "longitude": 2.65},
                ]
            },
        )

    async def run():
        client = AvlClient("https://avl.example.com/positions", transport=httpx.MockTransport(handler))
        try:
            return await app_module.poll_avl_once(client, store)
        finally:
            await client.aclose()

    assert asyncio.run(run()) == 1
    bus = asyncio.run(store.get_bus("1"))
    assert bus["latitude"] == 39.57
    assert bus["updated_at"] is not None
    assert asyncio.run(store.get_bus("2"))["latitude"] is None
    assert app_module.state.last_avl_ts > 0


def test_persistence_failure_is_recorded(tmp_path, monkeypatch):
    data_path = tmp_path / "fleet.json"
    data_path.write_text(json.dumps({"buses": [{"id": "1"}]}))
    store = FleetStore(data_path)
    monkeypatch.setattr(app_module, "state", app_module.State())

    async def failing_persist(payload):
        raise FileExistsError(17, "File exists")

    monkeypatch.setattr(store, "_persist", failing_persist)

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=[{"bus_id": "1", "latitude": 39.57, "longitude": 2.64}])

    async def run():
        client = AvlClient("https://avl.example.com/positions", transport=httpx.MockTransport(handler))
        try:
            return await app_module.run_avl_poll(client, store)
        finally:
            await client.aclose()

    assert asyncio.run(run()) == 0
    assert "File exists" in app_module.state.last_error
    assert app_module.state.last_error_ts > 0
    assert asyncio.run(store.get_bus("1"))["latitude"] is None


def test_feed_error_is_recorded(monkeypatch, tmp_path):
    store = FleetStore(tmp_path / "fleet.json")
    monkeypatch.setattr(app_module, "state", app_module.State())
    transport = httpx.MockTransport(lambda request: httpx.Response(502))

    async def run():
        client = AvlClient("https://avl.example.com/positions", transport=transport)
        try:
            return await app_module.run_avl_poll(client, store)
        finally:
            await client.aclose()

    assert asyncio.run(run()) == 0
    assert app_module.state.last_error.startswith("avl:")
