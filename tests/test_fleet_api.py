import json
import sys
from pathlib import Path

import pytest
from fastapi.testclient import TestClient


ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

import app as app_module  # noqa: E402
from fleet_store import FleetStore  # noqa: E402


FLEET = {
    "buses": [
        {"id": "1", "name": "Line 1", "latitude": 39.57, "longitude": 2.64, "updated_at": "2024-05-01T09:00:00Z"},
        {"id": "2", "name": "Line 2", "latitude": 39.58, "longitude": 2.65},
        {"id": "3", "name": "Depot"},
    ],
    "consoles": [
        {"id": "c1", "bus_id": "1"},
        {"id": "c2", "bus_id": "2", "modem_status": "KO"},
    ],
    "validators": [
        {"id": "v1", "bus_id": "1", "rfid_status": "OK", "emv_status": "OK"},
        {"id": "v2", "bus_id": "3", "rfid_status": "KO", "emv_status": "OK"},
    ],
    "cameras": [
        {"id": "k1", "bus_id": "1", "status": "OK"},
    ],
}


@pytest.fixture()
def fleet_client(tmp_path, monkeypatch):
    data_path = tmp_path / "fleet.json"
    data_path.write_text(json.dumps(FLEET))
    store = FleetStore(data_path)
    monkeypatch.setattr(app_module, "fleet_store", store, raising=False)
    client = TestClient(app_module.app)
    try:
        yield client, data_path
    finally:
        client.close()


def test_list_buses_with_rollup(fleet_client):
    client, _ = fleet_client
    response = client.get("/api/buses")
    assert response.status_code == 200
    statuses = {bus["id"]: bus["status"] for bus in response.json()["buses"]}
    assert statuses == {"1": "OK", "2": "KO", "3": "WARNING"}


def test_status_filter_is_case_insensitive(fleet_client):
    client, _ = fleet_client
    response = client.get("/api/buses", params={"status": "ko"})
    assert [bus["id"] for bus in response.json()["buses"]] == ["2"]


def test_unknown_status_filter_returns_everything(fleet_client):
    client, _ = fleet_client
    response = client.get("/api/buses", params={"status": "bogus"})
    assert len(response.json()["buses"]) == 3


def test_device_listing_filters(fleet_client):
    client, _ = fleet_client
    consoles = client.get("/api/consoles", params={"status": "OK"}).json()["consoles"]
    assert [c["id"] for c in consoles] == ["c1"]
    validators = client.get("/api/validators", params={"status": "warning"}).json()["validators"]
    assert [v["id"] for v in validators] == ["v2"]
    cameras = client.get("/api/cameras").json()["cameras"]
    assert [c["id"] for c in cameras] == ["k1"]


def test_get_bus_includes_devices(fleet_client):
    client, _ = fleet_client
    bus = client.get("/api/buses/1").json()["bus"]
    assert [c["id"] for c in bus["consoles"]] == ["c1"]
    assert [v["id"] for v in bus["validators"]] == ["v1"]
    assert [c["id"] for c in bus["cameras"]] == ["k1"]


@pytest.mark.parametrize(
    "path, detail",
    [
        ("/api/buses/99", "bus not found"),
        ("/api/consoles/99", "console not found"),
        ("/api/validators/99", "validator not found"),
        ("/api/cameras/99", "camera not found"),
    ],
)
def test_unknown_ids_return_404(fleet_client, path, detail):
    client, _ = fleet_client
    response = client.get(path)
    assert response.status_code == 404
    assert response.json()["detail"] == detail


def test_camera_status_update_rolls_into_bus(fleet_client):
    client, data_path = fleet_client
    response = client.put("/api/cameras/k1/status", json={"status": "WARNING"})
    assert response.status_code == 200
    assert response.json()["camera"]["status"] == "WARNING"
    assert client.get("/api/buses/1").json()["bus"]["status"] == "WARNING"
    stored = json.loads(data_path.read_text())
    assert stored["cameras"][0]["status"] == "WARNING"


def test_lowercase_camera_status_is_rejected(fleet_client):
    client, data_path = fleet_client
    before = data_path.read_text()
    response = client.put("/api/cameras/k1/status", json={"status": "warning"})
    assert response.status_code == 400
    assert data_path.read_text() == before
    assert client.get("/api/cameras/k1").json()["camera"]["status"] == "OK"


def test_invalid_camera_status_is_rejected(fleet_client):
    client, data_path = fleet_client
    before = data_path.read_text()
    response = client.put("/api/cameras/k1/status", json={"status": "INVALID"})
    assert response.status_code == 400
    assert "INVALID" in response.json()["detail"]
    assert data_path.read_text() == before


def test_camera_status_update_unknown_id(fleet_client):
    client, _ = fleet_client
    response = client.put("/api/cameras/nope/status", json={"status": "OK"})
    assert response.status_code == 404


def test_missing_body_is_rejected(fleet_client):
    client, _ = fleet_client
    response = client.put("/api/cameras/k1/status")
    assert response.status_code == 400


def test_console_status_put_is_recomputed(fleet_client):
    client, _ = fleet_client
    response = client.put("/api/consoles/c2/status", json={"status": "OK"})
    assert response.status_code == 200
    assert response.json()["console"]["status"] == "KO"
    assert client.get("/api/consoles/c2").json()["console"]["status"] == "KO"


def test_validator_status_put_validates_value(fleet_client):
    client, _ = fleet_client
    response = client.put("/api/validators/v1/status", json={"status": "MAYBE"})
    assert response.status_code == 400


def test_console_components_update(fleet_client):
    client, _ = fleet_client
    response = client.put("/api/consoles/c1/components", json={"qr_status": "KO"})
    assert response.status_code == 200
    assert response.json()["console"]["status"] == "WARNING"
    assert client.get("/api/buses/1").json()["bus"]["status"] == "WARNING"


def test_components_update_rejects_unknown_key(fleet_client):
    client, _ = fleet_client
    response = client.put("/api/validators/v1/components", json={"printer_status": "KO"})
    assert response.status_code == 400


def test_map_markers_only_positioned_buses(fleet_client):
    client, _ = fleet_client
    markers = client.get("/api/map/buses").json()["buses"]
    assert [m["id"] for m in markers] == ["1", "2"]
    assert markers[0]["color"] == "#4caf50"
    assert markers[1]["color"] == "#f44336"


def test_map_page_served(fleet_client):
    client, _ = fleet_client
    response = client.get("/map")
    assert response.status_code == 200
    assert "leaflet" in response.text
    assert "{{MAP_CENTER_LAT}}" not in response.text
    assert "/api/buses/" in response.text


def test_health(fleet_client):
    client, _ = fleet_client
    body = client.get("/api/health").json()
    assert body["ok"] is True
    assert body["fleet"]["buses"] == 3
