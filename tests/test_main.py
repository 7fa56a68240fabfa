import io
import json

import httpx
from fastapi import testclient
from PIL import Image

from geomosaic import main
from geomosaic.errors import IncompleteFetch
from geomosaic.main import app

STREAM_PARAMS = {
    "lon": -105.27,
    "lat": 40.01,
    "side_length": 16,
    "unit": "km",
    "resolution": 250,
    "services": "satellite",
    "max_cells_per_tile": 32 * 32,
}


def _parse_sse(body: str) -> list[tuple[str, dict]]:
    events = []
    for block in body.strip().split("\n\n"):
        lines = dict(line.split(": ", 1) for line in block.splitlines())
        events.append((lines["event"], json.loads(lines["data"])))
    return events


def _install_wms_stub(monkeypatch, requests_made: list) -> None:
    real_client = httpx.AsyncClient

    def handler(request: httpx.Request) -> httpx.Response:
        requests_made.append(request)
        width = int(request.url.params["WIDTH"])
        height = int(request.url.params["HEIGHT"])
        buffer = io.BytesIO()
        Image.new("RGB", (width, height), color=(30, 90, 160)).save(buffer, format="PNG")
        return httpx.Response(200, content=buffer.getvalue(), headers={"Content-Type": "image/png"})

    def client_factory(*args, **kwargs):
        return real_client(*args, transport=httpx.MockTransport(handler), **kwargs)

    monkeypatch.setattr(httpx, "AsyncClient", client_factory)


def test_health_endpoint():
    client = testclient.TestClient(app)

    response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_services_endpoint_lists_catalog():
    client = testclient.TestClient(app)

    response = client.get("/services")

    assert response.status_code == 200
    keys = [service["key"] for service in response.json()]
    assert keys == ["elevation", "satellite", "aerial"]


def test_plan_endpoint_returns_tile_grid():
    client = testclient.TestClient(app)

    response = client.post(
        "/plan",
        json={
            "geometry": {"type": "Point", "coordinates": [-105.27, 40.01]},
            "side_length": 16,
            "unit": "km",
            "resolution": 10,
            "services": ["elevation"],
            "max_cells_per_tile": 800 * 800,
        },
    )

    assert response.status_code == 200
    payload = response.json()
    assert payload["grid"] == {"elevation": [2, 2]}
    assert len(payload["tiles"]) == 4
    assert payload["tiles"][0]["tile_id"] == "elevation:0:0"
    assert payload["tiles"][0]["path"] == "elevation/elevation_r000_c000.tif"
    assert payload["bbox"]["crs"] == "EPSG:4326"


def test_plan_endpoint_rejects_invalid_request():
    client = testclient.TestClient(app)

    negative = client.post(
        "/plan",
        json={"geometry": {"type": "Point", "coordinates": [0, 0]}, "side_length": -1},
    )
    bad_unit = client.post(
        "/plan",
        json={"geometry": {"type": "Point", "coordinates": [0, 0]}, "unit": "mi"},
    )
    bad_geometry = client.post("/plan", json={"geometry": {"type": "Circle"}})

    assert negative.status_code == 400
    assert bad_unit.status_code == 400
    assert "mi" in bad_unit.json()["detail"]
    assert bad_geometry.status_code == 400


def test_acquisition_stream_downloads_tiles_and_builds_mosaic(tmp_path, monkeypatch):
    requests_made: list = []
    _install_wms_stub(monkeypatch, requests_made)
    monkeypatch.setenv("GEOMOSAIC_DATA_DIR", str(tmp_path))
    monkeypatch.setenv("GEOMOSAIC_REQUEST_DELAY", "0")
    client = testclient.TestClient(app)

    response = client.get("/acquire/stream", params={"acquisition_id": "front-range", **STREAM_PARAMS})

    assert response.status_code == 200
    events = _parse_sse(response.text)
    assert events[0][0] == "status"
    assert events[0][1]["total"] == 4
    progress = [data for name, data in events if name == "progress"]
    assert [data["completed"] for data in progress] == [1, 2, 3, 4]
    assert {data["outcome"] for data in progress} == {"downloaded"}
    name, summary = events[-1]
    assert name == "complete"
    assert summary["succeeded"] == 4
    assert summary["failed"] == []
    mosaic_path = tmp_path / "acquisitions" / "front-range" / "satellite_mosaic.png"
    assert summary["mosaics"] == {"satellite": str(mosaic_path)}
    with Image.open(mosaic_path) as mosaic:
        assert mosaic.size == (64, 64)
    assert len(requests_made) == 4


def test_repeated_acquisition_resumes_from_disk(tmp_path, monkeypatch):
    requests_made: list = []
    _install_wms_stub(monkeypatch, requests_made)
    monkeypatch.setenv("GEOMOSAIC_DATA_DIR", str(tmp_path))
    monkeypatch.setenv("GEOMOSAIC_REQUEST_DELAY", "0")
    client = testclient.TestClient(app)
    params = {"acquisition_id": "resume", **STREAM_PARAMS}

    client.get("/acquire/stream", params=params)
    second = _parse_sse(client.get("/acquire/stream", params=params).text)

    assert len(requests_made) == 4
    name, summary = second[-1]
    assert name == "complete"
    assert summary["skipped"] == 4
    assert "4 already present" in summary["message"]


def test_acquisition_stream_rejects_invalid_parameters(tmp_path, monkeypatch):
    monkeypatch.setenv("GEOMOSAIC_DATA_DIR", str(tmp_path))
    client = testclient.TestClient(app)

    response = client.get(
        "/acquire/stream",
        params={**STREAM_PARAMS, "acquisition_id": "broken", "resolution": 0},
    )

    assert response.status_code == 400
    assert not (tmp_path / "acquisitions" / "broken").exists()


def test_stop_unknown_acquisition():
    client = testclient.TestClient(app)

    response = client.post("/acquire/stop", json={"acquisition_id": "nothing-running"})
    blank = client.post("/acquire/stop", json={"acquisition_id": "  "})

    assert response.json() == {"status": "not_found"}
    assert blank.status_code == 400


def test_stream_ends_when_acquisition_fails_without_cancel(tmp_path, monkeypatch):
    monkeypatch.setenv("GEOMOSAIC_DATA_DIR", str(tmp_path))
    seen_cancel_state = []

    async def failing_fetch(tile_plan, output_dir, **kwargs):
        seen_cancel_state.append(kwargs["cancel_event"].is_set())
        raise IncompleteFetch([])

    monkeypatch.setattr(main, "fetch_tiles", failing_fetch)
    client = testclient.TestClient(app)
    params = {"acquisition_id": "one-shot", **STREAM_PARAMS}

    events = _parse_sse(client.get("/acquire/stream", params=params).text)

    assert [name for name, _ in events] == ["status", "error"]
    assert "failed to download" in events[1][1]["message"]
    assert seen_cancel_state == [False]
    assert "one-shot" not in main._active_acquisitions
    again = _parse_sse(client.get("/acquire/stream", params=params).text)
    assert again[-1][0] == "error"
    stop = client.post("/acquire/stop", json={"acquisition_id": "one-shot"})
    assert stop.json() == {"status": "not_found"}
