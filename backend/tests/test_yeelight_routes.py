from unittest.mock import MagicMock

import pytest
from flask import Flask

import routes.yeelight as yeelight_routes
from services.yeelight_errors import ConfigurationError, YeelightError


@pytest.fixture
def array(monkeypatch):
    stub = MagicMock()
    stub.is_open = True
    stub.led_count = 3
    stub.get_status.return_value = {"open": True, "lights": []}
    monkeypatch.setattr(yeelight_routes, "_array", stub)
    return stub


@pytest.fixture
def client():
    app = Flask(__name__)
    app.register_blueprint(yeelight_routes.yeelight_bp)
    return app.test_client()


def test_status(client, array):
    resp = client.get("/api/yeelight/status")
    assert resp.status_code == 200
    assert resp.get_json() == {"open": True, "lights": []}


def test_status_with_bad_config(client, monkeypatch):
    monkeypatch.setattr(yeelight_routes, "_array", None)
    monkeypatch.setenv("YEELIGHT_COLOR_MODEL", "cmyk")
    resp = client.get("/api/yeelight/status")
    assert resp.status_code == 500
    assert "cmyk" in resp.get_json()["error"]


def test_open(client, array):
    resp = client.post("/api/yeelight/open")
    assert resp.status_code == 200
    array.open.assert_called_once()


def test_open_failure(client, array):
    array.open.side_effect = YeelightError("All Yeelights failed to be opened!")
    resp = client.post("/api/yeelight/open")
    assert resp.status_code == 502
    assert "failed" in resp.get_json()["error"]


def test_open_configuration_error(client, array):
    array.open.side_effect = ConfigurationError("Not enough Yeelights")
    resp = client.post("/api/yeelight/open")
    assert resp.status_code == 500


def test_frame_with_colors(client, array):
    array.write.return_value = 2
    colors = [[255, 0, 0], [0, 255, 0], [0, 0, 255]]
    resp = client.post("/api/yeelight/frame", json={"colors": colors})
    assert resp.status_code == 200
    assert resp.get_json() == {"ok": True, "sent": 2}
    array.write.assert_called_once_with(colors)


def test_frame_fill_color(client, array):
    client.post("/api/yeelight/frame", json={"color": [1, 2, 3]})
    array.write.assert_called_once_with([[1, 2, 3]] * 3)


def test_frame_requires_colors(client, array):
    resp = client.post("/api/yeelight/frame", json={"foo": 1})
    assert resp.status_code == 400
    resp = client.post("/api/yeelight/frame", data="nope")
    assert resp.status_code == 400


def test_frame_bad_colors(client, array):
    array.write.side_effect = ValueError("Got 1 colors for 3 lights")
    resp = client.post("/api/yeelight/frame", json={"colors": [[0, 0, 0]]})
    assert resp.status_code == 400


def test_frame_when_closed(client, array):
    array.is_open = False
    resp = client.post("/api/yeelight/frame", json={"color": [0, 0, 0]})
    assert resp.status_code == 409
    array.write.assert_not_called()


def test_switch_on_and_off(client, array):
    array.switch_on.return_value = 3
    assert client.post("/api/yeelight/on").get_json() == {"ok": True, "streaming": 3}
    assert client.post("/api/yeelight/off").status_code == 200
    array.switch_off.assert_called_once()


def test_close(client, array):
    assert client.post("/api/yeelight/close").get_json() == {"ok": True}
    array.close.assert_called_once()


def test_discover(client, monkeypatch):
    devices = [{"id": "0x1", "address": "10.0.0.5:55443"}]
    discover = MagicMock(return_value=devices)
    monkeypatch.setattr(yeelight_routes.discovery, "discover_devices", discover)

    resp = client.get("/api/yeelight/discover?force=1")

    assert resp.get_json() == devices
    discover.assert_called_once_with(force=True)
