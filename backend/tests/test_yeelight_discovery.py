from unittest.mock import patch

from services.yeelight_discovery import (
    YeelightDiscovery,
    build_search_request,
    parse_search_response,
)

RESPONSE = (
    "HTTP/1.1 200 OK\r\n"
    "Cache-Control: max-age=3600\r\n"
    "Location: yeelight://192.168.1.239:55443\r\n"
    "Server: POSIX UPnP/1.0 YGLC/1\r\n"
    "id: 0x000000000015243f\r\n"
    "model: color\r\n"
    "fw_ver: 18\r\n"
    "support: get_prop set_default set_power toggle set_bright set_scene set_music\r\n"
    "power: on\r\n"
    "name: Desk\r\n"
    "\r\n"
).encode("utf-8")


def test_search_request():
    request = build_search_request().decode("ascii")
    assert request.startswith("M-SEARCH * HTTP/1.1\r\n")
    assert "HOST: 239.255.255.250:1982\r\n" in request
    assert "ST: wifi_bulb\r\n" in request
    assert request.endswith("\r\n\r\n")


def test_parse_response():
    device = parse_search_response(RESPONSE)
    assert device["address"] == "192.168.1.239:55443"
    assert device["id"] == "0x000000000015243f"
    assert device["model"] == "color"
    assert device["name"] == "Desk"
    assert "set_music" in device["support"]


def test_parse_rejects_search_requests():
    assert parse_search_response(build_search_request()) is None


def test_parse_rejects_foreign_location():
    data = b"HTTP/1.1 200 OK\r\nLocation: http://192.168.1.2/desc.xml\r\n\r\n"
    assert parse_search_response(data) is None


def test_parse_rejects_garbage():
    assert parse_search_response(b"\xff\xfe") is None


def test_find_first_service_empty_when_nothing_found():
    discovery = YeelightDiscovery()
    with patch.object(discovery, "_run_scan", return_value=[]):
        assert discovery.find_first_service(timeout=0.1) == ""


def test_find_first_service_returns_address():
    discovery = YeelightDiscovery()
    device = parse_search_response(RESPONSE)
    with patch.object(discovery, "_run_scan", return_value=[device]) as scan:
        assert discovery.find_first_service(timeout=0.1) == "192.168.1.239:55443"
    scan.assert_called_once_with("wifi_bulb", 0.1, first_only=True)


def test_discover_devices_is_cached():
    discovery = YeelightDiscovery()
    device = parse_search_response(RESPONSE)
    with patch.object(discovery, "_run_scan", return_value=[device]) as scan:
        assert discovery.discover_devices() == [device]
        assert discovery.discover_devices() == [device]
        discovery.discover_devices(force=True)
    assert scan.call_count == 2
