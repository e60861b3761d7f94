import logging
import threading

from flask import Blueprint, jsonify, request

from config import load_config
from services.yeelight import YeelightArray
from services.yeelight_discovery import YeelightDiscovery
from services.yeelight_errors import ConfigurationError, YeelightError

logger = logging.getLogger(__name__)

yeelight_bp = Blueprint("yeelight", __name__)
discovery = YeelightDiscovery()

_array = None
_array_lock = threading.Lock()


def get_array():
    """Return the process-wide array, building it from config on first use."""
    global _array
    with _array_lock:
        if _array is None:
            _array = YeelightArray(load_config(), discovery=discovery)
        return _array


def _not_open():
    return jsonify({"error": "Yeelight array is not open"}), 409


@yeelight_bp.get("/api/yeelight/status")
def status():
    try:
        return jsonify(get_array().get_status())
    except ConfigurationError as e:
        return jsonify({"error": str(e)}), 500


@yeelight_bp.post("/api/yeelight/open")
def open_array():
    try:
        array = get_array()
        array.open()
        return jsonify(array.get_status())
    except ConfigurationError as e:
        return jsonify({"error": str(e)}), 500
    except YeelightError as e:
        return jsonify({"error": str(e)}), 502


@yeelight_bp.post("/api/yeelight/close")
def close_array():
    try:
        array = get_array()
    except ConfigurationError as e:
        return jsonify({"error": str(e)}), 500
    array.close()
    return jsonify({"ok": True})


@yeelight_bp.post("/api/yeelight/on")
def switch_on():
    try:
        array = get_array()
    except ConfigurationError as e:
        return jsonify({"error": str(e)}), 500
    if not array.is_open:
        return _not_open()
    try:
        streaming = array.switch_on()
    except YeelightError as e:
        return jsonify({"error": str(e)}), 502
    return jsonify({"ok": True, "streaming": streaming})


@yeelight_bp.post("/api/yeelight/off")
def switch_off():
    try:
        array = get_array()
    except ConfigurationError as e:
        return jsonify({"error": str(e)}), 500
    if not array.is_open:
        return _not_open()
    try:
        array.switch_off()
    except YeelightError as e:
        return jsonify({"error": str(e)}), 502
    return jsonify({"ok": True})


@yeelight_bp.post("/api/yeelight/frame")
def write_frame():
    data = request.get_json(silent=True)
    if not data or not isinstance(data, dict):
        return jsonify({"error": "Request body must be a JSON object"}), 400

    try:
        array = get_array()
    except ConfigurationError as e:
        return jsonify({"error": str(e)}), 500
    if not array.is_open:
        return _not_open()

    if "colors" in data:
        colors = data["colors"]
    elif "color" in data:
        colors = [data["color"]] * array.led_count
    else:
        return jsonify({"error": "colors or color is required"}), 400

    try:
        sent = array.write(colors)
    except (TypeError, ValueError) as e:
        return jsonify({"error": str(e)}), 400
    except YeelightError as e:
        return jsonify({"error": str(e)}), 502
    return jsonify({"ok": True, "sent": sent})


@yeelight_bp.get("/api/yeelight/discover")
def discover():
    force = request.args.get("force", "").lower() in ("1", "true", "yes")
    try:
        return jsonify(discovery.discover_devices(force=force))
    except Exception as e:
        logger.exception("Yeelight discovery failed")
        return jsonify({"error": str(e)}), 502
