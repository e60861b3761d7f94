"""Yeelight array configuration.

Values come from the environment (app.py loads a .env file first):

  YEELIGHT_LIGHTS               JSON list of {"address": "ip[:port]", "name": ...}
                                or plain "ip[:port]" strings
  YEELIGHT_LED_COUNT            strip length, defaults to the number of lights
  YEELIGHT_COLOR_MODEL          "rgb" or "hsv"
  YEELIGHT_TRANSITION_EFFECT    "smooth" or "sudden"
  YEELIGHT_TRANSITION_TIME      ms per frame
  YEELIGHT_EXTRA_TIME_DARKNESS  ms added to the fade when switched dark
  YEELIGHT_BRIGHTNESS_MIN / _MAX / _FACTOR
  YEELIGHT_BRIGHTNESS_SWITCH_OFF  power off below the minimum
  YEELIGHT_DISCOVER             SSDP lookup when no lights are configured
  YEELIGHT_MUSIC_HOST           address for the music mode listener
"""

import json
import os
from dataclasses import dataclass, field
from typing import Optional

from services.yeelight_color import (
    DEFAULT_DURATION,
    EFFECT_SMOOTH,
    EFFECT_SUDDEN,
    ENCODERS,
    VALID_EFFECTS,
    BrightnessConfig,
)
from services.yeelight_errors import ConfigurationError

# Numeric aliases used by older device configs
_COLOR_MODEL_ALIASES = {"0": "hsv", "1": "rgb"}
_EFFECT_ALIASES = {"0": EFFECT_SMOOTH, "1": EFFECT_SUDDEN}

_TRUE = ("1", "true", "yes", "on")
_FALSE = ("0", "false", "no", "off", "")


@dataclass
class LightConfig:
    address: str
    name: str = ""


@dataclass
class ArrayConfig:
    lights: list = field(default_factory=list)
    led_count: Optional[int] = None
    color_model: str = "rgb"
    transition_effect: str = EFFECT_SMOOTH
    transition_duration: int = DEFAULT_DURATION
    brightness: BrightnessConfig = field(default_factory=BrightnessConfig)
    discover: bool = True
    music_host: Optional[str] = None

    def __post_init__(self):
        self.color_model = _COLOR_MODEL_ALIASES.get(str(self.color_model), str(self.color_model)).lower()
        if self.color_model not in ENCODERS:
            raise ConfigurationError(
                f"Invalid color model '{self.color_model}'. Must be one of {tuple(ENCODERS)}"
            )

        self.transition_effect = _EFFECT_ALIASES.get(
            str(self.transition_effect), str(self.transition_effect)
        ).lower()
        if self.transition_effect not in VALID_EFFECTS:
            raise ConfigurationError(
                f"Invalid transition effect '{self.transition_effect}'. Must be one of {VALID_EFFECTS}"
            )

        if self.transition_duration < 0:
            raise ConfigurationError("Transition time must not be negative")
        if self.led_count is not None and self.led_count < 1:
            raise ConfigurationError("LED count must be at least 1")

        b = self.brightness
        if not 0 <= b.minimum <= b.maximum <= 100:
            raise ConfigurationError(
                f"Brightness range [{b.minimum}, {b.maximum}] must lie within [0, 100]"
            )
        if b.factor <= 0:
            raise ConfigurationError("Brightness factor must be positive")
        if b.extra_darkness_duration < 0:
            raise ConfigurationError("Extra darkness time must not be negative")

        self.lights = parse_lights(self.lights)


def parse_lights(value):
    """Normalise a light list into LightConfig entries.

    Accepts a JSON string, or a list whose items are "ip[:port]" strings,
    dicts with "address" (or "ip") and optional "name", or LightConfig.
    """
    if isinstance(value, str):
        value = value.strip()
        if not value:
            return []
        try:
            value = json.loads(value)
        except ValueError as exc:
            raise ConfigurationError(f"YEELIGHT_LIGHTS is not valid JSON: {exc}") from exc

    if not isinstance(value, list):
        raise ConfigurationError("Light list must be a list")

    lights = []
    for item in value:
        if isinstance(item, LightConfig):
            lights.append(item)
        elif isinstance(item, str):
            lights.append(LightConfig(address=item))
        elif isinstance(item, dict):
            address = item.get("address") or item.get("ip")
            if not address:
                raise ConfigurationError(f"Light entry without address: {item}")
            lights.append(LightConfig(address=str(address), name=str(item.get("name") or "")))
        else:
            raise ConfigurationError(f"Invalid light entry: {item!r}")
    return lights


def _env_int(environ, name, default):
    value = environ.get(name, "").strip()
    if not value:
        return default
    try:
        return int(value)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got '{value}'") from None


def _env_float(environ, name, default):
    value = environ.get(name, "").strip()
    if not value:
        return default
    try:
        return float(value)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got '{value}'") from None


def _env_bool(environ, name, default):
    value = environ.get(name)
    if value is None:
        return default
    value = value.strip().lower()
    if value in _TRUE:
        return True
    if value in _FALSE:
        return False
    raise ConfigurationError(f"{name} must be a boolean, got '{value}'")


def load_config(environ=None):
    """Build an ArrayConfig from environment variables."""
    env = os.environ if environ is None else environ

    brightness = BrightnessConfig(
        minimum=_env_int(env, "YEELIGHT_BRIGHTNESS_MIN", 0),
        maximum=_env_int(env, "YEELIGHT_BRIGHTNESS_MAX", 100),
        factor=_env_float(env, "YEELIGHT_BRIGHTNESS_FACTOR", 1.0),
        switch_off_at_minimum=_env_bool(env, "YEELIGHT_BRIGHTNESS_SWITCH_OFF", False),
        extra_darkness_duration=_env_int(env, "YEELIGHT_EXTRA_TIME_DARKNESS", 0),
    )

    return ArrayConfig(
        lights=env.get("YEELIGHT_LIGHTS", ""),
        led_count=_env_int(env, "YEELIGHT_LED_COUNT", None),
        color_model=env.get("YEELIGHT_COLOR_MODEL", "rgb").strip() or "rgb",
        transition_effect=env.get("YEELIGHT_TRANSITION_EFFECT", EFFECT_SMOOTH).strip() or EFFECT_SMOOTH,
        transition_duration=_env_int(env, "YEELIGHT_TRANSITION_TIME", DEFAULT_DURATION),
        brightness=brightness,
        discover=_env_bool(env, "YEELIGHT_DISCOVER", True),
        music_host=env.get("YEELIGHT_MUSIC_HOST", "").strip() or None,
    )
