"""Color encoding for Yeelight set_scene commands.

Turns an RGB triple plus the array's brightness settings into the parameters
of a ``set_scene`` call, either in the packed ``color`` class or in the
``hsv`` class.  Everything here is pure; the only state involved is the
de-duplication key, which the light session keeps.
"""

import colorsys
from dataclasses import dataclass

# -- Scene classes -----------------------------------------------------------
CLASS_COLOR = "color"
CLASS_HSV = "hsv"

# -- Transition effects ------------------------------------------------------
EFFECT_SMOOTH = "smooth"
EFFECT_SUDDEN = "sudden"
VALID_EFFECTS = (EFFECT_SMOOTH, EFFECT_SUDDEN)

DEFAULT_DURATION = 50  # ms per frame transition
POWER_CYCLE_DURATION = 1000  # ms for explicit power on/off

# Packed value 0 means "no color" on the device
RESERVED_PACKED_VALUE = 0


@dataclass(frozen=True)
class BrightnessConfig:
    """Brightness floor, ceiling and scaling shared by every light in an array."""

    minimum: int = 0
    maximum: int = 100
    factor: float = 1.0
    switch_off_at_minimum: bool = False
    extra_darkness_duration: int = 0  # ms added to the fade when forced dark


@dataclass(frozen=True)
class ColorCommand:
    """Encoded ``set_scene`` request for one light.

    ``key`` identifies the source color for de-duplication: the packed value
    for the color class, the RGB triple for the hsv class.
    """

    color_class: str
    values: tuple
    brightness: int
    effect: str
    duration: int
    key: object = None

    def params(self):
        """Return the ``set_scene`` parameter list."""
        return [self.color_class, *self.values, self.brightness, self.effect, self.duration]


def normalize_color(color):
    """Clip an (r, g, b) sequence to ints in 0-255."""
    r, g, b = color
    return (
        max(0, min(255, int(r))),
        max(0, min(255, int(g))),
        max(0, min(255, int(b))),
    )


def pack_rgb(r, g, b):
    """Pack an RGB triple into the device's single integer form.

    Black packs to 0, which the device reserves, so it is sent as 1.
    """
    packed = r * 65536 + g * 256 + b
    if packed == RESERVED_PACKED_VALUE:
        packed = 1
    return packed


def raw_brightness(r, g, b):
    """Brightness percentage implied by the strongest channel."""
    return max(r, g, b) * 100 // 255


def rgb_to_hsv(r, g, b):
    """Convert RGB to the device's hsv ranges.

    Returns:
        (hue 0-359, saturation 0-100, value 0-100).  Achromatic colors get
        hue 0.
    """
    h, s, _v = colorsys.rgb_to_hsv(r / 255.0, g / 255.0, b / 255.0)
    if s == 0.0:
        hue = 0
    else:
        hue = int(round(h * 360)) % 360
    sat = int(round(s * 255)) * 100 // 255
    val = max(r, g, b) * 100 // 255
    return hue, sat, val


def apply_brightness_policy(raw, config, duration):
    """Map a raw brightness onto what the device should receive.

    Args:
        raw: Brightness 0-100 derived from the color.
        config: BrightnessConfig of the array.
        duration: Base transition duration in ms.

    Returns:
        Tuple of (brightness, duration).  Below the floor the light is either
        faded to 0 over an extended duration, or held at the floor.
    """
    if raw < config.minimum:
        if config.switch_off_at_minimum:
            return 0, duration + config.extra_darkness_duration
        brightness = config.minimum
    else:
        brightness = min(config.maximum, int(config.factor * max(config.minimum, raw)))
        brightness = max(config.minimum, brightness)
    return max(0, min(100, brightness)), duration


def encode_rgb(color, config, effect=EFFECT_SMOOTH, duration=DEFAULT_DURATION):
    """Encode a color as a packed ``color`` class scene."""
    r, g, b = normalize_color(color)
    packed = pack_rgb(r, g, b)
    brightness, duration = apply_brightness_policy(raw_brightness(r, g, b), config, duration)
    return ColorCommand(CLASS_COLOR, (packed,), brightness, effect, duration, key=packed)


def encode_hsv(color, config, effect=EFFECT_SMOOTH, duration=DEFAULT_DURATION):
    """Encode a color as an ``hsv`` class scene (hue, saturation)."""
    r, g, b = normalize_color(color)
    hue, sat, val = rgb_to_hsv(r, g, b)
    brightness, duration = apply_brightness_policy(val, config, duration)
    return ColorCommand(CLASS_HSV, (hue, sat), brightness, effect, duration, key=(r, g, b))


ENCODERS = {
    "rgb": encode_rgb,
    "hsv": encode_hsv,
}
