"""Yeelight array: drives N bulbs as the N positions of a logical LED strip.

Each position owns an independent YeelightLight session.  A frame update
walks the positions in order; a light that is errored, or whose music mode
handshake fails, is skipped without affecting the others.

All I/O is blocking and sequential.  A slow bulb delays the rest of the
frame by at most its own timeouts.

Usage:
    array = YeelightArray(load_config())
    array.open()
    array.switch_on()
    array.write([(255, 0, 0), (0, 0, 255)])
    array.switch_off()
    array.close()
"""

import logging
import threading

import numpy as np

from config import LightConfig
from services.yeelight_color import ENCODERS, POWER_CYCLE_DURATION
from services.yeelight_discovery import SSDP_ID, SSDP_TIMEOUT, YeelightDiscovery
from services.yeelight_errors import (
    ConfigurationError,
    LightConnectionError,
    ProtocolError,
    StreamNegotiationError,
    YeelightError,
)
from services.yeelight_light import LightAddress, YeelightLight
from services.yeelight_music import MusicModeServer

logger = logging.getLogger(__name__)


def resolve_addresses(configured, led_count):
    """Pick one light per LED position.

    Args:
        configured: List of LightConfig, in strip order.
        led_count: Number of positions in the strip.

    Returns:
        List of (LightAddress, name) with exactly led_count entries.

    Raises:
        ConfigurationError: fewer lights than positions.
    """
    if len(configured) < led_count:
        raise ConfigurationError(
            f"Not enough Yeelights [{len(configured)}] for configured LEDs [{led_count}] found!"
        )
    if len(configured) > led_count:
        logger.warning(
            "More Yeelights defined [%d] than configured LEDs [%d].", len(configured), led_count
        )
    return [(LightAddress.parse(light.address), light.name) for light in configured[:led_count]]


def normalize_frame(colors, count):
    """Turn a color sequence into a (count, 3) uint8 array.

    Raises:
        ValueError: malformed input, or fewer colors than positions.
    """
    frame = np.asarray(colors, dtype=np.float64)
    if frame.ndim != 2 or frame.shape[1] != 3:
        raise ValueError(f"Expected a sequence of (r, g, b) colors, got shape {frame.shape}")
    if frame.shape[0] < count:
        raise ValueError(f"Got {frame.shape[0]} colors for {count} lights")
    if not np.isfinite(frame).all():
        raise ValueError("Colors must be finite numbers")
    return np.clip(np.rint(frame[:count]), 0, 255).astype(np.uint8)


class YeelightArray:
    """Owns one session per LED position and fans frames out to them."""

    def __init__(self, config, music_server=None, discovery=None, light_factory=YeelightLight):
        self.config = config
        self._music = music_server or MusicModeServer(host=config.music_host)
        self._discovery = discovery or YeelightDiscovery()
        self._light_factory = light_factory
        self._encoder = ENCODERS[config.color_model]
        self._lock = threading.Lock()

        self.lights = []  # index == LED position
        self.is_open = False

    @property
    def led_count(self):
        return len(self.lights)

    @property
    def active_lights(self):
        return [light for light in self.lights if light.is_ready]

    # ------------------------------------------------------------------
    # Initialisation
    # ------------------------------------------------------------------

    def resolve_addresses(self):
        """Create the sessions from configuration (no network I/O to bulbs).

        Falls back to SSDP discovery when no lights are configured.
        """
        configured = list(self.config.lights)

        if not configured and self.config.discover:
            address = self._discovery.find_first_service(SSDP_ID, SSDP_TIMEOUT)
            if address:
                configured = [LightConfig(address=address)]

        if not configured:
            raise ConfigurationError("No Yeelights configured or discovered")

        led_count = self.config.led_count or len(configured)
        resolved = resolve_addresses(configured, led_count)

        self.lights = [
            self._light_factory(address.host, address.port, name=name)
            for address, name in resolved
        ]
        for idx, light in enumerate(self.lights):
            logger.debug("Light [%d] - %s (%s)", idx + 1, light.name, light.address)
        return self.lights

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def open(self):
        """Open the music mode listener and every light.

        Lights that fail to connect or to report their properties stay in the
        array but are skipped from then on.

        Raises:
            ConfigurationError: addresses could not be resolved.
            YeelightError: no light could be opened, or no listener.
        """
        with self._lock:
            if not self.lights:
                self.resolve_addresses()

            self._music.open(probe_host=self.lights[0].host)

            for light in self.lights:
                try:
                    light.open()
                    light.get_properties()
                except LightConnectionError as exc:
                    logger.error("Failed to open [%s]: %s", light.name, exc)
                except ProtocolError as exc:
                    logger.error("Failed to read properties of [%s]: %s", light.name, exc)

            if not self.active_lights:
                self._close_all()
                raise YeelightError("All Yeelights failed to be opened!")

            self.is_open = True
            logger.info(
                "Yeelight array open: %d of %d light(s) active",
                len(self.active_lights), self.led_count,
            )

    def close(self):
        with self._lock:
            self._close_all()
            logger.info("Yeelight array closed")

    def _close_all(self):
        for light in self.lights:
            light.close()
        self._music.close()
        self.is_open = False

    # ------------------------------------------------------------------
    # Frames
    # ------------------------------------------------------------------

    def write(self, colors):
        """Send one color per position.

        Returns:
            Number of lights that were sent a command.  Unchanged colors and
            skipped lights do not count.
        """
        frame = normalize_frame(colors, self.led_count)
        with self._lock:
            if not self.is_open:
                raise YeelightError("Yeelight array is not open")
            return self._write_frame(frame)

    def _write_frame(self, frame, duration=None):
        duration = self.config.transition_duration if duration is None else duration
        sent = 0
        for idx, light in enumerate(self.lights):
            if not light.is_ready:
                continue
            if not self._ensure_music_mode(light):
                continue

            color = tuple(int(v) for v in frame[idx])
            command = self._encoder(
                color, self.config.brightness, self.config.transition_effect, duration
            )
            try:
                if light.set_color(command):
                    sent += 1
            except ProtocolError as exc:
                logger.warning("Yeelight %s: color update failed: %s", light.name, exc)
        return sent

    def _ensure_music_mode(self, light):
        if light.is_in_music_mode():
            return True
        try:
            self._music.negotiate(light)
        except StreamNegotiationError as exc:
            logger.warning("Yeelight %s: skipping frame, %s", light.name, exc)
            return False
        except ProtocolError as exc:
            logger.warning("Yeelight %s: music mode request failed: %s", light.name, exc)
            return False
        return True

    # ------------------------------------------------------------------
    # Power
    # ------------------------------------------------------------------

    def switch_on(self):
        """Put every active light into music mode, ready for frames.

        Returns:
            Number of lights streaming afterwards.
        """
        with self._lock:
            if not self.is_open:
                raise YeelightError("Yeelight array is not open")
            return sum(1 for light in self.lights if light.is_ready and self._ensure_music_mode(light))

    def switch_off(self):
        """Fade every light to black, then power it off."""
        with self._lock:
            if not self.is_open:
                raise YeelightError("Yeelight array is not open")

            self._write_frame(np.zeros((self.led_count, 3), dtype=np.uint8))

            for light in self.lights:
                if not light.is_ready:
                    continue
                try:
                    light.set_power(False, self.config.transition_effect, POWER_CYCLE_DURATION)
                except ProtocolError as exc:
                    logger.warning("Yeelight %s: power off failed: %s", light.name, exc)

    def get_status(self):
        return {
            "open": self.is_open,
            "led_count": self.led_count,
            "active": len(self.active_lights),
            "color_model": self.config.color_model,
            "music_server": {
                "running": self._music.is_open,
                "host": self._music.host,
                "port": self._music.port,
            },
            "lights": [light.status() for light in self.lights],
        }
