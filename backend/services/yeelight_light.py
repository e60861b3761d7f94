"""Session client for a single Yeelight bulb.

Each bulb speaks newline-delimited JSON over TCP (port 55443):

  request:       {"id": 1, "method": "set_power", "params": ["on", "smooth", 500]}
  response:      {"id": 1, "result": ["ok"]}
  error:         {"id": 1, "error": {"code": -1, "message": "unsupported method"}}
  notification:  {"method": "props", "params": {"power": "on"}}

Commands are strictly synchronous per light: one request in flight, matched
to its response by correlation id.  In music mode the bulb additionally holds
a second "stream" connection back to us, on which commands are written
without any response.

Any I/O failure, desynchronised response or device-reported error puts the
session into a sticky error state.  Only a fresh open() clears it.
"""

import enum
import json
import logging
import socket
import time
from typing import NamedTuple

from services.yeelight_errors import ConfigurationError, LightConnectionError, ProtocolError

logger = logging.getLogger(__name__)

API_DEFAULT_PORT = 55443

# -- Timeouts (seconds) ------------------------------------------------------
CONNECT_TIMEOUT = 1.0
WRITE_TIMEOUT = 1.0
READ_TIMEOUT = 1.0

RECV_SIZE = 4096

# -- API methods -------------------------------------------------------------
METHOD_POWER = "set_power"
METHOD_MUSIC = "set_music"
METHOD_SCENE = "set_scene"
METHOD_GET_PROP = "get_prop"

POWER_ON = "on"
POWER_OFF = "off"
MUSIC_ON = 1
MUSIC_OFF = 0

NOTIFICATION_PROPS = "props"

# Device error code that is reported but does not disable the light
IGNORABLE_ERROR_CODE = -1

# Order matters: get_prop answers positionally
PROPERTY_NAMES = ("name", "model", "power", "rgb", "bright", "ct", "fw_ver")
PROP_MUSIC = "music_on"


class PowerMode(enum.IntEnum):
    """Mode the bulb switches into when powered on."""

    TURN_ON = 0
    CT = 1
    RGB = 2
    HSV = 3
    COLOR_FLOW = 4
    NIGHT_LIGHT = 5


class SessionState(enum.Enum):
    IDLE = "idle"
    OPEN = "open"
    ERRORED = "errored"


class LightAddress(NamedTuple):
    host: str
    port: int = API_DEFAULT_PORT

    @classmethod
    def parse(cls, address):
        """Parse "host" or "host:port" into a LightAddress."""
        address = (address or "").strip()
        host, sep, port = address.rpartition(":")
        if not sep:
            host, port = address, ""
        if not host:
            raise ConfigurationError(f"Invalid light address '{address}'")
        if not port:
            return cls(host, API_DEFAULT_PORT)
        try:
            port_num = int(port)
        except ValueError:
            raise ConfigurationError(f"Invalid port in light address '{address}'") from None
        if not 0 < port_num < 65536:
            raise ConfigurationError(f"Invalid port in light address '{address}'")
        return cls(host, port_num)

    def __str__(self):
        return f"{self.host}:{self.port}"


def _to_int(value):
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


class YeelightLight:
    """Protocol session with one bulb.

    Usage:
        light = YeelightLight("192.168.1.20")
        light.open()
        light.get_properties()
        light.set_power(True, "smooth", 500)
        light.close()
    """

    def __init__(self, host, port=API_DEFAULT_PORT, name=None,
                 connect_timeout=CONNECT_TIMEOUT, write_timeout=WRITE_TIMEOUT,
                 read_timeout=READ_TIMEOUT):
        self.address = LightAddress(host, port)
        self.connect_timeout = connect_timeout
        self.write_timeout = write_timeout
        self.read_timeout = read_timeout

        self._configured_name = name or ""
        self.name = self._configured_name or host

        self.state = SessionState.IDLE
        self.error = None

        self._sock = None
        self._stream_sock = None
        self._buffer = b""
        self._correlation_id = 0

        self.is_on = False
        self.music_mode = False
        self._last_color_key = None

        self.properties = {}
        self.model = ""
        self.fw_ver = ""
        self.power = ""
        self.rgb = 0
        self.bright = 0
        self.ct = 0

    @property
    def host(self):
        return self.address.host

    @property
    def port(self):
        return self.address.port

    @property
    def is_ready(self):
        return self.state is SessionState.OPEN

    @property
    def correlation_id(self):
        """Id of the last command sent."""
        return self._correlation_id

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    def open(self):
        """Connect the control socket, clearing any previous error state.

        Raises:
            LightConnectionError: if the bulb does not accept the connection
                within the connect timeout.  The session is left errored.
        """
        self.close()
        try:
            sock = socket.create_connection(
                (self.address.host, self.address.port), timeout=self.connect_timeout
            )
        except socket.timeout as exc:
            self.set_in_error("Connection timeout!")
            raise LightConnectionError(f"{self.name}: connection timeout") from exc
        except OSError as exc:
            self.set_in_error(f"Not connected: {exc}")
            raise LightConnectionError(f"{self.name}: {exc}") from exc

        try:
            sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
        except OSError:
            pass

        self._sock = sock
        self._buffer = b""
        self._last_color_key = None
        self.state = SessionState.OPEN
        self.error = None
        logger.info("Yeelight %s: connected to %s", self.name, self.address)

    def close(self):
        """Close control and stream sockets.  Safe to call repeatedly."""
        self._close_stream()
        if self._sock is not None:
            try:
                self._sock.close()
            except OSError:
                pass
            self._sock = None
            logger.debug("Yeelight %s: closed", self.name)
        if self.state is SessionState.OPEN:
            self.state = SessionState.IDLE

    def _close_stream(self):
        if self._stream_sock is not None:
            try:
                self._stream_sock.close()
            except OSError:
                pass
            self._stream_sock = None
        self.music_mode = False

    def set_in_error(self, reason):
        """Put the session into its sticky error state."""
        self.state = SessionState.ERRORED
        self.error = reason
        logger.error("Yeelight disabled, device '%s' signals error: '%s'", self.name, reason)

    def _fail(self, reason, cause=None):
        self.set_in_error(reason)
        raise ProtocolError(f"{self.name}: {reason}") from cause

    # ------------------------------------------------------------------
    # Command exchange
    # ------------------------------------------------------------------

    def _next_command(self, method, params):
        self._correlation_id += 1
        return {"id": self._correlation_id, "method": method, "params": list(params)}

    def _write(self, sock, command):
        payload = json.dumps(command, separators=(",", ":")) + "\r\n"
        logger.debug("Yeelight %s: >> %s", self.name, payload.rstrip())
        try:
            sock.settimeout(self.write_timeout)
            sock.sendall(payload.encode("utf-8"))
        except socket.timeout as exc:
            self._fail("Write timeout", exc)
        except OSError as exc:
            self._fail(f"Write error: {exc}", exc)

    def send_command(self, method, params):
        """Send a command on the control socket and wait for its response.

        Returns:
            The response's result list (possibly empty).

        Raises:
            ProtocolError: the session was not open, or the exchange failed.
                In the latter case the session is now errored.
        """
        if self.state is not SessionState.OPEN:
            raise ProtocolError(f"{self.name}: skip write, light is {self.state.value}")

        command = self._next_command(method, params)
        self._write(self._sock, command)
        return self._read_response(command["id"])

    def stream_command(self, method, params):
        """Write a command to the stream socket.  No response is expected."""
        if self.state is not SessionState.OPEN:
            raise ProtocolError(f"{self.name}: skip stream write, light is {self.state.value}")
        if self._stream_sock is None:
            raise ProtocolError(f"{self.name}: no stream connection")

        self._write(self._stream_sock, self._next_command(method, params))

    def _read_line(self, deadline):
        while b"\n" not in self._buffer:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                self._fail("Read timeout")
            try:
                self._sock.settimeout(remaining)
                chunk = self._sock.recv(RECV_SIZE)
            except socket.timeout as exc:
                self._fail("Read timeout", exc)
            except OSError as exc:
                self._fail(f"Read error: {exc}", exc)
            if not chunk:
                self._fail("Connection closed by device")
            self._buffer += chunk

        line, _, self._buffer = self._buffer.partition(b"\n")
        return line.strip()

    def _read_response(self, correlation_id):
        deadline = time.monotonic() + self.read_timeout
        while True:
            line = self._read_line(deadline)
            if not line:
                continue
            logger.debug("Yeelight %s: << %s", self.name, line)

            try:
                message = json.loads(line)
            except ValueError as exc:
                self._fail("Got invalid response", exc)
            if not isinstance(message, dict):
                self._fail("Got invalid response")

            if "method" in message:
                self._handle_notification(message)
                continue

            response_id = message.get("id")
            if response_id != correlation_id:
                self._fail(
                    f"API is out of sync, received ID [{response_id}], expected [{correlation_id}]"
                )

            result = message.get("result")
            if isinstance(result, list):
                return result

            error = message.get("error")
            if isinstance(error, dict):
                code = error.get("code")
                reason = f"({code}) {error.get('message', '')}"
                if code == IGNORABLE_ERROR_CODE:
                    logger.warning("Yeelight %s: device reported %s", self.name, reason)
                    return []
                self._fail(reason)

            self._fail("No valid result message")

    def _handle_notification(self, message):
        method = message.get("method")
        params = message.get("params")
        if method == NOTIFICATION_PROPS and isinstance(params, dict):
            for prop, value in params.items():
                logger.debug("Yeelight %s: notification %s = %s", self.name, prop, value)
        else:
            logger.info("Yeelight %s: unexpected notification %s", self.name, message)

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    def get_properties(self):
        """Query name, model, power, rgb, brightness, ct and firmware.

        The device answers with a bare list in request order, so values are
        mapped by position.
        """
        names = list(PROPERTY_NAMES)
        result = self.send_command(METHOD_GET_PROP, names)

        if len(result) != len(names):
            logger.warning(
                "Yeelight %s: requested %d properties, got %d; mapping by position",
                self.name, len(names), len(result),
            )
        for prop, value in zip(names, result):
            logger.debug("Yeelight %s: property %s = %s", self.name, prop, value)
            self.properties[prop] = "" if value is None else str(value)

        self._map_properties()
        return dict(self.properties)

    def _map_properties(self):
        props = self.properties
        if not self._configured_name:
            self.name = props.get("name") or self.address.host
        self.model = props.get("model", "")
        self.fw_ver = props.get("fw_ver", "")
        self.power = props.get("power", "")
        self.rgb = _to_int(props.get("rgb"))
        self.bright = _to_int(props.get("bright"))
        self.ct = _to_int(props.get("ct"))
        self.is_on = self.power == POWER_ON

    # ------------------------------------------------------------------
    # Music mode
    # ------------------------------------------------------------------

    def is_in_music_mode(self, device_check=False):
        """Report whether the light currently streams.

        With device_check the bulb is asked directly (costs a command from
        the device's quota); otherwise the stream socket's liveness decides.
        """
        if device_check:
            result = self.send_command(METHOD_GET_PROP, [PROP_MUSIC])
            in_music_mode = bool(result) and str(result[0]) == "1"
        else:
            in_music_mode = self._stream_connected()
            if not in_music_mode and self._stream_sock is not None:
                logger.info("Yeelight %s: stream connection lost", self.name)
                self._close_stream()

        self.music_mode = in_music_mode
        return in_music_mode

    def _stream_connected(self):
        sock = self._stream_sock
        if sock is None:
            return False
        try:
            sock.setblocking(False)
            try:
                data = sock.recv(1, socket.MSG_PEEK)
            finally:
                sock.setblocking(True)
        except BlockingIOError:
            return True
        except OSError:
            return False
        # Empty read means the bulb closed its end
        return bool(data)

    def set_music_mode(self, on, host=None, port=None):
        """Ask the bulb to open (or drop) a stream connection to host:port."""
        params = [MUSIC_ON, host, port] if on else [MUSIC_OFF]
        self.send_command(METHOD_MUSIC, params)
        if not on:
            self._close_stream()

    def bind_stream_socket(self, sock):
        """Take ownership of the stream connection the bulb opened to us."""
        self._close_stream()
        self._stream_sock = sock
        self.music_mode = True
        logger.info("Yeelight %s: music mode stream established", self.name)

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def set_power(self, on, effect, duration, mode=PowerMode.RGB):
        """Switch the bulb on or off.  Powering off ends music mode.

        A streaming bulb does not answer on the control socket, so the
        command goes over the stream connection then.
        """
        params = [POWER_ON if on else POWER_OFF, effect, int(duration), int(mode)]
        if self.music_mode:
            self.stream_command(METHOD_POWER, params)
        else:
            self.send_command(METHOD_POWER, params)
        self.is_on = on
        if not on:
            self._close_stream()

    def set_color(self, command):
        """Deliver an encoded color.

        Returns:
            False when the color equals the last one sent (nothing written),
            True when a command went out.
        """
        if command.key is not None and command.key == self._last_color_key:
            return False

        if self.music_mode:
            self.stream_command(METHOD_SCENE, command.params())
        else:
            self.send_command(METHOD_SCENE, command.params())

        self._last_color_key = command.key
        self.is_on = command.brightness > 0
        return True

    def status(self):
        return {
            "name": self.name,
            "address": str(self.address),
            "state": self.state.value,
            "error": self.error,
            "on": self.is_on,
            "music_mode": self.music_mode,
            "model": self.model,
            "fw_ver": self.fw_ver,
            "bright": self.bright,
            "rgb": self.rgb,
            "ct": self.ct,
        }
