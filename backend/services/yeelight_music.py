"""Music mode server shared by all lights of an array.

In music mode a bulb stops answering on its control connection and instead
connects back to a TCP listener we announce with ``set_music``.  Commands
written on that stream connection are applied without response or rate
limit, which is what frame-by-frame color updates need.

One listener serves every light.  The accept call is the only way to tell
which connection belongs to which request, so handshakes are serialised.
"""

import ipaddress
import logging
import socket
import threading
import time

from services.yeelight_errors import StreamNegotiationError

logger = logging.getLogger(__name__)

CONNECT_STREAM_TIMEOUT = 1.0  # seconds to wait for the bulb to connect back
LISTEN_BACKLOG = 8
PROBE_PORT = 9  # discard; only used to pick a route, nothing is sent


def local_ipv4_address(probe_host=None):
    """Return the first non-loopback IPv4 address of this host, or None.

    If probe_host is given, the address of the interface routing towards it
    is preferred.  Connecting a UDP socket sends no packets.
    """
    if probe_host:
        try:
            with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as probe:
                probe.connect((probe_host, PROBE_PORT))
                addr = probe.getsockname()[0]
            if not ipaddress.ip_address(addr).is_loopback:
                return addr
        except (OSError, ValueError):
            pass

    try:
        infos = socket.getaddrinfo(socket.gethostname(), None, socket.AF_INET, socket.SOCK_STREAM)
    except OSError:
        infos = []
    for info in infos:
        addr = info[4][0]
        if not ipaddress.ip_address(addr).is_loopback:
            return addr
    return None


def _resolve(host):
    try:
        return socket.gethostbyname(host)
    except OSError:
        return None


class MusicModeServer:
    """Listener that hands bulbs' stream connections to their sessions.

    Usage:
        server = MusicModeServer()
        server.open(probe_host="192.168.1.20")
        server.negotiate(light)   # light now streams
        server.close()
    """

    def __init__(self, host=None, accept_timeout=CONNECT_STREAM_TIMEOUT):
        self._configured_host = host
        self.accept_timeout = accept_timeout
        self.host = None
        self.port = 0
        self._listener = None
        self._lock = threading.Lock()

    @property
    def is_open(self):
        return self._listener is not None

    @property
    def address(self):
        return (self.host, self.port)

    def open(self, probe_host=None):
        """Start listening on an ephemeral port.  No-op if already open."""
        if self._listener is not None:
            return

        host = self._configured_host or local_ipv4_address(probe_host)
        if not host:
            logger.error("Failed to resolve IP for music mode server")
            raise StreamNegotiationError("Failed to resolve IP for music mode server")

        listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            listener.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            listener.bind((host, 0))
            listener.listen(LISTEN_BACKLOG)
        except OSError as exc:
            listener.close()
            logger.error("Failed to open music mode server on %s: %s", host, exc)
            raise StreamNegotiationError(f"Failed to open music mode server: {exc}") from exc

        self._listener = listener
        self.host = host
        self.port = listener.getsockname()[1]
        logger.info("Music mode server is running at %s:%d", self.host, self.port)

    def close(self):
        if self._listener is not None:
            try:
                self._listener.close()
            except OSError:
                pass
            self._listener = None
            logger.debug("Music mode server closed")

    def negotiate(self, light):
        """Switch a light into music mode and bind its stream connection.

        Raises:
            StreamNegotiationError: no connection from the light arrived in
                time.  The light itself is left usable.
            ProtocolError: the set_music command failed; the light is errored.
        """
        if self._listener is None:
            raise StreamNegotiationError("Music mode server is not running")

        with self._lock:
            self._drain_pending()
            light.set_music_mode(True, self.host, self.port)

            deadline = time.monotonic() + self.accept_timeout
            sock = self._accept_from(_resolve(light.host), deadline)
            if sock is None:
                logger.warning(
                    "Yeelight %s: no stream connection within %.1fs",
                    light.name, self.accept_timeout,
                )
                raise StreamNegotiationError(f"{light.name}: Failed to get stream socket")

            light.bind_stream_socket(sock)

    def _drain_pending(self):
        """Close connections left over from handshakes that timed out."""
        self._listener.setblocking(False)
        try:
            while True:
                try:
                    conn, peer = self._listener.accept()
                except OSError:
                    break
                logger.debug("Discarding stale stream connection from %s:%d", *peer)
                conn.close()
        finally:
            self._listener.setblocking(True)

    def _accept_from(self, expected_ip, deadline):
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return None
            self._listener.settimeout(remaining)
            try:
                conn, peer = self._listener.accept()
            except socket.timeout:
                return None

            if expected_ip is not None and peer[0] != expected_ip:
                logger.warning("Ignoring stream connection from unexpected peer %s", peer[0])
                conn.close()
                continue
            conn.settimeout(None)
            return conn
