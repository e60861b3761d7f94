"""SSDP discovery of Yeelight bulbs on the LAN.

Yeelights answer an SSDP-style M-SEARCH on a non-standard port:
  - Search:   multicast to 239.255.255.250:1982, ST: wifi_bulb
  - Response: unicast HTTP-like headers back to the searching socket, with
              "Location: yeelight://<ip>:<port>" plus id, model, name, ...
"""

import logging
import socket
import struct
import threading
import time

logger = logging.getLogger(__name__)

MULTICAST_ADDR = "239.255.255.250"
SSDP_PORT = 1982
SSDP_ID = "wifi_bulb"
SSDP_TIMEOUT = 5.0  # seconds to wait for search responses
DEVICE_CACHE_TTL = 300  # 5 minutes
LOCATION_SCHEME = "yeelight://"


def build_search_request(search_target=SSDP_ID, port=SSDP_PORT):
    return (
        "M-SEARCH * HTTP/1.1\r\n"
        f"HOST: {MULTICAST_ADDR}:{port}\r\n"
        'MAN: "ssdp:discover"\r\n'
        f"ST: {search_target}\r\n"
        "\r\n"
    ).encode("ascii")


def parse_search_response(data):
    """Parse a search response into a device dict, or None.

    Returns:
        {"id", "address", "model", "name", "fw_ver", "support"} where address
        is "host:port" taken from the Location header.
    """
    try:
        text = data.decode("utf-8")
    except UnicodeDecodeError as exc:
        logger.warning("Failed to decode search response: %s", exc)
        return None

    lines = text.split("\r\n")
    if not lines or not lines[0].startswith("HTTP/1.1 200"):
        return None

    headers = {}
    for line in lines[1:]:
        key, sep, value = line.partition(":")
        if sep:
            headers[key.strip().lower()] = value.strip()

    location = headers.get("location", "")
    if not location.startswith(LOCATION_SCHEME):
        return None
    address = location[len(LOCATION_SCHEME):].rstrip("/")
    if not address:
        return None

    return {
        "id": headers.get("id", ""),
        "address": address,
        "model": headers.get("model", ""),
        "name": headers.get("name", ""),
        "fw_ver": headers.get("fw_ver", ""),
        "support": headers.get("support", "").split(),
    }


class YeelightDiscovery:
    """Finds Yeelight bulbs via SSDP.

    Thread-safe: all access to the device cache is guarded by a lock.
    """

    def __init__(self, port=SSDP_PORT):
        self.port = port
        self._device_cache = {}  # address -> device dict
        self._cache_time = 0.0
        self._lock = threading.Lock()

    def discover_devices(self, force=False, timeout=SSDP_TIMEOUT):
        """Scan for bulbs.

        Results are cached for DEVICE_CACHE_TTL seconds unless force=True.
        """
        with self._lock:
            if not force and self._device_cache and (
                time.time() - self._cache_time < DEVICE_CACHE_TTL
            ):
                return list(self._device_cache.values())

        # Scan outside the lock; it blocks for the full timeout
        devices = self._run_scan(SSDP_ID, timeout)

        with self._lock:
            self._device_cache = {d["address"]: d for d in devices}
            self._cache_time = time.time()
            return list(self._device_cache.values())

    def find_first_service(self, search_target=SSDP_ID, timeout=SSDP_TIMEOUT):
        """Return "host:port" of the first bulb that answers, or "" if none."""
        devices = self._run_scan(search_target, timeout, first_only=True)
        if not devices:
            logger.warning("No Yeelight discovered")
            return ""
        address = devices[0]["address"]
        logger.info("Yeelight discovered at [%s]", address)
        return address

    def _run_scan(self, search_target, timeout, first_only=False):
        """Send the M-SEARCH and collect responses until timeout."""
        devices = []
        seen = set()

        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM, socket.IPPROTO_UDP)
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            # Local network only
            sock.setsockopt(
                socket.IPPROTO_IP,
                socket.IP_MULTICAST_TTL,
                struct.pack("b", 2),
            )
            sock.sendto(build_search_request(search_target, self.port), (MULTICAST_ADDR, self.port))

            deadline = time.time() + timeout
            while True:
                remaining = deadline - time.time()
                if remaining <= 0:
                    break
                sock.settimeout(remaining)
                try:
                    data, _addr = sock.recvfrom(4096)
                except socket.timeout:
                    break

                device = parse_search_response(data)
                if device and device["address"] not in seen:
                    seen.add(device["address"])
                    devices.append(device)
                    logger.debug("Discovered Yeelight %s at %s", device["id"], device["address"])
                    if first_only:
                        break
        except OSError as exc:
            logger.error("Yeelight discovery error: %s", exc)
        finally:
            sock.close()

        logger.info("Yeelight scan complete: found %d device(s)", len(devices))
        return devices
