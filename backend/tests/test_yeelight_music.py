import socket

import pytest

from services.yeelight_errors import ProtocolError, StreamNegotiationError
from services.yeelight_light import SessionState, YeelightLight
from services.yeelight_music import MusicModeServer, local_ipv4_address


class StubLight:
    """Just enough of YeelightLight for the handshake."""

    def __init__(self, connect_back=True, fail=False):
        self.host = "127.0.0.1"
        self.name = "stub"
        self.connect_back = connect_back
        self.fail = fail
        self.music_requests = []
        self.client = None
        self.bound = None

    def set_music_mode(self, on, host=None, port=None):
        self.music_requests.append((on, host, port))
        if self.fail:
            raise ProtocolError("stub: (-1) failed")
        if self.connect_back:
            self.client = socket.create_connection((host, port))

    def bind_stream_socket(self, sock):
        self.bound = sock

    def close(self):
        for s in (self.client, self.bound):
            if s is not None:
                s.close()


@pytest.fixture
def server():
    srv = MusicModeServer(host="127.0.0.1", accept_timeout=0.3)
    srv.open()
    yield srv
    srv.close()


def test_open_binds_ephemeral_port(server):
    assert server.is_open
    assert server.host == "127.0.0.1"
    assert server.port > 0


def test_close_is_idempotent(server):
    server.close()
    server.close()
    assert not server.is_open


def test_negotiate_binds_inbound_connection(server):
    light = StubLight()
    try:
        server.negotiate(light)
        assert light.music_requests == [(True, "127.0.0.1", server.port)]
        assert light.bound is not None
        assert light.bound.getpeername() == light.client.getsockname()
    finally:
        light.close()


def test_negotiate_timeout_is_soft(server):
    light = StubLight(connect_back=False)
    with pytest.raises(StreamNegotiationError):
        server.negotiate(light)
    assert light.bound is None


def test_stale_connection_is_not_handed_out(server):
    stale = socket.create_connection(("127.0.0.1", server.port))
    light = StubLight()
    try:
        server.negotiate(light)
        assert light.bound.getpeername() == light.client.getsockname()
        assert light.bound.getpeername() != stale.getsockname()
    finally:
        stale.close()
        light.close()


def test_failed_music_request_propagates(server):
    light = StubLight(fail=True)
    with pytest.raises(ProtocolError):
        server.negotiate(light)
    assert light.bound is None


def test_negotiate_requires_open_server():
    srv = MusicModeServer(host="127.0.0.1")
    with pytest.raises(StreamNegotiationError, match="not running"):
        srv.negotiate(StubLight())


def test_handshake_with_real_session(server, fake_bulb):
    bulb = fake_bulb()
    light = YeelightLight("127.0.0.1", bulb.port)
    light.open()
    try:
        server.negotiate(light)

        assert light.music_mode
        assert light.is_in_music_mode()
        assert bulb.commands[-1]["method"] == "set_music"
        assert bulb.commands[-1]["params"] == [1, "127.0.0.1", server.port]
    finally:
        light.close()


def test_real_session_timeout_keeps_light_open(server, fake_bulb):
    bulb = fake_bulb(connect_back=False)
    light = YeelightLight("127.0.0.1", bulb.port)
    light.open()
    try:
        with pytest.raises(StreamNegotiationError):
            server.negotiate(light)
        assert light.state is SessionState.OPEN
        assert not light.music_mode
    finally:
        light.close()


def test_local_ipv4_address_is_not_loopback():
    addr = local_ipv4_address()
    assert addr is None or not addr.startswith("127.")
