import socket

import pytest

from services.yeelight_light import YeelightLight
from yeelight_fakes import FakeBulb


@pytest.fixture
def fake_bulb():
    bulbs = []

    def factory(**kwargs):
        bulb = FakeBulb(**kwargs)
        bulbs.append(bulb)
        return bulb

    yield factory
    for bulb in bulbs:
        bulb.close()


@pytest.fixture
def connected_light():
    """An open YeelightLight plus the bulb-side end of its control socket."""
    server = socket.create_server(("127.0.0.1", 0))
    port = server.getsockname()[1]
    lights = []
    conns = []

    def factory(**kwargs):
        light = YeelightLight("127.0.0.1", port, **kwargs)
        light.open()
        conn, _ = server.accept()
        lights.append(light)
        conns.append(conn)
        return light, conn

    yield factory
    for light in lights:
        light.close()
    for conn in conns:
        conn.close()
    server.close()
