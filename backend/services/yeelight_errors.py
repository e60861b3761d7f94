"""Error types raised by the Yeelight services.

Per-light errors (connection, protocol, stream negotiation) are caught by the
array coordinator and only shrink the set of active lights.  Array-level
errors (configuration shortfall, nothing could be opened) surface to the
caller.
"""


class YeelightError(Exception):
    """Base class for all Yeelight failures."""


class LightConnectionError(YeelightError):
    """A light could not be connected within the connect timeout."""


class ProtocolError(YeelightError):
    """Bad response, correlation mismatch, device error, or failed I/O.

    The session that raised it is left in its sticky error state.
    """


class StreamNegotiationError(YeelightError):
    """Music mode handshake did not produce a stream connection in time.

    Soft failure: the light stays usable and the handshake is retried on the
    next write cycle.
    """


class ConfigurationError(YeelightError):
    """The array cannot be initialised from the given configuration."""
