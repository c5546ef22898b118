"""Exception hierarchy for pv2mqtt.

Configuration-time errors (``RouteCompileError``, ``RouteAmbiguityError``)
abort startup. Everything else is raised while the bridge is running and is
caught at the event loop boundary.
"""

from __future__ import annotations


class Pv2MqttError(Exception):
    """Base class for all pv2mqtt errors."""


class TransportError(Pv2MqttError):
    """MQTT connect/publish/subscribe/receive failure.

    Raised when:
    - The broker cannot be reached within the connect timeout
    - A publish or subscribe is attempted while disconnected
    - The receive stream ends because the connection dropped

    Attributes:
        operation: The transport operation that failed
        reason: Specific failure reason

    """

    def __init__(self, operation: str, reason: str) -> None:
        self.operation: str = operation
        self.reason: str = reason
        super().__init__(f"MQTT {operation} failed: {reason}")


class PayloadParseError(Pv2MqttError):
    """An inbound payload could not be decoded or parsed into the requested type.

    Attributes:
        text: The offending payload text (or a repr of the raw bytes)
        expected: Name of the requested type

    """

    def __init__(self, text: str, expected: str) -> None:
        self.text: str = text
        self.expected: str = expected
        super().__init__(f"Cannot parse payload {text!r} as {expected}")


class ParameterParseError(Pv2MqttError):
    """A topic parameter could not be parsed into its declared field type.

    Attributes:
        field: Name of the failing parameter
        value: The captured topic segment (None when the parameter is missing)
        expected: Description of the expected type

    """

    def __init__(self, field: str, value: str | None, expected: str) -> None:
        self.field: str = field
        self.value: str | None = value
        self.expected: str = expected
        super().__init__(f"Cannot parse topic parameter '{field}'={value!r}: {expected}")


class HubUnresponsiveError(Pv2MqttError):
    """The PowerView hub did not answer (connection refused, timeout, DNS failure).

    Kept separate from other hub errors: it drives the unresponsive
    diagnostic and availability path instead of being logged and dropped.

    Attributes:
        addr: Hub address that was contacted
        reason: Specific failure reason

    """

    def __init__(self, addr: str, reason: str) -> None:
        self.addr: str = addr
        self.reason: str = reason
        super().__init__(f"Hub {addr} is not responding: {reason}")


class HubRequestError(Pv2MqttError):
    """The hub answered with an HTTP error status.

    Attributes:
        url: Request URL
        status: HTTP status code

    """

    def __init__(self, url: str, status: int) -> None:
        self.url: str = url
        self.status: int = status
        super().__init__(f"Hub request {url} failed with HTTP {status}")


class HubResponseError(Pv2MqttError):
    """The hub answered with a body that does not match the expected shape.

    Attributes:
        url: Request URL
        reason: Validation failure summary

    """

    def __init__(self, url: str, reason: str) -> None:
        self.url: str = url
        self.reason: str = reason
        super().__init__(f"Unexpected response from {url}: {reason}")


class RouteCompileError(Pv2MqttError):
    """A route template is malformed.

    Attributes:
        route: The route template
        reason: What is wrong with it

    """

    def __init__(self, route: str, reason: str) -> None:
        self.route: str = route
        self.reason: str = reason
        super().__init__(f"Invalid route {route!r}: {reason}")


class RouteAmbiguityError(Pv2MqttError):
    """Two routes would match exactly the same set of topics.

    Attributes:
        route: The route being registered
        existing: The already registered route it collides with

    """

    def __init__(self, route: str, existing: str) -> None:
        self.route: str = route
        self.existing: str = existing
        super().__init__(f"Route {route!r} is ambiguous with already registered route {existing!r}")
