"""Topic routing for inbound MQTT messages.

Routes are topic templates such as ``pv2mqtt/shade/:serial/:shade_id/command``.
Registering a route subscribes to its filter (``pv2mqtt/shade/+/+/command``);
dispatching a received message finds the best matching route, runs the
extractors the handler declared and awaits the handler with their results:

    await router.route(
        "pv2mqtt/shade/:serial/:shade_id/command",
        handle_shade_command,
        Params(ShadeParams),
        Payload(ShadeCommand),
        State(),
    )

Topics that match no route are expected (the router shares the broker with
direct subscriptions) and are dropped with a debug log.
"""

from __future__ import annotations

import copy
import json
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol

from pydantic import BaseModel, ValidationError

from pv2mqtt.exceptions import ParameterParseError, PayloadParseError, RouteAmbiguityError, RouteCompileError
from pv2mqtt.logging_abstraction import get_logger
from pv2mqtt.structs import InboundMessage

__all__ = [
    "CAPTURE_MARKER",
    "Extractor",
    "Handler",
    "Params",
    "Payload",
    "Request",
    "Router",
    "State",
    "Subscriber",
    "Topic",
    "TopicPattern",
    "compile_route",
]

logger = get_logger(__name__)

CAPTURE_MARKER = ":"
SINGLE_LEVEL_WILDCARD = "+"
MULTI_LEVEL_WILDCARD = "#"

_TRUE_WORDS = ("true", "on", "1")
_FALSE_WORDS = ("false", "off", "0")


@dataclass(frozen=True, slots=True)
class TopicPattern:
    """A compiled route: the subscription filter plus a matcher for concrete topics.

    ``segments`` holds the literal text of each segment, or ``None`` where the
    route captures a parameter; ``names`` holds the capture names in order.
    """

    route: str
    segments: tuple[str | None, ...]
    names: tuple[str | None, ...]

    @property
    def filter(self) -> str:
        return "/".join(SINGLE_LEVEL_WILDCARD if seg is None else seg for seg in self.segments)

    @property
    def shape(self) -> tuple[str | None, ...]:
        """Two routes with the same shape match exactly the same topics."""
        return self.segments

    @property
    def specificity(self) -> tuple[bool, ...]:
        # lower sorts first: literal segments earlier in the route win
        return tuple(seg is None for seg in self.segments)

    def match(self, topic: str) -> dict[str, str] | None:
        parts = topic.split("/")
        if len(parts) != len(self.segments):
            return None
        params: dict[str, str] = {}
        for part, seg, name in zip(parts, self.segments, self.names, strict=True):
            if seg is None:
                assert name is not None
                params[name] = part
            elif part != seg:
                return None
        return params


def compile_route(route: str) -> TopicPattern:
    """Compile ``route`` into a :class:`TopicPattern`.

    Raises:
        RouteCompileError: empty route or segment, unnamed or misplaced capture
            marker, duplicate capture name, or an MQTT wildcard in a literal.

    """
    if not route:
        raise RouteCompileError(route, "route is empty")

    segments: list[str | None] = []
    names: list[str | None] = []
    for index, part in enumerate(route.split("/")):
        if not part:
            raise RouteCompileError(route, f"segment {index} is empty")
        if part.startswith(CAPTURE_MARKER):
            name = part[len(CAPTURE_MARKER) :]
            if not name:
                raise RouteCompileError(route, f"segment {index} has a capture marker but no name")
            if CAPTURE_MARKER in name:
                raise RouteCompileError(route, f"segment {index} has more than one capture marker")
            if name in names:
                raise RouteCompileError(route, f"capture name '{name}' is used more than once")
            segments.append(None)
            names.append(name)
            continue
        if CAPTURE_MARKER in part:
            raise RouteCompileError(route, f"capture marker must start segment {index} ({part!r})")
        if SINGLE_LEVEL_WILDCARD in part or MULTI_LEVEL_WILDCARD in part:
            raise RouteCompileError(route, f"segment {index} contains an MQTT wildcard ({part!r})")
        segments.append(part)
        names.append(None)

    return TopicPattern(route=route, segments=tuple(segments), names=tuple(names))


@dataclass(frozen=True, slots=True)
class Request:
    """Everything a handler's extractors may draw from, for a single dispatch."""

    message: InboundMessage
    params: dict[str, str] = field(default_factory=dict)
    state: Any = None


Handler = Callable[[Request], Awaitable[None]]


class Extractor(Protocol):
    def extract(self, request: Request) -> Any: ...


class Topic:
    """The received topic, verbatim."""

    def extract(self, request: Request) -> str:
        return request.message.topic


def _decode(payload: bytes, expected: str) -> str:
    try:
        return payload.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise PayloadParseError(repr(payload), expected) from exc


def _parse_bool(text: str) -> bool:
    folded = text.strip().casefold()
    if folded in _TRUE_WORDS:
        return True
    if folded in _FALSE_WORDS:
        return False
    msg = f"not a boolean: {text!r}"
    raise ValueError(msg)


class Payload:
    """The payload, decoded as UTF-8 and parsed into ``kind``.

    ``kind`` may be ``str``, ``int``, ``float``, ``bool``, an ``Enum`` (looked
    up by value), a pydantic model (validated from JSON) or any callable that
    takes the text.
    """

    def __init__(self, kind: Any = str) -> None:
        self.kind: Any = kind

    @property
    def expected(self) -> str:
        return getattr(self.kind, "__name__", repr(self.kind))

    def parse(self, text: str) -> Any:
        kind = self.kind
        if kind is str:
            return text
        if kind is bool:
            return _parse_bool(text)
        if kind in (int, float):
            return kind(text.strip())
        if isinstance(kind, type) and issubclass(kind, Enum):
            return kind(text)
        if isinstance(kind, type) and issubclass(kind, BaseModel):
            return kind.model_validate_json(text)
        return kind(text)

    def extract(self, request: Request) -> Any:
        text = _decode(request.message.payload, self.expected)
        try:
            return self.parse(text)
        except (ValueError, TypeError, ValidationError, json.JSONDecodeError) as exc:
            raise PayloadParseError(text, self.expected) from exc


class Params:
    """The matched topic parameters, validated into the pydantic ``model``."""

    def __init__(self, model: type[BaseModel]) -> None:
        self.model: type[BaseModel] = model

    def extract(self, request: Request) -> BaseModel:
        try:
            return self.model.model_validate(request.params)
        except ValidationError as exc:
            error = exc.errors()[0]
            loc = error.get("loc") or ("?",)
            name = str(loc[0])
            raise ParameterParseError(name, request.params.get(name), error.get("msg", "invalid")) from exc


class State:
    """A shallow copy of the application state handed to ``Router.dispatch``."""

    def extract(self, request: Request) -> Any:
        return copy.copy(request.state)


class Subscriber(Protocol):
    async def subscribe(self, topic_filter: str) -> None: ...


@dataclass(frozen=True, slots=True)
class _Registration:
    pattern: TopicPattern
    handler: Handler


def _bind(func: Callable[..., Awaitable[None]], extractors: tuple[Extractor, ...]) -> Handler:
    """Wrap ``func`` into the fixed ``Handler(Request)`` shape."""

    async def handler(request: Request) -> None:
        args = [extractor.extract(request) for extractor in extractors]
        await func(*args)

    handler.__name__ = getattr(func, "__name__", "handler")
    return handler


class Router:
    """Owns the registered routes and the subscriptions backing them."""

    lp: str = "Router:"

    def __init__(self, client: Subscriber) -> None:
        self.client: Subscriber = client
        self._routes: list[_Registration] = []

    @property
    def routes(self) -> list[str]:
        return [reg.pattern.route for reg in self._routes]

    @property
    def subscriptions(self) -> list[str]:
        return [reg.pattern.filter for reg in self._routes]

    async def route(self, route: str, func: Callable[..., Awaitable[None]], *extractors: Extractor) -> TopicPattern:
        """Register ``func`` for ``route`` and subscribe to its filter.

        ``func`` is awaited with one argument per extractor, in order.

        Raises:
            RouteCompileError: the route is malformed
            RouteAmbiguityError: an existing route matches exactly the same topics
            TransportError: the subscription failed

        """
        lp = f"{self.lp}route:"
        pattern = compile_route(route)
        for reg in self._routes:
            if reg.pattern.shape == pattern.shape:
                raise RouteAmbiguityError(route, reg.pattern.route)

        await self.client.subscribe(pattern.filter)
        self._routes.append(_Registration(pattern, _bind(func, extractors)))
        logger.debug("%s %s -> %s", lp, pattern.filter, getattr(func, "__name__", func))
        return pattern

    def resolve(self, topic: str) -> tuple[TopicPattern, Handler, dict[str, str]] | None:
        """Find the most specific route matching ``topic``."""
        best: tuple[TopicPattern, Handler, dict[str, str]] | None = None
        for reg in self._routes:
            params = reg.pattern.match(topic)
            if params is None:
                continue
            if best is None or reg.pattern.specificity < best[0].specificity:
                best = (reg.pattern, reg.handler, params)
        return best

    async def dispatch(self, message: InboundMessage, state: Any = None) -> bool:
        """Run the handler for ``message`` to completion.

        Returns False when no route matches. Extractor and handler errors
        propagate to the caller.
        """
        lp = f"{self.lp}dispatch:"
        resolved = self.resolve(message.topic)
        if resolved is None:
            logger.debug("%s No route for topic %s, dropping", lp, message.topic)
            return False

        pattern, handler, params = resolved
        logger.debug(
            "%s %s matched %s",
            lp,
            message.topic,
            pattern.route,
            extra={"params": params} if params else None,
        )
        await handler(Request(message=message, params=params, state=state))
        return True

    async def resubscribe(self) -> None:
        """Re-issue every subscription, after the transport reconnected."""
        for topic_filter in self.subscriptions:
            await self.client.subscribe(topic_filter)
