"""aiomqtt transport for the bridge.

Wraps one ``aiomqtt.Client`` connection. Every aiomqtt failure surfaces as
:class:`TransportError`; reconnecting is the caller's job (see
``BridgeServer._receive_loop``).
"""

from __future__ import annotations

import contextlib
import uuid
from collections.abc import AsyncIterator

import aiomqtt

from pv2mqtt.const import BRIDGE_AVAILABILITY_TOPIC, DEVICE_LWT_MSG, HASS_BIRTH_MSG
from pv2mqtt.exceptions import TransportError
from pv2mqtt.logging_abstraction import get_logger
from pv2mqtt.structs import BridgeSettings, InboundMessage

logger = get_logger(__name__)


def _payload_bytes(payload: object) -> bytes:
    if payload is None:
        return b""
    if isinstance(payload, bytes | bytearray):
        return bytes(payload)
    return str(payload).encode()


class PubSubClient:
    """Publish/subscribe capability used by the router, the reconciliation engine and the handlers."""

    lp: str = "mqtt:"

    def __init__(self, settings: BridgeSettings, identifier: str | None = None) -> None:
        self.settings: BridgeSettings = settings
        self.identifier: str = identifier or f"pv2mqtt_{uuid.uuid4().hex[:12]}"
        self.client: aiomqtt.Client | None = None
        self._connected: bool = False

    @property
    def is_connected(self) -> bool:
        return self._connected

    def _require(self, operation: str) -> aiomqtt.Client:
        if self.client is None or not self._connected:
            raise TransportError(operation, "not connected")
        return self.client

    async def connect(self) -> None:
        """Connect to the broker and announce the bridge as online.

        Raises:
            TransportError: the broker refused or did not answer within the connect timeout

        """
        lp = f"{self.lp}connect:"
        settings = self.settings
        await self._discard_client()
        logger.debug(
            "%s Connecting to MQTT broker...",
            lp,
            extra={"host": settings.mqtt_host, "port": settings.mqtt_port, "client_id": self.identifier},
        )
        client = aiomqtt.Client(
            hostname=settings.mqtt_host,
            port=settings.mqtt_port,
            username=settings.mqtt_user,
            password=settings.mqtt_password,
            identifier=self.identifier,
            will=aiomqtt.Will(topic=BRIDGE_AVAILABILITY_TOPIC, payload=DEVICE_LWT_MSG, retain=True),
            timeout=settings.mqtt_connect_timeout,
        )
        try:
            _ = await client.__aenter__()
        except aiomqtt.MqttError as exc:
            # [code:134] Bad user name or password
            if "code:134" in str(exc):
                logger.error("%s Bad username or password, check your MQTT credentials (username: %s)", lp, settings.mqtt_user)
            raise TransportError("connect", str(exc)) from exc

        self.client = client
        self._connected = True
        logger.info("%s Connected to MQTT broker: %s port: %s", lp, settings.mqtt_host, settings.mqtt_port)
        await self.publish(BRIDGE_AVAILABILITY_TOPIC, HASS_BIRTH_MSG, retain=True)

    async def _discard_client(self) -> None:
        """Release the socket and tasks of a previous connection; the broker has usually dropped it already."""
        client, self.client = self.client, None
        self._connected = False
        if client is None:
            return
        logger.debug("%s Releasing stale MQTT client", self.lp)
        with contextlib.suppress(aiomqtt.MqttError):
            await client.__aexit__(None, None, None)

    async def disconnect(self) -> None:
        lp = f"{self.lp}disconnect:"
        if self.client is None:
            return
        try:
            if self._connected:
                await self.client.publish(BRIDGE_AVAILABILITY_TOPIC, DEVICE_LWT_MSG, qos=0, retain=True)
            await self.client.__aexit__(None, None, None)
        except aiomqtt.MqttError as exc:
            logger.warning("%s MQTT disconnect failed: %s", lp, exc)
        else:
            logger.info("%s Disconnected from MQTT broker", lp)
        finally:
            self._connected = False
            self.client = None

    async def publish(self, topic: str, payload: bytes | str, retain: bool = False) -> None:
        lp = f"{self.lp}publish:"
        client = self._require("publish")
        data = payload.encode() if isinstance(payload, str) else payload
        logger.debug("%s %s <- %r%s", lp, topic, data[:80], " (retained)" if retain else "")
        try:
            await client.publish(topic, data, qos=0, retain=retain)
        except aiomqtt.MqttError as exc:
            self._connected = False
            raise TransportError("publish", f"{topic}: {exc}") from exc

    async def subscribe(self, topic_filter: str) -> None:
        lp = f"{self.lp}subscribe:"
        client = self._require("subscribe")
        try:
            _ = await client.subscribe(topic_filter, qos=0)
        except aiomqtt.MqttError as exc:
            self._connected = False
            raise TransportError("subscribe", f"{topic_filter}: {exc}") from exc
        logger.debug("%s %s", lp, topic_filter)

    async def messages(self) -> AsyncIterator[InboundMessage]:
        """Yield inbound messages until the connection drops.

        Raises:
            TransportError: the connection was lost

        """
        client = self._require("receive")
        try:
            async for message in client.messages:
                yield InboundMessage(topic=message.topic.value, payload=_payload_bytes(message.payload))
        except aiomqtt.MqttError as exc:
            self._connected = False
            raise TransportError("receive", str(exc)) from exc
        self._connected = False
        raise TransportError("receive", "message stream ended")
