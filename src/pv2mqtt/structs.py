from __future__ import annotations

import dataclasses
import os
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from pydantic import BaseModel

from pv2mqtt.api_types import HomeAutomationRecord, UserData
from pv2mqtt.const import (
    DEFAULT_CONFIG_SETTLE_SECONDS,
    DEFAULT_DELETE_SETTLE_SECONDS,
    DEFAULT_HUB_TIMEOUT,
    YES_ANSWER,
)

if TYPE_CHECKING:
    from pv2mqtt.hub import HubClient


class BridgeSettings(BaseModel):
    """Runtime configuration, read from PV_* environment variables and CLI overrides."""

    mqtt_host: str = "localhost"
    mqtt_port: int = 1883
    mqtt_user: str | None = None
    mqtt_password: str | None = None
    mqtt_conn_delay: int = 5
    mqtt_connect_timeout: float = 10.0
    discovery_prefix: str = "homeassistant"
    hub_ip: str | None = None
    hub_timeout: float = DEFAULT_HUB_TIMEOUT
    postback_host: str | None = None
    postback_bind: str = "0.0.0.0"
    postback_port: int = 8130
    reregister_interval: float = 900.0
    event_queue_size: int = 64
    delete_settle_seconds: float = DEFAULT_DELETE_SETTLE_SECONDS
    config_settle_seconds: float = DEFAULT_CONFIG_SETTLE_SECONDS
    debug: bool = False

    @classmethod
    def from_env(cls) -> BridgeSettings:
        """Re-evaluate the environment; called again after a .env file is loaded."""
        env = os.environ
        values: dict[str, object] = {
            "mqtt_host": env.get("PV_MQTT_HOST"),
            "mqtt_port": env.get("PV_MQTT_PORT"),
            "mqtt_user": env.get("PV_MQTT_USER") or None,
            "mqtt_password": env.get("PV_MQTT_PASSWORD") or None,
            "mqtt_conn_delay": env.get("PV_MQTT_CONN_DELAY"),
            "mqtt_connect_timeout": env.get("PV_MQTT_CONNECT_TIMEOUT"),
            "discovery_prefix": env.get("PV_DISCOVERY_PREFIX"),
            "hub_ip": env.get("PV_HUB_IP") or None,
            "hub_timeout": env.get("PV_HUB_TIMEOUT"),
            "postback_host": env.get("PV_POSTBACK_HOST") or None,
            "postback_bind": env.get("PV_POSTBACK_BIND"),
            "postback_port": env.get("PV_POSTBACK_PORT"),
            "reregister_interval": env.get("PV_REREGISTER_INTERVAL"),
            "event_queue_size": env.get("PV_EVENT_QUEUE_SIZE"),
            "delete_settle_seconds": env.get("PV_DELETE_SETTLE_SECONDS"),
            "config_settle_seconds": env.get("PV_CONFIG_SETTLE_SECONDS"),
            "debug": env.get("PV_DEBUG", "0").casefold() in YES_ANSWER,
        }
        # unset variables fall back to the model defaults
        return cls.model_validate({k: v for k, v in values.items() if v not in (None, "")})


@dataclass(frozen=True, slots=True)
class DeviceStateView:
    """Immutable snapshot of what the bridge knows about its hub.

    Only the server replaces it (see :class:`StateCell`); handlers receive it
    by value and never observe a half-updated view.
    """

    hub: HubClient | None = None
    user_data: UserData | None = None
    responding: bool = False
    # no reconciliation pass has succeeded yet in this process
    first_run: bool = True

    @property
    def serial(self) -> str | None:
        return self.user_data.serial_number if self.user_data else None

    @property
    def hub_addr(self) -> str | None:
        return self.hub.addr if self.hub else None

    def evolve(self, **changes: object) -> DeviceStateView:
        return dataclasses.replace(self, **changes)  # type: ignore[arg-type]


class StateCell:
    """Holds the current :class:`DeviceStateView`; replaced wholesale, never mutated."""

    def __init__(self, view: DeviceStateView | None = None) -> None:
        self._view: DeviceStateView = view or DeviceStateView()

    def load(self) -> DeviceStateView:
        return self._view

    def swap(self, view: DeviceStateView) -> DeviceStateView:
        """Publish ``view`` and return the one it replaced."""
        previous, self._view = self._view, view
        return previous


@dataclass(frozen=True, slots=True)
class InboundMessage:
    topic: str
    payload: bytes


@dataclass(frozen=True, slots=True)
class HubEventBatch:
    """Motion/position records pushed by the hub to ``/postback/{serial}``."""

    serial: str
    records: list[HomeAutomationRecord] = field(default_factory=list)


@dataclass(frozen=True, slots=True)
class ReconcileTick:
    reason: str = "periodic"


@dataclass(frozen=True, slots=True)
class HubDiscovered:
    """A hub answered (or failed to answer) after being found via mDNS."""

    addr: str
    user_data: UserData | None = None

    @property
    def reachable(self) -> bool:
        return self.user_data is not None


BridgeEvent = InboundMessage | HubEventBatch | ReconcileTick | HubDiscovered
