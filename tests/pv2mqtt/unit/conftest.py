"""Shared fixtures for unit tests.

Hub payloads carry base64 encoded names, so the builders below encode them
the way the hub does.
"""

from __future__ import annotations

import base64
from collections.abc import Callable
from unittest.mock import AsyncMock, MagicMock

import pytest

from pv2mqtt.api_types import (
    PositionKind,
    RoomData,
    SceneData,
    ShadeCapabilities,
    ShadeData,
    UserData,
    percent_to_raw,
)
from pv2mqtt.structs import BridgeSettings, DeviceStateView

HUB_SERIAL = "ABC123"
HUB_ADDR = "192.168.1.50"


def b64(name: str) -> str:
    return base64.b64encode(name.encode()).decode()


def make_user_data(serial: str = HUB_SERIAL, name: str = "Living Hub") -> UserData:
    return UserData.model_validate(
        {
            "serialNumber": serial,
            "hubName": b64(name),
            "macAddress": "00:26:74:AA:BB:CC",
            "ip": HUB_ADDR,
            "firmware": {"mainProcessor": {"name": "PV Hub2.0", "revision": 2, "subRevision": 0, "build": 1056}},
        },
    )


def make_shade(
    shade_id: int = 42,
    name: str = "Kitchen",
    percent: int | None = 50,
    capabilities: ShadeCapabilities = ShadeCapabilities.BOTTOM_UP,
    secondary_percent: int | None = None,
    room_id: int | None = 1,
    battery_kind: int | None = None,
) -> ShadeData:
    data: dict[str, object] = {
        "id": shade_id,
        "name": b64(name),
        "roomId": room_id,
        "capabilities": int(capabilities),
        "batteryStatus": 3,
        "batteryStrength": 180,
        "firmware": {"revision": 1, "subRevision": 8, "build": 1944},
    }
    if battery_kind is not None:
        data["batteryKind"] = battery_kind
    if percent is not None:
        positions: dict[str, object] = {
            "posKind1": int(PositionKind.PRIMARY_RAIL),
            "position1": percent_to_raw(percent),
        }
        if secondary_percent is not None:
            positions["posKind2"] = int(PositionKind.SECONDARY_RAIL)
            positions["position2"] = percent_to_raw(secondary_percent)
        data["positions"] = positions
    return ShadeData.model_validate(data)


def make_room(room_id: int = 1, name: str = "Kitchen Area") -> RoomData:
    return RoomData.model_validate({"id": room_id, "name": b64(name)})


def make_scene(scene_id: int = 7, name: str = "Morning", room_id: int | None = 1) -> SceneData:
    return SceneData.model_validate({"id": scene_id, "name": b64(name), "roomId": room_id})


@pytest.fixture
def settings() -> BridgeSettings:
    """Settings with every settle delay disabled."""
    return BridgeSettings(
        mqtt_host="broker.local",
        delete_settle_seconds=0,
        config_settle_seconds=0,
        reregister_interval=3600,
        mqtt_conn_delay=0,
    )


@pytest.fixture
def mock_pubsub() -> AsyncMock:
    """Mock PubSubClient recording publishes and subscriptions."""
    client: AsyncMock = AsyncMock()
    client.publish = AsyncMock()
    client.subscribe = AsyncMock()
    client.connect = AsyncMock()
    client.disconnect = AsyncMock()
    client.is_connected = True
    return client


@pytest.fixture
def mock_hub() -> MagicMock:
    """Mock HubClient answering for HUB_SERIAL at HUB_ADDR."""
    hub: MagicMock = MagicMock()
    hub.addr = HUB_ADDR
    hub.url = MagicMock(side_effect=lambda path: f"http://{HUB_ADDR}/{path}")
    hub.get_user_data = AsyncMock(return_value=make_user_data())
    hub.list_rooms = AsyncMock(return_value=[make_room()])
    hub.list_shades = AsyncMock(return_value=[make_shade()])
    hub.list_scenes = AsyncMock(return_value=[make_scene()])
    hub.get_shade = AsyncMock(return_value=make_shade())
    hub.move_shade = AsyncMock(return_value=make_shade())
    hub.change_shade_position = AsyncMock(return_value=make_shade())
    hub.set_battery_kind = AsyncMock(return_value=make_shade(battery_kind=2))
    hub.activate_scene = AsyncMock(return_value=[42])
    hub.enable_postback = AsyncMock()
    hub.close = AsyncMock()
    return hub


@pytest.fixture
def view_factory(mock_hub: MagicMock) -> Callable[..., DeviceStateView]:
    """Build a DeviceStateView tracking the mock hub."""

    def _make(**changes: object) -> DeviceStateView:
        view = DeviceStateView(hub=mock_hub, user_data=make_user_data(), responding=True, first_run=True)
        return view.evolve(**changes) if changes else view

    return _make


def published(client: AsyncMock) -> list[tuple[str, str]]:
    """(topic, payload) of every publish made on ``client``, in order."""
    calls: list[tuple[str, str]] = []
    for call in client.publish.call_args_list:
        topic, payload = call.args[0], call.args[1]
        calls.append((topic, payload.decode() if isinstance(payload, bytes) else payload))
    return calls
