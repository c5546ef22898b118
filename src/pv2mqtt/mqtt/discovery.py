"""Home Assistant MQTT discovery descriptors and the bridge's topic namespace.

Descriptor topics live under the discovery prefix:
``{prefix}/{component}/{serial}-{id}[-sub]/config``. State and command topics
live under ``pv2mqtt/{shade|scene|hub}/{serial}/...``. Both are consumed by
Home Assistant, so names must not change between releases.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from pv2mqtt.api_types import ShadeBatteryKind, ShadeData, UserData
from pv2mqtt.const import APP_TOPIC, BRIDGE_AVAILABILITY_TOPIC, HUB_MANUFACTURER, ORIGIN_STRUCT, SECONDARY_SUFFIX

HUB_DEVICE_ID = "hub"

COVER = "cover"
SCENE = "scene"
SENSOR = "sensor"
BUTTON = "button"
SELECT = "select"

# (sub id, label, command token, icon)
SHADE_BUTTONS: tuple[tuple[str, str, str, str], ...] = (
    ("jog", "Jog", "JOG", "mdi:arrow-up-down"),
    ("calibrate", "Calibrate", "CALIBRATE", "mdi:tune-vertical"),
    ("heart", "Move to Favorite", "HEART", "mdi:heart"),
    ("refresh_battery", "Refresh Battery Status", "REFRESH_BATTERY", "mdi:battery-sync"),
    ("refresh_position", "Refresh Position", "REFRESH_POSITION", "mdi:refresh"),
)


def shade_key(shade_id: int, secondary: bool = False) -> str:
    """Topic id of a shade rail; the secondary rail is its own logical device."""
    return f"{shade_id}{SECONDARY_SUFFIX}" if secondary else str(shade_id)


def unique_id(serial: str, device_id: str | int, sub: str | None = None) -> str:
    base = f"{serial}-{device_id}"
    return f"{base}-{sub}" if sub else base


def shade_topic(serial: str, key: str, kind: str) -> str:
    return f"{APP_TOPIC}/shade/{serial}/{key}/{kind}"


def scene_topic(serial: str, scene_id: int, kind: str) -> str:
    return f"{APP_TOPIC}/scene/{serial}/{scene_id}/{kind}"


def hub_topic(serial: str, kind: str) -> str:
    return f"{APP_TOPIC}/hub/{serial}/{kind}"


def config_topic(prefix: str, component: str, object_id: str) -> str:
    return f"{prefix}/{component}/{object_id}/config"


def legacy_cover_config_topic(prefix: str, legacy_id: str) -> str:
    """Descriptor topic used by releases that did not prefix ids with the hub serial."""
    return config_topic(prefix, COVER, legacy_id)


def is_legacy_object_id(object_id: str) -> bool:
    base = object_id.removesuffix(SECONDARY_SUFFIX)
    return base.isdigit()


def legacy_object_ids(shade_id: int) -> tuple[str, str]:
    """Object ids an older release would have used for ``shade_id``, both rails."""
    return str(shade_id), f"{shade_id}{SECONDARY_SUFFIX}"


@dataclass(frozen=True, slots=True)
class DeviceDescriptor:
    """One Home Assistant entity: where its descriptor goes and what it says."""

    component: str
    unique_id: str
    config: dict[str, Any] = field(default_factory=dict)

    def topic(self, prefix: str) -> str:
        return config_topic(prefix, self.component, self.unique_id)


def _availability(*topics: str) -> dict[str, Any]:
    return {
        "availability": [{"topic": topic} for topic in topics],
        "availability_mode": "all",
    }


def hub_device(user_data: UserData) -> dict[str, Any]:
    serial = user_data.serial_number
    device: dict[str, Any] = {
        "identifiers": [unique_id(serial, HUB_DEVICE_ID)],
        "name": user_data.hub_name,
        "manufacturer": HUB_MANUFACTURER,
        "model": "PowerView Hub",
    }
    if user_data.sw_version:
        device["sw_version"] = user_data.sw_version
    if user_data.mac_address:
        device["connections"] = [["mac", user_data.mac_address.casefold()]]
    return device


def shade_device(
    serial: str,
    shade: ShadeData,
    room_name: str | None,
    secondary: bool = False,
) -> dict[str, Any]:
    """Device registry entry for one rail of ``shade``; the secondary rail is a separate device."""
    key = shade_key(shade.id, secondary)
    device: dict[str, Any] = {
        "identifiers": [unique_id(serial, key)],
        "name": shade.secondary_display_name if secondary else shade.display_name,
        "manufacturer": HUB_MANUFACTURER,
        "model": "pv2mqtt",
        "sw_version": str(shade.firmware) if shade.firmware else "unknown",
        "via_device": unique_id(serial, HUB_DEVICE_ID),
    }
    if room_name:
        device["suggested_area"] = room_name
    return device


def hub_sensors(user_data: UserData) -> list[DeviceDescriptor]:
    serial = user_data.serial_number
    device = hub_device(user_data)
    common = {
        "origin": ORIGIN_STRUCT,
        "device": device,
        "entity_category": "diagnostic",
        **_availability(BRIDGE_AVAILABILITY_TOPIC),
    }
    return [
        DeviceDescriptor(
            SENSOR,
            unique_id(serial, HUB_DEVICE_ID, "ip_address"),
            {
                **common,
                "name": "IP Address",
                "unique_id": unique_id(serial, HUB_DEVICE_ID, "ip_address"),
                "state_topic": hub_topic(serial, "ip_address"),
                "icon": "mdi:ip-network",
            },
        ),
        DeviceDescriptor(
            SENSOR,
            unique_id(serial, HUB_DEVICE_ID, "responding"),
            {
                **common,
                "name": "Responding",
                "unique_id": unique_id(serial, HUB_DEVICE_ID, "responding"),
                "state_topic": hub_topic(serial, "responding"),
                "icon": "mdi:lan-connect",
            },
        ),
    ]


def cover_descriptor(serial: str, shade: ShadeData, room_name: str | None, secondary: bool = False) -> DeviceDescriptor:
    key = shade_key(shade.id, secondary)
    uid = unique_id(serial, key)
    return DeviceDescriptor(
        COVER,
        uid,
        {
            "name": None,
            "device_class": "shade",
            "unique_id": uid,
            "origin": ORIGIN_STRUCT,
            "device": shade_device(serial, shade, room_name, secondary),
            "state_topic": shade_topic(serial, key, "state"),
            "position_topic": shade_topic(serial, key, "position"),
            "set_position_topic": shade_topic(serial, key, "set_position"),
            "command_topic": shade_topic(serial, key, "command"),
            "payload_open": "OPEN",
            "payload_close": "CLOSE",
            "payload_stop": "STOP",
            **_availability(shade_topic(serial, key, "availability"), hub_topic(serial, "availability")),
        },
    )


def _shade_extras_common(serial: str, shade: ShadeData, room_name: str | None) -> dict[str, Any]:
    key = shade_key(shade.id)
    return {
        "origin": ORIGIN_STRUCT,
        "device": shade_device(serial, shade, room_name),
        **_availability(shade_topic(serial, key, "availability"), hub_topic(serial, "availability")),
    }


def battery_descriptor(serial: str, shade: ShadeData, room_name: str | None) -> DeviceDescriptor:
    uid = unique_id(serial, shade.id, "battery")
    return DeviceDescriptor(
        SENSOR,
        uid,
        {
            **_shade_extras_common(serial, shade, room_name),
            "name": "Battery",
            "unique_id": uid,
            "state_topic": shade_topic(serial, shade_key(shade.id), "battery"),
            "entity_category": "diagnostic",
            "icon": "mdi:battery",
        },
    )


def button_descriptors(serial: str, shade: ShadeData, room_name: str | None) -> list[DeviceDescriptor]:
    common = _shade_extras_common(serial, shade, room_name)
    command_topic = shade_topic(serial, shade_key(shade.id), "command")
    descriptors: list[DeviceDescriptor] = []
    for sub, label, token, icon in SHADE_BUTTONS:
        uid = unique_id(serial, shade.id, sub)
        descriptors.append(
            DeviceDescriptor(
                BUTTON,
                uid,
                {
                    **common,
                    "name": label,
                    "unique_id": uid,
                    "command_topic": command_topic,
                    "payload_press": token,
                    "icon": icon,
                },
            ),
        )
    return descriptors


def power_source_descriptor(serial: str, shade: ShadeData, room_name: str | None) -> DeviceDescriptor:
    uid = unique_id(serial, shade.id, "power_source")
    key = shade_key(shade.id)
    return DeviceDescriptor(
        SELECT,
        uid,
        {
            **_shade_extras_common(serial, shade, room_name),
            "name": "Power Source",
            "unique_id": uid,
            "command_topic": shade_topic(serial, key, "command"),
            "state_topic": shade_topic(serial, key, "power_source"),
            "options": [kind.label for kind in ShadeBatteryKind],
            "entity_category": "config",
            "icon": "mdi:power-plug-battery",
        },
    )


def scene_descriptor(serial: str, scene_id: int, name: str, room_name: str | None, user_data: UserData) -> DeviceDescriptor:
    uid = unique_id(serial, scene_id)
    device = hub_device(user_data)
    config: dict[str, Any] = {
        "name": name,
        "unique_id": uid,
        "origin": ORIGIN_STRUCT,
        "device": device,
        "command_topic": scene_topic(serial, scene_id, "set"),
        "payload_on": "ON",
        "icon": "mdi:palette",
        **_availability(scene_topic(serial, scene_id, "availability"), hub_topic(serial, "availability")),
    }
    if room_name:
        # scenes hang off the hub device, so the room only shows in the entity name
        config["name"] = f"{room_name} {name}"
    return DeviceDescriptor(SCENE, uid, config)
