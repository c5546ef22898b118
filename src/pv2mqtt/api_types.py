"""pydantic models for the PowerView Gen2 hub REST API.

References:
    https://github.com/jlaur/hdpowerview-doc/
    PowerView-Hub-REST-API-v2.pdf

The hub speaks camelCase JSON and base64-encodes every user supplied name.
Models accept unknown fields since firmware revisions add them freely.
"""

from __future__ import annotations

import base64
import binascii
from enum import IntEnum, IntFlag, StrEnum
from typing import Annotated

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field
from pydantic.alias_generators import to_camel

RAW_POSITION_MAX = 0xFFFF


def percent_to_raw(percent: int) -> int:
    """Convert a 0-100 percentage into the hub's 0-65535 rail position."""
    if not 0 <= percent <= 100:
        msg = f"percent must be within 0..100, got {percent}"
        raise ValueError(msg)
    return RAW_POSITION_MAX * percent // 100


def raw_to_percent(raw: int) -> int:
    """Convert a 0-65535 rail position into a 0-100 percentage."""
    if not 0 <= raw <= RAW_POSITION_MAX:
        msg = f"raw position must be within 0..{RAW_POSITION_MAX}, got {raw}"
        raise ValueError(msg)
    return round(raw * 100 / RAW_POSITION_MAX)


def _decode_base64_name(value: object) -> object:
    if not isinstance(value, str):
        return value
    try:
        return base64.b64decode(value, validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError) as exc:
        msg = f"not a base64 encoded utf-8 name: {value!r}"
        raise ValueError(msg) from exc


Base64Name = Annotated[str, BeforeValidator(_decode_base64_name)]


class HubModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class RoomType(IntEnum):
    REGULAR = 0
    REPEATER = 1
    DEFAULT_ROOM = 2


class BatteryStatus(IntEnum):
    UNAVAILABLE = 0
    LOW = 1
    MEDIUM = 2
    HIGH = 3
    PLUGGED_IN = 4

    @property
    def label(self) -> str:
        return self.name.replace("_", " ").title()


class ShadeBatteryKind(IntEnum):
    HARDWIRED_POWER_SUPPLY = 1
    BATTERY_WAND = 2
    RECHARGEABLE_BATTERY = 3

    @property
    def label(self) -> str:
        return _BATTERY_KIND_LABELS[self]


_BATTERY_KIND_LABELS: dict[ShadeBatteryKind, str] = {
    ShadeBatteryKind.HARDWIRED_POWER_SUPPLY: "Hardwired Power Supply",
    ShadeBatteryKind.BATTERY_WAND: "Battery Wand",
    ShadeBatteryKind.RECHARGEABLE_BATTERY: "Rechargeable Battery",
}


class PositionKind(IntEnum):
    NONE = 0
    PRIMARY_RAIL = 1
    SECONDARY_RAIL = 2
    VANE_TILT = 3
    ERROR = 4


class ShadeCapabilityFlags(IntFlag):
    PRIMARY_RAIL = 1
    SECONDARY_RAIL = 2
    TILT_ON_CLOSED = 4
    TILT_ANYWHERE = 8
    TILT_180 = 16
    PRIMARY_RAIL_REVERSED = 32
    SECONDARY_RAIL_OVERLAPPED = 64


class ShadeCapabilities(IntEnum):
    BOTTOM_UP = 0
    BOTTOM_UP_TILT_90 = 1
    BOTTOM_UP_TILT_180 = 2
    VERTICAL_TILT_180 = 3
    VERTICAL = 4
    TILT_ONLY_180 = 5
    TOP_DOWN = 6
    TOP_DOWN_BOTTOM_UP = 7
    DUAL_OVERLAPPED = 8
    DUAL_OVERLAPPED_TILT_90 = 9

    def flags(self) -> ShadeCapabilityFlags:
        return _CAPABILITY_FLAGS[self]


_F = ShadeCapabilityFlags
_CAPABILITY_FLAGS: dict[ShadeCapabilities, ShadeCapabilityFlags] = {
    ShadeCapabilities.BOTTOM_UP: _F.PRIMARY_RAIL,
    ShadeCapabilities.BOTTOM_UP_TILT_90: _F.PRIMARY_RAIL | _F.TILT_ON_CLOSED,
    ShadeCapabilities.BOTTOM_UP_TILT_180: _F.PRIMARY_RAIL | _F.TILT_ANYWHERE | _F.TILT_180,
    ShadeCapabilities.VERTICAL_TILT_180: _F.PRIMARY_RAIL | _F.TILT_ANYWHERE | _F.TILT_180,
    ShadeCapabilities.VERTICAL: _F.PRIMARY_RAIL,
    ShadeCapabilities.TILT_ONLY_180: _F.TILT_ANYWHERE | _F.TILT_180,
    ShadeCapabilities.TOP_DOWN: _F.PRIMARY_RAIL | _F.PRIMARY_RAIL_REVERSED,
    ShadeCapabilities.TOP_DOWN_BOTTOM_UP: _F.PRIMARY_RAIL | _F.SECONDARY_RAIL,
    ShadeCapabilities.DUAL_OVERLAPPED: _F.PRIMARY_RAIL | _F.SECONDARY_RAIL | _F.SECONDARY_RAIL_OVERLAPPED,
    ShadeCapabilities.DUAL_OVERLAPPED_TILT_90: (
        _F.PRIMARY_RAIL | _F.SECONDARY_RAIL | _F.SECONDARY_RAIL_OVERLAPPED | _F.TILT_ON_CLOSED
    ),
}


class ShadeUpdateMotion(StrEnum):
    UP = "up"
    DOWN = "down"
    STOP = "stop"
    JOG = "jog"
    CALIBRATE = "calibrate"
    HEART = "heart"
    LEFT_TILT = "leftTilt"
    RIGHT_TILT = "rightTilt"


class ShadeFirmware(HubModel):
    revision: int
    sub_revision: int
    build: int
    index: int | None = None

    def __str__(self) -> str:
        return f"{self.revision}.{self.sub_revision}.{self.build}"


class ShadePosition(HubModel):
    pos_kind_1: PositionKind
    position_1: int
    pos_kind_2: PositionKind | None = None
    position_2: int | None = None

    def raw_for(self, kind: PositionKind) -> int | None:
        """Raw position of the rail of ``kind``, wherever the hub reported it."""
        if self.pos_kind_1 == kind:
            return self.position_1
        if self.pos_kind_2 == kind:
            return self.position_2
        return None

    def percent_for(self, kind: PositionKind) -> int | None:
        raw = self.raw_for(kind)
        return None if raw is None else raw_to_percent(raw)

    def with_rail(self, kind: PositionKind, raw: int) -> ShadePosition:
        """Copy with the rail of ``kind`` moved to ``raw``; other rails keep their position."""
        if self.pos_kind_1 == kind:
            return self.model_copy(update={"position_1": raw})
        if self.pos_kind_2 == kind:
            return self.model_copy(update={"position_2": raw})
        if kind == PositionKind.PRIMARY_RAIL:
            return self.model_copy(update={"pos_kind_1": kind, "position_1": raw})
        return self.model_copy(update={"pos_kind_2": kind, "position_2": raw})


class SmartPowerSupply(HubModel):
    status: int
    id: int
    port: int


class Motor(HubModel):
    revision: int
    sub_revision: int
    build: int


class RoomData(HubModel):
    id: int
    name: Base64Name
    order: int = 0
    color_id: int | None = None
    icon_id: int | None = None
    room_type: RoomType | None = Field(default=None, alias="type")


class ShadeData(HubModel):
    id: int
    name: Base64Name | None = None
    secondary_name: Base64Name | None = None
    order: int | None = None
    room_id: int | None = None
    group_id: int | None = None
    shade_type: int | None = Field(default=None, alias="type")
    capabilities: int = ShadeCapabilities.BOTTOM_UP
    battery_status: BatteryStatus = BatteryStatus.UNAVAILABLE
    battery_strength: int = 0
    battery_kind: ShadeBatteryKind | None = None
    smart_power_supply: SmartPowerSupply | None = None
    signal_strength: int | None = None
    firmware: ShadeFirmware | None = None
    motor: Motor | None = None
    positions: ShadePosition | None = None

    @property
    def display_name(self) -> str:
        return self.name or f"Shade {self.id}"

    @property
    def secondary_display_name(self) -> str:
        return self.secondary_name or f"{self.display_name} Middle Rail"

    @property
    def capability_flags(self) -> ShadeCapabilityFlags:
        try:
            return ShadeCapabilities(self.capabilities).flags()
        except ValueError:
            # unknown capability codes behave like a plain roller
            return ShadeCapabilityFlags.PRIMARY_RAIL

    @property
    def has_primary_rail(self) -> bool:
        return ShadeCapabilityFlags.PRIMARY_RAIL in self.capability_flags

    @property
    def has_secondary_rail(self) -> bool:
        return ShadeCapabilityFlags.SECONDARY_RAIL in self.capability_flags

    def rail_percent(self, kind: PositionKind) -> int | None:
        if self.positions is None:
            return None
        return self.positions.percent_for(kind)


class SceneData(HubModel):
    id: int
    name: Base64Name
    room_id: int | None = None
    order: int = 0
    color_id: int | None = None
    icon_id: int | None = None
    network_number: int | None = None


class SceneMember(HubModel):
    id: int | None = None
    scene_id: int
    shade_id: int
    positions: ShadePosition | None = None


class ProcessorVersion(HubModel):
    name: str | None = None
    revision: int
    sub_revision: int
    build: int

    def __str__(self) -> str:
        return f"{self.revision}.{self.sub_revision}.{self.build}"


class HubFirmware(HubModel):
    main_processor: ProcessorVersion | None = None
    radio: ProcessorVersion | None = None


class UserData(HubModel):
    serial_number: str
    hub_name: Base64Name
    mac_address: str | None = None
    ip: str | None = None
    firmware: HubFirmware | None = None

    @property
    def sw_version(self) -> str | None:
        if self.firmware and self.firmware.main_processor:
            return str(self.firmware.main_processor)
        return None


class RoomsResponse(HubModel):
    room_data: list[RoomData]


class ShadesResponse(HubModel):
    shade_data: list[ShadeData]


class ShadeResponse(HubModel):
    shade: ShadeData


class ScenesResponse(HubModel):
    scene_data: list[SceneData]


class SceneMembersResponse(HubModel):
    scene_member_data: list[SceneMember]


class UserDataResponse(HubModel):
    user_data: UserData


class ActivatedScene(HubModel):
    shade_ids: list[int] = Field(default_factory=list)


class SceneActivationResponse(HubModel):
    scene: ActivatedScene


class HomeAutomationRecordType(StrEnum):
    STARTS_OPENING = "starts-opening"
    STARTS_CLOSING = "starts-closing"
    BEGINS_MOVING = "begins-moving"
    TARGET_LEVEL_CHANGED = "target-level-changed"
    LEVEL_CHANGED = "level-changed"
    HAS_OPENED = "has-opened"
    HAS_FULLY_OPENED = "has-fully-opened"
    HAS_FULLY_CLOSED = "has-fully-closed"
    HAS_CLOSED = "has-closed"
    STOPS = "stops"


class HomeAutomationService(StrEnum):
    PRIMARY = "primary"
    SECONDARY = "secondary"
    TILT = "tilt"


class HomeAutomationRecord(HubModel):
    """One motion/position event pushed by the hub to the postback URL.

    Positions in postback records are percentages, not raw rail values.
    """

    shade_id: int
    record_type: HomeAutomationRecordType = Field(alias="type")
    service: HomeAutomationService = HomeAutomationService.PRIMARY
    stopped_position: int | None = Field(default=None, ge=0, le=100)
    current_position: int | None = Field(default=None, ge=0, le=100)
