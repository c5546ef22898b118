"""Route handlers for the topics the bridge subscribes to.

Handlers run on the server's single consumer, one message at a time. They
receive a :class:`BridgeContext` snapshot through the ``State()`` extractor
and never modify the server's state directly; anything that must happen on
the event loop later (a reconciliation after Home Assistant restarts) is
handed back through ``BridgeContext.schedule``.
"""

from __future__ import annotations

import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import Annotated, Any

from pydantic import BaseModel, BeforeValidator

from pv2mqtt.api_types import PositionKind, ShadeBatteryKind, ShadeData, ShadeUpdateMotion, percent_to_raw
from pv2mqtt.const import HASS_BIRTH_MSG, SECONDARY_SUFFIX
from pv2mqtt.exceptions import HubResponseError
from pv2mqtt.hub import HubClient
from pv2mqtt.logging_abstraction import get_logger
from pv2mqtt.mqtt.discovery import is_legacy_object_id, shade_key, shade_topic
from pv2mqtt.mqtt.registration import ReconciliationEngine
from pv2mqtt.mqtt.routing import Params, Payload, Router, State
from pv2mqtt.mqtt.state_updates import Publisher, publish_all, rail_updates
from pv2mqtt.structs import DeviceStateView, ReconcileTick

logger = get_logger(__name__)

HASS_WILL_MSG = "offline"
# seconds to wait before re-announcing after a HASS birth message
BIRTH_DELAY_RANGE = (5, 15)


class ShadeCommand(StrEnum):
    """Payloads accepted on ``pv2mqtt/shade/{serial}/{id}/command``."""

    OPEN = "OPEN"
    CLOSE = "CLOSE"
    STOP = "STOP"
    JOG = "JOG"
    CALIBRATE = "CALIBRATE"
    HEART = "HEART"
    REFRESH_BATTERY = "REFRESH_BATTERY"
    REFRESH_POSITION = "REFRESH_POSITION"
    HARDWIRED_POWER_SUPPLY = "Hardwired Power Supply"
    BATTERY_WAND = "Battery Wand"
    RECHARGEABLE_BATTERY = "Rechargeable Battery"


MOTIONS: dict[ShadeCommand, ShadeUpdateMotion] = {
    ShadeCommand.OPEN: ShadeUpdateMotion.UP,
    ShadeCommand.CLOSE: ShadeUpdateMotion.DOWN,
    ShadeCommand.STOP: ShadeUpdateMotion.STOP,
    ShadeCommand.JOG: ShadeUpdateMotion.JOG,
    ShadeCommand.CALIBRATE: ShadeUpdateMotion.CALIBRATE,
    ShadeCommand.HEART: ShadeUpdateMotion.HEART,
}

POWER_SOURCES: dict[ShadeCommand, ShadeBatteryKind] = {
    ShadeCommand.HARDWIRED_POWER_SUPPLY: ShadeBatteryKind.HARDWIRED_POWER_SUPPLY,
    ShadeCommand.BATTERY_WAND: ShadeBatteryKind.BATTERY_WAND,
    ShadeCommand.RECHARGEABLE_BATTERY: ShadeBatteryKind.RECHARGEABLE_BATTERY,
}


@dataclass(frozen=True, slots=True)
class ShadeRef:
    """A shade rail as it appears in topics: ``42`` or ``42_2``."""

    shade_id: int
    secondary: bool = False

    @property
    def key(self) -> str:
        return shade_key(self.shade_id, self.secondary)

    @property
    def rail(self) -> PositionKind:
        return PositionKind.SECONDARY_RAIL if self.secondary else PositionKind.PRIMARY_RAIL


def _parse_shade_ref(value: object) -> object:
    if not isinstance(value, str):
        return value
    base = value.removesuffix(SECONDARY_SUFFIX)
    if not base.isdigit():
        msg = f"not a shade id: {value!r}"
        raise ValueError(msg)
    return ShadeRef(int(base), secondary=base != value)


class ShadeParams(BaseModel):
    serial: str
    shade_id: Annotated[ShadeRef, BeforeValidator(_parse_shade_ref)]


class SceneParams(BaseModel):
    serial: str
    scene_id: int


class LegacyConfigParams(BaseModel):
    object_id: str


@dataclass(frozen=True, slots=True)
class BridgeContext:
    """Application state handed to every handler."""

    view: DeviceStateView
    client: Publisher
    engine: ReconciliationEngine
    schedule: Callable[[Any, float], Awaitable[None]]

    def hub_for(self, serial: str) -> HubClient | None:
        """The hub client when ``serial`` is the tracked hub, else None."""
        lp = "command_routing:hub_for:"
        if serial != self.view.serial:
            logger.warning(
                "%s Message for hub %s ignored, tracking %s",
                lp,
                serial,
                self.view.serial,
            )
            return None
        if self.view.hub is None:
            logger.warning("%s No hub connection yet, ignoring message for %s", lp, serial)
            return None
        return self.view.hub


async def _publish_rail(ctx: BridgeContext, serial: str, shade: ShadeData, ref: ShadeRef) -> None:
    await publish_all(ctx.client, rail_updates(serial, shade, ref.secondary))


async def _move_rail_to(hub: HubClient, shade: ShadeData, ref: ShadeRef, percent: int) -> ShadeData:
    if shade.positions is None:
        raise HubResponseError(hub.url(f"api/shades/{shade.id}"), "shade reported no position")
    positions = shade.positions.with_rail(ref.rail, percent_to_raw(percent))
    return await hub.change_shade_position(shade.id, positions)


async def handle_shade_command(params: ShadeParams, command: ShadeCommand, ctx: BridgeContext) -> None:
    lp = "command_routing:shade_command:"
    ref: ShadeRef = params.shade_id
    hub = ctx.hub_for(params.serial)
    if hub is None:
        return
    logger.info("%s shade %s <- %s", lp, ref.key, command.value)

    if command in POWER_SOURCES:
        shade = await hub.set_battery_kind(ref.shade_id, POWER_SOURCES[command])
        kind = shade.battery_kind or POWER_SOURCES[command]
        await ctx.client.publish(shade_topic(params.serial, shade_key(ref.shade_id), "power_source"), kind.label)
        return

    if command == ShadeCommand.REFRESH_BATTERY:
        shade = await hub.get_shade(ref.shade_id, update_battery_level=True)
        await ctx.client.publish(shade_topic(params.serial, shade_key(ref.shade_id), "battery"), shade.battery_status.label)
        await _publish_rail(ctx, params.serial, shade, ref)
        return

    if command == ShadeCommand.REFRESH_POSITION:
        shade = await hub.get_shade(ref.shade_id, refresh=True)
        await _publish_rail(ctx, params.serial, shade, ref)
        return

    if ref.secondary and command in (ShadeCommand.OPEN, ShadeCommand.CLOSE):
        # hub motions only drive the primary rail
        shade = await hub.get_shade(ref.shade_id)
        shade = await _move_rail_to(hub, shade, ref, 100 if command == ShadeCommand.OPEN else 0)
    else:
        shade = await hub.move_shade(ref.shade_id, MOTIONS[command])
    await _publish_rail(ctx, params.serial, shade, ref)


async def handle_set_position(params: ShadeParams, percent: int, ctx: BridgeContext) -> None:
    lp = "command_routing:set_position:"
    ref: ShadeRef = params.shade_id
    hub = ctx.hub_for(params.serial)
    if hub is None:
        return
    if not 0 <= percent <= 100:
        logger.warning("%s Position %s out of range for shade %s, ignoring", lp, percent, ref.key)
        return
    logger.info("%s shade %s -> %s%%", lp, ref.key, percent)
    shade = await hub.get_shade(ref.shade_id)
    shade = await _move_rail_to(hub, shade, ref, percent)
    await _publish_rail(ctx, params.serial, shade, ref)


async def handle_scene_set(params: SceneParams, ctx: BridgeContext) -> None:
    lp = "command_routing:scene_set:"
    hub = ctx.hub_for(params.serial)
    if hub is None:
        return
    shade_ids = await hub.activate_scene(params.scene_id)
    logger.info("%s Activated scene %s", lp, params.scene_id, extra={"shade_ids": shade_ids})


async def handle_hass_status(status: str, ctx: BridgeContext) -> None:
    """Home Assistant birth/will on ``{prefix}/status``."""
    lp = "command_routing:hass_status:"
    folded = status.strip().casefold()
    if folded == HASS_BIRTH_MSG:
        birth_delay = random.randint(*BIRTH_DELAY_RANGE)
        logger.info(
            "%s HASS has sent MQTT BIRTH message, re-announcing device discovery after a random delay of %s seconds...",
            lp,
            birth_delay,
        )
        await ctx.schedule(ReconcileTick("hass birth"), float(birth_delay))
    elif folded == HASS_WILL_MSG:
        logger.info("%s received Last Will msg from Home Assistant, HASS is offline!", lp)
    else:
        logger.warning("%s Unknown HASS status message: %s", lp, status)


async def handle_legacy_config(params: LegacyConfigParams, payload: str, ctx: BridgeContext) -> None:
    """Retained descriptors under ``{prefix}/cover/+/config``; only legacy ids are of interest."""
    if not payload or not is_legacy_object_id(params.object_id):
        return
    ctx.engine.observe_legacy(params.object_id)


async def register_routes(router: Router, discovery_prefix: str) -> None:
    """Register every handler; raises if a route is malformed or a subscription fails."""
    await router.route(
        "pv2mqtt/shade/:serial/:shade_id/command",
        handle_shade_command,
        Params(ShadeParams),
        Payload(ShadeCommand),
        State(),
    )
    await router.route(
        "pv2mqtt/shade/:serial/:shade_id/set_position",
        handle_set_position,
        Params(ShadeParams),
        Payload(int),
        State(),
    )
    await router.route(
        "pv2mqtt/scene/:serial/:scene_id/set",
        handle_scene_set,
        Params(SceneParams),
        State(),
    )
    await router.route(f"{discovery_prefix}/status", handle_hass_status, Payload(str), State())
    await router.route(
        f"{discovery_prefix}/cover/:object_id/config",
        handle_legacy_config,
        Params(LegacyConfigParams),
        Payload(str),
        State(),
    )

