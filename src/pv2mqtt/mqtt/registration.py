"""Home Assistant registration of the hub's shades and scenes.

A reconciliation pass enumerates the hub, derives every entity descriptor
from scratch and publishes a :class:`RegistrationBatch` in three phases:

1. deletes: retained descriptors left behind by earlier releases;
2. configs: one descriptor per entity;
3. updates: availability and state of every entity.

Each phase waits before it starts. Deletes need Home Assistant to drop the
old entities before similar ids are announced again; updates need the
subscriptions created by the configs to be in place, which takes longer the
more configs were just published.

Descriptors are not diffed against a previous pass. A device removed from
the hub keeps its retained descriptor; only legacy descriptors observed on
the broker that belong to a current shade are deleted, once per process.
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from pv2mqtt.api_types import RoomData, SceneData, ShadeData, UserData
from pv2mqtt.const import DEFAULT_CONFIG_SETTLE_SECONDS, DEFAULT_DELETE_SETTLE_SECONDS
from pv2mqtt.logging_abstraction import get_logger
from pv2mqtt.mqtt.discovery import (
    DeviceDescriptor,
    battery_descriptor,
    button_descriptors,
    cover_descriptor,
    hub_sensors,
    hub_topic,
    legacy_cover_config_topic,
    legacy_object_ids,
    power_source_descriptor,
    scene_descriptor,
    scene_topic,
)
from pv2mqtt.mqtt.state_updates import ONLINE, OFFLINE, Publish, Publisher, shade_updates

if TYPE_CHECKING:
    from pv2mqtt.hub import HubClient
    from pv2mqtt.structs import DeviceStateView

logger = get_logger(__name__)

__all__ = [
    "Delay",
    "Inventory",
    "ReconciliationEngine",
    "RegistrationBatch",
    "hub_status_updates",
]


@dataclass(frozen=True, slots=True)
class Delay:
    seconds: float


Operation = Publish | Delay


@dataclass(slots=True)
class RegistrationBatch:
    """The three phases of one pass, applied strictly in order by :meth:`apply`."""

    delete_settle: float = DEFAULT_DELETE_SETTLE_SECONDS
    config_settle: float = DEFAULT_CONFIG_SETTLE_SECONDS
    deletes: list[Publish] = field(default_factory=list)
    configs: list[Publish] = field(default_factory=list)
    updates: list[Publish] = field(default_factory=list)

    def delete(self, topic: str) -> None:
        # an empty retained payload removes the retained descriptor
        self.deletes.append(Publish(topic, "", retain=True))

    def config(self, topic: str, payload: str) -> None:
        self.configs.append(Publish(topic, payload, retain=True))

    def update(self, topic: str, payload: str) -> None:
        self.updates.append(Publish(topic, payload))

    def delete_phase(self) -> list[Operation]:
        if not self.deletes:
            return []
        return [Delay(self.delete_settle), *self.deletes]

    def config_phase(self) -> list[Operation]:
        return list(self.configs)

    def update_phase(self) -> list[Operation]:
        return [Delay(len(self.configs) * self.config_settle), *self.updates]

    def phases(self) -> list[list[Operation]]:
        return [self.delete_phase(), self.config_phase(), self.update_phase()]

    async def apply(self, client: Publisher) -> int:
        """Publish every phase in order; the first failure aborts the rest and propagates.

        Returns the number of messages published.
        """
        published = 0
        for phase in self.phases():
            for op in phase:
                if isinstance(op, Delay):
                    if op.seconds > 0:
                        await asyncio.sleep(op.seconds)
                    continue
                await client.publish(op.topic, op.payload, retain=op.retain)
                published += 1
        return published


@dataclass(frozen=True, slots=True)
class Inventory:
    """What the hub reported at the start of a pass."""

    user_data: UserData
    rooms: list[RoomData] = field(default_factory=list)
    shades: list[ShadeData] = field(default_factory=list)
    scenes: list[SceneData] = field(default_factory=list)

    @property
    def serial(self) -> str:
        return self.user_data.serial_number

    def room_name(self, room_id: int | None) -> str | None:
        if room_id is None:
            return None
        for room in self.rooms:
            if room.id == room_id:
                return room.name
        return None


def hub_status_updates(serial: str, addr: str | None, responding: bool) -> list[Publish]:
    """State of the hub diagnostics, plus the hub availability every entity depends on."""
    updates: list[Publish] = []
    if addr:
        updates.append(Publish(hub_topic(serial, "ip_address"), addr))
    updates.append(Publish(hub_topic(serial, "responding"), "yes" if responding else "no"))
    updates.append(Publish(hub_topic(serial, "availability"), ONLINE if responding else OFFLINE))
    return updates


class ReconciliationEngine:
    """Builds and applies registration batches for the tracked hub."""

    lp: str = "ReconciliationEngine:"

    def __init__(
        self,
        discovery_prefix: str = "homeassistant",
        delete_settle: float = DEFAULT_DELETE_SETTLE_SECONDS,
        config_settle: float = DEFAULT_CONFIG_SETTLE_SECONDS,
    ) -> None:
        self.discovery_prefix: str = discovery_prefix
        self.delete_settle: float = delete_settle
        self.config_settle: float = config_settle
        self.legacy_ids: set[str] = set()
        self.deleted_ids: set[str] = set()

    def observe_legacy(self, object_id: str) -> None:
        """Remember a retained legacy descriptor seen on the broker."""
        lp = f"{self.lp}observe_legacy:"
        if object_id in self.legacy_ids or object_id in self.deleted_ids:
            return
        logger.info("%s Found legacy cover descriptor '%s', it will be removed", lp, object_id)
        self.legacy_ids.add(object_id)

    def pending_deletes(self) -> list[str]:
        return sorted(self.legacy_ids - self.deleted_ids)

    def legacy_deletes(self, inventory: Inventory) -> list[str]:
        """Pending legacy ids that belong to a shade of ``inventory``.

        Numeric cover ids from other integrations share the topic space, so
        ids no current shade accounts for are never deleted.
        """
        owned = {object_id for shade in inventory.shades for object_id in legacy_object_ids(shade.id)}
        return [object_id for object_id in self.pending_deletes() if object_id in owned]

    def descriptors(self, inventory: Inventory) -> list[DeviceDescriptor]:
        """Every entity of ``inventory``, hub diagnostics first, then shades, then scenes."""
        serial = inventory.serial
        descriptors = hub_sensors(inventory.user_data)
        for shade in inventory.shades:
            room_name = inventory.room_name(shade.room_id)
            # capability flags decide, the positions payload may omit either rail
            if shade.has_primary_rail:
                descriptors.append(cover_descriptor(serial, shade, room_name))
            if shade.has_secondary_rail:
                descriptors.append(cover_descriptor(serial, shade, room_name, secondary=True))
            descriptors.append(battery_descriptor(serial, shade, room_name))
            descriptors.extend(button_descriptors(serial, shade, room_name))
            descriptors.append(power_source_descriptor(serial, shade, room_name))
        for scene in inventory.scenes:
            room_name = inventory.room_name(scene.room_id)
            descriptors.append(scene_descriptor(serial, scene.id, scene.name, room_name, inventory.user_data))
        return descriptors

    def build(self, view: DeviceStateView, inventory: Inventory) -> RegistrationBatch:
        """Derive the batch for ``inventory``; nothing is published."""
        lp = f"{self.lp}build:"
        batch = RegistrationBatch(delete_settle=self.delete_settle, config_settle=self.config_settle)
        serial = inventory.serial

        # retained legacy descriptors arrive after subscribing, so wait for one completed pass
        if not view.first_run:
            for legacy_id in self.legacy_deletes(inventory):
                batch.delete(legacy_cover_config_topic(self.discovery_prefix, legacy_id))

        for descriptor in self.descriptors(inventory):
            batch.config(descriptor.topic(self.discovery_prefix), json.dumps(descriptor.config))

        for update in hub_status_updates(serial, view.hub_addr, view.responding):
            batch.update(update.topic, update.payload)
        for shade in inventory.shades:
            for update in shade_updates(serial, shade, responding=view.responding):
                batch.update(update.topic, update.payload)
        for scene in inventory.scenes:
            batch.update(scene_topic(serial, scene.id, "availability"), ONLINE)

        logger.debug(
            "%s batch built",
            lp,
            extra={
                "serial": serial,
                "deletes": len(batch.deletes),
                "configs": len(batch.configs),
                "updates": len(batch.updates),
            },
        )
        return batch

    async def enumerate(self, hub: HubClient) -> Inventory:
        """Fetch everything a pass needs; hub errors propagate."""
        user_data = await hub.get_user_data()
        rooms = await hub.list_rooms()
        shades = await hub.list_shades()
        scenes = await hub.list_scenes()
        return Inventory(user_data=user_data, rooms=rooms, shades=shades, scenes=scenes)

    async def reconcile(self, client: Publisher, view: DeviceStateView, hub: HubClient) -> Inventory:
        """Run one full pass against ``hub``.

        The hub answered the enumeration, so the batch is built as responding.

        Raises:
            HubUnresponsiveError: the hub did not answer
            TransportError: a publish failed; the rest of the pass is skipped

        """
        lp = f"{self.lp}reconcile:"
        inventory = await self.enumerate(hub)
        pending = self.legacy_deletes(inventory) if not view.first_run else []
        batch = self.build(view.evolve(responding=True, user_data=inventory.user_data), inventory)
        published = await batch.apply(client)
        self.deleted_ids.update(pending)
        self.legacy_ids.difference_update(pending)
        logger.info(
            "%s Registered %d shades and %d scenes",
            lp,
            len(inventory.shades),
            len(inventory.scenes),
            extra={"serial": inventory.serial, "published": published, "first_run": view.first_run},
        )
        return inventory
