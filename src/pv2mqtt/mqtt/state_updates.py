"""Shade state publishing.

Provides the (topic, payload) operations that announce shade position, state,
availability, battery and power source, and the translation of the hub's
pushed motion records into those operations.

Records inside one postback batch arrive in no particular order. They are
put in the order a shade goes through a movement (``EVENT_ORDER``) before
being translated, so a "starts-opening" never overwrites the "open" that the
same batch ended with.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from typing import Protocol

from pv2mqtt.api_types import (
    HomeAutomationRecord,
    HomeAutomationRecordType,
    HomeAutomationService,
    PositionKind,
    ShadeData,
)
from pv2mqtt.logging_abstraction import get_logger
from pv2mqtt.mqtt.discovery import shade_key, shade_topic

logger = get_logger(__name__)

ONLINE = "online"
OFFLINE = "offline"

_R = HomeAutomationRecordType

EVENT_ORDER: dict[HomeAutomationRecordType, int] = {
    _R.STARTS_OPENING: 0,
    _R.STARTS_CLOSING: 0,
    _R.BEGINS_MOVING: 1,
    _R.TARGET_LEVEL_CHANGED: 2,
    _R.LEVEL_CHANGED: 3,
    _R.HAS_OPENED: 4,
    _R.HAS_FULLY_OPENED: 5,
    _R.HAS_FULLY_CLOSED: 6,
    _R.HAS_CLOSED: 7,
    _R.STOPS: 8,
}


@dataclass(frozen=True, slots=True)
class Publish:
    topic: str
    payload: str
    retain: bool = False


class Publisher(Protocol):
    async def publish(self, topic: str, payload: bytes | str, retain: bool = False) -> None: ...


def event_sort_key(record: HomeAutomationRecord) -> int:
    return EVENT_ORDER[record.record_type]


def sort_events(records: Iterable[HomeAutomationRecord]) -> list[HomeAutomationRecord]:
    """Order records by ``EVENT_ORDER``; records of equal rank keep their arrival order."""
    return sorted(records, key=event_sort_key)


def state_for(percent: int) -> str:
    return "closed" if percent == 0 else "open"


def availability(serial: str, key: str, online: bool) -> Publish:
    return Publish(shade_topic(serial, key, "availability"), ONLINE if online else OFFLINE)


def position_updates(serial: str, key: str, percent: int) -> list[Publish]:
    """Position first, then the state derived from it."""
    return [
        Publish(shade_topic(serial, key, "position"), str(percent)),
        Publish(shade_topic(serial, key, "state"), state_for(percent)),
    ]


def rail_updates(serial: str, shade: ShadeData, secondary: bool, responding: bool = True) -> list[Publish]:
    """Availability and, when known, position/state of one rail of ``shade``.

    A rail whose position is unknown is published offline, never online
    without a state.
    """
    key = shade_key(shade.id, secondary)
    kind = PositionKind.SECONDARY_RAIL if secondary else PositionKind.PRIMARY_RAIL
    percent = shade.rail_percent(kind)
    if not responding or percent is None:
        return [availability(serial, key, False)]
    return [availability(serial, key, True), *position_updates(serial, key, percent)]


def shade_updates(serial: str, shade: ShadeData, responding: bool = True) -> list[Publish]:
    """Every state topic of ``shade``: rails, battery and power source."""
    if shade.has_primary_rail:
        updates = rail_updates(serial, shade, secondary=False, responding=responding)
    else:
        # no rail to report; battery and buttons still follow the hub
        updates = [availability(serial, shade_key(shade.id), responding)]
    if shade.has_secondary_rail:
        updates.extend(rail_updates(serial, shade, secondary=True, responding=responding))
    key = shade_key(shade.id)
    updates.append(Publish(shade_topic(serial, key, "battery"), shade.battery_status.label))
    if shade.battery_kind is not None:
        updates.append(Publish(shade_topic(serial, key, "power_source"), shade.battery_kind.label))
    return updates


def translate_event(serial: str, record: HomeAutomationRecord) -> list[Publish]:
    """Publishes for one pushed record; tilt records produce none."""
    lp = "state_updates:translate_event:"
    if record.service == HomeAutomationService.TILT:
        logger.debug("%s Ignoring tilt record for shade %s", lp, record.shade_id)
        return []

    key = shade_key(record.shade_id, secondary=record.service == HomeAutomationService.SECONDARY)

    def state(value: str) -> Publish:
        return Publish(shade_topic(serial, key, "state"), value)

    match record.record_type:
        case _R.STARTS_OPENING:
            return [state("opening")]
        case _R.STARTS_CLOSING:
            return [state("closing")]
        case _R.BEGINS_MOVING | _R.TARGET_LEVEL_CHANGED:
            return [availability(serial, key, True)]
        case _R.LEVEL_CHANGED:
            if record.current_position is None:
                return []
            return [Publish(shade_topic(serial, key, "position"), str(record.current_position))]
        case _R.HAS_OPENED:
            return [state("open")]
        case _R.HAS_FULLY_OPENED:
            return position_updates(serial, key, 100)
        case _R.HAS_FULLY_CLOSED:
            return position_updates(serial, key, 0)
        case _R.HAS_CLOSED:
            return [state("closed")]
        case _R.STOPS:
            if record.stopped_position is None:
                return []
            return position_updates(serial, key, record.stopped_position)
    return []


async def publish_all(client: Publisher, updates: Iterable[Publish]) -> int:
    """Publish ``updates`` in order; the first failure propagates."""
    count = 0
    for update in updates:
        await client.publish(update.topic, update.payload, retain=update.retain)
        count += 1
    return count


async def publish_events(client: Publisher, serial: str, records: Iterable[HomeAutomationRecord]) -> int:
    """Sort a pushed batch and publish what each record translates to."""
    lp = "state_updates:publish_events:"
    ordered = sort_events(records)
    count = 0
    for record in ordered:
        updates = translate_event(serial, record)
        logger.debug(
            "%s shade %s %s",
            lp,
            record.shade_id,
            record.record_type.value,
            extra={"service": record.service.value, "publishes": len(updates)},
        )
        count += await publish_all(client, updates)
    return count
