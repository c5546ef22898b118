"""Diagnostic sub-commands: talk to the hub directly and print to stdout."""

from __future__ import annotations

import argparse
import json
from collections.abc import Sequence

from pv2mqtt.api_types import PositionKind, ShadeData, ShadeUpdateMotion, percent_to_raw
from pv2mqtt.hub import HubClient
from pv2mqtt.logging_abstraction import get_logger
from pv2mqtt.mdns import resolve_hub, resolve_hubs
from pv2mqtt.structs import BridgeSettings

logger = get_logger(__name__)


def tabulate(headers: Sequence[str], rows: Sequence[Sequence[str]]) -> str:
    """Left aligned, space separated columns."""
    widths = [len(h) for h in headers]
    for row in rows:
        for i, cell in enumerate(row):
            widths[i] = max(widths[i], len(cell))
    lines = [headers, *rows]
    return "\n".join("  ".join(cell.ljust(widths[i]) for i, cell in enumerate(line)).rstrip() for line in lines)


async def open_hub(settings: BridgeSettings) -> HubClient:
    addr = settings.hub_ip
    if addr is None:
        addr = (await resolve_hub()).addr
    return HubClient(addr, timeout=settings.hub_timeout)


def _describe(shade: ShadeData, kind: PositionKind) -> str:
    percent = shade.rail_percent(kind)
    return "" if percent is None else f"{percent}%"


async def list_hubs(args: argparse.Namespace, _settings: BridgeSettings) -> int:
    for hub in await resolve_hubs(args.timeout):
        if hub.user_data is None:
            print(f"{hub.addr} (Not responding)")
            continue
        user_data = hub.user_data
        print(f"{hub.addr} SN={user_data.serial_number} MAC={user_data.mac_address} {user_data.hub_name}")
    return 0


async def hub_info(hub: HubClient, _args: argparse.Namespace) -> int:
    user_data = await hub.get_user_data()
    print(json.dumps(user_data.model_dump(mode="json"), indent=2))
    return 0


async def list_shades(hub: HubClient, args: argparse.Namespace) -> int:
    rooms = await hub.list_rooms()
    room_id = (await hub.room_by_name(args.room)).id if args.room else None
    shades = await hub.list_shades(room_id=room_id)
    rows: list[list[str]] = []
    for room in rooms:
        for shade in shades:
            if shade.room_id != room.id:
                continue
            rows.append(
                [
                    room.name,
                    shade.display_name,
                    _describe(shade, PositionKind.PRIMARY_RAIL),
                    _describe(shade, PositionKind.SECONDARY_RAIL) if shade.has_secondary_rail else "",
                    shade.battery_kind.label if shade.battery_kind is not None else shade.battery_status.label,
                ],
            )
    print(tabulate(["ROOM", "SHADE", "POSITION", "SECONDARY", "POWER"], rows))
    return 0


async def list_scenes(hub: HubClient, args: argparse.Namespace) -> int:
    rooms = {room.id: room.name for room in await hub.list_rooms()}
    scenes = await hub.list_scenes()
    if args.room:
        room = await hub.room_by_name(args.room)
        scenes = [scene for scene in scenes if scene.room_id == room.id]
    shades = {shade.id: shade for shade in await hub.list_shades()}
    members = await hub.list_scene_members()
    rows: list[list[str]] = []
    for scene in scenes:
        names = sorted(
            shades[m.shade_id].display_name for m in members if m.scene_id == scene.id and m.shade_id in shades
        )
        rows.append([rooms.get(scene.room_id or -1, ""), scene.name, ", ".join(names)])
    print(tabulate(["ROOM", "SCENE", "SHADES"], rows))
    return 0


async def inspect_shade(hub: HubClient, args: argparse.Namespace) -> int:
    shade = await hub.shade_by_name(args.name)
    print(json.dumps(shade.model_dump(mode="json", exclude_none=True), indent=2))
    return 0


async def move_shade(hub: HubClient, args: argparse.Namespace) -> int:
    lp = "cli:move_shade:"
    shade = await hub.shade_by_name(args.name)
    if args.motion is not None:
        shade = await hub.move_shade(shade.id, ShadeUpdateMotion(args.motion))
    else:
        if shade.positions is None:
            logger.error("%s shade '%s' has no existing position information", lp, shade.display_name)
            return 1
        # a secondary name selects the middle rail
        secondary = shade.secondary_name is not None and shade.secondary_name.casefold() == args.name.casefold()
        rail = PositionKind.SECONDARY_RAIL if secondary else PositionKind.PRIMARY_RAIL
        positions = shade.positions.with_rail(rail, percent_to_raw(args.percent))
        shade = await hub.change_shade_position(shade.id, positions)
    print(json.dumps(shade.model_dump(mode="json", exclude_none=True), indent=2))
    return 0


async def activate_scene(hub: HubClient, args: argparse.Namespace) -> int:
    scene = await hub.scene_by_name(args.name)
    shade_ids = await hub.activate_scene(scene.id)
    print(f"Activated '{scene.name}', moving shades {shade_ids}")
    return 0


HUB_COMMANDS = {
    "hub-info": hub_info,
    "list-shades": list_shades,
    "list-scenes": list_scenes,
    "inspect-shade": inspect_shade,
    "move-shade": move_shade,
    "activate-scene": activate_scene,
}


async def run_command(args: argparse.Namespace, settings: BridgeSettings) -> int:
    """Run a diagnostic sub-command; returns the process exit code."""
    if args.command == "list-hubs":
        return await list_hubs(args, settings)
    hub = await open_hub(settings)
    try:
        return await HUB_COMMANDS[args.command](hub, args)
    except LookupError as exc:
        print(exc)
        return 1
    finally:
        await hub.close()


def add_subcommands(parser: argparse.ArgumentParser) -> None:
    sub = parser.add_subparsers(dest="command")
    _ = sub.add_parser("serve-mqtt", help="Bridge the hub to MQTT (default)")

    hubs = sub.add_parser("list-hubs", help="Discover and list the hubs on your network")
    _ = hubs.add_argument("--timeout", type=float, default=15.0, help="Seconds to wait for discovery")

    _ = sub.add_parser("hub-info", help="Show the hub's user data")

    shades = sub.add_parser("list-shades", help="List shades and their positions")
    _ = shades.add_argument("--room", help="Only list shades in this room")

    scenes = sub.add_parser("list-scenes", help="List scenes and their shades")
    _ = scenes.add_argument("--room", help="Only list scenes in this room")

    inspect = sub.add_parser("inspect-shade", help="Dump everything the hub knows about a shade")
    _ = inspect.add_argument("name", help="Shade name or id, compared ignoring case")

    move = sub.add_parser("move-shade", help="Move a shade")
    _ = move.add_argument("name", help="Shade name, secondary name or id, compared ignoring case")
    target = move.add_mutually_exclusive_group(required=True)
    _ = target.add_argument("--motion", choices=[m.value for m in ShadeUpdateMotion])
    _ = target.add_argument("--percent", type=int, choices=range(101), metavar="0-100")

    scene = sub.add_parser("activate-scene", help="Activate a scene")
    _ = scene.add_argument("name", help="Scene name or id, compared ignoring case")
