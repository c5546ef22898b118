"""aiohttp client for the PowerView Gen2 hub REST API."""

from __future__ import annotations

import asyncio
from typing import Any, TypeVar

import aiohttp
from pydantic import BaseModel, ValidationError

from pv2mqtt.api_types import (
    RoomData,
    RoomsResponse,
    SceneActivationResponse,
    SceneData,
    SceneMember,
    SceneMembersResponse,
    ScenesResponse,
    ShadeBatteryKind,
    ShadeData,
    ShadePosition,
    ShadeResponse,
    ShadesResponse,
    ShadeUpdateMotion,
    UserData,
    UserDataResponse,
)
from pv2mqtt.const import DEFAULT_HUB_TIMEOUT
from pv2mqtt.exceptions import HubRequestError, HubResponseError, HubUnresponsiveError
from pv2mqtt.logging_abstraction import get_logger

logger = get_logger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


class HubClient:
    """Talks to one hub at ``addr``.

    Every call carries a finite timeout; connection failures and timeouts are
    raised as :class:`HubUnresponsiveError` so callers can mark the hub
    unresponsive rather than treating them as generic failures.
    """

    lp: str = "HubClient:"

    def __init__(
        self,
        addr: str,
        timeout: float = DEFAULT_HUB_TIMEOUT,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self.addr: str = addr
        self.timeout: float = timeout
        self.http_session: aiohttp.ClientSession | None = session
        self._owns_session: bool = session is None

    def __repr__(self) -> str:
        return f"HubClient(addr={self.addr!r})"

    def url(self, path: str) -> str:
        return f"http://{self.addr}/{path}"

    async def close(self) -> None:
        lp = f"{self.lp}close:"
        if self._owns_session and self.http_session and not self.http_session.closed:
            logger.debug("%s Closing aiohttp ClientSession for %s", lp, self.addr)
            await self.http_session.close()
            self.http_session = None

    def _session(self) -> aiohttp.ClientSession:
        if self.http_session is None or self.http_session.closed:
            self.http_session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout),
                raise_for_status=True,
            )
            self._owns_session = True
        return self.http_session

    async def _request(
        self,
        method: str,
        path: str,
        model: type[ModelT],
        params: dict[str, str] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> ModelT:
        lp = f"{self.lp}{method.lower()}:"
        url = self.url(path)
        logger.debug("%s %s", lp, url, extra={"params": params} if params else None)
        try:
            async with self._session().request(method, url, params=params, json=json_body) as resp:
                body: object = await resp.json(content_type=None)
        except aiohttp.ClientResponseError as exc:
            raise HubRequestError(url, exc.status) from exc
        except (aiohttp.ClientConnectionError, TimeoutError, asyncio.TimeoutError) as exc:
            raise HubUnresponsiveError(self.addr, str(exc) or type(exc).__name__) from exc
        except (aiohttp.ContentTypeError, ValueError) as exc:
            raise HubResponseError(url, f"invalid JSON: {exc}") from exc

        try:
            return model.model_validate(body)
        except ValidationError as exc:
            raise HubResponseError(url, f"{exc.error_count()} validation errors: {exc.errors()[0]['msg']}") from exc

    async def get_user_data(self) -> UserData:
        resp = await self._request("GET", "api/userdata", UserDataResponse)
        return resp.user_data

    async def list_rooms(self) -> list[RoomData]:
        resp = await self._request("GET", "api/rooms", RoomsResponse)
        return sorted(resp.room_data, key=lambda room: (room.order, room.name))

    async def list_shades(self, group_id: int | None = None, room_id: int | None = None) -> list[ShadeData]:
        params: dict[str, str] = {}
        if group_id is not None:
            params["groupId"] = str(group_id)
        if room_id is not None:
            params["roomId"] = str(room_id)
        resp = await self._request("GET", "api/shades", ShadesResponse, params=params or None)
        return sorted(resp.shade_data, key=lambda shade: (shade.order or 0, shade.name or ""))

    async def get_shade(self, shade_id: int, refresh: bool = False, update_battery_level: bool = False) -> ShadeData:
        """Fetch one shade; ``refresh`` and ``update_battery_level`` make the hub query the motor over RF first."""
        params: dict[str, str] = {}
        if refresh:
            params["refresh"] = "true"
        if update_battery_level:
            params["updateBatteryLevel"] = "true"
        resp = await self._request("GET", f"api/shades/{shade_id}", ShadeResponse, params=params or None)
        return resp.shade

    async def list_scenes(self) -> list[SceneData]:
        resp = await self._request("GET", "api/scenes", ScenesResponse)
        return sorted(resp.scene_data, key=lambda scene: (scene.order, scene.name))

    async def list_scene_members(self) -> list[SceneMember]:
        resp = await self._request("GET", "api/scenemembers", SceneMembersResponse)
        return resp.scene_member_data

    async def move_shade(self, shade_id: int, motion: ShadeUpdateMotion) -> ShadeData:
        lp = f"{self.lp}move_shade:"
        logger.info("%s shade %s -> %s", lp, shade_id, motion.value)
        resp = await self._request(
            "PUT",
            f"api/shades/{shade_id}",
            ShadeResponse,
            json_body={"shade": {"motion": motion.value}},
        )
        return resp.shade

    async def change_shade_position(self, shade_id: int, positions: ShadePosition) -> ShadeData:
        lp = f"{self.lp}change_shade_position:"
        body = positions.model_dump(by_alias=True, exclude_none=True, mode="json")
        logger.info("%s shade %s -> %s", lp, shade_id, body)
        resp = await self._request(
            "PUT",
            f"api/shades/{shade_id}",
            ShadeResponse,
            json_body={"shade": {"positions": body}},
        )
        return resp.shade

    async def set_battery_kind(self, shade_id: int, kind: ShadeBatteryKind) -> ShadeData:
        lp = f"{self.lp}set_battery_kind:"
        logger.info("%s shade %s -> %s", lp, shade_id, kind.label)
        resp = await self._request(
            "PUT",
            f"api/shades/{shade_id}",
            ShadeResponse,
            json_body={"shade": {"batteryKind": int(kind)}},
        )
        return resp.shade

    async def activate_scene(self, scene_id: int) -> list[int]:
        """Activate a scene; returns the ids of the shades it moves."""
        lp = f"{self.lp}activate_scene:"
        logger.info("%s scene %s", lp, scene_id)
        resp = await self._request("GET", "api/scenes", SceneActivationResponse, params={"sceneId": str(scene_id)})
        return resp.scene.shade_ids

    async def enable_postback(self, url: str) -> None:
        """Point the hub's home automation callback at ``url``."""
        lp = f"{self.lp}enable_postback:"
        logger.info("%s %s", lp, url)
        _ = await self._request(
            "PUT",
            "api/homeautomation",
            _AnyResponse,
            json_body={"homeautomation": {"enabled": True, "postBackUrl": url}},
        )

    async def room_by_name(self, name: str) -> RoomData:
        for room in await self.list_rooms():
            if room.name.casefold() == name.casefold() or str(room.id) == name:
                return room
        msg = f"No room with name or id matching provided '{name}' was found"
        raise LookupError(msg)

    async def shade_by_name(self, name: str) -> ShadeData:
        """Find a shade by name, secondary name or id; names compare case-insensitively."""
        wanted = name.casefold()
        for shade in await self.list_shades():
            if shade.name and shade.name.casefold() == wanted:
                return shade
            if shade.secondary_name and shade.secondary_name.casefold() == wanted:
                return shade
            if str(shade.id) == name:
                return shade
        msg = f"No shade with name, secondary name or id matching provided '{name}' was found"
        raise LookupError(msg)

    async def scene_by_name(self, name: str) -> SceneData:
        for scene in await self.list_scenes():
            if scene.name.casefold() == name.casefold() or str(scene.id) == name:
                return scene
        msg = f"No scene with name or id matching provided '{name}' was found"
        raise LookupError(msg)


class _AnyResponse(BaseModel):
    model_config = {"extra": "allow"}
