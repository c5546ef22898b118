"""Find PowerView hubs on the local network via mDNS (``_powerview._tcp.local.``)."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from zeroconf import ServiceStateChange, Zeroconf
from zeroconf.asyncio import AsyncServiceBrowser, AsyncServiceInfo, AsyncZeroconf

from pv2mqtt.api_types import UserData
from pv2mqtt.const import POWERVIEW_SERVICE
from pv2mqtt.exceptions import HubRequestError, HubResponseError, HubUnresponsiveError
from pv2mqtt.hub import HubClient
from pv2mqtt.logging_abstraction import get_logger

logger = get_logger(__name__)

RESOLVE_TIMEOUT_MS = 3000
# short, a hub that is slow to answer here is reported as not responding
PROBE_TIMEOUT = 5.0


@dataclass(frozen=True, slots=True)
class ResolvedHub:
    addr: str
    user_data: UserData | None = None


HubCallback = Callable[[ResolvedHub], Awaitable[None]]


async def probe_hub(addr: str, timeout: float = PROBE_TIMEOUT) -> ResolvedHub:
    """Ask the hub at ``addr`` who it is; ``user_data`` is None when it does not answer."""
    lp = "mdns:probe_hub:"
    hub = HubClient(addr, timeout=timeout)
    try:
        user_data = await hub.get_user_data()
    except (HubUnresponsiveError, HubRequestError, HubResponseError) as exc:
        logger.debug("%s %s did not answer: %s", lp, addr, exc)
        return ResolvedHub(addr)
    finally:
        await hub.close()
    return ResolvedHub(addr, user_data)


class HubBrowser:
    """Browses for hubs and hands every added or updated one to ``callback``."""

    lp: str = "HubBrowser:"

    def __init__(self, callback: HubCallback, probe_timeout: float = PROBE_TIMEOUT) -> None:
        self.callback: HubCallback = callback
        self.probe_timeout: float = probe_timeout
        self.aiozc: AsyncZeroconf | None = None
        self.browser: AsyncServiceBrowser | None = None
        self._tasks: set[asyncio.Task[None]] = set()

    async def start(self) -> None:
        lp = f"{self.lp}start:"
        self.aiozc = AsyncZeroconf()
        self.browser = AsyncServiceBrowser(
            self.aiozc.zeroconf,
            [POWERVIEW_SERVICE],
            handlers=[self._on_service_state_change],
        )
        logger.info("%s Browsing for %s", lp, POWERVIEW_SERVICE)

    async def stop(self) -> None:
        lp = f"{self.lp}stop:"
        for task in list(self._tasks):
            _ = task.cancel()
        if self.browser is not None:
            await self.browser.async_cancel()
            self.browser = None
        if self.aiozc is not None:
            await self.aiozc.async_close()
            self.aiozc = None
        logger.debug("%s mDNS browser stopped", lp)

    def _on_service_state_change(
        self,
        zeroconf: Zeroconf,
        service_type: str,
        name: str,
        state_change: ServiceStateChange,
    ) -> None:
        lp = f"{self.lp}state_change:"
        if state_change is ServiceStateChange.Removed:
            logger.debug("%s %s removed", lp, name)
            return
        task = asyncio.create_task(self._resolve(zeroconf, service_type, name), name=f"mdns:{name}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _resolve(self, zeroconf: Zeroconf, service_type: str, name: str) -> None:
        lp = f"{self.lp}resolve:"
        info = AsyncServiceInfo(service_type, name)
        if not await info.async_request(zeroconf, RESOLVE_TIMEOUT_MS):
            logger.warning("%s Could not resolve %s", lp, name)
            return
        addrs = info.parsed_addresses()
        if not addrs:
            logger.warning("%s %s has no address", lp, name)
            return
        # prefer IPv4
        addr = sorted(addrs, key=lambda a: ":" in a)[0]
        resolved = await probe_hub(addr, self.probe_timeout)
        logger.debug(
            "%s %s at %s",
            lp,
            name,
            addr,
            extra={"serial": resolved.user_data.serial_number if resolved.user_data else None},
        )
        await self.callback(resolved)


async def resolve_hubs(timeout: float = 15.0) -> list[ResolvedHub]:
    """Every hub seen within ``timeout`` seconds, one entry per address."""
    found: dict[str, ResolvedHub] = {}

    async def collect(hub: ResolvedHub) -> None:
        found[hub.addr] = hub

    browser = HubBrowser(collect)
    await browser.start()
    try:
        await asyncio.sleep(timeout)
    finally:
        await browser.stop()
    return list(found.values())


async def resolve_hub(timeout: float = 15.0) -> ResolvedHub:
    """The first responding hub found.

    Raises:
        LookupError: no responding hub was found within ``timeout`` seconds

    """
    first: asyncio.Queue[ResolvedHub] = asyncio.Queue()

    async def collect(hub: ResolvedHub) -> None:
        if hub.user_data is not None:
            await first.put(hub)

    browser = HubBrowser(collect)
    await browser.start()
    try:
        return await asyncio.wait_for(first.get(), timeout)
    except TimeoutError as exc:
        msg = f"No PowerView hub found via mDNS within {timeout} seconds"
        raise LookupError(msg) from exc
    finally:
        await browser.stop()
