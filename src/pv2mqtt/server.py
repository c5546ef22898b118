"""The bridge's event loop.

Four producers feed one bounded queue:

- the MQTT receive loop (``InboundMessage``)
- the postback listener (``HubEventBatch``)
- the periodic re-registration timer (``ReconcileTick``)
- the mDNS browser (``HubDiscovered``)

A single consumer takes one event at a time and is the only code that
publishes registrations or replaces the :class:`DeviceStateView`. Producers
block on a full queue rather than drop events.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable
from typing import Any

from pv2mqtt.correlation import correlation_context, ensure_correlation_id
from pv2mqtt.exceptions import (
    HubUnresponsiveError,
    ParameterParseError,
    PayloadParseError,
    Pv2MqttError,
    TransportError,
)
from pv2mqtt.hub import HubClient
from pv2mqtt.logging_abstraction import get_logger
from pv2mqtt.mdns import HubBrowser, ResolvedHub, resolve_hub
from pv2mqtt.mqtt.client import PubSubClient
from pv2mqtt.mqtt.command_routing import BridgeContext, register_routes
from pv2mqtt.mqtt.discovery import hub_topic
from pv2mqtt.mqtt.registration import ReconciliationEngine, hub_status_updates
from pv2mqtt.mqtt.routing import Router
from pv2mqtt.mqtt.state_updates import OFFLINE, publish_all, publish_events
from pv2mqtt.postback import PostbackServer
from pv2mqtt.structs import (
    BridgeEvent,
    BridgeSettings,
    DeviceStateView,
    HubDiscovered,
    HubEventBatch,
    InboundMessage,
    ReconcileTick,
    StateCell,
)

logger = get_logger(__name__)

RECEIVER_TASK_NAME = "BridgeServer_RECEIVER"
TICKER_TASK_NAME = "BridgeServer_TICKER"
POSTBACK_TASK_NAME = "PostbackServer_START"


class BridgeServer:
    """Owns the queue, the consumer and the producers of one bridge instance."""

    lp: str = "BridgeServer:"

    def __init__(
        self,
        settings: BridgeSettings,
        client: PubSubClient | None = None,
        engine: ReconciliationEngine | None = None,
        listen: bool = True,
        discover: bool = True,
    ) -> None:
        self.settings: BridgeSettings = settings
        self.client: PubSubClient = client or PubSubClient(settings)
        self.engine: ReconciliationEngine = engine or ReconciliationEngine(
            discovery_prefix=settings.discovery_prefix,
            delete_settle=settings.delete_settle_seconds,
            config_settle=settings.config_settle_seconds,
        )
        self.router: Router = Router(self.client)
        self.state: StateCell = StateCell()
        self.queue: asyncio.Queue[BridgeEvent] = asyncio.Queue(maxsize=settings.event_queue_size)
        self.postback: PostbackServer | None = PostbackServer(settings, self.enqueue) if listen else None
        # a configured hub address is not tracked via mDNS
        self.browser: HubBrowser | None = HubBrowser(self.on_hub_resolved) if discover and not settings.hub_ip else None
        self.tasks: list[asyncio.Task[Any]] = []
        self._scheduled: set[asyncio.Task[None]] = set()

    @property
    def view(self) -> DeviceStateView:
        return self.state.load()

    @property
    def reconnect_delay(self) -> int:
        return self.settings.mqtt_conn_delay if self.settings.mqtt_conn_delay > 0 else 5

    # -- producers ---------------------------------------------------------

    async def enqueue(self, event: BridgeEvent) -> None:
        await self.queue.put(event)

    async def schedule(self, event: BridgeEvent, delay: float) -> None:
        """Enqueue ``event`` after ``delay`` seconds without holding up the consumer."""

        async def _later() -> None:
            await asyncio.sleep(delay)
            await self.enqueue(event)

        task = asyncio.create_task(_later(), name=f"schedule:{type(event).__name__}")
        self._scheduled.add(task)
        task.add_done_callback(self._scheduled.discard)

    async def on_hub_resolved(self, hub: ResolvedHub) -> None:
        await self.enqueue(HubDiscovered(addr=hub.addr, user_data=hub.user_data))

    async def _receive_loop(self) -> None:
        """Feed inbound MQTT messages to the queue, reconnecting as needed."""
        lp = f"{self.lp}receive:"
        _ = ensure_correlation_id()
        while True:
            try:
                if not self.client.is_connected:
                    await self.client.connect()
                    await self.router.resubscribe()
                    await self.enqueue(ReconcileTick("mqtt reconnect"))
                async for message in self.client.messages():
                    await self.enqueue(message)
            except TransportError as exc:
                delay = self.reconnect_delay
                logger.warning(
                    "%s MQTT connection lost (%s), sleeping for %s seconds before re-trying...",
                    lp,
                    exc.reason,
                    delay,
                )
                await asyncio.sleep(delay)

    async def _tick_loop(self) -> None:
        lp = f"{self.lp}tick:"
        _ = ensure_correlation_id()
        while True:
            await asyncio.sleep(self.settings.reregister_interval)
            logger.debug("%s Periodic re-registration", lp)
            await self.enqueue(ReconcileTick())

    # -- consumer ----------------------------------------------------------

    async def run_consumer(self) -> None:
        """Handle events one at a time, forever; no handler error unwinds the loop."""
        lp = f"{self.lp}consumer:"
        while True:
            event = await self.queue.get()
            with correlation_context():
                try:
                    await self.handle_event(event)
                except asyncio.CancelledError:
                    raise
                except (PayloadParseError, ParameterParseError) as exc:
                    logger.warning("%s Dropping malformed message: %s", lp, exc, extra={"event": type(event).__name__})
                except HubUnresponsiveError as exc:
                    logger.warning("%s Hub is not responding: %s", lp, exc.reason, extra={"addr": exc.addr})
                    await self._guarded(self.mark_unresponsive())
                except TransportError as exc:
                    logger.warning("%s MQTT %s failed: %s", lp, exc.operation, exc.reason)
                except Exception:
                    logger.exception("%s Error handling %s", lp, type(event).__name__)
                finally:
                    self.queue.task_done()

    async def _guarded(self, coro: Awaitable[None]) -> None:
        lp = f"{self.lp}guarded:"
        try:
            await coro
        except (Pv2MqttError, OSError) as exc:
            logger.warning("%s %s", lp, exc)

    async def handle_event(self, event: BridgeEvent) -> None:
        match event:
            case InboundMessage():
                await self.on_message(event)
            case HubEventBatch():
                await self.on_hub_events(event)
            case ReconcileTick():
                await self.reconcile(event.reason)
            case HubDiscovered():
                await self.on_hub_discovered(event)
            case _:
                logger.warning("%s Unknown event %r", self.lp, event)

    def context(self) -> BridgeContext:
        return BridgeContext(view=self.view, client=self.client, engine=self.engine, schedule=self.schedule)

    async def on_message(self, message: InboundMessage) -> None:
        _ = await self.router.dispatch(message, self.context())

    async def on_hub_events(self, batch: HubEventBatch) -> None:
        lp = f"{self.lp}hub_events:"
        if batch.serial != self.view.serial:
            logger.info("%s Ignoring %d events for untracked hub %s", lp, len(batch.records), batch.serial)
            return
        published = await publish_events(self.client, batch.serial, batch.records)
        logger.debug("%s %d records -> %d publishes", lp, len(batch.records), published)

    async def reconcile(self, reason: str = "periodic") -> None:
        """Run one full pass; success ends the first run and marks the hub responding."""
        lp = f"{self.lp}reconcile:"
        view = self.view
        if view.hub is None:
            logger.debug("%s No hub yet, skipping %s pass", lp, reason)
            return
        logger.info("%s Reconciling (%s)", lp, reason)
        inventory = await self.engine.reconcile(self.client, view, view.hub)
        _ = self.state.swap(self.view.evolve(user_data=inventory.user_data, responding=True, first_run=False))

    async def mark_unresponsive(self) -> None:
        lp = f"{self.lp}mark_unresponsive:"
        view = self.view
        if not view.responding:
            return
        _ = self.state.swap(view.evolve(responding=False))
        logger.warning("%s Hub %s marked unresponsive", lp, view.hub_addr)
        if view.serial:
            await publish_all(self.client, hub_status_updates(view.serial, view.hub_addr, responding=False))

    async def on_hub_discovered(self, event: HubDiscovered) -> None:
        lp = f"{self.lp}hub_discovered:"
        view = self.view

        if event.user_data is not None:
            serial = event.user_data.serial_number
        elif event.addr == view.hub_addr:
            serial = view.serial
        else:
            logger.debug("%s %s is not responding and is not the tracked hub", lp, event.addr)
            return

        if serial is None or serial != view.serial:
            logger.debug("%s Ignoring hub %s at %s, tracking %s", lp, serial, event.addr, view.serial)
            return

        if not event.reachable:
            await self.mark_unresponsive()
            return

        user_data = event.user_data
        assert user_data is not None
        name_changed = view.user_data is not None and user_data.hub_name != view.user_data.hub_name
        addr_changed = event.addr != view.hub_addr

        if addr_changed or name_changed:
            logger.info(
                "%s Hub %s changed",
                lp,
                serial,
                extra={"addr": event.addr, "previous_addr": view.hub_addr, "name": user_data.hub_name},
            )
            hub = view.hub
            if addr_changed or hub is None:
                if hub is not None:
                    await hub.close()
                hub = HubClient(event.addr, timeout=self.settings.hub_timeout)
            _ = self.state.swap(view.evolve(hub=hub, user_data=user_data, responding=True))
            await self.enable_postback()
            await self.reconcile("hub changed")
            return

        if not view.responding:
            logger.info("%s Hub %s is responding again", lp, serial)
            _ = self.state.swap(view.evolve(user_data=user_data, responding=True))
            await self.reconcile("hub responding")

    async def enable_postback(self) -> None:
        view = self.view
        if self.postback is None or view.hub is None or view.serial is None:
            return
        await view.hub.enable_postback(self.postback.callback_url(view.serial, view.hub.addr))

    # -- lifecycle ---------------------------------------------------------

    async def acquire_hub(self) -> None:
        """Find the hub to bridge, from settings or mDNS, retrying until it answers."""
        lp = f"{self.lp}acquire_hub:"
        while True:
            addr = self.settings.hub_ip
            try:
                if addr is None:
                    addr = (await resolve_hub()).addr
                hub = HubClient(addr, timeout=self.settings.hub_timeout)
                user_data = await hub.get_user_data()
            except (LookupError, Pv2MqttError) as exc:
                logger.warning("%s No hub yet: %s, retrying in %s seconds", lp, exc, self.settings.mqtt_conn_delay)
                await asyncio.sleep(self.settings.mqtt_conn_delay)
                continue
            logger.info(
                "%s Using hub %s",
                lp,
                user_data.hub_name,
                extra={"addr": addr, "serial": user_data.serial_number},
            )
            _ = self.state.swap(self.view.evolve(hub=hub, user_data=user_data, responding=True))
            return

    async def connect_mqtt(self) -> None:
        """Connect and register every route, retrying until the broker accepts both.

        Route compile and ambiguity errors are not retried.
        """
        lp = f"{self.lp}connect_mqtt:"
        while True:
            try:
                await self.client.connect()
                await register_routes(self.router, self.settings.discovery_prefix)
            except TransportError as exc:
                # routes registered before the failure would be ambiguous on the next attempt
                self.router = Router(self.client)
                logger.warning(
                    "%s MQTT broker unavailable (%s), sleeping for %s seconds before re-trying...",
                    lp,
                    exc.reason,
                    self.reconnect_delay,
                )
                await asyncio.sleep(self.reconnect_delay)
                continue
            logger.info("%s Subscribed", lp, extra={"routes": self.router.routes})
            return

    async def start(self) -> None:
        """Connect, register routes, find the hub and run until cancelled."""
        _ = ensure_correlation_id()
        await self.acquire_hub()
        await self.connect_mqtt()

        if self.postback is not None:
            self.postback.start_task = asyncio.create_task(self.postback.start(), name=POSTBACK_TASK_NAME)
            self.tasks.append(self.postback.start_task)
            await self._guarded(self.enable_postback())
        if self.browser is not None:
            await self.browser.start()

        await self.enqueue(ReconcileTick("startup"))
        self.tasks.extend(
            [
                asyncio.create_task(self._receive_loop(), name=RECEIVER_TASK_NAME),
                asyncio.create_task(self._tick_loop(), name=TICKER_TASK_NAME),
            ],
        )
        await self.run_consumer()

    async def stop(self) -> None:
        lp = f"{self.lp}stop:"
        logger.info("%s Stopping bridge...", lp)
        pending = [task for task in [*self.tasks, *self._scheduled] if not task.done()]
        for task in pending:
            _ = task.cancel()
        # wait for the cancellations so nothing publishes after the offline announcement
        _ = await asyncio.gather(*pending, return_exceptions=True)
        self.tasks.clear()
        if self.browser is not None:
            await self.browser.stop()
        if self.postback is not None:
            await self.postback.stop()
        view = self.view
        if view.serial and self.client.is_connected:
            await self._guarded(self.client.publish(hub_topic(view.serial, "availability"), OFFLINE))
        await self.client.disconnect()
        if view.hub is not None:
            await view.hub.close()
