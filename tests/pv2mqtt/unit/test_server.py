"""Unit tests for BridgeServer's event loop.

Tests the single consumer, hub discovery transitions, reconciliation state
changes and hub event batches. The MQTT client and hub are mocks; no
postback listener or mDNS browser is started.
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterator
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from conftest import HUB_ADDR, HUB_SERIAL, make_user_data, published

from pv2mqtt.api_types import HomeAutomationRecord
from pv2mqtt.exceptions import HubUnresponsiveError, PayloadParseError, TransportError
from pv2mqtt.mqtt.command_routing import register_routes
from pv2mqtt.server import BridgeServer
from pv2mqtt.structs import (
    BridgeSettings,
    DeviceStateView,
    HubDiscovered,
    HubEventBatch,
    InboundMessage,
    ReconcileTick,
)


@pytest.fixture(autouse=True)
def no_settle_sleep() -> Iterator[AsyncMock]:
    """Skip the registration settle delays."""
    with patch("pv2mqtt.mqtt.registration.asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
        yield mock_sleep


@pytest.fixture
def server(settings: BridgeSettings, mock_pubsub: AsyncMock, mock_hub: MagicMock) -> BridgeServer:
    """A server tracking the mock hub, responding, after its first pass."""
    srv = BridgeServer(settings, client=mock_pubsub, listen=False, discover=False)
    _ = srv.state.swap(DeviceStateView(hub=mock_hub, user_data=make_user_data(), responding=True, first_run=False))
    return srv


def _record(kind: str, **positions: int) -> HomeAutomationRecord:
    return HomeAutomationRecord.model_validate({"shadeId": 42, "type": kind, **positions})


class TestConstruction:
    """Tests for BridgeServer construction."""

    def test_optional_producers(self, settings: BridgeSettings, mock_pubsub: AsyncMock):
        """Test the listener and browser are only built when asked for."""
        srv = BridgeServer(settings, client=mock_pubsub, listen=False, discover=False)

        assert srv.postback is None
        assert srv.browser is None
        assert srv.view == DeviceStateView()
        assert srv.queue.maxsize == settings.event_queue_size

    def test_configured_hub_is_not_browsed(self, settings: BridgeSettings, mock_pubsub: AsyncMock):
        """Test a fixed hub address disables mDNS tracking."""
        fixed = settings.model_copy(update={"hub_ip": HUB_ADDR})

        srv = BridgeServer(fixed, client=mock_pubsub, listen=False, discover=True)

        assert srv.browser is None


class TestReconcile:
    """Tests for BridgeServer.reconcile()."""

    @pytest.mark.asyncio
    async def test_no_hub_skips(self, settings: BridgeSettings, mock_pubsub: AsyncMock):
        """Test a pass before any hub is known publishes nothing."""
        srv = BridgeServer(settings, client=mock_pubsub, listen=False, discover=False)

        await srv.reconcile("startup")

        mock_pubsub.publish.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_success_ends_first_run(self, server: BridgeServer, mock_hub: MagicMock):
        """Test a successful pass marks the hub responding and ends the first run."""
        _ = server.state.swap(server.view.evolve(first_run=True, responding=False))

        await server.reconcile("startup")

        assert server.view.first_run is False
        assert server.view.responding is True
        mock_hub.list_shades.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_failure_keeps_first_run(self, server: BridgeServer, mock_hub: MagicMock):
        """Test a failed pass leaves the view unchanged."""
        _ = server.state.swap(server.view.evolve(first_run=True))
        mock_hub.get_user_data.side_effect = HubUnresponsiveError(HUB_ADDR, "timeout")

        with pytest.raises(HubUnresponsiveError):
            await server.reconcile("startup")

        assert server.view.first_run is True


class TestMarkUnresponsive:
    """Tests for BridgeServer.mark_unresponsive()."""

    @pytest.mark.asyncio
    async def test_publishes_hub_status_once(self, server: BridgeServer, mock_pubsub: AsyncMock):
        """Test the hub goes offline once, repeated calls publish nothing."""
        await server.mark_unresponsive()
        await server.mark_unresponsive()

        assert server.view.responding is False
        assert published(mock_pubsub) == [
            (f"pv2mqtt/hub/{HUB_SERIAL}/ip_address", HUB_ADDR),
            (f"pv2mqtt/hub/{HUB_SERIAL}/responding", "no"),
            (f"pv2mqtt/hub/{HUB_SERIAL}/availability", "offline"),
        ]


class TestOnHubEvents:
    """Tests for BridgeServer.on_hub_events()."""

    @pytest.mark.asyncio
    async def test_tracked_hub_events_published(self, server: BridgeServer, mock_pubsub: AsyncMock):
        """Test records for the tracked hub are translated and published."""
        await server.on_hub_events(HubEventBatch(HUB_SERIAL, [_record("stops", stoppedPosition=0)]))

        assert published(mock_pubsub) == [
            (f"pv2mqtt/shade/{HUB_SERIAL}/42/position", "0"),
            (f"pv2mqtt/shade/{HUB_SERIAL}/42/state", "closed"),
        ]

    @pytest.mark.asyncio
    async def test_other_hub_events_ignored(self, server: BridgeServer, mock_pubsub: AsyncMock):
        """Test batches from another hub publish nothing."""
        await server.on_hub_events(HubEventBatch("OTHER", [_record("has-opened")]))

        mock_pubsub.publish.assert_not_awaited()


class TestOnHubDiscovered:
    """Tests for BridgeServer.on_hub_discovered()."""

    @pytest.mark.asyncio
    async def test_unchanged_hub_publishes_nothing(self, server: BridgeServer, mock_pubsub: AsyncMock):
        """Test rediscovering a responding hub with nothing changed is a no-op."""
        view = server.view

        await server.on_hub_discovered(HubDiscovered(HUB_ADDR, make_user_data()))

        mock_pubsub.publish.assert_not_awaited()
        assert server.view is view

    @pytest.mark.asyncio
    async def test_other_serial_ignored(self, server: BridgeServer, mock_pubsub: AsyncMock):
        """Test a different hub on the network is not adopted."""
        await server.on_hub_discovered(HubDiscovered("192.168.1.99", make_user_data(serial="OTHER")))

        mock_pubsub.publish.assert_not_awaited()
        assert server.view.hub_addr == HUB_ADDR

    @pytest.mark.asyncio
    async def test_unreachable_tracked_hub_marked_unresponsive(self, server: BridgeServer, mock_pubsub: AsyncMock):
        """Test the tracked address failing to answer marks the hub unresponsive."""
        await server.on_hub_discovered(HubDiscovered(HUB_ADDR))

        assert server.view.responding is False
        assert (f"pv2mqtt/hub/{HUB_SERIAL}/availability", "offline") in published(mock_pubsub)

    @pytest.mark.asyncio
    async def test_unknown_unreachable_address_ignored(self, server: BridgeServer, mock_pubsub: AsyncMock):
        """Test a silent hub at another address says nothing about the tracked one."""
        await server.on_hub_discovered(HubDiscovered("192.168.1.99"))

        assert server.view.responding is True
        mock_pubsub.publish.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_address_change_swaps_client_and_reconciles(self, server: BridgeServer, mock_hub: MagicMock):
        """Test a new address replaces the hub client and re-registers."""
        # Arrange
        new_hub = MagicMock()
        new_hub.addr = "192.168.1.77"
        for name in ("get_user_data", "list_rooms", "list_shades", "list_scenes"):
            setattr(new_hub, name, getattr(mock_hub, name))
        new_hub.close = AsyncMock()

        # Act
        with patch("pv2mqtt.server.HubClient", return_value=new_hub) as mock_cls:
            await server.on_hub_discovered(HubDiscovered("192.168.1.77", make_user_data()))

        # Assert
        mock_cls.assert_called_once_with("192.168.1.77", timeout=server.settings.hub_timeout)
        mock_hub.close.assert_awaited_once()
        assert server.view.hub is new_hub
        assert server.view.responding is True

    @pytest.mark.asyncio
    async def test_name_change_reconciles_without_new_client(
        self,
        server: BridgeServer,
        mock_hub: MagicMock,
        mock_pubsub: AsyncMock,
    ):
        """Test a renamed hub at the same address is re-registered."""
        await server.on_hub_discovered(HubDiscovered(HUB_ADDR, make_user_data(name="Den Hub")))

        assert server.view.hub is mock_hub
        assert server.view.user_data is not None
        mock_hub.close.assert_not_awaited()
        mock_pubsub.publish.assert_awaited()

    @pytest.mark.asyncio
    async def test_recovered_hub_reconciles(self, server: BridgeServer, mock_hub: MagicMock):
        """Test a previously unresponsive hub answering again triggers a pass."""
        _ = server.state.swap(server.view.evolve(responding=False))

        await server.on_hub_discovered(HubDiscovered(HUB_ADDR, make_user_data()))

        assert server.view.responding is True
        mock_hub.list_shades.assert_awaited_once()


class TestRunConsumer:
    """Tests for BridgeServer.run_consumer()."""

    @staticmethod
    async def _drain(server: BridgeServer) -> None:
        consumer = asyncio.create_task(server.run_consumer())
        try:
            await asyncio.wait_for(server.queue.join(), timeout=2)
        finally:
            _ = consumer.cancel()
            with pytest.raises(asyncio.CancelledError):
                await consumer

    @pytest.mark.asyncio
    async def test_errors_do_not_stop_the_loop(self, server: BridgeServer):
        """Test a failing handler is logged and the next event still runs."""
        calls: list[object] = []

        async def handle(event: object) -> None:
            calls.append(event)
            if len(calls) == 1:
                raise PayloadParseError("x", "int")
            if len(calls) == 2:
                raise RuntimeError("boom")

        server.handle_event = handle  # type: ignore[method-assign]
        for event in (ReconcileTick("a"), ReconcileTick("b"), ReconcileTick("c")):
            await server.enqueue(event)

        await self._drain(server)

        assert calls == [ReconcileTick("a"), ReconcileTick("b"), ReconcileTick("c")]

    @pytest.mark.asyncio
    async def test_unresponsive_hub_marks_view(self, server: BridgeServer, mock_hub: MagicMock):
        """Test a hub timeout during a pass flips the hub to unresponsive."""
        mock_hub.get_user_data.side_effect = HubUnresponsiveError(HUB_ADDR, "timeout")
        await server.enqueue(ReconcileTick())

        await self._drain(server)

        assert server.view.responding is False

    @pytest.mark.asyncio
    async def test_inbound_message_is_dispatched(self, server: BridgeServer, mock_hub: MagicMock):
        """Test inbound messages reach the registered routes."""
        await register_routes(server.router, server.settings.discovery_prefix)
        await server.enqueue(InboundMessage(f"pv2mqtt/scene/{HUB_SERIAL}/7/set", b"ON"))

        await self._drain(server)

        mock_hub.activate_scene.assert_awaited_once_with(7)


class TestSchedule:
    """Tests for BridgeServer.schedule()."""

    @pytest.mark.asyncio
    async def test_event_enqueued_after_delay(self, server: BridgeServer):
        """Test a scheduled event lands on the queue without blocking the caller."""
        await server.schedule(ReconcileTick("hass birth"), 0)

        event = await asyncio.wait_for(server.queue.get(), timeout=2)

        assert event == ReconcileTick("hass birth")


class TestStop:
    """Tests for BridgeServer.stop()."""

    @pytest.mark.asyncio
    async def test_stop_announces_hub_offline(self, server: BridgeServer, mock_pubsub: AsyncMock, mock_hub: MagicMock):
        """Test shutdown marks the hub offline, disconnects and closes the hub client."""
        await server.stop()

        assert published(mock_pubsub) == [(f"pv2mqtt/hub/{HUB_SERIAL}/availability", "offline")]
        mock_pubsub.disconnect.assert_awaited_once()
        mock_hub.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_stop_waits_for_cancelled_tasks(self, server: BridgeServer):
        """Test running tasks have finished cancelling by the time stop() returns."""
        started = asyncio.Event()

        async def forever() -> None:
            started.set()
            _ = await asyncio.Event().wait()

        task = asyncio.create_task(forever())
        _ = await started.wait()
        server.tasks.append(task)

        await server.stop()

        assert task.cancelled() is True
        assert server.tasks == []


class TestConnectMqtt:
    """Tests for BridgeServer.connect_mqtt()."""

    @pytest.mark.asyncio
    async def test_retries_until_broker_accepts(
        self,
        server: BridgeServer,
        mock_pubsub: AsyncMock,
        no_settle_sleep: AsyncMock,
    ):
        """Test an unavailable broker at startup is retried instead of ending the bridge."""
        # Arrange
        mock_pubsub.connect.side_effect = [
            TransportError("connect", "Connection refused"),
            TransportError("connect", "Connection refused"),
            None,
        ]

        # Act
        await server.connect_mqtt()

        # Assert
        assert mock_pubsub.connect.await_count == 3
        no_settle_sleep.assert_awaited_with(server.reconnect_delay)
        assert len(server.router.routes) == 5

    @pytest.mark.asyncio
    async def test_failed_subscription_registers_routes_once(self, server: BridgeServer, mock_pubsub: AsyncMock):
        """Test a subscription lost mid-registration does not leave duplicate routes behind."""
        mock_pubsub.subscribe.side_effect = [None, None, TransportError("subscribe", "connection lost"), *[None] * 5]

        await server.connect_mqtt()

        assert mock_pubsub.connect.await_count == 2
        assert len(server.router.routes) == 5
        assert len(set(server.router.routes)) == 5

    @pytest.mark.asyncio
    async def test_start_survives_broker_down(self, server: BridgeServer, mock_pubsub: AsyncMock):
        """Test start() keeps going when the first broker connection is refused."""
        mock_pubsub.connect.side_effect = [TransportError("connect", "Connection refused"), None]

        with (
            patch.object(server, "acquire_hub", new_callable=AsyncMock),
            patch.object(server, "run_consumer", new_callable=AsyncMock) as mock_consumer,
        ):
            await server.start()
            await server.stop()

        mock_consumer.assert_awaited_once()
        assert server.queue.get_nowait() == ReconcileTick("startup")
