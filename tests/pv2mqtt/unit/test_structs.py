"""Unit tests for settings, the state view and the event types."""

from __future__ import annotations

import dataclasses

import pytest
from conftest import make_user_data
from pydantic import ValidationError

from pv2mqtt.hub import HubClient
from pv2mqtt.mqtt.registration import ReconciliationEngine
from pv2mqtt.structs import BridgeSettings, DeviceStateView, HubDiscovered, StateCell


class TestBridgeSettings:
    """Tests for BridgeSettings.from_env()."""

    def test_defaults(self, monkeypatch: pytest.MonkeyPatch):
        """Test unset variables fall back to the defaults."""
        for name in ("PV_MQTT_HOST", "PV_MQTT_PORT", "PV_HUB_IP", "PV_DEBUG", "PV_DISCOVERY_PREFIX"):
            monkeypatch.delenv(name, raising=False)

        settings = BridgeSettings.from_env()

        assert settings.mqtt_host == "localhost"
        assert settings.mqtt_port == 1883
        assert settings.hub_ip is None
        assert settings.discovery_prefix == "homeassistant"
        assert settings.debug is False

    def test_environment_overrides(self, monkeypatch: pytest.MonkeyPatch):
        """Test PV_* variables are read at call time."""
        monkeypatch.setenv("PV_MQTT_HOST", "mqtt.lan")
        monkeypatch.setenv("PV_MQTT_PORT", "8883")
        monkeypatch.setenv("PV_HUB_IP", "10.0.0.9")
        monkeypatch.setenv("PV_DEBUG", "yes")
        monkeypatch.setenv("PV_CONFIG_SETTLE_SECONDS", "0.5")

        settings = BridgeSettings.from_env()

        assert settings.mqtt_host == "mqtt.lan"
        assert settings.mqtt_port == 8883
        assert settings.hub_ip == "10.0.0.9"
        assert settings.debug is True
        assert settings.config_settle_seconds == 0.5

    def test_empty_values_use_defaults(self, monkeypatch: pytest.MonkeyPatch):
        """Test empty strings count as unset."""
        monkeypatch.setenv("PV_MQTT_USER", "")
        monkeypatch.setenv("PV_POSTBACK_PORT", "")

        settings = BridgeSettings.from_env()

        assert settings.mqtt_user is None
        assert settings.postback_port == 8130

    def test_invalid_value_is_rejected(self, monkeypatch: pytest.MonkeyPatch):
        """Test a malformed number fails loudly instead of silently using the default."""
        monkeypatch.setenv("PV_MQTT_PORT", "not-a-port")

        with pytest.raises(ValidationError, match="mqtt_port"):
            _ = BridgeSettings.from_env()

    def test_component_defaults_match_settings(self):
        """Test the hub client and engine defaults are the settings defaults."""
        settings = BridgeSettings()
        engine = ReconciliationEngine()

        assert HubClient("10.0.0.9").timeout == settings.hub_timeout
        assert engine.delete_settle == settings.delete_settle_seconds
        assert engine.config_settle == settings.config_settle_seconds


class TestDeviceStateView:
    """Tests for DeviceStateView and StateCell."""

    def test_defaults(self):
        """Test a fresh view knows no hub and is on its first run."""
        view = DeviceStateView()

        assert view.serial is None
        assert view.hub_addr is None
        assert view.responding is False
        assert view.first_run is True

    def test_view_is_immutable(self):
        """Test views cannot be modified in place."""
        view = DeviceStateView()

        with pytest.raises(dataclasses.FrozenInstanceError):
            view.responding = True  # type: ignore[misc]

    def test_evolve_returns_new_view(self):
        """Test evolve() copies with changes and leaves the original alone."""
        view = DeviceStateView()

        changed = view.evolve(user_data=make_user_data(), responding=True)

        assert changed.serial == "ABC123"
        assert view.serial is None
        assert view.responding is False

    def test_swap_returns_previous(self):
        """Test StateCell.swap() replaces the view wholesale."""
        first = DeviceStateView()
        second = first.evolve(first_run=False)
        cell = StateCell(first)

        previous = cell.swap(second)

        assert previous is first
        assert cell.load() is second


class TestHubDiscovered:
    """Tests for HubDiscovered."""

    def test_reachable(self):
        """Test a hub is reachable when it answered with its user data."""
        assert HubDiscovered("1.2.3.4", make_user_data()).reachable is True
        assert HubDiscovered("1.2.3.4").reachable is False
