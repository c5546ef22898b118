"""Unit tests for Home Assistant discovery descriptors."""

from __future__ import annotations

from conftest import HUB_SERIAL, make_shade, make_user_data

from pv2mqtt.api_types import ShadeCapabilities
from pv2mqtt.const import BRIDGE_AVAILABILITY_TOPIC
from pv2mqtt.mqtt.discovery import (
    BUTTON,
    COVER,
    SELECT,
    battery_descriptor,
    button_descriptors,
    cover_descriptor,
    hub_sensors,
    is_legacy_object_id,
    legacy_object_ids,
    power_source_descriptor,
    scene_descriptor,
    shade_key,
    unique_id,
)

HUB_AVAILABILITY = f"pv2mqtt/hub/{HUB_SERIAL}/availability"


class TestIds:
    """Tests for topic keys and unique ids."""

    def test_shade_key(self):
        """Test the secondary rail is suffixed with '_2'."""
        assert shade_key(42) == "42"
        assert shade_key(42, secondary=True) == "42_2"

    def test_unique_id(self):
        """Test unique ids are prefixed with the hub serial."""
        assert unique_id(HUB_SERIAL, 42) == f"{HUB_SERIAL}-42"
        assert unique_id(HUB_SERIAL, 42, "battery") == f"{HUB_SERIAL}-42-battery"

    def test_legacy_object_ids(self):
        """Test only bare numeric ids count as legacy."""
        assert is_legacy_object_id("42")
        assert is_legacy_object_id("42_2")
        assert not is_legacy_object_id(f"{HUB_SERIAL}-42")
        assert not is_legacy_object_id("_2")

    def test_legacy_ids_of_a_shade(self):
        """Test each shade owns the bare ids of both its rails."""
        assert legacy_object_ids(42) == ("42", "42_2")


class TestCoverDescriptor:
    """Tests for cover_descriptor()."""

    def test_cover_topics(self):
        """Test the cover points at the shade's state and command topics."""
        descriptor = cover_descriptor(HUB_SERIAL, make_shade(), "Kitchen Area")
        config = descriptor.config
        base = f"pv2mqtt/shade/{HUB_SERIAL}/42"

        assert descriptor.component == COVER
        assert descriptor.topic("homeassistant") == f"homeassistant/cover/{HUB_SERIAL}-42/config"
        assert config["state_topic"] == f"{base}/state"
        assert config["position_topic"] == f"{base}/position"
        assert config["set_position_topic"] == f"{base}/set_position"
        assert config["command_topic"] == f"{base}/command"
        assert config["device_class"] == "shade"

    def test_cover_depends_on_hub_availability(self):
        """Test a cover is only available while both it and the hub are."""
        config = cover_descriptor(HUB_SERIAL, make_shade(), None).config

        assert config["availability_mode"] == "all"
        assert {"topic": HUB_AVAILABILITY} in config["availability"]

    def test_secondary_rail_is_its_own_device(self):
        """Test the middle rail registers as a separate device behind the hub."""
        shade = make_shade(capabilities=ShadeCapabilities.TOP_DOWN_BOTTOM_UP)

        config = cover_descriptor(HUB_SERIAL, shade, "Kitchen Area", secondary=True).config

        assert config["unique_id"] == f"{HUB_SERIAL}-42_2"
        assert config["device"]["name"] == "Kitchen Middle Rail"
        assert config["device"]["via_device"] == f"{HUB_SERIAL}-hub"


class TestShadeExtras:
    """Tests for the battery sensor, buttons and power source select."""

    def test_battery(self):
        """Test the battery sensor is a diagnostic entity."""
        config = battery_descriptor(HUB_SERIAL, make_shade(), None).config

        assert config["state_topic"] == f"pv2mqtt/shade/{HUB_SERIAL}/42/battery"
        assert config["entity_category"] == "diagnostic"

    def test_buttons_press_command_tokens(self):
        """Test each button sends its token to the shade command topic."""
        descriptors = button_descriptors(HUB_SERIAL, make_shade(), None)

        assert all(d.component == BUTTON for d in descriptors)
        assert [d.config["payload_press"] for d in descriptors] == [
            "JOG",
            "CALIBRATE",
            "HEART",
            "REFRESH_BATTERY",
            "REFRESH_POSITION",
        ]
        assert {d.config["command_topic"] for d in descriptors} == {f"pv2mqtt/shade/{HUB_SERIAL}/42/command"}

    def test_power_source_options(self):
        """Test the select offers the three power source labels."""
        descriptor = power_source_descriptor(HUB_SERIAL, make_shade(), None)

        assert descriptor.component == SELECT
        assert descriptor.config["options"] == ["Hardwired Power Supply", "Battery Wand", "Rechargeable Battery"]


class TestHubAndScenes:
    """Tests for hub sensors and scene descriptors."""

    def test_hub_sensors_follow_bridge_availability(self):
        """Test the hub diagnostics stay visible while the hub is down."""
        sensors = hub_sensors(make_user_data())

        assert [s.unique_id for s in sensors] == [f"{HUB_SERIAL}-hub-ip_address", f"{HUB_SERIAL}-hub-responding"]
        assert all(s.config["availability"] == [{"topic": BRIDGE_AVAILABILITY_TOPIC}] for s in sensors)
        assert sensors[0].config["device"]["connections"] == [["mac", "00:26:74:aa:bb:cc"]]

    def test_scene_named_after_room(self):
        """Test scene entities are prefixed with their room name."""
        descriptor = scene_descriptor(HUB_SERIAL, 7, "Morning", "Kitchen Area", make_user_data())

        assert descriptor.unique_id == f"{HUB_SERIAL}-7"
        assert descriptor.config["name"] == "Kitchen Area Morning"
        assert descriptor.config["command_topic"] == f"pv2mqtt/scene/{HUB_SERIAL}/7/set"
