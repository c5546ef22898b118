"""Bridge Hunter Douglas PowerView hubs to MQTT with Home Assistant discovery."""

__version__ = "0.3.0"
