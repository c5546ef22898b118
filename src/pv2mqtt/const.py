import logging
import os

from pv2mqtt import __version__

__all__ = [
    "APP_TOPIC",
    "BRIDGE_AVAILABILITY_TOPIC",
    "DEFAULT_CONFIG_SETTLE_SECONDS",
    "DEFAULT_DELETE_SETTLE_SECONDS",
    "DEFAULT_HUB_TIMEOUT",
    "DEVICE_LWT_MSG",
    "FOREIGN_LOG_FORMATTER",
    "HASS_BIRTH_MSG",
    "HUB_MANUFACTURER",
    "ORIGIN_STRUCT",
    "POWERVIEW_SERVICE",
    "PV_DEBUG",
    "PV_LOG_FORMAT",
    "PV_LOG_HUMAN_OUTPUT",
    "PV_LOG_JSON_FILE",
    "PV_VERSION",
    "SECONDARY_SUFFIX",
    "SRC_REPO_URL",
    "YES_ANSWER",
]

YES_ANSWER = ("true", "1", "yes", "y", "t", 1, "on", "o")

# adds logger name
FOREIGN_LOG_FORMATTER = logging.Formatter(
    "%(asctime)s.%(msecs)d %(levelname)s <%(name)s> [%(module)s:%(lineno)d] > %(message)s",
    "%m/%d/%y %H:%M:%S",
)
PV_VERSION: str = __version__
SRC_REPO_URL: str = "https://github.com/wez/pview"
HUB_MANUFACTURER: str = "Hunter Douglas"
POWERVIEW_SERVICE: str = "_powerview._tcp.local."
DEVICE_LWT_MSG: bytes = b"offline"
HASS_BIRTH_MSG: str = "online"

# Application topic namespace; not configurable, HA descriptors point into it
APP_TOPIC: str = "pv2mqtt"
BRIDGE_AVAILABILITY_TOPIC: str = f"{APP_TOPIC}/bridge/availability"
SECONDARY_SUFFIX: str = "_2"

# Bridge settings are read from the environment by BridgeSettings.from_env()
DEFAULT_HUB_TIMEOUT: float = 60.0
# HA needs time to drop retained entities before similar ids are re-announced
DEFAULT_DELETE_SETTLE_SECONDS: float = 5.0
# per config published, before state is announced
DEFAULT_CONFIG_SETTLE_SECONDS: float = 0.1

# read at import, before any logger is configured
PV_DEBUG: bool = os.environ.get("PV_DEBUG", "0").casefold() in YES_ANSWER

# Logging Configuration
PV_LOG_FORMAT: str = os.environ.get("PV_LOG_FORMAT", "human")  # "json", "human", or "both"
PV_LOG_JSON_FILE: str | None = os.environ.get("PV_LOG_JSON_FILE") or None
PV_LOG_HUMAN_OUTPUT: str = os.environ.get("PV_LOG_HUMAN_OUTPUT", "stdout")  # "stdout", "stderr", or file path

ORIGIN_STRUCT = {
    "name": "pv2mqtt",
    "sw_version": PV_VERSION,
    "support_url": SRC_REPO_URL,
}
