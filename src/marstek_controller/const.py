import os
import zoneinfo

import tzlocal

from marstek_controller import __version__

__all__ = [
    "BATTERY_POLL_MESSAGES",
    "CLOUD_POLLER_TASK_NAME",
    "DEVICE_LWT_MSG",
    "LOCAL_TZ",
    "MARSTEK_CLOUD_API_TIMEOUT",
    "MARSTEK_CLOUD_BASE_URL",
    "MARSTEK_CLOUD_CACHE_TTL",
    "MARSTEK_CLOUD_LOGIN_PATH",
    "MARSTEK_CLOUD_POLL_INTERVAL",
    "MARSTEK_CLOUD_STATUS_PATH",
    "MARSTEK_CLOUD_TOKEN_LIFETIME",
    "MARSTEK_CLOUD_TOKEN_MARGIN",
    "MARSTEK_COMMAND_ATTEMPTS",
    "MARSTEK_CONFIG_FILE_PATH",
    "MARSTEK_DEBUG",
    "MARSTEK_DEVICE_STALE_AFTER",
    "MARSTEK_DISCOVERY_INTERVAL",
    "MARSTEK_DISCOVERY_WINDOW",
    "MARSTEK_LOCAL_PORT",
    "MARSTEK_LOG_FORMAT",
    "MARSTEK_LOG_HUMAN_OUTPUT",
    "MARSTEK_LOG_JSON_FILE",
    "MARSTEK_METRICS_PORT",
    "MARSTEK_MQTT_CONN_DELAY",
    "MARSTEK_MQTT_HOST",
    "MARSTEK_MQTT_PASS",
    "MARSTEK_MQTT_PORT",
    "MARSTEK_MQTT_USER",
    "MARSTEK_PERF_THRESHOLD_MS",
    "MARSTEK_PERF_TRACKING",
    "MARSTEK_POLL_DEFAULT",
    "MARSTEK_POLL_FLOOR",
    "MARSTEK_POLL_JITTER_MS",
    "MARSTEK_POLL_SEND_GAP",
    "MARSTEK_REQUEST_TIMEOUT",
    "MARSTEK_TOPIC",
    "MARSTEK_UDP_PORT",
    "MARSTEK_VERSION",
    "MQTT_CLIENT_START_TASK_NAME",
    "POLL_SCHEDULER_TASK_NAME",
    "REQUEST_ID_CEILING",
    "REQUEST_ID_RESEED_MAX",
    "YES_ANSWER",
]

YES_ANSWER = ("true", "1", "yes", "y", "t", 1, "on", "o")
LOCAL_TZ = zoneinfo.ZoneInfo(str(tzlocal.get_localzone()))
MARSTEK_VERSION: str = __version__
DEVICE_LWT_MSG: bytes = b"offline"


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


# UDP wire protocol
MARSTEK_UDP_PORT: int = _env_int("MARSTEK_UDP_PORT", 30000)
# 0 lets the OS pick an ephemeral port
MARSTEK_LOCAL_PORT: int = _env_int("MARSTEK_LOCAL_PORT", 30000)
MARSTEK_REQUEST_TIMEOUT: float = _env_float("MARSTEK_REQUEST_TIMEOUT", 10.0)
MARSTEK_COMMAND_ATTEMPTS: int = _env_int("MARSTEK_COMMAND_ATTEMPTS", 5)
REQUEST_ID_CEILING: int = 65535
REQUEST_ID_RESEED_MAX: int = 10000

# Polling
MARSTEK_POLL_FLOOR: float = _env_float("MARSTEK_POLL_FLOOR", 15.0)
MARSTEK_POLL_DEFAULT: float = _env_float("MARSTEK_POLL_DEFAULT", 600.0)
MARSTEK_POLL_JITTER_MS: int = _env_int("MARSTEK_POLL_JITTER_MS", 100)
MARSTEK_POLL_SEND_GAP: float = _env_float("MARSTEK_POLL_SEND_GAP", 0.1)
MARSTEK_DEVICE_STALE_AFTER: float = _env_float("MARSTEK_DEVICE_STALE_AFTER", 1800.0)

# (method, broadcast only)
BATTERY_POLL_MESSAGES: tuple[tuple[str, bool], ...] = (
    ("ES.GetStatus", False),
    ("Bat.GetStatus", True),
    ("Wifi.GetStatus", False),
    ("ES.GetMode", False),
    ("EM.GetStatus", False),
)

# Discovery
MARSTEK_DISCOVERY_WINDOW: float = _env_float("MARSTEK_DISCOVERY_WINDOW", 9.0)
MARSTEK_DISCOVERY_INTERVAL: float = _env_float("MARSTEK_DISCOVERY_INTERVAL", 2.0)

# Cloud
_cloud_base = os.environ.get("MARSTEK_CLOUD_BASE_URL", "https://eu.hamedata.com")
MARSTEK_CLOUD_BASE_URL: str = _cloud_base.rstrip("/") if _cloud_base else "https://eu.hamedata.com"
MARSTEK_CLOUD_LOGIN_PATH: str = os.environ.get("MARSTEK_CLOUD_LOGIN_PATH", "/app/Solar/v2_get_device.php")
MARSTEK_CLOUD_STATUS_PATH: str = os.environ.get("MARSTEK_CLOUD_STATUS_PATH", "/ems/api/v1/getDeviceList")
MARSTEK_CLOUD_API_TIMEOUT: float = _env_float("MARSTEK_CLOUD_API_TIMEOUT", 10.0)
MARSTEK_CLOUD_CACHE_TTL: float = _env_float("MARSTEK_CLOUD_CACHE_TTL", 58.0)
MARSTEK_CLOUD_POLL_INTERVAL: float = _env_float("MARSTEK_CLOUD_POLL_INTERVAL", 60.0)
MARSTEK_CLOUD_TOKEN_LIFETIME: float = _env_float("MARSTEK_CLOUD_TOKEN_LIFETIME", 3000.0)
MARSTEK_CLOUD_TOKEN_MARGIN: float = _env_float("MARSTEK_CLOUD_TOKEN_MARGIN", 60.0)

# MQTT
MARSTEK_MQTT_HOST: str = os.environ.get("MARSTEK_MQTT_HOST", "homeassistant.local")
MARSTEK_MQTT_PORT: int = _env_int("MARSTEK_MQTT_PORT", 1883)
MARSTEK_MQTT_USER: str | None = os.environ.get("MARSTEK_MQTT_USER") or None
MARSTEK_MQTT_PASS: str | None = os.environ.get("MARSTEK_MQTT_PASS") or None
MARSTEK_TOPIC: str = os.environ.get("MARSTEK_TOPIC", "marstek")
MARSTEK_MQTT_CONN_DELAY: int = _env_int("MARSTEK_MQTT_CONN_DELAY", 10)

MARSTEK_DEBUG: bool = os.environ.get("MARSTEK_DEBUG", "0").casefold() in YES_ANSWER
MARSTEK_CONFIG_FILE_PATH: str = os.environ.get("MARSTEK_CONFIG_FILE", "~/.config/marstek-controller/devices.yaml")
MARSTEK_METRICS_PORT: int = _env_int("MARSTEK_METRICS_PORT", 0)

# Logging Configuration
MARSTEK_LOG_FORMAT: str = os.environ.get("MARSTEK_LOG_FORMAT", "human")  # "json", "human", or "both"
MARSTEK_LOG_JSON_FILE: str | None = os.environ.get("MARSTEK_LOG_JSON_FILE") or None
MARSTEK_LOG_HUMAN_OUTPUT: str = os.environ.get("MARSTEK_LOG_HUMAN_OUTPUT", "stdout")  # "stdout", "stderr", or path

# Performance Instrumentation
MARSTEK_PERF_TRACKING: bool = os.environ.get("MARSTEK_PERF_TRACKING", "true").casefold() in YES_ANSWER
MARSTEK_PERF_THRESHOLD_MS: int = _env_int("MARSTEK_PERF_THRESHOLD_MS", 500)

POLL_SCHEDULER_TASK_NAME = "PollScheduler_TICK"
MQTT_CLIENT_START_TASK_NAME = "MQTTClient_START"
CLOUD_POLLER_TASK_NAME = "CloudPoller_{username}"
