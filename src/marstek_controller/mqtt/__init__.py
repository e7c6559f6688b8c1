"""MQTT bridge."""

from marstek_controller.mqtt.client import MQTTClient
from marstek_controller.mqtt.command_routing import CommandRouter, build_mode_config, classify_failure

__all__ = ["CommandRouter", "MQTTClient", "build_mode_config", "classify_failure"]
