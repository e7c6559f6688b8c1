"""MQTT bridge: publishes readings and availability, receives mode commands."""

from __future__ import annotations

import asyncio
import json
import uuid
from collections.abc import Mapping
from typing import Any

import aiomqtt

from marstek_controller.const import (
    DEVICE_LWT_MSG,
    MARSTEK_MQTT_CONN_DELAY,
    MARSTEK_MQTT_HOST,
    MARSTEK_MQTT_PASS,
    MARSTEK_MQTT_PORT,
    MARSTEK_MQTT_USER,
    MARSTEK_TOPIC,
)
from marstek_controller.logging_abstraction import get_logger
from marstek_controller.mqtt.command_routing import CommandRouter

__all__ = ["MQTTClient"]

logger = get_logger(__name__)


class MQTTClient:
    """aiomqtt client with a reconnect loop.

    Topics, relative to ``topic``:
        ``<src>/state``            JSON readings
        ``<src>/availability``     ``online`` / ``offline`` (retained)
        ``<src>/set/mode``         JSON mode command (subscribed)
        ``<src>/command_result``   JSON command outcome
        ``bridge/availability``    controller liveness (retained, LWT)
    """

    lp: str = "mqtt:"

    def __init__(
        self,
        router: CommandRouter | None = None,
        *,
        host: str = MARSTEK_MQTT_HOST,
        port: int = MARSTEK_MQTT_PORT,
        username: str | None = MARSTEK_MQTT_USER,
        password: str | None = MARSTEK_MQTT_PASS,
        topic: str = MARSTEK_TOPIC,
        conn_delay: int = MARSTEK_MQTT_CONN_DELAY,
    ) -> None:
        self.router = router
        self.broker_host = host
        self.broker_port = port
        self.broker_username = username
        self.broker_password = password
        self.topic = topic or "marstek"
        self.conn_delay = conn_delay if conn_delay > 0 else 5
        self.broker_client_id = f"marstek_controller_{uuid.uuid4().hex[:8]}"
        self.client: aiomqtt.Client | None = None
        self._connected = False

    @property
    def is_connected(self) -> bool:
        return self._connected

    @property
    def bridge_topic(self) -> str:
        return f"{self.topic}/bridge/availability"

    def _build_client(self) -> aiomqtt.Client:
        return aiomqtt.Client(
            hostname=self.broker_host,
            port=self.broker_port,
            username=self.broker_username,
            password=self.broker_password,
            identifier=self.broker_client_id,
            will=aiomqtt.Will(topic=self.bridge_topic, payload=DEVICE_LWT_MSG, retain=True),
        )

    async def connect(self) -> bool:
        lp = f"{self.lp}connect:"
        self._connected = False
        self.client = self._build_client()
        try:
            _ = await self.client.__aenter__()
        except aiomqtt.MqttError as e:
            logger.warning("%s ✗ connection to %s:%s failed: %s", lp, self.broker_host, self.broker_port, e)
            return False
        self._connected = True
        logger.info("%s ✓ connected to %s:%s", lp, self.broker_host, self.broker_port)
        _ = await self.publish(self.bridge_topic, b"online", retain=True)
        return True

    async def start(self) -> None:
        """Connect, subscribe and route commands until cancelled, reconnecting on errors."""
        lp = f"{self.lp}start:"
        while True:
            if await self.connect():
                try:
                    await self._receive()
                except aiomqtt.MqttError as e:
                    logger.warning("%s connection lost: %s", lp, e)
                    self._connected = False
                    continue
            logger.info("%s retrying in %ss", lp, self.conn_delay)
            await asyncio.sleep(self.conn_delay)

    async def _receive(self) -> None:
        lp = f"{self.lp}rcv:"
        assert self.client is not None
        if self.router is None:
            # publish-only: park until the connection drops or we are cancelled
            await asyncio.Event().wait()
            return
        await self.client.subscribe(self.router.subscription, qos=0)
        logger.debug("%s subscribed to %s", lp, self.router.subscription)
        async for message in self.client.messages:
            topic = message.topic.value
            payload = message.payload
            if not isinstance(payload, (bytes, bytearray)) or not payload:
                logger.debug("%s empty payload on %s, skipping", lp, topic)
                continue
            outcome = await self.router.handle_message(topic, bytes(payload))
            if outcome is not None:
                _ = await self.publish_json_msg(f"{self.topic}/{outcome['device']}/command_result", outcome)

    async def stop(self) -> None:
        lp = f"{self.lp}stop:"
        if self._connected:
            _ = await self.publish(self.bridge_topic, DEVICE_LWT_MSG, retain=True)
        if self.client is None:
            return
        try:
            await self.client.__aexit__(None, None, None)
        except aiomqtt.MqttError as e:
            logger.warning("%s disconnect failed: %s", lp, e)
        else:
            logger.info("%s disconnected from broker", lp)
        finally:
            self._connected = False

    async def publish(self, topic: str, msg_data: bytes, retain: bool = False) -> bool:
        lp = f"{self.lp}publish:"
        if not self._connected or self.client is None:
            return False
        try:
            await self.client.publish(topic, msg_data, qos=0, retain=retain)
        except aiomqtt.MqttCodeError as e:
            logger.warning("%s [MqttCodeError] -> %s", lp, e)
            self._connected = False
        except aiomqtt.MqttError as e:
            logger.warning("%s [MqttError] -> %s", lp, e)
            self._connected = False
        else:
            return True
        return False

    async def publish_json_msg(self, topic: str, msg_data: Mapping[str, Any], retain: bool = False) -> bool:
        return await self.publish(topic, json.dumps(msg_data, default=str).encode(), retain=retain)

    async def publish_readings(self, device_id: str, readings: Mapping[str, Any]) -> bool:
        return await self.publish_json_msg(f"{self.topic}/{device_id}/state", readings)

    async def publish_availability(self, device_id: str, online: bool) -> bool:
        payload = b"online" if online else DEVICE_LWT_MSG
        return await self.publish(f"{self.topic}/{device_id}/availability", payload, retain=True)
