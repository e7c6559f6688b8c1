"""Process wiring and lifecycle for the Marstek Controller service."""

from __future__ import annotations

import argparse
import asyncio
import signal
from functools import partial
from pathlib import Path

import uvloop
import yaml

from marstek_controller.cloud.api import CloudSessionRegistry
from marstek_controller.commands import CommandDispatcher
from marstek_controller.const import (
    MARSTEK_CONFIG_FILE_PATH,
    MARSTEK_DEBUG,
    MARSTEK_DEVICE_STALE_AFTER,
    MARSTEK_METRICS_PORT,
    MARSTEK_MQTT_HOST,
    MARSTEK_TOPIC,
    MARSTEK_VERSION,
    MQTT_CLIENT_START_TASK_NAME,
)
from marstek_controller.correlation import ensure_operation_id, operation_context
from marstek_controller.devices.cloud_device import CloudPoller
from marstek_controller.devices.local_device import LocalDevice
from marstek_controller.devices.registry import DeviceRegistry
from marstek_controller.discovery import DeviceDiscovery, DiscoveredDevice
from marstek_controller.exceptions import TransportError
from marstek_controller.logging_abstraction import enable_debug, get_logger
from marstek_controller.metrics import start_metrics_server
from marstek_controller.mqtt import CommandRouter, MQTTClient
from marstek_controller.poll_scheduler import PollScheduler
from marstek_controller.transport import RequestCorrelator, UdpTransport
from marstek_controller.utils import check_python_version, signal_handler

logger = get_logger(__name__)

AVAILABILITY_TASK_NAME = "Availability_WATCH"
AVAILABILITY_CHECK_INTERVAL = 60.0


class MarstekController:
    """Owns the shared transport and every component built on it.

    Args:
        config_file: YAML device file
        mqtt_host: Broker host; MQTT is disabled when empty

    """

    lp: str = "MarstekController:"

    def __init__(self, config_file: Path, mqtt_host: str | None = MARSTEK_MQTT_HOST) -> None:
        self.config_file = config_file
        self.mqtt_host = mqtt_host
        self.registry: DeviceRegistry = DeviceRegistry()
        self.transport: UdpTransport | None = None
        self.correlator: RequestCorrelator | None = None
        self.scheduler: PollScheduler | None = None
        self.dispatcher: CommandDispatcher | None = None
        self.mqtt_client: MQTTClient | None = None
        self.sessions = CloudSessionRegistry()
        self.devices: dict[str, LocalDevice] = {}
        self.pollers: list[CloudPoller] = []
        self.tasks: list[asyncio.Task[None]] = []
        self._stopped: asyncio.Event | None = None
        self._stopping = False

    def load_registry(self) -> DeviceRegistry:
        """Read the device file, or return an empty registry when it does not exist yet."""
        if not self.config_file.exists():
            logger.error(
                " Device file not found",
                extra={"config_path": str(self.config_file), "action_required": "run with --discover"},
            )
            return DeviceRegistry()
        logger.info(" Loading device file", extra={"config_path": str(self.config_file)})
        return DeviceRegistry.load(self.config_file)

    def build(self, transport: UdpTransport | None = None) -> None:
        """Create the transport, correlator, scheduler, dispatcher, devices, cloud pollers and MQTT bridge."""
        self.transport = transport or UdpTransport()
        self.correlator = RequestCorrelator(self.transport)
        self.scheduler = PollScheduler(
            self.transport,
            self.registry.poll_target,
            id_source=self.correlator.next_request_id,
        )
        self.dispatcher = CommandDispatcher(self.correlator)
        if self.mqtt_host:
            router = CommandRouter(self.dispatcher, self.registry.get, MARSTEK_TOPIC)
            self.mqtt_client = MQTTClient(router, host=self.mqtt_host)
        else:
            logger.warning("%s MQTT disabled, readings are only logged", self.lp)

        for endpoint in self.registry:
            self.devices[endpoint.src] = LocalDevice(
                endpoint,
                self.transport,
                self.scheduler,
                factors=self.registry.factors_for(endpoint),
                sink=self.mqtt_client,
            )
        for account in self.registry.accounts:
            session = self.sessions.get(account.username, account.password_md5)
            self.pollers.append(CloudPoller(session, account.devices, sink=self.mqtt_client))

    async def start(self) -> None:
        """Bind the transport and run until ``stop``.

        Raises:
            TransportError: The UDP port could not be bound

        """
        lp = f"{self.lp}start:"
        _ = ensure_operation_id("main")
        self._stopped = asyncio.Event()
        self.registry = self.load_registry()
        self.build()
        assert self.transport is not None

        try:
            await self.transport.connect()
        except TransportError as e:
            logger.error("%s ✗ cannot bind UDP port %s: %s", lp, self.transport.local_port, e)
            await self.stop()
            raise

        if MARSTEK_METRICS_PORT:
            start_metrics_server(MARSTEK_METRICS_PORT)
            logger.info("%s metrics on :%s", lp, MARSTEK_METRICS_PORT)

        for device in self.devices.values():
            device.start()
        for poller in self.pollers:
            poller.start()
        if self.mqtt_client is not None:
            self.tasks.append(asyncio.Task(self.mqtt_client.start(), name=MQTT_CLIENT_START_TASK_NAME))
        self.tasks.append(asyncio.Task(self._watch_availability(), name=AVAILABILITY_TASK_NAME))

        logger.info(
            " Controller started",
            extra={"local_devices": len(self.devices), "cloud_accounts": len(self.pollers)},
        )
        _ = await self._stopped.wait()

    async def _watch_availability(self) -> None:
        interval = min(AVAILABILITY_CHECK_INTERVAL, MARSTEK_DEVICE_STALE_AFTER)
        while True:
            await asyncio.sleep(interval)
            for device in tuple(self.devices.values()):
                _ = await device.refresh_availability()

    async def stop(self) -> None:
        """Tear everything down. Safe to call more than once."""
        if self._stopping:
            return
        self._stopping = True
        logger.info(" Shutting down Marstek Controller...")

        if self.scheduler is not None:
            self.scheduler.shutdown()
        for device in self.devices.values():
            device.stop()
        for poller in self.pollers:
            poller.stop()
        for task in self.tasks:
            if not task.done():
                logger.debug("%s cancelling task: %s", self.lp, task.get_name())
                _ = task.cancel()
        if self.mqtt_client is not None:
            await self.mqtt_client.stop()
        await self.sessions.close_all()
        if self.correlator is not None:
            self.correlator.cancel_all()
        if self.transport is not None:
            self.transport.destroy()
        if self._stopped is not None:
            self._stopped.set()

    async def discover(self, address: str | None = None) -> list[DiscoveredDevice]:
        """Run one discovery window and merge what answered into the device file."""
        self.registry = self.load_registry()
        transport = self.transport or UdpTransport()
        try:
            found = await DeviceDiscovery(transport).discover(address)
        finally:
            transport.destroy()

        for device in found:
            _ = self.registry.add_discovered(device)
        if found:
            self.registry.save(self.config_file)
        return found


def create_event_loop(controller: MarstekController) -> asyncio.AbstractEventLoop:
    loop = uvloop.new_event_loop()
    asyncio.set_event_loop(loop)
    loop.add_signal_handler(signal.SIGINT, partial(signal_handler, controller.stop, signal.SIGINT))
    loop.add_signal_handler(signal.SIGTERM, partial(signal_handler, controller.stop, signal.SIGTERM))
    logger.debug("Signal handlers configured for SIGINT & SIGTERM")
    return loop


def run(args: argparse.Namespace, env_loaded: bool | None = None) -> int:
    """Run the controller (or a discovery pass) described by ``args``. Returns the exit code."""
    with operation_context("main"):
        logger.info("Starting Marstek Controller", extra={"version": MARSTEK_VERSION})
        if args.env is not None:
            if env_loaded is None:
                logger.error("Environment file not found", extra={"path": str(args.env)})
            elif env_loaded:
                logger.info(" Environment variables loaded", extra={"source": str(args.env)})
            else:
                logger.warning("No environment variables loaded from file", extra={"path": str(args.env)})
        if args.debug or MARSTEK_DEBUG:
            enable_debug()
            logger.info("Debug logging enabled")

        check_python_version()
        config_file = (args.config or Path(MARSTEK_CONFIG_FILE_PATH)).expanduser().resolve()
        controller = MarstekController(config_file)
        loop = create_event_loop(controller)

        try:
            if args.discover is not None:
                found = loop.run_until_complete(controller.discover(args.discover or None))
                logger.info(" Discovery finished", extra={"found": len(found), "config_path": str(config_file)})
            else:
                loop.run_until_complete(controller.start())
        except TransportError as e:
            logger.error(" Fatal transport error", extra={"error": str(e)})
            return 1
        except (OSError, yaml.YAMLError) as e:
            logger.error(" Cannot read device file", extra={"config_path": str(config_file), "error": str(e)})
            return 1
        except KeyboardInterrupt:
            logger.info("Keyboard interrupt received, shutting down...")
            loop.run_until_complete(controller.stop())
        else:
            logger.info(" Marstek Controller stopped gracefully")
        finally:
            if not loop.is_closed():
                loop.close()
            logger.info("Marstek Controller shutdown complete")
    return 0
