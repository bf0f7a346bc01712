# PDU Sync Controller
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License
# https://github.com/mvalancy/CyberPower-PDU

"""Controller entry point: wires the store, protocol client, notifier and scheduler."""

import argparse
import asyncio
import logging
import signal
import sys

from .config import Config, ConfigError
from .control import OutletControl
from .device_config import JsonDeviceDirectory
from .mock_pdu import MockPDU
from .notifier import MQTTNotifier, NullNotifier
from .reboot_detector import RebootDetector
from .reconciler import Reconciler
from .recovery import RecoveryOrchestrator
from .scheduler import PollScheduler
from .sinks import SafeSinks
from .snmp_client import SNMPClient
from .store import StateStore

__version__ = "1.0.0"

logger = logging.getLogger(__name__)


class ControllerApp:
    """Builds every component once and hands them to each other explicitly."""

    def __init__(self, config: Config, directory=None, client=None, notifier=None,
                 store=None):
        self.config = config
        self.directory = directory or JsonDeviceDirectory(config.devices_file)
        self.store = store or StateStore(config.db_path, config.retention_days)

        if client is None:
            if config.mock_mode:
                logger.info("Mock mode: using simulated PDUs")
                client = MockPDU(line_voltage=config.line_voltage)
            else:
                client = SNMPClient(config)
        self.client = client

        if notifier is None:
            notifier = MQTTNotifier(config) if config.mqtt_enabled else NullNotifier()
        self.notifier = notifier

        self.sinks = SafeSinks(events=self.store, notifier=self.notifier, samples=self.store)
        self.reconciler = Reconciler(self.client, self.store, self.sinks)
        self.detector = RebootDetector(
            self.store, self.sinks,
            window=config.reboot_window,
            threshold=config.reboot_threshold,
        )
        self.recovery = RecoveryOrchestrator(
            self.store, self.reconciler, self.sinks,
            stabilization_wait=config.recovery_stabilization,
            critical_pacing=config.recovery_critical_pacing,
            noncritical_pacing=config.recovery_pacing,
        )
        self.control = OutletControl(self.client, self.store, self.sinks)
        self.scheduler = PollScheduler(
            config, self.directory, self.client, self.store,
            self.reconciler, self.detector, self.recovery, self.sinks,
        )

        self._running = False
        self._stop_event: asyncio.Event | None = None

    async def run(self):
        """Run until request_stop() is called."""
        self._running = True
        self._stop_event = asyncio.Event()

        self.notifier.connect()
        self.scheduler.start()
        logger.info("Controller running with %d active device(s)",
                    len(self.directory.list_active()))

        await self._stop_event.wait()

    def get_status(self) -> dict:
        """Scheduler detail plus notification-sink health."""
        detail = self.scheduler.get_status_detail()
        detail["notifier"] = self.notifier.get_status()
        return detail

    def request_stop(self):
        if self._stop_event is not None:
            self._stop_event.set()

    def stop(self):
        if not self._running:
            return
        self._running = False

        self.scheduler.stop()
        flush = getattr(self.directory, "flush", None)
        if flush is not None:
            flush()
        self.client.close()
        self.notifier.disconnect()
        self.store.close()


def finish_pending(loop: asyncio.AbstractEventLoop):
    """Let cancelled tasks on a stopped *loop* run to completion."""
    pending = [t for t in asyncio.all_tasks(loop) if not t.done()]
    if pending:
        loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))


async def check_devices(directory, client) -> int:
    """Test every active device; returns the number that failed."""
    failed = 0
    for device in directory.list_active():
        ok, message = await client.test_connection(device)
        print(f"{device.device_id} ({device.host}): {'OK' if ok else 'FAIL'} - {message}")
        if not ok:
            failed += 1
            continue
        try:
            identity = await client.get_identity(device)
        except Exception as e:
            print(f"  identity unavailable: {e}")
            continue
        print(f"  model={identity.model or '?'} serial={identity.serial or '?'} "
              f"firmware={identity.firmware or '?'}")
    return failed


def parse_args(argv=None):
    parser = argparse.ArgumentParser(
        prog="pdu-sync",
        description="Keep APC PDU outlets in their desired state over SNMP",
    )
    parser.add_argument("--devices", metavar="FILE",
                        help="Devices JSON file (overrides PDUSYNC_DEVICES_FILE)")
    parser.add_argument("--check", action="store_true",
                        help="Test the connection to every active device and exit")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)

    try:
        config = Config()
    except ConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)
    if args.devices:
        config.devices_file = args.devices

    logging.basicConfig(
        level=getattr(logging, config.log_level, logging.INFO),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    loop = asyncio.new_event_loop()

    if args.check:
        directory = JsonDeviceDirectory(config.devices_file)
        client = MockPDU(line_voltage=config.line_voltage) if config.mock_mode else SNMPClient(config)
        try:
            failed = loop.run_until_complete(check_devices(directory, client))
        finally:
            client.close()
            loop.close()
        sys.exit(1 if failed else 0)

    app = ControllerApp(config)

    def _shutdown(sig, frame):
        logger.info("Received signal %s, shutting down...", sig)
        loop.call_soon_threadsafe(app.request_stop)

    signal.signal(signal.SIGTERM, _shutdown)
    signal.signal(signal.SIGINT, _shutdown)

    try:
        loop.run_until_complete(app.run())
    except KeyboardInterrupt:
        pass
    finally:
        app.stop()
        finish_pending(loop)
        loop.close()
        logger.info("Controller stopped.")


if __name__ == "__main__":
    main()
