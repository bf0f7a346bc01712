# PDU Sync Controller
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License
# https://github.com/mvalancy/CyberPower-PDU

"""Background timing for the controller: poll, reconcile and metrics ticks.

Each duty is its own repeating asyncio task with its own period. Within a
poll tick every active device is read concurrently; reconcile and metrics
ticks walk the devices one after another since they write to hardware.
A failure on one device is logged and counted, never propagated to the
others or to the tick.

A detected reboot schedules a recovery task for that device after a short
delay. While that task is pending or running, and for one detection window
after it ends, reboot detection is skipped for the device so recovery's own
writes are not mistaken for another reboot.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from .config import Config
from .device_config import DeviceConfig
from .interfaces import DeviceDirectory, OutletStore, ProtocolClient
from .notifier import NOTIFY_METRICS, NOTIFY_STATUS
from .pdu_model import (
    EVENT_CONNECTION_LOST,
    EVENT_CONNECTION_RESTORED,
    EVENT_STATE_SKEW,
    OVERLOAD_STATES,
    DeviceEvent,
    PowerSample,
)
from .reboot_detector import RebootDetector
from .reconciler import Reconciler
from .recovery import RecoveryOrchestrator
from .sinks import SafeSinks

logger = logging.getLogger(__name__)


@dataclass
class DeviceStatus:
    online: bool | None = None        # None until the first poll finishes
    poll_count: int = 0
    poll_errors: int = 0
    consecutive_failures: int = 0
    last_poll: float | None = None
    last_error: str | None = None
    skew: float = 0.0
    identity: dict[str, str] | None = None
    power: dict[str, Any] | None = None
    recovery: str | None = None       # "pending" | "running"
    last_recovery: dict[str, int] | None = None
    last_reconcile: dict[str, int] | None = None
    reboots_detected: int = 0
    outlets: list[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "online": self.online,
            "poll_count": self.poll_count,
            "poll_errors": self.poll_errors,
            "consecutive_failures": self.consecutive_failures,
            "last_poll": self.last_poll,
            "last_error": self.last_error,
            "skew": self.skew,
            "identity": self.identity,
            "power": self.power,
            "recovery": self.recovery,
            "last_recovery": self.last_recovery,
            "last_reconcile": self.last_reconcile,
            "reboots_detected": self.reboots_detected,
        }


class PollScheduler:
    def __init__(self, config: Config, directory: DeviceDirectory,
                 client: ProtocolClient, store: OutletStore,
                 reconciler: Reconciler, detector: RebootDetector,
                 recovery: RecoveryOrchestrator, sinks: SafeSinks | None = None,
                 sleep=asyncio.sleep, clock=time.time):
        self.config = config
        self._directory = directory
        self._client = client
        self._store = store
        self._reconciler = reconciler
        self._detector = detector
        self._recovery = recovery
        self._sinks = sinks or SafeSinks()
        self._sleep = sleep
        self._clock = clock

        self._running = False
        self._timers: dict[str, asyncio.Task] = {}
        self._initial_poll: asyncio.Task | None = None
        self._recovery_tasks: dict[str, asyncio.Task] = {}
        self._recovery_finished: dict[str, float] = {}
        self._status: dict[str, DeviceStatus] = {}
        self._last_cleanup_date: str | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._running

    @property
    def timer_count(self) -> int:
        return sum(1 for t in self._timers.values() if not t.done())

    def start(self):
        """Start the three repeating timers and one immediate poll.

        Must be called from a running event loop.
        """
        if self._running:
            logger.warning("Scheduler already running, ignoring start()")
            return
        loop = asyncio.get_running_loop()
        self._running = True

        for name, interval, tick in (
            ("poll", self.config.poll_interval, self.poll_all),
            ("reconcile", self.config.reconcile_interval, self.reconcile_all),
            ("metrics", self.config.metrics_interval, self.collect_metrics),
        ):
            self._timers[name] = loop.create_task(
                self._repeat(name, interval, tick), name=f"scheduler-{name}",
            )
        self._initial_poll = loop.create_task(self.poll_all(), name="scheduler-initial-poll")

        logger.info(
            "Scheduler started: poll=%.0fs reconcile=%.0fs metrics=%.0fs",
            self.config.poll_interval, self.config.reconcile_interval,
            self.config.metrics_interval,
        )

    def stop(self):
        """Cancel every timer and recovery task. Safe to call repeatedly."""
        tasks = list(self._timers.values()) + list(self._recovery_tasks.values())
        if self._initial_poll is not None:
            tasks.append(self._initial_poll)
        for task in tasks:
            if not task.done():
                task.cancel()
        self._timers.clear()
        self._recovery_tasks.clear()
        self._initial_poll = None

        if self._running:
            logger.info("Scheduler stopped")
        self._running = False

    async def _repeat(self, name: str, interval: float, tick):
        while True:
            await asyncio.sleep(interval)
            try:
                await tick()
            except Exception:
                logger.exception("Scheduler %s tick failed", name)

    def _device_status(self, device_id: str) -> DeviceStatus:
        return self._status.setdefault(device_id, DeviceStatus())

    # ------------------------------------------------------------------
    # Poll
    # ------------------------------------------------------------------

    async def poll_all(self):
        devices = self._directory.list_active()
        if not devices:
            return
        results = await asyncio.gather(
            *(self.poll_device(d) for d in devices), return_exceptions=True,
        )
        for device, result in zip(devices, results):
            if isinstance(result, Exception):
                logger.error("[%s] Poll error: %s", device.device_id, result)

    async def poll_device(self, device: DeviceConfig) -> bool:
        """Read one device and fold the result in. Returns True on success."""
        device_id = device.device_id
        status = self._device_status(device_id)
        status.poll_count += 1

        try:
            statuses = await self._client.get_outlet_states(device)
        except Exception as e:
            self._on_poll_failure(device, status, e)
            return False

        now = self._clock()
        outlets = self._reconciler.sync_observed(device, statuses, now)

        try:
            self._directory.mark_seen(device_id, now)
        except Exception:
            logger.exception("[%s] Failed to record last-seen", device_id)

        was_offline = status.online is False
        status.online = True
        status.last_poll = now
        status.consecutive_failures = 0
        status.last_error = None
        status.outlets = [o.to_dict() for o in outlets]
        if was_offline:
            logger.info("[%s] Connection restored", device_id)
            self._sinks.event(DeviceEvent(
                device_id=device_id,
                event_type=EVENT_CONNECTION_RESTORED,
                description="Connection to PDU restored",
                timestamp=now,
            ))

        if status.identity is None:
            await self._discover_identity(device, status)

        if self._detection_enabled(device_id, now) and self._detector.detect(device, now):
            status.reboots_detected += 1
            self.schedule_recovery(device)

        status.skew = self._reconciler.calculate_skew(device_id)
        self._sinks.notify(NOTIFY_STATUS, device_id, {
            "state": "online",
            "outlets": status.outlets,
            "skew": status.skew,
            "skew_percent": round(status.skew * 100, 1),
            "last_seen": now,
        })
        return True

    def _on_poll_failure(self, device: DeviceConfig, status: DeviceStatus, error: Exception):
        device_id = device.device_id
        status.poll_errors += 1
        status.consecutive_failures += 1
        status.last_error = str(error)
        status.online = False

        if status.consecutive_failures == 1:
            logger.warning("[%s] Poll failed: %s", device_id, error)
        else:
            logger.debug("[%s] Poll failed (%d in a row): %s",
                         device_id, status.consecutive_failures, error)

        self._sinks.event(DeviceEvent(
            device_id=device_id,
            event_type=EVENT_CONNECTION_LOST,
            description=f"Failed to poll PDU: {error}",
            metadata={"error": str(error)},
            timestamp=self._clock(),
        ))
        self._sinks.notify(NOTIFY_STATUS, device_id, {
            "state": "offline",
            "error": str(error),
        })

    async def _discover_identity(self, device: DeviceConfig, status: DeviceStatus):
        try:
            identity = await self._client.get_identity(device)
        except Exception as e:
            logger.debug("[%s] Identity query failed: %s", device.device_id, e)
            return
        status.identity = identity.to_dict()
        logger.info("[%s] Identity: %s model=%s serial=%s firmware=%s",
                    device.device_id, identity.name or "?", identity.model or "?",
                    identity.serial or "?", identity.firmware or "?")

    # ------------------------------------------------------------------
    # Reboot recovery
    # ------------------------------------------------------------------

    def is_recovering(self, device_id: str) -> bool:
        task = self._recovery_tasks.get(device_id)
        return task is not None and not task.done()

    def _detection_enabled(self, device_id: str, now: float) -> bool:
        if self.is_recovering(device_id):
            return False
        finished = self._recovery_finished.get(device_id)
        return finished is None or now - finished >= self._detector.window

    def schedule_recovery(self, device: DeviceConfig) -> bool:
        """Start a recovery task for *device* unless one is already pending."""
        if self.is_recovering(device.device_id):
            logger.info("[%s] Recovery already in progress", device.device_id)
            return False
        task = asyncio.get_running_loop().create_task(
            self._run_recovery(device), name=f"recovery-{device.device_id}",
        )
        self._recovery_tasks[device.device_id] = task
        logger.info("[%s] Recovery scheduled in %.0fs",
                    device.device_id, self.config.recovery_delay)
        return True

    async def _run_recovery(self, device: DeviceConfig):
        device_id = device.device_id
        status = self._device_status(device_id)
        status.recovery = "pending"
        try:
            await self._sleep(self.config.recovery_delay)
            status.recovery = "running"
            result = await self._recovery.recover(device)
            status.last_recovery = result.to_dict()
        except asyncio.CancelledError:
            logger.info("[%s] Recovery cancelled", device_id)
            raise
        except Exception:
            logger.exception("[%s] Recovery failed", device_id)
        finally:
            status.recovery = None
            self._recovery_finished[device_id] = self._clock()
            if self._recovery_tasks.get(device_id) is asyncio.current_task():
                del self._recovery_tasks[device_id]

    # ------------------------------------------------------------------
    # Reconcile
    # ------------------------------------------------------------------

    async def reconcile_all(self):
        for device in self._directory.list_active():
            if self.is_recovering(device.device_id):
                logger.debug("[%s] Skipping reconcile during recovery", device.device_id)
                continue
            try:
                result = await self._reconciler.reconcile(device)
            except Exception:
                logger.exception("[%s] Reconcile pass failed", device.device_id)
                continue
            self._device_status(device.device_id).last_reconcile = result.to_dict()

    # ------------------------------------------------------------------
    # Metrics
    # ------------------------------------------------------------------

    async def collect_metrics(self):
        for device in self._directory.list_active():
            device_id = device.device_id
            try:
                metrics = await self._client.get_power_metrics(device)
            except Exception as e:
                logger.warning("[%s] Power metrics failed: %s", device_id, e)
                continue
            if metrics is None:
                logger.debug("[%s] No power monitoring, skipping metrics", device_id)
                continue

            now = self._clock()
            self._device_status(device_id).power = metrics.to_dict()
            self._sinks.sample(PowerSample(
                device_id=device_id,
                current_amps=metrics.current_amps,
                power_watts=metrics.power_watts,
                voltage=metrics.voltage,
                load_state=metrics.load_state,
                timestamp=now,
            ))
            self._sinks.notify(NOTIFY_METRICS, device_id, metrics.to_dict())

            if metrics.load_state in OVERLOAD_STATES:
                logger.warning("[%s] Power load %s: %.1f A (%d W)", device_id,
                               metrics.load_state, metrics.current_amps, metrics.power_watts)
                self._sinks.event(DeviceEvent(
                    device_id=device_id,
                    event_type=EVENT_STATE_SKEW,
                    description=(
                        f"Power load {metrics.load_state}: {metrics.current_amps:.1f} A"
                    ),
                    metadata=metrics.to_dict(),
                    timestamp=now,
                ))

        self._check_daily_cleanup()

    def _check_daily_cleanup(self):
        """Prune old history once per day."""
        now = self._clock()
        today = datetime.fromtimestamp(now).strftime("%Y-%m-%d")
        if today == self._last_cleanup_date:
            return
        cleanup = getattr(self._store, "cleanup", None)
        if cleanup is not None:
            try:
                cleanup(now)
            except Exception:
                logger.exception("Store cleanup error")
        self._last_cleanup_date = today

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def get_status_detail(self) -> dict:
        devices = []
        for device in self._directory.list_active():
            status = self._status.get(device.device_id) or DeviceStatus()
            detail = status.to_dict()
            detail["device_id"] = device.device_id
            detail["name"] = device.label
            detail["host"] = device.host
            detail["last_seen"] = device.last_seen
            detail["recovering"] = self.is_recovering(device.device_id)
            detail["protocol_health"] = self._client.get_health(device.device_id)
            devices.append(detail)
        detail = {
            "running": self._running,
            "timers": self.timer_count,
            "settings": self.config.settings_dict,
            "devices": devices,
        }
        if any(v > 0 for v in self._sinks.errors.values()):
            detail["subsystem_errors"] = dict(self._sinks.errors)
        return detail
