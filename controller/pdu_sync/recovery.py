# PDU Sync Controller
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License
# https://github.com/mvalancy/CyberPower-PDU

"""Restore desired outlet state after a PDU reboot.

Recovery waits for the device to settle, then restores critical outlets
before everything else, one outlet at a time with a pause between each,
so a freshly booted unit never sees its whole load switched on at once.
Outlets without a desired state, or with auto-recovery turned off, are
left alone.
"""

import asyncio
import logging
import time
from dataclasses import dataclass

from .device_config import DeviceConfig
from .notifier import NOTIFY_RECOVERY
from .pdu_model import CHANGE_AUTO_RECOVERY, EVENT_CONNECTION_RESTORED, DeviceEvent, Outlet
from .reconciler import Reconciler
from .sinks import SafeSinks

logger = logging.getLogger(__name__)


@dataclass
class RecoveryResult:
    recovered: int = 0
    failed: int = 0

    def to_dict(self) -> dict:
        return {"recovered": self.recovered, "failed": self.failed}


class RecoveryOrchestrator:
    def __init__(self, store, reconciler: Reconciler, sinks: SafeSinks | None = None,
                 stabilization_wait: float = 60.0, critical_pacing: float = 2.0,
                 noncritical_pacing: float = 1.0, sleep=asyncio.sleep, clock=time.time):
        self._store = store
        self._reconciler = reconciler
        self._sinks = sinks or SafeSinks()
        self.stabilization_wait = stabilization_wait
        self.critical_pacing = critical_pacing
        self.noncritical_pacing = noncritical_pacing
        self._sleep = sleep
        self._clock = clock

    @staticmethod
    def eligible(outlet: Outlet) -> bool:
        return outlet.auto_recovery and outlet.desired_state is not None

    async def recover(self, device: DeviceConfig) -> RecoveryResult:
        logger.info("[%s] Recovery: waiting %.0fs for the PDU to stabilize",
                    device.device_id, self.stabilization_wait)
        await self._sleep(self.stabilization_wait)

        # Read after the wait so operator changes made meanwhile are honored
        outlets = sorted(
            (o for o in self._store.get_outlets(device.device_id) if self.eligible(o)),
            key=lambda o: o.number,
        )
        critical = [o for o in outlets if o.is_critical]
        normal = [o for o in outlets if not o.is_critical]

        result = RecoveryResult()
        for phase, items, pacing in (
            ("critical", critical, self.critical_pacing),
            ("non-critical", normal, self.noncritical_pacing),
        ):
            if items:
                logger.info("[%s] Recovery: restoring %d %s outlet(s)",
                            device.device_id, len(items), phase)
            await self._run_phase(device, items, pacing, result)

        logger.info("[%s] Recovery complete: %d recovered, %d failed",
                    device.device_id, result.recovered, result.failed)
        self._sinks.event(DeviceEvent(
            device_id=device.device_id,
            event_type=EVENT_CONNECTION_RESTORED,
            description=(
                f"Recovery after reboot: {result.recovered} outlet(s) restored, "
                f"{result.failed} failed"
            ),
            metadata=result.to_dict(),
            timestamp=self._clock(),
        ))
        self._sinks.notify(NOTIFY_RECOVERY, device.device_id, result.to_dict())
        return result

    async def _run_phase(self, device: DeviceConfig, outlets: list[Outlet],
                         pacing: float, result: RecoveryResult):
        for i, outlet in enumerate(outlets):
            if i > 0:
                await self._sleep(pacing)
            try:
                ok = await self._reconciler.apply_desired_state(
                    device, outlet, change_type=CHANGE_AUTO_RECOVERY,
                )
            except Exception:
                logger.exception("[%s] Outlet %d: recovery error",
                                 device.device_id, outlet.number)
                ok = False
            if ok:
                result.recovered += 1
            else:
                result.failed += 1
