# PDU Sync Controller
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License
# https://github.com/mvalancy/CyberPower-PDU

"""Drive outlets toward their desired state and fold poll results into the store.

Outlets with no desired state are never written. Writes within a pass are
sequential: a burst of commands can itself look like a reboot, or trip the
device's overload protection.
"""

import logging
import time
from dataclasses import dataclass

from .device_config import DeviceConfig
from .interfaces import OutletStore, ProtocolClient
from .notifier import NOTIFY_OUTLET_SKEW, NOTIFY_OUTLET_STATE
from .pdu_model import (
    CHANGE_PDU_REBOOT,
    CHANGE_SYNC,
    Outlet,
    OutletStatus,
    StateChangeRecord,
)
from .sinks import SafeSinks

logger = logging.getLogger(__name__)


@dataclass
class ReconcileResult:
    reconciled: int = 0
    failed: int = 0

    def to_dict(self) -> dict:
        return {"reconciled": self.reconciled, "failed": self.failed}


class Reconciler:
    def __init__(self, client: ProtocolClient, store: OutletStore,
                 sinks: SafeSinks | None = None, clock=time.time):
        self._client = client
        self._store = store
        self._sinks = sinks or SafeSinks()
        self._clock = clock

    async def reconcile(self, device: DeviceConfig) -> ReconcileResult:
        """One pass over every skewed outlet of *device*."""
        result = ReconcileResult()
        skewed = [o for o in self._store.get_outlets(device.device_id) if o.is_skewed]
        if not skewed:
            return result

        logger.info("[%s] Reconciling %d skewed outlet(s)", device.device_id, len(skewed))
        for outlet in skewed:
            try:
                ok = await self.apply_desired_state(device, outlet)
            except Exception:
                logger.exception("[%s] Outlet %d: reconcile error",
                                 device.device_id, outlet.number)
                ok = False
            if ok:
                result.reconciled += 1
            else:
                result.failed += 1

        logger.info("[%s] Reconcile pass: %d reconciled, %d failed",
                    device.device_id, result.reconciled, result.failed)
        return result

    async def apply_desired_state(self, device: DeviceConfig, outlet: Outlet,
                                  change_type: str = CHANGE_SYNC,
                                  initiated_by: str = "system") -> bool:
        """Write the outlet's desired state to the device and record the outcome.

        Returns False (with a failed history record) when the write fails;
        the outlet's actual state is then left as it was.
        """
        desired = outlet.desired_state
        if desired is None:
            return False
        previous = outlet.actual_state

        try:
            await self._client.set_outlet_power(device, outlet.number, desired)
        except Exception as e:
            logger.warning("[%s] Outlet %d: failed to apply %s: %s",
                           device.device_id, outlet.number, desired, e)
            self._store.append_state_change(StateChangeRecord(
                device_id=device.device_id,
                outlet_number=outlet.number,
                previous_state=previous,
                new_state=desired,
                change_type=change_type,
                initiated_by=initiated_by,
                success=False,
                error_message=str(e),
                timestamp=self._clock(),
            ))
            return False

        now = self._clock()
        self._store.update_actual_state(device.device_id, outlet.number, desired, now)
        outlet.actual_state = desired
        outlet.last_state_change = now
        if desired == "reboot":
            # One-shot command; leaving it would reboot the outlet every pass
            self._store.set_desired_state(device.device_id, outlet.number, None)
            outlet.desired_state = None

        self._store.append_state_change(StateChangeRecord(
            device_id=device.device_id,
            outlet_number=outlet.number,
            previous_state=previous,
            new_state=desired,
            change_type=change_type,
            initiated_by=initiated_by,
            timestamp=now,
        ))
        logger.info("[%s] Outlet %d: %s -> %s (%s)", device.device_id, outlet.number,
                    previous, desired, change_type)
        self._sinks.notify(NOTIFY_OUTLET_STATE, device.device_id, {
            "outlet": outlet.number,
            "previous_state": previous,
            "state": desired,
            "change_type": change_type,
        })
        return True

    def calculate_skew(self, device_id: str) -> float:
        """Fraction of outlets whose actual state differs from a set desired state."""
        outlets = self._store.get_outlets(device_id)
        if not outlets:
            return 0.0
        return sum(1 for o in outlets if o.is_skewed) / len(outlets)

    def sync_observed(self, device: DeviceConfig, statuses: list[OutletStatus],
                      now: float | None = None) -> list[Outlet]:
        """Fold one poll's outlet readings into the store.

        New outlets are created without a change timestamp, so discovering a
        device is never counted as a burst of state changes.
        """
        if now is None:
            now = self._clock()
        known = {o.number: o for o in self._store.get_outlets(device.device_id)}
        outlets = []

        for status in statuses:
            outlet = known.get(status.number)
            if outlet is None:
                outlet = Outlet(
                    device_id=device.device_id,
                    number=status.number,
                    name=status.name,
                    actual_state=status.state,
                )
                self._store.create_outlet(outlet)
                logger.info("[%s] Discovered outlet %d (%s): %s", device.device_id,
                            status.number, status.name, status.state)
                outlets.append(outlet)
                continue

            if outlet.actual_state != status.state:
                previous = outlet.actual_state
                if previous is None:
                    # First reading of a pre-provisioned outlet, not a change
                    self._store.update_actual_state(device.device_id, outlet.number,
                                                    status.state, outlet.last_state_change)
                    outlet.actual_state = status.state
                    logger.info("[%s] First reading for outlet %d: %s",
                                device.device_id, outlet.number, status.state)
                else:
                    self._store.update_actual_state(device.device_id, outlet.number,
                                                    status.state, now)
                    outlet.actual_state = status.state
                    outlet.last_state_change = now
                    self._store.append_state_change(StateChangeRecord(
                        device_id=device.device_id,
                        outlet_number=outlet.number,
                        previous_state=previous,
                        new_state=status.state,
                        change_type=CHANGE_PDU_REBOOT,
                        initiated_by="device",
                        timestamp=now,
                    ))
                    logger.info("[%s] Outlet %d changed on device: %s -> %s",
                                device.device_id, outlet.number, previous, status.state)

                if outlet.is_skewed:
                    logger.warning("[%s] Outlet %d skewed: desired=%s actual=%s",
                                   device.device_id, outlet.number,
                                   outlet.desired_state, outlet.actual_state)
                    self._sinks.notify(NOTIFY_OUTLET_SKEW, device.device_id, {
                        "outlet": outlet.number,
                        "name": outlet.name,
                        "desired_state": outlet.desired_state,
                        "actual_state": outlet.actual_state,
                    })

            if not outlet.name and status.name:
                self._store.set_outlet_options(device.device_id, outlet.number,
                                               name=status.name)
                outlet.name = status.name
            outlets.append(outlet)

        return outlets
