"""Infer unannounced PDU reboots from bursts of outlet state changes.

A device that reboots brings most of its outlets through a state change
at once. Counting outlets whose last change falls inside a trailing
window catches that; an operator switching most outlets in one go looks
identical and is reported as a reboot too.
"""

import logging
import time

from .device_config import DeviceConfig
from .notifier import NOTIFY_REBOOT
from .pdu_model import EVENT_REBOOT, DeviceEvent
from .sinks import SafeSinks

logger = logging.getLogger(__name__)


class RebootDetector:
    def __init__(self, store, sinks: SafeSinks | None = None,
                 window: float = 120.0, threshold: float = 0.8, clock=time.time):
        self._store = store
        self._sinks = sinks or SafeSinks()
        self.window = window
        self.threshold = threshold
        self._clock = clock

    def detect(self, device: DeviceConfig, now: float | None = None) -> bool:
        if now is None:
            now = self._clock()
        outlets = self._store.get_outlets(device.device_id)
        total = len(outlets)
        if total == 0:
            return False

        cutoff = now - self.window
        affected = sum(
            1 for o in outlets
            if o.last_state_change is not None and o.last_state_change >= cutoff
        )
        if affected <= self.threshold * total:
            return False

        logger.warning("[%s] Reboot detected: %d of %d outlets changed in the last %.0fs",
                       device.device_id, affected, total, self.window)
        metadata = {"affected_outlets": affected, "total_outlets": total}
        self._sinks.event(DeviceEvent(
            device_id=device.device_id,
            event_type=EVENT_REBOOT,
            description=f"PDU reboot detected: {affected} of {total} outlets changed state",
            metadata=metadata,
            timestamp=now,
        ))
        self._sinks.notify(NOTIFY_REBOOT, device.device_id, metadata)
        return True
