"""Best-effort wrappers around the event, sample and notification sinks.

A failing sink is counted and logged, never raised into the control loop.
"""

import logging
from typing import Any

from .interfaces import EventSink, Notifier, PowerSampleSink
from .pdu_model import DeviceEvent, PowerSample

logger = logging.getLogger(__name__)


class SafeSinks:
    def __init__(self, events: EventSink | None = None, notifier: Notifier | None = None,
                 samples: PowerSampleSink | None = None):
        self.events = events
        self.notifier = notifier
        self.samples = samples
        self.errors: dict[str, int] = {"events": 0, "notifier": 0, "samples": 0}

    def _failed(self, subsystem: str, device_id: str, what: str):
        self.errors[subsystem] += 1
        if self.errors[subsystem] <= 3:
            logger.exception("[%s] %s error", device_id, what)
        elif self.errors[subsystem] % 100 == 0:
            logger.error("[%s] %s failing repeatedly (%d errors)",
                         device_id, what, self.errors[subsystem])

    def event(self, event: DeviceEvent):
        if self.events is None:
            return
        try:
            self.events.append_event(event)
        except Exception:
            self._failed("events", event.device_id, "Event sink")

    def notify(self, kind: str, device_id: str, payload: dict[str, Any]):
        if self.notifier is None:
            return
        try:
            self.notifier.broadcast(kind, device_id, payload)
        except Exception:
            self._failed("notifier", device_id, "Notification")

    def sample(self, sample: PowerSample):
        if self.samples is None:
            return
        try:
            self.samples.append_power_sample(sample)
        except Exception:
            self._failed("samples", sample.device_id, "Power sample sink")
