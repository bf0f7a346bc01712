"""Operator commands: switch outlets now, or change what they should be.

These are what an HTTP layer or CLI calls. Direct commands write to the
device immediately and are recorded as ``manual`` history; desired-state
and option changes only touch the store and are acted on by the next
reconcile pass.
"""

import logging
import time
from typing import Any

from .device_config import DeviceConfig
from .interfaces import OutletStore, ProtocolClient
from .notifier import NOTIFY_OUTLET_STATE
from .pdu_model import CHANGE_MANUAL, DEVICE_CMD_MAP, OUTLET_CMD_MAP, StateChangeRecord
from .sinks import SafeSinks

logger = logging.getLogger(__name__)


class OutletControl:
    def __init__(self, client: ProtocolClient, store: OutletStore,
                 sinks: SafeSinks | None = None, clock=time.time):
        self._client = client
        self._store = store
        self._sinks = sinks or SafeSinks()
        self._clock = clock

    def _record(self, device_id: str, number: int, previous: str | None, state: str,
                initiated_by: str, error: Exception | None = None, when: float = 0.0):
        self._store.append_state_change(StateChangeRecord(
            device_id=device_id,
            outlet_number=number,
            previous_state=previous,
            new_state=state,
            change_type=CHANGE_MANUAL,
            initiated_by=initiated_by,
            success=error is None,
            error_message=str(error) if error is not None else None,
            timestamp=when or self._clock(),
        ))

    async def command_outlet(self, device: DeviceConfig, number: int, state: str,
                             initiated_by: str = "user") -> bool:
        """Switch one outlet. Failures are recorded and re-raised."""
        if state not in OUTLET_CMD_MAP:
            raise ValueError(f"Invalid outlet state: {state!r}")
        outlet = self._store.get_outlet(device.device_id, number)
        previous = outlet.actual_state if outlet else None

        try:
            await self._client.set_outlet_power(device, number, state)
        except Exception as e:
            logger.error("[%s] Outlet %d: manual %s failed: %s",
                         device.device_id, number, state, e)
            self._record(device.device_id, number, previous, state, initiated_by, error=e)
            raise

        now = self._clock()
        if outlet is not None:
            self._store.update_actual_state(device.device_id, number, state, now)
        self._record(device.device_id, number, previous, state, initiated_by, when=now)
        logger.info("[%s] Outlet %d: %s by %s", device.device_id, number, state, initiated_by)
        self._sinks.notify(NOTIFY_OUTLET_STATE, device.device_id, {
            "outlet": number,
            "previous_state": previous,
            "state": state,
            "change_type": CHANGE_MANUAL,
        })
        return True

    async def command_all(self, device: DeviceConfig, state: str,
                          initiated_by: str = "user") -> int:
        """Switch every outlet with one device-level command.

        Returns the number of known outlets updated.
        """
        if state not in DEVICE_CMD_MAP:
            raise ValueError(f"Invalid outlet state: {state!r}")

        try:
            await self._client.set_all_outlets(device, state)
        except Exception as e:
            logger.error("[%s] Bulk %s failed: %s", device.device_id, state, e)
            raise

        now = self._clock()
        outlets = self._store.get_outlets(device.device_id)
        for outlet in outlets:
            self._store.update_actual_state(device.device_id, outlet.number, state, now)
            self._record(device.device_id, outlet.number, outlet.actual_state, state,
                         initiated_by, when=now)
        logger.info("[%s] All %d outlet(s): %s by %s",
                    device.device_id, len(outlets), state, initiated_by)
        self._sinks.notify(NOTIFY_OUTLET_STATE, device.device_id, {
            "outlet": "all",
            "state": state,
            "change_type": CHANGE_MANUAL,
        })
        return len(outlets)

    def set_desired_state(self, device_id: str, number: int, state: str | None) -> bool:
        """Set operator intent for one outlet; None stops it being managed."""
        if state is not None and state not in OUTLET_CMD_MAP:
            raise ValueError(f"Invalid desired state: {state!r}")
        updated = self._store.set_desired_state(device_id, number, state)
        if updated:
            logger.info("[%s] Outlet %d: desired state -> %s", device_id, number, state)
        else:
            logger.warning("[%s] Outlet %d not found", device_id, number)
        return updated

    def set_outlet_options(self, device_id: str, number: int, **options: Any) -> bool:
        """Update ``name``, ``is_critical`` and/or ``auto_recovery``."""
        updated = self._store.set_outlet_options(device_id, number, **options)
        if updated:
            logger.info("[%s] Outlet %d: options %s", device_id, number, options)
        else:
            logger.warning("[%s] Outlet %d not found", device_id, number)
        return updated
