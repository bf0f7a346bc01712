# PDU Sync Controller
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License
# https://github.com/mvalancy/CyberPower-PDU

"""Simulated APC PDUs for running the controller without hardware.

Stands in for SNMPClient: one MockPDU serves any number of devices, each
simulated independently and created on first use. Outlet states, reboots
and unreachable devices can be driven from tests.
"""

import asyncio
import logging
import random
import time

from .device_config import DeviceConfig
from .pdu_model import (
    DEVICE_CMD_MAP,
    OUTLET_CMD_MAP,
    DeviceIdentity,
    OutletStatus,
    PowerMetrics,
)
from .snmp_client import TransportError

logger = logging.getLogger(__name__)


class _SimulatedDevice:
    def __init__(self, device_id: str, num_outlets: int):
        self.device_id = device_id
        self.states: dict[int, str] = {n: "on" for n in range(1, num_outlets + 1)}
        self.names: dict[int, str] = {n: f"Outlet {n}" for n in range(1, num_outlets + 1)}
        self.reboot_until: dict[int, float] = {}
        self.offline = False
        self.overload = False

    def settle(self, now: float):
        for n, until in list(self.reboot_until.items()):
            if now >= until:
                self.states[n] = "on"
                del self.reboot_until[n]
                logger.info("Mock[%s]: outlet %d reboot complete, now ON", self.device_id, n)


class MockPDU:
    """Simulates APC switched PDUs with realistic-looking data."""

    def __init__(self, num_outlets: int = 8, line_voltage: float = 230.0,
                 reboot_duration: float = 5.0, has_power_monitoring: bool = True):
        self._num_outlets = num_outlets
        self._line_voltage = line_voltage
        self._reboot_duration = reboot_duration
        self._has_power_monitoring = has_power_monitoring
        self._devices: dict[str, _SimulatedDevice] = {}
        self._lock = asyncio.Lock()
        self._writes = 0

    def _device(self, device_id: str) -> _SimulatedDevice:
        dev = self._devices.get(device_id)
        if dev is None:
            dev = _SimulatedDevice(device_id, self._num_outlets)
            self._devices[device_id] = dev
        return dev

    def _reachable(self, device: DeviceConfig) -> _SimulatedDevice:
        dev = self._device(device.device_id)
        if dev.offline:
            raise TransportError(f"Mock: {device.device_id} request timed out")
        dev.settle(time.time())
        return dev

    # -- Simulation controls ---------------------------------------------------

    def set_offline(self, device_id: str, offline: bool = True):
        self._device(device_id).offline = offline
        logger.info("Mock[%s]: %s", device_id, "offline" if offline else "online")

    def set_overload(self, device_id: str, overload: bool = True):
        self._device(device_id).overload = overload

    def simulate_reboot(self, device_id: str):
        """Power-cycle the whole PDU: every outlet drops, then comes back ON."""
        dev = self._device(device_id)
        until = time.time() + self._reboot_duration
        for n in dev.states:
            dev.states[n] = "off"
            dev.reboot_until[n] = until
        logger.info("Mock[%s]: simulated PDU reboot", device_id)

    def outlet_state(self, device_id: str, number: int) -> str:
        return self._device(device_id).states[number]

    def force_outlet_state(self, device_id: str, number: int, state: str):
        """Change an outlet behind the controller's back."""
        self._device(device_id).states[number] = state

    # -- Protocol client surface -----------------------------------------------

    async def get_outlet_states(self, device: DeviceConfig) -> list[OutletStatus]:
        async with self._lock:
            dev = self._reachable(device)
            return [
                OutletStatus(number=n, name=dev.names[n], state=dev.states[n])
                for n in sorted(dev.states)
            ]

    async def set_outlet_power(self, device: DeviceConfig, outlet_number: int,
                               state: str) -> bool:
        if state not in OUTLET_CMD_MAP:
            raise ValueError(f"Unknown outlet command: {state!r}")
        async with self._lock:
            dev = self._reachable(device)
            if outlet_number not in dev.states:
                raise TransportError(f"Mock: no outlet {outlet_number} on {device.device_id}")
            self._apply(dev, outlet_number, state)
            self._writes += 1
        return True

    async def set_all_outlets(self, device: DeviceConfig, state: str) -> bool:
        if state not in DEVICE_CMD_MAP:
            raise ValueError(f"Unknown device command: {state!r}")
        async with self._lock:
            dev = self._reachable(device)
            for n in dev.states:
                self._apply(dev, n, state)
            self._writes += 1
        return True

    def _apply(self, dev: _SimulatedDevice, n: int, state: str):
        if state == "reboot":
            dev.states[n] = "off"
            dev.reboot_until[n] = time.time() + self._reboot_duration
            logger.info("Mock[%s]: outlet %d -> REBOOT (off for %.0fs)",
                        dev.device_id, n, self._reboot_duration)
        else:
            dev.states[n] = state
            logger.info("Mock[%s]: outlet %d -> %s", dev.device_id, n, state.upper())

    async def get_power_metrics(self, device: DeviceConfig) -> PowerMetrics | None:
        async with self._lock:
            dev = self._reachable(device)
            if not self._has_power_monitoring:
                return None
            on = sum(1 for s in dev.states.values() if s == "on")
            amps = round(on * random.uniform(0.3, 0.6), 1)
            load_state = "normal"
            if dev.overload:
                amps = max(amps, 15.0)
                load_state = "overload"
            elif on == 0:
                load_state = "low"
            return PowerMetrics(
                current_amps=amps,
                power_watts=round(amps * self._line_voltage),
                voltage=self._line_voltage,
                load_state=load_state,
            )

    async def get_identity(self, device: DeviceConfig) -> DeviceIdentity:
        async with self._lock:
            self._reachable(device)
            return DeviceIdentity(
                name=device.label,
                model="AP8959 (mock)",
                serial=f"MOCK{abs(hash(device.device_id)) % 10**8:08d}",
                firmware="v6.5.6",
                hardware_rev="HW05",
            )

    async def test_connection(self, device: DeviceConfig) -> tuple[bool, str]:
        try:
            identity = await self.get_identity(device)
        except TransportError as e:
            return False, f"Connection failed: {e}"
        return True, f"Connected successfully. PDU Name: {identity.name}"

    def get_health(self, device_id: str) -> dict:
        return {
            "transport": "mock",
            "writes": self._writes,
            "consecutive_failures": 0,
            "reachable": not self._device(device_id).offline,
        }

    def close_session(self, device_id: str) -> None:
        pass

    def close(self) -> None:
        pass
