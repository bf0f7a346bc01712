# PDU Sync Controller
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License
# https://github.com/mvalancy/CyberPower-PDU

"""Collaborator protocols for the control loop.

The scheduler, reconciler, reboot detector and recovery orchestrator only
depend on these shapes. Shipped implementations: JsonDeviceDirectory,
StateStore, MQTTNotifier, EnvSecretsResolver, SNMPClient and MockPDU.
"""

from typing import Any, Protocol, runtime_checkable

from .device_config import DeviceConfig
from .pdu_model import (
    DeviceEvent,
    DeviceIdentity,
    Outlet,
    OutletStatus,
    PowerMetrics,
    PowerSample,
    StateChangeRecord,
)


@runtime_checkable
class ProtocolClient(Protocol):
    """Read/write access to PDUs. Implementations: SNMPClient, MockPDU."""

    async def get_outlet_states(self, device: DeviceConfig) -> list[OutletStatus]:
        ...

    async def set_outlet_power(self, device: DeviceConfig, outlet_number: int,
                               state: str) -> bool:
        """Raise on failure; never return quietly after a failed write."""
        ...

    async def set_all_outlets(self, device: DeviceConfig, state: str) -> bool:
        ...

    async def get_power_metrics(self, device: DeviceConfig) -> PowerMetrics | None:
        """None means the device has no power monitoring."""
        ...

    async def get_identity(self, device: DeviceConfig) -> DeviceIdentity:
        ...

    async def test_connection(self, device: DeviceConfig) -> tuple[bool, str]:
        ...

    def get_health(self, device_id: str) -> dict:
        ...

    def close_session(self, device_id: str) -> None:
        ...

    def close(self) -> None:
        ...


class DeviceDirectory(Protocol):
    def list_active(self) -> list[DeviceConfig]:
        """Active devices with credentials ready for session building."""
        ...

    def mark_seen(self, device_id: str, when: float) -> None:
        ...


class OutletStore(Protocol):
    def get_outlets(self, device_id: str) -> list[Outlet]:
        ...

    def get_outlet(self, device_id: str, number: int) -> Outlet | None:
        ...

    def create_outlet(self, outlet: Outlet) -> None:
        ...

    def update_actual_state(self, device_id: str, number: int, state: str,
                            changed_at: float | None) -> None:
        ...

    def set_desired_state(self, device_id: str, number: int,
                          state: str | None) -> bool:
        ...

    def set_outlet_options(self, device_id: str, number: int, **options: Any) -> bool:
        ...

    def append_state_change(self, record: StateChangeRecord) -> None:
        ...


class EventSink(Protocol):
    def append_event(self, event: DeviceEvent) -> None:
        ...


class PowerSampleSink(Protocol):
    def append_power_sample(self, sample: PowerSample) -> None:
        ...


class Notifier(Protocol):
    """Fire-and-forget broadcast; must not block the control loop."""

    def broadcast(self, kind: str, device_id: str, payload: dict[str, Any]) -> None:
        ...


class SecretsResolver(Protocol):
    def resolve(self, value: str) -> str:
        ...
