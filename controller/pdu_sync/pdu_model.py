"""OID constants and data models for APC switched rack PDUs."""

from dataclasses import dataclass, field
from typing import Any

# APC PowerNet-MIB rPDU base
BASE_OID = "1.3.6.1.4.1.318.1.1.12"
# APC PowerNet-MIB sPDU base (first-generation units, e.g. AP7951)
LEGACY_BASE_OID = "1.3.6.1.4.1.318.1.1.4"

# Device identity (scalars, .0 suffix)
OID_IDENT_NAME = f"{BASE_OID}.1.1.0"
OID_IDENT_HARDWARE_REV = f"{BASE_OID}.1.2.0"
OID_IDENT_FIRMWARE_REV = f"{BASE_OID}.1.3.0"
OID_IDENT_MODEL = f"{BASE_OID}.1.5.0"
OID_IDENT_SERIAL = f"{BASE_OID}.1.6.0"

# Device-level command (applies to all outlets)
OID_OUTLET_DEV_COMMAND = f"{BASE_OID}.3.1.1.0"

# Outlet status table, current generation
OID_OUTLET_STATUS_NAME = f"{BASE_OID}.3.5.1.1.2"
OID_OUTLET_STATUS_STATE = f"{BASE_OID}.3.5.1.1.4"

# Outlet status table, legacy generation
OID_OUTLET_STATUS_NAME_LEGACY = f"{LEGACY_BASE_OID}.5.2.1.3"
OID_OUTLET_STATUS_STATE_LEGACY = f"{LEGACY_BASE_OID}.4.2.1.3"

# Load status (current in tenths of amps, load state)
OID_LOAD_STATUS_LOAD = f"{BASE_OID}.2.3.1.1.2"
OID_LOAD_STATUS_LOAD_STATE = f"{BASE_OID}.2.3.1.1.3"
OID_LOAD_STATUS_LOAD_INDEXED = f"{OID_LOAD_STATUS_LOAD}.1"
OID_LOAD_STATUS_LOAD_STATE_INDEXED = f"{OID_LOAD_STATUS_LOAD_STATE}.1"


def oid_outlet_command(n: int) -> str:
    return f"{BASE_OID}.3.3.1.1.4.{n}"


def oid_outlet_command_legacy(n: int) -> str:
    return f"{LEGACY_BASE_OID}.4.2.1.4.{n}"


# Outlet command values
OUTLET_CMD_ON = 1
OUTLET_CMD_OFF = 2
OUTLET_CMD_REBOOT = 3

OUTLET_CMD_MAP = {
    "on": OUTLET_CMD_ON,
    "off": OUTLET_CMD_OFF,
    "reboot": OUTLET_CMD_REBOOT,
}

# Device-level command values
DEVICE_CMD_ON_ALL = 2
DEVICE_CMD_OFF_ALL = 3
DEVICE_CMD_REBOOT_ALL = 4

DEVICE_CMD_MAP = {
    "on": DEVICE_CMD_ON_ALL,
    "off": DEVICE_CMD_OFF_ALL,
    "reboot": DEVICE_CMD_REBOOT_ALL,
}

OUTLET_STATE_MAP = {
    1: "on",
    2: "off",
    3: "reboot",
}

LOAD_STATE_MAP = {
    1: "normal",
    2: "low",
    3: "near_overload",
    4: "overload",
}

OUTLET_STATES = frozenset(OUTLET_STATE_MAP.values())
OVERLOAD_STATES = frozenset({"near_overload", "overload"})

CHANGE_MANUAL = "manual"
CHANGE_AUTO_RECOVERY = "auto_recovery"
CHANGE_PDU_REBOOT = "pdu_reboot"
CHANGE_SYNC = "sync"
CHANGE_TYPES = frozenset({
    CHANGE_MANUAL, CHANGE_AUTO_RECOVERY, CHANGE_PDU_REBOOT, CHANGE_SYNC,
})

EVENT_REBOOT = "reboot"
EVENT_CONNECTION_LOST = "connection_lost"
EVENT_CONNECTION_RESTORED = "connection_restored"
EVENT_STATE_SKEW = "state_skew"
EVENT_TYPES = frozenset({
    EVENT_REBOOT, EVENT_CONNECTION_LOST, EVENT_CONNECTION_RESTORED,
    EVENT_STATE_SKEW,
})


@dataclass
class DeviceIdentity:
    name: str = ""
    model: str = ""
    serial: str = ""
    firmware: str = ""
    hardware_rev: str = ""

    def to_dict(self) -> dict[str, str]:
        return {
            "name": self.name,
            "model": self.model,
            "serial": self.serial,
            "firmware": self.firmware,
            "hardware_rev": self.hardware_rev,
        }


@dataclass
class OutletStatus:
    """One outlet as read from the device, normalized across generations."""
    number: int
    name: str
    state: str


@dataclass
class Outlet:
    device_id: str
    number: int
    name: str = ""
    desired_state: str | None = None   # None = no operator intent
    actual_state: str | None = None    # None until first observed
    last_state_change: float | None = None
    is_critical: bool = False
    auto_recovery: bool = True

    @property
    def is_skewed(self) -> bool:
        return self.desired_state is not None and self.desired_state != self.actual_state

    def to_dict(self) -> dict[str, Any]:
        return {
            "device_id": self.device_id,
            "number": self.number,
            "name": self.name,
            "desired_state": self.desired_state,
            "actual_state": self.actual_state,
            "last_state_change": self.last_state_change,
            "is_critical": self.is_critical,
            "auto_recovery": self.auto_recovery,
            "skewed": self.is_skewed,
        }


@dataclass(frozen=True)
class StateChangeRecord:
    device_id: str
    outlet_number: int
    previous_state: str | None
    new_state: str | None
    change_type: str
    initiated_by: str
    success: bool = True
    error_message: str | None = None
    timestamp: float = 0.0


@dataclass(frozen=True)
class DeviceEvent:
    device_id: str
    event_type: str
    description: str
    metadata: dict[str, Any] = field(default_factory=dict)
    timestamp: float = 0.0


@dataclass
class PowerMetrics:
    current_amps: float
    power_watts: int
    voltage: float
    load_state: str = "normal"

    def to_dict(self) -> dict[str, Any]:
        return {
            "current_amps": self.current_amps,
            "power_watts": self.power_watts,
            "voltage": self.voltage,
            "load_state": self.load_state,
        }


@dataclass(frozen=True)
class PowerSample:
    device_id: str
    current_amps: float
    power_watts: int
    voltage: float
    load_state: str
    timestamp: float = 0.0
