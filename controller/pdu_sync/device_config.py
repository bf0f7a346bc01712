# PDU Sync Controller
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License
# https://github.com/mvalancy/CyberPower-PDU

"""Per-device configuration: address, SNMP credentials, directory file."""

import json
import logging
import time
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

DEFAULT_DEVICES_FILE = "/data/devices.json"

SNMP_VERSIONS = ("v1", "v2c", "v3")
SECURITY_LEVELS = ("noAuthNoPriv", "authNoPriv", "authPriv")
AUTH_PROTOCOL_NAMES = ("md5", "sha", "sha224", "sha256", "sha384", "sha512")
PRIV_PROTOCOL_NAMES = ("des", "aes", "aes192", "aes256")

MODE_READ = "read"
MODE_WRITE = "write"


class ConfigurationError(ValueError):
    """Credentials or version settings cannot produce a session.

    Raised before any network I/O is attempted.
    """


@dataclass
class DeviceConfig:
    """Configuration for a single PDU."""
    device_id: str
    host: str
    name: str = ""
    snmp_port: int = 161
    snmp_version: str = "v3"
    community_read: str = "public"      # v1/v2c read community
    community_write: str = ""           # v1/v2c write community
    username: str = ""                  # v3 user
    security_level: str = "noAuthNoPriv"
    auth_protocol: str = ""
    auth_passphrase: str = ""           # stored form, resolved at session build
    priv_protocol: str = ""
    priv_passphrase: str = ""
    enabled: bool = True
    last_seen: float | None = None

    @property
    def label(self) -> str:
        return self.name or self.device_id

    def validate(self):
        """Structural checks done when the directory is loaded."""
        if not self.device_id or any(c in self.device_id for c in "/#+ "):
            raise ConfigurationError(
                f"device_id is empty or contains invalid characters: {self.device_id!r}"
            )
        if not self.host:
            raise ConfigurationError(f"Device {self.device_id!r} has no host configured")
        if not (1 <= self.snmp_port <= 65535):
            raise ConfigurationError(
                f"Device {self.device_id!r} snmp_port out of range: {self.snmp_port}"
            )
        if self.snmp_version not in SNMP_VERSIONS:
            raise ConfigurationError(
                f"Device {self.device_id!r} snmp_version must be one of "
                f"{', '.join(SNMP_VERSIONS)}, got {self.snmp_version!r}"
            )

    def validate_credentials(self, mode: str):
        """Check that a session for *mode* ('read' or 'write') can be built."""
        if mode not in (MODE_READ, MODE_WRITE):
            raise ValueError(f"Unknown session mode: {mode!r}")
        if self.snmp_version not in SNMP_VERSIONS:
            raise ConfigurationError(
                f"Device {self.device_id!r}: unsupported SNMP version {self.snmp_version!r}"
            )

        if self.snmp_version in ("v1", "v2c"):
            community = self.community_read if mode == MODE_READ else self.community_write
            if not community:
                raise ConfigurationError(
                    f"Device {self.device_id!r}: {mode} community string required "
                    f"for SNMP {self.snmp_version}"
                )
            return

        if not self.username:
            raise ConfigurationError(
                f"Device {self.device_id!r}: username required for SNMP v3"
            )
        if self.security_level not in SECURITY_LEVELS:
            raise ConfigurationError(
                f"Device {self.device_id!r}: unknown security level {self.security_level!r}"
            )
        if self.security_level in ("authNoPriv", "authPriv"):
            if not self.auth_passphrase:
                raise ConfigurationError(
                    f"Device {self.device_id!r}: authentication passphrase required "
                    f"for security level {self.security_level}"
                )
            if self.auth_protocol not in AUTH_PROTOCOL_NAMES:
                raise ConfigurationError(
                    f"Device {self.device_id!r}: authentication protocol required "
                    f"for security level {self.security_level} (got {self.auth_protocol!r})"
                )
        if self.security_level == "authPriv":
            if not self.priv_passphrase:
                raise ConfigurationError(
                    f"Device {self.device_id!r}: privacy passphrase required "
                    f"for security level authPriv"
                )
            if self.priv_protocol not in PRIV_PROTOCOL_NAMES:
                raise ConfigurationError(
                    f"Device {self.device_id!r}: privacy protocol required "
                    f"for security level authPriv (got {self.priv_protocol!r})"
                )

    def to_dict(self) -> dict:
        d = {
            "device_id": self.device_id,
            "host": self.host,
            "name": self.name,
            "snmp_port": self.snmp_port,
            "snmp_version": self.snmp_version,
            "enabled": self.enabled,
        }
        if self.snmp_version in ("v1", "v2c"):
            d["community_read"] = self.community_read
            if self.community_write:
                d["community_write"] = self.community_write
        else:
            d["username"] = self.username
            d["security_level"] = self.security_level
            if self.auth_protocol:
                d["auth_protocol"] = self.auth_protocol
            if self.auth_passphrase:
                d["auth_passphrase"] = self.auth_passphrase
            if self.priv_protocol:
                d["priv_protocol"] = self.priv_protocol
            if self.priv_passphrase:
                d["priv_passphrase"] = self.priv_passphrase
        if self.last_seen is not None:
            d["last_seen"] = self.last_seen
        return d

    @classmethod
    def from_dict(cls, d: dict) -> "DeviceConfig":
        last_seen = d.get("last_seen")
        return cls(
            device_id=d["device_id"],
            host=d.get("host", ""),
            name=d.get("name", ""),
            snmp_port=int(d.get("snmp_port", 161)),
            snmp_version=d.get("snmp_version", "v3"),
            community_read=d.get("community_read", "public"),
            community_write=d.get("community_write", ""),
            username=d.get("username", ""),
            security_level=d.get("security_level", "noAuthNoPriv"),
            auth_protocol=(d.get("auth_protocol") or "").lower(),
            auth_passphrase=d.get("auth_passphrase", ""),
            priv_protocol=(d.get("priv_protocol") or "").lower(),
            priv_passphrase=d.get("priv_passphrase", ""),
            enabled=d.get("enabled", True),
            last_seen=float(last_seen) if last_seen is not None else None,
        )


def load_device_configs(devices_file: str = DEFAULT_DEVICES_FILE) -> list[DeviceConfig]:
    """Load devices from ``{"devices": [...]}``.

    Invalid entries are skipped with an error so one bad device does not
    take the others down.
    """
    path = Path(devices_file)
    if not path.exists():
        logger.warning("No devices file at %s, starting with no devices", path)
        return []

    data = json.loads(path.read_text())
    devices = []
    for d in data.get("devices", []):
        try:
            dev = DeviceConfig.from_dict(d)
            dev.validate()
        except (KeyError, ValueError, TypeError, AttributeError) as e:
            device_id = d.get("device_id", "?") if isinstance(d, dict) else "?"
            logger.error("Skipping invalid device %s: %s", device_id, e)
            continue
        devices.append(dev)
    logger.info("Loaded %d device(s) from %s", len(devices), path)
    return devices


def save_device_configs(devices: list[DeviceConfig],
                        devices_file: str = DEFAULT_DEVICES_FILE):
    """Save device configs to JSON file atomically."""
    path = Path(devices_file)
    path.parent.mkdir(parents=True, exist_ok=True)
    data = json.dumps({"devices": [d.to_dict() for d in devices]}, indent=2)
    tmp = path.with_suffix(".tmp")
    try:
        tmp.write_text(data)
        tmp.rename(path)
    except Exception:
        logger.exception("Failed to save device configs")
        try:
            tmp.unlink(missing_ok=True)
        except OSError:
            pass
        raise


class JsonDeviceDirectory:
    """Device directory backed by the devices JSON file.

    Last-seen timestamps are kept in memory and written back to the same
    file at most once per *save_interval* seconds, and on flush().
    """

    def __init__(self, devices_file: str = DEFAULT_DEVICES_FILE,
                 devices: list[DeviceConfig] | None = None,
                 save_interval: float = 300.0):
        self._devices_file = devices_file
        self._save_interval = save_interval
        self._last_save: float | None = None
        self._dirty = False
        if devices is None:
            devices = load_device_configs(devices_file)
        self._devices: dict[str, DeviceConfig] = {d.device_id: d for d in devices}

    def list_active(self) -> list[DeviceConfig]:
        return [d for d in self._devices.values() if d.enabled]

    def get(self, device_id: str) -> DeviceConfig | None:
        return self._devices.get(device_id)

    def mark_seen(self, device_id: str, when: float):
        dev = self._devices.get(device_id)
        if dev is None:
            return
        dev.last_seen = when
        self._dirty = True
        if self._last_save is None or when - self._last_save >= self._save_interval:
            self.flush(when)

    def flush(self, now: float | None = None) -> bool:
        """Persist pending last-seen updates. Returns False if the write failed."""
        if not self._dirty:
            return True
        self._last_save = now if now is not None else time.time()
        try:
            save_device_configs(list(self._devices.values()), self._devices_file)
        except OSError as e:
            logger.warning("Last-seen not persisted to %s: %s", self._devices_file, e)
            return False
        self._dirty = False
        return True
