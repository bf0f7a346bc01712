# PDU Sync Controller
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 MIT License
# https://github.com/mvalancy/CyberPower-PDU

"""SNMP GET/SET/walk client for APC PDUs with health tracking.

One SNMPClient serves every device. Sessions are cached per
(device, mode): many PDUs answer reads on a public community and writes
on a private one, so read and write sessions are built separately even
though they reach the same hardware.

Hardware generations differ in where the outlet tables live. Reads try
the current-generation (rPDU) columns first and fall back to the legacy
(sPDU) ones; writes fall back once when the agent reports the
current-generation OID does not exist. The timeout and retry count bound
a single request, so a full fallback chain can take up to twice as long
as one call.

Every public operation holds the device's lock for its whole duration,
so a poll and a write never interleave on one device.
"""

import asyncio
import logging
import math
import time
from dataclasses import dataclass
from typing import Any

from pysnmp.hlapi.asyncio import (
    CommunityData,
    ContextData,
    Integer32,
    ObjectIdentity,
    ObjectType,
    SnmpEngine,
    UdpTransportTarget,
    UsmUserData,
    getCmd,
    nextCmd,
    setCmd,
    usmAesCfb128Protocol,
    usmAesCfb192Protocol,
    usmAesCfb256Protocol,
    usmDESPrivProtocol,
    usmHMAC128SHA224AuthProtocol,
    usmHMAC192SHA256AuthProtocol,
    usmHMAC256SHA384AuthProtocol,
    usmHMAC384SHA512AuthProtocol,
    usmHMACMD5AuthProtocol,
    usmHMACSHAAuthProtocol,
    usmNoAuthProtocol,
    usmNoPrivProtocol,
)
from pysnmp.proto.rfc1905 import EndOfMibView, NoSuchInstance, NoSuchObject

from .config import Config
from .credentials import EnvSecretsResolver
from .device_config import MODE_READ, MODE_WRITE, DeviceConfig, ConfigurationError
from .interfaces import SecretsResolver
from .pdu_model import (
    DEVICE_CMD_MAP,
    LOAD_STATE_MAP,
    OID_IDENT_FIRMWARE_REV,
    OID_IDENT_HARDWARE_REV,
    OID_IDENT_MODEL,
    OID_IDENT_NAME,
    OID_IDENT_SERIAL,
    OID_LOAD_STATUS_LOAD,
    OID_LOAD_STATUS_LOAD_INDEXED,
    OID_LOAD_STATUS_LOAD_STATE,
    OID_LOAD_STATUS_LOAD_STATE_INDEXED,
    OID_OUTLET_DEV_COMMAND,
    OID_OUTLET_STATUS_NAME,
    OID_OUTLET_STATUS_NAME_LEGACY,
    OID_OUTLET_STATUS_STATE,
    OID_OUTLET_STATUS_STATE_LEGACY,
    OUTLET_CMD_MAP,
    OUTLET_STATE_MAP,
    DeviceIdentity,
    OutletStatus,
    PowerMetrics,
    oid_outlet_command,
    oid_outlet_command_legacy,
)

logger = logging.getLogger(__name__)

AUTH_PROTOCOLS = {
    "md5": usmHMACMD5AuthProtocol,
    "sha": usmHMACSHAAuthProtocol,
    "sha224": usmHMAC128SHA224AuthProtocol,
    "sha256": usmHMAC192SHA256AuthProtocol,
    "sha384": usmHMAC256SHA384AuthProtocol,
    "sha512": usmHMAC384SHA512AuthProtocol,
}

PRIV_PROTOCOLS = {
    "des": usmDESPrivProtocol,
    "aes": usmAesCfb128Protocol,
    "aes192": usmAesCfb192Protocol,
    "aes256": usmAesCfb256Protocol,
}

# Error statuses meaning "this OID is not implemented here"
NO_SUCH_OBJECT_STATUSES = frozenset({
    "noSuchName", "noSuchObject", "noSuchInstance", "noCreation",
})

# Guard against agents that never leave a table
MAX_WALK_ROWS = 512


class TransportError(Exception):
    """Timeout, authentication failure or SNMP error status from a device."""


class NoSuchObjectError(TransportError):
    """The agent does not implement the requested OID."""


@dataclass
class SNMPSession:
    device_id: str
    mode: str
    engine: Any
    auth: Any
    target: Any

    def close(self):
        try:
            closer = getattr(self.engine, "close_dispatcher", None) or self.engine.closeDispatcher
            closer()
        except Exception:
            logger.debug("Error closing SNMP engine for %s/%s",
                         self.device_id, self.mode, exc_info=True)


@dataclass
class DeviceHealth:
    target: str = ""
    total_gets: int = 0
    failed_gets: int = 0
    total_sets: int = 0
    failed_sets: int = 0
    consecutive_failures: int = 0
    last_success_time: float | None = None
    last_error_time: float | None = None
    last_error_msg: str | None = None

    def to_dict(self) -> dict:
        return {
            "target": self.target,
            "total_gets": self.total_gets,
            "failed_gets": self.failed_gets,
            "total_sets": self.total_sets,
            "failed_sets": self.failed_sets,
            "consecutive_failures": self.consecutive_failures,
            "last_success": self.last_success_time,
            "last_error": self.last_error_time,
            "last_error_msg": self.last_error_msg,
            "reachable": self.consecutive_failures < 10,
        }


def _is_empty(value: Any) -> bool:
    return value is None or isinstance(value, (NoSuchObject, NoSuchInstance, EndOfMibView))


def _oid_str(name: Any) -> str:
    get_oid = getattr(name, "getOid", None)
    return str(get_oid() if get_oid else name)


def _iter_var_binds(var_bind_table):
    """Flatten a GETNEXT response table into (oid, value) pairs."""
    for row in var_bind_table or []:
        if isinstance(row, ObjectType):
            row = [row]
        for name, value in row:
            yield _oid_str(name), value


def _error_oid(var_binds, error_index) -> str:
    i = int(error_index or 0)
    if 0 < i <= len(var_binds or []):
        return _oid_str(var_binds[i - 1][0])
    return "?"


def _to_int(value: Any) -> int | None:
    if _is_empty(value):
        return None
    try:
        return int(value)
    except (ValueError, TypeError):
        return None


def _round_half_up(x: float) -> int:
    return int(math.floor(x + 0.5))


class SNMPClient:
    """Protocol client shared by every component that talks to a PDU."""

    def __init__(self, config: Config, secrets: SecretsResolver | None = None):
        self._timeout = config.snmp_timeout
        self._retries = config.snmp_retries
        self._line_voltage = config.line_voltage
        self._secrets = secrets or EnvSecretsResolver()

        self._sessions: dict[tuple[str, str], SNMPSession] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._health: dict[str, DeviceHealth] = {}

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def _lock(self, device_id: str) -> asyncio.Lock:
        return self._locks.setdefault(device_id, asyncio.Lock())

    def _health_for(self, device_id: str) -> DeviceHealth:
        return self._health.setdefault(device_id, DeviceHealth())

    def _build_session(self, device: DeviceConfig, mode: str) -> SNMPSession:
        """Build a session. Validates credentials first; no I/O happens here."""
        device.validate_credentials(mode)

        if device.snmp_version in ("v1", "v2c"):
            community = device.community_read if mode == MODE_READ else device.community_write
            auth = CommunityData(community, mpModel=0 if device.snmp_version == "v1" else 1)
        else:
            auth_key = priv_key = None
            auth_protocol = usmNoAuthProtocol
            priv_protocol = usmNoPrivProtocol
            if device.security_level in ("authNoPriv", "authPriv"):
                auth_key = self._secrets.resolve(device.auth_passphrase)
                auth_protocol = AUTH_PROTOCOLS[device.auth_protocol]
            if device.security_level == "authPriv":
                priv_key = self._secrets.resolve(device.priv_passphrase)
                priv_protocol = PRIV_PROTOCOLS[device.priv_protocol]
            auth = UsmUserData(
                device.username,
                authKey=auth_key,
                privKey=priv_key,
                authProtocol=auth_protocol,
                privProtocol=priv_protocol,
            )

        target = UdpTransportTarget(
            (device.host, device.snmp_port),
            timeout=self._timeout,
            retries=self._retries,
        )
        self._health_for(device.device_id).target = f"{device.host}:{device.snmp_port}"
        logger.debug("[%s] Built %s session (SNMP %s)",
                     device.device_id, mode, device.snmp_version)
        return SNMPSession(device.device_id, mode, SnmpEngine(), auth, target)

    def _session(self, device: DeviceConfig, mode: str) -> SNMPSession:
        key = (device.device_id, mode)
        session = self._sessions.get(key)
        if session is None:
            session = self._build_session(device, mode)
            self._sessions[key] = session
        return session

    def close_session(self, device_id: str):
        """Release the read and write sessions of one device."""
        for mode in (MODE_READ, MODE_WRITE):
            session = self._sessions.pop((device_id, mode), None)
            if session is not None:
                session.close()

    def close(self):
        for session in self._sessions.values():
            session.close()
        self._sessions.clear()

    # ------------------------------------------------------------------
    # Low-level requests
    # ------------------------------------------------------------------

    def _status_error(self, health: DeviceHealth, device_id: str, msg: str,
                      status: str) -> TransportError:
        if status in NO_SUCH_OBJECT_STATUSES:
            # The agent answered; the device is reachable
            self._record_success(health)
            logger.debug("[%s] SNMP: %s", device_id, msg)
            return NoSuchObjectError(msg)
        self._record_failure(health, device_id, msg)
        return TransportError(msg)

    async def _get(self, session: SNMPSession, oids: list[str]) -> dict[str, Any]:
        """GET *oids* in one request. OIDs the agent has no value for are omitted."""
        health = self._health_for(session.device_id)
        health.total_gets += 1
        what = f"GET {oids[0]}" if len(oids) == 1 else f"GET {oids[0]} (+{len(oids) - 1})"
        try:
            error_indication, error_status, error_index, var_binds = await getCmd(
                session.engine,
                session.auth,
                session.target,
                ContextData(),
                *(ObjectType(ObjectIdentity(oid)) for oid in oids),
            )
        except Exception as e:
            health.failed_gets += 1
            self._record_failure(health, session.device_id, f"{what}: {e}")
            raise TransportError(f"{what}: {e}") from e

        if error_indication:
            health.failed_gets += 1
            msg = f"{what}: {error_indication}"
            self._record_failure(health, session.device_id, msg)
            raise TransportError(msg)
        if error_status:
            status = error_status.prettyPrint()
            msg = f"{what}: {status} at {_error_oid(var_binds, error_index)}"
            if status not in NO_SUCH_OBJECT_STATUSES:
                health.failed_gets += 1
            raise self._status_error(health, session.device_id, msg, status)

        results = {}
        for oid, (_name, value) in zip(oids, var_binds):
            if not _is_empty(value):
                results[oid] = value
        self._record_success(health)
        return results

    async def _set(self, session: SNMPSession, oid: str, value: int):
        """SET an integer value. Raises TransportError on any failure."""
        health = self._health_for(session.device_id)
        health.total_sets += 1
        try:
            error_indication, error_status, error_index, var_binds = await setCmd(
                session.engine,
                session.auth,
                session.target,
                ContextData(),
                ObjectType(ObjectIdentity(oid), Integer32(value)),
            )
        except Exception as e:
            health.failed_sets += 1
            self._record_failure(health, session.device_id, f"SET {oid}={value}: {e}")
            raise TransportError(f"SET {oid}={value}: {e}") from e

        if error_indication:
            health.failed_sets += 1
            msg = f"SET {oid}={value}: {error_indication}"
            self._record_failure(health, session.device_id, msg)
            raise TransportError(msg)
        if error_status:
            health.failed_sets += 1
            status = error_status.prettyPrint()
            msg = f"SET {oid}={value}: {status} at {_error_oid(var_binds, error_index)}"
            raise self._status_error(health, session.device_id, msg, status)

        self._record_success(health)

    async def _walk(self, session: SNMPSession, base_oid: str) -> list[tuple[str, Any]]:
        """Walk the table column under *base_oid* with successive GETNEXTs.

        An error status ends the walk with what was collected (v1 agents
        report the end of the MIB that way); an error indication such as a
        timeout raises.
        """
        health = self._health_for(session.device_id)
        prefix = base_oid + "."
        rows: list[tuple[str, Any]] = []
        current = base_oid

        while len(rows) < MAX_WALK_ROWS:
            health.total_gets += 1
            try:
                error_indication, error_status, error_index, var_bind_table = await nextCmd(
                    session.engine,
                    session.auth,
                    session.target,
                    ContextData(),
                    ObjectType(ObjectIdentity(current)),
                )
            except Exception as e:
                health.failed_gets += 1
                self._record_failure(health, session.device_id, f"WALK {base_oid}: {e}")
                raise TransportError(f"WALK {base_oid}: {e}") from e

            if error_indication:
                health.failed_gets += 1
                msg = f"WALK {base_oid}: {error_indication}"
                self._record_failure(health, session.device_id, msg)
                raise TransportError(msg)
            if error_status:
                logger.debug("[%s] Walk of %s ended with %s", session.device_id,
                              base_oid, error_status.prettyPrint())
                break

            self._record_success(health)
            advanced = False
            for oid, value in _iter_var_binds(var_bind_table):
                if not oid.startswith(prefix) or _is_empty(value):
                    return rows
                if oid == current:
                    return rows
                rows.append((oid, value))
                current = oid
                advanced = True
            if not advanced:
                break

        return rows

    # ------------------------------------------------------------------
    # Device operations
    # ------------------------------------------------------------------

    async def get_outlet_states(self, device: DeviceConfig) -> list[OutletStatus]:
        """Read every outlet's name and state.

        Returns outlets numbered 1..N in table order, whichever hardware
        generation answered.
        """
        async with self._lock(device.device_id):
            session = self._session(device, MODE_READ)
            names = await self._walk(session, OID_OUTLET_STATUS_NAME)
            states = await self._walk(session, OID_OUTLET_STATUS_STATE)

            if not names or not states:
                logger.debug("[%s] Trying legacy-generation outlet OIDs", device.device_id)
                names = await self._walk(session, OID_OUTLET_STATUS_NAME_LEGACY)
                states = await self._walk(session, OID_OUTLET_STATUS_STATE_LEGACY)

        outlets = []
        for i in range(max(len(names), len(states))):
            number = i + 1
            raw_name = names[i][1] if i < len(names) else None
            name = str(raw_name).strip() if not _is_empty(raw_name) else ""
            raw_state = _to_int(states[i][1]) if i < len(states) else None
            outlets.append(OutletStatus(
                number=number,
                name=name or f"Outlet {number}",
                state=OUTLET_STATE_MAP.get(raw_state, "off"),
            ))
        return outlets

    async def set_outlet_power(self, device: DeviceConfig, outlet_number: int,
                               state: str) -> bool:
        """Switch one outlet. Raises TransportError if the write fails."""
        if state not in OUTLET_CMD_MAP:
            raise ValueError(f"Unknown outlet command: {state!r}")
        value = OUTLET_CMD_MAP[state]

        async with self._lock(device.device_id):
            session = self._session(device, MODE_WRITE)
            try:
                await self._set(session, oid_outlet_command(outlet_number), value)
            except NoSuchObjectError:
                logger.info(
                    "[%s] Outlet %d: current-generation OID missing, retrying with legacy OID",
                    device.device_id, outlet_number,
                )
                await self._set(session, oid_outlet_command_legacy(outlet_number), value)
                logger.info("[%s] Outlet %d -> %s (legacy OID)",
                            device.device_id, outlet_number, state)
                return True

        logger.info("[%s] Outlet %d -> %s", device.device_id, outlet_number, state)
        return True

    async def set_all_outlets(self, device: DeviceConfig, state: str) -> bool:
        """Apply on/off/reboot to every outlet with one device-level SET."""
        if state not in DEVICE_CMD_MAP:
            raise ValueError(f"Unknown device command: {state!r}")

        async with self._lock(device.device_id):
            session = self._session(device, MODE_WRITE)
            await self._set(session, OID_OUTLET_DEV_COMMAND, DEVICE_CMD_MAP[state])

        logger.info("[%s] All outlets -> %s", device.device_id, state)
        return True

    async def get_power_metrics(self, device: DeviceConfig) -> PowerMetrics | None:
        """Read total current draw and load state.

        Returns None when the device does not report power at all; that is
        not an error. Transport failures still raise.
        """
        attempts = (
            (OID_LOAD_STATUS_LOAD_INDEXED, OID_LOAD_STATUS_LOAD_STATE_INDEXED),
            (OID_LOAD_STATUS_LOAD, OID_LOAD_STATUS_LOAD_STATE),
        )
        async with self._lock(device.device_id):
            session = self._session(device, MODE_READ)
            for load_oid, state_oid in attempts:
                try:
                    values = await self._get(session, [load_oid, state_oid])
                except NoSuchObjectError:
                    continue
                raw_current = _to_int(values.get(load_oid))
                if raw_current is None:
                    continue
                return self._build_metrics(raw_current, _to_int(values.get(state_oid)))

        logger.debug("[%s] Power monitoring not available", device.device_id)
        return None

    def _build_metrics(self, raw_current: int, raw_state: int | None) -> PowerMetrics:
        amps = raw_current / 10.0
        return PowerMetrics(
            current_amps=amps,
            power_watts=_round_half_up(amps * self._line_voltage),
            voltage=self._line_voltage,
            load_state=LOAD_STATE_MAP.get(raw_state, "normal"),
        )

    async def get_identity(self, device: DeviceConfig) -> DeviceIdentity:
        oids = [
            OID_IDENT_NAME, OID_IDENT_MODEL, OID_IDENT_SERIAL,
            OID_IDENT_FIRMWARE_REV, OID_IDENT_HARDWARE_REV,
        ]
        async with self._lock(device.device_id):
            session = self._session(device, MODE_READ)
            values = await self._get(session, oids)

        def s(oid: str) -> str:
            v = values.get(oid)
            return str(v).strip() if v is not None else ""

        return DeviceIdentity(
            name=s(OID_IDENT_NAME),
            model=s(OID_IDENT_MODEL),
            serial=s(OID_IDENT_SERIAL),
            firmware=s(OID_IDENT_FIRMWARE_REV),
            hardware_rev=s(OID_IDENT_HARDWARE_REV),
        )

    async def test_connection(self, device: DeviceConfig) -> tuple[bool, str]:
        """Probe a device with a throwaway read session. Never raises."""
        try:
            session = self._build_session(device, MODE_READ)
        except ConfigurationError as e:
            return False, f"Configuration error: {e}"

        try:
            async with self._lock(device.device_id):
                values = await self._get(session, [OID_IDENT_NAME])
        except TransportError as e:
            return False, f"Connection failed: {e}"
        finally:
            session.close()

        return True, f"Connected successfully. PDU Name: {values.get(OID_IDENT_NAME, '')}"

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    def get_health(self, device_id: str) -> dict:
        health = self._health_for(device_id).to_dict()
        health["sessions"] = sorted(
            mode for (dev, mode) in self._sessions if dev == device_id
        )
        return health

    def _record_success(self, health: DeviceHealth):
        health.consecutive_failures = 0
        health.last_success_time = time.time()

    def _record_failure(self, health: DeviceHealth, device_id: str, msg: str):
        health.consecutive_failures += 1
        health.last_error_time = time.time()
        health.last_error_msg = msg
        # Log at different levels based on consecutive failures
        if health.consecutive_failures == 1:
            logger.warning("[%s] SNMP: %s", device_id, msg)
        elif health.consecutive_failures <= 5:
            logger.error("[%s] SNMP: %s (failure %d)", device_id, msg,
                         health.consecutive_failures)
        elif health.consecutive_failures % 30 == 0:
            logger.error(
                "[%s] SNMP: PDU unreachable for %d consecutive failures: %s",
                device_id, health.consecutive_failures, msg,
            )
