# PDU Sync Controller
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License
# https://github.com/mvalancy/CyberPower-PDU

"""Unit tests for the SNMP client with mocked pysnmp calls."""

import asyncio
import os
import sys
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from pysnmp.proto.rfc1905 import endOfMibView, noSuchObject

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "controller"))

from pdu_sync.config import Config
from pdu_sync.device_config import ConfigurationError, DeviceConfig
from pdu_sync.pdu_model import (
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
    oid_outlet_command,
    oid_outlet_command_legacy,
)
from pdu_sync.snmp_client import NoSuchObjectError, SNMPClient, TransportError


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------

class FakeObjectType(tuple):
    """Stands in for pysnmp's ObjectType: a plain (oid, value) tuple."""

    def __new__(cls, *args):
        return tuple.__new__(cls, args)


def _key(oid: str) -> tuple:
    return tuple(int(p) for p in oid.split("."))


class FakeAgent:
    """Answers GET and GETNEXT from a flat {oid: value} table."""

    def __init__(self, table: dict):
        self.table = table
        self.next_requests: list[str] = []
        self.get_requests: list[list[str]] = []

    async def next_cmd(self, engine, auth, target, context, obj):
        oid = obj[0]
        self.next_requests.append(oid)
        later = sorted((k for k in self.table if _key(k) > _key(oid)), key=_key)
        if not later:
            return None, 0, 0, [[(oid, endOfMibView)]]
        nxt = later[0]
        return None, 0, 0, [[(nxt, self.table[nxt])]]

    async def get_cmd(self, engine, auth, target, context, *objs):
        oids = [o[0] for o in objs]
        self.get_requests.append(oids)
        return None, 0, 0, [(oid, self.table.get(oid, noSuchObject)) for oid in oids]


def status_error(name: str, index: int = 1):
    err = MagicMock()
    err.prettyPrint.return_value = name
    return err


def set_ok():
    return None, 0, 0, []


def set_status(name: str):
    return None, status_error(name), 1, [("1.3.6", 0)]


def set_timeout():
    return "requestTimedOut", 0, 0, []


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def fake_pysnmp():
    with patch("pdu_sync.snmp_client.SnmpEngine") as engine, \
         patch("pdu_sync.snmp_client.UdpTransportTarget") as target, \
         patch("pdu_sync.snmp_client.ObjectIdentity", new=str), \
         patch("pdu_sync.snmp_client.ObjectType", new=FakeObjectType):
        yield {"engine": engine, "target": target}


@pytest.fixture()
def client():
    return SNMPClient(Config())


@pytest.fixture()
def device():
    return DeviceConfig("rack-a", "10.0.0.5", snmp_version="v2c",
                        community_read="public", community_write="private")


def agent_patch(agent: FakeAgent):
    return (
        patch("pdu_sync.snmp_client.nextCmd", new=agent.next_cmd),
        patch("pdu_sync.snmp_client.getCmd", new=agent.get_cmd),
    )


def outlet_table(base_name, base_state, names, states):
    table = {}
    for i, (name, state) in enumerate(zip(names, states), start=1):
        table[f"{base_name}.{i}"] = name
        table[f"{base_state}.{i}"] = state
    return table


# ---------------------------------------------------------------------------
# Outlet reads
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_outlet_states_current_generation(client, device):
    table = outlet_table(OID_OUTLET_STATUS_NAME, OID_OUTLET_STATUS_STATE,
                         ["Web", "DB", "Switch"], [1, 2, 3])
    agent = FakeAgent(table)
    p1, p2 = agent_patch(agent)
    with p1, p2:
        outlets = await client.get_outlet_states(device)

    assert [(o.number, o.name, o.state) for o in outlets] == [
        (1, "Web", "on"), (2, "DB", "off"), (3, "Switch", "reboot"),
    ]
    assert not any(r.startswith(OID_OUTLET_STATUS_NAME_LEGACY) for r in agent.next_requests)


@pytest.mark.asyncio
async def test_outlet_states_legacy_fallback(client, device):
    """An empty current-generation walk falls back to the legacy table."""
    table = outlet_table(OID_OUTLET_STATUS_NAME_LEGACY, OID_OUTLET_STATUS_STATE_LEGACY,
                         ["Router", ""], [2, 1])
    agent = FakeAgent(table)
    p1, p2 = agent_patch(agent)
    with p1, p2:
        outlets = await client.get_outlet_states(device)

    assert agent.next_requests[0] == OID_OUTLET_STATUS_NAME
    assert OID_OUTLET_STATUS_NAME_LEGACY in agent.next_requests
    assert [(o.number, o.name, o.state) for o in outlets] == [
        (1, "Router", "off"), (2, "Outlet 2", "on"),
    ]


@pytest.mark.asyncio
async def test_outlet_states_unknown_code_is_off(client, device):
    table = outlet_table(OID_OUTLET_STATUS_NAME, OID_OUTLET_STATUS_STATE, ["A"], [7])
    p1, p2 = agent_patch(FakeAgent(table))
    with p1, p2:
        outlets = await client.get_outlet_states(device)
    assert outlets[0].state == "off"


@pytest.mark.asyncio
async def test_outlet_states_nothing_anywhere(client, device):
    p1, p2 = agent_patch(FakeAgent({}))
    with p1, p2:
        assert await client.get_outlet_states(device) == []


@pytest.mark.asyncio
async def test_walk_timeout_raises(client, device):
    mock = AsyncMock(return_value=("requestTimedOut", 0, 0, []))
    with patch("pdu_sync.snmp_client.nextCmd", new=mock):
        with pytest.raises(TransportError, match="requestTimedOut"):
            await client.get_outlet_states(device)

    health = client.get_health("rack-a")
    assert health["consecutive_failures"] == 1
    assert health["failed_gets"] == 1


@pytest.mark.asyncio
async def test_walk_error_status_ends_walk(client, device):
    """v1 agents report the end of a table with noSuchName."""
    responses = [
        (None, 0, 0, [[(f"{OID_OUTLET_STATUS_NAME}.1", "A")]]),
        (None, status_error("noSuchName"), 1, [[(f"{OID_OUTLET_STATUS_NAME}.1", 0)]]),
        (None, 0, 0, [[(f"{OID_OUTLET_STATUS_STATE}.1", 1)]]),
        (None, status_error("noSuchName"), 1, []),
    ]
    with patch("pdu_sync.snmp_client.nextCmd", new=AsyncMock(side_effect=responses)):
        outlets = await client.get_outlet_states(device)
    assert [(o.number, o.name, o.state) for o in outlets] == [(1, "A", "on")]


# ---------------------------------------------------------------------------
# Outlet writes
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_set_outlet_power_current_generation(client, device):
    mock = AsyncMock(return_value=set_ok())
    with patch("pdu_sync.snmp_client.setCmd", new=mock):
        assert await client.set_outlet_power(device, 3, "off") is True

    assert mock.await_count == 1
    var_bind = mock.await_args.args[4]
    assert var_bind[0] == oid_outlet_command(3)
    assert int(var_bind[1]) == 2


@pytest.mark.asyncio
async def test_set_outlet_power_legacy_retry(client, device):
    """noSuchName on the current OID retries exactly once at the legacy OID."""
    mock = AsyncMock(side_effect=[set_status("noSuchName"), set_ok()])
    with patch("pdu_sync.snmp_client.setCmd", new=mock):
        assert await client.set_outlet_power(device, 4, "on") is True

    assert mock.await_count == 2
    assert mock.await_args_list[0].args[4][0] == oid_outlet_command(4)
    assert mock.await_args_list[1].args[4][0] == oid_outlet_command_legacy(4)
    assert int(mock.await_args_list[1].args[4][1]) == 1


@pytest.mark.asyncio
async def test_set_outlet_power_legacy_error_propagates(client, device):
    """A different error on the legacy attempt is raised with no third try."""
    mock = AsyncMock(side_effect=[set_status("noSuchName"), set_timeout()])
    with patch("pdu_sync.snmp_client.setCmd", new=mock):
        with pytest.raises(TransportError) as exc:
            await client.set_outlet_power(device, 4, "on")

    assert mock.await_count == 2
    assert not isinstance(exc.value, NoSuchObjectError)


@pytest.mark.asyncio
async def test_set_outlet_power_other_error_no_retry(client, device):
    mock = AsyncMock(return_value=set_status("genErr"))
    with patch("pdu_sync.snmp_client.setCmd", new=mock):
        with pytest.raises(TransportError, match="genErr"):
            await client.set_outlet_power(device, 1, "on")
    assert mock.await_count == 1


@pytest.mark.asyncio
async def test_set_outlet_power_exception_wrapped(client, device):
    mock = AsyncMock(side_effect=OSError("network unreachable"))
    with patch("pdu_sync.snmp_client.setCmd", new=mock):
        with pytest.raises(TransportError, match="network unreachable"):
            await client.set_outlet_power(device, 1, "on")
    assert client.get_health("rack-a")["failed_sets"] == 1


@pytest.mark.asyncio
async def test_set_outlet_power_invalid_state(client, device):
    with pytest.raises(ValueError):
        await client.set_outlet_power(device, 1, "blink")


@pytest.mark.asyncio
async def test_set_all_outlets_uses_device_command(client, device):
    mock = AsyncMock(return_value=set_ok())
    with patch("pdu_sync.snmp_client.setCmd", new=mock):
        await client.set_all_outlets(device, "reboot")

    var_bind = mock.await_args.args[4]
    assert var_bind[0] == OID_OUTLET_DEV_COMMAND
    assert int(var_bind[1]) == 4


# ---------------------------------------------------------------------------
# Power metrics
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_power_metrics_indexed(client, device):
    agent = FakeAgent({
        OID_LOAD_STATUS_LOAD_INDEXED: 123,
        OID_LOAD_STATUS_LOAD_STATE_INDEXED: 1,
    })
    p1, p2 = agent_patch(agent)
    with p1, p2:
        metrics = await client.get_power_metrics(device)

    assert metrics.current_amps == pytest.approx(12.3)
    assert metrics.power_watts == 2829
    assert metrics.voltage == 230
    assert metrics.load_state == "normal"
    assert len(agent.get_requests) == 1


@pytest.mark.asyncio
async def test_power_metrics_non_indexed_fallback(client, device):
    agent = FakeAgent({
        OID_LOAD_STATUS_LOAD: 160,
        OID_LOAD_STATUS_LOAD_STATE: 4,
    })
    p1, p2 = agent_patch(agent)
    with p1, p2:
        metrics = await client.get_power_metrics(device)

    assert len(agent.get_requests) == 2
    assert metrics.current_amps == pytest.approx(16.0)
    assert metrics.power_watts == 3680
    assert metrics.load_state == "overload"


@pytest.mark.asyncio
async def test_power_metrics_zero_current_is_a_reading(client, device):
    agent = FakeAgent({
        OID_LOAD_STATUS_LOAD_INDEXED: 0,
        OID_LOAD_STATUS_LOAD_STATE_INDEXED: 2,
    })
    p1, p2 = agent_patch(agent)
    with p1, p2:
        metrics = await client.get_power_metrics(device)
    assert metrics.current_amps == 0.0
    assert metrics.power_watts == 0
    assert metrics.load_state == "low"


@pytest.mark.asyncio
async def test_power_metrics_unsupported_is_not_a_failure(client, device):
    p1, p2 = agent_patch(FakeAgent({}))
    with p1, p2:
        assert await client.get_power_metrics(device) is None

    health = client.get_health("rack-a")
    assert health["failed_gets"] == 0
    assert health["consecutive_failures"] == 0


@pytest.mark.asyncio
async def test_power_metrics_v1_no_such_name_falls_through(client, device):
    responses = [
        (None, status_error("noSuchName"), 1, [(OID_LOAD_STATUS_LOAD_INDEXED, 0)]),
        (None, 0, 0, [(OID_LOAD_STATUS_LOAD, 50), (OID_LOAD_STATUS_LOAD_STATE, 3)]),
    ]
    with patch("pdu_sync.snmp_client.getCmd", new=AsyncMock(side_effect=responses)):
        metrics = await client.get_power_metrics(device)
    assert metrics.current_amps == pytest.approx(5.0)
    assert metrics.load_state == "near_overload"


@pytest.mark.asyncio
async def test_power_metrics_timeout_raises(client, device):
    mock = AsyncMock(return_value=("requestTimedOut", 0, 0, []))
    with patch("pdu_sync.snmp_client.getCmd", new=mock):
        with pytest.raises(TransportError):
            await client.get_power_metrics(device)
    assert mock.await_count == 1


@pytest.mark.asyncio
async def test_power_metrics_line_voltage_from_config(monkeypatch, device):
    monkeypatch.setenv("LINE_VOLTAGE", "120")
    client = SNMPClient(Config())
    p1, p2 = agent_patch(FakeAgent({
        OID_LOAD_STATUS_LOAD_INDEXED: 25,
        OID_LOAD_STATUS_LOAD_STATE_INDEXED: 1,
    }))
    with p1, p2:
        metrics = await client.get_power_metrics(device)
    assert metrics.power_watts == 300
    assert metrics.voltage == 120


# ---------------------------------------------------------------------------
# Identity and connection test
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_get_identity(client, device):
    p1, p2 = agent_patch(FakeAgent({
        OID_IDENT_NAME: "Rack A PDU",
        OID_IDENT_MODEL: "AP8959",
        OID_IDENT_SERIAL: "5A1234E56789",
    }))
    with p1, p2:
        identity = await client.get_identity(device)
    assert identity.name == "Rack A PDU"
    assert identity.model == "AP8959"
    assert identity.serial == "5A1234E56789"
    assert identity.firmware == ""


@pytest.mark.asyncio
async def test_test_connection_ok(client, device, fake_pysnmp):
    p1, p2 = agent_patch(FakeAgent({OID_IDENT_NAME: "Rack A PDU"}))
    with p1, p2:
        ok, message = await client.test_connection(device)
    assert ok is True
    assert "Rack A PDU" in message
    # Throwaway session: closed and not cached
    assert client.get_health("rack-a")["sessions"] == []
    fake_pysnmp["engine"].return_value.close_dispatcher.assert_called()


@pytest.mark.asyncio
async def test_test_connection_timeout(client, device):
    with patch("pdu_sync.snmp_client.getCmd",
               new=AsyncMock(return_value=("requestTimedOut", 0, 0, []))):
        ok, message = await client.test_connection(device)
    assert ok is False
    assert "requestTimedOut" in message


@pytest.mark.asyncio
async def test_test_connection_bad_credentials(client):
    dev = DeviceConfig("rack-a", "10.0.0.5", snmp_version="v3", username="")
    ok, message = await client.test_connection(dev)
    assert ok is False
    assert "Configuration error" in message


# ---------------------------------------------------------------------------
# Sessions and credentials
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_configuration_error_before_io(client):
    dev = DeviceConfig("rack-a", "10.0.0.5", snmp_version="v2c", community_write="")
    mock = AsyncMock(return_value=set_ok())
    with patch("pdu_sync.snmp_client.setCmd", new=mock):
        with pytest.raises(ConfigurationError):
            await client.set_outlet_power(dev, 1, "on")
    mock.assert_not_awaited()


@pytest.mark.asyncio
async def test_read_and_write_communities(client, device):
    with patch("pdu_sync.snmp_client.CommunityData") as community, \
         patch("pdu_sync.snmp_client.setCmd", new=AsyncMock(return_value=set_ok())):
        p1, p2 = agent_patch(FakeAgent({}))
        with p1, p2:
            await client.get_outlet_states(device)
        await client.set_outlet_power(device, 1, "on")

    calls = [c.args[0] for c in community.call_args_list]
    assert calls == ["public", "private"]
    assert community.call_args_list[0].kwargs["mpModel"] == 1


@pytest.mark.asyncio
async def test_v3_session_resolves_secrets(client, monkeypatch):
    from pdu_sync.snmp_client import usmAesCfb128Protocol, usmHMACSHAAuthProtocol

    monkeypatch.setenv("RACK_A_AUTH", "auth-secret")
    dev = DeviceConfig("rack-a", "10.0.0.5", snmp_version="v3", username="apc",
                       security_level="authPriv", auth_protocol="sha",
                       auth_passphrase="env:RACK_A_AUTH", priv_protocol="aes",
                       priv_passphrase="priv-secret")
    with patch("pdu_sync.snmp_client.UsmUserData") as usm:
        p1, p2 = agent_patch(FakeAgent({}))
        with p1, p2:
            await client.get_outlet_states(dev)

    usm.assert_called_once()
    assert usm.call_args.args[0] == "apc"
    kwargs = usm.call_args.kwargs
    assert kwargs["authKey"] == "auth-secret"
    assert kwargs["privKey"] == "priv-secret"
    assert kwargs["authProtocol"] == usmHMACSHAAuthProtocol
    assert kwargs["privProtocol"] == usmAesCfb128Protocol


@pytest.mark.asyncio
async def test_sessions_cached_per_mode(client, device, fake_pysnmp):
    p1, p2 = agent_patch(FakeAgent({}))
    with p1, p2, patch("pdu_sync.snmp_client.setCmd", new=AsyncMock(return_value=set_ok())):
        await client.get_outlet_states(device)
        await client.get_outlet_states(device)
        await client.set_outlet_power(device, 1, "on")

    assert fake_pysnmp["engine"].call_count == 2
    assert client.get_health("rack-a")["sessions"] == ["read", "write"]
    target_kwargs = fake_pysnmp["target"].call_args.kwargs
    assert target_kwargs == {"timeout": 5.0, "retries": 3}

    client.close_session("rack-a")
    assert client.get_health("rack-a")["sessions"] == []
    assert fake_pysnmp["engine"].return_value.close_dispatcher.called


@pytest.mark.asyncio
async def test_operations_on_one_device_do_not_interleave(client, device):
    """A write issued during a walk waits until the walk has finished."""
    log = []
    agent = FakeAgent(outlet_table(OID_OUTLET_STATUS_NAME, OID_OUTLET_STATUS_STATE,
                                   ["A", "B"], [1, 1]))

    async def slow_next(*args):
        log.append("walk-start")
        await asyncio.sleep(0.01)
        result = await agent.next_cmd(*args)
        log.append("walk-end")
        return result

    async def slow_set(*args):
        log.append("set-start")
        await asyncio.sleep(0.01)
        log.append("set-end")
        return set_ok()

    with patch("pdu_sync.snmp_client.nextCmd", new=slow_next), \
         patch("pdu_sync.snmp_client.setCmd", new=slow_set):
        await asyncio.gather(
            client.get_outlet_states(device),
            client.set_outlet_power(device, 1, "off"),
        )

    set_at = log.index("set-start")
    assert log[set_at + 1] == "set-end"
    walk_events = [i for i, e in enumerate(log) if e.startswith("walk")]
    assert all(i < set_at for i in walk_events) or all(i > set_at for i in walk_events)


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_health_recovers_after_success(client, device):
    with patch("pdu_sync.snmp_client.getCmd",
               new=AsyncMock(return_value=("requestTimedOut", 0, 0, []))):
        for _ in range(3):
            with pytest.raises(TransportError):
                await client.get_identity(device)
    assert client.get_health("rack-a")["consecutive_failures"] == 3

    p1, p2 = agent_patch(FakeAgent({OID_IDENT_NAME: "x"}))
    with p1, p2:
        await client.get_identity(device)
    health = client.get_health("rack-a")
    assert health["consecutive_failures"] == 0
    assert health["total_gets"] == 4
    assert health["failed_gets"] == 3
    assert health["last_success"] is not None
    assert health["target"] == "10.0.0.5:161"
