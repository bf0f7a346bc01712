"""Tests for the simulated PDU."""

import os
import sys

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "controller"))

from pdu_sync.device_config import DeviceConfig
from pdu_sync.mock_pdu import MockPDU
from pdu_sync.snmp_client import TransportError

DEVICE = DeviceConfig("rack-a", "10.0.0.5")


@pytest.mark.asyncio
async def test_outlets_start_on():
    pdu = MockPDU(num_outlets=4)
    statuses = await pdu.get_outlet_states(DEVICE)
    assert [s.number for s in statuses] == [1, 2, 3, 4]
    assert {s.state for s in statuses} == {"on"}
    assert statuses[0].name == "Outlet 1"


@pytest.mark.asyncio
async def test_devices_are_independent():
    pdu = MockPDU(num_outlets=2)
    other = DeviceConfig("rack-b", "10.0.0.6")
    await pdu.set_outlet_power(DEVICE, 1, "off")
    assert pdu.outlet_state("rack-a", 1) == "off"
    assert pdu.outlet_state("rack-b", 1) == "on"
    assert [s.state for s in await pdu.get_outlet_states(other)] == ["on", "on"]


@pytest.mark.asyncio
async def test_reboot_command_returns_on_after_duration():
    pdu = MockPDU(num_outlets=2, reboot_duration=0)
    await pdu.set_outlet_power(DEVICE, 2, "reboot")
    assert pdu.outlet_state("rack-a", 2) == "off"
    statuses = await pdu.get_outlet_states(DEVICE)
    assert statuses[1].state == "on"


@pytest.mark.asyncio
async def test_simulated_pdu_reboot_drops_every_outlet():
    pdu = MockPDU(num_outlets=3, reboot_duration=3600)
    pdu.simulate_reboot("rack-a")
    statuses = await pdu.get_outlet_states(DEVICE)
    assert {s.state for s in statuses} == {"off"}


@pytest.mark.asyncio
async def test_offline_device_raises():
    pdu = MockPDU()
    pdu.set_offline("rack-a")
    with pytest.raises(TransportError):
        await pdu.get_outlet_states(DEVICE)
    ok, message = await pdu.test_connection(DEVICE)
    assert ok is False
    assert "timed out" in message
    assert pdu.get_health("rack-a")["reachable"] is False


@pytest.mark.asyncio
async def test_invalid_commands():
    pdu = MockPDU(num_outlets=2)
    with pytest.raises(ValueError):
        await pdu.set_outlet_power(DEVICE, 1, "toggle")
    with pytest.raises(TransportError):
        await pdu.set_outlet_power(DEVICE, 9, "on")
    with pytest.raises(ValueError):
        await pdu.set_all_outlets(DEVICE, "reboot_later")


@pytest.mark.asyncio
async def test_power_metrics():
    pdu = MockPDU(num_outlets=4, line_voltage=120)
    metrics = await pdu.get_power_metrics(DEVICE)
    assert metrics.voltage == 120
    assert metrics.load_state == "normal"
    assert metrics.power_watts == round(metrics.current_amps * 120)

    pdu.set_overload("rack-a")
    assert (await pdu.get_power_metrics(DEVICE)).load_state == "overload"

    await pdu.set_all_outlets(DEVICE, "off")
    pdu.set_overload("rack-a", False)
    low = await pdu.get_power_metrics(DEVICE)
    assert (low.current_amps, low.load_state) == (0.0, "low")


@pytest.mark.asyncio
async def test_no_power_monitoring():
    assert await MockPDU(has_power_monitoring=False).get_power_metrics(DEVICE) is None


@pytest.mark.asyncio
async def test_force_state_behind_controller():
    pdu = MockPDU(num_outlets=2)
    pdu.force_outlet_state("rack-a", 1, "off")
    statuses = await pdu.get_outlet_states(DEVICE)
    assert statuses[0].state == "off"
