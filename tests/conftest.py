# PDU Sync Controller
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 MIT License
# https://github.com/mvalancy/CyberPower-PDU

"""Pytest configuration: clean environment per test, HTML report metadata."""

import platform
import subprocess
from datetime import datetime

import pytest

# Every variable Config reads; tests start from the defaults
CONFIG_ENV_VARS = (
    "PDUSYNC_DEVICES_FILE", "PDUSYNC_DB", "PDUSYNC_RETENTION_DAYS",
    "PDUSYNC_LOG_LEVEL", "PDUSYNC_MOCK_MODE",
    "SNMP_TIMEOUT", "SNMP_RETRIES",
    "POLL_INTERVAL", "RECONCILE_INTERVAL", "METRICS_INTERVAL",
    "REBOOT_WINDOW", "REBOOT_THRESHOLD",
    "RECOVERY_DELAY", "RECOVERY_STABILIZATION",
    "RECOVERY_CRITICAL_PACING", "RECOVERY_PACING",
    "LINE_VOLTAGE",
    "MQTT_ENABLED", "MQTT_BROKER", "MQTT_PORT",
    "MQTT_USERNAME", "MQTT_PASSWORD", "MQTT_TOPIC_PREFIX",
)


@pytest.fixture(autouse=True)
def clean_config_env(monkeypatch):
    for name in CONFIG_ENV_VARS:
        monkeypatch.delenv(name, raising=False)


def _git(cmd: str) -> str:
    """Run a git command and return stripped output, or '' on failure."""
    try:
        return subprocess.check_output(
            ["git"] + cmd.split(), stderr=subprocess.DEVNULL
        ).decode().strip()
    except Exception:
        return ""


def pytest_configure(config):
    """Add project metadata to HTML report (only if pytest-metadata installed)."""
    try:
        from pytest_metadata.plugin import metadata_key
    except ImportError:
        return

    config.stash[metadata_key]["Project"] = "PDU Sync Controller"
    config.stash[metadata_key]["Author"] = "Matthew Valancy, Valpatel Software LLC"
    config.stash[metadata_key]["Git Commit"] = _git("rev-parse --short HEAD")
    config.stash[metadata_key]["Python"] = platform.python_version()
    config.stash[metadata_key]["Timestamp"] = datetime.now().isoformat(timespec="seconds")


# Conditional hook, only registered when pytest-html is available
try:
    import pytest_html  # noqa: F401

    def pytest_html_report_title(report):
        report.title = "PDU Sync Controller Test Report"
except ImportError:
    pass
