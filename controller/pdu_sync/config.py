# PDU Sync Controller
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License
# https://github.com/mvalancy/CyberPower-PDU

"""Configuration from environment variables with validation.

Every timing constant of the control loop lives here with its default:
tick periods, reboot heuristic, recovery pacing and the fixed line voltage
used to derive watts from the reported current.
"""

import logging
import os

logger = logging.getLogger(__name__)


class ConfigError(Exception):
    """Raised when configuration is invalid."""


class Config:
    def __init__(self):
        self.devices_file = os.environ.get("PDUSYNC_DEVICES_FILE", "/data/devices.json")
        self.db_path = os.environ.get("PDUSYNC_DB", "/data/pdu_sync.db")
        self.retention_days = self._int("PDUSYNC_RETENTION_DAYS", "90", 1, 3650)
        self.log_level = os.environ.get("PDUSYNC_LOG_LEVEL", "INFO").upper()
        self.mock_mode = os.environ.get("PDUSYNC_MOCK_MODE", "false").lower() in ("true", "1", "yes")

        # SNMP bounds apply to one call, not to a whole fallback chain
        self.snmp_timeout = self._float("SNMP_TIMEOUT", "5.0", 0.5, 60)
        self.snmp_retries = self._int("SNMP_RETRIES", "3", 0, 10)

        # Tick periods (kept distinct from each other)
        self.poll_interval = self._float("POLL_INTERVAL", "30", 1, 3600)
        self.reconcile_interval = self._float("RECONCILE_INTERVAL", "60", 1, 3600)
        self.metrics_interval = self._float("METRICS_INTERVAL", "300", 1, 86400)

        # Reboot heuristic
        self.reboot_window = self._float("REBOOT_WINDOW", "120", 1, 3600)
        self.reboot_threshold = self._float("REBOOT_THRESHOLD", "0.8", 0.0, 1.0)

        # Recovery pacing
        self.recovery_delay = self._float("RECOVERY_DELAY", "5", 0, 600)
        self.recovery_stabilization = self._float("RECOVERY_STABILIZATION", "60", 0, 3600)
        self.recovery_critical_pacing = self._float("RECOVERY_CRITICAL_PACING", "2", 0, 60)
        self.recovery_pacing = self._float("RECOVERY_PACING", "1", 0, 60)

        # Not measured; APC rPDU units only report current
        self.line_voltage = self._float("LINE_VOLTAGE", "230", 90, 480)

        self.mqtt_enabled = os.environ.get("MQTT_ENABLED", "true").lower() in ("true", "1", "yes")
        self.mqtt_broker = os.environ.get("MQTT_BROKER", "mosquitto")
        self.mqtt_port = self._int("MQTT_PORT", "1883", 1, 65535)
        self.mqtt_username = os.environ.get("MQTT_USERNAME", "")
        self.mqtt_password = os.environ.get("MQTT_PASSWORD", "")
        self.mqtt_topic_prefix = os.environ.get("MQTT_TOPIC_PREFIX", "pdu_sync")

        if any(c in self.mqtt_topic_prefix for c in "#+ "):
            raise ConfigError(
                f"MQTT_TOPIC_PREFIX contains invalid characters: {self.mqtt_topic_prefix!r}"
            )
        if self.log_level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ConfigError(f"PDUSYNC_LOG_LEVEL={self.log_level!r} is not a log level")

        self._log_config()

    @staticmethod
    def _int(env: str, default: str, min_val: int, max_val: int) -> int:
        raw = os.environ.get(env, default)
        try:
            val = int(raw)
        except (ValueError, TypeError):
            raise ConfigError(f"{env}={raw!r} is not a valid integer")
        if not (min_val <= val <= max_val):
            raise ConfigError(f"{env}={val} out of range [{min_val}, {max_val}]")
        return val

    @staticmethod
    def _float(env: str, default: str, min_val: float, max_val: float) -> float:
        raw = os.environ.get(env, default)
        try:
            val = float(raw)
        except (ValueError, TypeError):
            raise ConfigError(f"{env}={raw!r} is not a valid number")
        if not (min_val <= val <= max_val):
            raise ConfigError(f"{env}={val} out of range [{min_val}, {max_val}]")
        return val

    @property
    def settings_dict(self) -> dict:
        """Effective tunables, for status output."""
        return {
            "poll_interval": self.poll_interval,
            "reconcile_interval": self.reconcile_interval,
            "metrics_interval": self.metrics_interval,
            "reboot_window": self.reboot_window,
            "reboot_threshold": self.reboot_threshold,
            "recovery_delay": self.recovery_delay,
            "recovery_stabilization": self.recovery_stabilization,
            "recovery_critical_pacing": self.recovery_critical_pacing,
            "recovery_pacing": self.recovery_pacing,
            "line_voltage": self.line_voltage,
            "snmp_timeout": self.snmp_timeout,
            "snmp_retries": self.snmp_retries,
        }

    def _log_config(self):
        logger.info(
            "Config: devices=%s db=%s mock=%s poll=%.0fs reconcile=%.0fs "
            "metrics=%.0fs snmp=%.1fs/%d mqtt=%s",
            self.devices_file, self.db_path, self.mock_mode,
            self.poll_interval, self.reconcile_interval, self.metrics_interval,
            self.snmp_timeout, self.snmp_retries,
            f"{self.mqtt_broker}:{self.mqtt_port}" if self.mqtt_enabled else "off",
        )
