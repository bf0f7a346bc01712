# PDU Sync Controller
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 MIT License
# https://github.com/mvalancy/CyberPower-PDU

"""MQTT notification sink for real-time status, reboot, recovery and metrics.

Every broadcast becomes one JSON message on ``{prefix}/{device_id}/{kind}``::

    {"type": "status", "device_id": "rack-a", "data": {...}, "timestamp": 1760000000.0}

Publishing never blocks the control loop: paho's network loop runs in its
own thread, and messages published while the broker is unreachable are
held in a bounded backlog and flushed on reconnect.
"""

import json
import logging
import time
from collections import deque
from dataclasses import dataclass
from typing import Any

import paho.mqtt.client as mqtt

from .config import Config

logger = logging.getLogger(__name__)

NOTIFY_STATUS = "status"
NOTIFY_REBOOT = "reboot"
NOTIFY_RECOVERY = "recovery"
NOTIFY_METRICS = "metrics"
NOTIFY_OUTLET_STATE = "outlet_state"
NOTIFY_OUTLET_SKEW = "outlet_skew"

BACKLOG_LIMIT = 100


@dataclass
class NotifierHealth:
    connected: bool = False
    sessions: int = 0             # successful CONNACKs, first one included
    last_connect: float | None = None
    last_disconnect: float | None = None
    sent: int = 0
    failed: int = 0
    dropped: int = 0

    def to_dict(self) -> dict:
        return {
            "connected": self.connected,
            "reconnects": max(self.sessions - 1, 0),
            "last_connect": self.last_connect,
            "last_disconnect": self.last_disconnect,
            "sent": self.sent,
            "failed": self.failed,
            "dropped": self.dropped,
        }


class MQTTNotifier:
    def __init__(self, config: Config):
        self.config = config
        self.prefix = config.mqtt_topic_prefix
        self.health = NotifierHealth()
        self._backlog: deque[tuple[str, str]] = deque()

        self._presence_topic = f"{self.prefix}/controller/status"
        self.client = mqtt.Client(
            client_id=f"{self.prefix}-controller",
            callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
        )
        self.client.will_set(self._presence_topic, "offline", qos=1, retain=True)
        self.client.on_connect = self._on_connect
        self.client.on_disconnect = self._on_disconnect
        self.client.reconnect_delay_set(min_delay=1, max_delay=30)

    def connect(self):
        broker, port = self.config.mqtt_broker, self.config.mqtt_port
        if self.config.mqtt_username:
            self.client.username_pw_set(self.config.mqtt_username, self.config.mqtt_password)
        logger.info("Notifier connecting to %s:%d as %s", broker, port,
                    self.config.mqtt_username or "anonymous")

        try:
            self.client.connect(broker, port, keepalive=60)
        except Exception:
            logger.exception("Notifier could not reach broker %s:%d", broker, port)
        # The loop thread keeps retrying even when the first connect failed
        self.client.loop_start()

    def _on_connect(self, client, userdata, flags, reason_code, properties):
        self.health.sessions += 1
        self.health.connected = True
        self.health.last_connect = time.time()
        logger.info("Notifier connected (rc=%s, session %d)", reason_code, self.health.sessions)

        client.publish(self._presence_topic, "online", qos=1, retain=True)
        self._flush_backlog()

    def _on_disconnect(self, client, userdata, flags, reason_code, properties=None):
        self.health.connected = False
        self.health.last_disconnect = time.time()
        logger.warning("Notifier lost broker connection (rc=%s)", reason_code)

    def _flush_backlog(self):
        if not self._backlog:
            return
        held = list(self._backlog)
        self._backlog.clear()
        for topic, message in held:
            self._send(topic, message)
        logger.info("Notifier flushed %d held message(s)", len(held))

    def get_status(self) -> dict:
        status = self.health.to_dict()
        status["broker"] = f"{self.config.mqtt_broker}:{self.config.mqtt_port}"
        status["backlog"] = len(self._backlog)
        return status

    def broadcast(self, kind: str, device_id: str, payload: dict[str, Any]):
        topic = f"{self.prefix}/{device_id}/{kind}"
        message = json.dumps({
            "type": kind,
            "device_id": device_id,
            "data": payload,
            "timestamp": time.time(),
        }, default=str)

        if self.health.connected:
            self._send(topic, message)
        else:
            self._hold(topic, message)

    def _hold(self, topic: str, message: str):
        if len(self._backlog) >= BACKLOG_LIMIT:
            self.health.dropped += 1
            if self.health.dropped % 100 == 1:
                logger.warning("Notifier backlog full (%d), dropping %s", BACKLOG_LIMIT, topic)
            return
        self._backlog.append((topic, message))

    def _send(self, topic: str, message: str):
        self.health.sent += 1
        try:
            info = self.client.publish(topic, message, qos=1, retain=False)
        except Exception:
            self.health.failed += 1
            if self.health.failed % 100 == 1:
                logger.exception("Notifier publish raised (topic=%s)", topic)
            self._hold(topic, message)
            return
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            self.health.failed += 1
            if self.health.failed % 100 == 1:
                logger.warning("Notifier publish rejected (rc=%s, topic=%s)", info.rc, topic)
            self._hold(topic, message)

    def disconnect(self):
        """Announce offline, then stop the network loop."""
        try:
            self.client.publish(self._presence_topic, "offline", qos=1, retain=True)
            self.client.loop_stop()
            self.client.disconnect()
        except Exception:
            logger.debug("Notifier shutdown error", exc_info=True)


class NullNotifier:
    """Notifier used when MQTT is disabled."""

    def broadcast(self, kind: str, device_id: str, payload: dict[str, Any]):
        logger.debug("[%s] %s notification (MQTT disabled)", device_id, kind)

    def get_status(self) -> dict:
        return {"connected": False, "enabled": False}

    def connect(self):
        pass

    def disconnect(self):
        pass
