"""SQLite storage for outlets, state-change history, device events and power samples."""

import json
import logging
import sqlite3
import time
from pathlib import Path
from typing import Any

from .pdu_model import (
    CHANGE_TYPES,
    EVENT_TYPES,
    OUTLET_STATES,
    DeviceEvent,
    Outlet,
    PowerSample,
    StateChangeRecord,
)

logger = logging.getLogger(__name__)

OUTLET_OPTIONS = ("name", "is_critical", "auto_recovery")


class StateStore:
    """Outlet store, event sink and power-sample sink in one database."""

    def __init__(self, db_path: str, retention_days: int = 90):
        self._db_path = db_path
        self._retention_days = retention_days

        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(db_path)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._create_tables()

    def _create_tables(self):
        self._conn.executescript("""
            CREATE TABLE IF NOT EXISTS outlets (
                device_id TEXT NOT NULL,
                number INTEGER NOT NULL,
                name TEXT NOT NULL DEFAULT '',
                desired_state TEXT,
                actual_state TEXT,
                last_state_change REAL,
                is_critical INTEGER NOT NULL DEFAULT 0,
                auto_recovery INTEGER NOT NULL DEFAULT 1
            );
            CREATE UNIQUE INDEX IF NOT EXISTS idx_outlet_device_number
                ON outlets(device_id, number);

            CREATE TABLE IF NOT EXISTS outlet_state_history (
                ts REAL NOT NULL,
                device_id TEXT NOT NULL,
                outlet INTEGER NOT NULL,
                previous_state TEXT,
                new_state TEXT,
                change_type TEXT NOT NULL,
                initiated_by TEXT NOT NULL,
                success INTEGER NOT NULL,
                error_message TEXT
            );
            CREATE INDEX IF NOT EXISTS idx_history_device_ts
                ON outlet_state_history(device_id, ts);

            CREATE TABLE IF NOT EXISTS device_events (
                ts REAL NOT NULL,
                device_id TEXT NOT NULL,
                event_type TEXT NOT NULL,
                description TEXT NOT NULL,
                metadata TEXT NOT NULL DEFAULT '{}'
            );
            CREATE INDEX IF NOT EXISTS idx_events_device_ts
                ON device_events(device_id, ts);

            CREATE TABLE IF NOT EXISTS power_samples (
                ts REAL NOT NULL,
                device_id TEXT NOT NULL,
                current_amps REAL,
                power_watts INTEGER,
                voltage REAL,
                load_state TEXT
            );
            CREATE INDEX IF NOT EXISTS idx_samples_device_ts
                ON power_samples(device_id, ts);
        """)
        self._conn.commit()

    # --- Outlets ---

    @staticmethod
    def _row_to_outlet(row: sqlite3.Row) -> Outlet:
        return Outlet(
            device_id=row["device_id"],
            number=row["number"],
            name=row["name"],
            desired_state=row["desired_state"],
            actual_state=row["actual_state"],
            last_state_change=row["last_state_change"],
            is_critical=bool(row["is_critical"]),
            auto_recovery=bool(row["auto_recovery"]),
        )

    def get_outlets(self, device_id: str) -> list[Outlet]:
        rows = self._conn.execute(
            "SELECT * FROM outlets WHERE device_id = ? ORDER BY number",
            (device_id,),
        ).fetchall()
        return [self._row_to_outlet(r) for r in rows]

    def get_outlet(self, device_id: str, number: int) -> Outlet | None:
        row = self._conn.execute(
            "SELECT * FROM outlets WHERE device_id = ? AND number = ?",
            (device_id, number),
        ).fetchone()
        return self._row_to_outlet(row) if row else None

    def create_outlet(self, outlet: Outlet):
        """Insert an outlet. An existing (device_id, number) row is left alone."""
        self._conn.execute(
            "INSERT OR IGNORE INTO outlets (device_id, number, name, desired_state, "
            "actual_state, last_state_change, is_critical, auto_recovery) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            (outlet.device_id, outlet.number, outlet.name, outlet.desired_state,
             outlet.actual_state, outlet.last_state_change,
             int(outlet.is_critical), int(outlet.auto_recovery)),
        )
        self._conn.commit()

    def update_actual_state(self, device_id: str, number: int, state: str,
                            changed_at: float | None):
        self._conn.execute(
            "UPDATE outlets SET actual_state = ?, last_state_change = ? "
            "WHERE device_id = ? AND number = ?",
            (state, changed_at, device_id, number),
        )
        self._conn.commit()

    def set_desired_state(self, device_id: str, number: int,
                          state: str | None) -> bool:
        """Set or clear operator intent. Returns False if the outlet is unknown."""
        if state is not None and state not in OUTLET_STATES:
            raise ValueError(f"Invalid desired state: {state!r}")
        cur = self._conn.execute(
            "UPDATE outlets SET desired_state = ? WHERE device_id = ? AND number = ?",
            (state, device_id, number),
        )
        self._conn.commit()
        return cur.rowcount > 0

    def set_outlet_options(self, device_id: str, number: int, **options: Any) -> bool:
        unknown = set(options) - set(OUTLET_OPTIONS)
        if unknown:
            raise ValueError(f"Unknown outlet option(s): {', '.join(sorted(unknown))}")
        if not options:
            return self.get_outlet(device_id, number) is not None

        columns = []
        values: list[Any] = []
        for key in OUTLET_OPTIONS:
            if key in options:
                columns.append(f"{key} = ?")
                value = options[key]
                values.append(int(bool(value)) if key != "name" else str(value))
        cur = self._conn.execute(
            f"UPDATE outlets SET {', '.join(columns)} WHERE device_id = ? AND number = ?",
            (*values, device_id, number),
        )
        self._conn.commit()
        return cur.rowcount > 0

    # --- History, events and samples ---

    def append_state_change(self, record: StateChangeRecord):
        if record.change_type not in CHANGE_TYPES:
            raise ValueError(f"Unknown change type: {record.change_type!r}")
        self._conn.execute(
            "INSERT INTO outlet_state_history (ts, device_id, outlet, previous_state, "
            "new_state, change_type, initiated_by, success, error_message) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (record.timestamp or time.time(), record.device_id, record.outlet_number,
             record.previous_state, record.new_state, record.change_type,
             record.initiated_by, int(record.success), record.error_message),
        )
        self._conn.commit()

    def append_event(self, event: DeviceEvent):
        if event.event_type not in EVENT_TYPES:
            raise ValueError(f"Unknown event type: {event.event_type!r}")
        self._conn.execute(
            "INSERT INTO device_events (ts, device_id, event_type, description, metadata) "
            "VALUES (?, ?, ?, ?, ?)",
            (event.timestamp or time.time(), event.device_id, event.event_type,
             event.description, json.dumps(event.metadata)),
        )
        self._conn.commit()

    def append_power_sample(self, sample: PowerSample):
        self._conn.execute(
            "INSERT INTO power_samples (ts, device_id, current_amps, power_watts, "
            "voltage, load_state) VALUES (?, ?, ?, ?, ?, ?)",
            (sample.timestamp or time.time(), sample.device_id, sample.current_amps,
             sample.power_watts, sample.voltage, sample.load_state),
        )
        self._conn.commit()

    def get_state_history(self, device_id: str, outlet_number: int | None = None,
                          limit: int = 100) -> list[StateChangeRecord]:
        """Most recent records first."""
        sql = "SELECT * FROM outlet_state_history WHERE device_id = ?"
        params: list[Any] = [device_id]
        if outlet_number is not None:
            sql += " AND outlet = ?"
            params.append(outlet_number)
        sql += " ORDER BY ts DESC, rowid DESC LIMIT ?"
        params.append(limit)
        rows = self._conn.execute(sql, params).fetchall()
        return [
            StateChangeRecord(
                device_id=r["device_id"],
                outlet_number=r["outlet"],
                previous_state=r["previous_state"],
                new_state=r["new_state"],
                change_type=r["change_type"],
                initiated_by=r["initiated_by"],
                success=bool(r["success"]),
                error_message=r["error_message"],
                timestamp=r["ts"],
            )
            for r in rows
        ]

    def get_events(self, device_id: str | None = None, event_type: str | None = None,
                   limit: int = 100) -> list[DeviceEvent]:
        sql = "SELECT * FROM device_events WHERE 1 = 1"
        params: list[Any] = []
        if device_id is not None:
            sql += " AND device_id = ?"
            params.append(device_id)
        if event_type is not None:
            sql += " AND event_type = ?"
            params.append(event_type)
        sql += " ORDER BY ts DESC, rowid DESC LIMIT ?"
        params.append(limit)
        rows = self._conn.execute(sql, params).fetchall()
        return [
            DeviceEvent(
                device_id=r["device_id"],
                event_type=r["event_type"],
                description=r["description"],
                metadata=json.loads(r["metadata"] or "{}"),
                timestamp=r["ts"],
            )
            for r in rows
        ]

    def get_power_samples(self, device_id: str, start: float, end: float) -> list[dict]:
        rows = self._conn.execute(
            "SELECT ts, current_amps, power_watts, voltage, load_state "
            "FROM power_samples WHERE device_id = ? AND ts >= ? AND ts <= ? ORDER BY ts",
            (device_id, start, end),
        ).fetchall()
        return [dict(r) for r in rows]

    def cleanup(self, now: float | None = None):
        """Delete history, events and samples older than the retention period."""
        cutoff = (now if now is not None else time.time()) - self._retention_days * 86400
        removed = 0
        for table in ("outlet_state_history", "device_events", "power_samples"):
            cur = self._conn.execute(f"DELETE FROM {table} WHERE ts < ?", (cutoff,))
            removed += cur.rowcount
        self._conn.commit()
        logger.info("Store cleanup: removed %d row(s) older than %d days",
                    removed, self._retention_days)
        return removed

    def close(self):
        self._conn.close()
