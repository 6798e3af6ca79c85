"""SQLite zone store.

Holds the monitored zone list and its schedule state, the append-only check
history, and each user's notification preferences. The monitor only reads
zones and preferences and writes schedule, serial and history rows.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

log = logging.getLogger("soa_monitor")

TS_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"

# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

@dataclass
class Zone:
    id: int
    name: str
    user_id: str | None = None
    cadence_seconds: int | None = 60
    last_known_serial: int | None = None
    last_checked: datetime | None = None
    next_check_at: datetime | None = None
    active: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "zone_name": self.name,
            "user_id": self.user_id,
            "check_cadence_seconds": self.cadence_seconds,
            "last_soa_serial": self.last_known_serial,
            "last_checked": to_iso(self.last_checked),
            "next_check_at": to_iso(self.next_check_at),
            "is_active": self.active,
        }


@dataclass
class ZoneCheckRecord:
    zone_id: int
    checked_at: datetime
    serial: int | None
    soa_record: str
    is_change: bool
    change_details: str = ""
    previous_soa: str | None = None
    notified: bool = False
    check_id: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "check_id": self.check_id,
            "zone_id": self.zone_id,
            "checked_at": to_iso(self.checked_at),
            "soa_serial": self.serial,
            "soa_record": self.soa_record,
            "is_change": self.is_change,
            "change_details": self.change_details,
            "previous_soa": self.previous_soa,
            "notified": self.notified,
        }


def to_iso(ts: datetime | None) -> str | None:
    """UTC timestamp text that sorts lexically in time order."""
    if ts is None:
        return None
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc).strftime(TS_FORMAT)


def from_iso(text: str | None) -> datetime | None:
    if not text:
        return None
    return datetime.strptime(text, TS_FORMAT).replace(tzinfo=timezone.utc)

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS users (
    id TEXT PRIMARY KEY,
    email TEXT,
    notification_preferences TEXT DEFAULT '{}'
);

CREATE TABLE IF NOT EXISTS dns_zones (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT,
    zone_name TEXT NOT NULL,
    is_active BOOLEAN DEFAULT 1,
    check_cadence_seconds INTEGER DEFAULT 60,
    last_checked TEXT,
    last_soa_serial INTEGER,
    next_check_at TEXT,
    FOREIGN KEY (user_id) REFERENCES users(id)
);

CREATE TABLE IF NOT EXISTS zone_checks (
    check_id INTEGER PRIMARY KEY AUTOINCREMENT,
    zone_id INTEGER,
    checked_at TEXT,
    soa_serial INTEGER,
    soa_record TEXT,
    is_change BOOLEAN,
    change_details TEXT,
    previous_soa TEXT,
    notified BOOLEAN DEFAULT 0,
    FOREIGN KEY (zone_id) REFERENCES dns_zones(id)
);

CREATE INDEX IF NOT EXISTS idx_zones_due ON dns_zones(is_active, next_check_at);
CREATE INDEX IF NOT EXISTS idx_checks_zone ON zone_checks(zone_id, checked_at);
CREATE INDEX IF NOT EXISTS idx_checks_change ON zone_checks(zone_id, is_change);
"""

ZONE_COLUMNS = ("id, user_id, zone_name, is_active, check_cadence_seconds, "
                "last_checked, last_soa_serial, next_check_at")
CHECK_COLUMNS = ("check_id, zone_id, checked_at, soa_serial, soa_record, "
                 "is_change, change_details, previous_soa, notified")


def _zone_from_row(row: sqlite3.Row) -> Zone:
    return Zone(
        id=row["id"],
        name=row["zone_name"],
        user_id=row["user_id"],
        cadence_seconds=row["check_cadence_seconds"],
        last_known_serial=row["last_soa_serial"],
        last_checked=from_iso(row["last_checked"]),
        next_check_at=from_iso(row["next_check_at"]),
        active=bool(row["is_active"]),
    )


def _check_from_row(row: sqlite3.Row) -> ZoneCheckRecord:
    return ZoneCheckRecord(
        zone_id=row["zone_id"],
        checked_at=from_iso(row["checked_at"]),
        serial=row["soa_serial"],
        soa_record=row["soa_record"] or "",
        is_change=bool(row["is_change"]),
        change_details=row["change_details"] or "",
        previous_soa=row["previous_soa"],
        notified=bool(row["notified"]),
        check_id=row["check_id"],
    )

# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------

class ZoneStore:
    """Zone list, schedule state, check history and preferences in one file."""

    def __init__(self, db_file: str | Path) -> None:
        self.db_file = Path(db_file)

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_file)
        conn.row_factory = sqlite3.Row
        return conn

    def _execute(self, sql: str, params: tuple = ()) -> int:
        conn = self._connect()
        try:
            cur = conn.execute(sql, params)
            conn.commit()
            return cur.lastrowid
        finally:
            conn.close()

    def _query(self, sql: str, params: tuple = ()) -> list[sqlite3.Row]:
        conn = self._connect()
        try:
            return conn.execute(sql, params).fetchall()
        finally:
            conn.close()

    def init(self) -> None:
        self.db_file.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(self.db_file)
        try:
            conn.executescript(SCHEMA_SQL)
            # Migration: previous_soa and notified arrived after the first schema
            for column, decl in (("previous_soa", "TEXT"), ("notified", "BOOLEAN DEFAULT 0")):
                try:
                    conn.execute(f"SELECT {column} FROM zone_checks LIMIT 0")
                except sqlite3.OperationalError:
                    conn.execute(f"ALTER TABLE zone_checks ADD COLUMN {column} {decl}")
            conn.commit()
        finally:
            conn.close()

    # ----- seeding (normally done by the dashboard) -----

    def add_zone(self, name: str, *, user_id: str | None = None,
                 cadence_seconds: int | None = 60,
                 last_known_serial: int | None = None,
                 next_check_at: datetime | None = None,
                 active: bool = True) -> int:
        return self._execute(
            """INSERT INTO dns_zones
               (user_id, zone_name, is_active, check_cadence_seconds,
                last_soa_serial, next_check_at)
               VALUES (?,?,?,?,?,?)""",
            (user_id, name, active, cadence_seconds, last_known_serial,
             to_iso(next_check_at)))

    def set_preferences(self, user_id: str, prefs: dict[str, Any],
                        email: str = "") -> None:
        self._execute(
            """INSERT INTO users (id, email, notification_preferences)
               VALUES (?,?,?)
               ON CONFLICT(id) DO UPDATE SET
                 email=excluded.email,
                 notification_preferences=excluded.notification_preferences""",
            (user_id, email, json.dumps(prefs)))

    # ----- zone source -----

    def get_zone(self, zone_id: int) -> Zone | None:
        rows = self._query(f"SELECT {ZONE_COLUMNS} FROM dns_zones WHERE id=?",
                           (zone_id,))
        return _zone_from_row(rows[0]) if rows else None

    def list_zones(self) -> list[Zone]:
        return [_zone_from_row(r) for r in
                self._query(f"SELECT {ZONE_COLUMNS} FROM dns_zones ORDER BY id")]

    def due_zones(self, now: datetime) -> list[Zone]:
        """Active zones never scheduled or whose next check is at/before now."""
        rows = self._query(
            f"""SELECT {ZONE_COLUMNS} FROM dns_zones
                WHERE is_active=1
                  AND (next_check_at IS NULL OR next_check_at <= ?)
                ORDER BY id""",
            (to_iso(now),))
        return [_zone_from_row(r) for r in rows]

    def get_preferences(self, user_id: str | None) -> dict[str, Any]:
        if not user_id:
            return {}
        rows = self._query(
            "SELECT notification_preferences FROM users WHERE id=?", (user_id,))
        if not rows or not rows[0][0]:
            return {}
        try:
            prefs = json.loads(rows[0][0])
        except json.JSONDecodeError as e:
            log.warning(f"Unreadable notification preferences for user {user_id}: {e}")
            return {}
        return prefs if isinstance(prefs, dict) else {}

    # ----- zone-state sink -----

    def update_schedule(self, zone_id: int, last_checked: datetime,
                        next_check_at: datetime) -> None:
        self._execute(
            "UPDATE dns_zones SET last_checked=?, next_check_at=? WHERE id=?",
            (to_iso(last_checked), to_iso(next_check_at), zone_id))

    def update_serial(self, zone_id: int, serial: int) -> None:
        self._execute("UPDATE dns_zones SET last_soa_serial=? WHERE id=?",
                      (serial, zone_id))

    # ----- check-history sink -----

    def append_check(self, record: ZoneCheckRecord) -> int:
        return self._execute(
            """INSERT INTO zone_checks
               (zone_id, checked_at, soa_serial, soa_record, is_change,
                change_details, previous_soa, notified)
               VALUES (?,?,?,?,?,?,?,?)""",
            (record.zone_id, to_iso(record.checked_at), record.serial,
             record.soa_record, record.is_change, record.change_details,
             record.previous_soa, record.notified))

    def recent_changes(self, zone_id: int, since: datetime, limit: int = 5,
                       notified_only: bool = False) -> list[ZoneCheckRecord]:
        """Newest change records since `since`; `notified_only` keeps alerted ones."""
        alerted = " AND notified=1" if notified_only else ""
        rows = self._query(
            f"""SELECT {CHECK_COLUMNS} FROM zone_checks
                WHERE zone_id=? AND is_change=1 AND checked_at >= ?{alerted}
                ORDER BY checked_at DESC, check_id DESC LIMIT ?""",
            (zone_id, to_iso(since), limit))
        return [_check_from_row(r) for r in rows]

    def checks(self, zone_id: int, limit: int = 100) -> list[ZoneCheckRecord]:
        rows = self._query(
            f"""SELECT {CHECK_COLUMNS} FROM zone_checks WHERE zone_id=?
                ORDER BY checked_at DESC, check_id DESC LIMIT ?""",
            (zone_id, limit))
        return [_check_from_row(r) for r in rows]

    def latest_soa(self, zone_id: int) -> str | None:
        """Raw SOA of the most recent check that produced a serial."""
        rows = self._query(
            """SELECT soa_record FROM zone_checks
               WHERE zone_id=? AND soa_serial IS NOT NULL
               ORDER BY checked_at DESC, check_id DESC LIMIT 1""",
            (zone_id,))
        return rows[0][0] if rows else None
