"""Database operations for officehood."""

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import date, datetime
from pathlib import Path
from typing import AsyncIterator, Optional, Union

import aiosqlite

from .classifier import get_type_label
from .config import DB_PATH
from .errors import PersistenceError, SessionNotFoundError

logger = logging.getLogger(__name__)


@dataclass
class PresenceSession:
    """A stored office presence session."""
    id: int
    date: date
    start_time: datetime
    end_time: Optional[datetime]
    duration_minutes: int
    device_id: Optional[int] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "date": self.date.isoformat(),
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "duration": self.duration_minutes,
            "device_id": self.device_id,
        }


@dataclass
class MonitoredDevice:
    """A registered device whose presence counts as the user's."""
    id: int
    name: str
    address: str
    device_type: str = "unknown"
    enabled: bool = True
    created_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "address": self.address,
            "device_type": self.device_type,
            "type_label": get_type_label(self.device_type),
            "enabled": self.enabled,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


SCHEMA = """
CREATE TABLE IF NOT EXISTS monitored_devices (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    address TEXT NOT NULL UNIQUE,
    device_type TEXT DEFAULT 'unknown',
    enabled INTEGER DEFAULT 1,
    created_at TIMESTAMP
);

CREATE TABLE IF NOT EXISTS office_presence (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    date DATE NOT NULL,
    start_time TIMESTAMP NOT NULL,
    end_time TIMESTAMP,
    duration INTEGER NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_presence_date ON office_presence(date, start_time);
"""

# Columns added after the first release: (table, column, type)
MIGRATIONS = [
    ("office_presence", "device_id", "INTEGER REFERENCES monitored_devices(id) ON DELETE SET NULL"),
    ("office_presence", "created_at", "TIMESTAMP"),
    ("office_presence", "updated_at", "TIMESTAMP"),
]

SUMMARY_PERIODS = {
    "day": "date",
    "week": "strftime('%Y-W%W', date)",
    "month": "strftime('%Y-%m', date)",
}

DateLike = Union[date, datetime, str]


def _timestamp(value: datetime) -> str:
    return value.isoformat(timespec="seconds")


def minutes_between(start: datetime, end: datetime) -> int:
    """Whole minutes from start to end, rounded down."""
    return max(0, int((end - start).total_seconds() // 60))


def _check_times(start: datetime, end: datetime) -> None:
    if end < start:
        raise ValueError(
            f"end_time {end.isoformat()} is before start_time {start.isoformat()}"
        )


def _day(value: DateLike) -> str:
    """Normalize a date, datetime or ISO string to YYYY-MM-DD."""
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    return date.fromisoformat(value).isoformat()


def _parse_session_row(row) -> PresenceSession:
    """Parse a database row into a PresenceSession."""
    return PresenceSession(
        id=row["id"],
        date=date.fromisoformat(row["date"]),
        start_time=datetime.fromisoformat(row["start_time"]),
        end_time=datetime.fromisoformat(row["end_time"]) if row["end_time"] else None,
        duration_minutes=row["duration"],
        device_id=row["device_id"],
    )


def _parse_device_row(row) -> MonitoredDevice:
    """Parse a database row into a MonitoredDevice."""
    return MonitoredDevice(
        id=row["id"],
        name=row["name"],
        address=row["address"],
        device_type=row["device_type"] or "unknown",
        enabled=bool(row["enabled"]),
        created_at=datetime.fromisoformat(row["created_at"]) if row["created_at"] else None,
    )


class SessionStore:
    """SQLite-backed presence history and monitored-device registry.

    A short-lived connection is opened per operation, so the same file can
    be read by other processes while the tracker writes. Every SQLite
    failure surfaces as PersistenceError.
    """

    def __init__(self, db_path: Union[str, Path] = DB_PATH):
        self.db_path = Path(db_path)

    @asynccontextmanager
    async def _connect(self) -> AsyncIterator[aiosqlite.Connection]:
        try:
            async with aiosqlite.connect(self.db_path) as db:
                db.row_factory = aiosqlite.Row
                await db.execute("PRAGMA foreign_keys = ON")
                yield db
        except aiosqlite.Error as e:
            raise PersistenceError(f"{self.db_path}: {e}") from e

    async def init(self) -> None:
        """Create the schema and apply column migrations."""
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise PersistenceError(f"Cannot create {self.db_path.parent}: {e}") from e

        async with self._connect() as db:
            await db.executescript(SCHEMA)

            for table, column, column_type in MIGRATIONS:
                async with db.execute(f"PRAGMA table_info({table})") as cursor:
                    existing = {row["name"] for row in await cursor.fetchall()}
                if column not in existing:
                    await db.execute(f"ALTER TABLE {table} ADD COLUMN {column} {column_type}")
                    logger.info(f"Added column {table}.{column}")

            await db.commit()

    # ========================================================================
    # Presence sessions
    # ========================================================================

    async def insert_session(
        self,
        day: DateLike,
        start: datetime,
        end: Optional[datetime],
        duration_minutes: int,
        device_id: Optional[int] = None,
    ) -> int:
        """Insert a presence session and return its id."""
        now = _timestamp(datetime.now())
        async with self._connect() as db:
            cursor = await db.execute(
                """
                INSERT INTO office_presence
                    (date, start_time, end_time, duration, device_id, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    _day(day),
                    _timestamp(start),
                    _timestamp(end) if end else None,
                    duration_minutes,
                    device_id,
                    now,
                    now,
                )
            )
            await db.commit()
            return cursor.lastrowid

    async def update_session(self, session_id: int, end: datetime, duration_minutes: int) -> None:
        """Move the end of an existing session forward."""
        async with self._connect() as db:
            cursor = await db.execute(
                """
                UPDATE office_presence
                SET end_time = ?, duration = ?, updated_at = ?
                WHERE id = ?
                """,
                (_timestamp(end), duration_minutes, _timestamp(datetime.now()), session_id)
            )
            await db.commit()
            if cursor.rowcount == 0:
                raise SessionNotFoundError(f"Presence session {session_id} does not exist")

    async def add_session(
        self,
        start: datetime,
        end: datetime,
        device_id: Optional[int] = None,
    ) -> PresenceSession:
        """Record a session by hand. Date and duration follow from the times."""
        _check_times(start, end)
        session_id = await self.insert_session(
            start.date(), start, end, minutes_between(start, end), device_id
        )
        return await self.get_session(session_id)

    async def update_session_times(
        self,
        session_id: int,
        start: datetime,
        end: datetime,
    ) -> Optional[PresenceSession]:
        """Correct the times of a session. Returns None if it does not exist."""
        _check_times(start, end)
        async with self._connect() as db:
            cursor = await db.execute(
                """
                UPDATE office_presence
                SET date = ?, start_time = ?, end_time = ?, duration = ?, updated_at = ?
                WHERE id = ?
                """,
                (
                    _day(start),
                    _timestamp(start),
                    _timestamp(end),
                    minutes_between(start, end),
                    _timestamp(datetime.now()),
                    session_id,
                )
            )
            await db.commit()
            if cursor.rowcount == 0:
                return None
        return await self.get_session(session_id)

    async def get_session(self, session_id: int) -> Optional[PresenceSession]:
        """Get a presence session by id."""
        async with self._connect() as db:
            async with db.execute(
                "SELECT * FROM office_presence WHERE id = ?", (session_id,)
            ) as cursor:
                row = await cursor.fetchone()
                return _parse_session_row(row) if row else None

    async def query_sessions(self, day: DateLike) -> list[PresenceSession]:
        """Get the closed sessions of a day, earliest first."""
        async with self._connect() as db:
            async with db.execute(
                """
                SELECT * FROM office_presence
                WHERE date = ? AND end_time IS NOT NULL
                ORDER BY start_time ASC
                """,
                (_day(day),)
            ) as cursor:
                rows = await cursor.fetchall()
                return [_parse_session_row(row) for row in rows]

    async def sum_duration(self, day: DateLike) -> int:
        """Total minutes recorded for a day (0 if none)."""
        async with self._connect() as db:
            async with db.execute(
                """
                SELECT COALESCE(SUM(duration), 0) FROM office_presence
                WHERE date = ? AND end_time IS NOT NULL
                """,
                (_day(day),)
            ) as cursor:
                row = await cursor.fetchone()
                return int(row[0])

    async def delete_session(self, session_id: int) -> bool:
        """Delete a presence session. Returns False if it did not exist."""
        async with self._connect() as db:
            cursor = await db.execute(
                "DELETE FROM office_presence WHERE id = ?", (session_id,)
            )
            await db.commit()
            return cursor.rowcount > 0

    async def get_summary(
        self,
        start_date: Optional[DateLike] = None,
        end_date: Optional[DateLike] = None,
        group_by: str = "day",
    ) -> list[dict]:
        """Aggregate presence per day, week or month.

        Returns a list of {"period", "sessions", "total_minutes"} ordered
        by period.
        """
        if group_by not in SUMMARY_PERIODS:
            raise ValueError(
                f"group_by must be one of {', '.join(SUMMARY_PERIODS)}, got {group_by!r}"
            )

        conditions = ["end_time IS NOT NULL"]
        params = []
        if start_date:
            conditions.append("date >= ?")
            params.append(_day(start_date))
        if end_date:
            conditions.append("date <= ?")
            params.append(_day(end_date))

        query = f"""
            SELECT {SUMMARY_PERIODS[group_by]} AS period,
                   COUNT(*) AS sessions,
                   SUM(duration) AS total_minutes
            FROM office_presence
            WHERE {" AND ".join(conditions)}
            GROUP BY period
            ORDER BY period ASC
        """

        async with self._connect() as db:
            async with db.execute(query, params) as cursor:
                rows = await cursor.fetchall()
                return [
                    {
                        "period": row["period"],
                        "sessions": row["sessions"],
                        "total_minutes": row["total_minutes"],
                    }
                    for row in rows
                ]

    # ========================================================================
    # Monitored devices
    # ========================================================================

    async def add_device(self, name: str, address: str, device_type: str = "unknown") -> MonitoredDevice:
        """Register a device for presence monitoring."""
        address = address.upper()
        created_at = datetime.now().replace(microsecond=0)
        async with self._connect() as db:
            cursor = await db.execute(
                """
                INSERT INTO monitored_devices (name, address, device_type, enabled, created_at)
                VALUES (?, ?, ?, 1, ?)
                """,
                (name, address, device_type, _timestamp(created_at))
            )
            await db.commit()
            return MonitoredDevice(
                id=cursor.lastrowid,
                name=name,
                address=address,
                device_type=device_type,
                enabled=True,
                created_at=created_at,
            )

    async def get_device(self, device_id: int) -> Optional[MonitoredDevice]:
        """Get a monitored device by id."""
        async with self._connect() as db:
            async with db.execute(
                "SELECT * FROM monitored_devices WHERE id = ?", (device_id,)
            ) as cursor:
                row = await cursor.fetchone()
                return _parse_device_row(row) if row else None

    async def get_device_by_address(self, address: str) -> Optional[MonitoredDevice]:
        """Get a monitored device by hardware address."""
        async with self._connect() as db:
            async with db.execute(
                "SELECT * FROM monitored_devices WHERE address = ?", (address.upper(),)
            ) as cursor:
                row = await cursor.fetchone()
                return _parse_device_row(row) if row else None

    async def get_devices(self, enabled_only: bool = False) -> list[MonitoredDevice]:
        """Get all monitored devices."""
        query = "SELECT * FROM monitored_devices"
        if enabled_only:
            query += " WHERE enabled = 1"
        query += " ORDER BY name"

        async with self._connect() as db:
            async with db.execute(query) as cursor:
                rows = await cursor.fetchall()
                return [_parse_device_row(row) for row in rows]

    async def set_device_enabled(self, device_id: int, enabled: bool) -> bool:
        """Enable or disable a device. Returns False if it does not exist."""
        async with self._connect() as db:
            cursor = await db.execute(
                "UPDATE monitored_devices SET enabled = ? WHERE id = ?",
                (1 if enabled else 0, device_id)
            )
            await db.commit()
            return cursor.rowcount > 0

    async def delete_device(self, device_id: int) -> bool:
        """Delete a device. Its sessions stay, detached from it."""
        async with self._connect() as db:
            cursor = await db.execute(
                "DELETE FROM monitored_devices WHERE id = ?", (device_id,)
            )
            await db.commit()
            return cursor.rowcount > 0
