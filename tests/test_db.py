"""Tests for the SQLite session store."""

from datetime import date, datetime, timedelta

import aiosqlite
import pytest

from officehood.db import SessionStore
from officehood.errors import PersistenceError, SessionNotFoundError

from conftest import PHONE, T0, WATCH


class TestSessions:

    @pytest.mark.asyncio
    async def test_insert_and_get(self, sqlite_store):
        end = T0 + timedelta(minutes=42, seconds=10)

        session_id = await sqlite_store.insert_session(T0.date(), T0, end, 42)
        session = await sqlite_store.get_session(session_id)

        assert session.date == T0.date()
        assert session.start_time == T0
        assert session.end_time == end
        assert session.duration_minutes == 42
        assert session.device_id is None

    @pytest.mark.asyncio
    async def test_update_moves_end(self, sqlite_store):
        session_id = await sqlite_store.insert_session(
            T0.date(), T0, T0 + timedelta(minutes=15), 15
        )

        await sqlite_store.update_session(session_id, T0 + timedelta(minutes=40), 40)

        session = await sqlite_store.get_session(session_id)
        assert session.end_time == T0 + timedelta(minutes=40)
        assert session.duration_minutes == 40

    @pytest.mark.asyncio
    async def test_update_missing_session_raises(self, sqlite_store):
        with pytest.raises(SessionNotFoundError):
            await sqlite_store.update_session(999, T0, 1)

    @pytest.mark.asyncio
    async def test_query_orders_by_start_and_filters_day(self, sqlite_store):
        afternoon = T0 + timedelta(hours=5)
        tomorrow = T0 + timedelta(days=1)
        await sqlite_store.insert_session(afternoon.date(), afternoon, afternoon + timedelta(minutes=20), 20)
        await sqlite_store.insert_session(T0.date(), T0, T0 + timedelta(minutes=90), 90)
        await sqlite_store.insert_session(tomorrow.date(), tomorrow, tomorrow + timedelta(minutes=5), 5)

        sessions = await sqlite_store.query_sessions(T0.date())

        assert [s.start_time for s in sessions] == [T0, afternoon]
        assert await sqlite_store.sum_duration(T0.date()) == 110
        assert await sqlite_store.sum_duration("2026-10-20") == 5

    @pytest.mark.asyncio
    async def test_open_rows_are_not_counted(self, sqlite_store):
        await sqlite_store.insert_session(T0.date(), T0, None, 0)

        assert await sqlite_store.query_sessions(T0) == []
        assert await sqlite_store.sum_duration(T0) == 0

    @pytest.mark.asyncio
    async def test_sum_of_empty_day_is_zero(self, sqlite_store):
        assert await sqlite_store.sum_duration(date(2026, 1, 1)) == 0

    @pytest.mark.asyncio
    async def test_delete_session(self, sqlite_store):
        session_id = await sqlite_store.insert_session(T0.date(), T0, T0 + timedelta(minutes=5), 5)

        assert await sqlite_store.delete_session(session_id)
        assert not await sqlite_store.delete_session(session_id)
        assert await sqlite_store.get_session(session_id) is None

    @pytest.mark.asyncio
    async def test_add_session_by_hand(self, sqlite_store):
        device = await sqlite_store.add_device("Watch", WATCH)
        end = T0 + timedelta(hours=2, seconds=50)

        session = await sqlite_store.add_session(T0, end, device.id)

        assert session.date == T0.date()
        assert session.end_time == end
        assert session.duration_minutes == 120
        assert session.device_id == device.id
        assert await sqlite_store.sum_duration(T0) == 120

    @pytest.mark.asyncio
    async def test_add_session_rejects_end_before_start(self, sqlite_store):
        with pytest.raises(ValueError, match="before start_time"):
            await sqlite_store.add_session(T0, T0 - timedelta(minutes=1))

        assert await sqlite_store.query_sessions(T0) == []

    @pytest.mark.asyncio
    async def test_update_session_times(self, sqlite_store):
        session_id = await sqlite_store.insert_session(T0.date(), T0, T0 + timedelta(minutes=30), 30)
        start = T0 - timedelta(days=1)

        session = await sqlite_store.update_session_times(session_id, start, start + timedelta(minutes=95))

        assert session.id == session_id
        assert session.date == start.date()
        assert session.duration_minutes == 95
        assert await sqlite_store.query_sessions(T0) == []

    @pytest.mark.asyncio
    async def test_update_times_of_missing_session(self, sqlite_store):
        assert await sqlite_store.update_session_times(999, T0, T0 + timedelta(minutes=5)) is None

    @pytest.mark.asyncio
    async def test_update_times_rejects_end_before_start(self, sqlite_store):
        session_id = await sqlite_store.insert_session(T0.date(), T0, T0 + timedelta(minutes=30), 30)

        with pytest.raises(ValueError):
            await sqlite_store.update_session_times(session_id, T0, T0 - timedelta(seconds=1))

        assert (await sqlite_store.get_session(session_id)).duration_minutes == 30

    @pytest.mark.asyncio
    async def test_bad_date_string_raises_value_error(self, sqlite_store):
        with pytest.raises(ValueError):
            await sqlite_store.query_sessions("19/10/2026")


class TestSummary:

    async def _fill(self, store):
        days = [
            (datetime(2026, 10, 12, 9), 60),
            (datetime(2026, 10, 12, 14), 30),
            (datetime(2026, 10, 19, 9), 120),
            (datetime(2026, 11, 2, 9), 45),
        ]
        for start, minutes in days:
            await store.insert_session(start.date(), start, start + timedelta(minutes=minutes), minutes)

    @pytest.mark.asyncio
    async def test_group_by_day(self, sqlite_store):
        await self._fill(sqlite_store)

        summary = await sqlite_store.get_summary()

        assert summary == [
            {"period": "2026-10-12", "sessions": 2, "total_minutes": 90},
            {"period": "2026-10-19", "sessions": 1, "total_minutes": 120},
            {"period": "2026-11-02", "sessions": 1, "total_minutes": 45},
        ]

    @pytest.mark.asyncio
    async def test_group_by_month_with_range(self, sqlite_store):
        await self._fill(sqlite_store)

        summary = await sqlite_store.get_summary(
            start_date=date(2026, 10, 13), end_date="2026-11-30", group_by="month"
        )

        assert summary == [
            {"period": "2026-10", "sessions": 1, "total_minutes": 120},
            {"period": "2026-11", "sessions": 1, "total_minutes": 45},
        ]

    @pytest.mark.asyncio
    async def test_group_by_week(self, sqlite_store):
        await self._fill(sqlite_store)

        summary = await sqlite_store.get_summary(group_by="week")

        assert [row["sessions"] for row in summary] == [2, 1, 1]
        assert all(row["period"].startswith("2026-W") for row in summary)

    @pytest.mark.asyncio
    async def test_unknown_grouping(self, sqlite_store):
        with pytest.raises(ValueError):
            await sqlite_store.get_summary(group_by="year")


class TestDevices:

    @pytest.mark.asyncio
    async def test_add_and_lookup(self, sqlite_store):
        device = await sqlite_store.add_device("My Watch", WATCH.lower(), "watch")

        assert device.address == WATCH
        assert (await sqlite_store.get_device(device.id)).name == "My Watch"
        assert (await sqlite_store.get_device_by_address(WATCH.lower())).id == device.id
        assert await sqlite_store.get_device(999) is None

    @pytest.mark.asyncio
    async def test_duplicate_address_raises(self, sqlite_store):
        await sqlite_store.add_device("My Watch", WATCH)

        with pytest.raises(PersistenceError):
            await sqlite_store.add_device("Same Watch", WATCH.lower())

    @pytest.mark.asyncio
    async def test_enabled_filter(self, sqlite_store):
        watch = await sqlite_store.add_device("Watch", WATCH)
        phone = await sqlite_store.add_device("Phone", PHONE)

        assert await sqlite_store.set_device_enabled(phone.id, False)
        assert not await sqlite_store.set_device_enabled(999, False)

        assert [d.id for d in await sqlite_store.get_devices()] == [phone.id, watch.id]
        assert [d.id for d in await sqlite_store.get_devices(enabled_only=True)] == [watch.id]

    @pytest.mark.asyncio
    async def test_deleting_device_keeps_its_sessions(self, sqlite_store):
        device = await sqlite_store.add_device("Watch", WATCH)
        session_id = await sqlite_store.insert_session(
            T0.date(), T0, T0 + timedelta(minutes=10), 10, device.id
        )

        assert await sqlite_store.delete_device(device.id)
        assert not await sqlite_store.delete_device(device.id)

        session = await sqlite_store.get_session(session_id)
        assert session.duration_minutes == 10
        assert session.device_id is None


class TestSchema:

    @pytest.mark.asyncio
    async def test_init_is_repeatable(self, sqlite_store):
        await sqlite_store.insert_session(T0.date(), T0, T0 + timedelta(minutes=3), 3)

        await sqlite_store.init()

        assert await sqlite_store.sum_duration(T0) == 3

    @pytest.mark.asyncio
    async def test_migrates_legacy_table(self, tmp_path):
        db_path = tmp_path / "legacy.db"
        async with aiosqlite.connect(db_path) as db:
            await db.execute(
                """
                CREATE TABLE office_presence (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    date DATE NOT NULL,
                    start_time TIMESTAMP NOT NULL,
                    end_time TIMESTAMP,
                    duration INTEGER NOT NULL
                )
                """
            )
            await db.execute(
                "INSERT INTO office_presence (date, start_time, end_time, duration) "
                "VALUES ('2026-10-01', '2026-10-01T09:00:00', '2026-10-01T11:00:00', 120)"
            )
            await db.commit()

        store = SessionStore(db_path)
        await store.init()

        [session] = await store.query_sessions("2026-10-01")
        assert session.duration_minutes == 120
        assert session.device_id is None

    @pytest.mark.asyncio
    async def test_init_creates_parent_directory(self, tmp_path):
        store = SessionStore(tmp_path / "nested" / "dir" / "officehood.db")

        await store.init()

        assert store.db_path.exists()

    @pytest.mark.asyncio
    async def test_unusable_path_raises_persistence_error(self, tmp_path):
        blocker = tmp_path / "file"
        blocker.write_text("not a directory")
        store = SessionStore(blocker / "officehood.db")

        with pytest.raises(PersistenceError):
            await store.init()
