"""Shared fixtures: a hand-driven clock, an in-memory store and a fake radio."""

import asyncio
from datetime import date, datetime, timedelta
from types import SimpleNamespace
from typing import Optional

import pytest
import pytest_asyncio

from officehood.clock import Clock
from officehood.config import TrackerConfig
from officehood.db import MonitoredDevice, PresenceSession, SessionStore
from officehood.errors import PersistenceError, SessionNotFoundError
from officehood.scanner import BluetoothScanner
from officehood.tracker import PresenceTracker

T0 = datetime(2026, 10, 19, 9, 0, 0)

WATCH = "AA:BB:CC:DD:EE:01"
PHONE = "AA:BB:CC:DD:EE:02"
STRANGER = "11:22:33:44:55:66"


class FakeClock(Clock):
    """Clock that only moves when a test advances it."""

    def __init__(self, start: datetime = T0):
        self.current = start

    def now(self) -> datetime:
        return self.current

    def advance(self, seconds: float = 0, minutes: float = 0) -> datetime:
        self.current += timedelta(seconds=seconds, minutes=minutes)
        return self.current

    def at(self, seconds: float) -> datetime:
        """Jump to T0 + seconds."""
        self.current = T0 + timedelta(seconds=seconds)
        return self.current


class MemoryStore:
    """In-memory stand-in for SessionStore with switchable failures."""

    def __init__(self):
        self.sessions: list[PresenceSession] = []
        self.devices: list[MonitoredDevice] = []
        self.fail = False
        self.writes = 0

    def _check(self):
        if self.fail:
            raise PersistenceError("database is locked")

    async def insert_session(self, day, start, end, duration_minutes, device_id=None) -> int:
        self._check()
        self.writes += 1
        session = PresenceSession(
            id=self.writes,
            date=day if isinstance(day, date) else date.fromisoformat(day),
            start_time=start,
            end_time=end,
            duration_minutes=duration_minutes,
            device_id=device_id,
        )
        self.sessions.append(session)
        return session.id

    async def update_session(self, session_id, end, duration_minutes) -> None:
        self._check()
        self.writes += 1
        for session in self.sessions:
            if session.id == session_id:
                session.end_time = end
                session.duration_minutes = duration_minutes
                return
        raise SessionNotFoundError(f"Presence session {session_id} does not exist")

    async def delete_session(self, session_id) -> bool:
        self._check()
        before = len(self.sessions)
        self.sessions = [s for s in self.sessions if s.id != session_id]
        return len(self.sessions) < before

    async def query_sessions(self, day) -> list[PresenceSession]:
        self._check()
        if isinstance(day, datetime):
            day = day.date()
        return sorted(
            (s for s in self.sessions if s.date == day and s.end_time is not None),
            key=lambda s: s.start_time,
        )

    async def sum_duration(self, day) -> int:
        return sum(s.duration_minutes for s in await self.query_sessions(day))

    async def get_devices(self, enabled_only: bool = False) -> list[MonitoredDevice]:
        self._check()
        return [d for d in self.devices if d.enabled or not enabled_only]

    def register(self, name: str, address: str, enabled: bool = True) -> MonitoredDevice:
        device = MonitoredDevice(
            id=len(self.devices) + 1,
            name=name,
            address=address,
            enabled=enabled,
        )
        self.devices.append(device)
        return device


class FakeBackend:
    """Plays the part of bleak.BleakScanner."""

    def __init__(self, factory: "BackendFactory", detection_callback=None, **kwargs):
        self.factory = factory
        self.detection_callback = detection_callback
        self.kwargs = kwargs
        self.started = False
        self.stopped = False

    async def start(self):
        if self.factory.fail_start:
            raise self.factory.fail_start
        self.started = True
        for advert in self.factory.adverts:
            self.advertise(**advert)

    async def stop(self):
        if self.factory.fail_stop:
            raise self.factory.fail_stop
        self.stopped = True

    def advertise(
        self,
        address: str,
        name: Optional[str] = None,
        rssi: int = -60,
        local_name: Optional[str] = None,
        service_uuids: tuple = (),
    ):
        device = SimpleNamespace(address=address, name=name)
        adv_data = SimpleNamespace(rssi=rssi, local_name=local_name, service_uuids=list(service_uuids))
        self.detection_callback(device, adv_data)


class BackendFactory:
    """Creates FakeBackends and remembers them."""

    def __init__(self):
        self.instances: list[FakeBackend] = []
        self.fail_start: Optional[Exception] = None
        self.fail_stop: Optional[Exception] = None
        self.adverts: list[dict] = []

    def __call__(self, **kwargs) -> FakeBackend:
        backend = FakeBackend(self, **kwargs)
        self.instances.append(backend)
        return backend

    @property
    def last(self) -> FakeBackend:
        return self.instances[-1]


class Recorder:
    """Collects (event, args) pairs from an EventEmitter."""

    def __init__(self, emitter):
        self.calls: list[tuple] = []
        for name in emitter.names:
            emitter.on(name, self._make(name))

    def _make(self, name):
        def listener(*args):
            self.calls.append((name, *args))
        listener.__name__ = f"record_{name}"
        return listener

    def of(self, name: str) -> list[tuple]:
        return [call[1:] for call in self.calls if call[0] == name]

    def names(self) -> list[str]:
        return [call[0] for call in self.calls]


async def settle(rounds: int = 10) -> None:
    """Give queued tasks a chance to run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def backends() -> BackendFactory:
    return BackendFactory()


@pytest.fixture
def scanner(backends) -> BluetoothScanner:
    return BluetoothScanner(adapter="hci0", backend_factory=backends)


@pytest.fixture
def config() -> TrackerConfig:
    return TrackerConfig(
        scan_interval_ms=60_000,
        scan_duration_ms=30_000,
        absence_timeout_ms=120_000,
        timeout_check_ms=None,
        checkpoint_interval_ms=900_000,
    )


@pytest_asyncio.fixture
async def tracker(scanner, store, config, clock):
    tracker = PresenceTracker(scanner, store, config=config, clock=clock)
    yield tracker
    await tracker.stop()


@pytest_asyncio.fixture
async def sqlite_store(tmp_path) -> SessionStore:
    store = SessionStore(tmp_path / "officehood.db")
    await store.init()
    return store
