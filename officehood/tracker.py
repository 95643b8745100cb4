"""
Office presence tracking.

Turns Bluetooth detections into presence sessions. A session opens on the
first detection, stays open while detections keep arriving, and closes once
nothing has been seen for the absence timeout (or when the tracker stops).

All inputs (detections, the periodic scan, timeout and checkpoint timers,
and the end of each scan window) are posted to one inbox and handled one at
a time, so state transitions never interleave.
"""

import asyncio
import logging
from dataclasses import dataclass, replace
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Optional, Union

from .clock import SYSTEM_CLOCK, Clock
from .config import MIN_SESSION_MINUTES, TrackerConfig
from .db import PresenceSession, SessionStore, minutes_between
from .errors import PersistenceError, SessionNotFoundError
from .events import EventEmitter
from .scanner import BluetoothScanner

logger = logging.getLogger(__name__)

SCAN_TICK = "scan_tick"
SCAN_STOP = "scan_stop"
TIMEOUT_TICK = "timeout_tick"
CHECKPOINT_TICK = "checkpoint_tick"
DETECTED = "detected"


class TrackerPhase(Enum):
    STOPPED = "stopped"
    IDLE = "idle"
    OCCUPIED = "occupied"


@dataclass
class TrackerState:
    """In-memory state of the tracker. Never persisted."""
    active: bool = False
    in_office: bool = False
    session_start: Optional[datetime] = None
    last_detection: Optional[datetime] = None
    # Row written by the first checkpoint of the open session
    session_id: Optional[int] = None
    device_id: Optional[int] = None


@dataclass(frozen=True)
class InboxMessage:
    kind: str
    address: Optional[str] = None


class PresenceTracker:
    """Presence session state machine.

    Events (subscribe through ``tracker.events.on``):

    - ``active_changed(active: bool)``
    - ``in_office_changed(in_office: bool)``
    - ``session_duration_changed(minutes: int)``
    - ``session_started()``
    - ``session_ended(minutes: int)``
    - ``error(message: str)``
    """

    def __init__(
        self,
        scanner: BluetoothScanner,
        store: SessionStore,
        config: Optional[TrackerConfig] = None,
        clock: Clock = SYSTEM_CLOCK,
    ):
        self.scanner = scanner
        self.store = store
        self.config = config or TrackerConfig()
        self.clock = clock
        self.events = EventEmitter(
            "active_changed",
            "in_office_changed",
            "session_duration_changed",
            "session_started",
            "session_ended",
            "error",
        )

        self._state = TrackerState()
        self._watchlist: dict[str, Optional[int]] = {}
        self._inbox: Optional[asyncio.Queue] = None
        self._consumer: Optional[asyncio.Task] = None
        self._timers: list[asyncio.Task] = []
        self._checkpoint_timer: Optional[asyncio.Task] = None
        self._scan_windows: set[asyncio.Task] = set()

        scanner.events.on("device_detected", self._on_device_detected)

    @property
    def active(self) -> bool:
        return self._state.active

    @property
    def in_office(self) -> bool:
        return self._state.in_office

    @property
    def phase(self) -> TrackerPhase:
        if not self._state.active:
            return TrackerPhase.STOPPED
        if self._state.in_office:
            return TrackerPhase.OCCUPIED
        return TrackerPhase.IDLE

    @property
    def state(self) -> TrackerState:
        """A copy of the current state."""
        return replace(self._state)

    @property
    def session_duration(self) -> int:
        """Minutes since the open session started (0 when none is open)."""
        if not self._state.in_office or self._state.session_start is None:
            return 0
        return minutes_between(self._state.session_start, self.clock.now())

    @property
    def watchlist(self) -> dict[str, Optional[int]]:
        """Monitored addresses mapped to their device ids."""
        return dict(self._watchlist)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Begin tracking. Raises ConfigurationError for unusable timers."""
        if self._state.active:
            return

        self.config.validate()
        await self.reload_devices()

        self._inbox = asyncio.Queue()
        self._state = TrackerState(active=True)
        self._consumer = asyncio.create_task(self._process_inbox(self._inbox))
        self._timers = [
            asyncio.create_task(self._every(self.config.scan_interval, SCAN_TICK)),
            asyncio.create_task(self._every(self.config.timeout_check_interval, TIMEOUT_TICK)),
        ]

        self.events.emit("active_changed", True)
        logger.info(
            f"Presence tracking started (scan every {self.config.scan_interval:g}s "
            f"for {self.config.scan_duration:g}s, timeout {self.config.absence_timeout:g}s)"
        )

        # First scan right away rather than one interval from now
        self.post(InboxMessage(SCAN_TICK))

    async def stop(self) -> None:
        """Stop tracking, closing and persisting any open session first."""
        if not self._state.active:
            return

        self._state.active = False
        pending = [*self._timers, *self._scan_windows]
        if self._checkpoint_timer is not None:
            pending.append(self._checkpoint_timer)
            self._checkpoint_timer = None
        for task in pending:
            task.cancel()
        self._timers = []
        self._scan_windows.clear()

        # Let the inbox finish whatever it is handling; queued messages are
        # dropped because the tracker is no longer active.
        consumer, self._consumer = self._consumer, None
        inbox, self._inbox = self._inbox, None
        if consumer is not None:
            inbox.put_nowait(None)
            if consumer is not asyncio.current_task():
                await consumer
        await asyncio.gather(*pending, return_exceptions=True)

        if self._state.in_office:
            await self._close_session()

        await self.scanner.stop_scan()

        self.events.emit("active_changed", False)
        logger.info("Presence tracking stopped")

    async def reload_devices(self) -> None:
        """Refresh the set of monitored addresses from the store."""
        try:
            devices = await self.store.get_devices(enabled_only=True)
        except PersistenceError as e:
            self._report(f"Could not load monitored devices: {e}")
            return

        self._watchlist = {device.address.upper(): device.id for device in devices}
        if self._watchlist:
            logger.info(f"Monitoring {len(self._watchlist)} registered devices")
        else:
            logger.info("No registered devices, any detection counts as presence")

    def set_checkpoint_interval(self, interval_ms: int) -> None:
        """Change how often the open session is checkpointed.

        Raises ConfigurationError for a non-positive interval. An open
        session's checkpoint timer restarts with the new interval.
        """
        config = replace(self.config, checkpoint_interval_ms=interval_ms)
        config.validate()
        self.config = config
        logger.info(f"Checkpoint interval set to {config.checkpoint_interval:g}s")

        if self._state.active and self._state.in_office:
            self._cancel_checkpoint_timer()
            self._start_checkpoint_timer()

    # ------------------------------------------------------------------
    # Inbox
    # ------------------------------------------------------------------

    def post(self, message: InboxMessage) -> None:
        """Queue a message for the inbox. Ignored while stopped."""
        if self._state.active and self._inbox is not None:
            self._inbox.put_nowait(message)

    def _on_device_detected(self, address: str) -> None:
        self.post(InboxMessage(DETECTED, address))

    async def _process_inbox(self, inbox: asyncio.Queue) -> None:
        while True:
            message = await inbox.get()
            if message is None:
                return
            try:
                await self._dispatch(message)
            except Exception as e:
                logger.error(f"Error handling {message.kind}: {e}", exc_info=True)

    async def _dispatch(self, message: InboxMessage) -> None:
        if message.kind == DETECTED:
            await self.handle_device_detected(message.address)
        elif message.kind == TIMEOUT_TICK:
            await self.check_timeout()
        elif message.kind == CHECKPOINT_TICK:
            await self.checkpoint()
        elif message.kind == SCAN_TICK:
            await self.trigger_scan()
        elif message.kind == SCAN_STOP:
            await self.end_scan_window()
        else:
            logger.warning(f"Unknown inbox message: {message.kind}")

    async def _every(self, interval: float, kind: str) -> None:
        while True:
            await asyncio.sleep(interval)
            self.post(InboxMessage(kind))

    async def _after(self, delay: float, kind: str) -> None:
        await asyncio.sleep(delay)
        self.post(InboxMessage(kind))

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    async def handle_device_detected(self, address: str) -> None:
        """A monitored device was seen: open a session or extend the open one."""
        if not self._state.active:
            return

        address = address.upper()
        if self._watchlist and address not in self._watchlist:
            logger.debug(f"Ignoring unregistered device {address}")
            return

        now = self.clock.now()
        self._state.last_detection = now

        if not self._state.in_office:
            self._open_session(now, self._watchlist.get(address))
            logger.info(f"Session started by {address}")

        self.events.emit("session_duration_changed", self.session_duration)

    async def check_timeout(self) -> None:
        """Close the open session if nothing was seen for the absence timeout."""
        state = self._state
        if not state.active or not state.in_office or state.last_detection is None:
            return

        absent = self.clock.now() - state.last_detection
        if absent >= timedelta(milliseconds=self.config.absence_timeout_ms):
            logger.info(f"No detection for {absent.total_seconds():.0f}s, ending session")
            await self._close_session()

    async def checkpoint(self) -> None:
        """Persist the open session's duration so far without closing it."""
        state = self._state
        if not state.active or not state.in_office or state.session_start is None:
            return

        now = self.clock.now()
        duration = minutes_between(state.session_start, now)
        self.events.emit("session_duration_changed", duration)

        if duration < MIN_SESSION_MINUTES:
            return

        try:
            state.session_id = await self._write_session(
                state.session_id, state.session_start, now, duration, state.device_id
            )
        except PersistenceError as e:
            self._report(f"Failed to checkpoint session: {e}")
            return

        logger.info(f"Checkpointed session, {duration} minutes so far")

    async def trigger_scan(self) -> None:
        """Start a scan cycle bounded by the scan duration."""
        if not self._state.active:
            return

        logger.info("Starting periodic scan")
        await self.scanner.start_scan()
        if not self._state.active:
            return

        window = asyncio.create_task(self._after(self.config.scan_duration, SCAN_STOP))
        self._scan_windows.add(window)
        window.add_done_callback(self._scan_windows.discard)

    async def end_scan_window(self) -> None:
        if self._state.active:
            await self.scanner.stop_scan()

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def _open_session(self, now: datetime, device_id: Optional[int]) -> None:
        self._state.in_office = True
        self._state.session_start = now
        self._state.session_id = None
        self._state.device_id = device_id

        self._start_checkpoint_timer()

        self.events.emit("in_office_changed", True)
        self.events.emit("session_started")

    def _start_checkpoint_timer(self) -> None:
        self._checkpoint_timer = asyncio.create_task(
            self._every(self.config.checkpoint_interval, CHECKPOINT_TICK)
        )

    def _cancel_checkpoint_timer(self) -> None:
        if self._checkpoint_timer is not None:
            self._checkpoint_timer.cancel()
            self._checkpoint_timer = None

    async def _close_session(self) -> None:
        """End the open session at the current time and persist it.

        The in-memory transition happens before the write, so a store
        failure loses the record but never leaves the session open.
        """
        state = self._state
        start, session_id, device_id = state.session_start, state.session_id, state.device_id
        end = self.clock.now()
        duration = minutes_between(start, end)

        state.in_office = False
        state.session_start = None
        state.session_id = None
        state.device_id = None
        self._cancel_checkpoint_timer()
        self.events.emit("in_office_changed", False)

        if duration < MIN_SESSION_MINUTES:
            logger.info(f"Discarding session shorter than {MIN_SESSION_MINUTES} minute")
        else:
            try:
                await self._write_session(session_id, start, end, duration, device_id)
            except PersistenceError as e:
                self._report(f"Failed to save session: {e}")
            else:
                logger.info(f"Saved session, duration: {duration} minutes")

        self.events.emit("session_ended", duration)

    async def _write_session(
        self,
        session_id: Optional[int],
        start: datetime,
        end: datetime,
        duration: int,
        device_id: Optional[int],
    ) -> int:
        """Update the session's checkpoint row, or insert one. Returns the row id."""
        if session_id is not None:
            try:
                await self.store.update_session(session_id, end, duration)
                return session_id
            except SessionNotFoundError:
                logger.warning(f"Presence session {session_id} was removed, saving it as a new row")
        return await self.store.insert_session(start.date(), start, end, duration, device_id)

    def _report(self, message: str) -> None:
        logger.error(message)
        self.events.emit("error", message)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_today_presence(self) -> list[PresenceSession]:
        """Today's closed sessions, earliest first."""
        return await self.get_presence_by_date(self.clock.today())

    async def get_presence_by_date(self, day: Union[date, datetime, str]) -> list[PresenceSession]:
        """Closed sessions of the given day, earliest first."""
        try:
            return await self.store.query_sessions(day)
        except PersistenceError as e:
            self._report(f"Failed to query presence: {e}")
            return []

    async def get_total_minutes_today(self) -> int:
        """Sum of today's session durations."""
        try:
            return await self.store.sum_duration(self.clock.today())
        except PersistenceError as e:
            self._report(f"Failed to calculate total minutes: {e}")
            return 0
