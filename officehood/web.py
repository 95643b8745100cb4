"""Officehood JSON API."""

import logging
from datetime import date, datetime
from typing import Optional

from aiohttp import web

from .classifier import classify_device, get_all_types
from .config import WEB_HOST, WEB_PORT
from .errors import ConfigurationError, PersistenceError
from .tracker import PresenceTracker

logger = logging.getLogger(__name__)


@web.middleware
async def error_middleware(request: web.Request, handler) -> web.StreamResponse:
    """Turn store failures into JSON errors instead of HTML 500 pages."""
    try:
        return await handler(request)
    except PersistenceError as e:
        logger.error(f"{request.method} {request.path} failed: {e}")
        return web.json_response({"error": str(e)}, status=500)


async def _read_object(request: web.Request) -> Optional[dict]:
    """The JSON object in the request body, or None if the body is not one."""
    try:
        data = await request.json()
    except ValueError:
        return None
    return data if isinstance(data, dict) else None


def _parse_time(data: dict, key: str) -> datetime:
    """Parse an ISO timestamp field as local time. Raises ValueError."""
    raw = data.get(key)
    if not isinstance(raw, str) or not raw:
        raise ValueError(f"{key} is required")
    try:
        value = datetime.fromisoformat(raw)
    except ValueError:
        raise ValueError(f"Invalid {key}: {raw!r}") from None
    if value.tzinfo is not None:
        value = value.astimezone().replace(tzinfo=None)
    return value


def _parse_id(request: web.Request) -> Optional[int]:
    try:
        return int(request.match_info["id"])
    except ValueError:
        return None


class WebServer:
    """HTTP front end for the presence tracker."""

    def __init__(self, tracker: PresenceTracker, host: str = WEB_HOST, port: int = WEB_PORT):
        self.tracker = tracker
        self.store = tracker.store
        self.scanner = tracker.scanner
        self.host = host
        self.port = port
        self.app = web.Application(middlewares=[error_middleware])
        self._runner: Optional[web.AppRunner] = None
        self._setup_routes()

    def _setup_routes(self):
        self.app.router.add_get("/api/status", self.api_status)
        self.app.router.add_post("/api/presence/start", self.api_start)
        self.app.router.add_post("/api/presence/stop", self.api_stop)
        self.app.router.add_get("/api/presence/today", self.api_presence_today)
        self.app.router.add_get("/api/presence/total", self.api_total_today)
        self.app.router.add_get("/api/presence/summary", self.api_summary)
        self.app.router.add_get("/api/presence/save-interval", self.api_get_save_interval)
        self.app.router.add_put("/api/presence/save-interval", self.api_set_save_interval)
        self.app.router.add_get("/api/presence", self.api_presence_by_date)
        self.app.router.add_post("/api/presence", self.api_add_session)
        self.app.router.add_get("/api/presence/{id}", self.api_get_session)
        self.app.router.add_put("/api/presence/{id}", self.api_update_session)
        self.app.router.add_delete("/api/presence/{id}", self.api_delete_session)
        self.app.router.add_get("/api/devices", self.api_get_devices)
        self.app.router.add_post("/api/devices", self.api_add_device)
        self.app.router.add_post("/api/devices/{id}/enabled", self.api_set_device_enabled)
        self.app.router.add_delete("/api/devices/{id}", self.api_delete_device)
        self.app.router.add_get("/api/device-types", self.api_device_types)
        self.app.router.add_get("/api/scan/devices", self.api_scan_devices)
        self.app.router.add_post("/api/scan", self.api_scan)

    # ========================================================================
    # Presence
    # ========================================================================

    async def api_status(self, request: web.Request) -> web.Response:
        """Current tracker state."""
        today_total = await self.tracker.get_total_minutes_today()
        state = self.tracker.state
        return web.json_response({
            "active": state.active,
            "in_office": state.in_office,
            "phase": self.tracker.phase.value,
            "session_start": state.session_start.isoformat() if state.session_start else None,
            "last_detection": state.last_detection.isoformat() if state.last_detection else None,
            "session_duration": self.tracker.session_duration,
            "today_total_minutes": today_total,
            "scanning": self.scanner.is_scanning,
            "monitored_devices": len(self.tracker.watchlist),
        })

    async def api_start(self, request: web.Request) -> web.Response:
        try:
            await self.tracker.start()
        except ConfigurationError as e:
            return web.json_response({"error": str(e)}, status=400)
        return web.json_response({"active": self.tracker.active})

    async def api_stop(self, request: web.Request) -> web.Response:
        await self.tracker.stop()
        return web.json_response({"active": self.tracker.active})

    async def api_presence_today(self, request: web.Request) -> web.Response:
        """Today's sessions."""
        sessions = await self.tracker.get_today_presence()
        return web.json_response({
            "date": self.tracker.clock.today().isoformat(),
            "sessions": [s.to_dict() for s in sessions],
        })

    async def api_presence_by_date(self, request: web.Request) -> web.Response:
        """Sessions of ?date=YYYY-MM-DD."""
        raw = request.query.get("date")
        if not raw:
            return web.json_response({"error": "date is required"}, status=400)
        try:
            day = date.fromisoformat(raw)
        except ValueError:
            return web.json_response({"error": "Invalid date format"}, status=400)

        sessions = await self.tracker.get_presence_by_date(day)
        return web.json_response({
            "date": day.isoformat(),
            "sessions": [s.to_dict() for s in sessions],
        })

    async def api_total_today(self, request: web.Request) -> web.Response:
        total = await self.tracker.get_total_minutes_today()
        return web.json_response({
            "date": self.tracker.clock.today().isoformat(),
            "total_minutes": total,
        })

    async def api_summary(self, request: web.Request) -> web.Response:
        """Presence grouped by day, week or month."""
        try:
            start_date = request.query.get("start_date")
            end_date = request.query.get("end_date")
            summary = await self.store.get_summary(
                start_date=date.fromisoformat(start_date) if start_date else None,
                end_date=date.fromisoformat(end_date) if end_date else None,
                group_by=request.query.get("group_by", "day"),
            )
        except ValueError as e:
            return web.json_response({"error": str(e)}, status=400)
        return web.json_response({"summary": summary})

    async def api_delete_session(self, request: web.Request) -> web.Response:
        session_id = _parse_id(request)
        if session_id is None or not await self.store.delete_session(session_id):
            return web.json_response({"error": "Session not found"}, status=404)
        return web.json_response({"status": "ok"})

    async def api_get_session(self, request: web.Request) -> web.Response:
        session_id = _parse_id(request)
        session = await self.store.get_session(session_id) if session_id is not None else None
        if session is None:
            return web.json_response({"error": "Session not found"}, status=404)
        return web.json_response(session.to_dict())

    async def api_add_session(self, request: web.Request) -> web.Response:
        """Record a presence session by hand."""
        data = await _read_object(request)
        if data is None:
            return web.json_response({"error": "Expected a JSON object"}, status=400)

        device_id = data.get("device_id")
        try:
            start = _parse_time(data, "start_time")
            end = _parse_time(data, "end_time")
            if device_id is not None:
                if not isinstance(device_id, int) or isinstance(device_id, bool):
                    raise ValueError("device_id must be an integer")
                if await self.store.get_device(device_id) is None:
                    raise ValueError(f"Device {device_id} does not exist")
            session = await self.store.add_session(start, end, device_id)
        except ValueError as e:
            return web.json_response({"error": str(e)}, status=400)
        return web.json_response(session.to_dict(), status=201)

    async def api_update_session(self, request: web.Request) -> web.Response:
        """Correct the start and end of a recorded session."""
        session_id = _parse_id(request)
        data = await _read_object(request)
        if data is None:
            return web.json_response({"error": "Expected a JSON object"}, status=400)

        try:
            start = _parse_time(data, "start_time")
            end = _parse_time(data, "end_time")
            session = None
            if session_id is not None:
                session = await self.store.update_session_times(session_id, start, end)
        except ValueError as e:
            return web.json_response({"error": str(e)}, status=400)
        if session is None:
            return web.json_response({"error": "Session not found"}, status=404)
        return web.json_response(session.to_dict())

    async def api_get_save_interval(self, request: web.Request) -> web.Response:
        """How often the open session is checkpointed."""
        return web.json_response({
            "minutes": self.tracker.config.checkpoint_interval_ms // 60_000,
        })

    async def api_set_save_interval(self, request: web.Request) -> web.Response:
        data = await _read_object(request)
        if data is None:
            return web.json_response({"error": "Expected a JSON object"}, status=400)

        minutes = data.get("minutes")
        if not isinstance(minutes, int) or isinstance(minutes, bool):
            return web.json_response({"error": "minutes must be an integer"}, status=400)
        try:
            self.tracker.set_checkpoint_interval(minutes * 60_000)
        except ConfigurationError as e:
            return web.json_response({"error": str(e)}, status=400)
        return web.json_response({"minutes": minutes})

    # ========================================================================
    # Monitored devices
    # ========================================================================

    async def api_get_devices(self, request: web.Request) -> web.Response:
        devices = await self.store.get_devices()
        return web.json_response({"devices": [d.to_dict() for d in devices]})

    async def api_add_device(self, request: web.Request) -> web.Response:
        """Register a device for presence monitoring."""
        data = await _read_object(request)
        if data is None:
            return web.json_response({"error": "Expected a JSON object"}, status=400)

        name = str(data.get("name") or "").strip()
        address = str(data.get("address") or "").strip()
        if not name or not address:
            return web.json_response({"error": "name and address are required"}, status=400)

        if await self.store.get_device_by_address(address):
            return web.json_response({"error": f"{address} is already registered"}, status=409)

        device_type = data.get("device_type") or classify_device(name)
        device = await self.store.add_device(name, address, device_type)
        await self.tracker.reload_devices()
        return web.json_response(device.to_dict(), status=201)

    async def api_set_device_enabled(self, request: web.Request) -> web.Response:
        device_id = _parse_id(request)
        data = await _read_object(request)
        if data is None:
            return web.json_response({"error": "Expected a JSON object"}, status=400)

        enabled = data.get("enabled", True)
        if not isinstance(enabled, bool):
            return web.json_response({"error": "enabled must be true or false"}, status=400)
        if device_id is None or not await self.store.set_device_enabled(device_id, enabled):
            return web.json_response({"error": "Device not found"}, status=404)

        await self.tracker.reload_devices()
        return web.json_response({"id": device_id, "enabled": enabled})

    async def api_delete_device(self, request: web.Request) -> web.Response:
        device_id = _parse_id(request)
        if device_id is None or not await self.store.delete_device(device_id):
            return web.json_response({"error": "Device not found"}, status=404)

        await self.tracker.reload_devices()
        return web.json_response({"status": "ok"})

    async def api_device_types(self, request: web.Request) -> web.Response:
        return web.json_response({
            "types": [{"id": t, "label": label} for t, label in get_all_types()]
        })

    # ========================================================================
    # Scanning
    # ========================================================================

    async def api_scan_devices(self, request: web.Request) -> web.Response:
        """Devices seen in the current or last scan cycle."""
        return web.json_response({
            "scanning": self.scanner.is_scanning,
            "devices": [d.to_dict() for d in self.scanner.discovered_devices()],
        })

    async def api_scan(self, request: web.Request) -> web.Response:
        """Run one bounded scan, e.g. to find a device to register."""
        try:
            duration = float(request.query.get("duration", self.tracker.config.scan_duration))
        except ValueError:
            return web.json_response({"error": "Invalid duration"}, status=400)
        limit = self.tracker.config.scan_interval
        if not 0 < duration <= limit:
            return web.json_response(
                {"error": f"duration must be between 0 and {limit:g} seconds"}, status=400
            )

        devices = await self.scanner.scan(duration)
        return web.json_response({"devices": [d.to_dict() for d in devices]})

    async def start(self) -> web.AppRunner:
        """Start the web server."""
        self._runner = web.AppRunner(self.app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.host, self.port)
        await site.start()
        logger.info(f"API available at http://{self.host}:{self.port}/api/status")
        return self._runner

    async def stop(self) -> None:
        """Stop the web server."""
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
            logger.info("Web server stopped")
