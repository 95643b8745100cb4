"""Officehood daemon - office presence detection service."""

import argparse
import asyncio
import logging
import signal
from pathlib import Path
from typing import Optional

from .config import DB_PATH, WEB_HOST, WEB_PORT, TrackerConfig, web_port
from .db import SessionStore
from .errors import OfficehoodError
from .scanner import BluetoothScanner, ScannedDevice, list_adapters
from .tracker import PresenceTracker
from .web import WebServer

logger = logging.getLogger(__name__)


class OfficehoodDaemon:
    """Main daemon process: scanner, tracker, store and API."""

    def __init__(
        self,
        adapter: Optional[str] = None,
        db_path: Path = DB_PATH,
        config: Optional[TrackerConfig] = None,
        host: str = WEB_HOST,
        port: int = WEB_PORT,
        web_enabled: bool = True,
    ):
        self.store = SessionStore(db_path)
        self.scanner = BluetoothScanner(adapter=adapter)
        self.tracker = PresenceTracker(self.scanner, self.store, config=config)
        self.web = WebServer(self.tracker, host=host, port=port) if web_enabled else None
        self._stopped = asyncio.Event()
        self._wire_logging()

    def _wire_logging(self) -> None:
        """Log every notification the core emits."""
        def on_discovered(device: ScannedDevice) -> None:
            logger.info(f"Device discovered: {device.name} ({device.address}) RSSI: {device.rssi}dBm")

        self.scanner.events.on("device_discovered", on_discovered)
        self.scanner.events.on("error", lambda message: logger.warning(f"Scanner: {message}"))
        self.tracker.events.on(
            "in_office_changed",
            lambda in_office: logger.info("In office" if in_office else "Left office"),
        )
        self.tracker.events.on(
            "session_ended",
            lambda minutes: logger.info(f"Session ended after {minutes} minutes"),
        )
        self.tracker.events.on("error", lambda message: logger.warning(f"Tracker: {message}"))

    async def start(self) -> None:
        """Start the daemon and run until stopped."""
        logger.info("Starting officehood daemon...")

        await self.store.init()
        logger.info(f"Database initialized at {self.store.db_path}")

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, lambda: asyncio.create_task(self.stop()))

        if self.web:
            await self.web.start()

        await self.tracker.start()
        await self._stopped.wait()

    async def stop(self) -> None:
        """Stop the daemon, saving any open session."""
        if self._stopped.is_set():
            return
        logger.info("Stopping officehood daemon...")

        await self.tracker.stop()
        if self.web:
            await self.web.stop()

        self._stopped.set()
        logger.info("Daemon stopped")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Officehood Bluetooth office presence daemon"
    )
    parser.add_argument(
        "-a", "--adapter",
        help="Bluetooth adapter to use (e.g., hci0)"
    )
    parser.add_argument(
        "-l", "--list-adapters",
        action="store_true",
        help="List available Bluetooth adapters and exit"
    )
    parser.add_argument(
        "--db",
        type=Path,
        default=DB_PATH,
        help=f"SQLite database path (default: {DB_PATH})"
    )
    parser.add_argument("--host", default=WEB_HOST, help="API listen address")
    parser.add_argument(
        "--port",
        type=int,
        help=f"API listen port (default: $OFFICEHOOD_WEB_PORT or {WEB_PORT})"
    )
    parser.add_argument(
        "--no-web",
        action="store_true",
        help="Do not start the JSON API"
    )
    parser.add_argument("--scan-interval", type=int, metavar="MS", help="Time between scans")
    parser.add_argument("--scan-duration", type=int, metavar="MS", help="Length of each scan")
    parser.add_argument("--timeout", type=int, metavar="MS", help="Absence timeout")
    parser.add_argument("--checkpoint", type=int, metavar="MS", help="Checkpoint interval")
    parser.add_argument("--debug", action="store_true", help="Verbose logging")
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    """Entry point for officehood-daemon."""
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    if args.list_adapters:
        adapters = list_adapters()
        if adapters:
            print("Available Bluetooth adapters:")
            for adapter in adapters:
                print(f"  {adapter.name}: {adapter.address} ({adapter.alias})")
        else:
            print("No Bluetooth adapters found")
        return 0

    try:
        config = TrackerConfig.from_env().with_overrides(
            scan_interval_ms=args.scan_interval,
            scan_duration_ms=args.scan_duration,
            absence_timeout_ms=args.timeout,
            checkpoint_interval_ms=args.checkpoint,
        )
        config.validate()
        port = args.port if args.port is not None else web_port()
    except OfficehoodError as e:
        logger.error(f"Invalid configuration: {e}")
        return 2

    async def run() -> None:
        daemon = OfficehoodDaemon(
            adapter=args.adapter,
            db_path=args.db,
            config=config,
            host=args.host,
            port=port,
            web_enabled=not args.no_web,
        )
        await daemon.start()

    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        pass
    except OfficehoodError as e:
        logger.error(f"Fatal: {e}")
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
