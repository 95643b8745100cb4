"""Bluetooth scanning module using bleak."""

import asyncio
import logging
import subprocess
from dataclasses import asdict, dataclass, replace
from typing import Callable, Optional

from bleak import BleakScanner
from bleak.backends.device import BLEDevice
from bleak.backends.scanner import AdvertisementData
from bleak.exc import BleakError

from .classifier import classify_device, get_type_label
from .config import BLUETOOTH_ADAPTER, SCAN_DURATION_MS
from .errors import ScanError
from .events import EventEmitter

logger = logging.getLogger(__name__)

UNKNOWN_NAME = "Unknown Device"


@dataclass
class BluetoothAdapter:
    """Represents a Bluetooth adapter."""
    name: str  # e.g., "hci0"
    address: str  # MAC address
    alias: str  # Friendly name


@dataclass
class ScannedDevice:
    """A device found during a scan cycle."""
    name: str
    address: str
    rssi: int
    device_type: str = "unknown"

    def to_dict(self) -> dict:
        return {**asdict(self), "type_label": get_type_label(self.device_type)}


def list_adapters() -> list[BluetoothAdapter]:
    """List available Bluetooth adapters via bluetoothctl."""
    try:
        result = subprocess.run(
            ["bluetoothctl", "list"],
            capture_output=True,
            text=True,
            timeout=5
        )
    except FileNotFoundError:
        logger.warning("bluetoothctl not found - install bluez")
        return []
    except subprocess.TimeoutExpired:
        logger.warning("bluetoothctl did not answer in time")
        return []

    adapters = []
    for line in result.stdout.splitlines():
        parts = line.split()
        # "Controller 00:1A:7D:DA:71:13 laptop [default]"
        if len(parts) >= 3 and parts[0] == "Controller":
            adapters.append(BluetoothAdapter(
                name=f"hci{len(adapters)}",
                address=parts[1],
                alias=" ".join(p for p in parts[2:] if p != "[default]"),
            ))
    return adapters


class BluetoothScanner:
    """Bluetooth LE discovery cycle.

    Events (subscribe through ``scanner.events.on``):

    - ``scanning_changed(scanning: bool)``
    - ``device_discovered(device: ScannedDevice)``, once per address per cycle
    - ``device_detected(address: str)``
    - ``scan_finished()``, when a bounded ``scan()`` runs to completion
    - ``error(message: str)``, after which the scanner is idle again

    No retry is attempted after an error; that is up to the caller.
    """

    def __init__(
        self,
        adapter: Optional[str] = None,
        backend_factory: Callable[..., BleakScanner] = BleakScanner,
    ):
        self.adapter = adapter or BLUETOOTH_ADAPTER
        self.events = EventEmitter(
            "scanning_changed",
            "device_discovered",
            "device_detected",
            "scan_finished",
            "error",
        )
        self._backend_factory = backend_factory
        self._backend = None
        self._scanning = False
        self._devices: dict[str, ScannedDevice] = {}

    @property
    def is_scanning(self) -> bool:
        return self._scanning

    def discovered_devices(self) -> list[ScannedDevice]:
        """Devices seen in the current or most recent cycle."""
        return [replace(device) for device in self._devices.values()]

    def is_device_detected(self, address: str) -> bool:
        """Whether an address was seen in the current or most recent cycle."""
        address = address.upper()
        return any(device.address == address for device in self._devices.values())

    async def start_scan(self) -> None:
        """Begin a discovery cycle. Does nothing if one is running."""
        if self._scanning:
            return

        self._devices.clear()
        self._set_scanning(True)

        kwargs = {"detection_callback": self._on_detection}
        if self.adapter:
            kwargs["adapter"] = self.adapter

        try:
            self._backend = self._backend_factory(**kwargs)
            await self._backend.start()
        except (BleakError, OSError) as e:
            self._fail(ScanError(f"Could not start scan: {e}"))
            return

        logger.info("Starting device scan")

    async def stop_scan(self) -> None:
        """Halt the running discovery cycle. Does nothing if idle."""
        if not self._scanning:
            return
        await self._halt()
        logger.info(f"Stopped device scan ({len(self._devices)} devices)")

    async def scan(self, duration: float = SCAN_DURATION_MS / 1000) -> list[ScannedDevice]:
        """Run one bounded discovery cycle and return what it found."""
        if self._scanning:
            logger.debug("Scan requested while another cycle is running")
            return self.discovered_devices()

        await self.start_scan()
        if not self._scanning:
            return []

        await asyncio.sleep(duration)

        # stop_scan() or an error may already have ended the cycle
        if self._scanning:
            await self._halt()
            logger.info(f"Scan complete: found {len(self._devices)} devices")
            self.events.emit("scan_finished")

        return self.discovered_devices()

    async def _halt(self) -> None:
        backend, self._backend = self._backend, None
        try:
            if backend is not None:
                await backend.stop()
        except (BleakError, OSError) as e:
            self._fail(ScanError(f"Could not stop scan: {e}"))
            return
        self._set_scanning(False)

    def _set_scanning(self, scanning: bool) -> None:
        self._scanning = scanning
        self.events.emit("scanning_changed", scanning)

    def _fail(self, error: ScanError) -> None:
        logger.error(f"Scan error: {error}")
        self._backend = None
        if self._scanning:
            self._set_scanning(False)
        self.events.emit("error", str(error))

    def _on_detection(self, device: BLEDevice, adv_data: AdvertisementData) -> None:
        """bleak calls this for every advertisement it receives."""
        if not self._scanning:
            return

        address = device.address.upper()
        known = self._devices.get(address)
        if known is not None:
            known.rssi = adv_data.rssi
            return

        name = device.name or adv_data.local_name or UNKNOWN_NAME
        scanned = ScannedDevice(
            name=name,
            address=address,
            rssi=adv_data.rssi,
            device_type=classify_device(name, adv_data.service_uuids),
        )
        self._devices[address] = scanned
        logger.debug(f"Device discovered: {name} ({address}) RSSI: {adv_data.rssi}dBm")

        self.events.emit("device_discovered", scanned)
        self.events.emit("device_detected", address)
