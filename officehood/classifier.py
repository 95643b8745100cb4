"""Guess what kind of personal device an advertisement came from."""

from typing import Iterable, Optional

TYPE_PHONE = "phone"
TYPE_WATCH = "watch"
TYPE_WEARABLE = "wearable"
TYPE_LAPTOP = "laptop"
TYPE_AUDIO = "audio"
TYPE_UNKNOWN = "unknown"

TYPE_LABELS = {
    TYPE_PHONE: "Phone",
    TYPE_WATCH: "Watch",
    TYPE_WEARABLE: "Wearable",
    TYPE_LAPTOP: "Laptop",
    TYPE_AUDIO: "Audio",
    TYPE_UNKNOWN: "Unknown",
}

# (substring of the advertised name, device type), matched case-insensitively
# in order, so more specific patterns come first
NAME_PATTERNS = [
    ("watch", TYPE_WATCH),
    ("fitbit", TYPE_WATCH),
    ("garmin", TYPE_WATCH),
    ("amazfit", TYPE_WATCH),
    ("mi band", TYPE_WEARABLE),
    ("oura", TYPE_WEARABLE),
    ("whoop", TYPE_WEARABLE),
    ("airpod", TYPE_AUDIO),
    ("buds", TYPE_AUDIO),
    ("headphone", TYPE_AUDIO),
    ("iphone", TYPE_PHONE),
    ("pixel", TYPE_PHONE),
    ("galaxy", TYPE_PHONE),
    ("samsung", TYPE_PHONE),
    ("phone", TYPE_PHONE),
    ("macbook", TYPE_LAPTOP),
    ("thinkpad", TYPE_LAPTOP),
    ("laptop", TYPE_LAPTOP),
]

# 16-bit Battery Service; advertised mostly by wearables
BATTERY_SERVICE = "180f"


def classify_device(
    name: Optional[str],
    service_uuids: Optional[Iterable[str]] = None,
) -> str:
    """Return a device type constant for an advertised name and service list."""
    if name:
        name_lower = name.lower()
        for pattern, device_type in NAME_PATTERNS:
            if pattern in name_lower:
                return device_type

    for uuid in service_uuids or ():
        uuid = uuid.lower()
        # Full 128-bit form is 0000180f-0000-1000-8000-00805f9b34fb
        if uuid == BATTERY_SERVICE or uuid.startswith(f"0000{BATTERY_SERVICE}-"):
            return TYPE_WEARABLE

    return TYPE_UNKNOWN


def get_type_label(device_type: str) -> str:
    """Get the human-readable label for a device type."""
    return TYPE_LABELS.get(device_type, TYPE_LABELS[TYPE_UNKNOWN])


def get_all_types() -> list[tuple[str, str]]:
    """Get all device types with their labels."""
    return list(TYPE_LABELS.items())
