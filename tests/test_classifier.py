"""Tests for device classification."""

import pytest

from officehood.classifier import classify_device, get_all_types, get_type_label


@pytest.mark.parametrize("name,expected", [
    ("Galaxy Watch5 (R3A2)", "watch"),
    ("Fitbit Charge 6", "watch"),
    ("Mi Band 7", "wearable"),
    ("AirPods Pro", "audio"),
    ("Jane's iPhone", "phone"),
    ("Pixel 8", "phone"),
    ("MacBook Air", "laptop"),
    ("LE-Bose", "unknown"),
    (None, "unknown"),
    ("", "unknown"),
])
def test_classify_by_name(name, expected):
    assert classify_device(name) == expected


def test_watch_wins_over_phone_brand():
    assert classify_device("Samsung Galaxy Watch") == "watch"


@pytest.mark.parametrize("uuid", ["180f", "0000180F-0000-1000-8000-00805F9B34FB"])
def test_battery_service_means_wearable(uuid):
    assert classify_device("Unknown Device", [uuid]) == "wearable"


def test_name_takes_precedence_over_services():
    assert classify_device("iPhone", ["180f"]) == "phone"


def test_labels():
    assert get_type_label("watch") == "Watch"
    assert get_type_label("toaster") == "Unknown"
    assert ("laptop", "Laptop") in get_all_types()
