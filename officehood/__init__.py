"""Officehood - Bluetooth office presence tracking."""

__version__ = "0.1.0"
