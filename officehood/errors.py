"""Exception types raised by officehood components."""


class OfficehoodError(Exception):
    """Base class for all officehood errors."""


class ScanError(OfficehoodError):
    """The Bluetooth discovery layer failed. Scanning is reset to idle."""


class PersistenceError(OfficehoodError):
    """A presence store read or write failed."""


class ConfigurationError(OfficehoodError):
    """Timer settings are invalid (non-positive or inconsistent)."""


class SessionNotFoundError(PersistenceError):
    """The presence session row to update no longer exists."""
