"""Time source used by the presence tracker."""

from datetime import date, datetime


class Clock:
    """Wall-clock time. Tests substitute a clock they can advance by hand."""

    def now(self) -> datetime:
        return datetime.now()

    def today(self) -> date:
        return self.now().date()


SYSTEM_CLOCK = Clock()
