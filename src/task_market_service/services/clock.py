"""Injectable time source."""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import UTC, datetime


def to_iso(moment: datetime) -> str:
    """Render a datetime as ISO 8601 UTC with a Z suffix."""
    return moment.astimezone(UTC).isoformat(timespec="microseconds").replace("+00:00", "Z")


class Clock(ABC):
    """Source of the current time for timestamps written by the core."""

    @abstractmethod
    def now(self) -> datetime:
        """Return the current time as an aware UTC datetime."""

    def now_iso(self) -> str:
        """Return the current time as an ISO 8601 string with Z suffix."""
        return to_iso(self.now())


class SystemClock(Clock):
    """Wall-clock time in UTC."""

    def now(self) -> datetime:
        return datetime.now(UTC)
