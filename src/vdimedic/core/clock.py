"""Time source used by the remediation loop and job timeouts."""

from __future__ import annotations

from datetime import datetime


class Clock:
    """Wall clock."""

    def now(self) -> datetime:
        return datetime.now()


SYSTEM_CLOCK = Clock()
