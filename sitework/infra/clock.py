from __future__ import annotations

from datetime import datetime
from typing import Protocol

from sitework.domain.models import now_utc


class Clock(Protocol):
    def now(self) -> datetime: ...


class SystemClock:
    def now(self) -> datetime:
        return now_utc()


class FixedClock:
    """Clock pinned to one instant; advance it with ``set``."""

    def __init__(self, value: datetime) -> None:
        self._value = value

    def set(self, value: datetime) -> None:
        self._value = value

    def now(self) -> datetime:
        return self._value
