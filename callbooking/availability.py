"""Availability resolution against a fixed catalog of recurring slots.

The caller picks a day ("Tuesday", "tomorrow", "next week") and a window
(morning/afternoon).  The resolver turns that into one concrete start time on
one business day and records a provisional reservation so two calls in the
same process are not offered the identical slot.

The reservation ledger is an in-memory best-effort de-duplication aid.  The
CRM remains the source of truth for real scheduling conflicts; a multi-process
deployment would need a ledger backed by a shared store with conditional
writes.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from collections import Counter
from datetime import date, datetime, time, timedelta
from typing import Callable, Optional, Sequence
from zoneinfo import ZoneInfo

from callbooking.classifier import WEEKDAY_INDEX
from callbooking.models.booking import ResolvedSlot

log = logging.getLogger("callbooking.availability")

SLOT_CATALOG: dict[str, tuple[time, ...]] = {
    "morning": (time(9, 0), time(11, 0)),
    "afternoon": (time(13, 0), time(15, 0)),
}

BUSINESS_DAYS = frozenset({0, 1, 2, 3, 4})  # Monday..Friday


class ReservationLedger(ABC):
    """Process-wide reservation counts per (date, window).

    Implementations must make :meth:`reserve` atomic: the capacity check and
    the increment happen as one operation.
    """

    @abstractmethod
    def reserve(
        self, day: date, window: str, starts: Sequence[time], capacity: int,
    ) -> Optional[time]:
        """Reserve one start time in ``(day, window)``.

        Picks the first start in catalog order with the fewest reservations.
        Returns None once the window already holds ``capacity`` reservations.
        """

    @abstractmethod
    def release(self, day: date, window: str, start: time) -> None:
        """Give back a provisional reservation (caller rejected the slot)."""

    @abstractmethod
    def count(self, day: date, window: str) -> int:
        """Number of reservations currently held for ``(day, window)``."""


class InMemoryReservationLedger(ReservationLedger):
    """Single-process ledger guarded by a lock."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._taken: dict[tuple[date, str], Counter[time]] = {}

    def reserve(
        self, day: date, window: str, starts: Sequence[time], capacity: int,
    ) -> Optional[time]:
        if not starts:
            return None
        with self._lock:
            taken = self._taken.setdefault((day, window), Counter())
            if sum(taken.values()) >= capacity:
                return None
            start = min(starts, key=lambda s: (taken[s], starts.index(s)))
            taken[start] += 1
            return start

    def release(self, day: date, window: str, start: time) -> None:
        with self._lock:
            taken = self._taken.get((day, window))
            if not taken or taken[start] <= 0:
                return
            taken[start] -= 1
            if taken[start] == 0:
                del taken[start]

    def count(self, day: date, window: str) -> int:
        with self._lock:
            return sum(self._taken.get((day, window), Counter()).values())


class AvailabilityResolver:
    """Turn (day term, window) into a reserved :class:`ResolvedSlot`."""

    def __init__(
        self,
        ledger: ReservationLedger,
        capacity: int = 2,
        lookahead_days: int = 14,
        window_fallback: bool = False,
        timezone: str = "Europe/London",
        catalog: dict[str, tuple[time, ...]] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._ledger = ledger
        self._capacity = capacity
        self._lookahead_days = lookahead_days
        self._window_fallback = window_fallback
        self._tz = ZoneInfo(timezone)
        self._catalog = catalog or SLOT_CATALOG
        self._clock = clock or (lambda: datetime.now(self._tz))

    def today(self) -> date:
        return self._clock().date()

    @staticmethod
    def is_business_day(day: date) -> bool:
        return day.weekday() in BUSINESS_DAYS

    def next_business_day(self, day: date) -> date:
        """``day`` itself if it is a business day, otherwise the next one."""
        while not self.is_business_day(day):
            day += timedelta(days=1)
        return day

    def resolve_date(self, day_term: str, today: date | None = None) -> date:
        """Calendar date a day term refers to, moved onto a business day.

        Weekday names resolve to the nearest *future* date with that weekday
        (asking for "Monday" on a Monday means next Monday).  "tomorrow" is
        today + 1 and "next week" is the Monday of next week.
        """
        today = today or self.today()
        if day_term == "tomorrow":
            target = today + timedelta(days=1)
        elif day_term == "next_week":
            target = today + timedelta(days=7 - today.weekday())
        elif day_term in WEEKDAY_INDEX:
            delta = (WEEKDAY_INDEX[day_term] - today.weekday()) % 7 or 7
            target = today + timedelta(days=delta)
        else:
            raise ValueError(f"Unknown day term: {day_term!r}")
        return self.next_business_day(target)

    def _windows_to_try(self, window: str) -> list[str]:
        if not self._window_fallback:
            return [window]
        return [window] + [w for w in self._catalog if w != window]

    def reserve(self, day_term: str, window: str) -> Optional[ResolvedSlot]:
        """Find and reserve the next free slot, or None within the look-ahead.

        Walks forward one business day at a time from the resolved date until
        a (date, window) under capacity is found.
        """
        if window not in self._catalog:
            raise ValueError(f"Unknown window: {window!r}")

        today = self.today()
        horizon = today + timedelta(days=self._lookahead_days)
        day = self.resolve_date(day_term, today)

        while day <= horizon:
            for candidate in self._windows_to_try(window):
                start = self._ledger.reserve(
                    day, candidate, self._catalog[candidate], self._capacity,
                )
                if start is not None:
                    slot = ResolvedSlot(slot_date=day, start_time=start, window=candidate)
                    log.info(
                        "Reserved %s %s (%s requested %s/%s)",
                        day.isoformat(), start.strftime("%H:%M"), candidate,
                        day_term, window,
                    )
                    return slot
            log.debug("No capacity on %s for %s, advancing", day.isoformat(), window)
            day = self.next_business_day(day + timedelta(days=1))

        log.warning(
            "No availability for %s/%s within %d days", day_term, window, self._lookahead_days,
        )
        return None

    def release(self, slot: ResolvedSlot) -> None:
        self._ledger.release(slot.slot_date, slot.window, slot.start_time)
        log.info(
            "Released %s %s", slot.slot_date.isoformat(), slot.start_time.strftime("%H:%M"),
        )
