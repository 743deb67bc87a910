"""Interval arithmetic for bookable time slots.

Everything here is pure: inputs are naive wall-clock datetimes in the store's
timezone and nothing reads the clock. Callers pass ``now`` explicitly.
"""

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Iterable, Sequence

DEFAULT_DAY_START = "09:00"
DEFAULT_DAY_END = "18:00"
MAX_SLOT_STEP_MINUTES = 30


@dataclass(frozen=True)
class Interval:
    start: datetime
    end: datetime

    def overlaps(self, start: datetime, end: datetime) -> bool:
        # Half-open: touching endpoints are not an overlap.
        return self.start < end and self.end > start


@dataclass
class TimeSlot:
    start: datetime
    end: datetime
    available: bool = True

    @property
    def time(self) -> str:
        return self.start.strftime("%H:%M")

    def as_dict(self) -> dict:
        return {"time": self.time, "datetime": self.start, "available": self.available}


def parse_hhmm(value) -> time | None:
    """Parse ``"HH:MM"``; anything else (missing part, non-digit, out of range) is None."""
    if not isinstance(value, str):
        return None
    parts = value.strip().split(":")
    if len(parts) != 2:
        return None
    hour_raw, minute_raw = parts
    if not hour_raw.isdigit() or not minute_raw.isdigit():
        return None
    hour, minute = int(hour_raw), int(minute_raw)
    if hour > 23 or minute > 59:
        return None
    return time(hour, minute)


def slot_step_minutes(service_duration: int, max_step: int = MAX_SLOT_STEP_MINUTES) -> int:
    return min(int(max_step), int(service_duration))


def _break_intervals(day: date, breaks: Iterable[tuple[str, str]]) -> list[Interval]:
    out: list[Interval] = []
    for break_start, break_end in breaks:
        start_t = parse_hhmm(break_start)
        end_t = parse_hhmm(break_end)
        if start_t is None or end_t is None:
            continue
        out.append(Interval(datetime.combine(day, start_t), datetime.combine(day, end_t)))
    return out


def generate_time_slots(
    day: date,
    start_time: str = DEFAULT_DAY_START,
    end_time: str = DEFAULT_DAY_END,
    *,
    service_duration: int,
    breaks: Iterable[tuple[str, str]] | None = None,
    max_step: int = MAX_SLOT_STEP_MINUTES,
) -> list[TimeSlot]:
    """Candidate start times for one working day.

    Slots are offered every ``min(max_step, service_duration)`` minutes from
    ``start_time`` while the whole service still fits before ``end_time``.
    A candidate overlapping any break is dropped. Malformed working hours
    give an empty day rather than an error.
    """
    if int(service_duration) <= 0:
        raise ValueError("service_duration must be > 0")

    start_t = parse_hhmm(start_time)
    end_t = parse_hhmm(end_time)
    if start_t is None or end_t is None:
        return []

    duration = timedelta(minutes=int(service_duration))
    step = timedelta(minutes=slot_step_minutes(service_duration, max_step))
    day_end = datetime.combine(day, end_t)
    blocked = _break_intervals(day, breaks or ())

    slots: list[TimeSlot] = []
    current = datetime.combine(day, start_t)
    while current + duration <= day_end:
        slot_end = current + duration
        if not any(b.overlaps(current, slot_end) for b in blocked):
            slots.append(TimeSlot(start=current, end=slot_end))
        current += step
    return slots


def resolve_availability(
    slots: Sequence[TimeSlot],
    busy: Iterable[Interval],
    now: datetime | None = None,
) -> list[TimeSlot]:
    """Mark slots overlapping a busy interval and drop today's past slots.

    When ``now`` falls on the slot's day only slots starting strictly after
    ``now`` are kept. Other days are never filtered by the clock.
    """
    busy_list = list(busy)
    out: list[TimeSlot] = []
    for slot in slots:
        if now is not None and slot.start.date() == now.date() and slot.start <= now:
            continue
        conflict = any(b.overlaps(slot.start, slot.end) for b in busy_list)
        out.append(TimeSlot(start=slot.start, end=slot.end, available=not conflict))
    return out


def merge_intervals(intervals: Iterable[Interval]) -> list[Interval]:
    """Sort and coalesce overlapping or adjacent intervals."""
    ordered = sorted(intervals, key=lambda i: (i.start, i.end))
    merged: list[Interval] = []
    for item in ordered:
        if merged and item.start <= merged[-1].end:
            last = merged[-1]
            merged[-1] = Interval(last.start, max(last.end, item.end))
        else:
            merged.append(item)
    return merged


def free_windows(window: Interval, busy: Iterable[Interval]) -> list[Interval]:
    """Gaps inside ``window`` not covered by any busy interval."""
    cursor = window.start
    out: list[Interval] = []
    for item in merge_intervals(busy):
        if item.end <= window.start or item.start >= window.end:
            continue
        if item.start > cursor:
            out.append(Interval(cursor, item.start))
        cursor = max(cursor, item.end)
    if cursor < window.end:
        out.append(Interval(cursor, window.end))
    return out
