"""Time arithmetic and availability resolution shared by the engines."""

from datetime import date, time, timedelta
from typing import Iterable, Iterator, Optional, Sequence

from therapy_scheduler.scheduling.models import TherapistAvailability, TimeWindow


def to_minutes(t: time) -> int:
    return t.hour * 60 + t.minute


def from_minutes(minutes: int) -> time:
    """Convert minutes past midnight to a time, clamped to the same day."""
    minutes = max(0, min(minutes, 24 * 60 - 1))
    return time(minutes // 60, minutes % 60)


def add_minutes(t: time, minutes: int) -> time:
    return from_minutes(to_minutes(t) + minutes)


def minutes_between(start: time, end: time) -> int:
    return to_minutes(end) - to_minutes(start)


def intervals_overlap(a_start: time, a_end: time, b_start: time, b_end: time) -> bool:
    return a_start < b_end and b_start < a_end


def window_distance(start: time, end: time, window: TimeWindow) -> int:
    """Minutes the slot must shift to fit inside the window (0 when it already does)."""
    return max(
        0,
        minutes_between(start, window.start_time),
        minutes_between(window.end_time, end),
    )


def daterange(start: date, end: date) -> Iterator[date]:
    """Inclusive day iterator."""
    current = start
    while current <= end:
        yield current
        current += timedelta(days=1)


def week_start(day: date) -> date:
    return day - timedelta(days=day.weekday())


def therapist_ids(availability: Iterable[TherapistAvailability]) -> list[str]:
    return sorted({a.therapist_id for a in availability})


def day_windows(
    availability: Sequence[TherapistAvailability],
    therapist_id: str,
    day: date,
) -> tuple[list[TimeWindow], list[TimeWindow]]:
    """Resolve a therapist's open and blocked windows for one date.

    Specific-date entries that open time replace the recurring weekday
    entries; blocking entries of either kind are always returned.
    """
    entries = [a for a in availability if a.therapist_id == therapist_id]
    specific = [a for a in entries if a.specific_date == day]
    recurring = [
        a for a in entries
        if a.specific_date is None and a.day_of_week == day.weekday()
    ]

    opening_specific = [a for a in specific if a.opens_time]
    opening = opening_specific or [a for a in recurring if a.opens_time]
    blocking = [a for a in specific + recurring if not a.opens_time]

    open_windows = sorted(
        (TimeWindow(start_time=a.start_time, end_time=a.end_time) for a in opening),
        key=lambda w: w.start_time,
    )
    blocked_windows = [
        TimeWindow(start_time=a.start_time, end_time=a.end_time) for a in blocking
    ]
    return open_windows, blocked_windows


def has_entries(availability: Sequence[TherapistAvailability], therapist_id: str) -> bool:
    return any(a.therapist_id == therapist_id for a in availability)


def slot_starts(
    windows: Sequence[TimeWindow],
    duration_minutes: int,
    step_minutes: int,
    blocked: Sequence[TimeWindow] = (),
    earliest: Optional[time] = None,
    latest_end: Optional[time] = None,
) -> list[time]:
    """Every start time inside *windows* that fits *duration_minutes*.

    Starts are aligned to the window start and spaced *step_minutes* apart.
    Slots touching a blocked window are skipped.
    """
    starts: list[time] = []
    for window in windows:
        begin = to_minutes(window.start_time)
        stop = to_minutes(window.end_time)
        if latest_end is not None:
            stop = min(stop, to_minutes(latest_end))
        cursor = begin
        while cursor + duration_minutes <= stop:
            start = from_minutes(cursor)
            end = from_minutes(cursor + duration_minutes)
            if (earliest is None or start >= earliest) and not any(
                intervals_overlap(start, end, b.start_time, b.end_time) for b in blocked
            ):
                starts.append(start)
            cursor += step_minutes
    return sorted(set(starts))
