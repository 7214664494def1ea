"""
Slot grid generation for a daily inspection window.
"""
from datetime import date, datetime, time, timedelta
from typing import List

from paddock.exceptions import ValidationError


def _shift(value: time, minutes: int) -> datetime:
    return datetime.combine(date.min, value) + timedelta(minutes=minutes)


def add_minutes(value: time, minutes: int) -> time:
    """Time of day `minutes` after `value`, same day."""
    shifted = _shift(value, minutes)
    if shifted.date() != date.min:
        raise ValidationError(f"{value.strftime('%H:%M')} + {minutes} min crosses midnight")
    return shifted.time()


def generate_time_slots(start: time, end: time, duration_minutes: int) -> List[time]:
    """
    Candidate start times inside [start, end].

    Slots are spaced exactly `duration_minutes` apart from `start`; the grid
    stops once a slot would overrun `end`.

    Raises:
        ValidationError: If start >= end or duration_minutes <= 0
    """
    if duration_minutes is None or duration_minutes <= 0:
        raise ValidationError("Slot duration must be positive")
    if start >= end:
        raise ValidationError("Window start must be before window end")

    window_end = datetime.combine(date.min, end)
    step = timedelta(minutes=duration_minutes)

    slots = []
    current = datetime.combine(date.min, start)
    while current + step <= window_end:
        slots.append(current.time())
        current += step
    return slots
