"""
Lane allocation for inspection bookings.

Offers at most one (start time, lane) candidate per slot of the day's grid:
the lowest free lane. Teams retrying after a failed inspection may not be
offered slots earlier than the latest first-attempt booking of the day.
"""
from dataclasses import dataclass
from datetime import time
from typing import Iterable, List, Sequence, Set, Tuple

from paddock.orm.inspection import Booking, BookingStatus, InspectionType
from paddock.services.slot_generator import add_minutes, generate_time_slots


EARLIEST_RESCRUTINEERING_START = time(0, 0)


@dataclass(frozen=True)
class SlotCandidate:
    start_time: time
    end_time: time
    resource_index: int

    def to_dict(self):
        return {
            "start_time": self.start_time.strftime("%H:%M"),
            "end_time": self.end_time.strftime("%H:%M"),
            "resource_index": self.resource_index,
        }


def has_failed(team_history: Iterable[Booking], inspection_type_id: int) -> bool:
    return any(
        b.inspection_type_id == inspection_type_id and b.status == BookingStatus.FAILED.value
        for b in team_history
    )


def rescrutineering_min_start(day_bookings: Iterable[Booking]) -> time:
    """Latest start time among the day's first-attempt bookings."""
    starts = [b.start_time for b in day_bookings if not b.is_rescrutineering]
    return max(starts, default=EARLIEST_RESCRUTINEERING_START)


def occupied_lanes(day_bookings: Iterable[Booking]) -> Set[Tuple[time, int]]:
    return {(b.start_time, b.resource_index) for b in day_bookings if b.holds_lane}


def offer_slots(
    inspection_type: InspectionType,
    day_bookings: Sequence[Booking],
    team_history: Sequence[Booking],
    window_start: time,
    window_end: time,
) -> List[SlotCandidate]:
    """
    Candidate (slot, lane) pairs for one team, in time order.

    Args:
        inspection_type: Type being booked
        day_bookings: All bookings of that type on the booking date
        team_history: The requesting team's bookings of that type
        window_start / window_end: Daily operating window

    Returns:
        One candidate per slot that still has a free lane
    """
    retrying = has_failed(team_history, inspection_type.id)
    min_start = rescrutineering_min_start(day_bookings) if retrying else EARLIEST_RESCRUTINEERING_START
    taken = occupied_lanes(day_bookings)

    candidates = []
    for slot in generate_time_slots(window_start, window_end, inspection_type.duration_minutes):
        if retrying and slot < min_start:
            continue
        for lane in range(inspection_type.concurrent_slots):
            if (slot, lane) not in taken:
                candidates.append(SlotCandidate(
                    start_time=slot,
                    end_time=add_minutes(slot, inspection_type.duration_minutes),
                    resource_index=lane,
                ))
                break
    return candidates
