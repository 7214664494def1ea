"""
Slot grid, eligibility and lane allocation rules.

Pure computations over in-memory rows; no database involved.
"""
from datetime import date, time

import pytest

from paddock.exceptions import ValidationError
from paddock.orm.inspection import Booking, BookingStatus, InspectionType
from paddock.services.eligibility_service import (
    ALREADY_PASSED_REASON, LOADING_REASON, dedupe_catalog, evaluate_eligibility
)
from paddock.services.resource_allocator import (
    EARLIEST_RESCRUTINEERING_START, offer_slots, rescrutineering_min_start
)
from paddock.services.slot_generator import add_minutes, generate_time_slots


DAY = date(2026, 7, 21)
WINDOW = (time(8, 0), time(18, 0))


def make_type(id, key, name=None, duration=60, lanes=1, prerequisites=None):
    return InspectionType(
        id=id, key=key, name=name or key.title(), duration_minutes=duration,
        concurrent_slots=lanes, prerequisites=prerequisites or [], sort_order=id, active=True
    )


def make_booking(team_id, type_id, start, lane=0, status=BookingStatus.UPCOMING,
                 rescrut=False, holds_lane=True, duration=60):
    return Booking(
        team_id=team_id, inspection_type_id=type_id, date=DAY,
        start_time=start, end_time=add_minutes(start, duration), resource_index=lane,
        status=status.value, is_rescrutineering=rescrut, holds_lane=holds_lane
    )


# =============================================================================
# Slot grid
# =============================================================================

class TestSlotGenerator:
    """Daily slot grid."""

    def test_thirty_minute_grid_has_twenty_slots(self):
        slots = generate_time_slots(time(8, 0), time(18, 0), 30)

        assert len(slots) == 20
        assert slots[0] == time(8, 0)
        assert slots[-1] == time(17, 30)
        assert slots[1] == time(8, 30)

    def test_last_slot_must_fit_in_window(self):
        slots = generate_time_slots(time(8, 0), time(18, 0), 120)
        assert slots == [time(8), time(10), time(12), time(14), time(16)]

    def test_window_not_a_multiple_of_duration(self):
        slots = generate_time_slots(time(8, 0), time(9, 45), 30)
        assert slots == [time(8, 0), time(8, 30), time(9, 0)]

    @pytest.mark.parametrize("duration", [0, -30])
    def test_non_positive_duration_rejected(self, duration):
        with pytest.raises(ValidationError):
            generate_time_slots(time(8, 0), time(18, 0), duration)

    def test_empty_window_rejected(self):
        with pytest.raises(ValidationError):
            generate_time_slots(time(18, 0), time(8, 0), 30)

    def test_add_minutes_refuses_to_cross_midnight(self):
        assert add_minutes(time(16, 0), 120) == time(18, 0)
        with pytest.raises(ValidationError):
            add_minutes(time(23, 30), 60)


# =============================================================================
# Eligibility
# =============================================================================

class TestEligibility:
    """Prerequisite and already-passed checks."""

    def setup_method(self):
        self.accumulator = make_type(1, "accumulator", "Accumulator")
        self.electrical = make_type(2, "electrical", "Electrical", prerequisites=["accumulator"])
        self.mechanical = make_type(3, "mechanical", "Mechanical")
        self.tilt = make_type(4, "tilt", "Tilt Test", prerequisites=["mechanical", "electrical"])
        self.catalog = [self.accumulator, self.electrical, self.mechanical, self.tilt]

    def test_no_prerequisites_is_eligible(self):
        result = evaluate_eligibility(1, [], self.catalog, self.accumulator)
        assert result.eligible is True
        assert result.reason == ""

    def test_missing_prerequisite_reports_its_name(self):
        result = evaluate_eligibility(1, [], self.catalog, self.electrical)
        assert result.eligible is False
        assert result.reason == "Requires Accumulator to be passed."

    def test_first_missing_prerequisite_in_listed_order(self):
        history = [make_booking(1, 2, time(9), status=BookingStatus.PASSED)]
        result = evaluate_eligibility(1, history, self.catalog, self.tilt)
        assert result.reason == "Requires Mechanical to be passed."

    def test_unknown_prerequisite_falls_back_to_key(self):
        brake = make_type(5, "brake", prerequisites=["rain"])
        result = evaluate_eligibility(1, [], self.catalog + [brake], brake)
        assert result.reason == "Requires rain to be passed."

    def test_passed_type_is_ineligible_regardless_of_prerequisites(self):
        history = [make_booking(1, 2, time(9), status=BookingStatus.PASSED)]
        result = evaluate_eligibility(1, history, self.catalog, self.electrical)
        assert result.eligible is False
        assert result.reason == ALREADY_PASSED_REASON

    def test_failed_or_upcoming_prerequisite_does_not_count(self):
        history = [
            make_booking(1, 1, time(9), status=BookingStatus.FAILED),
            make_booking(1, 1, time(10), status=BookingStatus.UPCOMING),
        ]
        result = evaluate_eligibility(1, history, self.catalog, self.electrical)
        assert result.eligible is False

    def test_all_prerequisites_passed(self):
        history = [
            make_booking(1, 1, time(8), status=BookingStatus.PASSED),
            make_booking(1, 2, time(9), status=BookingStatus.PASSED),
            make_booking(1, 3, time(10), status=BookingStatus.PASSED),
        ]
        assert evaluate_eligibility(1, history, self.catalog, self.tilt).eligible is True

    def test_missing_data_reports_loading(self):
        assert evaluate_eligibility(None, [], self.catalog, self.tilt).reason == LOADING_REASON
        assert evaluate_eligibility(1, None, self.catalog, self.tilt).reason == LOADING_REASON
        assert evaluate_eligibility(1, [], None, self.tilt).reason == LOADING_REASON

    def test_catalog_deduplicated_by_key(self):
        duplicate = make_type(9, "accumulator", "Accumulator (copy)")
        unique = dedupe_catalog([self.accumulator, duplicate, self.electrical])
        assert [t.id for t in unique] == [1, 2]


# =============================================================================
# Lane allocation
# =============================================================================

class TestResourceAllocator:
    """First-free-lane offering and the rescrutineering ordering rule."""

    def setup_method(self):
        self.mechanical = make_type(3, "mechanical", duration=120, lanes=2)

    def test_empty_day_offers_lane_zero_everywhere(self):
        offered = offer_slots(self.mechanical, [], [], *WINDOW)

        assert [c.start_time for c in offered] == [time(8), time(10), time(12), time(14), time(16)]
        assert all(c.resource_index == 0 for c in offered)
        assert offered[0].end_time == time(10)

    def test_only_first_free_lane_is_offered(self):
        day = [make_booking(2, 3, time(10), lane=0, duration=120)]
        offered = {c.start_time: c.resource_index for c in offer_slots(self.mechanical, day, [], *WINDOW)}
        assert offered[time(10)] == 1
        assert offered[time(8)] == 0

    def test_full_slot_is_not_offered(self):
        day = [
            make_booking(2, 3, time(10), lane=0, duration=120),
            make_booking(3, 3, time(10), lane=1, duration=120),
        ]
        offered = [c.start_time for c in offer_slots(self.mechanical, day, [], *WINDOW)]
        assert time(10) not in offered
        assert len(offered) == 4

    def test_cancelled_booking_frees_its_lane(self):
        day = [make_booking(2, 3, time(10), lane=0, status=BookingStatus.CANCELLED,
                            holds_lane=False, duration=120)]
        offered = {c.start_time: c.resource_index for c in offer_slots(self.mechanical, day, [], *WINDOW)}
        assert offered[time(10)] == 0

    def test_min_start_defaults_to_midnight(self):
        assert rescrutineering_min_start([]) == EARLIEST_RESCRUTINEERING_START == time(0, 0)

    def test_failed_team_without_first_attempts_today_sees_every_slot(self):
        history = [make_booking(1, 3, time(8), status=BookingStatus.FAILED, holds_lane=False, duration=120)]
        offered = offer_slots(self.mechanical, [], history, *WINDOW)
        assert len(offered) == 5

    def test_retrying_team_cannot_cut_in_front_of_first_attempts(self):
        day = [
            make_booking(2, 3, time(8), duration=120),
            make_booking(3, 3, time(12), duration=120),
            make_booking(1, 3, time(14), rescrut=True, duration=120),
        ]
        history = [make_booking(1, 3, time(8), status=BookingStatus.FAILED, holds_lane=False, duration=120)]

        offered = [c.start_time for c in offer_slots(self.mechanical, day, history, *WINDOW)]

        assert offered == [time(12), time(14), time(16)]

    def test_first_attempt_team_is_not_restricted(self):
        day = [make_booking(2, 3, time(14), duration=120)]
        offered = [c.start_time for c in offer_slots(self.mechanical, day, [], *WINDOW)]
        assert offered[0] == time(8)
