"""
Scrutineering Booking Service.

Eligibility-checked, lane-allocated inspection booking with inspector status
transitions and re-inspection requests.

Allocation decisions for one (inspection type, date) are serialized inside
the process; the partial unique index on bookings rejects any insert that
still collides (e.g. from another worker), in which case the request is
re-planned from a fresh snapshot.
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import date, datetime, time
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple
from zoneinfo import ZoneInfo

from sqlalchemy.ext.asyncio import AsyncSession

from paddock.config import settings
from paddock.exceptions import (
    ConflictError, EligibilityError, InvalidTransitionError, NotFoundError,
    SlotExhaustedError, ValidationError
)
from paddock.orm.inspection import Booking, BookingStatus, InspectionType
from paddock.services.batch import with_persistence_retry
from paddock.services.competition_repository import CompetitionRepository
from paddock.services.eligibility_service import (
    Eligibility, dedupe_catalog, evaluate_eligibility, passed_keys
)
from paddock.services.resource_allocator import SlotCandidate, has_failed, offer_slots
from paddock.services.slot_generator import generate_time_slots

logger = logging.getLogger(__name__)


def competition_today() -> date:
    """Current date in the competition's timezone."""
    return datetime.now(ZoneInfo(settings.COMPETITION_TIMEZONE)).date()


class BookingService:
    """
    Service for inspection booking.

    Holds the per-(inspection_type_id, date) allocation locks, so one
    instance is shared by every request of a worker.
    """

    # State machine valid transitions
    VALID_TRANSITIONS = {
        BookingStatus.UPCOMING: [BookingStatus.ONGOING, BookingStatus.CANCELLED],
        BookingStatus.ONGOING: [BookingStatus.PASSED, BookingStatus.FAILED, BookingStatus.CANCELLED],
        BookingStatus.PASSED: [],      # Terminal state
        BookingStatus.FAILED: [],      # Terminal state
        BookingStatus.CANCELLED: [],   # Terminal state
    }

    def __init__(self):
        # (type, date) -> [lock, number of holders and waiters]
        self._locks: Dict[Tuple[int, date], List[Any]] = {}

    @staticmethod
    def _is_valid_transition(current: BookingStatus, new: BookingStatus) -> bool:
        """Check if status transition is valid."""
        return new in BookingService.VALID_TRANSITIONS.get(current, [])

    @asynccontextmanager
    async def _allocation_lock(self, inspection_type_id: int, booking_date: date) -> AsyncIterator[None]:
        """Hold the (type, date) lock; the entry is dropped once nobody uses it."""
        key = (inspection_type_id, booking_date)
        entry = self._locks.get(key)
        if entry is None:
            entry = self._locks[key] = [asyncio.Lock(), 0]
        entry[1] += 1
        try:
            async with entry[0]:
                yield
        finally:
            entry[1] -= 1
            if entry[1] == 0:
                del self._locks[key]

    # ==========================================================================
    # Read side
    # ==========================================================================

    @staticmethod
    async def _require_team(repo: CompetitionRepository, team_id: int):
        team = await repo.get_team(team_id)
        if team is None:
            raise NotFoundError(f"Team {team_id} not found")
        return team

    @staticmethod
    async def _require_type(repo: CompetitionRepository, inspection_type_id: int) -> InspectionType:
        inspection_type = await repo.get_inspection_type(inspection_type_id)
        if inspection_type is None:
            raise NotFoundError(f"Inspection type {inspection_type_id} not found")
        return inspection_type

    async def eligibility_overview(self, db: AsyncSession, team_id: int) -> List[Dict[str, Any]]:
        """
        Bookability of every catalog entry for one team.

        The catalog is de-duplicated by key and listed in sort order.
        """
        repo = CompetitionRepository(db)
        await self._require_team(repo, team_id)

        catalog = dedupe_catalog(await repo.list_inspection_types("sort_order"))
        history = await repo.list_bookings(team_id=team_id)
        passed = passed_keys(history, catalog)

        overview = []
        for inspection_type in catalog:
            eligibility = evaluate_eligibility(team_id, history, catalog, inspection_type)
            if eligibility.eligible and not inspection_type.active:
                eligibility = Eligibility(False, "Inspection type is not active.")
            overview.append({
                **inspection_type.to_dict(),
                "eligible": eligibility.eligible,
                "passed": inspection_type.key in passed,
                "reason": eligibility.reason,
            })
        return overview

    async def check_eligibility(
        self,
        db: AsyncSession,
        team_id: int,
        inspection_type_id: int
    ) -> Eligibility:
        repo = CompetitionRepository(db)
        await self._require_team(repo, team_id)
        target = await self._require_type(repo, inspection_type_id)
        catalog = dedupe_catalog(await repo.list_inspection_types("sort_order"))
        history = await repo.list_bookings(team_id=team_id)
        return evaluate_eligibility(team_id, history, catalog, target)

    async def available_slots(
        self,
        db: AsyncSession,
        team_id: int,
        inspection_type_id: int,
        booking_date: Optional[date] = None
    ) -> List[SlotCandidate]:
        """Slots the team can currently be offered for the type on the date."""
        repo = CompetitionRepository(db)
        await self._require_team(repo, team_id)
        inspection_type = await self._require_type(repo, inspection_type_id)
        return await self._offer(repo, team_id, inspection_type, booking_date or competition_today())

    @staticmethod
    async def _offer(
        repo: CompetitionRepository,
        team_id: int,
        inspection_type: InspectionType,
        booking_date: date
    ) -> List[SlotCandidate]:
        day_bookings = await repo.list_bookings(
            date=booking_date, inspection_type_id=inspection_type.id
        )
        team_history = await repo.list_bookings(
            team_id=team_id, inspection_type_id=inspection_type.id
        )
        return offer_slots(
            inspection_type,
            day_bookings,
            team_history,
            settings.BOOKING_WINDOW_START,
            settings.BOOKING_WINDOW_END,
        )

    async def lane_board(
        self,
        db: AsyncSession,
        inspection_type_id: int,
        booking_date: Optional[date] = None
    ) -> Dict[str, Any]:
        """
        Slot × lane grid of the day's lane-holding bookings.

        Returns:
            Dict with the type, date and one row per slot listing each lane's
            booking (or None when free)
        """
        repo = CompetitionRepository(db)
        inspection_type = await self._require_type(repo, inspection_type_id)
        booking_date = booking_date or competition_today()

        bookings = await repo.list_bookings(date=booking_date, inspection_type_id=inspection_type_id)
        team_names = {team.id: team.name for team in await repo.list_teams()}
        by_lane = {
            (b.start_time, b.resource_index): b for b in bookings if b.holds_lane
        }

        rows = []
        slots = generate_time_slots(
            settings.BOOKING_WINDOW_START,
            settings.BOOKING_WINDOW_END,
            inspection_type.duration_minutes,
        )
        for slot in slots:
            lanes = []
            for lane in range(inspection_type.concurrent_slots):
                booking = by_lane.get((slot, lane))
                if booking is None:
                    lanes.append(None)
                    continue
                lanes.append({
                    "booking_id": booking.id,
                    "team_id": booking.team_id,
                    "team_name": team_names.get(booking.team_id),
                    "status": booking.status,
                    "is_rescrutineering": booking.is_rescrutineering,
                })
            rows.append({"start_time": slot.strftime("%H:%M"), "lanes": lanes})

        return {
            "inspection_type_id": inspection_type.id,
            "date": booking_date.isoformat(),
            "slots": rows,
        }

    # ==========================================================================
    # Booking
    # ==========================================================================

    async def book_inspection(
        self,
        db: AsyncSession,
        team_id: int,
        inspection_type_id: int,
        start_time: time,
        booking_date: Optional[date] = None,
        notes: Optional[str] = None,
        created_by: Optional[str] = None
    ) -> Booking:
        """
        Book the lowest free lane at `start_time` for the team.

        Args:
            db: Database session (committed on success)
            team_id: Booking team
            inspection_type_id: Inspection type
            start_time: Requested slot start
            booking_date: Inspection day, defaults to today
            notes: Free-text notes for the inspectors
            created_by: Who made the booking

        Returns:
            Created Booking

        Raises:
            NotFoundError: Unknown team or inspection type
            ValidationError: Inactive type, or `start_time` is not on the slot grid
            EligibilityError: Already passed or prerequisite missing
            SlotExhaustedError: No lane left at `start_time` for this team
            ConflictError: Lane kept being taken concurrently
            PersistenceError: Store unavailable after retries
        """
        repo = CompetitionRepository(db)
        booking_date = booking_date or competition_today()

        await self._require_team(repo, team_id)
        inspection_type = await self._require_type(repo, inspection_type_id)
        if not inspection_type.active:
            raise ValidationError(f"Inspection type {inspection_type.key} is not active")

        grid = generate_time_slots(
            settings.BOOKING_WINDOW_START,
            settings.BOOKING_WINDOW_END,
            inspection_type.duration_minutes,
        )
        if start_time not in grid:
            raise ValidationError(
                f"{start_time.strftime('%H:%M')} is not a slot start for {inspection_type.key}"
            )

        eligibility = await self.check_eligibility(db, team_id, inspection_type_id)
        if not eligibility.eligible:
            raise EligibilityError(eligibility.reason)

        type_key = inspection_type.key
        attempts = settings.BOOKING_MAX_ATTEMPTS
        last_conflict = None
        for attempt in range(1, attempts + 1):
            async with self._allocation_lock(inspection_type_id, booking_date):
                try:
                    booking = await with_persistence_retry(
                        lambda: self._allocate_and_insert(
                            db, team_id, inspection_type_id, booking_date, start_time, notes, created_by
                        )
                    )
                except SlotExhaustedError:
                    raise
                except ConflictError as e:
                    last_conflict = e
                    logger.warning(
                        f"Lane conflict booking team {team_id} into {type_key} "
                        f"{booking_date} {start_time.strftime('%H:%M')} "
                        f"(attempt {attempt}/{attempts}), re-planning"
                    )
                    continue

            logger.info(
                f"Booked team {team_id} into {type_key} {booking_date} "
                f"{booking.start_time.strftime('%H:%M')} lane {booking.resource_index}"
                f"{' (rescrutineering)' if booking.is_rescrutineering else ''}"
            )
            return booking

        raise last_conflict

    async def _allocate_and_insert(
        self,
        db: AsyncSession,
        team_id: int,
        inspection_type_id: int,
        booking_date: date,
        start_time: time,
        notes: Optional[str],
        created_by: Optional[str]
    ) -> Booking:
        # Fresh snapshot: a conflict rollback expires everything loaded before
        repo = CompetitionRepository(db)
        inspection_type = await self._require_type(repo, inspection_type_id)
        candidates = await self._offer(repo, team_id, inspection_type, booking_date)
        chosen = next((c for c in candidates if c.start_time == start_time), None)
        if chosen is None:
            raise SlotExhaustedError(
                f"No lane available at {start_time.strftime('%H:%M')}, please pick another slot"
            )

        team_history = await repo.list_bookings(
            team_id=team_id, inspection_type_id=inspection_type.id
        )
        retrying = has_failed(team_history, inspection_type.id)

        booking = Booking(
            team_id=team_id,
            inspection_type_id=inspection_type.id,
            date=booking_date,
            start_time=chosen.start_time,
            end_time=chosen.end_time,
            resource_index=chosen.resource_index,
            status=BookingStatus.UPCOMING.value,
            is_rescrutineering=retrying,
            holds_lane=True,
            notes=notes,
            created_by=created_by,
        )
        await repo.create_booking(booking)
        await repo.commit()
        return booking

    # ==========================================================================
    # Inspector operations
    # ==========================================================================

    async def update_status(
        self,
        db: AsyncSession,
        booking_id: int,
        new_status: BookingStatus
    ) -> Booking:
        """
        Move a booking along its lifecycle.

        Raises:
            NotFoundError: Unknown booking
            InvalidTransitionError: Transition not allowed from current status
        """
        repo = CompetitionRepository(db)
        booking = await repo.get_booking(booking_id, lock=True)
        if booking is None:
            raise NotFoundError(f"Booking {booking_id} not found")

        current = BookingStatus(booking.status)
        new_status = BookingStatus(new_status)
        if not self._is_valid_transition(current, new_status):
            raise InvalidTransitionError(
                f"Cannot move booking {booking_id} from {current.value} to {new_status.value}"
            )

        booking = await repo.update_booking_status(booking_id, new_status)
        await db.commit()
        logger.info(f"Booking {booking_id}: {current.value} → {new_status.value}")
        return booking

    async def start_inspection(self, db: AsyncSession, booking_id: int) -> Booking:
        return await self.update_status(db, booking_id, BookingStatus.ONGOING)

    async def finish_inspection(self, db: AsyncSession, booking_id: int, passed: bool) -> Booking:
        outcome = BookingStatus.PASSED if passed else BookingStatus.FAILED
        return await self.update_status(db, booking_id, outcome)

    async def cancel_booking(self, db: AsyncSession, booking_id: int) -> Booking:
        return await self.update_status(db, booking_id, BookingStatus.CANCELLED)

    async def request_reinspection(
        self,
        db: AsyncSession,
        booking_id: int,
        requested_by: Optional[str] = None
    ) -> Booking:
        """
        Re-open a passed inspection.

        Creates a new FAILED rescrutineering booking with the same slot
        parameters. The passed booking is left untouched and keeps its lane.

        Raises:
            NotFoundError: Unknown booking
            InvalidTransitionError: Booking is not passed
        """
        repo = CompetitionRepository(db)
        original = await repo.get_booking(booking_id)
        if original is None:
            raise NotFoundError(f"Booking {booking_id} not found")
        if original.status != BookingStatus.PASSED.value:
            raise InvalidTransitionError(
                f"Only passed inspections can be re-opened (booking {booking_id} is {original.status})"
            )

        marker = Booking(
            team_id=original.team_id,
            inspection_type_id=original.inspection_type_id,
            date=original.date,
            start_time=original.start_time,
            end_time=original.end_time,
            resource_index=original.resource_index,
            status=BookingStatus.FAILED.value,
            is_rescrutineering=True,
            holds_lane=False,
            created_by=requested_by,
        )
        await repo.create_booking(marker)
        await db.commit()
        logger.info(f"Re-inspection requested for booking {booking_id} → booking {marker.id}")
        return marker
