"""
Competition Repository

Typed access to the persistent store for the booking, penalty and results
engines. One coroutine per query shape; every call site is checkable.

Driver failures surface as PersistenceError, unique violations as
ConflictError. Callers own the transaction and commit through `commit()`.
A store failure or failed insert leaves the session unusable, so it is rolled
back here before raising and the caller can retry on the same session.
"""
import functools
import logging
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import select, update, and_
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from paddock.exceptions import ConflictError, NotFoundError, PersistenceError, ValidationError
from paddock.orm.inspection import Booking, BookingStatus, InspectionType
from paddock.orm.results import CompetitionResult, StaticEventScore
from paddock.orm.team import Team
from paddock.orm.track import PenaltyRule, TimedRun, TrackIncident

logger = logging.getLogger(__name__)


INSPECTION_TYPE_ORDERINGS = {
    "sort_order": (InspectionType.sort_order, InspectionType.id),
    "name": (InspectionType.name, InspectionType.id),
    "key": (InspectionType.key, InspectionType.id),
    "id": (InspectionType.id,),
}


def translates_db_errors(fn):
    """Map driver-level failures onto the engine's error kinds."""
    @functools.wraps(fn)
    async def wrapper(self, *args, **kwargs):
        try:
            return await fn(self, *args, **kwargs)
        except IntegrityError as e:
            logger.warning(f"{fn.__name__}: integrity violation: {e.orig}")
            await self.db.rollback()
            raise ConflictError(f"Conflicting write in {fn.__name__}") from e
        except DBAPIError as e:
            logger.error(f"{fn.__name__}: store unavailable: {str(e)}")
            await self.db.rollback()
            raise PersistenceError(f"Store unavailable during {fn.__name__}") from e
    return wrapper


class CompetitionRepository:
    """Repository over one AsyncSession."""

    def __init__(self, db: AsyncSession):
        self.db = db

    @translates_db_errors
    async def commit(self) -> None:
        await self.db.commit()

    # ==========================================================================
    # Teams & catalog
    # ==========================================================================

    @translates_db_errors
    async def list_teams(self) -> List[Team]:
        result = await self.db.execute(select(Team).order_by(Team.id))
        return list(result.scalars().all())

    @translates_db_errors
    async def get_team(self, team_id: int) -> Optional[Team]:
        result = await self.db.execute(select(Team).where(Team.id == team_id))
        return result.scalar_one_or_none()

    @translates_db_errors
    async def list_inspection_types(self, order_by: str = "sort_order") -> List[InspectionType]:
        """
        List the inspection catalog.

        Raises:
            ValidationError: If order_by is not a known ordering
        """
        ordering = INSPECTION_TYPE_ORDERINGS.get(order_by)
        if ordering is None:
            raise ValidationError(f"Unknown inspection type ordering: {order_by}")
        result = await self.db.execute(select(InspectionType).order_by(*ordering))
        return list(result.scalars().all())

    @translates_db_errors
    async def get_inspection_type(self, inspection_type_id: int) -> Optional[InspectionType]:
        result = await self.db.execute(
            select(InspectionType).where(InspectionType.id == inspection_type_id)
        )
        return result.scalar_one_or_none()

    # ==========================================================================
    # Bookings
    # ==========================================================================

    @translates_db_errors
    async def list_bookings(
        self,
        date: Optional[date] = None,
        inspection_type_id: Optional[int] = None,
        team_id: Optional[int] = None,
    ) -> List[Booking]:
        """List bookings matching every given filter, in slot/lane order."""
        conditions = []
        if date is not None:
            conditions.append(Booking.date == date)
        if inspection_type_id is not None:
            conditions.append(Booking.inspection_type_id == inspection_type_id)
        if team_id is not None:
            conditions.append(Booking.team_id == team_id)

        query = select(Booking)
        if conditions:
            query = query.where(and_(*conditions))
        query = query.order_by(Booking.date, Booking.start_time, Booking.resource_index, Booking.id)

        result = await self.db.execute(query)
        return list(result.scalars().all())

    @translates_db_errors
    async def get_booking(self, booking_id: int, lock: bool = False) -> Optional[Booking]:
        query = select(Booking).where(Booking.id == booking_id)
        if lock:
            query = query.with_for_update()
        result = await self.db.execute(query)
        return result.scalar_one_or_none()

    async def create_booking(self, booking: Booking) -> Booking:
        """
        Insert a booking.

        Raises:
            ValidationError: Rescrutineering booking without a prior failure
            ConflictError: The (type, date, start_time, lane) is already held
            PersistenceError: Store unavailable
        """
        if booking.is_rescrutineering and booking.status != BookingStatus.FAILED.value:
            if not await self._has_failed_booking(booking.team_id, booking.inspection_type_id):
                raise ValidationError(
                    "Rescrutineering requires a failed inspection of the same type"
                )

        self.db.add(booking)
        try:
            await self.db.flush()
        except IntegrityError as e:
            await self.db.rollback()
            logger.warning(
                f"Lane taken: type={booking.inspection_type_id} date={booking.date} "
                f"start={booking.start_time} lane={booking.resource_index}"
            )
            raise ConflictError("Slot lane already taken") from e
        except DBAPIError as e:
            await self.db.rollback()
            logger.error(f"create_booking: store unavailable: {str(e)}")
            raise PersistenceError("Store unavailable during create_booking") from e
        return booking

    @translates_db_errors
    async def update_booking_status(self, booking_id: int, status: BookingStatus) -> Booking:
        """Set a booking's status. Cancelling releases the lane."""
        booking = await self.get_booking(booking_id, lock=True)
        if booking is None:
            raise NotFoundError(f"Booking {booking_id} not found")
        booking.status = BookingStatus(status).value
        if booking.status == BookingStatus.CANCELLED.value:
            booking.holds_lane = False
        await self.db.flush()
        return booking

    async def _has_failed_booking(self, team_id: int, inspection_type_id: int) -> bool:
        result = await self.db.execute(
            select(Booking.id).where(
                and_(
                    Booking.team_id == team_id,
                    Booking.inspection_type_id == inspection_type_id,
                    Booking.status == BookingStatus.FAILED.value,
                )
            ).limit(1)
        )
        return result.scalar_one_or_none() is not None

    # ==========================================================================
    # Penalty rules, incidents, runs
    # ==========================================================================

    @translates_db_errors
    async def list_active_penalty_rules(self) -> List[PenaltyRule]:
        result = await self.db.execute(
            select(PenaltyRule)
            .where(PenaltyRule.active.is_(True))
            .order_by(PenaltyRule.event_type, PenaltyRule.id)
        )
        return list(result.scalars().all())

    @translates_db_errors
    async def list_penalty_rules(self) -> List[PenaltyRule]:
        result = await self.db.execute(
            select(PenaltyRule).order_by(PenaltyRule.event_type, PenaltyRule.id)
        )
        return list(result.scalars().all())

    @translates_db_errors
    async def create_penalty_rule(self, rule: PenaltyRule) -> PenaltyRule:
        self.db.add(rule)
        await self.db.flush()
        return rule

    @translates_db_errors
    async def set_penalty_rule_active(self, rule_id: int, active: bool) -> PenaltyRule:
        result = await self.db.execute(select(PenaltyRule).where(PenaltyRule.id == rule_id))
        rule = result.scalar_one_or_none()
        if rule is None:
            raise NotFoundError(f"Penalty rule {rule_id} not found")
        rule.active = active
        await self.db.flush()
        return rule

    @translates_db_errors
    async def list_incidents(
        self,
        team_id: Optional[int] = None,
        event_type: Optional[str] = None,
        penalty_applied: Optional[bool] = None,
    ) -> List[TrackIncident]:
        """List incidents in the order they happened."""
        conditions = []
        if team_id is not None:
            conditions.append(TrackIncident.team_id == team_id)
        if event_type is not None:
            conditions.append(TrackIncident.event_type == event_type)
        if penalty_applied is not None:
            conditions.append(TrackIncident.penalty_applied.is_(penalty_applied))

        query = select(TrackIncident)
        if conditions:
            query = query.where(and_(*conditions))
        query = query.order_by(TrackIncident.timestamp, TrackIncident.id)

        result = await self.db.execute(query)
        return list(result.scalars().all())

    @translates_db_errors
    async def create_incident(self, incident: TrackIncident) -> TrackIncident:
        self.db.add(incident)
        await self.db.flush()
        return incident

    @translates_db_errors
    async def mark_incident_penalty_applied(self, incident_id: int) -> None:
        await self.db.execute(
            update(TrackIncident)
            .where(TrackIncident.id == incident_id)
            .values(penalty_applied=True)
        )

    @translates_db_errors
    async def list_timed_runs(
        self,
        status: Optional[str] = None,
        processed: Optional[bool] = None,
    ) -> List[TimedRun]:
        conditions = []
        if status is not None:
            conditions.append(TimedRun.status == status)
        if processed is not None:
            conditions.append(TimedRun.processed.is_(processed))

        query = select(TimedRun)
        if conditions:
            query = query.where(and_(*conditions))
        query = query.order_by(TimedRun.id)

        result = await self.db.execute(query)
        return list(result.scalars().all())

    @translates_db_errors
    async def get_timed_run(self, run_id: int) -> Optional[TimedRun]:
        result = await self.db.execute(select(TimedRun).where(TimedRun.id == run_id))
        return result.scalar_one_or_none()

    @translates_db_errors
    async def create_timed_run(self, run: TimedRun) -> TimedRun:
        self.db.add(run)
        await self.db.flush()
        return run

    @translates_db_errors
    async def update_timed_run(
        self,
        run_id: int,
        final_time: Optional[Decimal],
        status: str,
        processed: bool,
    ) -> bool:
        """
        Write the outcome of penalty processing.

        Only rows still unprocessed are touched, so a run is processed at most
        once even when two batches race.

        Returns:
            True if the row was updated
        """
        result = await self.db.execute(
            update(TimedRun)
            .where(and_(TimedRun.id == run_id, TimedRun.processed.is_(False)))
            .values(final_time=final_time, status=status, processed=processed)
        )
        return result.rowcount == 1

    # ==========================================================================
    # Scores & standings
    # ==========================================================================

    @translates_db_errors
    async def list_approved_scores(
        self,
        event_kind: str,
        team_id: Optional[int] = None,
    ) -> List[StaticEventScore]:
        query = select(StaticEventScore).where(
            and_(
                StaticEventScore.event_kind == event_kind,
                StaticEventScore.approved.is_(True),
            )
        )
        if team_id is not None:
            query = query.where(StaticEventScore.team_id == team_id)
        query = query.order_by(StaticEventScore.id)

        result = await self.db.execute(query)
        return list(result.scalars().all())

    @translates_db_errors
    async def upsert_competition_result(self, team_id: int, values: Dict[str, Any]) -> CompetitionResult:
        """Replace the team's result row, inserting it if missing."""
        result = await self.db.execute(
            select(CompetitionResult).where(CompetitionResult.team_id == team_id)
        )
        row = result.scalar_one_or_none()
        if row is None:
            row = CompetitionResult(team_id=team_id)
            self.db.add(row)
        for field, value in values.items():
            setattr(row, field, value)
        row.last_updated = datetime.utcnow()
        await self.db.flush()
        return row

    @translates_db_errors
    async def list_competition_results(self) -> List[CompetitionResult]:
        result = await self.db.execute(
            select(CompetitionResult).order_by(
                CompetitionResult.overall_rank.is_(None),
                CompetitionResult.overall_rank,
                CompetitionResult.team_id,
            )
        )
        return list(result.scalars().all())
