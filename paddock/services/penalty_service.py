"""
Penalty Rule Engine

Turns raw timed runs into final times by applying the active penalty rules to
the marshal incidents logged during each run. Also owns the track-side data
entry used by marshals and the timing system.

Uses Decimal for all time arithmetic. Each run is processed in its own
transaction; a run is written at most once (the update only touches rows that
are still unprocessed).
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Callable, List, Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from paddock.exceptions import NotFoundError, ValidationError
from paddock.orm.track import (
    EventType, IncidentType, PenaltyRule, PenaltyType, RunStatus, TimedRun,
    TrackIncident, QUANTIZER_3DP
)
from paddock.services.batch import BatchReport, SingleFlight, run_isolated, with_persistence_retry
from paddock.services.competition_repository import CompetitionRepository

logger = logging.getLogger(__name__)


@dataclass
class RunAdjustment:
    """Outcome of applying penalties to one run."""
    final_time: Optional[Decimal]
    status: str
    consumed_incident_ids: List[int] = field(default_factory=list)

    @property
    def disqualified(self) -> bool:
        return self.status == RunStatus.DSQ.value


def matching_incidents(run: TimedRun, incidents: Sequence[TrackIncident]) -> List[TrackIncident]:
    """Incidents of the run's team and event logged between its start and finish."""
    return [
        incident for incident in incidents
        if incident.team_id == run.team_id
        and incident.event_type == run.event_type
        and run.start_time <= incident.timestamp <= run.finish_time
    ]


def find_rule(
    rules: Sequence[PenaltyRule],
    event_type: str,
    incident_type: str
) -> Optional[PenaltyRule]:
    """First active rule for the (event, incident) pair, in the given order."""
    for rule in rules:
        if rule.active and rule.event_type == event_type and rule.incident_type == incident_type:
            return rule
    return None


def compute_run_adjustment(
    run: TimedRun,
    incidents: Sequence[TrackIncident],
    rules: Sequence[PenaltyRule]
) -> RunAdjustment:
    """
    Apply penalty rules to one run.

    Every matching incident is consumed, including the ones after a
    disqualification and the ones no rule covers.
    """
    raw_time = Decimal(str(run.raw_time))
    matched = matching_incidents(run, incidents)
    consumed = [incident.id for incident in matched]

    accumulator = Decimal("0")
    for incident in matched:
        rule = find_rule(rules, run.event_type, incident.incident_type)
        if rule is None:
            continue

        value = Decimal(str(rule.penalty_value))
        if rule.penalty_type == PenaltyType.TIME_PENALTY.value:
            accumulator += value
        elif rule.penalty_type == PenaltyType.PERCENTAGE.value:
            accumulator += raw_time * value / Decimal(100)
        elif rule.penalty_type == PenaltyType.DISQUALIFICATION.value:
            return RunAdjustment(
                final_time=None,
                status=RunStatus.DSQ.value,
                consumed_incident_ids=consumed,
            )
        # point_deduction matches but does not change the time

    final_time = (raw_time + accumulator).quantize(QUANTIZER_3DP, rounding=ROUND_HALF_UP)
    return RunAdjustment(
        final_time=final_time,
        status=RunStatus.VALID.value,
        consumed_incident_ids=consumed,
    )


def _require_member(enum_cls, value: str, label: str) -> str:
    try:
        return enum_cls(value).value
    except ValueError:
        allowed = ", ".join(m.value for m in enum_cls)
        raise ValidationError(f"Unknown {label} '{value}' (expected one of: {allowed})")


class PenaltyService:
    """
    Service for penalty rules, incidents, timed runs and penalty processing.

    One instance per application: it holds the single-flight guard for the
    penalty batch.
    """

    JOB_KEY = "apply_penalties"

    def __init__(self):
        self._single_flight = SingleFlight()

    # ==========================================================================
    # Track-side data entry
    # ==========================================================================

    async def create_rule(
        self,
        db: AsyncSession,
        name: str,
        event_type: str,
        incident_type: str,
        penalty_type: str,
        penalty_value: Decimal,
        max_count: Optional[int] = None,
        active: bool = True,
        description: Optional[str] = None
    ) -> PenaltyRule:
        """
        Create a penalty rule.

        Raises:
            ValidationError: Unknown event/incident/penalty type or negative value
        """
        penalty_value = Decimal(str(penalty_value))
        if penalty_value < 0:
            raise ValidationError("Penalty value must not be negative")
        if max_count is not None and max_count < 1:
            raise ValidationError("max_count must be at least 1")

        rule = PenaltyRule(
            name=name,
            event_type=_require_member(EventType, event_type, "event type"),
            incident_type=_require_member(IncidentType, incident_type, "incident type"),
            penalty_type=_require_member(PenaltyType, penalty_type, "penalty type"),
            penalty_value=penalty_value,
            max_count=max_count,
            active=active,
            description=description,
        )
        await CompetitionRepository(db).create_penalty_rule(rule)
        await db.commit()
        logger.info(f"Penalty rule {rule.id} created: {rule.event_type}/{rule.incident_type} → {rule.penalty_type}")
        return rule

    async def set_rule_active(self, db: AsyncSession, rule_id: int, active: bool) -> PenaltyRule:
        rule = await CompetitionRepository(db).set_penalty_rule_active(rule_id, active)
        await db.commit()
        logger.info(f"Penalty rule {rule_id} {'activated' if active else 'deactivated'}")
        return rule

    async def list_rules(self, db: AsyncSession) -> List[PenaltyRule]:
        return await CompetitionRepository(db).list_penalty_rules()

    async def log_incident(
        self,
        db: AsyncSession,
        team_id: int,
        event_type: str,
        incident_type: str,
        severity: str = "minor",
        timestamp: Optional[datetime] = None,
        description: Optional[str] = None,
        reported_by: Optional[str] = None
    ) -> TrackIncident:
        """Record a marshal's incident report."""
        repo = CompetitionRepository(db)
        if await repo.get_team(team_id) is None:
            raise NotFoundError(f"Team {team_id} not found")

        incident = TrackIncident(
            team_id=team_id,
            event_type=_require_member(EventType, event_type, "event type"),
            incident_type=_require_member(IncidentType, incident_type, "incident type"),
            severity=severity,
            timestamp=timestamp or datetime.utcnow(),
            penalty_applied=False,
            description=description,
            reported_by=reported_by,
        )
        await repo.create_incident(incident)
        await db.commit()
        logger.info(f"Incident {incident.id} logged: team {team_id} {incident.event_type} {incident.incident_type}")
        return incident

    async def list_incidents(
        self,
        db: AsyncSession,
        team_id: Optional[int] = None,
        event_type: Optional[str] = None
    ) -> List[TrackIncident]:
        return await CompetitionRepository(db).list_incidents(team_id=team_id, event_type=event_type)

    async def record_run(
        self,
        db: AsyncSession,
        team_id: int,
        event_type: str,
        start_time: datetime,
        finish_time: datetime,
        raw_time: Optional[Decimal] = None
    ) -> TimedRun:
        """
        Ingest a run from the timing system.

        `raw_time` defaults to the elapsed seconds between start and finish.
        """
        if finish_time <= start_time:
            raise ValidationError("Run finish time must be after its start time")

        repo = CompetitionRepository(db)
        if await repo.get_team(team_id) is None:
            raise NotFoundError(f"Team {team_id} not found")

        if raw_time is None:
            raw_time = Decimal(str((finish_time - start_time).total_seconds()))
        raw_time = Decimal(str(raw_time)).quantize(QUANTIZER_3DP, rounding=ROUND_HALF_UP)
        if raw_time <= 0:
            raise ValidationError("Run time must be positive")

        run = TimedRun(
            team_id=team_id,
            event_type=_require_member(EventType, event_type, "event type"),
            start_time=start_time,
            finish_time=finish_time,
            raw_time=raw_time,
            final_time=None,
            status=RunStatus.VALID.value,
            processed=False,
        )
        await repo.create_timed_run(run)
        await db.commit()
        logger.info(f"Run {run.id} recorded: team {team_id} {run.event_type} {raw_time}s")
        return run

    async def list_runs(
        self,
        db: AsyncSession,
        status: Optional[str] = None,
        processed: Optional[bool] = None
    ) -> List[TimedRun]:
        return await CompetitionRepository(db).list_timed_runs(status=status, processed=processed)

    # ==========================================================================
    # Penalty processing
    # ==========================================================================

    async def apply_penalties(self, session_factory: Callable[[], AsyncSession]) -> BatchReport:
        """
        Process every unprocessed valid run.

        Concurrent calls share one execution. Each run commits on its own;
        failed run ids are listed in the report.
        """
        return await self._single_flight.run(
            self.JOB_KEY, lambda: self._apply_penalties(session_factory)
        )

    def is_running(self) -> bool:
        return self._single_flight.is_running(self.JOB_KEY)

    async def _apply_penalties(self, session_factory: Callable[[], AsyncSession]) -> BatchReport:
        async with session_factory() as db:
            repo = CompetitionRepository(db)
            runs = await with_persistence_retry(
                lambda: repo.list_timed_runs(status=RunStatus.VALID.value, processed=False)
            )
            rules = await with_persistence_retry(repo.list_active_penalty_rules)
            run_refs = [(run.id, run.team_id, run.event_type) for run in runs]

        logger.info(f"Applying penalties to {len(run_refs)} run(s) with {len(rules)} active rule(s)")

        async def handle(ref) -> bool:
            run_id = ref[0]
            return await with_persistence_retry(
                lambda: self._process_run(session_factory, run_id, rules)
            )

        return await run_isolated(self.JOB_KEY, run_refs, key=lambda ref: ref[0], handler=handle)

    async def _process_run(
        self,
        session_factory: Callable[[], AsyncSession],
        run_id: int,
        rules: Sequence[PenaltyRule]
    ) -> bool:
        async with session_factory() as db:
            repo = CompetitionRepository(db)
            run = await repo.get_timed_run(run_id)
            if run is None or run.processed or run.status != RunStatus.VALID.value:
                return False

            incidents = await repo.list_incidents(team_id=run.team_id, event_type=run.event_type)
            adjustment = compute_run_adjustment(run, incidents, rules)

            updated = await repo.update_timed_run(
                run.id,
                final_time=adjustment.final_time,
                status=adjustment.status,
                processed=True,
            )
            if not updated:
                await db.rollback()
                return False

            for incident_id in adjustment.consumed_incident_ids:
                await repo.mark_incident_penalty_applied(incident_id)
            await repo.commit()

        if adjustment.disqualified:
            logger.info(f"Run {run_id} disqualified")
        else:
            logger.info(f"Run {run_id} final time {adjustment.final_time}s "
                        f"({len(adjustment.consumed_incident_ids)} incident(s))")
        return True
