"""
Results Aggregator

Deterministic standings computation from approved static scores, processed
dynamic runs and penalised incidents.

Uses Decimal for all numeric computation to avoid float errors, so running
the aggregation twice over unchanged inputs yields identical totals and
ranks. Each team's row is upserted in its own transaction.
"""
import logging
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from paddock.orm.results import CompetitionResult, StaticEventKind, StaticEventScore, QUANTIZER_4DP
from paddock.orm.track import EventType, IncidentType, RunStatus, TimedRun, TrackIncident
from paddock.services.batch import BatchReport, SingleFlight, run_isolated, with_persistence_retry
from paddock.services.competition_repository import CompetitionRepository

logger = logging.getLogger(__name__)


ZERO = Decimal("0")

# (base, factor): points = max(0, base - time * factor)
POINT_CURVES = {
    EventType.ACCELERATION.value: (Decimal("100"), Decimal("10")),
    EventType.SKIDPAD.value: (Decimal("100"), Decimal("5")),
    EventType.AUTOCROSS.value: (Decimal("150"), Decimal("2")),
    EventType.ENDURANCE.value: (Decimal("250"), Decimal("0.1")),
}

DOO_PENALTY_POINTS = Decimal("2")
OTHER_INCIDENT_PENALTY_POINTS = Decimal("0.2")


@dataclass
class TeamStanding:
    """Computed standing of one team before persistence."""
    team_id: int
    static_scores: Dict[str, Decimal] = field(default_factory=dict)
    best_times: Dict[str, Optional[Decimal]] = field(default_factory=dict)
    event_points: Dict[str, Decimal] = field(default_factory=dict)
    total_static_points: Decimal = ZERO
    total_dynamic_points: Decimal = ZERO
    penalties: Decimal = ZERO
    overall_total: Decimal = ZERO
    overall_rank: Optional[int] = None

    def to_values(self) -> Dict[str, Any]:
        """Column values for the team's CompetitionResult row."""
        def _points(value: Decimal) -> Decimal:
            return value.quantize(QUANTIZER_4DP, rounding=ROUND_HALF_UP)

        return {
            "design_score": _points(self.static_scores.get(StaticEventKind.DESIGN.value, ZERO)),
            "business_plan_score": _points(self.static_scores.get(StaticEventKind.BUSINESS_PLAN.value, ZERO)),
            "cost_score": _points(self.static_scores.get(StaticEventKind.COST.value, ZERO)),
            "acceleration_time": self.best_times.get(EventType.ACCELERATION.value),
            "skidpad_time": self.best_times.get(EventType.SKIDPAD.value),
            "autocross_time": self.best_times.get(EventType.AUTOCROSS.value),
            "endurance_time": self.best_times.get(EventType.ENDURANCE.value),
            "total_static_points": _points(self.total_static_points),
            "total_dynamic_points": _points(self.total_dynamic_points),
            "penalties": _points(self.penalties),
            "overall_total": _points(self.overall_total),
            "overall_rank": self.overall_rank,
        }


def event_points(event_type: str, best_time: Optional[Decimal]) -> Decimal:
    """Points for a best time on the event's curve, floored at 0. A zero time scores nothing."""
    if not best_time or event_type not in POINT_CURVES:
        return ZERO
    base, factor = POINT_CURVES[event_type]
    return max(ZERO, base - best_time * factor)


def incident_penalty_points(incident_type: str) -> Decimal:
    if incident_type == IncidentType.DOO.value:
        return DOO_PENALTY_POINTS
    return OTHER_INCIDENT_PENALTY_POINTS


def latest_approved_scores(scores: Iterable[StaticEventScore]) -> Dict[int, Decimal]:
    """Team id → score of the last approved sheet (by id)."""
    latest: Dict[int, StaticEventScore] = {}
    for score in scores:
        if not score.approved:
            continue
        current = latest.get(score.team_id)
        if current is None or score.id > current.id:
            latest[score.team_id] = score
    return {team_id: Decimal(str(s.total_score or 0)) for team_id, s in latest.items()}


def best_times(runs: Iterable[TimedRun]) -> Dict[int, Dict[str, Decimal]]:
    """Team id → event type → lowest final time among processed valid runs."""
    best: Dict[int, Dict[str, Decimal]] = {}
    for run in runs:
        if not run.processed or run.status != RunStatus.VALID.value or run.final_time is None:
            continue
        if run.event_type not in POINT_CURVES:
            continue
        final_time = Decimal(str(run.final_time))
        team_best = best.setdefault(run.team_id, {})
        if run.event_type not in team_best or final_time < team_best[run.event_type]:
            team_best[run.event_type] = final_time
    return best


def rank_standings(standings: List[TeamStanding]) -> List[TeamStanding]:
    """
    Assign 1-based ranks by overall total, highest first.

    Ties are broken by static points (higher first), then by team id.
    """
    ordered = sorted(
        standings,
        key=lambda s: (-s.overall_total, -s.total_static_points, s.team_id)
    )
    for rank, standing in enumerate(ordered, start=1):
        standing.overall_rank = rank
    return ordered


def compute_standings(
    team_ids: Sequence[int],
    static_scores: Dict[str, Dict[int, Decimal]],
    runs: Sequence[TimedRun],
    incidents: Sequence[TrackIncident],
) -> List[TeamStanding]:
    """
    Compute every team's totals and rank.

    Args:
        team_ids: All competing teams
        static_scores: Event kind → team id → approved score
        runs: Timed runs (only processed valid runs count)
        incidents: Track incidents (only penalised ones count)

    Returns:
        Standings in rank order
    """
    times_by_team = best_times(runs)

    penalties_by_team: Dict[int, Decimal] = {}
    for incident in incidents:
        if not incident.penalty_applied:
            continue
        penalties_by_team[incident.team_id] = (
            penalties_by_team.get(incident.team_id, ZERO) + incident_penalty_points(incident.incident_type)
        )

    standings = []
    for team_id in team_ids:
        standing = TeamStanding(team_id=team_id)

        for kind in StaticEventKind:
            standing.static_scores[kind.value] = static_scores.get(kind.value, {}).get(team_id, ZERO)
        standing.total_static_points = sum(standing.static_scores.values(), ZERO)

        team_times = times_by_team.get(team_id, {})
        for event_type in POINT_CURVES:
            best = team_times.get(event_type)
            standing.best_times[event_type] = best
            standing.event_points[event_type] = event_points(event_type, best)

        standing.penalties = penalties_by_team.get(team_id, ZERO)
        standing.total_dynamic_points = max(
            ZERO, sum(standing.event_points.values(), ZERO) - standing.penalties
        )
        standing.overall_total = standing.total_static_points + standing.total_dynamic_points
        standings.append(standing)

    return rank_standings(standings)


class ResultsService:
    """
    Service for competition standings.

    One instance per application: it holds the single-flight guard for the
    recalculation batch.
    """

    JOB_KEY = "recalculate_results"

    def __init__(self):
        self._single_flight = SingleFlight()

    def is_running(self) -> bool:
        return self._single_flight.is_running(self.JOB_KEY)

    async def recalculate(self, session_factory: Callable[[], AsyncSession]) -> BatchReport:
        """
        Recompute and upsert every team's standing.

        Safe to call repeatedly and concurrently; concurrent callers share one
        run. Teams whose upsert fails are listed in the report's `failed`.
        """
        return await self._single_flight.run(
            self.JOB_KEY, lambda: self._recalculate(session_factory)
        )

    async def _recalculate(self, session_factory: Callable[[], AsyncSession]) -> BatchReport:
        async with session_factory() as db:
            standings = await with_persistence_retry(lambda: self._compute(db))

        logger.info(f"Computed standings for {len(standings)} team(s)")

        async def handle(standing: TeamStanding) -> bool:
            return await with_persistence_retry(
                lambda: self._store(session_factory, standing)
            )

        return await run_isolated(
            self.JOB_KEY, standings, key=lambda s: s.team_id, handler=handle
        )

    @staticmethod
    async def _compute(db: AsyncSession) -> List[TeamStanding]:
        repo = CompetitionRepository(db)
        teams = await repo.list_teams()
        static_scores = {
            kind.value: latest_approved_scores(await repo.list_approved_scores(kind.value))
            for kind in StaticEventKind
        }
        runs = await repo.list_timed_runs(processed=True)
        incidents = await repo.list_incidents(penalty_applied=True)
        return compute_standings([t.id for t in teams], static_scores, runs, incidents)

    @staticmethod
    async def _store(session_factory: Callable[[], AsyncSession], standing: TeamStanding) -> bool:
        async with session_factory() as db:
            repo = CompetitionRepository(db)
            await repo.upsert_competition_result(standing.team_id, standing.to_values())
            await repo.commit()
        return True

    async def list_results(self, db: AsyncSession) -> List[CompetitionResult]:
        """Stored standings in rank order."""
        return await CompetitionRepository(db).list_competition_results()
