"""
Results Aggregator Test Suite

Tests for point curves, penalty weights, deterministic ranking and
idempotent recalculation.
"""
from datetime import datetime, timedelta
from decimal import Decimal

import pytest
import pytest_asyncio

from paddock.orm.results import StaticEventScore
from paddock.orm.track import RunStatus, TimedRun, TrackIncident
from paddock.services.competition_repository import CompetitionRepository
from paddock.services.results_service import (
    TeamStanding, best_times, compute_standings, event_points, latest_approved_scores,
    rank_standings
)


START = datetime(2026, 7, 23, 9, 0, 0)


def processed_run(team_id, event_type, final_time, status=RunStatus.VALID.value, processed=True):
    return TimedRun(
        team_id=team_id, event_type=event_type, start_time=START,
        finish_time=START + timedelta(minutes=1), raw_time=Decimal(final_time or "0"),
        final_time=Decimal(final_time) if final_time is not None else None,
        status=status, processed=processed
    )


def score(id, team_id, kind, total, approved=True):
    return StaticEventScore(id=id, team_id=team_id, event_kind=kind,
                            total_score=Decimal(total), approved=approved)


# =============================================================================
# Point curves & inputs
# =============================================================================

class TestPointCurves:

    @pytest.mark.parametrize("event_type,best,expected", [
        ("acceleration", "4.2", "58"),
        ("skidpad", "5.0", "75"),
        ("autocross", "60", "30"),
        ("endurance", "1500", "100"),
        ("acceleration", "12", "0"),      # floored
        ("endurance", None, "0"),
        ("acceleration", "0", "0"),       # zero time scores nothing
    ])
    def test_event_points(self, event_type, best, expected):
        best_time = Decimal(best) if best is not None else None
        assert event_points(event_type, best_time) == Decimal(expected)

    def test_best_time_ignores_dsq_and_unprocessed(self):
        runs = [
            processed_run(1, "acceleration", "4.800"),
            processed_run(1, "acceleration", "4.200"),
            processed_run(1, "acceleration", None, status=RunStatus.DSQ.value),
            processed_run(1, "acceleration", "3.900", processed=False),
            processed_run(1, "practice", "2.000"),
        ]
        assert best_times(runs) == {1: {"acceleration": Decimal("4.200")}}

    def test_last_approved_sheet_wins(self):
        sheets = [
            score(1, 1, "design", "100"),
            score(2, 1, "design", "120"),
            score(3, 1, "design", "150", approved=False),
        ]
        assert latest_approved_scores(sheets) == {1: Decimal("120")}


# =============================================================================
# Aggregation & ranking
# =============================================================================

class TestComputeStandings:

    def test_static_total_and_acceleration_example(self):
        static = {
            "design": {1: Decimal("120")},
            "business_plan": {1: Decimal("60")},
            "cost": {1: Decimal("70")},
        }
        runs = [processed_run(1, "acceleration", "4.2")]

        standing = compute_standings([1], static, runs, [])[0]

        assert standing.total_static_points == Decimal("250")
        assert standing.event_points["acceleration"] == Decimal("58")
        assert standing.total_dynamic_points == Decimal("58")
        assert standing.overall_total == Decimal("308")
        assert standing.overall_rank == 1

    def test_penalty_weights_and_dynamic_floor(self):
        incidents = [
            TrackIncident(team_id=1, event_type="acceleration", incident_type="DOO", penalty_applied=True),
            TrackIncident(team_id=1, event_type="acceleration", incident_type="OOC", penalty_applied=True),
            TrackIncident(team_id=1, event_type="acceleration", incident_type="DOO", penalty_applied=False),
            TrackIncident(team_id=2, event_type="skidpad", incident_type="DOO", penalty_applied=True),
        ]
        runs = [processed_run(1, "acceleration", "9.0")]   # 10 points

        standings = {s.team_id: s for s in compute_standings([1, 2], {}, runs, incidents)}

        assert standings[1].penalties == Decimal("2.2")
        assert standings[1].total_dynamic_points == Decimal("7.8")
        assert standings[2].penalties == Decimal("2")
        assert standings[2].total_dynamic_points == Decimal("0")

    def test_team_without_data_scores_zero(self):
        standing = compute_standings([5], {}, [], [])[0]
        assert standing.overall_total == Decimal("0")
        assert standing.best_times["endurance"] is None

    def test_ties_broken_by_static_then_team_id(self):
        standings = [
            TeamStanding(team_id=3, total_static_points=Decimal("100"), overall_total=Decimal("200")),
            TeamStanding(team_id=1, total_static_points=Decimal("150"), overall_total=Decimal("200")),
            TeamStanding(team_id=2, total_static_points=Decimal("100"), overall_total=Decimal("200")),
            TeamStanding(team_id=4, total_static_points=Decimal("0"), overall_total=Decimal("250")),
        ]
        ordered = rank_standings(standings)
        assert [(s.team_id, s.overall_rank) for s in ordered] == [(4, 1), (1, 2), (2, 3), (3, 4)]


# =============================================================================
# Recalculation against the store
# =============================================================================

@pytest_asyncio.fixture
async def scored_competition(db, teams):
    a, b, c = teams
    db.add_all([
        score(None, a.id, "design", "120"),
        score(None, a.id, "business_plan", "60"),
        score(None, a.id, "cost", "70"),
        score(None, b.id, "design", "140"),
        score(None, c.id, "design", "300", approved=False),
        processed_run(a.id, "acceleration", "4.200"),
        processed_run(b.id, "acceleration", "4.000"),
        processed_run(b.id, "skidpad", "5.333"),
        TrackIncident(team_id=b.id, event_type="skidpad", incident_type="OOC",
                      timestamp=START, penalty_applied=True),
    ])
    await db.commit()
    return teams


class TestRecalculate:

    @pytest.mark.asyncio
    async def test_upserts_ranked_rows(self, session_factory, scored_competition, results_service):
        a, b, c = scored_competition

        report = await results_service.recalculate(session_factory)

        assert sorted(report.succeeded) == sorted(t.id for t in scored_competition)
        assert report.failed == []

        async with session_factory() as session:
            rows = {r.team_id: r for r in await CompetitionRepository(session).list_competition_results()}

        assert rows[a.id].total_static_points == Decimal("250")
        assert rows[a.id].overall_total == Decimal("308")
        assert rows[a.id].acceleration_time == Decimal("4.200")
        assert rows[a.id].overall_rank == 1
        assert rows[b.id].overall_rank == 2
        assert rows[c.id].overall_total == Decimal("0")
        assert rows[c.id].overall_rank == 3

    @pytest.mark.asyncio
    async def test_recalculation_is_idempotent(self, session_factory, scored_competition, results_service):
        async def snapshot():
            async with session_factory() as session:
                rows = await CompetitionRepository(session).list_competition_results()
                return [(r.team_id, str(r.overall_total), r.overall_rank) for r in rows]

        await results_service.recalculate(session_factory)
        first = await snapshot()
        await results_service.recalculate(session_factory)
        second = await snapshot()

        assert first == second
        async with session_factory() as session:
            assert len(await CompetitionRepository(session).list_competition_results()) == 3

    @pytest.mark.asyncio
    async def test_failed_team_is_skipped_and_reported(
        self, session_factory, scored_competition, results_service, monkeypatch
    ):
        a, b, c = scored_competition
        original = results_service._store

        async def flaky(factory, standing):
            if standing.team_id == b.id:
                raise RuntimeError("disk full")
            return await original(factory, standing)

        monkeypatch.setattr(results_service, "_store", flaky)

        report = await results_service.recalculate(session_factory)

        assert report.failed == [b.id]
        assert report.partial is True
        async with session_factory() as session:
            stored = {r.team_id for r in await CompetitionRepository(session).list_competition_results()}
        assert stored == {a.id, c.id}
