"""
Judged static-event scores and the derived competition standings.

CompetitionResult rows are derived data: the results engine recomputes every
team's row on each run and upserts it by team_id.
"""
from datetime import datetime
from decimal import Decimal
from enum import Enum

from sqlalchemy import (
    Column, String, Integer, Boolean, ForeignKey, DateTime, Numeric,
    UniqueConstraint, CheckConstraint, Index
)

from paddock.orm.base import BaseModel


QUANTIZER_4DP = Decimal("0.0001")   # For points


class StaticEventKind(str, Enum):
    """Judged, non-timed events."""
    DESIGN = "design"
    BUSINESS_PLAN = "business_plan"
    COST = "cost"


class StaticEventScore(BaseModel):
    """
    A judges' score sheet total for one team in one static event.

    Only approved sheets count towards the standings.
    """
    __tablename__ = "static_event_scores"

    team_id = Column(
        Integer,
        ForeignKey("teams.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    event_kind = Column(String(30), nullable=False)
    total_score = Column(Numeric(10, 2), nullable=False, default=0)
    approved = Column(Boolean, nullable=False, default=False)

    __table_args__ = (
        CheckConstraint(
            "event_kind IN ({})".format(", ".join(f"'{k.value}'" for k in StaticEventKind)),
            name="ck_static_event_kind_valid"
        ),
        Index("idx_static_score_kind_approved", "event_kind", "approved"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "team_id": self.team_id,
            "event_kind": self.event_kind,
            "total_score": float(self.total_score) if self.total_score is not None else 0,
            "approved": self.approved,
        }


class CompetitionResult(BaseModel):
    """
    Overall standing of a team.

    One row per team (unique team_id), replaced wholesale on each
    recalculation.
    """
    __tablename__ = "competition_results"

    team_id = Column(
        Integer,
        ForeignKey("teams.id", ondelete="CASCADE"),
        nullable=False
    )

    # Static events
    design_score = Column(Numeric(14, 4), nullable=False, default=0)
    business_plan_score = Column(Numeric(14, 4), nullable=False, default=0)
    cost_score = Column(Numeric(14, 4), nullable=False, default=0)

    # Best dynamic times (seconds)
    acceleration_time = Column(Numeric(10, 3), nullable=True)
    skidpad_time = Column(Numeric(10, 3), nullable=True)
    autocross_time = Column(Numeric(10, 3), nullable=True)
    endurance_time = Column(Numeric(10, 3), nullable=True)

    # Totals
    total_static_points = Column(Numeric(14, 4), nullable=False, default=0)
    total_dynamic_points = Column(Numeric(14, 4), nullable=False, default=0)
    penalties = Column(Numeric(14, 4), nullable=False, default=0)
    overall_total = Column(Numeric(14, 4), nullable=False, default=0)
    overall_rank = Column(Integer, nullable=True)

    last_updated = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("team_id", name="uq_competition_result_team"),
        Index("idx_competition_result_rank", "overall_rank"),
    )

    def to_dict(self):
        def _num(value):
            return float(value) if value is not None else None

        return {
            "team_id": self.team_id,
            "design_score": _num(self.design_score),
            "business_plan_score": _num(self.business_plan_score),
            "cost_score": _num(self.cost_score),
            "acceleration_time": _num(self.acceleration_time),
            "skidpad_time": _num(self.skidpad_time),
            "autocross_time": _num(self.autocross_time),
            "endurance_time": _num(self.endurance_time),
            "total_static_points": _num(self.total_static_points),
            "total_dynamic_points": _num(self.total_dynamic_points),
            "penalties": _num(self.penalties),
            "overall_total": _num(self.overall_total),
            "overall_rank": self.overall_rank,
            "last_updated": self.last_updated.isoformat() if self.last_updated else None,
        }
