"""
Track-side data: timed runs, marshal incidents and penalty rules.

Run times are stored as fixed-point seconds (3 decimals) and handled as
Decimal in Python.
"""
from datetime import datetime
from decimal import Decimal
from enum import Enum

from sqlalchemy import (
    Column, String, Integer, Boolean, ForeignKey, DateTime, Numeric, Text,
    CheckConstraint, Index
)

from paddock.orm.base import BaseModel


QUANTIZER_3DP = Decimal("0.001")     # For run times


class EventType(str, Enum):
    """Dynamic (timed) competition events."""
    ACCELERATION = "acceleration"
    SKIDPAD = "skidpad"
    AUTOCROSS = "autocross"
    ENDURANCE = "endurance"
    EFFICIENCY = "efficiency"
    PRACTICE = "practice"


class IncidentType(str, Enum):
    """Marshal incident codes."""
    DOO = "DOO"   # Down or Out (cone)
    OOC = "OOC"   # Off Course


class PenaltyType(str, Enum):
    TIME_PENALTY = "time_penalty"
    PERCENTAGE = "percentage"
    POINT_DEDUCTION = "point_deduction"
    DISQUALIFICATION = "disqualification"


class RunStatus(str, Enum):
    VALID = "valid"
    DSQ = "DSQ"
    DNF = "DNF"


class TrackIncident(BaseModel):
    """
    An incident logged by a track marshal against a team's run.

    Attributes:
        team_id: FK to team
        event_type: Event the incident occurred in
        incident_type: Incident code (DOO, OOC, ...)
        severity: Marshal's severity grading
        timestamp: When it happened, matched against run start/finish
        penalty_applied: Set once the penalty engine has consumed it
    """
    __tablename__ = "track_incidents"

    team_id = Column(
        Integer,
        ForeignKey("teams.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    event_type = Column(String(30), nullable=False)
    incident_type = Column(String(30), nullable=False)
    severity = Column(String(20), nullable=False, default="minor")
    timestamp = Column(DateTime, nullable=False, default=datetime.utcnow)
    penalty_applied = Column(Boolean, nullable=False, default=False)
    description = Column(Text, nullable=True)
    reported_by = Column(String(200), nullable=True)

    __table_args__ = (
        Index("idx_incident_team_event", "team_id", "event_type"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "team_id": self.team_id,
            "event_type": self.event_type,
            "incident_type": self.incident_type,
            "severity": self.severity,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
            "penalty_applied": self.penalty_applied,
            "description": self.description,
        }


class PenaltyRule(BaseModel):
    """
    Admin-configured penalty for an (event_type, incident_type) pair.

    `max_count` is recorded for the officials but not enforced by the engine.
    """
    __tablename__ = "penalty_rules"

    name = Column(String(200), nullable=False)
    event_type = Column(String(30), nullable=False)
    incident_type = Column(String(30), nullable=False)
    penalty_type = Column(String(30), nullable=False)
    penalty_value = Column(Numeric(10, 3), nullable=False, default=0)
    max_count = Column(Integer, nullable=True)
    active = Column(Boolean, nullable=False, default=True)
    description = Column(Text, nullable=True)

    __table_args__ = (
        CheckConstraint(
            "penalty_type IN ({})".format(", ".join(f"'{p.value}'" for p in PenaltyType)),
            name="ck_penalty_type_valid"
        ),
        Index("idx_penalty_rule_match", "event_type", "incident_type", "active"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "event_type": self.event_type,
            "incident_type": self.incident_type,
            "penalty_type": self.penalty_type,
            "penalty_value": float(self.penalty_value) if self.penalty_value is not None else None,
            "max_count": self.max_count,
            "active": self.active,
            "description": self.description,
        }


class TimedRun(BaseModel):
    """
    One dynamic-event attempt as delivered by the timing system.

    `processed` flips false → true exactly once, when the penalty engine
    writes `final_time` (or disqualifies the run).
    """
    __tablename__ = "timed_runs"

    team_id = Column(
        Integer,
        ForeignKey("teams.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    event_type = Column(String(30), nullable=False)
    start_time = Column(DateTime, nullable=False)
    finish_time = Column(DateTime, nullable=False)
    raw_time = Column(Numeric(10, 3), nullable=False)
    final_time = Column(Numeric(10, 3), nullable=True)
    status = Column(String(10), nullable=False, default=RunStatus.VALID.value)
    processed = Column(Boolean, nullable=False, default=False)

    __table_args__ = (
        CheckConstraint("raw_time >= 0", name="ck_run_raw_time_non_negative"),
        Index("idx_run_status_processed", "status", "processed"),
        Index("idx_run_team_event", "team_id", "event_type"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "team_id": self.team_id,
            "event_type": self.event_type,
            "start_time": self.start_time.isoformat() if self.start_time else None,
            "finish_time": self.finish_time.isoformat() if self.finish_time else None,
            "raw_time": float(self.raw_time) if self.raw_time is not None else None,
            "final_time": float(self.final_time) if self.final_time is not None else None,
            "status": self.status,
            "processed": self.processed,
        }
