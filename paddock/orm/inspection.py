"""
Scrutineering inspection catalog and bookings.

ORM models for lane-based inspection booking. A lane is one of the
`concurrent_slots` physical stations of an inspection type; at most one
lane-holding booking may exist per (type, date, start time, lane).
"""
from enum import Enum

from sqlalchemy import (
    Column, String, Integer, Boolean, ForeignKey, Date, Time, Text,
    CheckConstraint, Index, true
)
from sqlalchemy.orm import relationship

from paddock.orm.base import BaseModel
from paddock.core.db_types import KeyList


class BookingStatus(str, Enum):
    """Booking status state machine."""
    UPCOMING = "upcoming"
    ONGOING = "ongoing"
    PASSED = "passed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class InspectionType(BaseModel):
    """
    A kind of technical inspection (e.g. electrical, mechanical, tilt, brake).

    Attributes:
        key: Durable identifier used by the prerequisite graph
        name: Display name
        duration_minutes: Length of one inspection slot
        concurrent_slots: Number of lanes that can inspect in parallel
        prerequisites: Keys of inspection types that must be passed first
        sort_order: Catalog display order
        active: Whether teams may book this type
    """
    __tablename__ = "inspection_types"

    key = Column(String(50), nullable=False, index=True)
    name = Column(String(200), nullable=False)
    duration_minutes = Column(Integer, nullable=False, default=120)
    concurrent_slots = Column(Integer, nullable=False, default=1)
    prerequisites = Column(KeyList, nullable=False, default=list)
    sort_order = Column(Integer, nullable=False, default=0)
    active = Column(Boolean, nullable=False, default=True)

    bookings = relationship("Booking", back_populates="inspection_type")

    __table_args__ = (
        CheckConstraint("duration_minutes > 0", name="ck_inspection_duration_positive"),
        CheckConstraint("concurrent_slots > 0", name="ck_inspection_lanes_positive"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "key": self.key,
            "name": self.name,
            "duration_minutes": self.duration_minutes,
            "concurrent_slots": self.concurrent_slots,
            "prerequisites": list(self.prerequisites or []),
            "sort_order": self.sort_order,
            "active": self.active,
        }


class Booking(BaseModel):
    """
    A team's reservation of one lane of an inspection type.

    Status flow: UPCOMING → ONGOING → PASSED | FAILED, CANCELLED from either
    non-terminal state. Rows are never deleted; a passed booking is re-opened
    by a new FAILED rescrutineering row that repeats its slot parameters but
    does not hold the lane.

    Attributes:
        team_id: FK to team
        inspection_type_id: FK to inspection type
        date: Inspection day
        start_time / end_time: Slot bounds
        resource_index: Lane, 0-based
        status: Booking status
        is_rescrutineering: Retry after a failed inspection
        holds_lane: Whether this row occupies (type, date, start_time, lane)
    """
    __tablename__ = "bookings"

    team_id = Column(
        Integer,
        ForeignKey("teams.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    inspection_type_id = Column(
        Integer,
        ForeignKey("inspection_types.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    date = Column(Date, nullable=False)
    start_time = Column(Time, nullable=False)
    end_time = Column(Time, nullable=False)
    resource_index = Column(Integer, nullable=False, default=0)
    status = Column(String(20), nullable=False, default=BookingStatus.UPCOMING.value)
    is_rescrutineering = Column(Boolean, nullable=False, default=False)
    holds_lane = Column(Boolean, nullable=False, default=True)
    notes = Column(Text, nullable=True)
    created_by = Column(String(200), nullable=True)

    team = relationship("Team", back_populates="bookings")
    inspection_type = relationship("InspectionType", back_populates="bookings")

    __table_args__ = (
        CheckConstraint("resource_index >= 0", name="ck_booking_lane_non_negative"),
        CheckConstraint("start_time < end_time", name="ck_booking_start_before_end"),
        CheckConstraint(
            "status IN ({})".format(", ".join(f"'{s.value}'" for s in BookingStatus)),
            name="ck_booking_status_valid"
        ),
        Index("idx_booking_type_date", "inspection_type_id", "date"),
        Index("idx_booking_team_type", "team_id", "inspection_type_id"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "team_id": self.team_id,
            "inspection_type_id": self.inspection_type_id,
            "date": self.date.isoformat() if self.date else None,
            "start_time": self.start_time.strftime("%H:%M") if self.start_time else None,
            "end_time": self.end_time.strftime("%H:%M") if self.end_time else None,
            "resource_index": self.resource_index,
            "status": self.status,
            "is_rescrutineering": self.is_rescrutineering,
            "holds_lane": self.holds_lane,
            "notes": self.notes,
        }


# One lane-holding booking per (type, date, start time, lane).
Index(
    "uq_booking_lane",
    Booking.inspection_type_id,
    Booking.date,
    Booking.start_time,
    Booking.resource_index,
    unique=True,
    sqlite_where=Booking.holds_lane == true(),
    postgresql_where=Booking.holds_lane == true(),
)
