from .base import Base

# Competition
from .team import Team

# Scrutineering
from .inspection import InspectionType, Booking, BookingStatus

# Track
from .track import TrackIncident, PenaltyRule, TimedRun, EventType, IncidentType, PenaltyType, RunStatus

# Standings
from .results import StaticEventScore, CompetitionResult, StaticEventKind
