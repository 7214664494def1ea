"""
Track-side API routes.

Penalty rule administration, marshal incident reports, timing-system run
ingest and the admin trigger for penalty processing.
"""
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from paddock.routes.dependencies import get_db, get_penalty_service, get_session_factory
from paddock.services.penalty_service import PenaltyService


router = APIRouter(prefix="/api/track", tags=["track"])


# =============================================================================
# Pydantic Request Models
# =============================================================================

class CreatePenaltyRuleRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    event_type: str
    incident_type: str
    penalty_type: str
    penalty_value: Decimal = Field(Decimal("0"), ge=0)
    max_count: Optional[int] = Field(None, gt=0)
    active: bool = True
    description: Optional[str] = None


class SetRuleActiveRequest(BaseModel):
    active: bool


class LogIncidentRequest(BaseModel):
    team_id: int = Field(..., gt=0)
    event_type: str
    incident_type: str
    severity: str = Field("minor", max_length=20)
    timestamp: Optional[datetime] = None
    description: Optional[str] = None
    reported_by: Optional[str] = Field(None, max_length=200)


class RecordRunRequest(BaseModel):
    team_id: int = Field(..., gt=0)
    event_type: str
    start_time: datetime
    finish_time: datetime
    raw_time: Optional[Decimal] = Field(None, ge=0)


# =============================================================================
# Penalty rules
# =============================================================================

@router.get("/rules")
async def list_rules(
    db: AsyncSession = Depends(get_db),
    service: PenaltyService = Depends(get_penalty_service)
) -> List[Dict[str, Any]]:
    return [r.to_dict() for r in await service.list_rules(db)]


@router.post("/rules", status_code=201)
async def create_rule(
    request: CreatePenaltyRuleRequest,
    db: AsyncSession = Depends(get_db),
    service: PenaltyService = Depends(get_penalty_service)
) -> Dict[str, Any]:
    rule = await service.create_rule(db, **request.model_dump())
    return rule.to_dict()


@router.post("/rules/{rule_id}/active")
async def set_rule_active(
    rule_id: int,
    request: SetRuleActiveRequest,
    db: AsyncSession = Depends(get_db),
    service: PenaltyService = Depends(get_penalty_service)
) -> Dict[str, Any]:
    rule = await service.set_rule_active(db, rule_id, request.active)
    return rule.to_dict()


# =============================================================================
# Incidents & runs
# =============================================================================

@router.get("/incidents")
async def list_incidents(
    team_id: Optional[int] = None,
    event_type: Optional[str] = None,
    db: AsyncSession = Depends(get_db),
    service: PenaltyService = Depends(get_penalty_service)
) -> List[Dict[str, Any]]:
    incidents = await service.list_incidents(db, team_id=team_id, event_type=event_type)
    return [i.to_dict() for i in incidents]


@router.post("/incidents", status_code=201)
async def log_incident(
    request: LogIncidentRequest,
    db: AsyncSession = Depends(get_db),
    service: PenaltyService = Depends(get_penalty_service)
) -> Dict[str, Any]:
    incident = await service.log_incident(db, **request.model_dump())
    return incident.to_dict()


@router.get("/runs")
async def list_runs(
    status: Optional[str] = None,
    processed: Optional[bool] = None,
    db: AsyncSession = Depends(get_db),
    service: PenaltyService = Depends(get_penalty_service)
) -> List[Dict[str, Any]]:
    runs = await service.list_runs(db, status=status, processed=processed)
    return [r.to_dict() for r in runs]


@router.post("/runs", status_code=201)
async def record_run(
    request: RecordRunRequest,
    db: AsyncSession = Depends(get_db),
    service: PenaltyService = Depends(get_penalty_service)
) -> Dict[str, Any]:
    run = await service.record_run(db, **request.model_dump())
    return run.to_dict()


# =============================================================================
# Penalty processing
# =============================================================================

@router.post("/penalties/apply")
async def apply_penalties(
    session_factory: async_sessionmaker = Depends(get_session_factory),
    service: PenaltyService = Depends(get_penalty_service)
) -> Dict[str, Any]:
    """
    Apply active penalty rules to every unprocessed valid run.

    Responds **207** with `details.failed_ids` when some runs failed; the
    others are committed.
    """
    report = await service.apply_penalties(session_factory)
    report.raise_for_failures()
    return report.to_dict()
