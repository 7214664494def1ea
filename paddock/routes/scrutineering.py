"""
Scrutineering booking API routes.

Team-facing eligibility and booking, inspector status changes and the lane
board. Domain errors propagate to the app's PaddockError handler.
"""
from datetime import date, time
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from paddock.orm.inspection import BookingStatus
from paddock.routes.dependencies import get_booking_service, get_db
from paddock.services.booking_service import BookingService
from paddock.services.competition_repository import CompetitionRepository


router = APIRouter(prefix="/api/scrutineering", tags=["scrutineering"])


# =============================================================================
# Pydantic Request Models
# =============================================================================

class BookInspectionRequest(BaseModel):
    team_id: int = Field(..., gt=0)
    inspection_type_id: int = Field(..., gt=0)
    start_time: time
    booking_date: Optional[date] = None
    notes: Optional[str] = Field(None, max_length=2000)
    created_by: Optional[str] = Field(None, max_length=200)


class StatusChangeRequest(BaseModel):
    status: BookingStatus


class ReinspectionRequest(BaseModel):
    requested_by: Optional[str] = Field(None, max_length=200)


# =============================================================================
# Catalog & eligibility
# =============================================================================

@router.get("/inspection-types")
async def list_inspection_types(
    order_by: str = "sort_order",
    db: AsyncSession = Depends(get_db)
) -> List[Dict[str, Any]]:
    types = await CompetitionRepository(db).list_inspection_types(order_by)
    return [t.to_dict() for t in types]


@router.get("/teams/{team_id}/eligibility")
async def eligibility_overview(
    team_id: int,
    db: AsyncSession = Depends(get_db),
    service: BookingService = Depends(get_booking_service)
) -> List[Dict[str, Any]]:
    """
    Bookability of every inspection type for a team, with the reason when
    it can't book.
    """
    return await service.eligibility_overview(db, team_id)


@router.get("/teams/{team_id}/bookings")
async def team_bookings(
    team_id: int,
    db: AsyncSession = Depends(get_db)
) -> List[Dict[str, Any]]:
    bookings = await CompetitionRepository(db).list_bookings(team_id=team_id)
    return [b.to_dict() for b in bookings]


@router.get("/teams/{team_id}/slots/{inspection_type_id}")
async def available_slots(
    team_id: int,
    inspection_type_id: int,
    booking_date: Optional[date] = None,
    db: AsyncSession = Depends(get_db),
    service: BookingService = Depends(get_booking_service)
) -> List[Dict[str, Any]]:
    """Free (start time, lane) candidates for the team, one per slot."""
    slots = await service.available_slots(db, team_id, inspection_type_id, booking_date)
    return [s.to_dict() for s in slots]


# =============================================================================
# Booking lifecycle
# =============================================================================

@router.post("/bookings", status_code=201)
async def book_inspection(
    request: BookInspectionRequest,
    db: AsyncSession = Depends(get_db),
    service: BookingService = Depends(get_booking_service)
) -> Dict[str, Any]:
    """
    Book an inspection slot.

    - **422** when the team is not eligible (reason in `details.reason`)
    - **409** when no lane is left at the requested time
    """
    booking = await service.book_inspection(
        db,
        team_id=request.team_id,
        inspection_type_id=request.inspection_type_id,
        start_time=request.start_time,
        booking_date=request.booking_date,
        notes=request.notes,
        created_by=request.created_by,
    )
    return booking.to_dict()


@router.post("/bookings/{booking_id}/status")
async def change_booking_status(
    booking_id: int,
    request: StatusChangeRequest,
    db: AsyncSession = Depends(get_db),
    service: BookingService = Depends(get_booking_service)
) -> Dict[str, Any]:
    """
    Move a booking along upcoming → ongoing → passed/failed, or cancel it.
    """
    booking = await service.update_status(db, booking_id, request.status)
    return booking.to_dict()


@router.post("/bookings/{booking_id}/reinspection", status_code=201)
async def request_reinspection(
    booking_id: int,
    request: ReinspectionRequest,
    db: AsyncSession = Depends(get_db),
    service: BookingService = Depends(get_booking_service)
) -> Dict[str, Any]:
    booking = await service.request_reinspection(db, booking_id, request.requested_by)
    return booking.to_dict()


# =============================================================================
# Lane board
# =============================================================================

@router.get("/board/{inspection_type_id}")
async def lane_board(
    inspection_type_id: int,
    booking_date: Optional[date] = None,
    db: AsyncSession = Depends(get_db),
    service: BookingService = Depends(get_booking_service)
) -> Dict[str, Any]:
    return await service.lane_board(db, inspection_type_id, booking_date)
