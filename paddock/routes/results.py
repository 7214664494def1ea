"""
Results API routes.
"""
from typing import Any, Dict, List

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from paddock.routes.dependencies import get_db, get_results_service, get_session_factory
from paddock.services.results_service import ResultsService


router = APIRouter(prefix="/api/results", tags=["results"])


@router.get("")
async def list_results(
    db: AsyncSession = Depends(get_db),
    service: ResultsService = Depends(get_results_service)
) -> List[Dict[str, Any]]:
    """Stored standings, best rank first."""
    return [r.to_dict() for r in await service.list_results(db)]


@router.post("/recalculate")
async def recalculate(
    session_factory: async_sessionmaker = Depends(get_session_factory),
    service: ResultsService = Depends(get_results_service)
) -> Dict[str, Any]:
    """
    Recompute every team's standing.

    Responds **207** with `details.failed_ids` listing the teams whose row
    could not be written.
    """
    report = await service.recalculate(session_factory)
    report.raise_for_failures()
    return report.to_dict()
