"""
Request-scoped dependencies.

Services and the session factory live on `app.state` so that every worker
(and every test app) owns its own allocation locks and single-flight guards.
"""
from typing import AsyncIterator

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from paddock.services.booking_service import BookingService
from paddock.services.penalty_service import PenaltyService
from paddock.services.results_service import ResultsService


def get_session_factory(request: Request) -> async_sessionmaker:
    return request.app.state.session_factory


async def get_db(request: Request) -> AsyncIterator[AsyncSession]:
    """Dependency for getting async database session"""
    async with request.app.state.session_factory() as session:
        try:
            yield session
        finally:
            await session.close()


def get_booking_service(request: Request) -> BookingService:
    return request.app.state.booking_service


def get_penalty_service(request: Request) -> PenaltyService:
    return request.app.state.penalty_service


def get_results_service(request: Request) -> ResultsService:
    return request.app.state.results_service
