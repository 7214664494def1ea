import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import async_sessionmaker

from paddock.config import settings
from paddock.database import AsyncSessionLocal, close_db, init_db
from paddock.exceptions import ErrorCode, PaddockError
from paddock.routes import results, scrutineering, track
from paddock.services.booking_service import BookingService
from paddock.services.penalty_service import PenaltyService
from paddock.services.results_service import ResultsService

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL, logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler()]
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting application...")
    try:
        await init_db()
        logger.info("Database connected successfully")
    except Exception as e:
        logger.error(f"Failed to connect to database: {str(e)}")
        raise

    yield

    logger.info("Shutting down application...")
    try:
        await close_db()
    except Exception as e:
        logger.error(f"Error closing database connection: {str(e)}")


def create_app(session_factory: Optional[async_sessionmaker] = None, use_lifespan: bool = True) -> FastAPI:
    """
    Build the API application.

    Each app owns its services, so allocation locks and single-flight guards
    are never shared between apps (or between test cases).
    """
    app = FastAPI(
        title="Paddock Competition API",
        description="Scrutineering bookings, track penalties and results",
        version="1.0.0",
        lifespan=lifespan if use_lifespan else None,
    )

    app.state.session_factory = session_factory or AsyncSessionLocal
    app.state.booking_service = BookingService()
    app.state.penalty_service = PenaltyService()
    app.state.results_service = ResultsService()

    @app.exception_handler(PaddockError)
    async def paddock_error_handler(request: Request, exc: PaddockError):
        if exc.status_code >= 500:
            logger.error(f"{exc.code} on {request.url.path}: {exc.message}")
        else:
            logger.warning(f"{exc.code} on {request.url.path}: {exc.message}")
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        logger.warning(f"Validation error on {request.url.path}: {exc.errors()}")

        error_details = []
        for error in exc.errors():
            error_details.append({
                "loc": error.get("loc"),
                "msg": error.get("msg"),
                "type": error.get("type")
            })

        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content={
                "success": False,
                "error": "Validation Error",
                "message": "Request validation failed",
                "code": ErrorCode.VALIDATION_ERROR,
                "details": error_details
            }
        )

    @app.get("/health", tags=["Health"])
    async def health_check():
        return {"status": "healthy", "version": "1.0.0"}

    app.include_router(scrutineering.router)
    app.include_router(track.router)
    app.include_router(results.router)

    return app


app = create_app()
