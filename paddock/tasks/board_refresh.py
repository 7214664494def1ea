"""
paddock/tasks/board_refresh.py
Periodic refresh of the live inspection lane board.

Each display surface owns one BoardRefreshTask; nothing is shared at module
level. start() schedules the loop on the running event loop, stop() cancels
it and waits for it to finish.
"""

import asyncio
import logging
from datetime import date
from typing import Any, Awaitable, Callable, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from paddock.config import settings
from paddock.services.booking_service import BookingService

logger = logging.getLogger(__name__)

BoardSubscriber = Callable[[Dict[str, Any]], Optional[Awaitable[None]]]


class BoardRefreshTask:
    """
    Keep a lane-board snapshot fresh by polling the store.

    Args:
        session_factory: Callable returning a new AsyncSession
        booking_service: Service that builds the board
        inspection_type_id: Board to display
        booking_date: Day to display, defaults to today on every refresh
        interval_seconds: Polling period
        subscriber: Optional callback (sync or async) receiving each snapshot
    """

    def __init__(
        self,
        session_factory: Callable[[], AsyncSession],
        booking_service: BookingService,
        inspection_type_id: int,
        booking_date: Optional[date] = None,
        interval_seconds: Optional[float] = None,
        subscriber: Optional[BoardSubscriber] = None,
    ):
        self.session_factory = session_factory
        self.booking_service = booking_service
        self.inspection_type_id = inspection_type_id
        self.booking_date = booking_date
        self.interval_seconds = interval_seconds or settings.BOARD_REFRESH_INTERVAL_SECONDS
        self.subscriber = subscriber
        self.latest: Optional[Dict[str, Any]] = None
        self.refresh_count = 0
        self._task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def refresh_once(self) -> Optional[Dict[str, Any]]:
        """Run a single refresh cycle. A failed cycle keeps the previous snapshot."""
        try:
            async with self.session_factory() as db:
                board = await self.booking_service.lane_board(
                    db, self.inspection_type_id, self.booking_date
                )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Board refresh failed for type {self.inspection_type_id}: {str(e)}")
            return self.latest

        self.latest = board
        self.refresh_count += 1

        if self.subscriber is not None:
            try:
                result = self.subscriber(board)
                if asyncio.iscoroutine(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Board subscriber failed: {str(e)}")

        return board

    async def _loop(self):
        logger.info(
            f"Starting board refresh for type {self.inspection_type_id} "
            f"with interval {self.interval_seconds}s"
        )
        while True:
            await self.refresh_once()
            await asyncio.sleep(self.interval_seconds)

    def start(self) -> asyncio.Task:
        """Start the refresh loop as a background task."""
        if self.is_running:
            return self._task
        self._task = asyncio.create_task(self._loop())
        return self._task

    async def stop(self):
        """Cancel the refresh loop and wait for it to exit."""
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info(f"Stopped board refresh for type {self.inspection_type_id}")
