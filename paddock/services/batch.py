"""
Batch execution helpers for the admin-triggered engines.

- SingleFlight: concurrent invocations of one job share a single execution
- run_isolated: every item is handled on its own, bounded by a timeout;
  a failing item is logged and skipped, the batch continues
- with_persistence_retry: bounded retry when the store is unavailable
"""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Hashable, Iterable, List, Optional, TypeVar

from paddock.config import settings
from paddock.exceptions import PartialAggregationFailure, PersistenceError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class BatchReport:
    """Outcome of one batch run."""
    job: str
    succeeded: List[Any] = field(default_factory=list)
    failed: List[Any] = field(default_factory=list)
    skipped: List[Any] = field(default_factory=list)

    @property
    def partial(self) -> bool:
        return bool(self.failed)

    def raise_for_failures(self) -> None:
        if self.failed:
            raise PartialAggregationFailure(
                self.failed,
                f"{self.job}: {len(self.failed)} of "
                f"{len(self.failed) + len(self.succeeded) + len(self.skipped)} item(s) failed",
            )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job": self.job,
            "succeeded": list(self.succeeded),
            "failed": list(self.failed),
            "skipped": list(self.skipped),
            "partial": self.partial,
        }


async def with_persistence_retry(
    operation: Callable[[], Awaitable[T]],
    attempts: Optional[int] = None,
    delay_seconds: Optional[float] = None,
) -> T:
    """
    Await `operation()`, retrying on PersistenceError.

    Raises:
        PersistenceError: If every attempt failed
    """
    attempts = attempts or settings.PERSISTENCE_MAX_ATTEMPTS
    delay_seconds = settings.PERSISTENCE_RETRY_DELAY_SECONDS if delay_seconds is None else delay_seconds

    for attempt in range(1, attempts + 1):
        try:
            return await operation()
        except PersistenceError:
            if attempt >= attempts:
                raise
            logger.warning(f"Store unavailable (attempt {attempt}/{attempts}), retrying")
            await asyncio.sleep(delay_seconds * attempt)


async def run_isolated(
    job: str,
    items: Iterable[T],
    key: Callable[[T], Any],
    handler: Callable[[T], Awaitable[bool]],
    timeout_seconds: Optional[float] = None,
) -> BatchReport:
    """
    Run `handler` for each item independently.

    The handler returns False when the item was legitimately left untouched
    (e.g. already processed elsewhere); such items are reported as skipped.
    """
    timeout_seconds = timeout_seconds or settings.BATCH_ITEM_TIMEOUT_SECONDS
    report = BatchReport(job=job)

    for item in items:
        item_id = key(item)
        try:
            done = await asyncio.wait_for(handler(item), timeout=timeout_seconds)
        except asyncio.TimeoutError:
            logger.error(f"{job}: item {item_id} timed out after {timeout_seconds}s, skipping")
            report.failed.append(item_id)
            continue
        except Exception as e:
            logger.error(f"{job}: item {item_id} failed: {str(e)}")
            report.failed.append(item_id)
            continue

        if done is False:
            logger.warning(f"{job}: item {item_id} skipped")
            report.skipped.append(item_id)
        else:
            report.succeeded.append(item_id)

    logger.info(
        f"{job}: {len(report.succeeded)} succeeded, "
        f"{len(report.failed)} failed, {len(report.skipped)} skipped"
    )
    return report


class SingleFlight:
    """
    Collapse concurrent calls for the same key into one execution.

    Callers arriving while a job is in flight await the same result. A
    cancelled caller does not cancel the shared job.
    """

    def __init__(self):
        self._inflight: Dict[Hashable, asyncio.Future] = {}

    def is_running(self, key: Hashable) -> bool:
        return key in self._inflight

    async def run(self, key: Hashable, factory: Callable[[], Awaitable[T]]) -> T:
        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(factory())
            self._inflight[key] = task

            def _release(finished, key=key):
                if self._inflight.get(key) is finished:
                    del self._inflight[key]

            task.add_done_callback(_release)
        else:
            logger.info(f"Joining in-flight run of {key}")
        return await asyncio.shield(task)
