"""APScheduler-backed polling of the active route."""

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from buslive.config import settings

logger = logging.getLogger(__name__)

POLL_JOB_ID = "poll_vehicles"


def poll_job_id(context_id: int) -> str:
    return f"{POLL_JOB_ID}_{context_id}"


@dataclass(frozen=True)
class PollingContext:
    context_id: int
    operator: str
    route: str
    direction: str


Tick = Callable[[], Awaitable[None]]


class PollingScheduler:
    """Runs at most one recurring poll job, bound to one route context.

    Jobs are keyed by context id, so a run of a cancelled job that is
    still waiting on the network never holds the new job's instance slot.
    """

    def __init__(
        self,
        scheduler: AsyncIOScheduler | None = None,
        interval_seconds: int | None = None,
    ) -> None:
        self._scheduler = scheduler or AsyncIOScheduler()
        self.interval_seconds = interval_seconds or settings.poll_interval_seconds
        self.context: PollingContext | None = None
        self._job = None
        self._in_flight: set[int] = set()

    @property
    def active(self) -> bool:
        return self._job is not None

    def startup(self) -> None:
        if not self._scheduler.running:
            self._scheduler.start()

    def shutdown(self) -> None:
        self.stop()
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)

    async def start(self, context: PollingContext, tick: Tick) -> None:
        """Replace any running job with one for ``context`` and tick once right away."""
        self.stop()
        self.context = context
        self._job = self._scheduler.add_job(
            self._run_tick,
            "interval",
            seconds=self.interval_seconds,
            args=[context, tick],
            id=poll_job_id(context.context_id),
            name=f"Poll {context.operator} route {context.route} ({context.direction})",
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        logger.info(
            "Polling %s route %s (%s) every %ds",
            context.operator, context.route, context.direction, self.interval_seconds,
        )
        await self._run_tick(context, tick)

    def stop(self) -> None:
        """Cancel the poll job. Safe to call when nothing is running."""
        if self._job is not None:
            try:
                self._job.remove()
            except JobLookupError:
                pass
            logger.debug("Stopped polling context %s", self.context.context_id if self.context else None)
        self._job = None
        self.context = None

    async def _run_tick(self, context: PollingContext, tick: Tick) -> None:
        if self.context != context:
            logger.debug("Dropping tick for superseded context %d", context.context_id)
            return
        if context.context_id in self._in_flight:
            logger.debug("Previous tick for context %d still running, skipping", context.context_id)
            return
        self._in_flight.add(context.context_id)
        try:
            await tick()
        except Exception:
            logger.exception("Error in poll tick for %s route %s", context.operator, context.route)
        finally:
            self._in_flight.discard(context.context_id)
