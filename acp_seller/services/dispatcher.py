"""Job dispatcher: one controller pipeline per delivered event.

Each event runs as its own asyncio task so a slow job never delays another.
Pipelines share nothing but the registry cache.

With dedupe enabled, an event whose (job id, phase) is still in flight, or
already reached a terminal outcome, is skipped. A pass that failed (handler
failure in TRANSACTION, refused protocol action, unexpected error) stays
eligible, since redelivery is how such jobs get retried. Dedupe is off by
default: a redelivered event is processed again from the start.
"""

import asyncio
import logging

from acp_seller.schemas.job import JobEvent, JobPhase
from acp_seller.services.controller import JobLifecycleController, JobOutcome

logger = logging.getLogger(__name__)

EventKey = tuple[str, JobPhase]

TERMINAL_OUTCOMES = frozenset({
    JobOutcome.DELIVERED,
    JobOutcome.REJECTED,
    JobOutcome.ACCEPTED_UNROUTED,
    JobOutcome.SKIPPED,
    JobOutcome.IGNORED,
})


class JobDispatcher:
    def __init__(self, controller: JobLifecycleController, dedupe: bool = False) -> None:
        self.controller = controller
        self.dedupe = dedupe
        self._tasks: set[asyncio.Task[JobOutcome | None]] = set()
        self._pending: set[EventKey] = set()
        self._handled: set[EventKey] = set()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    def submit(self, event: JobEvent) -> bool:
        """Start the pipeline for one event. Returns False if it was skipped."""
        if self._closed:
            logger.warning("Dispatcher is shut down; dropping job %s (%s)", event.id, event.phase.name)
            return False

        key = (str(event.id), event.phase)
        if self.dedupe:
            if key in self._pending or key in self._handled:
                logger.info("Job %s (%s) already handled, skipping redelivery", event.id, event.phase.name)
                return False
            self._pending.add(key)

        task = asyncio.create_task(self._run(event, key), name=f"job-{event.id}-{event.phase.name.lower()}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return True

    async def _run(self, event: JobEvent, key: EventKey) -> JobOutcome | None:
        outcome = None
        try:
            outcome = await self.controller.handle(event)
            return outcome
        except asyncio.CancelledError:
            logger.warning("Job %s pipeline cancelled", event.id)
            raise
        except Exception:
            logger.exception("Unexpected error processing job %s", event.id)
            return None
        finally:
            if self.dedupe:
                self._pending.discard(key)
                if outcome in TERMINAL_OUTCOMES:
                    self._handled.add(key)

    async def drain(self) -> None:
        """Wait until every in-flight pipeline has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self, timeout: float | None = None) -> None:
        """Stop accepting events, wait for in-flight pipelines, cancel stragglers."""
        self._closed = True
        if not self._tasks:
            return
        logger.info("Waiting for %d in-flight job(s)", len(self._tasks))
        try:
            await asyncio.wait_for(self.drain(), timeout)
        except TimeoutError:
            pending = list(self._tasks)
            logger.warning("Cancelling %d job(s) still running after %ss", len(pending), timeout)
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
