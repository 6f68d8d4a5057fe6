from __future__ import annotations

import asyncio
import contextlib
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from ..core import metrics
from ..core.config import Settings
from ..core.logging import get_logger
from ..schemas.turns import TurnRecord
from ..schemas.verdicts import WatchdogVerdict
from ..services.audit_log import AuditSink
from ..services.watchdog import WatchdogClient, local_reasons

logger = get_logger(name=__name__)


class ScoringQueue:
    """Bounded worker pool that scores sealed turns off the response path.

    Every submitted record ends up with exactly one persisted verdict: the
    watchdog's, or the ``unavailable`` sentinel when the queue is saturated,
    the pool is shut down first, or scoring is cancelled mid-flight.
    """

    def __init__(
        self,
        watchdog: WatchdogClient,
        sink: AuditSink,
        *,
        workers: int = 2,
        maxsize: int = 256,
        drain_timeout_seconds: float = 10.0,
    ) -> None:
        self._watchdog = watchdog
        self._sink = sink
        self._worker_count = max(1, workers)
        self._queue: asyncio.Queue[TurnRecord] = asyncio.Queue(maxsize=maxsize)
        self._drain_timeout = drain_timeout_seconds
        self._workers: list[asyncio.Task[None]] = []
        self._pending: set[asyncio.Future[None]] = set()
        self._closed = False

    @classmethod
    def from_settings(cls, settings: Settings, watchdog: WatchdogClient, sink: AuditSink) -> "ScoringQueue":
        return cls(
            watchdog,
            sink,
            workers=settings.watchdog.workers,
            maxsize=settings.watchdog.queue_size,
            drain_timeout_seconds=settings.watchdog.drain_timeout_seconds,
        )

    @property
    def depth(self) -> int:
        return self._queue.qsize()

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._workers)

    def submit(self, record: TurnRecord) -> bool:
        """Hand a sealed record off for scoring without waiting for it."""
        if self._closed:
            self._persist_fallback(record, "scoring pool stopped before the turn was queued")
            return False
        try:
            self._queue.put_nowait(record)
        except asyncio.QueueFull:
            logger.warning("scoring_queue_full", correlation_id=record.correlation_id, depth=self.depth)
            self._persist_fallback(record, "scoring queue saturated")
            return False
        metrics.set_scoring_queue_depth(self.depth)
        logger.debug("scoring_enqueued", correlation_id=record.correlation_id, depth=self.depth)
        return True

    async def start(self) -> None:
        self._closed = False
        if self.running:
            return
        self._workers = [
            asyncio.create_task(self._consumer(), name=f"scoring-worker-{index}")
            for index in range(self._worker_count)
        ]
        logger.info("scoring_queue_started", workers=self._worker_count)

    async def stop(self) -> None:
        self._closed = True
        if self._workers:
            try:
                await asyncio.wait_for(self._queue.join(), timeout=self._drain_timeout)
            except asyncio.TimeoutError:
                logger.warning("scoring_queue_drain_timeout", remaining=self.depth)
            for task in self._workers:
                task.cancel()
            for task in self._workers:
                with contextlib.suppress(asyncio.CancelledError):
                    await task
            self._workers = []

        while not self._queue.empty():
            record = self._queue.get_nowait()
            self._queue.task_done()
            self._persist_fallback(record, "scoring pool stopped before the turn was scored")
        metrics.set_scoring_queue_depth(0)
        await self.join_pending()
        logger.info("scoring_queue_stopped")

    async def join(self) -> None:
        """Wait until every queued record has a persisted verdict."""
        await self._queue.join()
        await self.join_pending()

    async def join_pending(self) -> None:
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    @asynccontextmanager
    async def lifecycle(self) -> AsyncIterator["ScoringQueue"]:
        await self.start()
        try:
            yield self
        finally:
            await self.stop()

    async def _consumer(self) -> None:
        while True:
            record = await self._queue.get()
            metrics.set_scoring_queue_depth(self.depth)
            try:
                await self._process(record)
            finally:
                self._queue.task_done()

    async def _process(self, record: TurnRecord) -> None:
        try:
            verdict = await self._watchdog.score(record)
        except asyncio.CancelledError:
            await self._persist_shielded(
                record,
                WatchdogVerdict.unavailable_for(
                    record.correlation_id,
                    notes="scoring cancelled during shutdown",
                    reasons=local_reasons(record),
                ),
            )
            raise
        await self._persist_shielded(record, verdict)

    def _persist_fallback(self, record: TurnRecord, reason: str) -> None:
        verdict = WatchdogVerdict.unavailable_for(
            record.correlation_id,
            notes=reason,
            reasons=local_reasons(record),
        )
        self._track(asyncio.ensure_future(self._persist(record, verdict)))

    async def _persist_shielded(self, record: TurnRecord, verdict: WatchdogVerdict) -> None:
        task = self._track(asyncio.ensure_future(self._persist(record, verdict)))
        await asyncio.shield(task)

    def _track(self, task: asyncio.Future[None]) -> asyncio.Future[None]:
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def _persist(self, record: TurnRecord, verdict: WatchdogVerdict) -> None:
        try:
            await self._sink.append(record, verdict)
        except Exception as exc:
            logger.exception("audit_write_failed", correlation_id=record.correlation_id, error=str(exc))


__all__ = ["ScoringQueue"]
