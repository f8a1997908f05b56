"""Evolution Worker - queued, non-blocking evolution.

Finished episode ids are submitted to an asyncio.Queue and processed
one at a time by a background task, after the research result has
already been returned to the caller. Submitting never blocks and never
raises: when the queue is full the episode is dropped with a warning.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable

from deepcurrent.evolution.pipeline import EvolutionOrchestrator, EvolutionOutcome

logger = logging.getLogger(__name__)

DEFAULT_QUEUE_SIZE = 1000
MAX_OUTCOME_HISTORY = 500

OutcomeCallback = Callable[[EvolutionOutcome], Awaitable[None] | None]


class EvolutionWorker:
    """Background consumer of finished episodes.

    Usage:
        worker = EvolutionWorker(orchestrator)
        worker.start()

        worker.submit(episode.episode_id)
        await worker.join()   # wait until the queue is drained
        await worker.stop()
    """

    def __init__(
        self,
        orchestrator: EvolutionOrchestrator,
        queue_size: int = DEFAULT_QUEUE_SIZE,
        on_outcome: OutcomeCallback | None = None,
    ) -> None:
        self._orchestrator = orchestrator
        self._queue: asyncio.Queue[str] = asyncio.Queue(maxsize=queue_size)
        self._on_outcome = on_outcome
        self._task: asyncio.Task | None = None
        self._outcomes: list[EvolutionOutcome] = []
        self._dropped = 0

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def outcomes(self) -> list[EvolutionOutcome]:
        """Most recent outcomes, oldest first."""
        return list(self._outcomes)

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    @property
    def dropped(self) -> int:
        return self._dropped

    def start(self) -> None:
        """Start the consumer task on the running event loop."""
        if self.is_running:
            return
        self._task = asyncio.create_task(self._run(), name="deepcurrent-evolution-worker")
        logger.debug("Evolution worker started")

    def submit(self, episode_id: str) -> bool:
        """Queue a finished episode for evolution. Returns False if it was dropped."""
        try:
            self._queue.put_nowait(episode_id)
        except asyncio.QueueFull:
            self._dropped += 1
            logger.warning(f"Evolution queue full, dropping episode {episode_id}")
            return False
        return True

    async def join(self) -> None:
        """Wait until every submitted episode has been processed."""
        await self._queue.join()

    async def stop(self, drain: bool = True) -> None:
        """Stop the consumer, by default after the queue is drained."""
        if self._task is None:
            return
        if drain and self.is_running:
            await self._queue.join()
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.debug("Evolution worker stopped")

    async def _run(self) -> None:
        while True:
            episode_id = await self._queue.get()
            try:
                await self._process_one(episode_id)
            finally:
                self._queue.task_done()

    async def _process_one(self, episode_id: str) -> None:
        outcome = await self._orchestrator.handle(episode_id)
        self._outcomes.append(outcome)
        if len(self._outcomes) > MAX_OUTCOME_HISTORY:
            del self._outcomes[: len(self._outcomes) - MAX_OUTCOME_HISTORY]

        if self._on_outcome is None:
            return
        try:
            result = self._on_outcome(outcome)
            if asyncio.iscoroutine(result):
                await result
        except Exception:
            logger.exception(f"Outcome callback failed for episode {episode_id}")
