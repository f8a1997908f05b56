"""Periodic sweep of abandoned running episodes."""

from __future__ import annotations

import asyncio
import logging
from datetime import timedelta

from deepcurrent.evolution.worker import EvolutionWorker
from deepcurrent.memory.episode import Episode
from deepcurrent.memory.recorder import EpisodeRecorder

logger = logging.getLogger(__name__)

DEFAULT_RUNNING_TTL_SECONDS = 900
DEFAULT_SWEEP_INTERVAL_SECONDS = 60


class StaleEpisodeSweeper:
    """Fails running episodes older than a TTL, every interval seconds.

    Swept episodes are terminal, so they are handed to the evolution
    worker like any other finished episode.
    """

    def __init__(
        self,
        recorder: EpisodeRecorder,
        worker: EvolutionWorker | None = None,
        running_ttl_seconds: float = DEFAULT_RUNNING_TTL_SECONDS,
        interval_seconds: float = DEFAULT_SWEEP_INTERVAL_SECONDS,
    ) -> None:
        if running_ttl_seconds <= 0 or interval_seconds <= 0:
            raise ValueError("running_ttl_seconds and interval_seconds must be positive")
        self._recorder = recorder
        self._worker = worker
        self._ttl = timedelta(seconds=running_ttl_seconds)
        self._interval = interval_seconds
        self._task: asyncio.Task | None = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def sweep_once(self) -> list[Episode]:
        swept = await self._recorder.sweep_stale(self._ttl)
        if self._worker is not None:
            for episode in swept:
                self._worker.submit(episode.episode_id)
        return swept

    def start(self) -> None:
        if self.is_running:
            return
        self._task = asyncio.create_task(self._run(), name="deepcurrent-stale-sweeper")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            try:
                await self.sweep_once()
            except Exception:
                logger.exception("Stale episode sweep failed")
