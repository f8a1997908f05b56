"""Episode Recorder - lifecycle and telemetry of research runs.

State machine:
    pending -> running -> completed | failed

Terminal states are final. Only post-hoc annotations may be added to a
terminal episode. Errors raised here are authoritative and propagate to
the caller: an episode that silently fails to reach a terminal state
would skew every metric computed from it.

The recorder does not trigger evolution; the caller hands finished
episodes to the evolution worker.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

from deepcurrent.errors import InvalidResultError, InvalidStateError, NotFoundError
from deepcurrent.memory.backend import EpisodeBackend
from deepcurrent.memory.episode import Episode, EpisodeResult, EpisodeStatus
from deepcurrent.topics import TopicRegistry

if TYPE_CHECKING:
    from deepcurrent.evolution.backend import StrategyBackend

logger = logging.getLogger(__name__)

_OPEN_STATUSES = (EpisodeStatus.PENDING, EpisodeStatus.RUNNING)


def _elapsed_ms(start: datetime | None, end: datetime) -> int | None:
    if start is None:
        return None
    return max(0, int((end - start).total_seconds() * 1000))


def validate_result(result: EpisodeResult) -> None:
    """Check the invariants of an agent result before it is recorded."""
    if result.follow_up_count < 0:
        raise InvalidResultError("follow_up_count must not be negative")
    if result.duration_ms is not None and result.duration_ms < 0:
        raise InvalidResultError("duration_ms must not be negative")
    if any(count < 0 for count in result.tool_usage.values()):
        raise InvalidResultError("tool usage counts must not be negative")

    returned = {s.url for s in result.sources_returned}
    stray = [s.url for s in result.sources_saved if s.url not in returned]
    if stray:
        raise InvalidResultError(
            f"sources_saved must be a subset of sources_returned; not returned: {stray}"
        )


class EpisodeRecorder:
    """Persists one record per agent run and guards its transitions.

    Usage:
        recorder = EpisodeRecorder(backend, topics, strategies)

        episode = await recorder.create_episode(topic_id, "query", strategy_version=1)
        await recorder.mark_running(episode.episode_id)
        await recorder.complete_episode(episode.episode_id, result)
    """

    def __init__(
        self,
        backend: EpisodeBackend,
        topics: TopicRegistry,
        strategies: StrategyBackend | None = None,
    ) -> None:
        self._backend = backend
        self._topics = topics
        self._strategies = strategies

    async def create_episode(
        self,
        topic_id: str,
        query: str,
        strategy_version: int,
        user_id: str | None = None,
    ) -> Episode:
        """Insert a pending episode for a known topic and strategy version."""
        if not self._topics.exists(topic_id):
            raise NotFoundError(f"Topic {topic_id} not found")

        if self._strategies is not None:
            strategy = await asyncio.to_thread(self._strategies.get, topic_id, strategy_version)
            if strategy is None:
                raise NotFoundError(
                    f"Strategy version {strategy_version} not found for topic {topic_id}"
                )

        episode = Episode(
            topic_id=topic_id,
            strategy_version=strategy_version,
            query=query,
            user_id=user_id,
        )
        stored = await asyncio.to_thread(self._backend.insert, episode)
        logger.debug(
            f"Created episode {stored.episode_id} for topic {topic_id} "
            f"(strategy v{strategy_version})"
        )
        return stored

    async def get_episode(self, episode_id: str) -> Episode:
        episode = await asyncio.to_thread(self._backend.get, episode_id)
        if episode is None:
            raise NotFoundError(f"Episode {episode_id} not found")
        return episode

    async def mark_running(self, episode_id: str) -> Episode:
        """Move a pending episode to running. No-op if it is already running."""
        episode = await self.get_episode(episode_id)

        if episode.status == EpisodeStatus.RUNNING:
            return episode
        if episode.is_terminal:
            raise InvalidStateError(
                f"Episode {episode_id} is already {episode.status.value}"
            )

        updated = episode.model_copy(
            update={"status": EpisodeStatus.RUNNING, "started_at": datetime.now(UTC)}
        )
        try:
            await asyncio.to_thread(self._backend.transition, updated, [EpisodeStatus.PENDING])
        except InvalidStateError:
            current = await self.get_episode(episode_id)
            if current.status == EpisodeStatus.RUNNING:
                return current
            raise
        return updated

    async def complete_episode(self, episode_id: str, result: EpisodeResult) -> Episode:
        """Record the agent result and move the episode to completed."""
        episode = await self.get_episode(episode_id)
        self._ensure_not_terminal(episode)
        validate_result(result)

        now = datetime.now(UTC)
        duration_ms = result.duration_ms
        if duration_ms is None:
            duration_ms = _elapsed_ms(episode.started_at or episode.created_at, now)

        updated = episode.model_copy(
            update={
                "status": EpisodeStatus.COMPLETED,
                "sources_returned": list(result.sources_returned),
                "sources_saved": list(result.sources_saved),
                "follow_up_count": result.follow_up_count,
                "tool_usage": dict(result.tool_usage),
                "duration_ms": duration_ms,
                "finished_at": now,
            }
        )
        await asyncio.to_thread(self._backend.transition, updated, _OPEN_STATUSES)

        logger.info(
            f"Episode {episode_id} completed: "
            f"{len(result.sources_saved)}/{len(result.sources_returned)} sources saved, "
            f"{result.follow_up_count} follow-ups"
        )
        return updated

    async def fail_episode(self, episode_id: str, error_message: str) -> Episode:
        """Move the episode to failed with an error message."""
        episode = await self.get_episode(episode_id)
        self._ensure_not_terminal(episode)

        now = datetime.now(UTC)
        updated = episode.model_copy(
            update={
                "status": EpisodeStatus.FAILED,
                "error_message": error_message or "unknown error",
                "duration_ms": _elapsed_ms(episode.started_at or episode.created_at, now),
                "finished_at": now,
            }
        )
        await asyncio.to_thread(self._backend.transition, updated, _OPEN_STATUSES)

        logger.warning(f"Episode {episode_id} failed: {updated.error_message}")
        return updated

    async def annotate(self, episode_id: str, **annotations: Any) -> Episode:
        """Attach post-hoc analysis annotations. Allowed in any state.

        Re-reads and merges again if the episode changed status meanwhile,
        so an annotation never rolls back a transition.
        """
        while True:
            episode = await self.get_episode(episode_id)
            merged = {**episode.annotations, **annotations}
            updated = episode.model_copy(update={"annotations": merged})
            try:
                await asyncio.to_thread(self._backend.transition, updated, [episode.status])
            except InvalidStateError:
                continue
            return updated

    async def count_by_version(self, topic_id: str) -> dict[int, int]:
        return await asyncio.to_thread(self._backend.count_by_version, topic_id)

    async def sweep_stale(
        self,
        max_running_age: timedelta,
        now: datetime | None = None,
    ) -> list[Episode]:
        """Fail every running episode older than max_running_age.

        Abandoned runs would otherwise stay running forever and never be
        counted by the metrics aggregator.

        Returns:
            The episodes that were failed by this sweep.
        """
        now = now or datetime.now(UTC)
        running = await asyncio.to_thread(self._backend.list_by_status, EpisodeStatus.RUNNING)

        swept = []
        for episode in running:
            started = episode.started_at or episode.created_at
            if now - started < max_running_age:
                continue
            try:
                failed = await self.fail_episode(
                    episode.episode_id,
                    f"timed out after {int(max_running_age.total_seconds())}s without a result",
                )
            except InvalidStateError:
                # finished between the listing and the transition
                continue
            swept.append(failed)

        if swept:
            logger.info(f"Swept {len(swept)} stale running episodes")
        return swept

    @staticmethod
    def _ensure_not_terminal(episode: Episode) -> None:
        if episode.is_terminal:
            raise InvalidStateError(
                f"Episode {episode.episode_id} is already {episode.status.value}"
            )
