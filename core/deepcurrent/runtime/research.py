"""Research Session - one query, end to end.

run() is the request path:
1. Draw a strategy version for the topic (exactly once)
2. Create the episode and mark it running
3. Await the agent runner with the strategy context
4. Complete or fail the episode
5. Hand the finished episode to the evolution worker

The runner's errors, timeouts and malformed results become a failed
episode; they are not re-raised. An episode the stale sweep finished
first keeps the sweep's outcome and is not handed to the worker again.
Other recorder errors are re-raised.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable

from deepcurrent.errors import InvalidResultError, InvalidStateError
from deepcurrent.evolution.config import StrategyConfig, StrategyPayload
from deepcurrent.evolution.store import StrategyStore
from deepcurrent.evolution.worker import EvolutionWorker
from deepcurrent.memory.episode import Episode, EpisodeResult
from deepcurrent.memory.recorder import EpisodeRecorder
from deepcurrent.runtime.context import StrategyRuntimeContext
from deepcurrent.topics import Topic, TopicRegistry

logger = logging.getLogger(__name__)

AgentRunner = Callable[[str, StrategyRuntimeContext], Awaitable[EpisodeResult]]


class ResearchSession:
    """Runs research queries under the current strategy rollout.

    Usage:
        session = ResearchSession(topics, recorder, store, worker)

        topic, strategy = await session.create_topic("AI chips")
        episode = await session.run(topic.topic_id, "latest HBM supply news", runner)
    """

    def __init__(
        self,
        topics: TopicRegistry,
        recorder: EpisodeRecorder,
        store: StrategyStore,
        worker: EvolutionWorker | None = None,
        episode_timeout: float | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self._topics = topics
        self._recorder = recorder
        self._store = store
        self._worker = worker
        self._episode_timeout = episode_timeout
        self._rng = rng

    async def create_topic(
        self,
        title: str,
        description: str | None = None,
        user_id: str | None = None,
        payload: StrategyPayload | None = None,
    ) -> tuple[Topic, StrategyConfig]:
        """Register a topic together with its initial strategy version."""
        topic = self._topics.create_topic(title, description=description, user_id=user_id)
        strategy = await self._store.create_initial(topic.topic_id, payload)
        return topic, strategy

    async def run(
        self,
        topic_id: str,
        query: str,
        runner: AgentRunner,
        user_id: str | None = None,
    ) -> Episode:
        """Run one research episode and return its terminal record."""
        strategy = await self._store.get_active_strategy(topic_id, rng=self._rng)
        context = StrategyRuntimeContext.from_strategy(strategy)

        episode = await self._recorder.create_episode(
            topic_id, query, strategy.version, user_id=user_id
        )
        await self._recorder.mark_running(episode.episode_id)
        logger.info(
            f"Running episode {episode.episode_id} for topic {topic_id} "
            f"with strategy v{strategy.version}"
        )

        try:
            finished = await self._execute(episode.episode_id, query, context, runner)
        except InvalidStateError:
            current = await self._recorder.get_episode(episode.episode_id)
            logger.warning(
                f"Episode {episode.episode_id} was already {current.status.value} "
                f"when its run finished; keeping that outcome"
            )
            return current

        if self._worker is not None:
            self._worker.submit(finished.episode_id)
        return finished

    async def _execute(
        self,
        episode_id: str,
        query: str,
        context: StrategyRuntimeContext,
        runner: AgentRunner,
    ) -> Episode:
        try:
            if self._episode_timeout is not None:
                result = await asyncio.wait_for(
                    runner(query, context), timeout=self._episode_timeout
                )
            else:
                result = await runner(query, context)
        except Exception as e:
            if isinstance(e, TimeoutError) and self._episode_timeout is not None:
                message = f"timed out after {self._episode_timeout:g}s without a result"
            else:
                message = f"{type(e).__name__}: {e}"
            return await self._recorder.fail_episode(episode_id, message)

        try:
            return await self._recorder.complete_episode(episode_id, result)
        except InvalidResultError as e:
            return await self._recorder.fail_episode(episode_id, f"invalid result: {e}")
