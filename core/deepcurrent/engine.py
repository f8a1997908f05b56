"""Strategy engine wiring.

build_engine() assembles every component from an EngineConfig:

    backends -> EpisodeRecorder, StrategyStore, MetricsAggregator
             -> EvolutionOrchestrator -> EvolutionWorker
             -> ResearchSession, StaleEpisodeSweeper
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from deepcurrent.config import EngineConfig
from deepcurrent.evolution.backend import (
    FileStrategyBackend,
    InMemoryStrategyBackend,
    StrategyBackend,
)
from deepcurrent.evolution.metrics import MetricsAggregator
from deepcurrent.evolution.pipeline import EvolutionOrchestrator
from deepcurrent.evolution.store import StrategyStore
from deepcurrent.evolution.worker import EvolutionWorker
from deepcurrent.memory.backend import (
    EpisodeBackend,
    FileEpisodeBackend,
    InMemoryEpisodeBackend,
)
from deepcurrent.memory.recorder import EpisodeRecorder
from deepcurrent.runtime.research import ResearchSession
from deepcurrent.runtime.sweeper import StaleEpisodeSweeper
from deepcurrent.topics import TopicRegistry

logger = logging.getLogger(__name__)


@dataclass
class StrategyEngine:
    """All engine components, wired together.

    Usage:
        engine = build_engine(EngineConfig.from_env())

        async with engine:
            topic, _ = await engine.session.create_topic("AI chips")
            episode = await engine.session.run(topic.topic_id, "HBM supply", runner)
    """

    config: EngineConfig
    topics: TopicRegistry
    episodes: EpisodeBackend
    strategies: StrategyBackend
    recorder: EpisodeRecorder
    store: StrategyStore
    aggregator: MetricsAggregator
    orchestrator: EvolutionOrchestrator
    worker: EvolutionWorker
    session: ResearchSession
    sweeper: StaleEpisodeSweeper

    async def start(self, sweep: bool = True) -> None:
        """Start the evolution worker and, optionally, the stale sweeper."""
        self.worker.start()
        if sweep:
            self.sweeper.start()

    async def stop(self) -> None:
        """Stop the sweeper, drain the evolution queue and stop the worker."""
        await self.sweeper.stop()
        await self.worker.stop(drain=True)

    async def __aenter__(self) -> "StrategyEngine":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()


def build_engine(config: EngineConfig | None = None) -> StrategyEngine:
    """Build an engine: file-backed when config.storage_path is set, in-memory otherwise."""
    config = config or EngineConfig()

    episodes: EpisodeBackend
    strategies: StrategyBackend
    if config.storage_path is not None:
        episode_backend = FileEpisodeBackend(config.storage_path)
        strategy_backend = FileStrategyBackend(config.storage_path)
        episode_backend.ensure_dirs()
        strategy_backend.ensure_dirs()
        episodes, strategies = episode_backend, strategy_backend
        logger.info(f"Using file storage at {config.storage_path}")
    else:
        episodes, strategies = InMemoryEpisodeBackend(), InMemoryStrategyBackend()
        logger.info("Using in-memory storage")

    topics = TopicRegistry(config.storage_path)
    recorder = EpisodeRecorder(episodes, topics, strategies)
    store = StrategyStore(strategies)
    aggregator = MetricsAggregator(
        episodes,
        tool_usage_metric=config.tool_usage_function,
        primary_tool=config.primary_tool,
    )
    orchestrator = EvolutionOrchestrator(
        recorder,
        aggregator,
        store,
        thresholds=config.thresholds,
        window_size=config.window_size,
        candidate_rollout=config.candidate_rollout,
    )
    worker = EvolutionWorker(orchestrator, queue_size=config.queue_size)
    session = ResearchSession(
        topics,
        recorder,
        store,
        worker=worker,
        episode_timeout=config.episode_timeout_seconds,
    )
    sweeper = StaleEpisodeSweeper(
        recorder,
        worker=worker,
        running_ttl_seconds=config.running_ttl_seconds,
        interval_seconds=config.sweep_interval_seconds,
    )

    return StrategyEngine(
        config=config,
        topics=topics,
        episodes=episodes,
        strategies=strategies,
        recorder=recorder,
        store=store,
        aggregator=aggregator,
        orchestrator=orchestrator,
        worker=worker,
        session=session,
        sweeper=sweeper,
    )
