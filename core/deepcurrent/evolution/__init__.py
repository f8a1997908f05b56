"""Evolution Module - self-evolving research strategies.

This module closes the loop between episode telemetry and strategy:

- StrategyPayload / StrategyConfig: versioned strategy records per topic
- MetricsAggregator: windowed performance of one strategy version
- decide(): pure threshold policy producing an EvolutionDecision
- StrategyStore: append-only versions with weighted A/B rollout
- EvolutionOrchestrator: runs after each finished episode
- EvolutionWorker: queued background execution of the orchestrator

A strategy evolves by:
1. Accumulating enough finished episodes under one version
2. Failing a threshold rule (save rate, follow-ups, tool usage)
3. Spawning a mutated candidate version at a small rollout share
4. Being promoted (manually) once the candidate proves itself
"""

from deepcurrent.evolution.config import (
    SearchDepth,
    StrategyConfig,
    StrategyEvolutionLog,
    StrategyPayload,
    StrategyStatus,
    StrategyUpdate,
    TimeWindow,
)
from deepcurrent.evolution.backend import (
    FileStrategyBackend,
    InMemoryStrategyBackend,
    StrategyBackend,
)
from deepcurrent.evolution.metrics import (
    MetricsAggregator,
    StrategyMetrics,
    call_share_tool_usage,
    episode_share_tool_usage,
)
from deepcurrent.evolution.policy import (
    EpisodeAnalysis,
    EpisodeRecommendation,
    EvolutionDecision,
    EvolutionReason,
    EvolutionThresholds,
    StrategyMutation,
    analyze_episode,
    decide,
)
from deepcurrent.evolution.store import StrategyStore
from deepcurrent.evolution.pipeline import (
    EvolutionOrchestrator,
    EvolutionOutcome,
    EvolutionPhase,
)
from deepcurrent.evolution.worker import EvolutionWorker

__all__ = [
    "SearchDepth",
    "StrategyConfig",
    "StrategyEvolutionLog",
    "StrategyPayload",
    "StrategyStatus",
    "StrategyUpdate",
    "TimeWindow",
    "FileStrategyBackend",
    "InMemoryStrategyBackend",
    "StrategyBackend",
    "MetricsAggregator",
    "StrategyMetrics",
    "call_share_tool_usage",
    "episode_share_tool_usage",
    "EpisodeAnalysis",
    "EpisodeRecommendation",
    "EvolutionDecision",
    "EvolutionReason",
    "EvolutionThresholds",
    "StrategyMutation",
    "analyze_episode",
    "decide",
    "StrategyStore",
    "EvolutionOrchestrator",
    "EvolutionOutcome",
    "EvolutionPhase",
    "EvolutionWorker",
]
