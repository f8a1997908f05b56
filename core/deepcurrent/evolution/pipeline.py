"""Evolution Pipeline - runs after every finished episode.

The EvolutionOrchestrator coordinates:
1. Loading the finished episode
2. Aggregating metrics for the strategy version it ran under
3. Evaluating the evolution policy
4. Creating a candidate version under A/B rollout
5. Appending the evolution log entry

Evolution is auxiliary analysis: handle() never raises, so a failed
evolution attempt can never fail or roll back the episode itself.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from deepcurrent.errors import VersionConflictError
from deepcurrent.evolution.config import StrategyEvolutionLog, StrategyStatus
from deepcurrent.evolution.metrics import DEFAULT_WINDOW_SIZE, MetricsAggregator, StrategyMetrics
from deepcurrent.evolution.policy import (
    EpisodeAnalysis,
    EvolutionDecision,
    EvolutionThresholds,
    analyze_episode,
    decide,
)
from deepcurrent.evolution.store import StrategyStore
from deepcurrent.memory.recorder import EpisodeRecorder

logger = logging.getLogger(__name__)

DEFAULT_CANDIDATE_ROLLOUT = 20
MAX_ATTEMPTS = 2


class EvolutionPhase(str, Enum):
    """Phases of one orchestrator run."""

    LOADING = "loading"
    AGGREGATION = "aggregation"
    DECISION = "decision"
    CANDIDATE_CREATION = "candidate_creation"
    LOGGING = "logging"
    EVOLVED = "evolved"
    UNCHANGED = "unchanged"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass
class EvolutionOutcome:
    """Result of processing one finished episode."""

    episode_id: str
    topic_id: str = ""
    strategy_version: int | None = None

    phase: EvolutionPhase = EvolutionPhase.LOADING
    attempts: int = 0

    analysis: EpisodeAnalysis | None = None
    metrics: StrategyMetrics | None = None
    decision: EvolutionDecision | None = None

    new_version: int | None = None
    log_entry: StrategyEvolutionLog | None = None
    skip_reason: str = ""

    errors: list[str] = field(default_factory=list)
    started_at: str = field(default_factory=lambda: datetime.now(UTC).isoformat())
    completed_at: str = ""

    @property
    def evolved(self) -> bool:
        return self.phase == EvolutionPhase.EVOLVED


class EvolutionOrchestrator:
    """Drives metrics, policy and strategy store after each finished episode.

    Usage:
        orchestrator = EvolutionOrchestrator(recorder, aggregator, store)

        outcome = await orchestrator.handle(episode_id)
        if outcome.evolved:
            print(f"Candidate v{outcome.new_version}: {outcome.decision.reason.value}")
    """

    def __init__(
        self,
        recorder: EpisodeRecorder,
        aggregator: MetricsAggregator,
        store: StrategyStore,
        thresholds: EvolutionThresholds | None = None,
        window_size: int = DEFAULT_WINDOW_SIZE,
        candidate_rollout: int = DEFAULT_CANDIDATE_ROLLOUT,
    ) -> None:
        if not 0 < candidate_rollout < 100:
            raise ValueError("candidate_rollout must be between 1 and 99")
        self._recorder = recorder
        self._aggregator = aggregator
        self._store = store
        self._thresholds = thresholds or EvolutionThresholds()
        self._window_size = window_size
        self._candidate_rollout = candidate_rollout

    @property
    def thresholds(self) -> EvolutionThresholds:
        return self._thresholds

    async def handle(self, episode_id: str) -> EvolutionOutcome:
        """Process an episode inside the error boundary. Never raises."""
        outcome = EvolutionOutcome(episode_id=episode_id)
        try:
            await self._process(outcome)
        except Exception as e:
            outcome.errors.append(str(e))
            logger.exception(
                f"Evolution failed for episode {episode_id} in phase {outcome.phase.value}: {e}"
            )
            outcome.phase = EvolutionPhase.FAILED
        outcome.completed_at = datetime.now(UTC).isoformat()
        return outcome

    async def process(self, episode_id: str) -> EvolutionOutcome:
        """Process an episode, propagating errors.

        Raises:
            NotFoundError: unknown episode or strategy version
            VersionConflictError: lost the version race twice in a row
        """
        outcome = EvolutionOutcome(episode_id=episode_id)
        await self._process(outcome)
        outcome.completed_at = datetime.now(UTC).isoformat()
        return outcome

    async def _process(self, outcome: EvolutionOutcome) -> None:
        outcome.phase = EvolutionPhase.LOADING
        episode = await self._recorder.get_episode(outcome.episode_id)
        outcome.topic_id = episode.topic_id
        outcome.strategy_version = episode.strategy_version

        if not episode.is_terminal:
            self._skip(outcome, f"episode is still {episode.status.value}")
            return

        outcome.analysis = analyze_episode(episode, self._thresholds)
        logger.info(
            f"Episode {episode.episode_id} analysis: "
            f"{outcome.analysis.recommendation.value} ({outcome.analysis.reason})"
        )

        for attempt in range(1, MAX_ATTEMPTS + 1):
            outcome.attempts = attempt
            try:
                await self._evaluate(outcome)
                return
            except VersionConflictError as e:
                if attempt >= MAX_ATTEMPTS:
                    raise
                logger.warning(f"{e}; retrying against current state")

    async def _evaluate(self, outcome: EvolutionOutcome) -> None:
        topic_id = outcome.topic_id
        version = outcome.strategy_version

        outcome.phase = EvolutionPhase.AGGREGATION
        metrics = await self._aggregator.aggregate(topic_id, version, self._window_size)
        outcome.metrics = metrics

        outcome.phase = EvolutionPhase.DECISION
        decision = decide(metrics, self._thresholds)
        outcome.decision = decision

        if not decision.should_evolve:
            outcome.phase = EvolutionPhase.UNCHANGED
            logger.info(
                f"Topic {topic_id} v{version}: no evolution ({decision.reason.value}; "
                f"{decision.detail})"
            )
            return

        strategies = await self._store.list_strategies(topic_id)
        source = next((s for s in strategies if s.version == version), None)
        if source is None:
            self._skip(outcome, f"strategy v{version} no longer exists")
            return
        if source.status == StrategyStatus.ARCHIVED:
            self._skip(outcome, f"strategy v{version} is archived")
            return

        in_trial = [
            s
            for s in strategies
            if s.status == StrategyStatus.CANDIDATE and s.parent_version == version
        ]
        if in_trial:
            self._skip(
                outcome,
                f"candidate v{in_trial[-1].version} derived from v{version} is already in trial",
            )
            return

        new_payload = decision.mutation.apply_to(source.config)
        if new_payload.to_config_json() == source.config.to_config_json():
            self._skip(outcome, f"mutation ({decision.mutation.describe()}) changes nothing")
            return

        outcome.phase = EvolutionPhase.CANDIDATE_CREATION
        candidate = await self._store.create_candidate(
            topic_id,
            parent_version=version,
            new_config=new_payload,
            rollout_percentage=self._candidate_rollout,
        )
        outcome.new_version = candidate.version

        outcome.phase = EvolutionPhase.LOGGING
        changes: dict[str, Any] = {
            "before": source.config.to_config_json(),
            "after": new_payload.to_config_json(),
            "diff": source.config.diff(new_payload),
            "mutation": decision.mutation.describe(),
        }
        outcome.log_entry = await self._store.record_evolution(
            StrategyEvolutionLog(
                topic_id=topic_id,
                from_version=version,
                to_version=candidate.version,
                reason=decision.reason.value,
                detail=decision.detail,
                metrics_snapshot=metrics.snapshot(),
                changes=changes,
            )
        )

        outcome.phase = EvolutionPhase.EVOLVED
        logger.info(
            f"Evolved topic {topic_id}: v{version} -> v{candidate.version} "
            f"({decision.reason.value}; {decision.detail})"
        )

    @staticmethod
    def _skip(outcome: EvolutionOutcome, reason: str) -> None:
        outcome.phase = EvolutionPhase.SKIPPED
        outcome.skip_reason = reason
        logger.info(f"Skipping evolution for episode {outcome.episode_id}: {reason}")
