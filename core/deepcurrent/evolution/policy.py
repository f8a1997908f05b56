"""Evolution Policy - decides when and how a strategy evolves.

decide() is a pure function of (metrics, thresholds). Rules are
evaluated in a fixed priority order and the first match wins:

1. sample_size < min_episodes      -> no evolution ("insufficient data")
2. save_rate < low_save_rate       -> deeper search, wider time window
3. avg_followups > high_followups  -> shallower search, fewer follow-ups
4. primary tool usage too low      -> search the primary tool first
5. otherwise                       -> no evolution ("performance acceptable")

Rule 1 short-circuits everything else: small samples never evolve.

Mutations are symbolic overlays. They are resolved against the current
payload only when applied, and never touch fields they don't mention.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict

from deepcurrent.evolution.config import SearchDepth, StrategyPayload
from deepcurrent.evolution.metrics import StrategyMetrics
from deepcurrent.memory.episode import Episode, EpisodeStatus

DEFAULT_REDUCED_FOLLOWUPS = 3


class EvolutionReason(str, Enum):
    """Classification attached to every decision."""

    INSUFFICIENT_DATA = "insufficient data"
    LOW_SAVE_RATE = "low save rate"
    EXCESSIVE_FOLLOWUPS = "excessive followups"
    LOW_PRIMARY_TOOL_USAGE = "low primary-tool usage"
    PERFORMANCE_ACCEPTABLE = "performance acceptable"


@dataclass(frozen=True)
class EvolutionThresholds:
    """Thresholds for the evolution rules."""

    min_episodes: int = 5
    low_save_rate: float = 0.4
    high_followups: float = 8.0
    low_primary_tool_usage: float = 0.2


def reduce_followups(current: int | None) -> int:
    """Halve the follow-up budget, never below 1 and never above current.

    Unset budgets become 3; a budget of 0 stays 0.
    """
    if current is None:
        return DEFAULT_REDUCED_FOLLOWUPS
    return min(current, max(1, current // 2))


class StrategyMutation(BaseModel):
    """A typed overlay onto a StrategyPayload."""

    model_config = ConfigDict(frozen=True)

    search_depth: SearchDepth | None = None
    widen_time_window: bool = False
    reduce_max_followups: bool = False
    senso_first: bool | None = None

    def apply_to(self, payload: StrategyPayload) -> StrategyPayload:
        """Return a new payload with this mutation applied."""
        update: dict[str, Any] = {}
        if self.search_depth is not None:
            update["search_depth"] = self.search_depth
        if self.widen_time_window:
            update["time_window"] = payload.time_window.widen()
        if self.reduce_max_followups:
            update["max_followups"] = reduce_followups(payload.max_followups)
        if self.senso_first is not None:
            update["senso_first"] = self.senso_first
        return payload.model_copy(update=update)

    def describe(self) -> str:
        parts = []
        if self.search_depth is not None:
            parts.append(f"searchDepth={self.search_depth.value}")
        if self.widen_time_window:
            parts.append("timeWindow=widen")
        if self.reduce_max_followups:
            parts.append("maxFollowups=reduce")
        if self.senso_first is not None:
            parts.append(f"sensoFirst={str(self.senso_first).lower()}")
        return ", ".join(parts) or "no changes"


@dataclass(frozen=True)
class EvolutionDecision:
    """Outcome of the evolution policy."""

    should_evolve: bool
    reason: EvolutionReason
    detail: str = ""
    mutation: StrategyMutation | None = None


def decide(metrics: StrategyMetrics, thresholds: EvolutionThresholds) -> EvolutionDecision:
    """Decide whether a strategy version should evolve. Pure and deterministic."""
    if metrics.sample_size < thresholds.min_episodes:
        return EvolutionDecision(
            should_evolve=False,
            reason=EvolutionReason.INSUFFICIENT_DATA,
            detail=f"{metrics.sample_size} of {thresholds.min_episodes} required episodes",
        )

    if metrics.has_source_signal and metrics.save_rate < thresholds.low_save_rate:
        return EvolutionDecision(
            should_evolve=True,
            reason=EvolutionReason.LOW_SAVE_RATE,
            detail=(
                f"save rate {metrics.save_rate:.0%} below {thresholds.low_save_rate:.0%} "
                f"over {metrics.sample_size} episodes"
            ),
            mutation=StrategyMutation(search_depth=SearchDepth.DEEP, widen_time_window=True),
        )

    if metrics.avg_followups > thresholds.high_followups:
        return EvolutionDecision(
            should_evolve=True,
            reason=EvolutionReason.EXCESSIVE_FOLLOWUPS,
            detail=(
                f"{metrics.avg_followups:.1f} follow-ups per episode "
                f"above {thresholds.high_followups:g}"
            ),
            mutation=StrategyMutation(
                search_depth=SearchDepth.SHALLOW, reduce_max_followups=True
            ),
        )

    if (
        metrics.primary_tool_usage is not None
        and metrics.primary_tool_usage < thresholds.low_primary_tool_usage
    ):
        return EvolutionDecision(
            should_evolve=True,
            reason=EvolutionReason.LOW_PRIMARY_TOOL_USAGE,
            detail=(
                f"{metrics.primary_tool} used in {metrics.primary_tool_usage:.0%} of episodes, "
                f"below {thresholds.low_primary_tool_usage:.0%}"
            ),
            mutation=StrategyMutation(senso_first=True),
        )

    return EvolutionDecision(
        should_evolve=False,
        reason=EvolutionReason.PERFORMANCE_ACCEPTABLE,
        detail=(
            f"save rate {metrics.save_rate:.0%}, "
            f"{metrics.avg_followups:.1f} follow-ups per episode"
        ),
    )


class EpisodeRecommendation(str, Enum):
    KEEP = "keep"
    EVOLVE = "evolve"
    ROLLBACK = "rollback"


@dataclass(frozen=True)
class EpisodeAnalysis:
    """Advisory health check of a single episode."""

    episode_id: str
    topic_id: str
    strategy_version: int
    sources_returned: int
    sources_saved: int
    save_rate: float
    follow_up_count: int
    failed: bool
    recommendation: EpisodeRecommendation
    reason: str


def analyze_episode(episode: Episode, thresholds: EvolutionThresholds) -> EpisodeAnalysis:
    """Classify one finished episode.

    Advisory only: a single episode is never enough to evolve on, but
    the classification is logged next to every orchestrator run.
    """
    failed = episode.status == EpisodeStatus.FAILED
    returned = len(episode.sources_returned)

    if failed:
        recommendation = EpisodeRecommendation.ROLLBACK
        reason = f"episode failed: {episode.error_message or 'unknown error'}"
    elif returned and episode.save_rate < thresholds.low_save_rate:
        recommendation = EpisodeRecommendation.EVOLVE
        reason = f"low save rate ({episode.save_rate:.0%})"
    elif episode.follow_up_count > thresholds.high_followups:
        recommendation = EpisodeRecommendation.EVOLVE
        reason = f"too many follow-ups ({episode.follow_up_count})"
    else:
        recommendation = EpisodeRecommendation.KEEP
        reason = "performance is satisfactory"

    return EpisodeAnalysis(
        episode_id=episode.episode_id,
        topic_id=episode.topic_id,
        strategy_version=episode.strategy_version,
        sources_returned=returned,
        sources_saved=len(episode.sources_saved),
        save_rate=episode.save_rate,
        follow_up_count=episode.follow_up_count,
        failed=failed,
        recommendation=recommendation,
        reason=reason,
    )
