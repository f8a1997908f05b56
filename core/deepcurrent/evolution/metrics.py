"""Metrics Aggregator for strategy versions.

Aggregates the most recent finished episodes of one strategy version:
1. Save rate (kept sources / surfaced sources, pooled over the window)
2. Average follow-ups per episode
3. Failure rate
4. Tool usage ratios (pluggable)

Aggregation is keyed by strategy version, not by submission order, so
episodes completing out of order within a version are harmless.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable

from pydantic import BaseModel, Field

from deepcurrent.memory.backend import EpisodeBackend
from deepcurrent.memory.episode import TERMINAL_STATUSES, Episode, EpisodeStatus

logger = logging.getLogger(__name__)

ToolUsageMetric = Callable[[list[Episode]], dict[str, float]]

DEFAULT_WINDOW_SIZE = 20
DEFAULT_PRIMARY_TOOL = "senso"


def episode_share_tool_usage(episodes: list[Episode]) -> dict[str, float]:
    """Per tool, the fraction of episodes that called it at least once."""
    if not episodes:
        return {}

    used_by: dict[str, int] = {}
    for ep in episodes:
        for tool, count in ep.tool_usage.items():
            if count > 0:
                used_by[tool] = used_by.get(tool, 0) + 1

    return {tool: n / len(episodes) for tool, n in sorted(used_by.items())}


def call_share_tool_usage(episodes: list[Episode]) -> dict[str, float]:
    """Per tool, its share of all tool calls in the window."""
    totals: dict[str, int] = {}
    for ep in episodes:
        for tool, count in ep.tool_usage.items():
            totals[tool] = totals.get(tool, 0) + max(count, 0)

    all_calls = sum(totals.values())
    if all_calls == 0:
        return {}
    return {tool: n / all_calls for tool, n in sorted(totals.items())}


class StrategyMetrics(BaseModel):
    """Aggregate performance of one strategy version over a window."""

    topic_id: str
    strategy_version: int
    window_size: int = DEFAULT_WINDOW_SIZE

    sample_size: int = 0
    completed_count: int = 0
    failed_count: int = 0

    total_sources_returned: int = 0
    total_sources_saved: int = 0
    save_rate: float = 0.0
    avg_followups: float = 0.0
    failure_rate: float = 0.0
    avg_duration_ms: float = 0.0

    tool_usage_ratios: dict[str, float] = Field(default_factory=dict)
    primary_tool: str | None = None
    primary_tool_usage: float | None = None

    @property
    def has_data(self) -> bool:
        return self.sample_size > 0

    @property
    def has_source_signal(self) -> bool:
        """False when the window surfaced no sources, so save_rate means nothing."""
        return self.total_sources_returned > 0

    def snapshot(self) -> dict:
        """Plain values recorded alongside an evolution decision."""
        return self.model_dump(mode="json")

    @classmethod
    def from_episodes(
        cls,
        topic_id: str,
        strategy_version: int,
        episodes: list[Episode],
        window_size: int = DEFAULT_WINDOW_SIZE,
        tool_usage_metric: ToolUsageMetric = episode_share_tool_usage,
        primary_tool: str | None = DEFAULT_PRIMARY_TOOL,
    ) -> "StrategyMetrics":
        """Compute metrics from an already-selected window of finished episodes."""
        if not episodes:
            return cls(
                topic_id=topic_id,
                strategy_version=strategy_version,
                window_size=window_size,
                primary_tool=primary_tool,
            )

        n = len(episodes)
        returned = sum(len(ep.sources_returned) for ep in episodes)
        saved = sum(len(ep.sources_saved) for ep in episodes)
        failed = sum(1 for ep in episodes if ep.status == EpisodeStatus.FAILED)
        durations = [ep.duration_ms for ep in episodes if ep.duration_ms is not None]

        ratios = tool_usage_metric(episodes)
        has_tool_data = any(ep.tool_usage for ep in episodes)
        primary_usage = None
        if primary_tool and has_tool_data:
            primary_usage = ratios.get(primary_tool, 0.0)

        return cls(
            topic_id=topic_id,
            strategy_version=strategy_version,
            window_size=window_size,
            sample_size=n,
            completed_count=n - failed,
            failed_count=failed,
            total_sources_returned=returned,
            total_sources_saved=saved,
            save_rate=saved / returned if returned else 0.0,
            avg_followups=sum(ep.follow_up_count for ep in episodes) / n,
            failure_rate=failed / n,
            avg_duration_ms=sum(durations) / len(durations) if durations else 0.0,
            tool_usage_ratios=ratios,
            primary_tool=primary_tool,
            primary_tool_usage=primary_usage,
        )


class MetricsAggregator:
    """Computes StrategyMetrics from the episode store.

    Usage:
        aggregator = MetricsAggregator(episode_backend, primary_tool="senso")
        metrics = await aggregator.aggregate(topic_id, strategy_version=2, window_size=20)

        if not metrics.has_data:
            ...  # not enough data, never "strategy failing"
    """

    def __init__(
        self,
        backend: EpisodeBackend,
        tool_usage_metric: ToolUsageMetric = episode_share_tool_usage,
        primary_tool: str | None = DEFAULT_PRIMARY_TOOL,
    ) -> None:
        self._backend = backend
        self._tool_usage_metric = tool_usage_metric
        self._primary_tool = primary_tool

    async def aggregate(
        self,
        topic_id: str,
        strategy_version: int,
        window_size: int = DEFAULT_WINDOW_SIZE,
    ) -> StrategyMetrics:
        """Aggregate the most recent completed or failed episodes of a version."""
        if window_size < 1:
            raise ValueError("window_size must be at least 1")

        episodes = await asyncio.to_thread(
            self._backend.list_for_strategy,
            topic_id,
            strategy_version,
            TERMINAL_STATUSES,
            window_size,
        )

        metrics = StrategyMetrics.from_episodes(
            topic_id,
            strategy_version,
            episodes,
            window_size=window_size,
            tool_usage_metric=self._tool_usage_metric,
            primary_tool=self._primary_tool,
        )

        logger.debug(
            f"Metrics for topic {topic_id} v{strategy_version}: "
            f"n={metrics.sample_size}, save_rate={metrics.save_rate:.3f}, "
            f"avg_followups={metrics.avg_followups:.2f}, failure_rate={metrics.failure_rate:.2f}"
        )
        return metrics
