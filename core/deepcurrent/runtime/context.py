"""Runtime view of a strategy handed to the agent runner."""

from __future__ import annotations

from dataclasses import dataclass

from deepcurrent.evolution.config import SearchDepth, StrategyConfig, TimeWindow


@dataclass(frozen=True)
class StrategyRuntimeContext:
    """Flattened strategy knobs for one episode.

    The runner reads these to shape its searches. strategy_version is
    informational only; the episode record is the authority.
    """

    topic_id: str
    strategy_version: int
    search_depth: SearchDepth
    time_window: TimeWindow
    senso_first: bool
    max_followups: int | None
    summary_templates: tuple[str, ...]
    enabled_tools: tuple[str, ...]
    parallel_searches: bool

    @classmethod
    def from_strategy(cls, strategy: StrategyConfig) -> "StrategyRuntimeContext":
        payload = strategy.config
        return cls(
            topic_id=strategy.topic_id,
            strategy_version=strategy.version,
            search_depth=payload.search_depth,
            time_window=payload.time_window,
            senso_first=payload.senso_first,
            max_followups=payload.max_followups,
            summary_templates=payload.summary_templates,
            enabled_tools=payload.enabled_tools,
            parallel_searches=payload.parallel_searches,
        )

    def tool_order(self) -> list[str]:
        """Enabled tools in call order, senso first when the strategy asks for it."""
        tools = list(self.enabled_tools)
        if self.senso_first:
            tools = ["senso"] + [t for t in tools if t != "senso"]
        return tools
