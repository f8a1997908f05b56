"""Runtime glue between the agent runner and the strategy engine."""

from deepcurrent.runtime.context import StrategyRuntimeContext
from deepcurrent.runtime.research import AgentRunner, ResearchSession
from deepcurrent.runtime.sweeper import StaleEpisodeSweeper

__all__ = [
    "AgentRunner",
    "ResearchSession",
    "StaleEpisodeSweeper",
    "StrategyRuntimeContext",
]
