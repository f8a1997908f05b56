"""DeepCurrent - self-evolving research strategies.

Every research run is recorded as an episode under the strategy version
that produced it. Finished episodes feed windowed metrics, a threshold
policy decides whether the strategy should change, and a mutated
candidate version is trialled next to the active one under A/B rollout.
"""

from deepcurrent.config import EngineConfig
from deepcurrent.engine import StrategyEngine, build_engine
from deepcurrent.errors import (
    InvalidResultError,
    InvalidStateError,
    NotFoundError,
    StrategyEngineError,
    VersionConflictError,
)
from deepcurrent.topics import Topic, TopicRegistry

__all__ = [
    "EngineConfig",
    "StrategyEngine",
    "build_engine",
    "InvalidResultError",
    "InvalidStateError",
    "NotFoundError",
    "StrategyEngineError",
    "VersionConflictError",
    "Topic",
    "TopicRegistry",
]
