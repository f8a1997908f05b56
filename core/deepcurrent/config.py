"""Engine configuration.

Every setting can be overridden from the environment (or a .env file):

    DEEPCURRENT_STORAGE_PATH            storage directory (unset = in-memory)
    DEEPCURRENT_WINDOW_SIZE             episodes per metrics window (20)
    DEEPCURRENT_CANDIDATE_ROLLOUT       rollout % of new candidates (20)
    DEEPCURRENT_PRIMARY_TOOL            tool tracked by the usage rule (senso)
    DEEPCURRENT_TOOL_USAGE_METRIC       episode_share | call_share
    DEEPCURRENT_MIN_EPISODES            rule 1 threshold (5)
    DEEPCURRENT_LOW_SAVE_RATE           rule 2 threshold (0.4)
    DEEPCURRENT_HIGH_FOLLOWUPS          rule 3 threshold (8)
    DEEPCURRENT_LOW_PRIMARY_TOOL_USAGE  rule 4 threshold (0.2)
    DEEPCURRENT_EPISODE_TIMEOUT_SECONDS agent runner timeout (unset = none)
    DEEPCURRENT_RUNNING_TTL_SECONDS     max age of a running episode (900)
    DEEPCURRENT_SWEEP_INTERVAL_SECONDS  stale sweep period (60)
    DEEPCURRENT_QUEUE_SIZE              evolution queue capacity (1000)
    DEEPCURRENT_LOG_LEVEL               logging level (INFO)
"""

from __future__ import annotations

import os
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

from deepcurrent.evolution.metrics import (
    ToolUsageMetric,
    call_share_tool_usage,
    episode_share_tool_usage,
)
from deepcurrent.evolution.policy import EvolutionThresholds

ENV_PREFIX = "DEEPCURRENT_"

TOOL_USAGE_METRICS: dict[str, ToolUsageMetric] = {
    "episode_share": episode_share_tool_usage,
    "call_share": call_share_tool_usage,
}

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass
class EngineConfig:
    """Settings for build_engine()."""

    storage_path: Path | None = None
    window_size: int = 20
    candidate_rollout: int = 20
    primary_tool: str = "senso"
    tool_usage_metric: str = "episode_share"
    thresholds: EvolutionThresholds = field(default_factory=EvolutionThresholds)
    episode_timeout_seconds: float | None = None
    running_ttl_seconds: float = 900
    sweep_interval_seconds: float = 60
    queue_size: int = 1000
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        if self.storage_path is not None:
            self.storage_path = Path(self.storage_path)
        if self.window_size < 1:
            raise ValueError("window_size must be at least 1")
        if not 0 < self.candidate_rollout < 100:
            raise ValueError("candidate_rollout must be between 1 and 99")
        if self.tool_usage_metric not in TOOL_USAGE_METRICS:
            raise ValueError(
                f"tool_usage_metric must be one of {sorted(TOOL_USAGE_METRICS)}, "
                f"got {self.tool_usage_metric!r}"
            )
        if self.queue_size < 1:
            raise ValueError("queue_size must be at least 1")
        self.log_level = self.log_level.upper()
        if self.log_level not in LOG_LEVELS:
            raise ValueError(f"log_level must be one of {LOG_LEVELS}, got {self.log_level!r}")

    @property
    def tool_usage_function(self) -> ToolUsageMetric:
        return TOOL_USAGE_METRICS[self.tool_usage_metric]

    @classmethod
    def from_env(
        cls,
        environ: Mapping[str, str] | None = None,
        dotenv: bool = True,
    ) -> "EngineConfig":
        """Build a config from DEEPCURRENT_* variables.

        Loads a .env file first unless dotenv is False or an explicit
        environ mapping is given.

        Raises:
            ValueError: a variable is present but malformed
        """
        if environ is None:
            if dotenv:
                load_dotenv()
            environ = os.environ

        def read(name: str, parse: Callable[[str], Any], default: Any) -> Any:
            raw = environ.get(ENV_PREFIX + name)
            if raw is None or raw.strip() == "":
                return default
            try:
                return parse(raw.strip())
            except ValueError as e:
                raise ValueError(f"Invalid value for {ENV_PREFIX}{name}: {raw!r}") from e

        defaults = cls()
        base = defaults.thresholds
        thresholds = EvolutionThresholds(
            min_episodes=read("MIN_EPISODES", int, base.min_episodes),
            low_save_rate=read("LOW_SAVE_RATE", float, base.low_save_rate),
            high_followups=read("HIGH_FOLLOWUPS", float, base.high_followups),
            low_primary_tool_usage=read(
                "LOW_PRIMARY_TOOL_USAGE", float, base.low_primary_tool_usage
            ),
        )
        return cls(
            storage_path=read("STORAGE_PATH", Path, None),
            window_size=read("WINDOW_SIZE", int, defaults.window_size),
            candidate_rollout=read("CANDIDATE_ROLLOUT", int, defaults.candidate_rollout),
            primary_tool=read("PRIMARY_TOOL", str, defaults.primary_tool),
            tool_usage_metric=read("TOOL_USAGE_METRIC", str, defaults.tool_usage_metric),
            thresholds=thresholds,
            episode_timeout_seconds=read("EPISODE_TIMEOUT_SECONDS", float, None),
            running_ttl_seconds=read(
                "RUNNING_TTL_SECONDS", float, defaults.running_ttl_seconds
            ),
            sweep_interval_seconds=read(
                "SWEEP_INTERVAL_SECONDS", float, defaults.sweep_interval_seconds
            ),
            queue_size=read("QUEUE_SIZE", int, defaults.queue_size),
            log_level=read("LOG_LEVEL", str, defaults.log_level),
        )
