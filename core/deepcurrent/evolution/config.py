"""Strategy configuration models for evolution.

A StrategyConfig is one version of a topic's research strategy:
- Payload: the behavioural knobs handed to the agent (search depth,
  time window, follow-up limit, tool preferences)
- Lifecycle: candidate -> active -> archived, never deleted
- Rollout: selection weight across the topic's non-archived versions
- Lineage: the parent version it was derived from

Strategy versions evolve through mutations decided by the evolution
policy; every transition is recorded in a StrategyEvolutionLog.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class SearchDepth(str, Enum):
    """How thoroughly the agent searches."""

    SHALLOW = "shallow"
    STANDARD = "standard"
    DEEP = "deep"


class TimeWindow(str, Enum):
    """Recency window applied to searches, narrowest first."""

    DAY = "day"
    WEEK = "week"
    MONTH = "month"

    def widen(self) -> "TimeWindow":
        """Next wider window; MONTH is the widest."""
        order = list(TimeWindow)
        return order[min(order.index(self) + 1, len(order) - 1)]


class StrategyStatus(str, Enum):
    """Lifecycle state of a strategy version."""

    CANDIDATE = "candidate"
    ACTIVE = "active"
    ARCHIVED = "archived"


DEFAULT_SUMMARY_TEMPLATES = ("bullets", "narrative")
DEFAULT_ENABLED_TOOLS = ("evaluate", "extract", "linkup")


class StrategyPayload(BaseModel):
    """The validated configJson payload of a strategy version.

    Serialized with camelCase keys (searchDepth, timeWindow, ...).
    Collections of identifiers have set semantics and are stored sorted
    so that a payload round-trips losslessly.
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="forbid",
        frozen=True,
    )

    search_depth: SearchDepth = SearchDepth.STANDARD
    time_window: TimeWindow = TimeWindow.WEEK
    max_followups: int | None = Field(default=None, ge=0)
    senso_first: bool = False
    summary_templates: tuple[str, ...] = DEFAULT_SUMMARY_TEMPLATES
    enabled_tools: tuple[str, ...] = DEFAULT_ENABLED_TOOLS
    parallel_searches: bool = False

    @field_validator("summary_templates", "enabled_tools", mode="after")
    @classmethod
    def _as_sorted_set(cls, value: tuple[str, ...]) -> tuple[str, ...]:
        return tuple(sorted(set(value)))

    def to_config_json(self) -> dict[str, Any]:
        """Serialize to the camelCase configJson dictionary."""
        return self.model_dump(mode="json", by_alias=True)

    @classmethod
    def from_config_json(cls, data: dict[str, Any]) -> "StrategyPayload":
        return cls.model_validate(data)

    def diff(self, other: "StrategyPayload") -> dict[str, dict[str, Any]]:
        """Changed configJson keys, mapped to their before/after values."""
        before = self.to_config_json()
        after = other.to_config_json()
        return {
            key: {"before": before[key], "after": after[key]}
            for key in before
            if before[key] != after[key]
        }


class StrategyConfig(BaseModel):
    """A versioned strategy record for a topic."""

    strategy_id: str = Field(default_factory=lambda: uuid4().hex[:12])
    topic_id: str
    version: int = Field(ge=1)
    status: StrategyStatus = StrategyStatus.CANDIDATE
    rollout_percentage: int = Field(default=100, ge=0, le=100)
    parent_version: int | None = None
    config: StrategyPayload = Field(default_factory=StrategyPayload)

    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @property
    def is_live(self) -> bool:
        """True for versions that take part in rollout selection."""
        return self.status != StrategyStatus.ARCHIVED


class StrategyUpdate(BaseModel):
    """A status and/or rollout change applied to an existing version."""

    model_config = ConfigDict(frozen=True)

    version: int
    status: StrategyStatus | None = None
    rollout_percentage: int | None = Field(default=None, ge=0, le=100)


class StrategyEvolutionLog(BaseModel):
    """Append-only record of one strategy transition."""

    log_id: str = Field(default_factory=lambda: uuid4().hex[:16])
    topic_id: str
    from_version: int | None = None
    to_version: int
    reason: str = ""
    detail: str = ""
    metrics_snapshot: dict[str, Any] = Field(default_factory=dict)
    changes: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
