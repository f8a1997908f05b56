"""Episode models for research telemetry.

An Episode is one run of the research agent against a single query
under a specific strategy version:
- Input: topic, query, strategy version in play
- Trace: sources surfaced vs. kept, follow-ups, tool usage
- Outcome: terminal status, duration, error message

The strategy version is fixed when the episode is created and is the
authoritative record of which strategy produced the result.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, Field


class EpisodeStatus(str, Enum):
    """Lifecycle state of an episode."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (EpisodeStatus.COMPLETED, EpisodeStatus.FAILED)


TERMINAL_STATUSES = (EpisodeStatus.COMPLETED, EpisodeStatus.FAILED)


class SourceRef(BaseModel):
    """Reference to a research source. Identity is the URL."""

    url: str
    title: str | None = None
    source: str | None = None
    snippet: str | None = None


class EpisodeResult(BaseModel):
    """Structured result returned by the agent runner."""

    sources_returned: list[SourceRef] = Field(default_factory=list)
    sources_saved: list[SourceRef] = Field(default_factory=list)
    follow_up_count: int = 0
    tool_usage: dict[str, int] = Field(default_factory=dict)
    duration_ms: int | None = None


class Episode(BaseModel):
    """A single research run and its telemetry."""

    episode_id: str = Field(default_factory=lambda: uuid4().hex[:16])
    topic_id: str
    strategy_version: int
    query: str
    user_id: str | None = None

    status: EpisodeStatus = EpisodeStatus.PENDING

    sources_returned: list[SourceRef] = Field(default_factory=list)
    sources_saved: list[SourceRef] = Field(default_factory=list)
    follow_up_count: int = 0
    tool_usage: dict[str, int] = Field(default_factory=dict)

    duration_ms: int | None = None
    error_message: str | None = None

    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    started_at: datetime | None = None
    finished_at: datetime | None = None
    sequence: int = 0

    annotations: dict[str, Any] = Field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def save_rate(self) -> float:
        """Fraction of returned sources that were kept (0 when none returned)."""
        if not self.sources_returned:
            return 0.0
        return len(self.sources_saved) / len(self.sources_returned)

    def used_tool(self, tool_name: str) -> bool:
        return self.tool_usage.get(tool_name, 0) > 0
