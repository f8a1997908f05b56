"""Episode Memory Module - telemetry for every research run.

- Episode: one agent run under a specific strategy version
- EpisodeResult: structured output of the agent runner
- EpisodeRecorder: lifecycle transitions (pending -> running -> terminal)
- EpisodeBackend: pluggable persistence (in-memory, JSON files)

Episode schema:
    {
        topic_id: str,
        strategy_version: int,
        query: str,
        status: pending | running | completed | failed,
        sources_returned: list[SourceRef],
        sources_saved: list[SourceRef],
        follow_up_count: int,
        tool_usage: dict[str, int],
        duration_ms: int,
        error_message: str | None
    }
"""

from deepcurrent.memory.episode import (
    Episode,
    EpisodeResult,
    EpisodeStatus,
    SourceRef,
)
from deepcurrent.memory.backend import (
    EpisodeBackend,
    FileEpisodeBackend,
    InMemoryEpisodeBackend,
)
from deepcurrent.memory.recorder import EpisodeRecorder

__all__ = [
    "Episode",
    "EpisodeResult",
    "EpisodeStatus",
    "SourceRef",
    "EpisodeBackend",
    "FileEpisodeBackend",
    "InMemoryEpisodeBackend",
    "EpisodeRecorder",
]
