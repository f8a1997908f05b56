"""Episode Backend Protocol and Implementations.

Provides a pluggable persistence interface for episodes:
- EpisodeBackend: Protocol for all backends
- InMemoryEpisodeBackend: Process-local backend, used for tests and demos
- FileEpisodeBackend: One JSON document per episode on disk

Backends are synchronous and thread-safe; the recorder moves calls off
the event loop with asyncio.to_thread.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterable
from pathlib import Path
from typing import Protocol

from deepcurrent.errors import InvalidStateError, NotFoundError
from deepcurrent.memory.episode import Episode, EpisodeStatus

logger = logging.getLogger(__name__)


class EpisodeBackend(Protocol):
    """Protocol for episode storage backends."""

    def insert(self, episode: Episode) -> Episode:
        """Persist a new episode and return it with its sequence assigned."""
        ...

    def get(self, episode_id: str) -> Episode | None:
        """Get an episode by ID."""
        ...

    def transition(self, episode: Episode, expected: Iterable[EpisodeStatus]) -> None:
        """Replace a stored episode only if its stored status is one of expected.

        The check and the write happen in one critical section. Raises
        NotFoundError if missing and InvalidStateError on a status mismatch.
        """
        ...

    def list_for_strategy(
        self,
        topic_id: str,
        strategy_version: int,
        statuses: Iterable[EpisodeStatus] | None = None,
        limit: int | None = None,
    ) -> list[Episode]:
        """List episodes for a strategy version, newest first."""
        ...

    def list_by_status(self, status: EpisodeStatus) -> list[Episode]:
        """List every episode currently in the given status."""
        ...

    def count_by_version(self, topic_id: str) -> dict[int, int]:
        """Count episodes per strategy version for a topic."""
        ...


def _newest_first(episodes: Iterable[Episode]) -> list[Episode]:
    return sorted(episodes, key=lambda ep: (ep.created_at, ep.sequence), reverse=True)


def _filter_for_strategy(
    episodes: Iterable[Episode],
    topic_id: str,
    strategy_version: int,
    statuses: Iterable[EpisodeStatus] | None,
    limit: int | None,
) -> list[Episode]:
    wanted = set(statuses) if statuses is not None else None
    matched = [
        ep
        for ep in episodes
        if ep.topic_id == topic_id
        and ep.strategy_version == strategy_version
        and (wanted is None or ep.status in wanted)
    ]
    ordered = _newest_first(matched)
    if limit is not None:
        return ordered[:limit]
    return ordered


def _count_by_version(episodes: Iterable[Episode], topic_id: str) -> dict[int, int]:
    counts: dict[int, int] = {}
    for ep in episodes:
        if ep.topic_id == topic_id:
            counts[ep.strategy_version] = counts.get(ep.strategy_version, 0) + 1
    return counts


def _check_transition(stored: Episode, expected: Iterable[EpisodeStatus]) -> None:
    if stored.status not in set(expected):
        raise InvalidStateError(f"Episode {stored.episode_id} is already {stored.status.value}")


class InMemoryEpisodeBackend:
    """In-memory episode backend. Not persistent."""

    def __init__(self) -> None:
        self._episodes: dict[str, Episode] = {}
        self._sequence = 0
        self._lock = threading.Lock()

    def insert(self, episode: Episode) -> Episode:
        with self._lock:
            self._sequence += 1
            stored = episode.model_copy(update={"sequence": self._sequence}, deep=True)
            self._episodes[stored.episode_id] = stored
            return stored.model_copy(deep=True)

    def get(self, episode_id: str) -> Episode | None:
        with self._lock:
            episode = self._episodes.get(episode_id)
            return episode.model_copy(deep=True) if episode else None

    def transition(self, episode: Episode, expected: Iterable[EpisodeStatus]) -> None:
        with self._lock:
            stored = self._episodes.get(episode.episode_id)
            if stored is None:
                raise NotFoundError(f"Episode {episode.episode_id} not found")
            _check_transition(stored, expected)
            self._episodes[episode.episode_id] = episode.model_copy(deep=True)

    def list_for_strategy(
        self,
        topic_id: str,
        strategy_version: int,
        statuses: Iterable[EpisodeStatus] | None = None,
        limit: int | None = None,
    ) -> list[Episode]:
        with self._lock:
            episodes = [ep.model_copy(deep=True) for ep in self._episodes.values()]
        return _filter_for_strategy(episodes, topic_id, strategy_version, statuses, limit)

    def list_by_status(self, status: EpisodeStatus) -> list[Episode]:
        with self._lock:
            return [
                ep.model_copy(deep=True) for ep in self._episodes.values() if ep.status == status
            ]

    def count_by_version(self, topic_id: str) -> dict[int, int]:
        with self._lock:
            return _count_by_version(self._episodes.values(), topic_id)


class FileEpisodeBackend:
    """File-backed episode storage.

    Storage layout:
        {base_path}/
          episodes/
            {episode_id}.json     # One document per episode
    """

    def __init__(self, base_path: Path | str) -> None:
        self._base_path = Path(base_path)
        self._episodes_dir = self._base_path / "episodes"
        self._lock = threading.Lock()

    def ensure_dirs(self) -> None:
        """Create storage directories if they don't exist."""
        self._episodes_dir.mkdir(parents=True, exist_ok=True)

    def _path(self, episode_id: str) -> Path:
        return self._episodes_dir / f"{episode_id}.json"

    def _write(self, episode: Episode) -> None:
        # write-then-rename so lock-free readers never see a partial document
        path = self._path(episode.episode_id)
        tmp = path.with_suffix(".json.tmp")
        tmp.write_text(episode.model_dump_json(indent=2), encoding="utf-8")
        tmp.replace(path)

    def _read(self, path: Path) -> Episode | None:
        try:
            return Episode.model_validate_json(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning(f"Failed to load episode {path.stem}: {e}")
            return None

    def _load_all(self) -> list[Episode]:
        if not self._episodes_dir.exists():
            return []
        episodes = []
        for path in self._episodes_dir.glob("*.json"):
            episode = self._read(path)
            if episode is not None:
                episodes.append(episode)
        return episodes

    def insert(self, episode: Episode) -> Episode:
        with self._lock:
            self.ensure_dirs()
            sequence = max((ep.sequence for ep in self._load_all()), default=0) + 1
            stored = episode.model_copy(update={"sequence": sequence}, deep=True)
            self._write(stored)
            return stored

    def get(self, episode_id: str) -> Episode | None:
        path = self._path(episode_id)
        if not path.exists():
            return None
        return self._read(path)

    def transition(self, episode: Episode, expected: Iterable[EpisodeStatus]) -> None:
        with self._lock:
            path = self._path(episode.episode_id)
            stored = self._read(path) if path.exists() else None
            if stored is None:
                raise NotFoundError(f"Episode {episode.episode_id} not found")
            _check_transition(stored, expected)
            self._write(episode)

    def list_for_strategy(
        self,
        topic_id: str,
        strategy_version: int,
        statuses: Iterable[EpisodeStatus] | None = None,
        limit: int | None = None,
    ) -> list[Episode]:
        return _filter_for_strategy(
            self._load_all(), topic_id, strategy_version, statuses, limit
        )

    def list_by_status(self, status: EpisodeStatus) -> list[Episode]:
        return [ep for ep in self._load_all() if ep.status == status]

    def count_by_version(self, topic_id: str) -> dict[int, int]:
        return _count_by_version(self._load_all(), topic_id)

