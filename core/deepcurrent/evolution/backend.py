"""Strategy Backend Protocol and Implementations.

Strategy versions per topic form an append-only, versioned log. Writes
are compare-and-swap: an insert names the topic's max version it was
computed against, and any write may also name the lifecycle state
(status and rollout of every version) it was computed from. A mismatch
inside the critical section raises VersionConflictError.

- StrategyBackend: Protocol for all backends
- InMemoryStrategyBackend: Process-local backend
- FileStrategyBackend: JSON snapshot per topic plus a JSONL evolution log
"""

from __future__ import annotations

import json
import logging
import threading
from collections.abc import Iterable, Mapping
from datetime import UTC, datetime
from pathlib import Path
from typing import Protocol

from deepcurrent.errors import NotFoundError, VersionConflictError
from deepcurrent.evolution.config import (
    StrategyConfig,
    StrategyEvolutionLog,
    StrategyStatus,
    StrategyUpdate,
)

logger = logging.getLogger(__name__)

LifecycleState = Mapping[int, tuple[StrategyStatus, int]]


class StrategyBackend(Protocol):
    """Protocol for strategy and evolution-log storage."""

    def list_versions(self, topic_id: str) -> list[StrategyConfig]:
        """All versions for a topic, oldest first."""
        ...

    def get(self, topic_id: str, version: int) -> StrategyConfig | None:
        """Get one version."""
        ...

    def insert(
        self,
        config: StrategyConfig,
        expected_max_version: int,
        updates: Iterable[StrategyUpdate] = (),
        expected_state: LifecycleState | None = None,
    ) -> StrategyConfig:
        """Insert a new version if the topic's max version is still expected_max_version.

        The updates are applied to existing versions in the same critical
        section. If expected_state is given, the current lifecycle state
        must match it too. Raises VersionConflictError otherwise.
        """
        ...

    def apply_updates(
        self,
        topic_id: str,
        updates: Iterable[StrategyUpdate],
        expected_state: LifecycleState | None = None,
    ) -> list[StrategyConfig]:
        """Atomically apply status/rollout updates. Returns all versions afterwards.

        Raises VersionConflictError if expected_state no longer matches.
        """
        ...

    def append_log(self, entry: StrategyEvolutionLog) -> None:
        """Append an evolution log entry."""
        ...

    def list_logs(self, topic_id: str) -> list[StrategyEvolutionLog]:
        """Evolution log entries for a topic, oldest first."""
        ...


def lifecycle_state(versions: Iterable[StrategyConfig]) -> dict[int, tuple[StrategyStatus, int]]:
    """Status and rollout per version; the precondition for state-dependent writes."""
    return {v.version: (v.status, v.rollout_percentage) for v in versions}


def _max_version(versions: Iterable[StrategyConfig]) -> int:
    return max((v.version for v in versions), default=0)


def _check_state(
    versions: dict[int, StrategyConfig],
    topic_id: str,
    expected_state: LifecycleState | None,
) -> None:
    if expected_state is None:
        return
    if lifecycle_state(versions.values()) != dict(expected_state):
        current = _max_version(versions.values())
        raise VersionConflictError(
            topic_id,
            current,
            current,
            reason="version lifecycle changed since it was read",
        )


def _apply(
    versions: dict[int, StrategyConfig],
    topic_id: str,
    updates: Iterable[StrategyUpdate],
) -> None:
    now = datetime.now(UTC)
    for update in updates:
        current = versions.get(update.version)
        if current is None:
            raise NotFoundError(f"Strategy version {update.version} not found for topic {topic_id}")
        changes: dict = {"updated_at": now}
        if update.status is not None:
            changes["status"] = update.status
        if update.rollout_percentage is not None:
            changes["rollout_percentage"] = update.rollout_percentage
        versions[update.version] = current.model_copy(update=changes)


def _check_insert(
    versions: dict[int, StrategyConfig],
    config: StrategyConfig,
    expected_max_version: int,
) -> None:
    actual = _max_version(versions.values())
    if actual != expected_max_version:
        raise VersionConflictError(config.topic_id, expected_max_version, actual)
    if config.version in versions or config.version <= actual:
        raise VersionConflictError(config.topic_id, config.version - 1, actual)


class InMemoryStrategyBackend:
    """In-memory strategy backend. Not persistent."""

    def __init__(self) -> None:
        self._versions: dict[str, dict[int, StrategyConfig]] = {}
        self._logs: list[StrategyEvolutionLog] = []
        self._lock = threading.Lock()

    def list_versions(self, topic_id: str) -> list[StrategyConfig]:
        with self._lock:
            versions = self._versions.get(topic_id, {})
            return [versions[v].model_copy() for v in sorted(versions)]

    def get(self, topic_id: str, version: int) -> StrategyConfig | None:
        with self._lock:
            config = self._versions.get(topic_id, {}).get(version)
            return config.model_copy() if config else None

    def insert(
        self,
        config: StrategyConfig,
        expected_max_version: int,
        updates: Iterable[StrategyUpdate] = (),
        expected_state: LifecycleState | None = None,
    ) -> StrategyConfig:
        with self._lock:
            versions = dict(self._versions.get(config.topic_id, {}))
            _check_insert(versions, config, expected_max_version)
            _check_state(versions, config.topic_id, expected_state)
            _apply(versions, config.topic_id, updates)
            versions[config.version] = config.model_copy()
            self._versions[config.topic_id] = versions
            return config.model_copy()

    def apply_updates(
        self,
        topic_id: str,
        updates: Iterable[StrategyUpdate],
        expected_state: LifecycleState | None = None,
    ) -> list[StrategyConfig]:
        with self._lock:
            versions = dict(self._versions.get(topic_id, {}))
            _check_state(versions, topic_id, expected_state)
            _apply(versions, topic_id, updates)
            self._versions[topic_id] = versions
            return [versions[v].model_copy() for v in sorted(versions)]

    def append_log(self, entry: StrategyEvolutionLog) -> None:
        with self._lock:
            self._logs.append(entry.model_copy())

    def list_logs(self, topic_id: str) -> list[StrategyEvolutionLog]:
        with self._lock:
            return [log.model_copy() for log in self._logs if log.topic_id == topic_id]


class FileStrategyBackend:
    """File-backed strategy storage.

    Storage layout:
        {base_path}/
          strategies/
            {topic_id}.json       # All versions of a topic
          evolution_log.jsonl     # Evolution log (append-only)
    """

    def __init__(self, base_path: Path | str) -> None:
        self._base_path = Path(base_path)
        self._strategies_dir = self._base_path / "strategies"
        self._log_file = self._base_path / "evolution_log.jsonl"
        self._lock = threading.Lock()

    def ensure_dirs(self) -> None:
        """Create storage directories if they don't exist."""
        self._strategies_dir.mkdir(parents=True, exist_ok=True)

    def _topic_file(self, topic_id: str) -> Path:
        return self._strategies_dir / f"{topic_id}.json"

    def _read_topic(self, topic_id: str) -> dict[int, StrategyConfig]:
        path = self._topic_file(topic_id)
        if not path.exists():
            return {}
        data = json.loads(path.read_text(encoding="utf-8"))
        configs = [StrategyConfig.model_validate(item) for item in data]
        return {c.version: c for c in configs}

    def _write_topic(self, topic_id: str, versions: dict[int, StrategyConfig]) -> None:
        self.ensure_dirs()
        content = json.dumps(
            [versions[v].model_dump(mode="json") for v in sorted(versions)], indent=2
        )
        # write-then-rename keeps the snapshot readable by concurrent readers
        tmp = self._topic_file(topic_id).with_suffix(".json.tmp")
        tmp.write_text(content, encoding="utf-8")
        tmp.replace(self._topic_file(topic_id))

    def list_versions(self, topic_id: str) -> list[StrategyConfig]:
        with self._lock:
            versions = self._read_topic(topic_id)
        return [versions[v] for v in sorted(versions)]

    def get(self, topic_id: str, version: int) -> StrategyConfig | None:
        with self._lock:
            return self._read_topic(topic_id).get(version)

    def insert(
        self,
        config: StrategyConfig,
        expected_max_version: int,
        updates: Iterable[StrategyUpdate] = (),
        expected_state: LifecycleState | None = None,
    ) -> StrategyConfig:
        with self._lock:
            versions = self._read_topic(config.topic_id)
            _check_insert(versions, config, expected_max_version)
            _check_state(versions, config.topic_id, expected_state)
            _apply(versions, config.topic_id, updates)
            versions[config.version] = config
            self._write_topic(config.topic_id, versions)
        return config

    def apply_updates(
        self,
        topic_id: str,
        updates: Iterable[StrategyUpdate],
        expected_state: LifecycleState | None = None,
    ) -> list[StrategyConfig]:
        with self._lock:
            versions = self._read_topic(topic_id)
            _check_state(versions, topic_id, expected_state)
            _apply(versions, topic_id, updates)
            self._write_topic(topic_id, versions)
        return [versions[v] for v in sorted(versions)]

    def append_log(self, entry: StrategyEvolutionLog) -> None:
        with self._lock:
            self._base_path.mkdir(parents=True, exist_ok=True)
            with open(self._log_file, "a", encoding="utf-8") as f:
                f.write(entry.model_dump_json() + "\n")

    def list_logs(self, topic_id: str) -> list[StrategyEvolutionLog]:
        if not self._log_file.exists():
            return []
        logs = []
        with open(self._log_file, encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    entry = StrategyEvolutionLog.model_validate_json(line)
                except ValueError as e:
                    logger.warning(f"Failed to parse evolution log entry: {e}")
                    continue
                if entry.topic_id == topic_id:
                    logs.append(entry)
        return logs
