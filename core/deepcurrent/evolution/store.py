"""Strategy Store - versioned strategies with A/B rollout.

The StrategyStore maintains, per topic:
- An append-only list of strategy versions (never deleted)
- Lifecycle state (candidate / active / archived) and rollout weights
- The evolution log describing every transition

Invariant: the rollout percentages of all non-archived versions of a
topic sum to 100 after every write made through the rebalancing paths
(create_initial, create_candidate with rebalance, promote).

Writes are optimistic. The next version number is computed from the
last-known max version, and rebalancing writes also carry the lifecycle
state they were computed from. The backend rejects the write with
VersionConflictError if another writer changed either in the meantime.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Iterable

from deepcurrent.errors import NotFoundError, VersionConflictError
from deepcurrent.evolution.backend import StrategyBackend, lifecycle_state
from deepcurrent.evolution.config import (
    StrategyConfig,
    StrategyEvolutionLog,
    StrategyPayload,
    StrategyStatus,
    StrategyUpdate,
)

logger = logging.getLogger(__name__)

FULL_ROLLOUT = 100
PROMOTE_ATTEMPTS = 3


def _check_rollout_sum(topic_id: str, versions: Iterable[StrategyConfig]) -> None:
    live = [v for v in versions if v.is_live]
    total = sum(v.rollout_percentage for v in live)
    if live and total != FULL_ROLLOUT:
        raise ValueError(
            f"Rollout for topic {topic_id} would sum to {total}%, expected {FULL_ROLLOUT}%"
        )


class StrategyStore:
    """Versioned strategy records and their selection.

    Usage:
        store = StrategyStore(backend)

        await store.create_initial(topic_id)
        strategy = await store.get_active_strategy(topic_id)

        candidate = await store.create_candidate(
            topic_id, parent_version=1, new_config=payload, rollout_percentage=20
        )
        await store.promote(topic_id, candidate.version)
    """

    def __init__(self, backend: StrategyBackend) -> None:
        self._backend = backend

    @property
    def backend(self) -> StrategyBackend:
        return self._backend

    async def list_strategies(self, topic_id: str) -> list[StrategyConfig]:
        """All versions of a topic, oldest first."""
        return await asyncio.to_thread(self._backend.list_versions, topic_id)

    async def get_strategy(self, topic_id: str, version: int) -> StrategyConfig:
        config = await asyncio.to_thread(self._backend.get, topic_id, version)
        if config is None:
            raise NotFoundError(f"Strategy version {version} not found for topic {topic_id}")
        return config

    async def create_initial(
        self,
        topic_id: str,
        payload: StrategyPayload | None = None,
    ) -> StrategyConfig:
        """Create version 1 of a topic: active at full rollout."""
        config = StrategyConfig(
            topic_id=topic_id,
            version=1,
            status=StrategyStatus.ACTIVE,
            rollout_percentage=FULL_ROLLOUT,
            parent_version=None,
            config=payload or StrategyPayload(),
        )
        stored = await asyncio.to_thread(self._backend.insert, config, 0)
        logger.info(f"Created initial strategy v1 for topic {topic_id}")
        return stored

    async def get_active_strategy(
        self,
        topic_id: str,
        rng: random.Random | None = None,
    ) -> StrategyConfig:
        """Pick the strategy for a new episode.

        One weighted draw across the topic's non-archived versions,
        weighted by rollout percentage. The caller must keep the version
        on the episode; redrawing mid-episode is not allowed.
        """
        versions = await self.list_strategies(topic_id)
        live = [v for v in versions if v.is_live]
        if not live:
            raise NotFoundError(f"No live strategy for topic {topic_id}")

        weights = [v.rollout_percentage for v in live]
        if sum(weights) <= 0:
            active = [v for v in live if v.status == StrategyStatus.ACTIVE]
            return max(active or live, key=lambda v: v.version)

        chooser = rng or random
        return chooser.choices(live, weights=weights, k=1)[0]

    async def create_candidate(
        self,
        topic_id: str,
        parent_version: int,
        new_config: StrategyPayload,
        rollout_percentage: int,
        rebalance: bool = True,
    ) -> StrategyConfig:
        """Insert the next version as a candidate derived from parent_version.

        With rebalance (default) the active version is lowered to
        100 - rollout_percentage and any other live candidates are
        archived in the same write, keeping the rollout sum at 100.
        Without it the caller must adjust rollouts via set_rollout.

        Raises:
            NotFoundError: unknown parent version
            VersionConflictError: another version was created, or the
                lifecycle changed, concurrently
        """
        if not 0 <= rollout_percentage <= FULL_ROLLOUT:
            raise ValueError("rollout_percentage must be between 0 and 100")

        versions = await self.list_strategies(topic_id)
        by_version = {v.version: v for v in versions}
        if parent_version not in by_version:
            raise NotFoundError(
                f"Strategy version {parent_version} not found for topic {topic_id}"
            )

        expected_max = max(by_version)
        candidate = StrategyConfig(
            topic_id=topic_id,
            version=expected_max + 1,
            status=StrategyStatus.CANDIDATE,
            rollout_percentage=rollout_percentage,
            parent_version=parent_version,
            config=new_config,
        )

        updates: list[StrategyUpdate] = []
        expected_state = None
        if rebalance:
            expected_state = lifecycle_state(versions)
            updates = self._rebalance_updates(versions, parent_version, rollout_percentage)
            after = {v.version: v for v in versions}
            for update in updates:
                changes = {
                    "status": update.status,
                    "rollout_percentage": update.rollout_percentage,
                }
                after[update.version] = after[update.version].model_copy(
                    update={k: v for k, v in changes.items() if v is not None}
                )
            after[candidate.version] = candidate
            _check_rollout_sum(topic_id, after.values())

        stored = await asyncio.to_thread(
            self._backend.insert, candidate, expected_max, updates, expected_state
        )
        logger.info(
            f"Created candidate strategy v{stored.version} for topic {topic_id} "
            f"(parent v{parent_version}, rollout {rollout_percentage}%)"
        )
        return stored

    @staticmethod
    def _rebalance_updates(
        versions: list[StrategyConfig],
        parent_version: int,
        rollout_percentage: int,
    ) -> list[StrategyUpdate]:
        """Updates giving the active version the remaining share.

        Other live candidates are superseded by the new trial and
        archived. If the topic has no active version the parent takes
        that role.
        """
        live = [v for v in versions if v.is_live]
        active = [v for v in live if v.status == StrategyStatus.ACTIVE]
        if active:
            keeper = max(active, key=lambda v: v.version)
        else:
            keeper = next(v for v in versions if v.version == parent_version)

        updates = [
            StrategyUpdate(
                version=keeper.version,
                status=StrategyStatus.ACTIVE,
                rollout_percentage=FULL_ROLLOUT - rollout_percentage,
            )
        ]
        for v in live:
            if v.version != keeper.version:
                updates.append(
                    StrategyUpdate(version=v.version, status=StrategyStatus.ARCHIVED)
                )
        return updates

    async def promote(self, topic_id: str, version: int) -> StrategyConfig:
        """Make version the sole active strategy at 100%; archive every other live version.

        Re-reads and retries if the topic's versions change while the
        promotion is computed.

        Raises:
            NotFoundError: unknown version
            VersionConflictError: the versions kept changing on every attempt
        """
        for attempt in range(1, PROMOTE_ATTEMPTS + 1):
            try:
                promoted = await self._promote_once(topic_id, version)
            except VersionConflictError as e:
                if attempt >= PROMOTE_ATTEMPTS:
                    raise
                logger.warning(f"{e}; retrying promotion of v{version}")
                continue
            logger.info(f"Promoted strategy v{version} for topic {topic_id}")
            return promoted
        raise VersionConflictError(topic_id, version, version)

    async def _promote_once(self, topic_id: str, version: int) -> StrategyConfig:
        versions = await self.list_strategies(topic_id)
        if not any(v.version == version for v in versions):
            raise NotFoundError(f"Strategy version {version} not found for topic {topic_id}")

        updates = [
            StrategyUpdate(
                version=version,
                status=StrategyStatus.ACTIVE,
                rollout_percentage=FULL_ROLLOUT,
            )
        ]
        for v in versions:
            if v.version != version and v.is_live:
                updates.append(StrategyUpdate(version=v.version, status=StrategyStatus.ARCHIVED))

        after = await asyncio.to_thread(
            self._backend.apply_updates, topic_id, updates, lifecycle_state(versions)
        )
        _check_rollout_sum(topic_id, after)
        return next(v for v in after if v.version == version)

    async def set_rollout(self, topic_id: str, version: int, rollout_percentage: int) -> StrategyConfig:
        """Change one version's rollout. The caller keeps the sum at 100."""
        await self.get_strategy(topic_id, version)
        after = await asyncio.to_thread(
            self._backend.apply_updates,
            topic_id,
            [StrategyUpdate(version=version, rollout_percentage=rollout_percentage)],
        )
        return next(v for v in after if v.version == version)

    async def archive(self, topic_id: str, version: int) -> StrategyConfig:
        """Archive one version. The caller keeps the sum at 100."""
        await self.get_strategy(topic_id, version)
        after = await asyncio.to_thread(
            self._backend.apply_updates,
            topic_id,
            [StrategyUpdate(version=version, status=StrategyStatus.ARCHIVED)],
        )
        logger.info(f"Archived strategy v{version} for topic {topic_id}")
        return next(v for v in after if v.version == version)

    # ------------------------------------------------------------------
    # Evolution log
    # ------------------------------------------------------------------
    async def record_evolution(self, entry: StrategyEvolutionLog) -> StrategyEvolutionLog:
        await asyncio.to_thread(self._backend.append_log, entry)
        return entry

    async def list_evolution_logs(
        self,
        topic_id: str,
        limit: int | None = None,
    ) -> list[StrategyEvolutionLog]:
        """Evolution log entries, newest first."""
        logs = await self.evolution_timeline(topic_id)
        logs.reverse()
        return logs[:limit] if limit is not None else logs

    async def latest_evolution_log(self, topic_id: str) -> StrategyEvolutionLog | None:
        logs = await self.list_evolution_logs(topic_id, limit=1)
        return logs[0] if logs else None

    async def evolution_timeline(self, topic_id: str) -> list[StrategyEvolutionLog]:
        """Evolution log entries, oldest first."""
        logs = await asyncio.to_thread(self._backend.list_logs, topic_id)
        return sorted(logs, key=lambda log: log.created_at)

    async def evolution_log_for_transition(
        self,
        topic_id: str,
        from_version: int,
        to_version: int,
    ) -> StrategyEvolutionLog | None:
        for log in await self.evolution_timeline(topic_id):
            if log.from_version == from_version and log.to_version == to_version:
                return log
        return None
