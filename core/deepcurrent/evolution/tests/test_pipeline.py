"""Tests for the evolution orchestrator."""

import pytest

from deepcurrent.errors import NotFoundError, VersionConflictError
from deepcurrent.evolution.backend import InMemoryStrategyBackend
from deepcurrent.evolution.config import (
    SearchDepth,
    StrategyPayload,
    StrategyStatus,
    TimeWindow,
)
from deepcurrent.evolution.metrics import MetricsAggregator
from deepcurrent.evolution.pipeline import EvolutionOrchestrator, EvolutionPhase
from deepcurrent.evolution.policy import EpisodeRecommendation, EvolutionReason
from deepcurrent.evolution.store import StrategyStore
from deepcurrent.memory.backend import InMemoryEpisodeBackend
from deepcurrent.memory.episode import EpisodeResult, SourceRef
from deepcurrent.memory.recorder import EpisodeRecorder
from deepcurrent.topics import TopicRegistry


class RacingStrategyBackend(InMemoryStrategyBackend):
    """Lets a competing writer insert the same version just before the next insert."""

    def __init__(self):
        super().__init__()
        self.race_next_insert = False

    def insert(self, config, expected_max_version, updates=(), expected_state=None):
        if self.race_next_insert:
            self.race_next_insert = False
            competitor = config.model_copy(update={"config": StrategyPayload(parallel_searches=True)})
            super().insert(competitor, expected_max_version, updates, expected_state)
        return super().insert(config, expected_max_version, updates, expected_state)


class AlwaysConflictingBackend(InMemoryStrategyBackend):
    def __init__(self):
        super().__init__()
        self.conflict = False

    def insert(self, config, expected_max_version, updates=(), expected_state=None):
        if self.conflict:
            raise VersionConflictError(config.topic_id, expected_max_version, expected_max_version + 1)
        return super().insert(config, expected_max_version, updates, expected_state)


class Harness:
    def __init__(self, strategies=None, candidate_rollout=20, payload=None):
        self.topics = TopicRegistry()
        self.topic_id = self.topics.create_topic("Semiconductors").topic_id
        self.strategies = strategies or InMemoryStrategyBackend()
        self.episodes = InMemoryEpisodeBackend()
        self.recorder = EpisodeRecorder(self.episodes, self.topics, self.strategies)
        self.store = StrategyStore(self.strategies)
        self.orchestrator = EvolutionOrchestrator(
            self.recorder,
            MetricsAggregator(self.episodes),
            self.store,
            candidate_rollout=candidate_rollout,
        )
        self.payload = payload

    async def init(self):
        await self.store.create_initial(self.topic_id, self.payload)
        return self

    async def finish(self, returned=10, saved=5, followups=2, tool_usage=None, version=1):
        episode = await self.recorder.create_episode(self.topic_id, "q", version)
        await self.recorder.mark_running(episode.episode_id)
        sources = [SourceRef(url=f"https://example.com/{i}") for i in range(returned)]
        await self.recorder.complete_episode(
            episode.episode_id,
            EpisodeResult(
                sources_returned=sources,
                sources_saved=sources[:saved],
                follow_up_count=followups,
                tool_usage=tool_usage or {},
            ),
        )
        return episode.episode_id

    async def finish_many(self, n, **kwargs):
        return [await self.finish(**kwargs) for _ in range(n)]


async def _harness(**kwargs):
    return await Harness(**kwargs).init()


class TestScenarios:
    @pytest.mark.asyncio
    async def test_insufficient_data(self):
        h = await _harness()
        ids = await h.finish_many(3, returned=10, saved=1)

        outcome = await h.orchestrator.process(ids[-1])

        assert outcome.phase == EvolutionPhase.UNCHANGED
        assert outcome.decision.should_evolve is False
        assert outcome.decision.reason.value == "insufficient data"
        assert len(await h.store.list_strategies(h.topic_id)) == 1

    @pytest.mark.asyncio
    async def test_low_save_rate_creates_candidate(self):
        h = await _harness()
        ids = await h.finish_many(5, returned=10, saved=2)

        outcome = await h.orchestrator.process(ids[-1])

        assert outcome.evolved
        assert outcome.decision.reason.value == "low save rate"
        assert outcome.new_version == 2

        strategies = {s.version: s for s in await h.store.list_strategies(h.topic_id)}
        candidate = strategies[2]
        assert candidate.status == StrategyStatus.CANDIDATE
        assert candidate.rollout_percentage == 20
        assert candidate.parent_version == 1
        assert candidate.config.search_depth == SearchDepth.DEEP
        assert candidate.config.time_window == TimeWindow.MONTH
        assert strategies[1].rollout_percentage == 80

    @pytest.mark.asyncio
    async def test_excessive_followups_creates_shallow_candidate(self):
        h = await _harness()
        ids = await h.finish_many(5, returned=10, saved=6, followups=9)

        outcome = await h.orchestrator.process(ids[-1])

        assert outcome.decision.reason.value == "excessive followups"
        candidate = await h.store.get_strategy(h.topic_id, 2)
        assert candidate.config.search_depth == SearchDepth.SHALLOW
        assert candidate.config.max_followups == 3

    @pytest.mark.asyncio
    async def test_healthy_strategy_unchanged(self):
        h = await _harness()
        ids = await h.finish_many(5, returned=10, saved=7, followups=3, tool_usage={"senso": 1})

        outcome = await h.orchestrator.process(ids[-1])

        assert outcome.phase == EvolutionPhase.UNCHANGED
        assert outcome.decision.reason.value == "performance acceptable"
        assert await h.store.list_evolution_logs(h.topic_id) == []

    @pytest.mark.asyncio
    async def test_low_primary_tool_usage(self):
        h = await _harness()
        ids = await h.finish_many(5, returned=10, saved=7, tool_usage={"linkup": 3})

        outcome = await h.orchestrator.process(ids[-1])

        assert outcome.decision.reason == EvolutionReason.LOW_PRIMARY_TOOL_USAGE
        assert (await h.store.get_strategy(h.topic_id, 2)).config.senso_first is True


class TestEvolutionLog:
    @pytest.mark.asyncio
    async def test_log_entry_records_metrics_and_changes(self):
        h = await _harness()
        ids = await h.finish_many(5, returned=10, saved=2)

        outcome = await h.orchestrator.process(ids[-1])

        log = await h.store.latest_evolution_log(h.topic_id)
        assert log.log_id == outcome.log_entry.log_id
        assert (log.from_version, log.to_version) == (1, 2)
        assert log.reason == "low save rate"
        assert log.metrics_snapshot["sample_size"] == 5
        assert log.metrics_snapshot["save_rate"] == pytest.approx(0.2)
        assert log.changes["before"]["searchDepth"] == "standard"
        assert log.changes["after"]["searchDepth"] == "deep"
        assert log.changes["diff"]["timeWindow"] == {"before": "week", "after": "month"}

    @pytest.mark.asyncio
    async def test_candidate_rollout_is_configurable(self):
        h = await _harness(candidate_rollout=30)
        ids = await h.finish_many(5, returned=10, saved=2)

        await h.orchestrator.process(ids[-1])

        strategies = {s.version: s for s in await h.store.list_strategies(h.topic_id)}
        assert strategies[1].rollout_percentage == 70
        assert strategies[2].rollout_percentage == 30

    def test_rollout_must_leave_room_for_active(self):
        h = Harness()
        with pytest.raises(ValueError):
            EvolutionOrchestrator(
                h.recorder, MetricsAggregator(h.episodes), h.store, candidate_rollout=100
            )


class TestSkipGuards:
    @pytest.mark.asyncio
    async def test_running_episode_is_skipped(self):
        h = await _harness()
        episode = await h.recorder.create_episode(h.topic_id, "q", 1)
        await h.recorder.mark_running(episode.episode_id)

        outcome = await h.orchestrator.process(episode.episode_id)

        assert outcome.phase == EvolutionPhase.SKIPPED
        assert "running" in outcome.skip_reason

    @pytest.mark.asyncio
    async def test_trial_in_progress_prevents_double_evolution(self):
        h = await _harness()
        ids = await h.finish_many(6, returned=10, saved=2)

        first = await h.orchestrator.process(ids[-2])
        second = await h.orchestrator.process(ids[-1])

        assert first.evolved
        assert second.phase == EvolutionPhase.SKIPPED
        assert "already in trial" in second.skip_reason
        assert [s.version for s in await h.store.list_strategies(h.topic_id)] == [1, 2]
        assert len(await h.store.list_evolution_logs(h.topic_id)) == 1

    @pytest.mark.asyncio
    async def test_archived_source_version_is_skipped(self):
        h = await _harness()
        ids = await h.finish_many(5, returned=10, saved=2)
        await h.store.create_candidate(h.topic_id, 1, StrategyPayload(senso_first=True), 20)
        await h.store.promote(h.topic_id, 2)

        outcome = await h.orchestrator.process(ids[-1])

        assert outcome.phase == EvolutionPhase.SKIPPED
        assert "archived" in outcome.skip_reason
        assert len(await h.store.list_strategies(h.topic_id)) == 2

    @pytest.mark.asyncio
    async def test_noop_mutation_is_skipped(self):
        h = await _harness(
            payload=StrategyPayload(search_depth=SearchDepth.DEEP, time_window=TimeWindow.MONTH)
        )
        ids = await h.finish_many(5, returned=10, saved=2)

        outcome = await h.orchestrator.process(ids[-1])

        assert outcome.phase == EvolutionPhase.SKIPPED
        assert "changes nothing" in outcome.skip_reason
        assert len(await h.store.list_strategies(h.topic_id)) == 1

    @pytest.mark.asyncio
    async def test_zero_followup_budget_is_never_raised(self):
        h = await _harness(
            payload=StrategyPayload(search_depth=SearchDepth.SHALLOW, max_followups=0)
        )
        ids = await h.finish_many(5, returned=10, saved=6, followups=9)

        outcome = await h.orchestrator.process(ids[-1])

        assert outcome.decision.reason.value == "excessive followups"
        assert outcome.phase == EvolutionPhase.SKIPPED
        strategies = await h.store.list_strategies(h.topic_id)
        assert [s.config.max_followups for s in strategies] == [0]


class TestConflictRetry:
    @pytest.mark.asyncio
    async def test_lost_race_retries_against_fresh_state(self):
        backend = RacingStrategyBackend()
        h = await _harness(strategies=backend)
        ids = await h.finish_many(5, returned=10, saved=2)
        backend.race_next_insert = True

        outcome = await h.orchestrator.process(ids[-1])

        assert outcome.attempts == 2
        assert outcome.phase == EvolutionPhase.SKIPPED
        assert "already in trial" in outcome.skip_reason

        strategies = await h.store.list_strategies(h.topic_id)
        assert [s.version for s in strategies] == [1, 2]
        assert strategies[1].config.parallel_searches is True

    @pytest.mark.asyncio
    async def test_repeated_conflict_propagates_from_process(self):
        backend = AlwaysConflictingBackend()
        h = await _harness(strategies=backend)
        ids = await h.finish_many(5, returned=10, saved=2)
        backend.conflict = True

        with pytest.raises(VersionConflictError):
            await h.orchestrator.process(ids[-1])

    @pytest.mark.asyncio
    async def test_repeated_conflict_is_contained_by_handle(self):
        backend = AlwaysConflictingBackend()
        h = await _harness(strategies=backend)
        ids = await h.finish_many(5, returned=10, saved=2)
        backend.conflict = True

        outcome = await h.orchestrator.handle(ids[-1])

        assert outcome.phase == EvolutionPhase.FAILED
        assert outcome.attempts == 2
        assert "conflict" in outcome.errors[0]


class TestErrorBoundary:
    @pytest.mark.asyncio
    async def test_unknown_episode(self):
        h = await _harness()

        with pytest.raises(NotFoundError):
            await h.orchestrator.process("missing")

        outcome = await h.orchestrator.handle("missing")
        assert outcome.phase == EvolutionPhase.FAILED
        assert outcome.completed_at

    @pytest.mark.asyncio
    async def test_failure_does_not_touch_episode(self):
        backend = AlwaysConflictingBackend()
        h = await _harness(strategies=backend)
        ids = await h.finish_many(5, returned=10, saved=2)
        backend.conflict = True

        await h.orchestrator.handle(ids[-1])

        episode = await h.recorder.get_episode(ids[-1])
        assert episode.is_terminal

    @pytest.mark.asyncio
    async def test_failed_episode_analysis(self):
        h = await _harness()
        episode = await h.recorder.create_episode(h.topic_id, "q", 1)
        await h.recorder.fail_episode(episode.episode_id, "agent crashed")

        outcome = await h.orchestrator.process(episode.episode_id)

        assert outcome.analysis.recommendation == EpisodeRecommendation.ROLLBACK
        assert outcome.phase == EvolutionPhase.UNCHANGED
