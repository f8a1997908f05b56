"""Unit tests for the evolution policy."""

import pytest

from deepcurrent.evolution.config import SearchDepth, StrategyPayload, TimeWindow
from deepcurrent.evolution.metrics import StrategyMetrics
from deepcurrent.evolution.policy import (
    EpisodeRecommendation,
    EvolutionReason,
    EvolutionThresholds,
    StrategyMutation,
    analyze_episode,
    decide,
    reduce_followups,
)
from deepcurrent.memory.episode import Episode, EpisodeStatus, SourceRef


def _metrics(
    sample_size=10,
    returned=100,
    saved=60,
    avg_followups=3.0,
    primary_tool_usage=0.5,
):
    return StrategyMetrics(
        topic_id="t1",
        strategy_version=1,
        sample_size=sample_size,
        completed_count=sample_size,
        total_sources_returned=returned,
        total_sources_saved=saved,
        save_rate=saved / returned if returned else 0.0,
        avg_followups=avg_followups,
        primary_tool="senso",
        primary_tool_usage=primary_tool_usage,
    )


class TestDecide:
    def test_insufficient_data(self):
        # 3 episodes at a 0.1 save rate on a fresh version
        decision = decide(_metrics(sample_size=3, returned=30, saved=3), EvolutionThresholds())

        assert decision.should_evolve is False
        assert decision.reason == EvolutionReason.INSUFFICIENT_DATA
        assert decision.reason.value == "insufficient data"
        assert decision.mutation is None

    def test_insufficient_data_short_circuits_extremes(self):
        decision = decide(
            _metrics(sample_size=4, returned=50, saved=0, avg_followups=40, primary_tool_usage=0.0),
            EvolutionThresholds(),
        )

        assert decision.should_evolve is False
        assert decision.reason == EvolutionReason.INSUFFICIENT_DATA

    def test_low_save_rate(self):
        decision = decide(_metrics(sample_size=5, returned=50, saved=10), EvolutionThresholds())

        assert decision.should_evolve is True
        assert decision.reason.value == "low save rate"
        assert decision.mutation == StrategyMutation(
            search_depth=SearchDepth.DEEP, widen_time_window=True
        )
        assert "20%" in decision.detail

    def test_excessive_followups(self):
        decision = decide(_metrics(saved=60, avg_followups=9.0), EvolutionThresholds())

        assert decision.should_evolve is True
        assert decision.reason.value == "excessive followups"
        assert decision.mutation.search_depth == SearchDepth.SHALLOW
        assert decision.mutation.reduce_max_followups is True

    def test_followups_at_threshold_do_not_evolve(self):
        decision = decide(_metrics(avg_followups=8.0), EvolutionThresholds())

        assert decision.should_evolve is False

    def test_low_save_rate_wins_over_followups(self):
        decision = decide(_metrics(saved=10, avg_followups=12.0), EvolutionThresholds())

        assert decision.reason == EvolutionReason.LOW_SAVE_RATE

    def test_low_primary_tool_usage(self):
        decision = decide(_metrics(primary_tool_usage=0.1), EvolutionThresholds())

        assert decision.should_evolve is True
        assert decision.reason.value == "low primary-tool usage"
        assert decision.mutation == StrategyMutation(senso_first=True)

    def test_missing_tool_data_skips_usage_rule(self):
        decision = decide(_metrics(primary_tool_usage=None), EvolutionThresholds())

        assert decision.should_evolve is False
        assert decision.reason == EvolutionReason.PERFORMANCE_ACCEPTABLE

    def test_no_sources_skips_save_rate_rule(self):
        decision = decide(_metrics(returned=0, saved=0), EvolutionThresholds())

        assert decision.reason == EvolutionReason.PERFORMANCE_ACCEPTABLE

    def test_performance_acceptable(self):
        decision = decide(_metrics(saved=70, avg_followups=3.0), EvolutionThresholds())

        assert decision.should_evolve is False
        assert decision.reason.value == "performance acceptable"

    def test_custom_thresholds(self):
        strict = EvolutionThresholds(min_episodes=2, low_save_rate=0.8)

        decision = decide(_metrics(sample_size=2, saved=70), strict)

        assert decision.reason == EvolutionReason.LOW_SAVE_RATE

    def test_deterministic(self):
        metrics = _metrics(saved=10)
        thresholds = EvolutionThresholds()

        assert decide(metrics, thresholds) == decide(metrics, thresholds)


class TestStrategyMutation:
    def test_low_save_rate_mutation(self):
        payload = StrategyPayload(time_window=TimeWindow.DAY, max_followups=6)

        mutated = StrategyMutation(search_depth=SearchDepth.DEEP, widen_time_window=True).apply_to(
            payload
        )

        assert mutated.search_depth == SearchDepth.DEEP
        assert mutated.time_window == TimeWindow.WEEK
        assert mutated.max_followups == 6
        assert mutated.summary_templates == payload.summary_templates
        assert payload.search_depth == SearchDepth.STANDARD

    def test_widen_saturates_at_month(self):
        payload = StrategyPayload(time_window=TimeWindow.MONTH)

        mutated = StrategyMutation(widen_time_window=True).apply_to(payload)

        assert mutated.time_window == TimeWindow.MONTH
        assert mutated.to_config_json() == payload.to_config_json()

    def test_reduce_followups(self):
        assert reduce_followups(None) == 3
        assert reduce_followups(8) == 4
        assert reduce_followups(3) == 1
        assert reduce_followups(1) == 1
        assert reduce_followups(0) == 0

    def test_reduce_never_raises_budget(self):
        for budget in range(0, 12):
            mutated = StrategyMutation(reduce_max_followups=True).apply_to(
                StrategyPayload(max_followups=budget)
            )
            assert mutated.max_followups <= budget

    def test_senso_first_leaves_other_fields(self):
        payload = StrategyPayload(enabled_tools=("linkup", "senso"), parallel_searches=True)

        mutated = StrategyMutation(senso_first=True).apply_to(payload)

        assert mutated.senso_first is True
        assert mutated.enabled_tools == ("linkup", "senso")
        assert mutated.parallel_searches is True

    def test_describe(self):
        mutation = StrategyMutation(search_depth=SearchDepth.SHALLOW, reduce_max_followups=True)

        assert mutation.describe() == "searchDepth=shallow, maxFollowups=reduce"
        assert StrategyMutation().describe() == "no changes"


class TestAnalyzeEpisode:
    def _episode(self, status=EpisodeStatus.COMPLETED, returned=4, saved=2, followups=2, error=None):
        sources = [SourceRef(url=f"https://example.com/{i}") for i in range(returned)]
        return Episode(
            topic_id="t1",
            strategy_version=1,
            query="q",
            status=status,
            sources_returned=sources,
            sources_saved=sources[:saved],
            follow_up_count=followups,
            error_message=error,
        )

    def test_failed_episode_recommends_rollback(self):
        analysis = analyze_episode(
            self._episode(status=EpisodeStatus.FAILED, returned=0, saved=0, error="timeout"),
            EvolutionThresholds(),
        )

        assert analysis.failed is True
        assert analysis.recommendation == EpisodeRecommendation.ROLLBACK
        assert "timeout" in analysis.reason

    def test_low_save_rate_recommends_evolve(self):
        analysis = analyze_episode(self._episode(returned=10, saved=1), EvolutionThresholds())

        assert analysis.recommendation == EpisodeRecommendation.EVOLVE
        assert analysis.save_rate == pytest.approx(0.1)

    def test_many_followups_recommends_evolve(self):
        analysis = analyze_episode(self._episode(followups=12), EvolutionThresholds())

        assert analysis.recommendation == EpisodeRecommendation.EVOLVE

    def test_healthy_episode_is_kept(self):
        analysis = analyze_episode(self._episode(), EvolutionThresholds())

        assert analysis.recommendation == EpisodeRecommendation.KEEP
        assert analysis.sources_returned == 4
        assert analysis.sources_saved == 2
