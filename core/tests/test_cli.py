"""Tests for the deepcurrent CLI."""

import asyncio
import tempfile
import time

import pytest

from deepcurrent.cli import main
from deepcurrent.evolution.backend import FileStrategyBackend
from deepcurrent.evolution.config import StrategyEvolutionLog, StrategyPayload, StrategyStatus
from deepcurrent.evolution.store import StrategyStore
from deepcurrent.memory.backend import FileEpisodeBackend
from deepcurrent.memory.episode import EpisodeStatus
from deepcurrent.memory.recorder import EpisodeRecorder
from deepcurrent.topics import TopicRegistry


@pytest.fixture
def storage():
    with tempfile.TemporaryDirectory() as tmpdir:
        yield tmpdir


def _create_topic(storage, capsys):
    assert main(["--storage", storage, "topic-create", "AI chips"]) == 0
    capsys.readouterr()
    return TopicRegistry(storage).list_topics()[0].topic_id


class TestTopicCommands:
    def test_topic_create_and_list(self, storage, capsys):
        assert main(["--storage", storage, "topic-create", "AI chips", "-d", "HBM"]) == 0
        created = capsys.readouterr().out
        assert "Created topic" in created
        assert "Strategy v1 (active, 100%)" in created

        assert main(["--storage", storage, "topics"]) == 0
        assert "AI chips" in capsys.readouterr().out

    def test_empty_title(self, storage, capsys):
        assert main(["--storage", storage, "topic-create", " "]) == 1
        assert "must not be empty" in capsys.readouterr().out

    def test_storage_from_environment(self, storage, capsys, monkeypatch):
        monkeypatch.setenv("DEEPCURRENT_STORAGE_PATH", storage)

        assert main(["topic-create", "AI chips"]) == 0
        assert len(TopicRegistry(storage).list_topics()) == 1

    def test_missing_storage(self, capsys):
        assert main(["topics"]) == 1
        assert "No storage directory" in capsys.readouterr().out

    def test_bad_configuration(self, storage, capsys, monkeypatch):
        monkeypatch.setenv("DEEPCURRENT_WINDOW_SIZE", "lots")

        assert main(["--storage", storage, "topics"]) == 1
        assert "DEEPCURRENT_WINDOW_SIZE" in capsys.readouterr().out


class TestStrategyCommands:
    def test_strategies(self, storage, capsys):
        topic_id = _create_topic(storage, capsys)

        assert main(["--storage", storage, "strategies", topic_id]) == 0
        out = capsys.readouterr().out
        assert "v1" in out
        assert "active" in out
        assert "100%" in out

    def test_strategies_unknown_topic(self, storage, capsys):
        assert main(["--storage", storage, "strategies", "missing"]) == 1

    def test_metrics(self, storage, capsys):
        topic_id = _create_topic(storage, capsys)

        assert main(["--storage", storage, "metrics", topic_id, "1", "--window", "5"]) == 0
        out = capsys.readouterr().out
        assert "last 5 finished episodes" in out
        assert "Episodes:       0" in out

    def test_metrics_unknown_version(self, storage, capsys):
        topic_id = _create_topic(storage, capsys)

        assert main(["--storage", storage, "metrics", topic_id, "4"]) == 1

    def test_evolutions(self, storage, capsys):
        topic_id = _create_topic(storage, capsys)
        before = StrategyPayload()
        after = StrategyPayload(senso_first=True)
        asyncio.run(
            StrategyStore(FileStrategyBackend(storage)).record_evolution(
                StrategyEvolutionLog(
                    topic_id=topic_id,
                    from_version=1,
                    to_version=2,
                    reason="low primary-tool usage",
                    detail="senso used in 0% of episodes, below 20%",
                    changes={"diff": before.diff(after)},
                )
            )
        )

        assert main(["--storage", storage, "evolutions", topic_id, "--limit", "5"]) == 0
        out = capsys.readouterr().out
        assert "v1 -> v2  low primary-tool usage" in out
        assert "sensoFirst: False -> True" in out

    def test_evolutions_empty(self, storage, capsys):
        topic_id = _create_topic(storage, capsys)

        assert main(["--storage", storage, "evolutions", topic_id]) == 0
        assert "No evolutions recorded" in capsys.readouterr().out

    def test_promote(self, storage, capsys):
        topic_id = _create_topic(storage, capsys)
        store = StrategyStore(FileStrategyBackend(storage))
        asyncio.run(store.create_candidate(topic_id, 1, StrategyPayload(senso_first=True), 20))

        assert main(["--storage", storage, "promote", topic_id, "2"]) == 0

        strategies = asyncio.run(store.list_strategies(topic_id))
        assert strategies[0].status == StrategyStatus.ARCHIVED
        assert strategies[1].status == StrategyStatus.ACTIVE
        assert strategies[1].rollout_percentage == 100

    def test_promote_unknown_version(self, storage, capsys):
        topic_id = _create_topic(storage, capsys)

        assert main(["--storage", storage, "promote", topic_id, "3"]) == 1

    def test_sweep(self, storage, capsys):
        topic_id = _create_topic(storage, capsys)
        recorder = EpisodeRecorder(
            FileEpisodeBackend(storage), TopicRegistry(storage), FileStrategyBackend(storage)
        )

        async def start_episode():
            episode = await recorder.create_episode(topic_id, "q", 1)
            await recorder.mark_running(episode.episode_id)
            return episode.episode_id

        episode_id = asyncio.run(start_episode())
        time.sleep(0.05)

        assert main(["--storage", storage, "sweep", "--ttl", "0.01"]) == 0
        assert "Swept 1 stale running episodes" in capsys.readouterr().out
        assert FileEpisodeBackend(storage).get(episode_id).status == EpisodeStatus.FAILED
