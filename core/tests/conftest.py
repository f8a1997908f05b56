"""
Shared fixtures for core tests.

This module provides reusable pytest fixtures to reduce
code duplication in test files.
"""

import os
from typing import Callable

import pytest

from deepcurrent.config import EngineConfig
from deepcurrent.engine import StrategyEngine, build_engine
from deepcurrent.memory.episode import EpisodeResult, SourceRef
from deepcurrent.runtime.context import StrategyRuntimeContext


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep DEEPCURRENT_* variables from the developer's shell out of tests."""
    for name in list(os.environ):
        if name.startswith("DEEPCURRENT_"):
            monkeypatch.delenv(name)


@pytest.fixture
def engine() -> StrategyEngine:
    """Create a fresh in-memory engine for testing."""
    return build_engine(EngineConfig())


@pytest.fixture
def make_result() -> Callable[..., EpisodeResult]:
    """
    Factory fixture to create agent results.

    Returns:
        A function that takes (returned, saved, followups, tool_usage) and
        returns an EpisodeResult with `saved` of the `returned` sources kept.
    """

    def _make_result(
        returned: int = 10,
        saved: int = 5,
        followups: int = 2,
        tool_usage: dict[str, int] | None = None,
    ) -> EpisodeResult:
        sources = [
            SourceRef(url=f"https://news.example.com/{i}", source="linkup") for i in range(returned)
        ]
        return EpisodeResult(
            sources_returned=sources,
            sources_saved=sources[:saved],
            follow_up_count=followups,
            tool_usage=tool_usage or {},
        )

    return _make_result


@pytest.fixture
def make_runner(make_result):
    """
    Factory fixture to create agent runners.

    The returned runner records every context it was called with on
    its `calls` attribute.
    """

    def _make_runner(**result_kwargs):
        calls: list[StrategyRuntimeContext] = []

        async def runner(query: str, context: StrategyRuntimeContext) -> EpisodeResult:
            calls.append(context)
            return make_result(**result_kwargs)

        runner.calls = calls
        return runner

    return _make_runner
