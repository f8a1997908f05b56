"""Error taxonomy for the strategy engine.

- NotFoundError: a referenced topic, episode or strategy does not exist
- InvalidStateError: an illegal lifecycle transition was attempted
- VersionConflictError: a topic's strategy versions changed between read and write
- InvalidResultError: an agent result violates episode invariants

"Not enough data" is a regular EvolutionDecision, never an exception.
"""

from __future__ import annotations


class StrategyEngineError(Exception):
    """Base class for all strategy engine errors."""


class NotFoundError(StrategyEngineError):
    """A referenced record does not exist."""


class InvalidStateError(StrategyEngineError):
    """An illegal state transition was attempted."""


class VersionConflictError(StrategyEngineError):
    """The topic's strategy versions changed between read and write."""

    def __init__(
        self,
        topic_id: str,
        expected: int,
        actual: int,
        reason: str | None = None,
    ) -> None:
        self.topic_id = topic_id
        self.expected = expected
        self.actual = actual
        self.reason = reason
        detail = reason or f"expected max version {expected}, found {actual}"
        super().__init__(f"Strategy version conflict for topic {topic_id}: {detail}")


class InvalidResultError(StrategyEngineError, ValueError):
    """An episode result is internally inconsistent."""
