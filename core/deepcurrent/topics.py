"""Topic registry.

Topics own strategies and episodes. The registry only answers "does
this topic exist" for the rest of the engine; topic CRUD beyond that
belongs to the host application.
"""

from __future__ import annotations

import json
import logging
import threading
from datetime import UTC, datetime
from pathlib import Path
from uuid import uuid4

from pydantic import BaseModel, Field

from deepcurrent.errors import NotFoundError

logger = logging.getLogger(__name__)


class Topic(BaseModel):
    """A research subject."""

    topic_id: str = Field(default_factory=lambda: uuid4().hex[:12])
    title: str
    description: str | None = None
    user_id: str | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class TopicRegistry:
    """Thread-safe topic registry, optionally persisted to {storage_path}/topics.json."""

    def __init__(self, storage_path: Path | str | None = None) -> None:
        self._file = Path(storage_path) / "topics.json" if storage_path else None
        self._topics: dict[str, Topic] = {}
        self._lock = threading.Lock()
        self._load()

    def _load(self) -> None:
        if self._file is None or not self._file.exists():
            return
        data = json.loads(self._file.read_text(encoding="utf-8"))
        for item in data:
            topic = Topic.model_validate(item)
            self._topics[topic.topic_id] = topic
        logger.debug(f"Loaded {len(self._topics)} topics from {self._file}")

    def _save(self) -> None:
        if self._file is None:
            return
        self._file.parent.mkdir(parents=True, exist_ok=True)
        content = json.dumps(
            [t.model_dump(mode="json") for t in self._topics.values()], indent=2
        )
        self._file.write_text(content, encoding="utf-8")

    def create_topic(
        self,
        title: str,
        description: str | None = None,
        user_id: str | None = None,
    ) -> Topic:
        if not title.strip():
            raise ValueError("Topic title must not be empty")
        topic = Topic(title=title.strip(), description=description, user_id=user_id)
        with self._lock:
            self._topics[topic.topic_id] = topic
            self._save()
        logger.info(f"Created topic {topic.topic_id} ({topic.title!r})")
        return topic

    def get_topic(self, topic_id: str) -> Topic:
        with self._lock:
            topic = self._topics.get(topic_id)
        if topic is None:
            raise NotFoundError(f"Topic {topic_id} not found")
        return topic

    def exists(self, topic_id: str) -> bool:
        with self._lock:
            return topic_id in self._topics

    def list_topics(self) -> list[Topic]:
        with self._lock:
            return sorted(self._topics.values(), key=lambda t: t.created_at)
