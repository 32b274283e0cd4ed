from __future__ import annotations

from collections import defaultdict, deque
import json
import logging
from threading import Lock
from typing import Deque, Protocol

import redis
from redis.exceptions import RedisError

from app.core.config import Settings
from app.core.exceptions import QueuePublishError

logger = logging.getLogger(__name__)


class QueuePublisher(Protocol):
    def publish(self, queue_name: str, message: dict) -> None: ...


class RedisQueuePublisher:
    """Redis list used as a durable work queue: RPUSH to publish, BLPOP to consume."""

    def __init__(self, client: redis.Redis) -> None:
        self._client = client

    @classmethod
    def from_url(cls, url: str, *, timeout_seconds: float = 2.0) -> "RedisQueuePublisher":
        client = redis.Redis.from_url(
            url,
            socket_connect_timeout=timeout_seconds,
            socket_timeout=timeout_seconds,
        )
        return cls(client)

    def publish(self, queue_name: str, message: dict) -> None:
        try:
            self._client.rpush(queue_name, json.dumps(message))
        except RedisError as exc:
            raise QueuePublishError(f"Could not publish to queue {queue_name}: {exc}") from exc

    def pop(self, queue_name: str, *, timeout_seconds: int = 5) -> dict | None:
        item = self._client.blpop([queue_name], timeout=timeout_seconds)
        if item is None:
            return None
        _, raw = item
        return decode_message(raw)

    def ping(self) -> bool:
        try:
            return bool(self._client.ping())
        except RedisError:
            return False


class InMemoryQueuePublisher:
    """Process-local queue for tests and single-process deployments."""

    def __init__(self) -> None:
        self._queues: dict[str, Deque[str]] = defaultdict(deque)
        self._lock = Lock()

    def publish(self, queue_name: str, message: dict) -> None:
        with self._lock:
            self._queues[queue_name].append(json.dumps(message))

    def pop(self, queue_name: str, *, timeout_seconds: int = 0) -> dict | None:
        with self._lock:
            queue = self._queues.get(queue_name)
            if not queue:
                return None
            raw = queue.popleft()
        return decode_message(raw)

    def pending(self, queue_name: str) -> list[dict]:
        with self._lock:
            return [json.loads(raw) for raw in self._queues.get(queue_name, ())]

    def clear(self) -> None:
        with self._lock:
            self._queues.clear()


class DisabledQueuePublisher:
    def publish(self, queue_name: str, message: dict) -> None:
        logger.info(
            "Schedule queue disabled; skipping %s for teachers: %s",
            queue_name,
            ", ".join(message.get("affectedTeacherIds", [])),
        )


def decode_message(raw: bytes | str) -> dict | None:
    try:
        payload = json.loads(raw)
    except (TypeError, ValueError):
        logger.error("Dropping malformed queue message: %r", raw)
        return None
    if not isinstance(payload, dict):
        logger.error("Dropping queue message that is not an object: %r", payload)
        return None
    return payload


def build_queue_publisher(settings: Settings) -> QueuePublisher:
    if settings.schedule_queue_backend == "memory":
        return InMemoryQueuePublisher()
    if settings.schedule_queue_backend == "disabled":
        return DisabledQueuePublisher()
    return RedisQueuePublisher.from_url(settings.redis_url)
