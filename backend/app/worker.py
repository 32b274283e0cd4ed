"""Consume teacher routine updates and rebuild the affected schedules.

Run:
  PYTHONPATH=backend python -m app.worker
  PYTHONPATH=backend python -m app.worker --once
"""

from __future__ import annotations

import argparse
import logging

from sqlalchemy.exc import SQLAlchemyError

from app.core.config import Settings, get_settings
from app.core.logging import setup_logging
from app.db.session import SessionLocal
from app.services.schedule_queue import InMemoryQueuePublisher, RedisQueuePublisher
from app.services.teacher_schedule import process_schedule_message

logger = logging.getLogger("app.worker")


def handle_message(message: dict) -> int:
    db = SessionLocal()
    try:
        return process_schedule_message(db, message)
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Schedule rebuild failed for message: %r", message)
        return 0
    finally:
        db.close()


def run(
    consumer: RedisQueuePublisher | InMemoryQueuePublisher,
    settings: Settings,
    *,
    once: bool = False,
    max_messages: int | None = None,
) -> int:
    processed = 0
    while max_messages is None or processed < max_messages:
        message = consumer.pop(settings.schedule_queue_name, timeout_seconds=settings.worker_poll_timeout_seconds)
        if message is None:
            if once:
                break
            continue
        rebuilt = handle_message(message)
        processed += 1
        logger.info("Processed %s message: %d schedule(s) rebuilt", message.get("action", "unknown"), rebuilt)
    return processed


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Rebuild teacher schedules from the routine update queue.")
    parser.add_argument("--once", action="store_true", help="Exit when the queue is empty.")
    parser.add_argument("--max-messages", type=int, default=None, help="Stop after this many messages.")
    args = parser.parse_args(argv)

    settings = get_settings()
    setup_logging(environment=settings.environment)
    consumer = RedisQueuePublisher.from_url(settings.redis_url, timeout_seconds=settings.worker_poll_timeout_seconds + 5)
    logger.info("Listening on queue %s", settings.schedule_queue_name)
    try:
        processed = run(consumer, settings, once=args.once, max_messages=args.max_messages)
    except KeyboardInterrupt:
        logger.info("Worker stopped")
        return
    logger.info("Worker finished after %d message(s)", processed)


if __name__ == "__main__":
    main()
