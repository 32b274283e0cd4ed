from collections.abc import Generator
from functools import lru_cache

from fastapi import BackgroundTasks, Depends
from sqlalchemy.orm import Session

from app.core.config import get_settings
from app.db.session import SessionLocal
from app.services.routine_service import RoutineEngine
from app.services.schedule_notifier import ScheduleCacheNotifier
from app.services.schedule_queue import QueuePublisher, build_queue_publisher


def get_db() -> Generator[Session, None, None]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@lru_cache
def get_queue_publisher() -> QueuePublisher:
    return build_queue_publisher(get_settings())


def get_notifier(publisher: QueuePublisher = Depends(get_queue_publisher)) -> ScheduleCacheNotifier:
    return ScheduleCacheNotifier(publisher, queue_name=get_settings().schedule_queue_name)


def get_routine_engine(
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    notifier: ScheduleCacheNotifier = Depends(get_notifier),
) -> RoutineEngine:
    # The queue publish runs after the response is sent.
    return RoutineEngine(db, notifier=notifier, dispatch=background_tasks.add_task)
