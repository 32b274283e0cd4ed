from dataclasses import dataclass

import pytest
from fastapi.testclient import TestClient  # calls the FastAPI routes without running a real server
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

import app.main as main_module
from app.api.deps import get_db, get_queue_publisher
from app.db import bootstrap
from app.db.base import Base
from app.main import app
from app.models.program import Program
from app.models.room import Room, RoomType
from app.models.subject import Subject
from app.models.teacher import Teacher
from app.models.time_slot import TimeSlotDefinition
from app.services.schedule_notifier import ScheduleCacheNotifier
from app.services.schedule_queue import InMemoryQueuePublisher

QUEUE_NAME = "teacher_routine_updates"

TIME_SLOTS = [
    (0, "Period 1", "10:15", "11:05", False),
    (1, "Period 2", "11:05", "11:55", False),
    (2, "Period 3", "11:55", "12:45", False),
    (3, "Break", "12:45", "13:35", True),
    (4, "Period 4", "13:35", "14:25", False),
    (5, "Period 5", "14:25", "15:15", False),
    (6, "Period 6", "15:15", "16:05", False),
]


@dataclass
class SeedData:
    program: Program
    dsa: Subject
    math: Subject
    lab: Subject
    alice: Teacher
    bob: Teacher
    carol: Teacher
    room_a: Room
    room_b: Room
    lab_room: Room


@pytest.fixture()
def db_engine():
    engine = create_engine(  # isolated in-memory database shared by every session
        "sqlite+pysqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def session_factory(db_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=db_engine)


@pytest.fixture()
def db(session_factory) -> Session:
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def seed(db) -> SeedData:
    for slot_id, label, start, end, is_break in TIME_SLOTS:
        db.add(
            TimeSlotDefinition(
                id=slot_id,
                label=label,
                start_time=start,
                end_time=end,
                is_break=is_break,
                sort_order=slot_id,
            )
        )

    data = SeedData(
        program=Program(code="BCT", name="Bachelor in Computer Engineering", total_semesters=8, is_active=True),
        dsa=Subject(code="CT552", name="Data Structures and Algorithms", weekly_hours=4, has_lab=False),
        math=Subject(code="SH551", name="Applied Mathematics", weekly_hours=3, has_lab=False),
        lab=Subject(code="CT553", name="Computer Networks Lab", weekly_hours=3, has_lab=True),
        alice=Teacher(
            full_name="Alice Sharma", short_name="AS", email="alice@example.com", department="DOECE", is_active=True
        ),
        bob=Teacher(
            full_name="Bob Karki", short_name="BK", email="bob@example.com", department="DOECE", is_active=True
        ),
        carol=Teacher(
            full_name="Carol Thapa", short_name="CT", email="carol@example.com", department="DOSH", is_active=True
        ),
        room_a=Room(name="CIC-201", building="CIC", capacity=48, type=RoomType.lecture),
        room_b=Room(name="CIC-202", building="CIC", capacity=48, type=RoomType.lecture),
        lab_room=Room(name="LAB-1", building="Block D", capacity=24, type=RoomType.lab),
    )
    db.add_all(
        [
            data.program,
            data.dsa,
            data.math,
            data.lab,
            data.alice,
            data.bob,
            data.carol,
            data.room_a,
            data.room_b,
            data.lab_room,
        ]
    )
    db.commit()
    for item in vars(data).values():
        db.refresh(item)
    return data


@pytest.fixture()
def publisher() -> InMemoryQueuePublisher:
    return InMemoryQueuePublisher()


@pytest.fixture()
def notifier(publisher) -> ScheduleCacheNotifier:
    return ScheduleCacheNotifier(publisher, queue_name=QUEUE_NAME)


@pytest.fixture()
def client(db_engine, session_factory, publisher, monkeypatch):
    monkeypatch.setattr(
        main_module,
        "ensure_runtime_schema_compatibility",
        lambda: bootstrap.ensure_runtime_schema_compatibility(db_engine),
    )

    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_queue_publisher] = lambda: publisher

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()
