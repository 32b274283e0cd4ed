from __future__ import annotations

import logging

from sqlalchemy import Engine, inspect, select, text
from sqlalchemy.orm import Session

from app.db.base import Base
from app.db.session import engine as default_engine
from app.models.routine_slot import RoutineSlot

logger = logging.getLogger(__name__)

REQUIRED_COLUMNS: dict[str, set[str]] = {
    "routine_slots": {
        "id",
        "program_code",
        "semester",
        "section",
        "day_index",
        "slot_index",
        "teacher_ids",
        "span_id",
        "span_master",
        "is_active",
    },
    "slot_reservations": {"id", "slot_id", "day_index", "slot_index", "resource_type", "resource_id"},
    "teacher_schedules": {"teacher_id", "schedule", "last_generated_at"},
    "time_slot_definitions": {"id", "start_time", "end_time", "is_break"},
}


def _ensure_routine_slot_span_columns(engine: Engine) -> None:
    with engine.begin() as connection:
        inspector = inspect(connection)
        if "routine_slots" not in set(inspector.get_table_names()):
            return
        column_names = {item["name"] for item in inspector.get_columns("routine_slots")}
        if "span_id" not in column_names:
            connection.execute(text("ALTER TABLE routine_slots ADD COLUMN span_id VARCHAR(36)"))
        if "span_master" not in column_names:
            connection.execute(
                text("ALTER TABLE routine_slots ADD COLUMN span_master BOOLEAN NOT NULL DEFAULT FALSE")
            )


def _backfill_slot_reservations(engine: Engine) -> int:
    """Create reservation rows for occupied slots written before the reservation table existed."""
    with Session(bind=engine) as db:
        has_any = db.execute(text("SELECT 1 FROM slot_reservations LIMIT 1")).first() is not None
        if has_any:
            return 0
        slots = db.execute(
            select(RoutineSlot).where(RoutineSlot.is_active.is_(True), RoutineSlot.subject_id.is_not(None))
        ).scalars()
        count = 0
        for slot in slots:
            slot.sync_reservations()
            count += 1
        if count:
            db.commit()
            logger.info("Backfilled reservations for %d routine slot(s)", count)
        return count


def _assert_required_columns(engine: Engine) -> None:
    with engine.begin() as connection:
        inspector = inspect(connection)
        table_names = set(inspector.get_table_names())
        missing_tables = [name for name in REQUIRED_COLUMNS if name not in table_names]
        if missing_tables:
            raise RuntimeError(f"Missing required tables: {', '.join(sorted(missing_tables))}")

        missing_columns: list[str] = []
        for table_name, required in REQUIRED_COLUMNS.items():
            existing = {item["name"] for item in inspector.get_columns(table_name)}
            for column_name in sorted(required - existing):
                missing_columns.append(f"{table_name}.{column_name}")
        if missing_columns:
            raise RuntimeError(f"Missing required columns: {', '.join(missing_columns)}")


def ensure_runtime_schema_compatibility(engine: Engine | None = None) -> None:
    engine = engine or default_engine
    try:
        # Ensure missing tables are present before additive compatibility patches.
        Base.metadata.create_all(bind=engine)
        _ensure_routine_slot_span_columns(engine)
        _backfill_slot_reservations(engine)
        _assert_required_columns(engine)
    except Exception as exc:  # pragma: no cover - runtime environment dependent
        logger.exception("Runtime schema compatibility bootstrap failed")
        raise RuntimeError("Runtime schema compatibility bootstrap failed") from exc
