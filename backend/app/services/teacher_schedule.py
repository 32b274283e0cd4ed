from __future__ import annotations

from collections import defaultdict
from collections.abc import Iterable
from datetime import datetime, timezone
import logging

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.core.exceptions import ResourceNotFoundError
from app.models.routine_slot import ReservationType, RoutineSlot, SlotReservation
from app.models.teacher import Teacher
from app.models.teacher_schedule import TeacherSchedule
from app.models.time_slot import TimeSlotDefinition
from app.services.schedule_notifier import MESSAGE_TYPE

logger = logging.getLogger(__name__)


def _time_range(slot: RoutineSlot, time_slots: dict[int, TimeSlotDefinition]) -> str:
    definition = time_slots.get(slot.slot_index)
    if definition is not None:
        return definition.time_range
    return slot.time_slot_display or ""


def _entry(slot: RoutineSlot, time_range: str, periods_count: int = 1) -> dict:
    return {
        "slot_id": slot.id,
        "slot_index": slot.slot_index,
        "time_range": time_range,
        "program_code": slot.program_code,
        "semester": slot.semester,
        "section": slot.section,
        "subject_name": slot.subject_name_display,
        "subject_code": slot.subject_code_display,
        "room_name": slot.room_name_display,
        "class_type": slot.class_type.value if slot.class_type is not None else None,
        "notes": slot.notes or "",
        "span_id": slot.span_id,
        "periods_count": periods_count,
    }


def build_weekly_schedule(
    slots: Iterable[RoutineSlot],
    time_slots: dict[int, TimeSlotDefinition],
) -> dict[str, list[dict]]:
    """Group a teacher's slots by day; a spanned class becomes one entry on its master.

    The merged entry runs from the first member's start to the last member's end.
    """
    by_day: dict[int, list[RoutineSlot]] = defaultdict(list)
    for slot in slots:
        by_day[slot.day_index].append(slot)

    schedule: dict[str, list[dict]] = {}
    for day_index in sorted(by_day):
        day_slots = sorted(by_day[day_index], key=lambda item: item.slot_index)
        spans: dict[str, list[RoutineSlot]] = defaultdict(list)
        for slot in day_slots:
            if slot.span_id:
                spans[slot.span_id].append(slot)

        entries: list[dict] = []
        for slot in day_slots:
            if not slot.span_id:
                entries.append(_entry(slot, _time_range(slot, time_slots)))
                continue
            members = spans[slot.span_id]
            master = next((member for member in members if member.span_master), members[0])
            if slot is not master:
                continue
            first, last = members[0], members[-1]
            start = time_slots.get(first.slot_index)
            end = time_slots.get(last.slot_index)
            if start is not None and end is not None:
                time_range = f"{start.start_time} - {end.end_time}"
            else:
                time_range = _time_range(first, time_slots)
            entry = _entry(master, time_range, periods_count=len(members))
            entry["slot_index"] = first.slot_index
            entries.append(entry)

        schedule[str(day_index)] = sorted(entries, key=lambda item: item["slot_index"])
    return schedule


def _teacher_slots(db: Session, teacher_id: str) -> list[RoutineSlot]:
    statement = (
        select(RoutineSlot)
        .join(SlotReservation, SlotReservation.slot_id == RoutineSlot.id)
        .where(
            SlotReservation.resource_type == ReservationType.teacher,
            SlotReservation.resource_id == teacher_id,
            RoutineSlot.is_active.is_(True),
            RoutineSlot.subject_id.is_not(None),
        )
        .order_by(RoutineSlot.day_index, RoutineSlot.slot_index)
    )
    return list(db.execute(statement).scalars())


def _time_slot_map(db: Session) -> dict[int, TimeSlotDefinition]:
    rows = db.execute(select(TimeSlotDefinition)).scalars()
    return {row.id: row for row in rows}


def _upsert(db: Session, teacher: Teacher, schedule: dict[str, list[dict]]) -> TeacherSchedule:
    record = db.get(TeacherSchedule, teacher.id)
    if record is None:
        record = TeacherSchedule(teacher_id=teacher.id)
        db.add(record)
    record.teacher_short_name = teacher.display_short_name
    record.teacher_full_name = teacher.full_name
    record.schedule = schedule
    record.last_generated_at = datetime.now(timezone.utc)
    return record


def rebuild_teacher_schedule(db: Session, teacher_id: str) -> TeacherSchedule:
    teacher = db.get(Teacher, teacher_id)
    if teacher is None:
        raise ResourceNotFoundError("Teacher", teacher_id)
    schedule = build_weekly_schedule(_teacher_slots(db, teacher_id), _time_slot_map(db))
    record = _upsert(db, teacher, schedule)
    db.commit()
    db.refresh(record)
    logger.info(
        "Rebuilt schedule for teacher %s (%d class(es))",
        teacher_id,
        sum(len(entries) for entries in schedule.values()),
    )
    return record


def get_teacher_schedule(db: Session, teacher_id: str) -> TeacherSchedule:
    record = db.get(TeacherSchedule, teacher_id)
    if record is not None:
        return record
    return rebuild_teacher_schedule(db, teacher_id)


def process_schedule_message(db: Session, message: dict) -> int:
    if message.get("type") != MESSAGE_TYPE:
        logger.warning("Ignoring queue message of unexpected type %r", message.get("type"))
        return 0
    teacher_ids = message.get("affectedTeacherIds") or []
    if not isinstance(teacher_ids, list):
        logger.warning("Ignoring queue message with malformed affectedTeacherIds: %r", teacher_ids)
        return 0

    rebuilt = 0
    for teacher_id in dict.fromkeys(str(item) for item in teacher_ids if item):
        try:
            rebuild_teacher_schedule(db, teacher_id)
        except ResourceNotFoundError:
            logger.warning("Skipping schedule rebuild for unknown teacher %s", teacher_id)
            continue
        rebuilt += 1
    return rebuilt


def regenerate_all_teacher_schedules(db: Session) -> int:
    teacher_ids = list(
        db.execute(select(Teacher.id).where(Teacher.is_active.is_(True)).order_by(Teacher.short_name)).scalars()
    )
    for teacher_id in teacher_ids:
        rebuild_teacher_schedule(db, teacher_id)
    logger.info("Regenerated schedules for %d teacher(s)", len(teacher_ids))
    return len(teacher_ids)
