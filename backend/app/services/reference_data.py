from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.core.exceptions import ReferenceNotFoundError, UnassignableSlotError
from app.models.program import Program
from app.models.room import Room
from app.models.subject import Subject
from app.models.teacher import Teacher
from app.models.time_slot import TimeSlotDefinition


@dataclass(frozen=True)
class ResolvedReferences:
    program: Program
    subject: Subject
    teachers: list[Teacher]
    room: Room
    time_slot: TimeSlotDefinition


class ReferenceData:
    """Read-only lookups of the reference records a placement points at."""

    def __init__(self, db: Session):
        self.db = db

    def program_by_code(self, program_code: str) -> Program:
        program = self.db.execute(
            select(Program).where(Program.code == program_code.strip().upper())
        ).scalar_one_or_none()
        if program is None:
            raise ReferenceNotFoundError("Program", program_code)
        return program

    def subject(self, subject_id: str) -> Subject:
        subject = self.db.get(Subject, subject_id)
        if subject is None:
            raise ReferenceNotFoundError("Subject", subject_id)
        return subject

    def teachers(self, teacher_ids: list[str]) -> list[Teacher]:
        # One query, returned in the requested order.
        found = {
            teacher.id: teacher
            for teacher in self.db.execute(select(Teacher).where(Teacher.id.in_(teacher_ids))).scalars()
        }
        missing = [teacher_id for teacher_id in teacher_ids if teacher_id not in found]
        if missing:
            raise ReferenceNotFoundError("Teacher", missing[0])
        return [found[teacher_id] for teacher_id in teacher_ids]

    def room(self, room_id: str) -> Room:
        room = self.db.get(Room, room_id)
        if room is None:
            raise ReferenceNotFoundError("Room", room_id)
        return room

    def time_slot(self, slot_index: int) -> TimeSlotDefinition:
        time_slot = self.db.get(TimeSlotDefinition, slot_index)
        if time_slot is None:
            raise ReferenceNotFoundError("TimeSlot", slot_index)
        if time_slot.is_break:
            raise UnassignableSlotError(slot_index, time_slot.label)
        return time_slot

    def time_slot_map(self) -> dict[int, TimeSlotDefinition]:
        rows = self.db.execute(select(TimeSlotDefinition).order_by(TimeSlotDefinition.sort_order)).scalars()
        return {row.id: row for row in rows}

    def resolve_placement(
        self,
        *,
        program_code: str,
        slot_index: int,
        subject_id: str,
        teacher_ids: list[str],
        room_id: str,
    ) -> ResolvedReferences:
        return ResolvedReferences(
            program=self.program_by_code(program_code),
            subject=self.subject(subject_id),
            teachers=self.teachers(teacher_ids),
            room=self.room(room_id),
            time_slot=self.time_slot(slot_index),
        )
