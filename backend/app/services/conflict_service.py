from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.core.exceptions import ResourceNotFoundError
from app.models.room import Room
from app.models.routine_slot import ReservationType, RoutineSlot, SlotReservation
from app.models.teacher import Teacher
from app.schemas.conflict import AvailabilityOut, ConflictDetail, ConflictingSlotSummary


@dataclass(frozen=True)
class PlacementCandidate:
    program_code: str
    semester: int
    section: str
    day_index: int
    slot_index: int
    teacher_ids: tuple[str, ...] = field(default_factory=tuple)
    room_id: str | None = None


def summarize_slot(slot: RoutineSlot) -> ConflictingSlotSummary:
    return ConflictingSlotSummary(
        slot_id=slot.id,
        program_code=slot.program_code,
        semester=slot.semester,
        section=slot.section,
        day_index=slot.day_index,
        slot_index=slot.slot_index,
        subject_name=slot.subject_name_display,
        room_name=slot.room_name_display,
        teacher_short_names=list(slot.teacher_short_names_display or []),
    )


class ConflictService:
    """Finds active slots that already hold a candidate's teachers, room or cohort cell.

    Read only: nothing here flushes or commits. Cleared slots hold no
    reservations and never conflict.
    """

    def __init__(self, db: Session):
        self.db = db

    def detect_conflicts(
        self,
        candidate: PlacementCandidate,
        exclude_slot_ids: Iterable[str] = (),
    ) -> list[ConflictDetail]:
        excluded = {slot_id for slot_id in exclude_slot_ids if slot_id}
        conflicts: list[ConflictDetail] = []

        for teacher_id in dict.fromkeys(candidate.teacher_ids):
            occupants = self._reserved_by(
                ReservationType.teacher, teacher_id, candidate.day_index, candidate.slot_index, excluded
            )
            if not occupants:
                continue
            teacher = self.db.get(Teacher, teacher_id)
            for occupant in occupants:
                conflicts.append(
                    ConflictDetail(
                        type="teacher",
                        resource_id=teacher_id,
                        resource_name=teacher.full_name if teacher is not None else None,
                        conflicting_slot=summarize_slot(occupant),
                    )
                )

        if candidate.room_id:
            occupants = self._reserved_by(
                ReservationType.room, candidate.room_id, candidate.day_index, candidate.slot_index, excluded
            )
            if occupants:
                room = self.db.get(Room, candidate.room_id)
                for occupant in occupants:
                    conflicts.append(
                        ConflictDetail(
                            type="room",
                            resource_id=candidate.room_id,
                            resource_name=room.name if room is not None else None,
                            conflicting_slot=summarize_slot(occupant),
                        )
                    )

        # Second line of defence behind the cohort-cell unique constraint.
        statement = select(RoutineSlot).where(
            RoutineSlot.program_code == candidate.program_code,
            RoutineSlot.semester == candidate.semester,
            RoutineSlot.section == candidate.section,
            RoutineSlot.day_index == candidate.day_index,
            RoutineSlot.slot_index == candidate.slot_index,
            RoutineSlot.is_active.is_(True),
            RoutineSlot.subject_id.is_not(None),
        )
        if excluded:
            statement = statement.where(RoutineSlot.id.not_in(excluded))
        for occupant in self.db.execute(statement).scalars():
            conflicts.append(
                ConflictDetail(
                    type="section",
                    resource_id=f"{candidate.program_code}-{candidate.semester}-{candidate.section}",
                    resource_name=f"{candidate.program_code} Sem {candidate.semester} {candidate.section}",
                    conflicting_slot=summarize_slot(occupant),
                )
            )

        return conflicts

    def teacher_availability(self, teacher_id: str, day_index: int, slot_index: int) -> AvailabilityOut:
        if self.db.get(Teacher, teacher_id) is None:
            raise ResourceNotFoundError("Teacher", teacher_id)
        occupants = self._reserved_by(ReservationType.teacher, teacher_id, day_index, slot_index, set())
        return AvailabilityOut(
            resource_type="teacher",
            resource_id=teacher_id,
            day_index=day_index,
            slot_index=slot_index,
            is_available=not occupants,
            conflict=summarize_slot(occupants[0]) if occupants else None,
        )

    def room_availability(self, room_id: str, day_index: int, slot_index: int) -> AvailabilityOut:
        if self.db.get(Room, room_id) is None:
            raise ResourceNotFoundError("Room", room_id)
        occupants = self._reserved_by(ReservationType.room, room_id, day_index, slot_index, set())
        return AvailabilityOut(
            resource_type="room",
            resource_id=room_id,
            day_index=day_index,
            slot_index=slot_index,
            is_available=not occupants,
            conflict=summarize_slot(occupants[0]) if occupants else None,
        )

    def _reserved_by(
        self,
        resource_type: ReservationType,
        resource_id: str,
        day_index: int,
        slot_index: int,
        excluded: set[str],
    ) -> list[RoutineSlot]:
        statement = (
            select(RoutineSlot)
            .join(SlotReservation, SlotReservation.slot_id == RoutineSlot.id)
            .where(
                SlotReservation.resource_type == resource_type,
                SlotReservation.resource_id == resource_id,
                SlotReservation.day_index == day_index,
                SlotReservation.slot_index == slot_index,
                RoutineSlot.is_active.is_(True),
            )
        )
        if excluded:
            statement = statement.where(RoutineSlot.id.not_in(excluded))
        return list(self.db.execute(statement).scalars())
