import uuid
from datetime import datetime
from enum import Enum

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    JSON,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.sql import func

from app.db.base import Base


class ClassType(str, Enum):
    lecture = "L"
    practical = "P"
    tutorial = "T"


class ReservationType(str, Enum):
    teacher = "teacher"
    room = "room"


class RoutineSlot(Base):
    """One class occupying one (day, slot) cell of a cohort's weekly routine.

    The ``*_display`` columns are copies of reference data taken when the slot
    was last assigned. They are not refreshed when the subject, teacher or
    room changes; ``RoutineEngine.resync_display_fields`` re-snapshots them.
    """

    __tablename__ = "routine_slots"
    __table_args__ = (
        UniqueConstraint(
            "program_code",
            "semester",
            "section",
            "day_index",
            "slot_index",
            name="uq_routine_slots_cohort_cell",
        ),
        CheckConstraint("day_index >= 0 AND day_index <= 6", name="ck_routine_slots_day_index"),
        CheckConstraint("slot_index >= 0", name="ck_routine_slots_slot_index"),
        Index("ix_routine_slots_cohort", "program_code", "semester", "section"),
        Index("ix_routine_slots_cell", "day_index", "slot_index"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    program_code: Mapped[str] = mapped_column(String(20), nullable=False)
    semester: Mapped[int] = mapped_column(Integer, nullable=False)
    section: Mapped[str] = mapped_column(String(10), nullable=False)
    day_index: Mapped[int] = mapped_column(Integer, nullable=False)
    slot_index: Mapped[int] = mapped_column(Integer, nullable=False)

    subject_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)
    teacher_ids: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    room_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    class_type: Mapped[ClassType | None] = mapped_column(SAEnum(ClassType, name="class_type"), nullable=True)
    notes: Mapped[str] = mapped_column(Text, nullable=False, default="")

    span_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)
    span_master: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    subject_name_display: Mapped[str | None] = mapped_column(String(200), nullable=True)
    subject_code_display: Mapped[str | None] = mapped_column(String(50), nullable=True)
    teacher_short_names_display: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    room_name_display: Mapped[str | None] = mapped_column(String(100), nullable=True)
    time_slot_display: Mapped[str | None] = mapped_column(String(20), nullable=True)

    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), onupdate=func.now())

    reservations: Mapped[list["SlotReservation"]] = relationship(
        back_populates="slot",
        cascade="all, delete-orphan",
    )

    @property
    def is_occupied(self) -> bool:
        return self.subject_id is not None

    @property
    def cohort(self) -> tuple[str, int, str]:
        return self.program_code, self.semester, self.section

    def sync_reservations(self) -> None:
        """Make the reservation rows match the slot's current cell, teachers and room."""
        desired: set[tuple[ReservationType, str]] = set()
        if self.is_active and self.is_occupied:
            desired.update((ReservationType.teacher, teacher_id) for teacher_id in self.teacher_ids)
            if self.room_id:
                desired.add((ReservationType.room, self.room_id))

        kept: set[tuple[ReservationType, str]] = set()
        for reservation in list(self.reservations):
            key = (reservation.resource_type, reservation.resource_id)
            same_cell = reservation.day_index == self.day_index and reservation.slot_index == self.slot_index
            if key in desired and same_cell and key not in kept:
                kept.add(key)
                continue
            self.reservations.remove(reservation)

        for resource_type, resource_id in sorted(desired - kept, key=lambda item: (item[0].value, item[1])):
            self.reservations.append(
                SlotReservation(
                    day_index=self.day_index,
                    slot_index=self.slot_index,
                    resource_type=resource_type,
                    resource_id=resource_id,
                )
            )


class SlotReservation(Base):
    """Exclusive claim of a teacher or room on one (day, slot) cell.

    The unique constraint makes the store reject a second booking of the same
    teacher or room even when two requests both passed the conflict check.
    """

    __tablename__ = "slot_reservations"
    __table_args__ = (
        UniqueConstraint(
            "day_index",
            "slot_index",
            "resource_type",
            "resource_id",
            name="uq_slot_reservations_resource_cell",
        ),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    slot_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("routine_slots.id", ondelete="CASCADE"), nullable=False, index=True
    )
    day_index: Mapped[int] = mapped_column(Integer, nullable=False)
    slot_index: Mapped[int] = mapped_column(Integer, nullable=False)
    resource_type: Mapped[ReservationType] = mapped_column(
        SAEnum(ReservationType, name="reservation_type"), nullable=False
    )
    resource_id: Mapped[str] = mapped_column(String(36), nullable=False)

    slot: Mapped[RoutineSlot] = relationship(back_populates="reservations")
