from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field, field_validator

from app.models.routine_slot import ClassType


class SlotContentIn(BaseModel):
    subject_id: str = Field(min_length=1, max_length=36)
    teacher_ids: list[str] = Field(default_factory=list, max_length=10)
    room_id: str = Field(min_length=1, max_length=36)
    class_type: ClassType = ClassType.lecture
    notes: str = Field(default="", max_length=500)

    @field_validator("teacher_ids")
    @classmethod
    def strip_teacher_ids(cls, value: list[str]) -> list[str]:
        return [item.strip() for item in value if item and item.strip()]

    @field_validator("notes")
    @classmethod
    def strip_notes(cls, value: str) -> str:
        return value.strip()


class AssignRequest(SlotContentIn):
    day_index: int
    slot_index: int


class SpannedAssignRequest(SlotContentIn):
    day_index: int
    slot_indexes: list[int] = Field(default_factory=list, max_length=12)


class UpdateRequest(SlotContentIn):
    day_index: int | None = None
    slot_index: int | None = None


class RoutineSlotOut(BaseModel):
    id: str
    program_code: str
    semester: int
    section: str
    day_index: int
    slot_index: int
    subject_id: str | None
    teacher_ids: list[str]
    room_id: str | None
    class_type: ClassType | None
    notes: str
    span_id: str | None
    span_master: bool
    subject_name_display: str | None
    subject_code_display: str | None
    teacher_short_names_display: list[str]
    room_name_display: str | None
    time_slot_display: str | None
    is_active: bool
    created_at: datetime | None = None
    updated_at: datetime | None = None

    model_config = {"from_attributes": True}


class AssignmentOut(BaseModel):
    operation: Literal["create", "update"]
    slot: RoutineSlotOut


class SpanAssignmentOut(BaseModel):
    span_id: str
    slots: list[RoutineSlotOut]


class ClearCellOut(BaseModel):
    slot: RoutineSlotOut
    cleared_count: int


class DeleteOut(BaseModel):
    deleted_count: int


class ClearCohortOut(BaseModel):
    deleted_count: int
    affected_teacher_count: int


class ResyncOut(BaseModel):
    updated_count: int


class RoutineCell(BaseModel):
    id: str
    subject_id: str
    subject_name: str | None
    subject_code: str | None
    teacher_ids: list[str]
    teacher_short_names: list[str]
    room_id: str | None
    room_name: str | None
    class_type: ClassType | None
    notes: str
    time_slot: str | None
    span_id: str | None
    span_master: bool


class RoutineGridOut(BaseModel):
    program_code: str
    semester: int
    section: str
    routine: dict[int, dict[int, RoutineCell]]


class CohortRoutineOut(BaseModel):
    semester: int
    section: str
    routine: dict[int, dict[int, RoutineCell]]


class ProgramRoutinesOut(BaseModel):
    program_code: str
    routines: list[CohortRoutineOut]
