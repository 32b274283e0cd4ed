from datetime import datetime

from pydantic import BaseModel, Field


class TeacherScheduleEntry(BaseModel):
    slot_id: str
    slot_index: int
    time_range: str
    program_code: str
    semester: int
    section: str
    subject_name: str | None = None
    subject_code: str | None = None
    room_name: str | None = None
    class_type: str | None = None
    notes: str = ""
    span_id: str | None = None
    periods_count: int = 1


class TeacherScheduleOut(BaseModel):
    teacher_id: str
    teacher_short_name: str
    teacher_full_name: str
    schedule: dict[str, list[TeacherScheduleEntry]] = Field(default_factory=dict)
    last_generated_at: datetime | None = None

    model_config = {"from_attributes": True}


class RegenerateAllOut(BaseModel):
    regenerated_count: int
