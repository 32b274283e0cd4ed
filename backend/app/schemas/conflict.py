from pydantic import BaseModel, Field
from typing import Literal, Optional, List


class ConflictingSlotSummary(BaseModel):
    slot_id: str
    program_code: str
    semester: int
    section: str
    day_index: int
    slot_index: int
    subject_name: Optional[str] = None
    room_name: Optional[str] = None
    teacher_short_names: List[str] = Field(default_factory=list)


class ConflictDetail(BaseModel):
    type: Literal["teacher", "room", "section"]
    resource_id: str
    resource_name: Optional[str] = None
    conflicting_slot: ConflictingSlotSummary


class ConflictCheckRequest(BaseModel):
    program_code: str = Field(min_length=1, max_length=20)
    semester: int = Field(ge=1, le=20)
    section: str = Field(min_length=1, max_length=10)
    day_index: int = Field(ge=0, le=6)
    slot_index: int = Field(ge=0)
    teacher_ids: List[str] = Field(default_factory=list, max_length=10)
    room_id: Optional[str] = None
    exclude_slot_id: Optional[str] = None


class ConflictReport(BaseModel):
    has_conflicts: bool
    conflicts: List[ConflictDetail]


class AvailabilityOut(BaseModel):
    resource_type: Literal["teacher", "room"]
    resource_id: str
    day_index: int
    slot_index: int
    is_available: bool
    conflict: Optional[ConflictingSlotSummary] = None
