from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.api.deps import get_db
from app.schemas.teacher_schedule import RegenerateAllOut, TeacherScheduleOut
from app.services.teacher_schedule import (
    get_teacher_schedule,
    rebuild_teacher_schedule,
    regenerate_all_teacher_schedules,
)

router = APIRouter()


@router.get("/{teacher_id}/schedule", response_model=TeacherScheduleOut)
def read_teacher_schedule(teacher_id: str, db: Session = Depends(get_db)) -> TeacherScheduleOut:
    return TeacherScheduleOut.model_validate(get_teacher_schedule(db, teacher_id))


@router.post("/{teacher_id}/schedule/regenerate", response_model=TeacherScheduleOut)
def regenerate_teacher_schedule(teacher_id: str, db: Session = Depends(get_db)) -> TeacherScheduleOut:
    return TeacherScheduleOut.model_validate(rebuild_teacher_schedule(db, teacher_id))


@router.post("/schedules/regenerate", response_model=RegenerateAllOut)
def regenerate_all(db: Session = Depends(get_db)) -> RegenerateAllOut:
    return RegenerateAllOut(regenerated_count=regenerate_all_teacher_schedules(db))
