from fastapi import APIRouter, Depends, Query

from app.api.deps import get_routine_engine
from app.core.exceptions import ValidationFailedError
from app.models.routine_slot import RoutineSlot
from app.schemas.conflict import AvailabilityOut, ConflictCheckRequest, ConflictReport
from app.schemas.routine import (
    AssignmentOut,
    AssignRequest,
    ClearCellOut,
    ClearCohortOut,
    CohortRoutineOut,
    DeleteOut,
    ProgramRoutinesOut,
    ResyncOut,
    RoutineCell,
    RoutineGridOut,
    RoutineSlotOut,
    SlotContentIn,
    SpanAssignmentOut,
    SpannedAssignRequest,
    UpdateRequest,
)
from app.services.routine_service import Cohort, Grid, RoutineEngine

router = APIRouter()


def _content(payload: SlotContentIn) -> SlotContentIn:
    return SlotContentIn(
        subject_id=payload.subject_id,
        teacher_ids=payload.teacher_ids,
        room_id=payload.room_id,
        class_type=payload.class_type,
        notes=payload.notes,
    )


def _cell(slot: RoutineSlot) -> RoutineCell:
    return RoutineCell(
        id=slot.id,
        subject_id=slot.subject_id,
        subject_name=slot.subject_name_display,
        subject_code=slot.subject_code_display,
        teacher_ids=list(slot.teacher_ids or []),
        teacher_short_names=list(slot.teacher_short_names_display or []),
        room_id=slot.room_id,
        room_name=slot.room_name_display,
        class_type=slot.class_type,
        notes=slot.notes or "",
        time_slot=slot.time_slot_display,
        span_id=slot.span_id,
        span_master=slot.span_master,
    )


def _grid_out(grid: Grid) -> dict[int, dict[int, RoutineCell]]:
    return {day: {index: _cell(slot) for index, slot in cells.items()} for day, cells in grid.items()}


# Availability and fixed paths are registered before the cohort routes they would otherwise shadow.


@router.get("/teachers/{teacher_id}/availability", response_model=AvailabilityOut)
def teacher_availability(
    teacher_id: str,
    day_index: int = Query(...),
    slot_index: int = Query(...),
    engine: RoutineEngine = Depends(get_routine_engine),
) -> AvailabilityOut:
    return engine.teacher_availability(teacher_id, day_index, slot_index)


@router.get("/rooms/{room_id}/availability", response_model=AvailabilityOut)
def room_availability(
    room_id: str,
    day_index: int = Query(...),
    slot_index: int = Query(...),
    engine: RoutineEngine = Depends(get_routine_engine),
) -> AvailabilityOut:
    return engine.room_availability(room_id, day_index, slot_index)


@router.post("/check-conflicts", response_model=ConflictReport)
def check_conflicts(
    payload: ConflictCheckRequest,
    engine: RoutineEngine = Depends(get_routine_engine),
) -> ConflictReport:
    conflicts = engine.check_conflicts(payload)
    return ConflictReport(has_conflicts=bool(conflicts), conflicts=conflicts)


@router.post("/resync-display", response_model=ResyncOut)
def resync_display(
    program_code: str | None = Query(default=None),
    semester: int | None = Query(default=None),
    section: str | None = Query(default=None),
    engine: RoutineEngine = Depends(get_routine_engine),
) -> ResyncOut:
    given = [value is not None for value in (program_code, semester, section)]
    if any(given) and not all(given):
        raise ValidationFailedError("program_code, semester and section must be given together")
    cohort = Cohort.of(program_code, semester, section) if all(given) else None
    return ResyncOut(updated_count=engine.resync_display_fields(cohort))


@router.patch("/slots/{slot_id}/clear", response_model=ClearCellOut)
def clear_cell(slot_id: str, engine: RoutineEngine = Depends(get_routine_engine)) -> ClearCellOut:
    outcome = engine.clear_cell(slot_id)
    return ClearCellOut(
        slot=RoutineSlotOut.model_validate(outcome.slot),
        cleared_count=len(outcome.cleared_slots),
    )


@router.patch("/slots/{slot_id}", response_model=AssignmentOut)
def update_slot(
    slot_id: str,
    payload: UpdateRequest,
    engine: RoutineEngine = Depends(get_routine_engine),
) -> AssignmentOut:
    outcome = engine.update(slot_id, payload)
    return AssignmentOut(operation=outcome.operation, slot=RoutineSlotOut.model_validate(outcome.slot))


@router.delete("/slots/{slot_id}", response_model=DeleteOut)
def delete_slot(slot_id: str, engine: RoutineEngine = Depends(get_routine_engine)) -> DeleteOut:
    return DeleteOut(deleted_count=engine.delete_slot(slot_id))


@router.delete("/spans/{span_id}", response_model=DeleteOut)
def delete_span_group(span_id: str, engine: RoutineEngine = Depends(get_routine_engine)) -> DeleteOut:
    return DeleteOut(deleted_count=engine.delete_span_group(span_id))


@router.get("/{program_code}", response_model=ProgramRoutinesOut)
def get_program_routines(
    program_code: str,
    engine: RoutineEngine = Depends(get_routine_engine),
) -> ProgramRoutinesOut:
    routines = engine.get_program_routines(program_code)
    return ProgramRoutinesOut(
        program_code=program_code.strip().upper(),
        routines=[
            CohortRoutineOut(semester=semester, section=section, routine=_grid_out(grid))
            for (semester, section), grid in routines.items()
        ],
    )


@router.get("/{program_code}/{semester}/{section}", response_model=RoutineGridOut)
def get_routine(
    program_code: str,
    semester: int,
    section: str,
    engine: RoutineEngine = Depends(get_routine_engine),
) -> RoutineGridOut:
    cohort = Cohort.of(program_code, semester, section)
    grid = engine.get_routine(cohort)
    return RoutineGridOut(
        program_code=cohort.program_code,
        semester=cohort.semester,
        section=cohort.section,
        routine=_grid_out(grid),
    )


@router.post("/{program_code}/{semester}/{section}/assign", response_model=AssignmentOut)
def assign_class(
    program_code: str,
    semester: int,
    section: str,
    payload: AssignRequest,
    engine: RoutineEngine = Depends(get_routine_engine),
) -> AssignmentOut:
    outcome = engine.assign(
        Cohort.of(program_code, semester, section),
        payload.day_index,
        payload.slot_index,
        _content(payload),
    )
    return AssignmentOut(operation=outcome.operation, slot=RoutineSlotOut.model_validate(outcome.slot))


@router.post("/{program_code}/{semester}/{section}/assign-spanned", response_model=SpanAssignmentOut)
def assign_spanned_class(
    program_code: str,
    semester: int,
    section: str,
    payload: SpannedAssignRequest,
    engine: RoutineEngine = Depends(get_routine_engine),
) -> SpanAssignmentOut:
    outcome = engine.assign_spanned(
        Cohort.of(program_code, semester, section),
        payload.day_index,
        payload.slot_indexes,
        _content(payload),
    )
    return SpanAssignmentOut(
        span_id=outcome.span_id,
        slots=[RoutineSlotOut.model_validate(slot) for slot in outcome.slots],
    )


@router.delete("/{program_code}/{semester}/{section}", response_model=ClearCohortOut)
def clear_routine(
    program_code: str,
    semester: int,
    section: str,
    engine: RoutineEngine = Depends(get_routine_engine),
) -> ClearCohortOut:
    outcome = engine.clear_cohort(Cohort.of(program_code, semester, section))
    return ClearCohortOut(
        deleted_count=outcome.deleted_count,
        affected_teacher_count=len(outcome.affected_teacher_ids),
    )
