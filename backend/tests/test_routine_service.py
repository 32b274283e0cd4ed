import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, OperationalError

from app.core.exceptions import (
    ConflictDetectedError,
    DuplicateSlotError,
    PartialSpanFailureError,
    QueuePublishError,
    ReferenceNotFoundError,
    ResourceNotFoundError,
    SlotPersistenceError,
    UnassignableSlotError,
    ValidationFailedError,
)
from app.models.activity_log import ActivityLog
from app.models.routine_slot import ClassType, RoutineSlot, SlotReservation
from app.schemas.routine import SlotContentIn, UpdateRequest
from app.services.routine_service import Cohort, RoutineEngine
from app.services.schedule_notifier import ScheduleCacheNotifier

QUEUE_NAME = "teacher_routine_updates"

AB = Cohort.of("bct", 5, "ab")
CD = Cohort.of("BCT", 5, "CD")


def content(subject, teachers, room, class_type=ClassType.lecture, notes="") -> SlotContentIn:
    return SlotContentIn(
        subject_id=subject.id,
        teacher_ids=[teacher.id for teacher in teachers],
        room_id=room.id,
        class_type=class_type,
        notes=notes,
    )


def cohort_rows(db, cohort: Cohort) -> list[RoutineSlot]:
    return list(
        db.execute(
            select(RoutineSlot).where(
                RoutineSlot.program_code == cohort.program_code,
                RoutineSlot.semester == cohort.semester,
                RoutineSlot.section == cohort.section,
            )
        ).scalars()
    )


def reservation_count(db) -> int:
    return db.execute(select(func.count()).select_from(SlotReservation)).scalar_one()


def failing_commit(db, fail_on, error):
    calls = {"count": 0}

    def commit():
        calls["count"] += 1
        if calls["count"] == fail_on:
            raise error
        db.commit()

    return commit


@pytest.fixture()
def routine_engine(db, seed, notifier) -> RoutineEngine:
    return RoutineEngine(db, notifier=notifier)


class FailingPublisher:
    def publish(self, queue_name, message):
        raise QueuePublishError("redis is down")


def test_cohort_is_normalised():
    assert AB == Cohort("BCT", 5, "AB")
    assert AB.label() == "BCT/5/AB"


def test_assign_creates_slot_with_display_snapshot(routine_engine, seed, publisher, db):
    outcome = routine_engine.assign(AB, 0, 0, content(seed.dsa, [seed.alice], seed.room_a))

    slot = outcome.slot
    assert outcome.operation == "create"
    assert slot.subject_name_display == "Data Structures and Algorithms"
    assert slot.subject_code_display == "CT552"
    assert slot.teacher_short_names_display == ["AS"]
    assert slot.room_name_display == "CIC-201"
    assert slot.time_slot_display == "10:15 - 11:05"
    assert slot.span_id is None
    assert reservation_count(db) == 2

    messages = publisher.pending(QUEUE_NAME)
    assert len(messages) == 1
    assert messages[0]["type"] == "teacher_routine_update"
    assert messages[0]["action"] == "create"
    assert messages[0]["affectedTeacherIds"] == [seed.alice.id]
    assert messages[0]["cohort"] == {"programCode": "BCT", "semester": 5, "section": "AB"}
    assert messages[0]["slotId"] == slot.id

    audit = db.execute(select(ActivityLog).where(ActivityLog.entity_id == slot.id)).scalars().all()
    assert [entry.action for entry in audit] == ["routine.create"]


def test_reassigning_same_cell_updates_in_place(routine_engine, seed, publisher, db):
    first = routine_engine.assign(AB, 0, 0, content(seed.dsa, [seed.alice], seed.room_a))
    second = routine_engine.assign(AB, 0, 0, content(seed.math, [seed.bob], seed.room_b))

    assert second.operation == "update"
    assert second.slot.id == first.slot.id
    assert second.slot.subject_code_display == "SH551"
    assert len(cohort_rows(db, AB)) == 1
    assert second.affected_teacher_ids == {seed.alice.id, seed.bob.id}
    assert publisher.pending(QUEUE_NAME)[-1]["affectedTeacherIds"] == sorted([seed.alice.id, seed.bob.id])
    # the old teacher and room are released
    assert routine_engine.teacher_availability(seed.alice.id, 0, 0).is_available
    assert routine_engine.room_availability(seed.room_a.id, 0, 0).is_available


def test_teacher_double_booking_across_cohorts_is_rejected(routine_engine, seed, publisher, db):
    routine_engine.assign(AB, 0, 0, content(seed.dsa, [seed.alice], seed.room_a))

    with pytest.raises(ConflictDetectedError) as exc_info:
        routine_engine.assign(CD, 0, 0, content(seed.math, [seed.alice, seed.bob], seed.room_b))

    conflicts = exc_info.value.conflicts
    assert exc_info.value.status_code == 409
    assert [conflict.type for conflict in conflicts] == ["teacher"]
    assert conflicts[0].resource_id == seed.alice.id
    assert conflicts[0].conflicting_slot.section == "AB"
    assert cohort_rows(db, CD) == []
    assert len(publisher.pending(QUEUE_NAME)) == 1


def test_room_double_booking_is_rejected(routine_engine, seed):
    routine_engine.assign(AB, 2, 1, content(seed.dsa, [seed.alice], seed.room_a))

    with pytest.raises(ConflictDetectedError) as exc_info:
        routine_engine.assign(CD, 2, 1, content(seed.math, [seed.bob], seed.room_a))

    assert [conflict.type for conflict in exc_info.value.conflicts] == ["room"]
    assert exc_info.value.conflicts[0].resource_name == "CIC-201"


def test_same_resources_in_different_cells_do_not_conflict(routine_engine, seed):
    routine_engine.assign(AB, 0, 0, content(seed.dsa, [seed.alice], seed.room_a))
    outcome = routine_engine.assign(CD, 0, 1, content(seed.dsa, [seed.alice], seed.room_a))
    assert outcome.operation == "create"


def test_break_slot_cannot_be_assigned(routine_engine, seed, db):
    with pytest.raises(UnassignableSlotError) as exc_info:
        routine_engine.assign(AB, 0, 3, content(seed.dsa, [seed.alice], seed.room_a))
    assert exc_info.value.status_code == 422
    assert cohort_rows(db, AB) == []


@pytest.mark.parametrize(
    "field, value",
    [("subject_id", "missing-subject"), ("room_id", "missing-room"), ("teacher_ids", ["missing-teacher"])],
)
def test_unknown_references_are_reported(routine_engine, seed, field, value):
    payload = content(seed.dsa, [seed.alice], seed.room_a).model_copy(update={field: value})
    with pytest.raises(ReferenceNotFoundError) as exc_info:
        routine_engine.assign(AB, 0, 0, payload)
    assert exc_info.value.status_code == 404


def test_unknown_program_and_missing_time_slot(routine_engine, seed):
    with pytest.raises(ReferenceNotFoundError):
        routine_engine.assign(Cohort.of("XYZ", 1, "AB"), 0, 0, content(seed.dsa, [seed.alice], seed.room_a))
    with pytest.raises(ReferenceNotFoundError):
        routine_engine.assign(AB, 0, 42, content(seed.dsa, [seed.alice], seed.room_a))


def test_local_validation_runs_before_lookups(routine_engine, seed):
    with pytest.raises(ValidationFailedError):
        routine_engine.assign(AB, 0, 0, content(seed.dsa, [], seed.room_a))
    with pytest.raises(ValidationFailedError):
        routine_engine.assign(Cohort.of("BCT", 5, "EF"), 0, 0, content(seed.dsa, [seed.alice], seed.room_a))
    with pytest.raises(ValidationFailedError):
        routine_engine.assign(Cohort.of("BCT", 9, "AB"), 0, 0, content(seed.dsa, [seed.alice], seed.room_a))
    with pytest.raises(ValidationFailedError):
        routine_engine.assign(AB, 7, 0, content(seed.dsa, [seed.alice], seed.room_a))


def test_reusing_a_cleared_row_reports_create(routine_engine, seed, db):
    first = routine_engine.assign(AB, 1, 0, content(seed.dsa, [seed.alice], seed.room_a))
    routine_engine.clear_cell(first.slot.id)

    again = routine_engine.assign(AB, 1, 0, content(seed.math, [seed.bob], seed.room_b))

    assert again.operation == "create"
    assert again.slot.id == first.slot.id
    assert len(cohort_rows(db, AB)) == 1


def test_assign_spanned_creates_one_master(routine_engine, seed, publisher, db):
    outcome = routine_engine.assign_spanned(
        AB, 1, [6, 4, 5], content(seed.lab, [seed.alice, seed.bob], seed.lab_room, ClassType.practical)
    )

    slots = outcome.slots
    assert [slot.slot_index for slot in slots] == [4, 5, 6]
    assert {slot.span_id for slot in slots} == {outcome.span_id}
    assert [slot.span_master for slot in slots] == [True, False, False]
    assert all(slot.class_type == ClassType.practical for slot in slots)
    assert reservation_count(db) == 9

    messages = publisher.pending(QUEUE_NAME)
    assert len(messages) == 1
    assert messages[0]["spanId"] == outcome.span_id
    assert messages[0]["affectedTeacherIds"] == sorted([seed.alice.id, seed.bob.id])


def test_assign_spanned_conflict_aborts_everything(routine_engine, seed, publisher, db):
    routine_engine.assign(CD, 1, 5, content(seed.math, [seed.bob], seed.room_b))

    with pytest.raises(ConflictDetectedError) as exc_info:
        routine_engine.assign_spanned(AB, 1, [4, 5, 6], content(seed.lab, [seed.alice, seed.bob], seed.lab_room))

    assert exc_info.value.details["slot_index"] == 5
    assert cohort_rows(db, AB) == []
    assert len(publisher.pending(QUEUE_NAME)) == 1


@pytest.mark.parametrize("indexes", [[], [4, 6], [4, 4]])
def test_assign_spanned_rejects_bad_index_sets(routine_engine, seed, indexes):
    with pytest.raises(ValidationFailedError):
        routine_engine.assign_spanned(AB, 1, indexes, content(seed.lab, [seed.alice], seed.lab_room))


def test_assign_spanned_over_a_break_is_rejected(routine_engine, seed, db):
    with pytest.raises(UnassignableSlotError):
        routine_engine.assign_spanned(AB, 1, [2, 3, 4], content(seed.lab, [seed.alice], seed.lab_room))
    assert cohort_rows(db, AB) == []


def test_single_assign_onto_span_member_is_rejected(routine_engine, seed):
    span = routine_engine.assign_spanned(AB, 1, [4, 5], content(seed.lab, [seed.alice], seed.lab_room))
    with pytest.raises(ValidationFailedError) as exc_info:
        routine_engine.assign(AB, 1, 5, content(seed.math, [seed.bob], seed.room_b))
    assert exc_info.value.details["span_id"] == span.span_id


def test_sequential_span_without_transactions(db, seed, notifier):
    engine = RoutineEngine(db, notifier=notifier, supports_transactions=False)
    outcome = engine.assign_spanned(AB, 2, [4, 5, 6], content(seed.lab, [seed.alice], seed.lab_room))

    assert len(outcome.slots) == 3
    assert sum(slot.span_master for slot in outcome.slots) == 1
    assert len(cohort_rows(db, AB)) == 3


def test_sequential_span_failure_removes_written_members(db, seed, notifier, publisher, monkeypatch):
    engine = RoutineEngine(db, notifier=notifier, supports_transactions=False)
    error = OperationalError("INSERT INTO routine_slots", {}, Exception("connection lost"))
    monkeypatch.setattr(engine, "_commit_span_member", failing_commit(db, 2, error))

    with pytest.raises(PartialSpanFailureError) as exc_info:
        engine.assign_spanned(AB, 2, [4, 5, 6], content(seed.lab, [seed.alice], seed.lab_room))

    assert exc_info.value.details["manual_reconciliation_required"] is False
    assert cohort_rows(db, AB) == []
    assert reservation_count(db) == 0
    assert publisher.pending(QUEUE_NAME) == []


def test_sequential_span_cleanup_failure_requires_reconciliation(db, seed, notifier, monkeypatch):
    engine = RoutineEngine(db, notifier=notifier, supports_transactions=False)
    error = OperationalError("INSERT INTO routine_slots", {}, Exception("connection lost"))

    def discard(written):
        raise OperationalError("DELETE FROM routine_slots", {}, Exception("still down"))

    monkeypatch.setattr(engine, "_commit_span_member", failing_commit(db, 2, error))
    monkeypatch.setattr(engine, "_discard_span_members", discard)

    with pytest.raises(PartialSpanFailureError) as exc_info:
        engine.assign_spanned(AB, 2, [4, 5, 6], content(seed.lab, [seed.alice], seed.lab_room))

    details = exc_info.value.details
    assert exc_info.value.status_code == 500
    assert details["manual_reconciliation_required"] is True
    assert len(details["orphaned_slot_ids"]) == 1
    assert [slot.id for slot in cohort_rows(db, AB)] == details["orphaned_slot_ids"]

def test_sequential_span_first_member_failure_is_plain_write_error(db, seed, notifier, publisher, monkeypatch):
    engine = RoutineEngine(db, notifier=notifier, supports_transactions=False)
    error = OperationalError("INSERT INTO routine_slots", {}, Exception("connection lost"))
    monkeypatch.setattr(engine, "_commit_span_member", failing_commit(db, 1, error))

    with pytest.raises(SlotPersistenceError) as exc_info:
        engine.assign_spanned(AB, 2, [4, 5, 6], content(seed.lab, [seed.alice], seed.lab_room))

    assert exc_info.value.status_code == 500
    assert "span_id" in exc_info.value.details
    assert cohort_rows(db, AB) == []
    assert publisher.pending(QUEUE_NAME) == []


def test_sequential_span_unique_violation_surfaces_as_duplicate(db, seed, notifier, monkeypatch):
    engine = RoutineEngine(db, notifier=notifier, supports_transactions=False)
    error = IntegrityError("INSERT INTO slot_reservations", {}, Exception("UNIQUE constraint failed"))
    monkeypatch.setattr(engine, "_commit_span_member", failing_commit(db, 2, error))

    with pytest.raises(DuplicateSlotError) as exc_info:
        engine.assign_spanned(AB, 2, [4, 5, 6], content(seed.lab, [seed.alice], seed.lab_room))

    assert exc_info.value.status_code == 409
    assert cohort_rows(db, AB) == []
    assert reservation_count(db) == 0


def test_sequential_span_failure_clears_reused_row(db, seed, notifier, monkeypatch):
    engine = RoutineEngine(db, notifier=notifier, supports_transactions=False)
    placed = engine.assign(AB, 2, 4, content(seed.math, [seed.bob], seed.room_b))
    engine.clear_cell(placed.slot.id)
    error = OperationalError("INSERT INTO routine_slots", {}, Exception("connection lost"))
    monkeypatch.setattr(engine, "_commit_span_member", failing_commit(db, 2, error))

    with pytest.raises(PartialSpanFailureError) as exc_info:
        engine.assign_spanned(AB, 2, [4, 5, 6], content(seed.lab, [seed.alice], seed.lab_room))

    assert exc_info.value.details["manual_reconciliation_required"] is False
    [row] = cohort_rows(db, AB)
    assert row.id == placed.slot.id
    assert row.slot_index == 4
    assert row.subject_id is None
    assert row.span_id is None
    assert reservation_count(db) == 0


def test_clear_cell_keeps_row_and_frees_resources(routine_engine, seed, publisher, db):
    created = routine_engine.assign(AB, 0, 0, content(seed.dsa, [seed.alice], seed.room_a))

    outcome = routine_engine.clear_cell(created.slot.id)

    slot = outcome.slot
    assert slot.id == created.slot.id
    assert slot.subject_id is None
    assert slot.teacher_ids == []
    assert slot.room_id is None
    assert slot.class_type is None
    assert reservation_count(db) == 0
    assert routine_engine.teacher_availability(seed.alice.id, 0, 0).is_available
    assert routine_engine.get_routine(AB)[0] == {}

    message = publisher.pending(QUEUE_NAME)[-1]
    assert message["action"] == "clear"
    assert message["affectedTeacherIds"] == [seed.alice.id]


def test_clear_cell_on_span_member_clears_whole_span(routine_engine, seed):
    span = routine_engine.assign_spanned(AB, 3, [0, 1, 2], content(seed.lab, [seed.alice], seed.lab_room))

    outcome = routine_engine.clear_cell(span.slots[1].id)

    assert len(outcome.cleared_slots) == 3
    assert all(slot.span_id is None and slot.subject_id is None for slot in outcome.cleared_slots)


def test_clear_unknown_slot(routine_engine):
    with pytest.raises(ResourceNotFoundError):
        routine_engine.clear_cell("does-not-exist")


def test_update_moves_slot_within_cohort(routine_engine, seed, db):
    created = routine_engine.assign(AB, 0, 0, content(seed.dsa, [seed.alice], seed.room_a))
    request = UpdateRequest(
        subject_id=seed.dsa.id, teacher_ids=[seed.alice.id], room_id=seed.room_a.id, day_index=0, slot_index=1
    )

    outcome = routine_engine.update(created.slot.id, request)

    assert outcome.slot.id == created.slot.id
    assert (outcome.slot.day_index, outcome.slot.slot_index) == (0, 1)
    assert outcome.slot.time_slot_display == "11:05 - 11:55"
    assert routine_engine.teacher_availability(seed.alice.id, 0, 0).is_available
    assert not routine_engine.teacher_availability(seed.alice.id, 0, 1).is_available


def test_update_onto_cleared_placeholder_replaces_it(routine_engine, seed, db):
    placeholder = routine_engine.assign(AB, 0, 1, content(seed.math, [seed.bob], seed.room_b))
    routine_engine.clear_cell(placeholder.slot.id)
    created = routine_engine.assign(AB, 0, 0, content(seed.dsa, [seed.alice], seed.room_a))
    request = UpdateRequest(
        subject_id=seed.dsa.id, teacher_ids=[seed.alice.id], room_id=seed.room_a.id, slot_index=1
    )

    routine_engine.update(created.slot.id, request)

    rows = cohort_rows(db, AB)
    assert [(row.id, row.slot_index) for row in rows] == [(created.slot.id, 1)]


def test_update_conflict_leaves_slot_untouched(routine_engine, seed):
    routine_engine.assign(CD, 0, 0, content(seed.math, [seed.bob], seed.room_b))
    created = routine_engine.assign(AB, 0, 0, content(seed.dsa, [seed.alice], seed.room_a))
    request = UpdateRequest(subject_id=seed.dsa.id, teacher_ids=[seed.bob.id], room_id=seed.room_a.id)

    with pytest.raises(ConflictDetectedError):
        routine_engine.update(created.slot.id, request)

    slot = routine_engine.get_routine(AB)[0][0]
    assert slot.teacher_ids == [seed.alice.id]


def test_update_span_member_applies_to_group_but_cannot_move(routine_engine, seed):
    span = routine_engine.assign_spanned(AB, 4, [0, 1], content(seed.lab, [seed.alice], seed.lab_room))
    request = UpdateRequest(subject_id=seed.lab.id, teacher_ids=[seed.carol.id], room_id=seed.lab_room.id)

    routine_engine.update(span.slots[1].id, request)

    grid = routine_engine.get_routine(AB)[4]
    assert grid[0].teacher_short_names_display == ["CT"]
    assert grid[1].teacher_short_names_display == ["CT"]

    with pytest.raises(ValidationFailedError):
        routine_engine.update(span.slots[0].id, request.model_copy(update={"slot_index": 2}))


def test_delete_span_group(routine_engine, seed, publisher, db):
    span = routine_engine.assign_spanned(AB, 1, [4, 5, 6], content(seed.lab, [seed.alice], seed.lab_room))

    assert routine_engine.delete_span_group(span.span_id) == 3
    assert cohort_rows(db, AB) == []
    assert reservation_count(db) == 0
    assert publisher.pending(QUEUE_NAME)[-1]["action"] == "delete"

    with pytest.raises(ResourceNotFoundError):
        routine_engine.delete_span_group(span.span_id)


def test_delete_slot_rejects_span_member(routine_engine, seed):
    span = routine_engine.assign_spanned(AB, 1, [4, 5], content(seed.lab, [seed.alice], seed.lab_room))
    with pytest.raises(ValidationFailedError):
        routine_engine.delete_slot(span.slots[0].id)


def test_delete_slot(routine_engine, seed, db):
    created = routine_engine.assign(AB, 0, 0, content(seed.dsa, [seed.alice], seed.room_a))
    assert routine_engine.delete_slot(created.slot.id) == 1
    assert cohort_rows(db, AB) == []


def test_clear_cohort_counts_affected_teachers(routine_engine, seed, publisher, db):
    routine_engine.assign(AB, 0, 0, content(seed.dsa, [seed.alice], seed.room_a))
    routine_engine.assign(AB, 0, 1, content(seed.math, [seed.bob, seed.alice], seed.room_b))
    routine_engine.assign(CD, 0, 0, content(seed.math, [seed.carol], seed.room_b))

    outcome = routine_engine.clear_cohort(AB)

    assert outcome.deleted_count == 2
    assert outcome.affected_teacher_ids == {seed.alice.id, seed.bob.id}
    assert cohort_rows(db, AB) == []
    assert len(cohort_rows(db, CD)) == 1
    assert publisher.pending(QUEUE_NAME)[-1]["day"] is None

    with pytest.raises(ResourceNotFoundError):
        routine_engine.clear_cohort(AB)


def test_store_rejects_race_that_passed_conflict_check(routine_engine, seed, db, monkeypatch):
    routine_engine.assign(AB, 0, 0, content(seed.dsa, [seed.alice], seed.room_a))
    monkeypatch.setattr(routine_engine.conflicts, "detect_conflicts", lambda candidate, exclude=(): [])

    with pytest.raises(DuplicateSlotError) as exc_info:
        routine_engine.assign(CD, 0, 0, content(seed.math, [seed.alice], seed.room_b))

    assert exc_info.value.status_code == 409
    assert cohort_rows(db, CD) == []


def test_queue_failure_does_not_fail_the_write(db, seed):
    engine = RoutineEngine(db, notifier=ScheduleCacheNotifier(FailingPublisher(), queue_name=QUEUE_NAME))

    outcome = engine.assign(AB, 0, 0, content(seed.dsa, [seed.alice], seed.room_a))

    assert outcome.operation == "create"
    assert len(cohort_rows(db, AB)) == 1


def test_dispatch_failure_does_not_fail_the_write(db, seed, notifier):
    def broken_dispatch(func, *args):
        raise RuntimeError("task runner unavailable")

    engine = RoutineEngine(db, notifier=notifier, dispatch=broken_dispatch)
    outcome = engine.assign(AB, 0, 0, content(seed.dsa, [seed.alice], seed.room_a))
    assert outcome.slot.id


def test_resync_display_fields(routine_engine, seed, db):
    created = routine_engine.assign(AB, 0, 0, content(seed.dsa, [seed.alice], seed.room_a))
    seed.dsa.name = "Data Structures"
    seed.alice.short_name = "ASH"
    db.commit()

    assert routine_engine.resync_display_fields(AB) == 1
    db.refresh(created.slot)
    assert created.slot.subject_name_display == "Data Structures"
    assert created.slot.teacher_short_names_display == ["ASH"]
    assert routine_engine.resync_display_fields() == 0


def test_get_program_routines_groups_by_cohort(routine_engine, seed):
    routine_engine.assign(AB, 0, 0, content(seed.dsa, [seed.alice], seed.room_a))
    routine_engine.assign(CD, 0, 0, content(seed.math, [seed.bob], seed.room_b))

    routines = routine_engine.get_program_routines("bct")

    assert set(routines) == {(5, "AB"), (5, "CD")}
    assert routines[(5, "CD")][0][0].subject_code_display == "SH551"
    assert set(routines[(5, "AB")]) == set(range(7))
