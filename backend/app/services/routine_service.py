from __future__ import annotations

from collections import defaultdict
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
import logging
from typing import Any, Literal, NoReturn
import uuid

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.config import Settings, get_settings
from app.core.exceptions import (
    ConflictDetectedError,
    DuplicateSlotError,
    PartialSpanFailureError,
    ResourceNotFoundError,
    SlotPersistenceError,
    ValidationFailedError,
)
from app.models.room import Room
from app.models.routine_slot import ClassType, RoutineSlot
from app.models.subject import Subject
from app.models.teacher import Teacher
from app.schemas.conflict import AvailabilityOut, ConflictCheckRequest, ConflictDetail
from app.schemas.routine import SlotContentIn, UpdateRequest
from app.services.audit import log_activity
from app.services.conflict_service import ConflictService, PlacementCandidate
from app.services.reference_data import ReferenceData, ResolvedReferences
from app.services.schedule_notifier import NotificationContext, ScheduleCacheNotifier

logger = logging.getLogger(__name__)

DAYS_PER_WEEK = 7

Operation = Literal["create", "update"]
Dispatcher = Callable[..., Any]
Grid = dict[int, dict[int, RoutineSlot]]


@dataclass(frozen=True)
class Cohort:
    program_code: str
    semester: int
    section: str

    @classmethod
    def of(cls, program_code: str, semester: int, section: str) -> "Cohort":
        return cls(program_code.strip().upper(), int(semester), section.strip().upper())

    def label(self) -> str:
        return f"{self.program_code}/{self.semester}/{self.section}"


@dataclass
class AssignmentOutcome:
    slot: RoutineSlot
    operation: Operation
    affected_teacher_ids: set[str] = field(default_factory=set)


@dataclass
class SpanOutcome:
    span_id: str
    slots: list[RoutineSlot]
    affected_teacher_ids: set[str] = field(default_factory=set)


@dataclass
class ClearOutcome:
    slot: RoutineSlot
    cleared_slots: list[RoutineSlot]
    affected_teacher_ids: set[str] = field(default_factory=set)


@dataclass
class CohortClearOutcome:
    deleted_count: int
    affected_teacher_ids: set[str] = field(default_factory=set)


def build_grid(slots: Iterable[RoutineSlot]) -> Grid:
    grid: Grid = {day: {} for day in range(DAYS_PER_WEEK)}
    for slot in slots:
        grid[slot.day_index][slot.slot_index] = slot
    return grid


def _teacher_union(slots: Iterable[RoutineSlot]) -> set[str]:
    teacher_ids: set[str] = set()
    for slot in slots:
        if slot.is_active and slot.is_occupied:
            teacher_ids.update(slot.teacher_ids or [])
    return teacher_ids


def _run_now(func: Callable[..., Any], *args: Any) -> None:
    func(*args)


class RoutineEngine:
    """Validates, conflict-checks and commits changes to cohort routines.

    Every mutation runs in the same order: local validation, reference
    resolution, conflict detection, write, commit, and only then the
    schedule-cache notification. Validation errors and conflicts leave the
    store untouched. The notification goes through ``dispatch`` (a FastAPI
    background task in the API) and its outcome never changes the result.
    """

    def __init__(
        self,
        db: Session,
        *,
        notifier: ScheduleCacheNotifier | None = None,
        settings: Settings | None = None,
        supports_transactions: bool | None = None,
        dispatch: Dispatcher | None = None,
    ):
        self.db = db
        self.settings = settings or get_settings()
        self.supports_transactions = (
            self.settings.supports_transactions if supports_transactions is None else supports_transactions
        )
        self.notifier = notifier
        self._dispatch = dispatch or _run_now
        self.references = ReferenceData(db)
        self.conflicts = ConflictService(db)

    # -- reads ---------------------------------------------------------------

    def get_routine(self, cohort: Cohort) -> Grid:
        self.references.program_by_code(cohort.program_code)
        statement = (
            select(RoutineSlot)
            .where(
                RoutineSlot.program_code == cohort.program_code,
                RoutineSlot.semester == cohort.semester,
                RoutineSlot.section == cohort.section,
                RoutineSlot.is_active.is_(True),
                RoutineSlot.subject_id.is_not(None),
            )
            .order_by(RoutineSlot.day_index, RoutineSlot.slot_index)
        )
        return build_grid(self.db.execute(statement).scalars())

    def get_program_routines(self, program_code: str) -> dict[tuple[int, str], Grid]:
        program = self.references.program_by_code(program_code)
        statement = (
            select(RoutineSlot)
            .where(
                RoutineSlot.program_code == program.code,
                RoutineSlot.is_active.is_(True),
                RoutineSlot.subject_id.is_not(None),
            )
            .order_by(RoutineSlot.semester, RoutineSlot.section, RoutineSlot.day_index, RoutineSlot.slot_index)
        )
        grouped: dict[tuple[int, str], list[RoutineSlot]] = defaultdict(list)
        for slot in self.db.execute(statement).scalars():
            grouped[(slot.semester, slot.section)].append(slot)
        return {key: build_grid(slots) for key, slots in grouped.items()}

    def check_conflicts(self, request: ConflictCheckRequest) -> list[ConflictDetail]:
        cohort = Cohort.of(request.program_code, request.semester, request.section)
        self._validate_cell(request.day_index, request.slot_index)
        candidate = self._candidate(
            cohort, request.day_index, request.slot_index, request.teacher_ids, request.room_id
        )
        excluded = [request.exclude_slot_id] if request.exclude_slot_id else []
        return self.conflicts.detect_conflicts(candidate, excluded)

    def teacher_availability(self, teacher_id: str, day_index: int, slot_index: int) -> AvailabilityOut:
        self._validate_cell(day_index, slot_index)
        return self.conflicts.teacher_availability(teacher_id, day_index, slot_index)

    def room_availability(self, room_id: str, day_index: int, slot_index: int) -> AvailabilityOut:
        self._validate_cell(day_index, slot_index)
        return self.conflicts.room_availability(room_id, day_index, slot_index)

    # -- single cell ---------------------------------------------------------

    def assign(self, cohort: Cohort, day_index: int, slot_index: int, content: SlotContentIn) -> AssignmentOutcome:
        self._validate_cohort(cohort)
        self._validate_cell(day_index, slot_index)
        teacher_ids = self._validate_content(content)

        refs = self._resolve(cohort, slot_index, content, teacher_ids)
        existing = self._cell_row(cohort, day_index, slot_index)
        had_occupant = existing is not None and existing.is_active and existing.is_occupied
        if had_occupant and existing.span_id:
            raise ValidationFailedError(
                "Cell belongs to a spanned class; update or delete the span group instead",
                details={"slot_id": existing.id, "span_id": existing.span_id},
            )

        self._ensure_free(
            self._candidate(cohort, day_index, slot_index, teacher_ids, content.room_id),
            [existing.id] if existing is not None else [],
        )

        prior_teacher_ids = set(existing.teacher_ids or []) if had_occupant else set()
        slot = existing
        if slot is None:
            slot = self._new_slot(cohort, day_index, slot_index)
            self.db.add(slot)
        self._write_content(slot, content, teacher_ids, refs)
        operation: Operation = "update" if had_occupant else "create"

        log_activity(
            self.db,
            action=f"routine.{operation}",
            entity_type="routine_slot",
            entity_id=slot.id,
            details={
                "cohort": cohort.label(),
                "day_index": day_index,
                "slot_index": slot_index,
                "subject_id": content.subject_id,
                "teacher_ids": teacher_ids,
                "room_id": content.room_id,
            },
        )
        self._commit()
        self.db.refresh(slot)
        logger.info(
            "%s %s in %s day=%d slot=%d (slot %s)",
            "Updated" if had_occupant else "Assigned",
            refs.subject.code,
            cohort.label(),
            day_index,
            slot_index,
            slot.id,
        )

        affected = prior_teacher_ids | set(teacher_ids)
        self._notify(
            affected,
            NotificationContext(
                action=operation,
                program_code=cohort.program_code,
                semester=cohort.semester,
                section=cohort.section,
                day_index=day_index,
                slot_index=slot_index,
                slot_id=slot.id,
            ),
        )
        return AssignmentOutcome(slot=slot, operation=operation, affected_teacher_ids=affected)

    # -- spanned -------------------------------------------------------------

    def assign_spanned(
        self,
        cohort: Cohort,
        day_index: int,
        slot_indexes: list[int],
        content: SlotContentIn,
    ) -> SpanOutcome:
        self._validate_cohort(cohort)
        indexes = self._validate_span_indexes(day_index, slot_indexes)
        teacher_ids = self._validate_content(content)

        # Every cell is checked before anything is written; the first conflict aborts.
        planned: list[tuple[int, RoutineSlot | None, ResolvedReferences]] = []
        for slot_index in indexes:
            refs = self._resolve(cohort, slot_index, content, teacher_ids)
            existing = self._cell_row(cohort, day_index, slot_index)
            self._ensure_free(self._candidate(cohort, day_index, slot_index, teacher_ids, content.room_id))
            planned.append((slot_index, existing, refs))

        span_id = str(uuid.uuid4())
        if self.supports_transactions:
            members = self._create_span_in_transaction(cohort, day_index, span_id, planned, content, teacher_ids)
        else:
            members = self._create_span_sequentially(cohort, day_index, span_id, planned, content, teacher_ids)
        logger.info(
            "Assigned spanned class %s in %s day=%d slots=%s",
            span_id,
            cohort.label(),
            day_index,
            ",".join(str(index) for index in indexes),
        )

        affected = set(teacher_ids)
        self._notify(
            affected,
            NotificationContext(
                action="create",
                program_code=cohort.program_code,
                semester=cohort.semester,
                section=cohort.section,
                day_index=day_index,
                slot_index=indexes[0],
                span_id=span_id,
            ),
        )
        return SpanOutcome(span_id=span_id, slots=members, affected_teacher_ids=affected)

    def _build_span_member(
        self,
        cohort: Cohort,
        day_index: int,
        span_id: str,
        slot_index: int,
        existing: RoutineSlot | None,
        refs: ResolvedReferences,
        content: SlotContentIn,
        teacher_ids: list[str],
        *,
        master: bool,
    ) -> tuple[RoutineSlot, bool]:
        slot = existing
        is_new = slot is None
        if slot is None:
            slot = self._new_slot(cohort, day_index, slot_index)
            self.db.add(slot)
        self._write_content(slot, content, teacher_ids, refs)
        slot.span_id = span_id
        slot.span_master = master
        return slot, is_new

    def _span_audit(self, cohort: Cohort, day_index: int, span_id: str, members: list[RoutineSlot]) -> None:
        log_activity(
            self.db,
            action="routine.span.create",
            entity_type="routine_span",
            entity_id=span_id,
            details={
                "cohort": cohort.label(),
                "day_index": day_index,
                "slot_indexes": [member.slot_index for member in members],
                "slot_ids": [member.id for member in members],
            },
        )

    def _create_span_in_transaction(
        self,
        cohort: Cohort,
        day_index: int,
        span_id: str,
        planned: list[tuple[int, RoutineSlot | None, ResolvedReferences]],
        content: SlotContentIn,
        teacher_ids: list[str],
    ) -> list[RoutineSlot]:
        members: list[RoutineSlot] = []
        for position, (slot_index, existing, refs) in enumerate(planned):
            slot, _ = self._build_span_member(
                cohort, day_index, span_id, slot_index, existing, refs, content, teacher_ids, master=position == 0
            )
            members.append(slot)
        self._span_audit(cohort, day_index, span_id, members)
        self._commit()
        for member in members:
            self.db.refresh(member)
        return members

    def _create_span_sequentially(
        self,
        cohort: Cohort,
        day_index: int,
        span_id: str,
        planned: list[tuple[int, RoutineSlot | None, ResolvedReferences]],
        content: SlotContentIn,
        teacher_ids: list[str],
    ) -> list[RoutineSlot]:
        written: list[tuple[RoutineSlot, bool]] = []
        for position, (slot_index, existing, refs) in enumerate(planned):
            try:
                slot, is_new = self._build_span_member(
                    cohort, day_index, span_id, slot_index, existing, refs, content, teacher_ids, master=position == 0
                )
                self._commit_span_member()
            except SQLAlchemyError as exc:
                self.db.rollback()
                logger.error(
                    "Spanned assignment %s failed at slot %d after %d member(s) were written",
                    span_id,
                    slot_index,
                    len(written),
                )
                if not written:
                    self._raise_write_failure(span_id, exc)
                self._compensate_span(span_id, written, exc)
            written.append((slot, is_new))

        members = [slot for slot, _ in written]
        self._span_audit(cohort, day_index, span_id, members)
        self._commit()
        for member in members:
            self.db.refresh(member)
        return members

    def _commit_span_member(self) -> None:
        self.db.commit()

    def _discard_span_members(self, written: list[tuple[RoutineSlot, bool]]) -> None:
        for slot, is_new in written:
            if is_new:
                self.db.delete(slot)
            else:
                self._clear_content(slot)
        self.db.commit()

    @staticmethod
    def _raise_write_failure(span_id: str, cause: SQLAlchemyError) -> NoReturn:
        if isinstance(cause, IntegrityError):
            raise DuplicateSlotError(details={"span_id": span_id}) from cause
        raise SlotPersistenceError(details={"span_id": span_id}) from cause

    def _compensate_span(
        self,
        span_id: str,
        written: list[tuple[RoutineSlot, bool]],
        cause: SQLAlchemyError,
    ) -> NoReturn:
        written_ids = [slot.id for slot, _ in written]
        try:
            self._discard_span_members(written)
        except SQLAlchemyError as cleanup_exc:
            self.db.rollback()
            logger.error(
                "Cleanup of partially created span %s failed; slots need manual reconciliation: %s",
                span_id,
                ", ".join(written_ids),
                exc_info=cleanup_exc,
            )
            raise PartialSpanFailureError(
                "Spanned assignment failed part-way and cleanup did not complete; some data may be inconsistent",
                span_id=span_id,
                orphaned_slot_ids=written_ids,
            ) from cause

        if isinstance(cause, IntegrityError):
            raise DuplicateSlotError(details={"span_id": span_id}) from cause
        raise PartialSpanFailureError(
            "Spanned assignment failed part-way; members already written were rolled back",
            span_id=span_id,
            orphaned_slot_ids=[],
        ) from cause

    # -- update / clear / delete ---------------------------------------------

    def update(self, slot_id: str, content: UpdateRequest) -> AssignmentOutcome:
        slot = self._get_slot(slot_id)
        cohort = Cohort(slot.program_code, slot.semester, slot.section)
        teacher_ids = self._validate_content(content)
        day_index = slot.day_index if content.day_index is None else content.day_index
        slot_index = slot.slot_index if content.slot_index is None else content.slot_index
        self._validate_cell(day_index, slot_index)
        moving = (day_index, slot_index) != (slot.day_index, slot.slot_index)

        if slot.span_id:
            if moving:
                raise ValidationFailedError(
                    "Members of a spanned class cannot be moved individually; delete the span group and assign it again",
                    details={"span_id": slot.span_id},
                )
            members = self._span_members(slot.span_id)
        else:
            members = [slot]
        member_ids = [member.id for member in members]

        resolved: list[tuple[RoutineSlot, ResolvedReferences, int, int]] = []
        for member in members:
            target_day, target_slot = (day_index, slot_index) if member is slot else (member.day_index, member.slot_index)
            refs = self._resolve(cohort, target_slot, content, teacher_ids)
            self._ensure_free(
                self._candidate(cohort, target_day, target_slot, teacher_ids, content.room_id),
                member_ids,
            )
            resolved.append((member, refs, target_day, target_slot))

        if moving:
            placeholder = self._cell_row(cohort, day_index, slot_index)
            if placeholder is not None and placeholder.id != slot.id:
                # Only a cleared or deactivated row can still hold the target cell here.
                self.db.delete(placeholder)
                self.db.flush()

        prior_teacher_ids = _teacher_union(members)
        for member, refs, target_day, target_slot in resolved:
            member.day_index = target_day
            member.slot_index = target_slot
            self._write_content(member, content, teacher_ids, refs)

        log_activity(
            self.db,
            action="routine.update",
            entity_type="routine_slot",
            entity_id=slot.id,
            details={
                "cohort": cohort.label(),
                "day_index": day_index,
                "slot_index": slot_index,
                "span_id": slot.span_id,
                "subject_id": content.subject_id,
                "teacher_ids": teacher_ids,
                "room_id": content.room_id,
            },
        )
        self._commit()
        for member in members:
            self.db.refresh(member)
        logger.info("Updated routine slot %s (%s day=%d slot=%d)", slot.id, cohort.label(), day_index, slot_index)

        affected = prior_teacher_ids | set(teacher_ids)
        self._notify(
            affected,
            NotificationContext(
                action="update",
                program_code=cohort.program_code,
                semester=cohort.semester,
                section=cohort.section,
                day_index=day_index,
                slot_index=slot_index,
                slot_id=slot.id,
                span_id=slot.span_id,
            ),
        )
        return AssignmentOutcome(slot=slot, operation="update", affected_teacher_ids=affected)

    def clear_cell(self, slot_id: str) -> ClearOutcome:
        """Null the content of a slot but keep the row.

        A member of a spanned class cannot be cleared on its own without
        breaking the group, so the whole group is cleared.
        """
        slot = self._get_slot(slot_id)
        members = self._span_members(slot.span_id) if slot.span_id else [slot]
        prior_teacher_ids = _teacher_union(members)
        span_id = slot.span_id

        for member in members:
            self._clear_content(member)
        log_activity(
            self.db,
            action="routine.clear",
            entity_type="routine_slot",
            entity_id=slot.id,
            details={"span_id": span_id, "slot_ids": [member.id for member in members]},
        )
        self._commit()
        for member in members:
            self.db.refresh(member)
        logger.info("Cleared %d routine slot(s) starting at %s", len(members), slot.id)

        self._notify(
            prior_teacher_ids,
            NotificationContext(
                action="clear",
                program_code=slot.program_code,
                semester=slot.semester,
                section=slot.section,
                day_index=slot.day_index,
                slot_index=slot.slot_index,
                slot_id=slot.id,
                span_id=span_id,
            ),
        )
        return ClearOutcome(slot=slot, cleared_slots=members, affected_teacher_ids=prior_teacher_ids)

    def delete_slot(self, slot_id: str) -> int:
        slot = self._get_slot(slot_id)
        if slot.span_id:
            raise ValidationFailedError(
                "Slot belongs to a spanned class; delete the span group instead",
                details={"span_id": slot.span_id},
            )
        prior_teacher_ids = _teacher_union([slot])
        context = NotificationContext(
            action="delete",
            program_code=slot.program_code,
            semester=slot.semester,
            section=slot.section,
            day_index=slot.day_index,
            slot_index=slot.slot_index,
            slot_id=slot.id,
        )

        self.db.delete(slot)
        log_activity(self.db, action="routine.delete", entity_type="routine_slot", entity_id=slot_id)
        self._commit()
        logger.info("Deleted routine slot %s (%s)", slot_id, context.describe())

        self._notify(prior_teacher_ids, context)
        return 1

    def delete_span_group(self, span_id: str) -> int:
        members = self._span_members(span_id)
        if not members:
            raise ResourceNotFoundError("Span", span_id)
        prior_teacher_ids = _teacher_union(members)
        first = members[0]
        context = NotificationContext(
            action="delete",
            program_code=first.program_code,
            semester=first.semester,
            section=first.section,
            day_index=first.day_index,
            slot_index=first.slot_index,
            span_id=span_id,
        )

        for member in members:
            self.db.delete(member)
        log_activity(
            self.db,
            action="routine.span.delete",
            entity_type="routine_span",
            entity_id=span_id,
            details={"slot_ids": [member.id for member in members]},
        )
        self._commit()
        logger.info("Deleted span group %s (%d slot(s))", span_id, len(members))

        self._notify(prior_teacher_ids, context)
        return len(members)

    def clear_cohort(self, cohort: Cohort) -> CohortClearOutcome:
        slots = list(
            self.db.execute(
                select(RoutineSlot).where(
                    RoutineSlot.program_code == cohort.program_code,
                    RoutineSlot.semester == cohort.semester,
                    RoutineSlot.section == cohort.section,
                    RoutineSlot.is_active.is_(True),
                )
            ).scalars()
        )
        if not slots:
            raise ResourceNotFoundError(
                "Routine", cohort.label(), message=f"No routine slots found for {cohort.label()}"
            )
        prior_teacher_ids = _teacher_union(slots)

        for slot in slots:
            self.db.delete(slot)
        log_activity(
            self.db,
            action="routine.cohort.clear",
            entity_type="routine",
            entity_id=cohort.label(),
            details={"deleted_count": len(slots), "affected_teacher_count": len(prior_teacher_ids)},
        )
        self._commit()
        logger.info("Cleared routine %s: %d slot(s) deleted", cohort.label(), len(slots))

        self._notify(
            prior_teacher_ids,
            NotificationContext(
                action="delete",
                program_code=cohort.program_code,
                semester=cohort.semester,
                section=cohort.section,
            ),
        )
        return CohortClearOutcome(deleted_count=len(slots), affected_teacher_ids=prior_teacher_ids)

    def resync_display_fields(self, cohort: Cohort | None = None) -> int:
        """Re-copy subject, teacher, room and time-slot display values onto occupied slots."""
        statement = select(RoutineSlot).where(
            RoutineSlot.is_active.is_(True),
            RoutineSlot.subject_id.is_not(None),
        )
        if cohort is not None:
            statement = statement.where(
                RoutineSlot.program_code == cohort.program_code,
                RoutineSlot.semester == cohort.semester,
                RoutineSlot.section == cohort.section,
            )
        time_slots = self.references.time_slot_map()

        updated = 0
        for slot in self.db.execute(statement).scalars():
            before = self._display_values(slot)
            subject = self.db.get(Subject, slot.subject_id)
            if subject is not None:
                slot.subject_name_display = subject.name
                slot.subject_code_display = subject.code
            room = self.db.get(Room, slot.room_id) if slot.room_id else None
            if room is not None:
                slot.room_name_display = room.name
            teachers = [self.db.get(Teacher, teacher_id) for teacher_id in slot.teacher_ids or []]
            if teachers and all(teacher is not None for teacher in teachers):
                slot.teacher_short_names_display = [teacher.display_short_name for teacher in teachers]
            else:
                logger.warning("Routine slot %s references missing teachers; keeping display names", slot.id)
            time_slot = time_slots.get(slot.slot_index)
            if time_slot is not None:
                slot.time_slot_display = time_slot.time_range
            if self._display_values(slot) != before:
                updated += 1

        if updated:
            log_activity(
                self.db,
                action="routine.display.resync",
                entity_type="routine",
                entity_id=cohort.label() if cohort is not None else None,
                details={"updated_count": updated},
            )
            self._commit()
        logger.info("Re-synced display fields on %d routine slot(s)", updated)
        return updated

    # -- helpers -------------------------------------------------------------

    def _validate_cohort(self, cohort: Cohort) -> None:
        if not cohort.program_code:
            raise ValidationFailedError("Program code is required")
        if not 1 <= cohort.semester <= self.settings.max_semester:
            raise ValidationFailedError(
                f"Semester must be between 1 and {self.settings.max_semester}",
                details={"semester": cohort.semester},
            )
        if cohort.section not in self.settings.allowed_sections:
            raise ValidationFailedError(
                f"Section must be one of: {', '.join(self.settings.allowed_sections)}",
                details={"section": cohort.section},
            )

    def _validate_cell(self, day_index: int, slot_index: int) -> None:
        if not 0 <= day_index < DAYS_PER_WEEK:
            raise ValidationFailedError(
                f"day_index must be between 0 and {DAYS_PER_WEEK - 1}", details={"day_index": day_index}
            )
        if slot_index < 0:
            raise ValidationFailedError("slot_index must not be negative", details={"slot_index": slot_index})

    def _validate_span_indexes(self, day_index: int, slot_indexes: list[int]) -> list[int]:
        if not slot_indexes:
            raise ValidationFailedError("At least one slot index is required")
        for slot_index in slot_indexes:
            self._validate_cell(day_index, slot_index)
        if len(set(slot_indexes)) != len(slot_indexes):
            raise ValidationFailedError("Slot indexes must be distinct", details={"slot_indexes": slot_indexes})
        ordered = sorted(slot_indexes)
        if ordered[-1] - ordered[0] + 1 != len(ordered):
            raise ValidationFailedError(
                "Slot indexes of a spanned class must be consecutive", details={"slot_indexes": ordered}
            )
        return ordered

    def _validate_content(self, content: SlotContentIn) -> list[str]:
        teacher_ids = list(dict.fromkeys(content.teacher_ids))
        if not teacher_ids:
            raise ValidationFailedError("At least one teacher must be assigned")
        try:
            ClassType(content.class_type)
        except ValueError as exc:
            raise ValidationFailedError(
                "class_type must be one of L, P, T", details={"class_type": str(content.class_type)}
            ) from exc
        return teacher_ids

    def _resolve(
        self, cohort: Cohort, slot_index: int, content: SlotContentIn, teacher_ids: list[str]
    ) -> ResolvedReferences:
        return self.references.resolve_placement(
            program_code=cohort.program_code,
            slot_index=slot_index,
            subject_id=content.subject_id,
            teacher_ids=teacher_ids,
            room_id=content.room_id,
        )

    @staticmethod
    def _candidate(
        cohort: Cohort,
        day_index: int,
        slot_index: int,
        teacher_ids: Iterable[str],
        room_id: str | None,
    ) -> PlacementCandidate:
        return PlacementCandidate(
            program_code=cohort.program_code,
            semester=cohort.semester,
            section=cohort.section,
            day_index=day_index,
            slot_index=slot_index,
            teacher_ids=tuple(teacher_ids),
            room_id=room_id,
        )

    def _ensure_free(self, candidate: PlacementCandidate, exclude_slot_ids: Iterable[str] = ()) -> None:
        conflicts = self.conflicts.detect_conflicts(candidate, exclude_slot_ids)
        if conflicts:
            logger.info(
                "Rejected placement in %s/%d/%s day=%d slot=%d: %d conflict(s)",
                candidate.program_code,
                candidate.semester,
                candidate.section,
                candidate.day_index,
                candidate.slot_index,
                len(conflicts),
            )
            raise ConflictDetectedError(conflicts, day_index=candidate.day_index, slot_index=candidate.slot_index)

    def _cell_row(self, cohort: Cohort, day_index: int, slot_index: int) -> RoutineSlot | None:
        return self.db.execute(
            select(RoutineSlot).where(
                RoutineSlot.program_code == cohort.program_code,
                RoutineSlot.semester == cohort.semester,
                RoutineSlot.section == cohort.section,
                RoutineSlot.day_index == day_index,
                RoutineSlot.slot_index == slot_index,
            )
        ).scalar_one_or_none()

    def _get_slot(self, slot_id: str) -> RoutineSlot:
        slot = self.db.get(RoutineSlot, slot_id)
        if slot is None or not slot.is_active:
            raise ResourceNotFoundError("RoutineSlot", slot_id)
        return slot

    def _span_members(self, span_id: str) -> list[RoutineSlot]:
        return list(
            self.db.execute(
                select(RoutineSlot).where(RoutineSlot.span_id == span_id).order_by(RoutineSlot.slot_index)
            ).scalars()
        )

    @staticmethod
    def _new_slot(cohort: Cohort, day_index: int, slot_index: int) -> RoutineSlot:
        return RoutineSlot(
            id=str(uuid.uuid4()),
            program_code=cohort.program_code,
            semester=cohort.semester,
            section=cohort.section,
            day_index=day_index,
            slot_index=slot_index,
            teacher_ids=[],
            notes="",
            span_master=False,
            teacher_short_names_display=[],
            is_active=True,
        )

    @staticmethod
    def _write_content(
        slot: RoutineSlot, content: SlotContentIn, teacher_ids: list[str], refs: ResolvedReferences
    ) -> None:
        slot.subject_id = refs.subject.id
        slot.teacher_ids = list(teacher_ids)
        slot.room_id = refs.room.id
        slot.class_type = ClassType(content.class_type)
        slot.notes = content.notes or ""
        slot.is_active = True

        slot.subject_name_display = refs.subject.name
        slot.subject_code_display = refs.subject.code
        slot.teacher_short_names_display = [teacher.display_short_name for teacher in refs.teachers]
        slot.room_name_display = refs.room.name
        slot.time_slot_display = refs.time_slot.time_range
        slot.sync_reservations()

    @staticmethod
    def _clear_content(slot: RoutineSlot) -> None:
        slot.subject_id = None
        slot.teacher_ids = []
        slot.room_id = None
        slot.class_type = None
        slot.notes = ""
        slot.span_id = None
        slot.span_master = False
        slot.subject_name_display = None
        slot.subject_code_display = None
        slot.teacher_short_names_display = []
        slot.room_name_display = None
        slot.sync_reservations()

    @staticmethod
    def _display_values(slot: RoutineSlot) -> tuple:
        return (
            slot.subject_name_display,
            slot.subject_code_display,
            tuple(slot.teacher_short_names_display or []),
            slot.room_name_display,
            slot.time_slot_display,
        )

    def _commit(self) -> None:
        try:
            self.db.commit()
        except IntegrityError as exc:
            self.db.rollback()
            logger.warning("Store rejected routine write: %s", exc.orig)
            raise DuplicateSlotError() from exc

    def _notify(self, affected_teacher_ids: set[str], context: NotificationContext) -> None:
        if self.notifier is None or not affected_teacher_ids:
            return
        try:
            self._dispatch(self.notifier.notify, set(affected_teacher_ids), context)
        except Exception:
            # The write is already committed; a dispatch failure only costs cache freshness.
            logger.exception(
                "Could not dispatch schedule notification (%s) for teachers: %s",
                context.describe(),
                ", ".join(sorted(affected_teacher_ids)),
            )
