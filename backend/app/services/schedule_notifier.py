from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timezone
import logging
from typing import Literal

from app.core.exceptions import QueuePublishError
from app.services.schedule_queue import QueuePublisher

logger = logging.getLogger(__name__)

MESSAGE_TYPE = "teacher_routine_update"

NotificationAction = Literal["create", "update", "clear", "delete"]


@dataclass(frozen=True)
class NotificationContext:
    action: NotificationAction
    program_code: str
    semester: int
    section: str
    day_index: int | None = None
    slot_index: int | None = None
    slot_id: str | None = None
    span_id: str | None = None

    def describe(self) -> str:
        cell = "" if self.day_index is None else f" day={self.day_index} slot={self.slot_index}"
        return f"{self.action} {self.program_code}/{self.semester}/{self.section}{cell}"


def build_schedule_message(
    affected_teacher_ids: list[str],
    context: NotificationContext,
    *,
    now: datetime | None = None,
) -> dict:
    message = {
        "type": MESSAGE_TYPE,
        "affectedTeacherIds": affected_teacher_ids,
        "action": context.action,
        "cohort": {
            "programCode": context.program_code,
            "semester": context.semester,
            "section": context.section,
        },
        "day": context.day_index,
        "slot": context.slot_index,
        "timestamp": (now or datetime.now(timezone.utc)).isoformat(),
    }
    if context.slot_id:
        message["slotId"] = context.slot_id
    if context.span_id:
        message["spanId"] = context.span_id
    return message


class ScheduleCacheNotifier:
    """Publishes "these teachers' schedules are stale" after a committed mutation.

    Best effort: a failed publish is logged with the affected ids so the
    schedules can be regenerated by hand, and is never raised to the caller.
    """

    def __init__(self, publisher: QueuePublisher, *, queue_name: str) -> None:
        self.publisher = publisher
        self.queue_name = queue_name

    def notify(self, affected_teacher_ids: Iterable[str], context: NotificationContext) -> bool:
        teacher_ids = sorted({str(item) for item in affected_teacher_ids if item})
        if not teacher_ids:
            return True

        message = build_schedule_message(teacher_ids, context)
        try:
            self.publisher.publish(self.queue_name, message)
        except QueuePublishError:
            logger.warning(
                "Failed to queue schedule update (%s). Teachers that may require manual schedule regeneration: %s",
                context.describe(),
                ", ".join(teacher_ids),
                exc_info=True,
            )
            return False

        logger.debug("Queued schedule update (%s) for teachers: %s", context.describe(), ", ".join(teacher_ids))
        return True
