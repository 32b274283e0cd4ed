from datetime import datetime

from sqlalchemy import DateTime, JSON, String
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from app.db.base import Base


class TeacherSchedule(Base):
    """Per-teacher weekly view derived from routine slots; rebuilt out of band."""

    __tablename__ = "teacher_schedules"

    teacher_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    teacher_short_name: Mapped[str] = mapped_column(String(20), nullable=False)
    teacher_full_name: Mapped[str] = mapped_column(String(200), nullable=False)
    schedule: Mapped[dict[str, list[dict]]] = mapped_column(JSON, nullable=False, default=dict)
    last_generated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
