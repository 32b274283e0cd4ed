"""create routine slots and slot reservations

Revision ID: 20261019_0002
Revises: 20261019_0001
Create Date: 2026-10-19 00:00:00.000000

"""
from alembic import op
import sqlalchemy as sa

revision = "20261019_0002"
down_revision = "20261019_0001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    class_type = sa.Enum("lecture", "practical", "tutorial", name="class_type")
    reservation_type = sa.Enum("teacher", "room", name="reservation_type")

    op.create_table(
        "routine_slots",
        sa.Column("id", sa.String(length=36), primary_key=True, nullable=False),
        sa.Column("program_code", sa.String(length=20), nullable=False),
        sa.Column("semester", sa.Integer(), nullable=False),
        sa.Column("section", sa.String(length=10), nullable=False),
        sa.Column("day_index", sa.Integer(), nullable=False),
        sa.Column("slot_index", sa.Integer(), nullable=False),
        sa.Column("subject_id", sa.String(length=36), nullable=True),
        sa.Column("teacher_ids", sa.JSON(), nullable=False),
        sa.Column("room_id", sa.String(length=36), nullable=True),
        sa.Column("class_type", class_type, nullable=True),
        sa.Column("notes", sa.Text(), nullable=False, server_default=""),
        sa.Column("span_id", sa.String(length=36), nullable=True),
        sa.Column("span_master", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("subject_name_display", sa.String(length=200), nullable=True),
        sa.Column("subject_code_display", sa.String(length=50), nullable=True),
        sa.Column("teacher_short_names_display", sa.JSON(), nullable=False),
        sa.Column("room_name_display", sa.String(length=100), nullable=True),
        sa.Column("time_slot_display", sa.String(length=20), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint(
            "program_code",
            "semester",
            "section",
            "day_index",
            "slot_index",
            name="uq_routine_slots_cohort_cell",
        ),
        sa.CheckConstraint("day_index >= 0 AND day_index <= 6", name="ck_routine_slots_day_index"),
        sa.CheckConstraint("slot_index >= 0", name="ck_routine_slots_slot_index"),
    )
    op.create_index("ix_routine_slots_cohort", "routine_slots", ["program_code", "semester", "section"])
    op.create_index("ix_routine_slots_cell", "routine_slots", ["day_index", "slot_index"])
    op.create_index("ix_routine_slots_subject_id", "routine_slots", ["subject_id"])
    op.create_index("ix_routine_slots_span_id", "routine_slots", ["span_id"])

    op.create_table(
        "slot_reservations",
        sa.Column("id", sa.String(length=36), primary_key=True, nullable=False),
        sa.Column(
            "slot_id",
            sa.String(length=36),
            sa.ForeignKey("routine_slots.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("day_index", sa.Integer(), nullable=False),
        sa.Column("slot_index", sa.Integer(), nullable=False),
        sa.Column("resource_type", reservation_type, nullable=False),
        sa.Column("resource_id", sa.String(length=36), nullable=False),
        sa.UniqueConstraint(
            "day_index",
            "slot_index",
            "resource_type",
            "resource_id",
            name="uq_slot_reservations_resource_cell",
        ),
    )
    op.create_index("ix_slot_reservations_slot_id", "slot_reservations", ["slot_id"])


def downgrade() -> None:
    op.drop_index("ix_slot_reservations_slot_id", table_name="slot_reservations")
    op.drop_table("slot_reservations")
    op.drop_index("ix_routine_slots_span_id", table_name="routine_slots")
    op.drop_index("ix_routine_slots_subject_id", table_name="routine_slots")
    op.drop_index("ix_routine_slots_cell", table_name="routine_slots")
    op.drop_index("ix_routine_slots_cohort", table_name="routine_slots")
    op.drop_table("routine_slots")
    sa.Enum(name="reservation_type").drop(op.get_bind(), checkfirst=True)
    sa.Enum(name="class_type").drop(op.get_bind(), checkfirst=True)
