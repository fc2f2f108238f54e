"""Initial schema: doctor_availability_windows, appointments.

Revision ID: 001_initial
Revises:
Create Date: 2026-10-18

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


revision: str = "001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

appointment_status = sa.Enum(
    "SCHEDULED", "CONFIRMED", "COMPLETED", "CANCELED", "NO_SHOW", name="appointmentstatus"
)


def upgrade() -> None:
    op.create_table(
        "doctor_availability_windows",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("doctor_id", sa.Integer(), nullable=False),
        sa.Column("weekday", sa.Integer(), nullable=False),
        sa.Column("start_time", sa.Time(), nullable=False),
        sa.Column("end_time", sa.Time(), nullable=False),
        sa.Column("slot_duration_minutes", sa.Integer(), nullable=True),
        sa.Column("location", sa.String(length=50), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        op.f("ix_doctor_availability_windows_doctor_id"), "doctor_availability_windows", ["doctor_id"], unique=False
    )
    op.create_index(
        "ix_availability_doctor_weekday", "doctor_availability_windows", ["doctor_id", "weekday"], unique=False
    )

    op.create_table(
        "appointments",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("doctor_id", sa.Integer(), nullable=False),
        sa.Column("patient_id", sa.Integer(), nullable=False),
        sa.Column("start_utc", sa.DateTime(), nullable=False),
        sa.Column("end_utc", sa.DateTime(), nullable=False),
        sa.Column("status", appointment_status, nullable=False),
        sa.Column("confirmed", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("confirmation_timestamp", sa.DateTime(), nullable=True),
        sa.Column("reason", sa.String(length=255), nullable=False),
        sa.Column("notes", sa.String(length=1000), nullable=True),
        sa.Column("location", sa.String(length=50), nullable=True),
        sa.Column("created_by", sa.String(length=100), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.Column("cancellation_reason", sa.String(length=255), nullable=True),
        sa.Column("canceled_at", sa.DateTime(), nullable=True),
        sa.Column("rescheduled_from_id", sa.Integer(), nullable=True),
        sa.ForeignKeyConstraint(["rescheduled_from_id"], ["appointments.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint("start_utc < end_utc", name="ck_appointments_start_before_end"),
    )
    op.create_index(op.f("ix_appointments_patient_id"), "appointments", ["patient_id"], unique=False)
    op.create_index("ix_appointments_doctor_start", "appointments", ["doctor_id", "start_utc"], unique=False)
    op.create_index("ix_appointments_status_start", "appointments", ["status", "start_utc"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_appointments_status_start", table_name="appointments")
    op.drop_index("ix_appointments_doctor_start", table_name="appointments")
    op.drop_index(op.f("ix_appointments_patient_id"), table_name="appointments")
    op.drop_table("appointments")
    appointment_status.drop(op.get_bind(), checkfirst=True)
    op.drop_index("ix_availability_doctor_weekday", table_name="doctor_availability_windows")
    op.drop_index(op.f("ix_doctor_availability_windows_doctor_id"), table_name="doctor_availability_windows")
    op.drop_table("doctor_availability_windows")
