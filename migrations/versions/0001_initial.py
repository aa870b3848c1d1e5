"""Initial schema: requests, engineers, inspections, appointments, assessments,
child records, audit_logs, sequence_counters, compensation_tasks

Revision ID: 0001_initial
Revises: None
Create Date: 2026-10-19
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB

revision: str = "0001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

JSON_TYPE = sa.JSON().with_variant(JSONB(), "postgresql")

STAGES = (
    "request_submitted",
    "request_accepted",
    "appointment_scheduled",
    "assessment_in_progress",
    "estimate_review",
    "estimate_sent",
    "estimate_finalized",
    "frc_in_progress",
    "frc_completed",
    "archived",
    "cancelled",
)

ENUM_TYPES = (
    "assessment_stage",
    "appointment_status",
    "inspection_status",
    "request_type",
    "request_status",
    "compensation_kind",
    "compensation_status",
)


def _created_at() -> sa.Column:
    return sa.Column(
        "created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False
    )


def _estimate_columns() -> list:
    return [
        sa.Column("currency", sa.String(3), nullable=False, server_default="ZAR"),
        sa.Column("labour_rate", sa.Numeric(10, 2), nullable=True),
        sa.Column("paint_rate", sa.Numeric(10, 2), nullable=True),
        sa.Column("vat_percentage", sa.Numeric(5, 2), nullable=False, server_default="15.00"),
        sa.Column("line_items", JSON_TYPE, nullable=False),
        sa.Column("subtotal", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("vat_amount", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("total", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("notes", sa.Text, nullable=True),
    ]


def upgrade() -> None:
    # -- engineers --
    op.create_table(
        "engineers",
        sa.Column("id", sa.Uuid, primary_key=True),
        sa.Column("name", sa.String(256), nullable=False),
        sa.Column("email", sa.String(320), nullable=False, unique=True),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        _created_at(),
    )

    # -- requests --
    op.create_table(
        "requests",
        sa.Column("id", sa.Uuid, primary_key=True),
        sa.Column("request_number", sa.String(32), nullable=False),
        sa.Column(
            "type",
            sa.Enum("insurance", "private", name="request_type", create_constraint=True),
            nullable=False,
        ),
        sa.Column(
            "status",
            sa.Enum("submitted", "accepted", "cancelled", name="request_status", create_constraint=True),
            nullable=False,
        ),
        sa.Column("claim_number", sa.String(128), nullable=True),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("owner_name", sa.String(256), nullable=True),
        sa.Column("vehicle_registration", sa.String(32), nullable=True),
        sa.Column("vehicle_make", sa.String(128), nullable=True),
        sa.Column("vehicle_model", sa.String(128), nullable=True),
        sa.Column("accepted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("accepted_by", sa.String(256), nullable=True),
        sa.Column("created_by", sa.String(256), nullable=True),
        _created_at(),
    )
    op.create_index("ix_requests_request_number", "requests", ["request_number"], unique=True)

    # -- inspections --
    op.create_table(
        "inspections",
        sa.Column("id", sa.Uuid, primary_key=True),
        sa.Column("inspection_number", sa.String(32), nullable=False),
        sa.Column("request_id", sa.Uuid, sa.ForeignKey("requests.id"), nullable=False, unique=True),
        sa.Column(
            "status",
            sa.Enum(
                "pending", "scheduled", "completed", "cancelled",
                name="inspection_status", create_constraint=True,
            ),
            nullable=False,
        ),
        _created_at(),
    )
    op.create_index(
        "ix_inspections_inspection_number", "inspections", ["inspection_number"], unique=True
    )

    # -- appointments --
    op.create_table(
        "appointments",
        sa.Column("id", sa.Uuid, primary_key=True),
        sa.Column("appointment_number", sa.String(32), nullable=False),
        sa.Column("request_id", sa.Uuid, sa.ForeignKey("requests.id"), nullable=False),
        sa.Column("inspection_id", sa.Uuid, sa.ForeignKey("inspections.id"), nullable=True),
        sa.Column("engineer_id", sa.Uuid, sa.ForeignKey("engineers.id"), nullable=False),
        sa.Column(
            "status",
            sa.Enum(
                "scheduled", "in_progress", "completed", "cancelled",
                name="appointment_status", create_constraint=True,
            ),
            nullable=False,
        ),
        sa.Column("appointment_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("location_address", sa.String(512), nullable=True),
        sa.Column("notes", sa.Text, nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancellation_reason", sa.Text, nullable=True),
        sa.Column("created_by", sa.String(256), nullable=True),
        _created_at(),
    )
    op.create_index(
        "ix_appointments_appointment_number", "appointments", ["appointment_number"], unique=True
    )
    op.create_index("ix_appointments_request_id", "appointments", ["request_id"])
    op.create_index("ix_appointments_engineer_id", "appointments", ["engineer_id"])

    # -- assessments --
    op.create_table(
        "assessments",
        sa.Column("id", sa.Uuid, primary_key=True),
        sa.Column("assessment_number", sa.String(32), nullable=False),
        sa.Column("request_id", sa.Uuid, sa.ForeignKey("requests.id"), nullable=False, unique=True),
        sa.Column(
            "appointment_id", sa.Uuid, sa.ForeignKey("appointments.id"), nullable=True, unique=True
        ),
        sa.Column("inspection_id", sa.Uuid, sa.ForeignKey("inspections.id"), nullable=True),
        sa.Column(
            "stage",
            sa.Enum(*STAGES, name="assessment_stage", create_constraint=True),
            nullable=False,
        ),
        sa.Column("created_by", sa.String(256), nullable=False),
        _created_at(),
        sa.Column(
            "updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False
        ),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("estimate_finalized_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint(
            "appointment_id IS NOT NULL OR stage IN "
            "('request_submitted', 'request_accepted', 'cancelled')",
            name="ck_assessments_appointment_required",
        ),
    )
    op.create_index(
        "ix_assessments_assessment_number", "assessments", ["assessment_number"], unique=True
    )
    op.create_index("ix_assessments_stage", "assessments", ["stage"])

    # -- child records --
    op.create_table(
        "assessment_tyres",
        sa.Column("id", sa.Uuid, primary_key=True),
        sa.Column("assessment_id", sa.Uuid, sa.ForeignKey("assessments.id"), nullable=False),
        sa.Column("position", sa.String(32), nullable=False),
        sa.Column("position_label", sa.String(64), nullable=True),
        sa.Column("tyre_make", sa.String(128), nullable=True),
        sa.Column("tyre_size", sa.String(64), nullable=True),
        sa.Column("tread_depth_mm", sa.Numeric(5, 2), nullable=True),
        sa.Column("condition", sa.String(64), nullable=True),
        sa.Column("notes", sa.Text, nullable=True),
        _created_at(),
        sa.UniqueConstraint("assessment_id", "position", name="uq_assessment_tyres_position"),
    )
    op.create_index("ix_assessment_tyres_assessment_id", "assessment_tyres", ["assessment_id"])

    op.create_table(
        "assessment_damage",
        sa.Column("id", sa.Uuid, primary_key=True),
        sa.Column(
            "assessment_id", sa.Uuid, sa.ForeignKey("assessments.id"), nullable=False, unique=True
        ),
        sa.Column("damage_area", sa.String(64), nullable=False, server_default="non_structural"),
        sa.Column("damage_type", sa.String(64), nullable=False, server_default="collision"),
        sa.Column("severity", sa.String(32), nullable=True),
        sa.Column("damage_description", sa.Text, nullable=True),
        sa.Column("affected_panels", JSON_TYPE, nullable=True),
        _created_at(),
    )

    op.create_table(
        "assessment_vehicle_values",
        sa.Column("id", sa.Uuid, primary_key=True),
        sa.Column(
            "assessment_id", sa.Uuid, sa.ForeignKey("assessments.id"), nullable=False, unique=True
        ),
        sa.Column("trade_value", sa.Numeric(12, 2), nullable=True),
        sa.Column("market_value", sa.Numeric(12, 2), nullable=True),
        sa.Column("retail_value", sa.Numeric(12, 2), nullable=True),
        sa.Column("sourced_from", sa.String(128), nullable=True),
        sa.Column("extras", JSON_TYPE, nullable=True),
        sa.Column("remarks", sa.Text, nullable=True),
        _created_at(),
    )

    op.create_table(
        "pre_incident_estimates",
        sa.Column("id", sa.Uuid, primary_key=True),
        sa.Column(
            "assessment_id", sa.Uuid, sa.ForeignKey("assessments.id"), nullable=False, unique=True
        ),
        *_estimate_columns(),
        _created_at(),
    )

    op.create_table(
        "assessment_estimates",
        sa.Column("id", sa.Uuid, primary_key=True),
        sa.Column(
            "assessment_id", sa.Uuid, sa.ForeignKey("assessments.id"), nullable=False, unique=True
        ),
        *_estimate_columns(),
        sa.Column("assessment_result", sa.String(32), nullable=True),
        _created_at(),
    )

    op.create_table(
        "assessment_frc",
        sa.Column("id", sa.Uuid, primary_key=True),
        sa.Column(
            "assessment_id", sa.Uuid, sa.ForeignKey("assessments.id"), nullable=False, unique=True
        ),
        sa.Column("status", sa.String(32), nullable=False, server_default="in_progress"),
        sa.Column("line_items", JSON_TYPE, nullable=False),
        sa.Column("quoted_total", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("actual_total", sa.Numeric(12, 2), nullable=True),
        sa.Column(
            "started_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False
        ),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
    )

    # -- audit_logs --
    op.create_table(
        "audit_logs",
        sa.Column("id", sa.Uuid, primary_key=True),
        sa.Column("entity_type", sa.String(64), nullable=False),
        sa.Column("entity_id", sa.String(64), nullable=False),
        sa.Column("action", sa.String(64), nullable=False),
        sa.Column("field_name", sa.String(64), nullable=True),
        sa.Column("old_value", sa.Text, nullable=True),
        sa.Column("new_value", sa.Text, nullable=True),
        sa.Column("changed_by", sa.String(256), nullable=True),
        sa.Column("metadata", JSON_TYPE, nullable=False),
        _created_at(),
    )
    op.create_index("ix_audit_logs_entity_id", "audit_logs", ["entity_id"])
    op.create_index("ix_audit_logs_created_at", "audit_logs", ["created_at"])

    # -- sequence_counters --
    op.create_table(
        "sequence_counters",
        sa.Column("kind", sa.String(8), primary_key=True),
        sa.Column("year", sa.Integer, primary_key=True, autoincrement=False),
        sa.Column("value", sa.Integer, nullable=False, server_default="0"),
    )

    # -- compensation_tasks --
    op.create_table(
        "compensation_tasks",
        sa.Column("id", sa.Uuid, primary_key=True),
        sa.Column(
            "kind",
            sa.Enum(
                "revert_stage", "provision_defaults", "provision_frc",
                name="compensation_kind", create_constraint=True,
            ),
            nullable=False,
        ),
        sa.Column("assessment_id", sa.Uuid, sa.ForeignKey("assessments.id"), nullable=False),
        sa.Column("payload", JSON_TYPE, nullable=False),
        sa.Column(
            "status",
            sa.Enum("pending", "done", "failed", name="compensation_status", create_constraint=True),
            nullable=False,
        ),
        sa.Column("attempts", sa.Integer, nullable=False, server_default="0"),
        sa.Column("last_error", sa.Text, nullable=True),
        _created_at(),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index(
        "ix_compensation_tasks_assessment_id", "compensation_tasks", ["assessment_id"]
    )
    op.create_index("ix_compensation_tasks_status", "compensation_tasks", ["status"])


def downgrade() -> None:
    op.drop_table("compensation_tasks")
    op.drop_table("sequence_counters")
    op.drop_table("audit_logs")
    op.drop_table("assessment_frc")
    op.drop_table("assessment_estimates")
    op.drop_table("pre_incident_estimates")
    op.drop_table("assessment_vehicle_values")
    op.drop_table("assessment_damage")
    op.drop_table("assessment_tyres")
    op.drop_table("assessments")
    op.drop_table("appointments")
    op.drop_table("inspections")
    op.drop_table("requests")
    op.drop_table("engineers")
    if op.get_bind().dialect.name == "postgresql":
        for name in ENUM_TYPES:
            op.execute(f"DROP TYPE IF EXISTS {name}")
