"""
Initial schema - machines, operators, operations, status history,
quality tests, shift records and archive entries

Revision ID: 001
Revises: None
Create Date: 2026-10-19
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects.postgresql import UUID

revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    # 1. Machines
    op.create_table(
        "machines",
        sa.Column("machine_id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("code", sa.String(50), nullable=False, unique=True),
        sa.Column("location", sa.String(255)),
        sa.Column("status", sa.String(20), nullable=False, server_default="STOPPED"),
        sa.Column("production_speed", sa.Float, nullable=False, server_default="1.0"),
        sa.Column("target_production", sa.Integer, nullable=False, server_default="0"),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint(
            "status IN ('RUNNING', 'STOPPED', 'MAINTENANCE', 'OFF_SHIFT')",
            name="ck_machine_status",
        ),
        sa.CheckConstraint("production_speed >= 0", name="ck_machine_speed_non_negative"),
    )

    # 2. Operators
    op.create_table(
        "operators",
        sa.Column("operator_id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("email", sa.String(255), nullable=False, unique=True),
        sa.Column("role", sa.String(20), nullable=False, server_default="OPERATOR"),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint("role IN ('OPERATOR', 'LEADER', 'MANAGER', 'ADMIN')", name="ck_operator_role"),
    )

    # 3. Machine Operations
    op.create_table(
        "machine_operations",
        sa.Column("operation_id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("machine_id", UUID(as_uuid=True), sa.ForeignKey("machines.machine_id"), nullable=False),
        sa.Column("operator_id", UUID(as_uuid=True), sa.ForeignKey("operators.operator_id"), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="ACTIVE"),
        sa.Column("start_time", sa.DateTime, nullable=False),
        sa.Column("end_time", sa.DateTime),
        sa.Column("notes", sa.Text),
        sa.CheckConstraint("status IN ('ACTIVE', 'COMPLETED', 'CANCELLED')", name="ck_operation_status"),
    )
    op.create_index("ix_machine_operations_machine_status", "machine_operations", ["machine_id", "status"])
    op.create_index("ix_machine_operations_operator_status", "machine_operations", ["operator_id", "status"])

    # 4. Machine Status History
    op.create_table(
        "machine_status_history",
        sa.Column("id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("machine_id", UUID(as_uuid=True), sa.ForeignKey("machines.machine_id"), nullable=False),
        sa.Column("operator_id", UUID(as_uuid=True), sa.ForeignKey("operators.operator_id")),
        sa.Column("previous_status", sa.String(20)),
        sa.Column("new_status", sa.String(20), nullable=False),
        sa.Column("reason", sa.String(255)),
        sa.Column("notes", sa.Text),
        sa.Column("created_at", sa.DateTime, nullable=False),
    )
    op.create_index("ix_status_history_machine_time", "machine_status_history", ["machine_id", "created_at"])

    # 5. Quality Tests
    op.create_table(
        "quality_tests",
        sa.Column("test_id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("machine_id", UUID(as_uuid=True), sa.ForeignKey("machines.machine_id"), nullable=False),
        sa.Column("operator_id", UUID(as_uuid=True), sa.ForeignKey("operators.operator_id")),
        sa.Column("result", sa.String(20), nullable=False),
        sa.Column("created_at", sa.DateTime, nullable=False),
        sa.CheckConstraint("result IN ('APPROVED', 'REJECTED')", name="ck_quality_test_result"),
    )
    op.create_index("ix_quality_tests_machine_time", "quality_tests", ["machine_id", "created_at"])

    # 6. Shift Records
    op.create_table(
        "shift_records",
        sa.Column("shift_record_id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column("machine_id", UUID(as_uuid=True), sa.ForeignKey("machines.machine_id"), nullable=False),
        sa.Column("operator_id", UUID(as_uuid=True), sa.ForeignKey("operators.operator_id"), nullable=False),
        sa.Column("shift_date", sa.Date, nullable=False),
        sa.Column("shift_type", sa.String(10), nullable=False),
        sa.Column("start_time", sa.DateTime, nullable=False),
        sa.Column("end_time", sa.DateTime, nullable=False),
        sa.Column("total_production", sa.Integer, nullable=False, server_default="0"),
        sa.Column("target_production", sa.Integer, nullable=False, server_default="0"),
        sa.Column("efficiency", sa.Float, nullable=False, server_default="0"),
        sa.Column("downtime", sa.Float, nullable=False, server_default="0"),
        sa.Column("quality_tests", sa.Integer, nullable=False, server_default="0"),
        sa.Column("approved_tests", sa.Integer, nullable=False, server_default="0"),
        sa.Column("rejected_tests", sa.Integer, nullable=False, server_default="0"),
        sa.Column("detail", sa.JSON),
        sa.Column("last_accumulated_at", sa.DateTime),
        sa.Column("is_active", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("is_archived", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("archived_at", sa.DateTime),
        sa.Column("version", sa.Integer, nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint("shift_type IN ('DAY', 'NIGHT')", name="ck_shift_record_type"),
        sa.CheckConstraint("total_production >= 0", name="ck_shift_record_production_non_negative"),
        sa.CheckConstraint("efficiency >= 0 AND efficiency <= 100", name="ck_shift_record_efficiency_range"),
    )
    # At most one open record per (machine, operator, shift window)
    op.create_index(
        "uq_shift_records_open_key",
        "shift_records",
        ["machine_id", "operator_id", "shift_date", "shift_type"],
        unique=True,
        postgresql_where=sa.text("is_active AND NOT is_archived"),
    )
    op.create_index("ix_shift_records_open_end", "shift_records", ["is_active", "is_archived", "end_time"])
    op.create_index("ix_shift_records_shift_date", "shift_records", ["shift_date"])

    # 7. Archive Entries
    op.create_table(
        "archive_entries",
        sa.Column("archive_id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")),
        sa.Column(
            "shift_record_id",
            UUID(as_uuid=True),
            sa.ForeignKey("shift_records.shift_record_id"),
            nullable=False,
        ),
        sa.Column("machine_id", UUID(as_uuid=True), sa.ForeignKey("machines.machine_id"), nullable=False),
        sa.Column("operator_id", UUID(as_uuid=True), sa.ForeignKey("operators.operator_id"), nullable=False),
        sa.Column("snapshot", sa.Text, nullable=False),
        sa.Column("data_size", sa.Integer, nullable=False),
        sa.Column("checksum", sa.String(64), nullable=False),
        sa.Column("archived_at", sa.DateTime, nullable=False),
        sa.UniqueConstraint("shift_record_id", name="uq_archive_entry_shift_record"),
    )
    op.create_index("ix_archive_entries_machine_time", "archive_entries", ["machine_id", "archived_at"])
    op.create_index("ix_archive_entries_operator_time", "archive_entries", ["operator_id", "archived_at"])

    # Archive entries are write-once
    op.execute(
        """
        CREATE OR REPLACE FUNCTION reject_archive_entry_update() RETURNS trigger AS $$
        BEGIN
            RAISE EXCEPTION 'archive_entries rows are immutable';
        END;
        $$ LANGUAGE plpgsql;
        """
    )
    op.execute(
        """
        CREATE TRIGGER trg_archive_entries_immutable
        BEFORE UPDATE ON archive_entries
        FOR EACH ROW EXECUTE FUNCTION reject_archive_entry_update();
        """
    )


def downgrade() -> None:
    op.execute("DROP TRIGGER IF EXISTS trg_archive_entries_immutable ON archive_entries")
    op.execute("DROP FUNCTION IF EXISTS reject_archive_entry_update()")
    tables = [
        "archive_entries",
        "shift_records",
        "quality_tests",
        "machine_status_history",
        "machine_operations",
        "operators",
        "machines",
    ]
    for table in tables:
        op.drop_table(table)
