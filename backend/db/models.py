"""
ShiftTrack Database Models

Tables:
  Collaborator-owned (read by the core, written by the CRUD layer):
  1. machines                - Machine identity, status and configured speed
  2. operators               - Operator identity and role
  3. machine_operations      - Operation start/end lifecycle
  4. machine_status_history  - Ordered status-change history
  5. quality_tests           - Pass/fail quality results

  Shift tracking core:
  6. shift_records           - Mutable per-shift production accumulation
  7. archive_entries         - Immutable, checksummed shift snapshots

Timestamps on shift windows are naive plant-local wall-clock times
(see shifts.clock). Audit columns (created_at / updated_at) are UTC.
"""

import uuid
from datetime import datetime
from enum import Enum

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
    event,
    inspect,
    text,
    types,
)
from sqlalchemy.dialects.postgresql import UUID as PG_UUID


class GUID(TypeDecorator):
    """Platform-independent UUID type.

    Uses PostgreSQL UUID when available, stores as CHAR(36) on SQLite.
    """

    impl = types.String(36)
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(PG_UUID(as_uuid=True))
        return dialect.type_descriptor(types.String(36))

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        if dialect.name == "postgresql":
            return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))
        return str(value) if isinstance(value, uuid.UUID) else str(uuid.UUID(str(value)))

    def process_result_value(self, value, dialect):
        if value is None:
            return value
        if isinstance(value, uuid.UUID):
            return value
        return uuid.UUID(str(value))


# Alias so Column(UUID(as_uuid=True)) reads like the PostgreSQL type
def UUID(as_uuid=True):
    return GUID()


from sqlalchemy.orm import relationship

from core.config import get_settings
from core.errors import AlreadyArchived, ImmutableArchive
from db.session import Base


class MachineStatus(str, Enum):
    RUNNING = "RUNNING"
    STOPPED = "STOPPED"
    MAINTENANCE = "MAINTENANCE"
    OFF_SHIFT = "OFF_SHIFT"


class OperationStatus(str, Enum):
    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


# ─── 1. Machines ────────────────────────────────────────────────────────────


class Machine(Base):
    __tablename__ = "machines"

    machine_id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(String(255), nullable=False)
    code = Column(String(50), nullable=False, unique=True)
    location = Column(String(255))
    status = Column(String(20), nullable=False, default=MachineStatus.STOPPED.value)
    production_speed = Column(Float, nullable=False, default=lambda: get_settings().default_production_speed)  # units per minute
    target_production = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        CheckConstraint(
            "status IN ('RUNNING', 'STOPPED', 'MAINTENANCE', 'OFF_SHIFT')",
            name="ck_machine_status",
        ),
        CheckConstraint("production_speed >= 0", name="ck_machine_speed_non_negative"),
    )

    operations = relationship("MachineOperation", back_populates="machine")
    status_history = relationship("MachineStatusHistory", back_populates="machine")


# ─── 2. Operators ───────────────────────────────────────────────────────────


class Operator(Base):
    __tablename__ = "operators"

    operator_id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(String(255), nullable=False)
    email = Column(String(255), nullable=False, unique=True)
    role = Column(String(20), nullable=False, default="OPERATOR")
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        CheckConstraint("role IN ('OPERATOR', 'LEADER', 'MANAGER', 'ADMIN')", name="ck_operator_role"),
    )


# ─── 3. Machine Operations ──────────────────────────────────────────────────


class MachineOperation(Base):
    __tablename__ = "machine_operations"

    operation_id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    machine_id = Column(UUID(as_uuid=True), ForeignKey("machines.machine_id"), nullable=False)
    operator_id = Column(UUID(as_uuid=True), ForeignKey("operators.operator_id"), nullable=False)
    status = Column(String(20), nullable=False, default=OperationStatus.ACTIVE.value)
    start_time = Column(DateTime, nullable=False)
    end_time = Column(DateTime)
    notes = Column(Text)

    __table_args__ = (
        Index("ix_machine_operations_machine_status", "machine_id", "status"),
        Index("ix_machine_operations_operator_status", "operator_id", "status"),
        CheckConstraint("status IN ('ACTIVE', 'COMPLETED', 'CANCELLED')", name="ck_operation_status"),
    )

    machine = relationship("Machine", back_populates="operations")
    operator = relationship("Operator")


# ─── 4. Machine Status History ──────────────────────────────────────────────


class MachineStatusHistory(Base):
    __tablename__ = "machine_status_history"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    machine_id = Column(UUID(as_uuid=True), ForeignKey("machines.machine_id"), nullable=False)
    operator_id = Column(UUID(as_uuid=True), ForeignKey("operators.operator_id"), nullable=True)
    previous_status = Column(String(20))
    new_status = Column(String(20), nullable=False)
    reason = Column(String(255))
    notes = Column(Text)
    created_at = Column(DateTime, nullable=False)

    __table_args__ = (Index("ix_status_history_machine_time", "machine_id", "created_at"),)

    machine = relationship("Machine", back_populates="status_history")


# ─── 5. Quality Tests ───────────────────────────────────────────────────────


class QualityTest(Base):
    __tablename__ = "quality_tests"

    test_id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    machine_id = Column(UUID(as_uuid=True), ForeignKey("machines.machine_id"), nullable=False)
    operator_id = Column(UUID(as_uuid=True), ForeignKey("operators.operator_id"), nullable=True)
    result = Column(String(20), nullable=False)
    created_at = Column(DateTime, nullable=False)

    __table_args__ = (
        Index("ix_quality_tests_machine_time", "machine_id", "created_at"),
        CheckConstraint("result IN ('APPROVED', 'REJECTED')", name="ck_quality_test_result"),
    )


# ─── 6. Shift Records ───────────────────────────────────────────────────────


class ShiftRecord(Base):
    __tablename__ = "shift_records"

    shift_record_id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    machine_id = Column(UUID(as_uuid=True), ForeignKey("machines.machine_id"), nullable=False)
    operator_id = Column(UUID(as_uuid=True), ForeignKey("operators.operator_id"), nullable=False)
    shift_date = Column(Date, nullable=False)  # day the shift window starts on
    shift_type = Column(String(10), nullable=False)
    start_time = Column(DateTime, nullable=False)
    end_time = Column(DateTime, nullable=False)
    total_production = Column(Integer, nullable=False, default=0)
    target_production = Column(Integer, nullable=False, default=0)
    efficiency = Column(Float, nullable=False, default=0.0)
    downtime = Column(Float, nullable=False, default=0.0)  # minutes
    quality_tests = Column(Integer, nullable=False, default=0)
    approved_tests = Column(Integer, nullable=False, default=0)
    rejected_tests = Column(Integer, nullable=False, default=0)
    detail = Column(JSON, nullable=True)
    last_accumulated_at = Column(DateTime, nullable=True)  # production counted up to here
    is_active = Column(Boolean, nullable=False, default=True)
    is_archived = Column(Boolean, nullable=False, default=False)
    archived_at = Column(DateTime, nullable=True)
    version = Column(Integer, nullable=False)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        # At most one open record per (machine, operator, shift window).
        Index(
            "uq_shift_records_open_key",
            "machine_id",
            "operator_id",
            "shift_date",
            "shift_type",
            unique=True,
            postgresql_where=text("is_active AND NOT is_archived"),
            sqlite_where=text("is_active = 1 AND is_archived = 0"),
        ),
        Index("ix_shift_records_open_end", "is_active", "is_archived", "end_time"),
        Index("ix_shift_records_shift_date", "shift_date"),
        CheckConstraint("shift_type IN ('DAY', 'NIGHT')", name="ck_shift_record_type"),
        CheckConstraint("total_production >= 0", name="ck_shift_record_production_non_negative"),
        CheckConstraint("efficiency >= 0 AND efficiency <= 100", name="ck_shift_record_efficiency_range"),
    )

    machine = relationship("Machine")
    operator = relationship("Operator")
    archive_entry = relationship("ArchiveEntry", back_populates="shift_record", uselist=False)

    @property
    def is_open(self) -> bool:
        return bool(self.is_active) and not bool(self.is_archived)


@event.listens_for(ShiftRecord, "before_update")
def _reject_writes_to_archived_records(mapper, connection, target):
    history = inspect(target).attrs.is_archived.history
    if history.deleted:
        was_archived = bool(history.deleted[0])
    elif history.unchanged:
        was_archived = bool(history.unchanged[0])
    else:
        was_archived = False
    if was_archived:
        raise AlreadyArchived(
            "Shift record is archived and read-only",
            shift_record_id=target.shift_record_id,
        )


# ─── 7. Archive Entries ─────────────────────────────────────────────────────


class ArchiveEntry(Base):
    __tablename__ = "archive_entries"

    archive_id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    shift_record_id = Column(
        UUID(as_uuid=True),
        ForeignKey("shift_records.shift_record_id"),
        nullable=False,
    )
    machine_id = Column(UUID(as_uuid=True), ForeignKey("machines.machine_id"), nullable=False)
    operator_id = Column(UUID(as_uuid=True), ForeignKey("operators.operator_id"), nullable=False)
    snapshot = Column(Text, nullable=False)  # canonical JSON, byte-stable
    data_size = Column(Integer, nullable=False)
    checksum = Column(String(64), nullable=False)  # sha256 hex
    archived_at = Column(DateTime, nullable=False)

    __table_args__ = (
        UniqueConstraint("shift_record_id", name="uq_archive_entry_shift_record"),
        Index("ix_archive_entries_machine_time", "machine_id", "archived_at"),
        Index("ix_archive_entries_operator_time", "operator_id", "archived_at"),
    )

    shift_record = relationship("ShiftRecord", back_populates="archive_entry")
    machine = relationship("Machine")
    operator = relationship("Operator")


@event.listens_for(ArchiveEntry, "before_update")
def _reject_archive_mutation(mapper, connection, target):
    raise ImmutableArchive("Archive entries are write-once", archive_id=target.archive_id)
