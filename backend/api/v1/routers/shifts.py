"""
Shifts Router — current shift data, history, archives and summaries.
"""

from datetime import date, datetime
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from api.deps import get_current_user, get_db, require_admin, require_supervisor
from core.errors import NotFound
from core.security import is_supervisor
from shifts.service import ShiftService

router = APIRouter(prefix="/api/v1/shifts", tags=["shifts"])


# ─── Schemas ────────────────────────────────────────────────────────────────


class ShiftRecordResponse(BaseModel):
    shift_record_id: UUID
    machine_id: UUID
    operator_id: UUID
    shift_date: date
    shift_type: str
    start_time: datetime
    end_time: datetime
    total_production: int
    target_production: int
    efficiency: float
    downtime: float
    quality_tests: int
    approved_tests: int
    rejected_tests: int
    detail: dict | None = None
    last_accumulated_at: datetime | None = None
    is_active: bool
    is_archived: bool
    archived_at: datetime | None = None

    model_config = {"from_attributes": True}


class ShiftUpdateRequest(BaseModel):
    machine_id: UUID
    operator_id: UUID | None = None
    production_delta: int = Field(0, ge=0)
    target_production: int | None = Field(None, ge=0)
    efficiency: float | None = Field(None, ge=0, le=100)
    downtime: float | None = Field(None, ge=0)
    quality_tests: int | None = Field(None, ge=0)
    approved_tests: int | None = Field(None, ge=0)
    rejected_tests: int | None = Field(None, ge=0)
    detail: dict | None = None


class ShiftResetRequest(BaseModel):
    machine_id: UUID
    operator_id: UUID | None = None


class ManualArchiveRequest(BaseModel):
    shift_record_id: UUID | None = None


class PaginationResponse(BaseModel):
    page: int
    limit: int
    total: int
    pages: int


class ShiftHistoryResponse(BaseModel):
    items: list[ShiftRecordResponse]
    pagination: PaginationResponse


def _operator_for(user: dict, requested: UUID | None) -> UUID:
    """Operators act as themselves; supervisors may act for another operator."""
    if requested is not None and is_supervisor(user):
        return requested
    return UUID(str(user["operator_id"]))


# ─── Endpoints ──────────────────────────────────────────────────────────────


@router.get("/current", response_model=ShiftRecordResponse)
async def get_current_shift(
    machine_id: UUID,
    operator_id: UUID | None = None,
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(get_current_user),
):
    """Open shift record for the current window."""
    operator = _operator_for(user, operator_id)
    record = await ShiftService(db).get_current_shift_data(machine_id, operator)
    if record is None:
        raise NotFound("No current shift data", machine_id=machine_id, operator_id=operator)
    return record


@router.post("/update", response_model=ShiftRecordResponse)
async def update_shift(
    payload: ShiftUpdateRequest,
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(get_current_user),
):
    """Fold a production delta / metric update into the current shift record."""
    operator = _operator_for(user, payload.operator_id)
    data = payload.model_dump(exclude={"machine_id", "operator_id"}, exclude_none=True)
    return await ShiftService(db).create_or_update_shift_data(payload.machine_id, operator, data)


@router.post("/reset", response_model=ShiftRecordResponse)
async def reset_shift(
    payload: ShiftResetRequest,
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(get_current_user),
):
    """Archive stale records for the pair and return the current window's record."""
    operator = _operator_for(user, payload.operator_id)
    return await ShiftService(db).reset_operator_data(payload.machine_id, operator)


@router.get("/history", response_model=ShiftHistoryResponse)
async def get_shift_history(
    machine_id: UUID | None = None,
    operator_id: UUID | None = None,
    shift_type: str | None = Query(None, pattern="^(DAY|NIGHT|day|night)$"),
    start_date: date | None = None,
    end_date: date | None = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(get_current_user),
):
    """Paginated non-archived shift records."""
    if not is_supervisor(user):
        operator_id = UUID(str(user["operator_id"]))
    return await ShiftService(db).history(
        machine_id=machine_id,
        operator_id=operator_id,
        shift_type=shift_type,
        start_date=start_date,
        end_date=end_date,
        page=page,
        limit=limit,
    )


@router.get("/archives")
async def list_archives(
    machine_id: UUID | None = None,
    operator_id: UUID | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(get_current_user),
):
    """Archived shift snapshots, newest first."""
    if not is_supervisor(user):
        operator_id = UUID(str(user["operator_id"]))
    return await ShiftService(db).get_archived_data(machine_id, operator_id, start, end)


@router.get("/archive/{archive_id}")
async def get_archive(
    archive_id: UUID,
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(require_supervisor),
):
    """One archived snapshot with its checksum verification."""
    return await ShiftService(db).get_archive(archive_id)


@router.get("/summary")
async def get_shift_summary(
    start_date: date,
    end_date: date,
    machine_id: UUID | None = None,
    operator_id: UUID | None = None,
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(get_current_user),
):
    """Aggregate production/efficiency/quality over a date range."""
    if not is_supervisor(user):
        operator_id = UUID(str(user["operator_id"]))
    return await ShiftService(db).summary(start_date, end_date, machine_id, operator_id)


@router.post("/manual-archive")
async def manual_archive(
    payload: ManualArchiveRequest | None = None,
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(require_admin),
):
    """Archive one record, or sweep every elapsed record when none is given."""
    service = ShiftService(db)
    if payload is not None and payload.shift_record_id is not None:
        entry = await service.archive_shift_data(payload.shift_record_id)
        return {
            "status": "success",
            "archive_id": str(entry.archive_id),
            "shift_record_id": str(entry.shift_record_id),
            "checksum": entry.checksum,
        }
    result = await service.archive_completed_shifts()
    return result.to_dict()


@router.get("/type")
async def get_current_shift_type(
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(get_current_user),
):
    """Current shift type and window bounds."""
    return ShiftService(db).get_current_shift_type()
