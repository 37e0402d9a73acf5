"""
Machines Router — operation lifecycle, status / speed changes and production.
"""

from datetime import date, datetime
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from api.deps import get_broadcaster, get_current_user, get_db, require_supervisor
from core.security import is_supervisor
from production.accumulator import current_shift_production, daily_production, production_window, production_windows
from production.operations import OperationLifecycle
from production.ticker import RealtimeTicker
from realtime.broadcast import Broadcaster
from shifts.clock import coerce_timestamp, plant_now

router = APIRouter(prefix="/api/v1/machines", tags=["machines"])


# ─── Schemas ────────────────────────────────────────────────────────────────


class OperationRequest(BaseModel):
    notes: str | None = Field(None, max_length=2000)


class StatusChangeRequest(BaseModel):
    status: str = Field(..., pattern="^(RUNNING|STOPPED|MAINTENANCE|OFF_SHIFT)$")
    reason: str | None = Field(None, max_length=255)
    notes: str | None = None


class SpeedChangeRequest(BaseModel):
    production_speed: float = Field(..., ge=0)


class OperationResponse(BaseModel):
    operation_id: UUID
    machine_id: UUID
    operator_id: UUID
    status: str
    start_time: datetime
    end_time: datetime | None = None
    notes: str | None = None

    model_config = {"from_attributes": True}


class MachineResponse(BaseModel):
    machine_id: UUID
    name: str
    code: str
    location: str | None = None
    status: str
    production_speed: float
    target_production: int
    is_active: bool

    model_config = {"from_attributes": True}


def _operator_id(user: dict) -> UUID:
    return UUID(str(user["operator_id"]))


# ─── Operation lifecycle ────────────────────────────────────────────────────


@router.post("/{machine_id}/start-operation", response_model=OperationResponse, status_code=201)
async def start_operation(
    machine_id: UUID,
    payload: OperationRequest | None = None,
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(get_current_user),
    broadcaster: Broadcaster | None = Depends(get_broadcaster),
):
    """Start an operation for the calling operator."""
    lifecycle = OperationLifecycle(db, broadcaster=broadcaster)
    return await lifecycle.start_operation(machine_id, _operator_id(user), notes=payload.notes if payload else None)


@router.post("/{machine_id}/end-operation", response_model=OperationResponse)
async def end_operation(
    machine_id: UUID,
    payload: OperationRequest | None = None,
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(get_current_user),
    broadcaster: Broadcaster | None = Depends(get_broadcaster),
):
    """End the machine's active operation."""
    lifecycle = OperationLifecycle(db, broadcaster=broadcaster)
    return await lifecycle.end_operation(
        machine_id,
        _operator_id(user),
        notes=payload.notes if payload else None,
        force=is_supervisor(user),
    )


@router.put("/{machine_id}/status", response_model=MachineResponse)
async def change_status(
    machine_id: UUID,
    payload: StatusChangeRequest,
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(get_current_user),
    broadcaster: Broadcaster | None = Depends(get_broadcaster),
):
    lifecycle = OperationLifecycle(db, broadcaster=broadcaster)
    return await lifecycle.change_status(
        machine_id,
        payload.status,
        operator_id=_operator_id(user),
        reason=payload.reason,
        notes=payload.notes,
    )


@router.put("/{machine_id}/production-speed", response_model=MachineResponse)
async def change_production_speed(
    machine_id: UUID,
    payload: SpeedChangeRequest,
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(require_supervisor),
    broadcaster: Broadcaster | None = Depends(get_broadcaster),
):
    """Change units/minute. Production so far is settled at the old speed first."""
    lifecycle = OperationLifecycle(db, broadcaster=broadcaster)
    return await lifecycle.change_production_speed(machine_id, payload.production_speed, operator_id=_operator_id(user))


# ─── Production ─────────────────────────────────────────────────────────────


@router.get("/production")
async def get_production_for_machines(
    machine_ids: str = Query(..., description="Comma-separated machine ids"),
    start: datetime = Query(...),
    end: datetime = Query(...),
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(get_current_user),
):
    """Production for several machines; a machine that fails is reported in its own entry."""
    try:
        ids = [UUID(value.strip()) for value in machine_ids.split(",") if value.strip()]
    except ValueError:
        raise HTTPException(status_code=422, detail="machine_ids must be comma-separated UUIDs")
    if not ids:
        raise HTTPException(status_code=422, detail="machine_ids is empty")
    start = coerce_timestamp(start, field="start")
    end = coerce_timestamp(end, field="end")
    if end <= start:
        raise HTTPException(status_code=422, detail="end must be after start")
    return {"machines": await production_windows(db, ids, start, end)}


@router.get("/{machine_id}/production")
async def get_production(
    machine_id: UUID,
    start: datetime = Query(...),
    end: datetime = Query(...),
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(get_current_user),
):
    """Status minutes, efficiency and recorded production over a period."""
    start = coerce_timestamp(start, field="start")
    end = coerce_timestamp(end, field="end")
    if end <= start:
        raise HTTPException(status_code=422, detail="end must be after start")
    window = await production_window(db, machine_id, start, end)
    return window.to_dict()


@router.get("/{machine_id}/production/current-shift")
async def get_current_shift_production(
    machine_id: UUID,
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(get_current_user),
):
    window = await current_shift_production(db, machine_id, plant_now())
    return window.to_dict()


@router.get("/{machine_id}/production/daily")
async def get_daily_production(
    machine_id: UUID,
    day: date | None = Query(None, alias="date"),
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(get_current_user),
):
    window = await daily_production(db, machine_id, day or plant_now().date())
    return window.to_dict()


@router.post("/{machine_id}/production/force-update")
async def force_production_update(
    machine_id: UUID,
    db: AsyncSession = Depends(get_db),
    user: dict = Depends(require_supervisor),
    broadcaster: Broadcaster | None = Depends(get_broadcaster),
):
    """Run the realtime update for one machine immediately."""
    machine_tick = await RealtimeTicker(db, broadcaster=broadcaster).force_update(machine_id)
    return machine_tick.to_dict()
