"""
Shift reporting — summaries and paginated history over shift records.

Summaries read persisted totals only; they never re-derive production.
"""

from __future__ import annotations

import math
import uuid
from collections import defaultdict
from datetime import date
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import Machine, Operator, ShiftRecord


def _group_row() -> dict[str, Any]:
    return {"shifts": 0, "total_production": 0, "efficiency_sum": 0.0, "downtime": 0.0}


def _finish_group(key: str, name: str | None, row: dict[str, Any]) -> dict[str, Any]:
    shifts = row["shifts"]
    return {
        "id": key,
        "name": name,
        "shifts": shifts,
        "total_production": row["total_production"],
        "average_efficiency": round(row["efficiency_sum"] / shifts, 2) if shifts else 0.0,
        "total_downtime": round(row["downtime"], 2),
    }


async def shift_summary(
    db: AsyncSession,
    start_date: date,
    end_date: date,
    machine_id: uuid.UUID | None = None,
    operator_id: uuid.UUID | None = None,
) -> dict[str, Any]:
    """Aggregate every shift record (open or archived) dated within [start_date, end_date]."""
    query = (
        select(ShiftRecord, Machine.name, Operator.name)
        .join(Machine, Machine.machine_id == ShiftRecord.machine_id)
        .join(Operator, Operator.operator_id == ShiftRecord.operator_id)
        .where(ShiftRecord.shift_date >= start_date, ShiftRecord.shift_date <= end_date)
    )
    if machine_id:
        query = query.where(ShiftRecord.machine_id == machine_id)
    if operator_id:
        query = query.where(ShiftRecord.operator_id == operator_id)
    rows = (await db.execute(query)).all()

    by_shift_type: dict[str, int] = {"DAY": 0, "NIGHT": 0}
    by_machine: dict[str, dict[str, Any]] = defaultdict(_group_row)
    by_operator: dict[str, dict[str, Any]] = defaultdict(_group_row)
    machine_names: dict[str, str] = {}
    operator_names: dict[str, str] = {}

    total_production = 0
    efficiency_sum = 0.0
    total_downtime = 0.0
    quality_tests = approved = rejected = 0

    for record, machine_name, operator_name in rows:
        total_production += record.total_production or 0
        efficiency_sum += record.efficiency or 0.0
        total_downtime += record.downtime or 0.0
        quality_tests += record.quality_tests or 0
        approved += record.approved_tests or 0
        rejected += record.rejected_tests or 0
        by_shift_type[str(record.shift_type)] = by_shift_type.get(str(record.shift_type), 0) + 1

        for groups, names, key, name in (
            (by_machine, machine_names, str(record.machine_id), machine_name),
            (by_operator, operator_names, str(record.operator_id), operator_name),
        ):
            names[key] = name
            group = groups[key]
            group["shifts"] += 1
            group["total_production"] += record.total_production or 0
            group["efficiency_sum"] += record.efficiency or 0.0
            group["downtime"] += record.downtime or 0.0

    total_shifts = len(rows)
    return {
        "period": {"start_date": start_date.isoformat(), "end_date": end_date.isoformat()},
        "total_shifts": total_shifts,
        "total_production": total_production,
        "average_efficiency": round(efficiency_sum / total_shifts, 2) if total_shifts else 0.0,
        "total_downtime": round(total_downtime, 2),
        "quality": {
            "total_tests": quality_tests,
            "approved_tests": approved,
            "rejected_tests": rejected,
            "approval_rate": round(approved / quality_tests * 100, 2) if quality_tests else 0.0,
        },
        "by_shift_type": by_shift_type,
        "by_machine": [_finish_group(k, machine_names.get(k), v) for k, v in sorted(by_machine.items())],
        "by_operator": [_finish_group(k, operator_names.get(k), v) for k, v in sorted(by_operator.items())],
    }


async def shift_history(
    db: AsyncSession,
    machine_id: uuid.UUID | None = None,
    operator_id: uuid.UUID | None = None,
    shift_type: str | None = None,
    start_date: date | None = None,
    end_date: date | None = None,
    page: int = 1,
    limit: int = 20,
) -> dict[str, Any]:
    """Paginated non-archived shift records, newest window first."""
    page = max(1, page)
    limit = max(1, min(limit, 100))

    filters = [ShiftRecord.is_archived.is_(False)]
    if machine_id:
        filters.append(ShiftRecord.machine_id == machine_id)
    if operator_id:
        filters.append(ShiftRecord.operator_id == operator_id)
    if shift_type:
        filters.append(ShiftRecord.shift_type == shift_type.upper())
    if start_date:
        filters.append(ShiftRecord.shift_date >= start_date)
    if end_date:
        filters.append(ShiftRecord.shift_date <= end_date)

    total = (await db.execute(select(func.count(ShiftRecord.shift_record_id)).where(*filters))).scalar() or 0
    result = await db.execute(
        select(ShiftRecord)
        .where(*filters)
        .order_by(ShiftRecord.start_time.desc(), ShiftRecord.machine_id)
        .offset((page - 1) * limit)
        .limit(limit)
    )
    return {
        "items": list(result.scalars().all()),
        "pagination": {
            "page": page,
            "limit": limit,
            "total": int(total),
            "pages": math.ceil(total / limit) if total else 0,
        },
    }
