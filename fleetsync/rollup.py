import logging
from datetime import date
from typing import List

from sqlalchemy import case, distinct, func
from sqlalchemy.orm import Session

from .config import config
from .models import DailyDriverScore, DepartmentDailyScore, Employee
from .persistence import upsert_department_rollup

logger = logging.getLogger(__name__)


def aggregate_department_scores(db: Session, start: date, end: date) -> List[dict]:
    """Aggregate driver scores into (date, department) rows for a closed date range.

    Only employees with a department contribute. Risk buckets count score
    rows: overall < high threshold is high risk, >= low threshold is low risk,
    anything between is medium.
    """
    overall = DailyDriverScore.overall_score
    high_below = config.risk_high_below
    low_from = config.risk_low_at_or_above

    rows = db.query(
        DailyDriverScore.date.label("date"),
        Employee.department_id.label("department_id"),
        func.count(distinct(DailyDriverScore.employee_id)).label("active_drivers"),
        func.sum(DailyDriverScore.miles_driven).label("total_miles"),
        func.avg(overall).label("avg_overall_score"),
        func.avg(DailyDriverScore.brake_score).label("avg_brake_score"),
        func.avg(DailyDriverScore.acceleration_score).label("avg_acceleration_score"),
        func.avg(DailyDriverScore.speed_score).label("avg_speed_score"),
        func.avg(DailyDriverScore.seatbelt_score).label("avg_seatbelt_score"),
        func.sum(case((overall < high_below, 1), else_=0)).label("high_risk_drivers"),
        func.sum(case(((overall >= high_below) & (overall < low_from), 1), else_=0)).label("medium_risk_drivers"),
        func.sum(case((overall >= low_from, 1), else_=0)).label("low_risk_drivers"),
    ).join(
        Employee, DailyDriverScore.employee_id == Employee.id
    ).filter(
        DailyDriverScore.date >= start,
        DailyDriverScore.date <= end,
        Employee.department_id.isnot(None)
    ).group_by(
        DailyDriverScore.date, Employee.department_id
    ).all()

    return [
        {
            "date": row.date,
            "department_id": row.department_id,
            "active_drivers": int(row.active_drivers or 0),
            "total_miles": float(row.total_miles or 0.0),
            "avg_overall_score": _as_float(row.avg_overall_score),
            "avg_brake_score": _as_float(row.avg_brake_score),
            "avg_acceleration_score": _as_float(row.avg_acceleration_score),
            "avg_speed_score": _as_float(row.avg_speed_score),
            "avg_seatbelt_score": _as_float(row.avg_seatbelt_score),
            "high_risk_drivers": int(row.high_risk_drivers or 0),
            "medium_risk_drivers": int(row.medium_risk_drivers or 0),
            "low_risk_drivers": int(row.low_risk_drivers or 0),
        }
        for row in rows
    ]


def _as_float(value):
    # AVG comes back as Decimal on PostgreSQL
    return float(value) if value is not None else None


def recompute_department_rollups(db: Session, start: date, end: date) -> List[DepartmentDailyScore]:
    """Recompute and replace department rollups for every key touched in [start, end]."""
    if end < start:
        raise ValueError(f"rollup range end {end} precedes start {start}")

    aggregates = aggregate_department_scores(db, start, end)
    stored = [
        upsert_department_rollup(db, values["date"], values["department_id"], values)
        for values in aggregates
    ]
    logger.info("Department rollups recomputed for %s..%s: %d rows", start, end, len(stored))
    return stored
