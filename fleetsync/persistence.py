from datetime import datetime, date, timedelta, timezone
from typing import Dict, List, Optional
import logging

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .errors import SyncStateError
from .models import (
    DailyDriverScore, Department, DepartmentDailyScore, Employee, SafetyEvent, SyncLog, Vehicle
)
from .schemas import ProviderSafetyEvent, ProviderVehicle
from .scoring import BehaviorCounters, ScoreBreakdown

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Vehicles
# ---------------------------------------------------------------------------

def get_vehicle_id_by_vin(db: Session, vin: str) -> Optional[int]:
    """Internal id of a vehicle, or None when it has not been synced yet."""
    row = db.query(Vehicle.id).filter(Vehicle.vin == vin).first()
    return row[0] if row else None


def upsert_vehicle(db: Session, vehicle: ProviderVehicle) -> Vehicle:
    """Insert or update a vehicle keyed on VIN; mutable fields are always overwritten."""
    existing = db.query(Vehicle).filter(Vehicle.vin == vehicle.vin).first()

    if existing:
        existing.provider_vehicle_id = vehicle.external_vehicle_id
        existing.make = vehicle.make
        existing.model = vehicle.model
        existing.year = vehicle.year
        existing.license_plate = vehicle.license_plate
        existing.updated_at = _utcnow()
        db.commit()
        db.refresh(existing)
        return existing

    record = Vehicle(
        vin=vehicle.vin,
        provider_vehicle_id=vehicle.external_vehicle_id,
        make=vehicle.make,
        model=vehicle.model,
        year=vehicle.year,
        license_plate=vehicle.license_plate,
    )
    db.add(record)
    db.commit()
    db.refresh(record)
    return record


# ---------------------------------------------------------------------------
# Safety events
# ---------------------------------------------------------------------------

def insert_safety_event(
    db: Session,
    vehicle_id: int,
    employee_id: Optional[int],
    event: ProviderSafetyEvent
) -> bool:
    """Insert a safety event keyed on the provider event id.

    Events are immutable facts: a duplicate id is skipped and the first write
    wins. Returns True when a row was written.
    """
    exists = db.query(SafetyEvent.id).filter(
        SafetyEvent.provider_event_id == event.event_id
    ).first()
    if exists:
        return False

    location = event.location
    db.add(SafetyEvent(
        provider_event_id=event.event_id,
        vehicle_id=vehicle_id,
        employee_id=employee_id,
        event_time=event.timestamp,
        event_type=event.internal_event_type,
        severity=event.internal_severity,
        speed_mph=event.speed,
        duration_seconds=event.duration,
        location_lat=location.latitude if location else None,
        location_lon=location.longitude if location else None,
        location_address=location.address if location else None,
        meta=event.metadata,
    ))
    try:
        db.commit()
    except IntegrityError:
        # Written concurrently by another worker
        db.rollback()
        return False
    return True


# ---------------------------------------------------------------------------
# Scores
# ---------------------------------------------------------------------------

def upsert_daily_driver_score(
    db: Session,
    day: date,
    employee_id: int,
    vehicle_id: int,
    miles_driven: float,
    counters: BehaviorCounters,
    scores: ScoreBreakdown
) -> DailyDriverScore:
    """Upsert a driver score keyed on (date, employee, vehicle); last write wins."""
    if employee_id is None:
        raise ValueError("daily driver scores require a resolved employee")

    values = dict(
        miles_driven=miles_driven,
        total_events=counters.total,
        harsh_brake_count=counters.harsh_brake,
        rapid_accel_count=counters.rapid_accel,
        speeding_count=counters.speeding,
        seatbelt_off_count=counters.seatbelt_off,
        overall_score=scores.overall_score,
        brake_score=scores.brake_score,
        acceleration_score=scores.acceleration_score,
        speed_score=scores.speed_score,
        seatbelt_score=scores.seatbelt_score,
    )

    existing_score = db.query(DailyDriverScore).filter(
        DailyDriverScore.date == day,
        DailyDriverScore.employee_id == employee_id,
        DailyDriverScore.vehicle_id == vehicle_id
    ).first()

    if existing_score:
        for name, value in values.items():
            setattr(existing_score, name, value)
        existing_score.updated_at = _utcnow()
        db.commit()
        db.refresh(existing_score)
        return existing_score

    score = DailyDriverScore(date=day, employee_id=employee_id, vehicle_id=vehicle_id, **values)
    db.add(score)
    db.commit()
    db.refresh(score)
    return score


ROLLUP_FIELDS = (
    "active_drivers", "total_miles",
    "avg_overall_score", "avg_brake_score", "avg_acceleration_score",
    "avg_speed_score", "avg_seatbelt_score",
    "high_risk_drivers", "medium_risk_drivers", "low_risk_drivers",
)


def upsert_department_rollup(db: Session, day: date, department_id: int, values: Dict) -> DepartmentDailyScore:
    """Replace the rollup stored for (date, department) with freshly aggregated values."""
    missing = [name for name in ROLLUP_FIELDS if name not in values]
    if missing:
        raise ValueError(f"rollup values missing fields: {missing}")

    row = db.query(DepartmentDailyScore).filter(
        DepartmentDailyScore.date == day,
        DepartmentDailyScore.department_id == department_id
    ).first()

    if row is None:
        row = DepartmentDailyScore(date=day, department_id=department_id)
        db.add(row)
    else:
        row.updated_at = _utcnow()

    for name in ROLLUP_FIELDS:
        setattr(row, name, values[name])

    db.commit()
    db.refresh(row)
    return row


# ---------------------------------------------------------------------------
# Sync runs
# ---------------------------------------------------------------------------

def start_sync_run(db: Session, sync_type: str, days_to_sync: int, meta: Optional[Dict] = None) -> SyncLog:
    """Record a run in state ``started``."""
    run = SyncLog(
        sync_type=sync_type,
        status="started",
        meta={"days_to_sync": days_to_sync, **(meta or {})},
        started_at=_utcnow(),
    )
    db.add(run)
    db.commit()
    db.refresh(run)
    return run


def _finish_sync_run(db: Session, run_id: int, status: str, **fields) -> SyncLog:
    run = db.get(SyncLog, run_id)
    if run is None:
        raise SyncStateError(f"sync run {run_id} does not exist")
    if run.status != "started":
        raise SyncStateError(f"sync run {run_id} already {run.status}")

    run.status = status
    run.completed_at = _utcnow()
    for name, value in fields.items():
        setattr(run, name, value)
    db.commit()
    db.refresh(run)
    return run


def complete_sync_run(db: Session, run_id: int, records_processed: int, vehicles_processed: int) -> SyncLog:
    return _finish_sync_run(
        db, run_id, "completed",
        records_processed=records_processed,
        vehicles_processed=vehicles_processed,
    )


def fail_sync_run(db: Session, run_id: int, error_message: str) -> SyncLog:
    return _finish_sync_run(db, run_id, "failed", error_message=error_message)


def get_sync_run(db: Session, run_id: int) -> Optional[SyncLog]:
    return db.get(SyncLog, run_id)


def list_sync_runs(db: Session, limit: int = 50, offset: int = 0) -> List[SyncLog]:
    return db.query(SyncLog).order_by(
        SyncLog.started_at.desc(), SyncLog.id.desc()
    ).offset(offset).limit(limit).all()


# ---------------------------------------------------------------------------
# Employees
# ---------------------------------------------------------------------------

def get_department_by_name(db: Session, name: str) -> Optional[Department]:
    return db.query(Department).filter(Department.name == name).first()


def upsert_employee(
    db: Session,
    employee_number: str,
    first_name: str,
    last_name: str,
    email: Optional[str],
    department_id: Optional[int]
) -> Employee:
    """Insert or update an employee keyed on employee number."""
    employee = db.query(Employee).filter(Employee.employee_number == employee_number).first()

    if employee is None:
        employee = Employee(employee_number=employee_number)
        db.add(employee)
    else:
        employee.updated_at = _utcnow()

    employee.first_name = first_name
    employee.last_name = last_name
    employee.email = email
    employee.department_id = department_id
    db.commit()
    db.refresh(employee)
    return employee


# ---------------------------------------------------------------------------
# Read queries
# ---------------------------------------------------------------------------

def list_vehicles(db: Session, limit: int = 100, offset: int = 0) -> List[Vehicle]:
    return db.query(Vehicle).order_by(Vehicle.vin).offset(offset).limit(limit).all()


def list_safety_events(
    db: Session,
    vehicle_id: Optional[int] = None,
    employee_id: Optional[int] = None,
    event_type: Optional[str] = None,
    limit: int = 100,
    offset: int = 0
) -> List[SafetyEvent]:
    """Get recent safety events with optional filtering."""
    query = db.query(SafetyEvent)

    if vehicle_id:
        query = query.filter(SafetyEvent.vehicle_id == vehicle_id)
    if employee_id:
        query = query.filter(SafetyEvent.employee_id == employee_id)
    if event_type:
        query = query.filter(SafetyEvent.event_type == event_type)

    return query.order_by(SafetyEvent.event_time.desc()).offset(offset).limit(limit).all()


def get_driver_scores(db: Session, employee_id: int, days: int = 30) -> List[DailyDriverScore]:
    """Get driver scores for the last N days."""
    start_date = date.today() - timedelta(days=days)

    return db.query(DailyDriverScore).filter(
        DailyDriverScore.employee_id == employee_id,
        DailyDriverScore.date >= start_date
    ).order_by(DailyDriverScore.date.desc()).all()


def get_department_scores(db: Session, department_id: int, days: int = 30) -> List[DepartmentDailyScore]:
    """Get department rollups for the last N days."""
    start_date = date.today() - timedelta(days=days)

    return db.query(DepartmentDailyScore).filter(
        DepartmentDailyScore.department_id == department_id,
        DepartmentDailyScore.date >= start_date
    ).order_by(DepartmentDailyScore.date.desc()).all()


def get_event_stats(db: Session, employee_id: Optional[int] = None) -> Dict:
    """Get safety event counts by type."""
    query = db.query(
        SafetyEvent.event_type,
        func.count(SafetyEvent.id).label('count')
    )

    if employee_id:
        query = query.filter(SafetyEvent.employee_id == employee_id)

    event_counts = query.group_by(SafetyEvent.event_type).all()

    return {
        'total_events': sum(count for _, count in event_counts),
        'by_type': {event_type: count for event_type, count in event_counts}
    }
