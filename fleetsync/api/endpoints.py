from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy.orm import Session
from typing import List, Dict, Any, Optional
import logging

from ..config import config
from ..assignments import AssignmentError, assign_vehicle, list_assignments, unassign_vehicle
from ..db import get_db
from ..employees import import_employees
from ..errors import FatalSyncError
from ..persistence import (
    get_department_scores, get_driver_scores, get_event_stats, get_sync_run,
    list_safety_events, list_sync_runs, list_vehicles
)
from ..schemas import AssignmentRequest, SyncRequest, SyncResponse
from ..sync import SyncOrchestrator

logger = logging.getLogger(__name__)

router = APIRouter()


def get_orchestrator() -> SyncOrchestrator:
    """Dependency providing the sync orchestrator."""
    return SyncOrchestrator()


def _iso(value):
    return value.isoformat() if value else None


def _sync_run_data(run) -> Dict[str, Any]:
    return {
        "id": run.id,
        "sync_type": run.sync_type,
        "status": run.status,
        "meta": run.meta,
        "records_processed": run.records_processed,
        "vehicles_processed": run.vehicles_processed,
        "error_message": run.error_message,
        "started_at": _iso(run.started_at),
        "completed_at": _iso(run.completed_at)
    }


@router.post("/sync", response_model=SyncResponse, response_model_by_alias=True)
async def trigger_sync(request: SyncRequest, orchestrator: SyncOrchestrator = Depends(get_orchestrator)):
    """Run one sync over the requested window."""
    try:
        result = await orchestrator.run(request.sync_type, request.days_to_sync)
    except FatalSyncError as e:
        raise HTTPException(status_code=502, detail=f"Sync failed: {e}")
    return SyncResponse(
        success=result.success,
        events_processed=result.events_processed,
        vehicles_processed=result.vehicles_processed,
        sync_run_id=result.sync_run_id
    )


@router.get("/config")
def get_config() -> Dict[str, Any]:
    """Current provider and scoring configuration (client secret excluded)."""
    return {
        "provider": config.get_provider_config(),
        "scoring": config.get_scoring_config(),
        "max_concurrency": config.max_concurrency
    }


@router.get("/sync/runs")
def list_sync_runs_endpoint(
    db: Session = Depends(get_db),
    limit: int = Query(50, ge=1, le=500, description="Number of runs to return"),
    offset: int = Query(0, ge=0, description="Number of runs to skip")
) -> List[Dict[str, Any]]:
    """Get recent sync runs."""
    return [_sync_run_data(run) for run in list_sync_runs(db, limit, offset)]


@router.get("/sync/runs/{run_id}")
def get_sync_run_endpoint(run_id: int, db: Session = Depends(get_db)) -> Dict[str, Any]:
    """Get a single sync run."""
    run = get_sync_run(db, run_id)
    if run is None:
        raise HTTPException(status_code=404, detail=f"Sync run {run_id} not found")
    return _sync_run_data(run)


@router.get("/vehicles")
def list_vehicles_endpoint(
    db: Session = Depends(get_db),
    limit: int = Query(100, ge=1, le=1000, description="Number of vehicles to return"),
    offset: int = Query(0, ge=0, description="Number of vehicles to skip")
) -> List[Dict[str, Any]]:
    """Get synced vehicles."""
    return [
        {
            "id": vehicle.id,
            "vin": vehicle.vin,
            "provider_vehicle_id": vehicle.provider_vehicle_id,
            "make": vehicle.make,
            "model": vehicle.model,
            "year": vehicle.year,
            "license_plate": vehicle.license_plate,
            "department_id": vehicle.department_id,
            "updated_at": _iso(vehicle.updated_at)
        }
        for vehicle in list_vehicles(db, limit, offset)
    ]


@router.get("/events")
def list_events(
    db: Session = Depends(get_db),
    vehicle_id: Optional[int] = Query(None, description="Filter by vehicle ID"),
    employee_id: Optional[int] = Query(None, description="Filter by employee ID"),
    event_type: Optional[str] = Query(None, description="Filter by event type"),
    limit: int = Query(100, ge=1, le=1000, description="Number of events to return"),
    offset: int = Query(0, ge=0, description="Number of events to skip")
) -> List[Dict[str, Any]]:
    """Get list of safety events with optional filtering."""
    events = list_safety_events(db, vehicle_id, employee_id, event_type, limit, offset)

    result = []
    for event in events:
        result.append({
            "id": event.id,
            "provider_event_id": event.provider_event_id,
            "vehicle_id": event.vehicle_id,
            "employee_id": event.employee_id,
            "event_type": event.event_type,
            "severity": event.severity,
            "event_time": _iso(event.event_time),
            "speed_mph": event.speed_mph,
            "duration_seconds": event.duration_seconds,
            "location_lat": event.location_lat,
            "location_lon": event.location_lon,
            "location_address": event.location_address,
            "meta": event.meta
        })
    return result


@router.get("/events/stats")
def get_events_stats(
    db: Session = Depends(get_db),
    employee_id: Optional[int] = Query(None, description="Filter by employee ID")
) -> Dict[str, Any]:
    """Get safety event statistics."""
    return get_event_stats(db, employee_id)


@router.get("/drivers/{employee_id}/scores")
def get_driver_scores_endpoint(
    employee_id: int,
    db: Session = Depends(get_db),
    days: int = Query(30, ge=1, le=365, description="Number of days to look back")
) -> List[Dict[str, Any]]:
    """Get daily scores for a specific driver."""
    scores = get_driver_scores(db, employee_id, days)

    result = []
    for score in scores:
        result.append({
            "date": _iso(score.date),
            "employee_id": score.employee_id,
            "vehicle_id": score.vehicle_id,
            "miles_driven": score.miles_driven,
            "total_events": score.total_events,
            "harsh_brake_count": score.harsh_brake_count,
            "rapid_accel_count": score.rapid_accel_count,
            "speeding_count": score.speeding_count,
            "seatbelt_off_count": score.seatbelt_off_count,
            "overall_score": score.overall_score,
            "brake_score": score.brake_score,
            "acceleration_score": score.acceleration_score,
            "speed_score": score.speed_score,
            "seatbelt_score": score.seatbelt_score
        })
    return result


@router.get("/departments/{department_id}/scores")
def get_department_scores_endpoint(
    department_id: int,
    db: Session = Depends(get_db),
    days: int = Query(30, ge=1, le=365, description="Number of days to look back")
) -> List[Dict[str, Any]]:
    """Get daily rollups for a department."""
    rows = get_department_scores(db, department_id, days)

    return [
        {
            "date": _iso(row.date),
            "department_id": row.department_id,
            "active_drivers": row.active_drivers,
            "total_miles": row.total_miles,
            "avg_overall_score": row.avg_overall_score,
            "avg_brake_score": row.avg_brake_score,
            "avg_acceleration_score": row.avg_acceleration_score,
            "avg_speed_score": row.avg_speed_score,
            "avg_seatbelt_score": row.avg_seatbelt_score,
            "high_risk_drivers": row.high_risk_drivers,
            "medium_risk_drivers": row.medium_risk_drivers,
            "low_risk_drivers": row.low_risk_drivers
        }
        for row in rows
    ]


@router.get("/assignments")
def list_assignments_endpoint(
    db: Session = Depends(get_db),
    employee_number: Optional[str] = Query(None, description="Filter by employee number"),
    vin: Optional[str] = Query(None, description="Filter by vehicle VIN")
) -> Dict[str, Any]:
    """List open vehicle assignments."""
    return list_assignments(db, employee_number, vin)


@router.post("/assignments")
def create_assignment(request: AssignmentRequest, db: Session = Depends(get_db)) -> Dict[str, Any]:
    """Assign an employee to a vehicle."""
    try:
        return assign_vehicle(db, request.employee_number, request.vehicle_vin, request.is_primary_driver)
    except AssignmentError as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.post("/assignments/unassign")
def end_assignment(request: AssignmentRequest, db: Session = Depends(get_db)) -> Dict[str, Any]:
    """End an employee's open assignment to a vehicle."""
    try:
        return unassign_vehicle(db, request.employee_number, request.vehicle_vin)
    except AssignmentError as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.post("/employees/import")
async def import_employees_endpoint(request: Request, db: Session = Depends(get_db)) -> Dict[str, Any]:
    """Import employees from a CSV request body."""
    body = await request.body()
    try:
        csv_content = body.decode("utf-8")
    except UnicodeDecodeError:
        raise HTTPException(status_code=400, detail="CSV body must be UTF-8")
    return import_employees(db, csv_content)
