import logging
from datetime import date, datetime, timezone
from typing import Optional, Union

from sqlalchemy import or_
from sqlalchemy.orm import Session

from .models import VehicleAssignment

logger = logging.getLogger(__name__)


def _as_date(at: Union[date, datetime]) -> date:
    if isinstance(at, datetime):
        if at.tzinfo is not None:
            at = at.astimezone(timezone.utc)
        return at.date()
    return at


def active_assignments_query(db: Session, vehicle_id: int, at: Union[date, datetime]):
    """Assignments of a vehicle covering ``at``: assigned_date <= at < unassigned_date."""
    day = _as_date(at)
    return db.query(VehicleAssignment).filter(
        VehicleAssignment.vehicle_id == vehicle_id,
        VehicleAssignment.assigned_date <= day,
        or_(
            VehicleAssignment.unassigned_date.is_(None),
            VehicleAssignment.unassigned_date > day,
        ),
    )


def resolve_driver(db: Session, vehicle_id: int, at: Union[date, datetime]) -> Optional[int]:
    """Resolve the employee responsible for a vehicle at a point in time.

    The primary driver wins; among equally ranked assignments the most
    recently assigned one (then the newest row) is chosen. Returns None when
    no assignment covers that date, which callers treat as a valid but
    unattributable record.
    """
    assignment = active_assignments_query(db, vehicle_id, at).order_by(
        VehicleAssignment.is_primary_driver.desc(),
        VehicleAssignment.assigned_date.desc(),
        VehicleAssignment.id.desc(),
    ).first()

    if assignment is None:
        logger.debug("No active assignment for vehicle %s at %s", vehicle_id, at)
        return None
    return assignment.employee_id
