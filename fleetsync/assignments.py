import logging
from datetime import date
from typing import Dict, Optional

from sqlalchemy.orm import Session

from .models import Department, Employee, Vehicle, VehicleAssignment

logger = logging.getLogger(__name__)


class AssignmentError(Exception):
    """Unknown or inactive employee/vehicle."""


def _get_employee(db: Session, employee_number: str, active_only: bool) -> Employee:
    query = db.query(Employee).filter(Employee.employee_number == employee_number)
    if active_only:
        query = query.filter(Employee.is_active.is_(True))
    employee = query.first()
    if employee is None:
        suffix = " or inactive" if active_only else ""
        raise AssignmentError(f"Employee {employee_number} not found{suffix}")
    return employee


def _get_vehicle(db: Session, vin: str, active_only: bool) -> Vehicle:
    query = db.query(Vehicle).filter(Vehicle.vin == vin)
    if active_only:
        query = query.filter(Vehicle.is_active.is_(True))
    vehicle = query.first()
    if vehicle is None:
        suffix = " or inactive" if active_only else ""
        raise AssignmentError(f"Vehicle {vin} not found{suffix}")
    return vehicle


def _describe(vehicle: Vehicle) -> str:
    return f"{vehicle.make} {vehicle.model} ({vehicle.license_plate})"


def assign_vehicle(
    db: Session,
    employee_number: str,
    vin: str,
    is_primary_driver: bool = False,
    assigned_date: Optional[date] = None
) -> Dict:
    """Open an assignment binding an employee to a vehicle.

    Marking the employee primary clears the flag on the vehicle's other open
    assignments, so at most one primary assignment is active per vehicle. A
    primary driver's department becomes the vehicle's department.
    """
    employee = _get_employee(db, employee_number, active_only=True)
    vehicle = _get_vehicle(db, vin, active_only=True)
    assigned_date = assigned_date or date.today()

    existing = db.query(VehicleAssignment).filter(
        VehicleAssignment.employee_id == employee.id,
        VehicleAssignment.vehicle_id == vehicle.id,
        VehicleAssignment.unassigned_date.is_(None)
    ).first()
    if existing:
        return {
            "success": False,
            "message": f"Employee {employee.full_name} is already assigned to vehicle {_describe(vehicle)}"
        }

    if is_primary_driver:
        db.query(VehicleAssignment).filter(
            VehicleAssignment.vehicle_id == vehicle.id,
            VehicleAssignment.unassigned_date.is_(None)
        ).update({VehicleAssignment.is_primary_driver: False}, synchronize_session=False)

    assignment = VehicleAssignment(
        employee_id=employee.id,
        vehicle_id=vehicle.id,
        assigned_date=assigned_date,
        is_primary_driver=is_primary_driver
    )
    db.add(assignment)

    if is_primary_driver and employee.department_id:
        vehicle.department_id = employee.department_id

    db.commit()
    db.refresh(assignment)
    logger.info("Assigned %s to %s (primary=%s)", employee.employee_number, vehicle.vin, is_primary_driver)

    return {
        "success": True,
        "assignment_id": assignment.id,
        "message": f"Assigned {employee.full_name} to {_describe(vehicle)}",
        "details": {
            "employee": employee.full_name,
            "vehicle": f"{vehicle.make} {vehicle.model} {vehicle.year}",
            "license_plate": vehicle.license_plate,
            "assigned_date": assignment.assigned_date.isoformat(),
            "is_primary_driver": is_primary_driver
        }
    }


def unassign_vehicle(
    db: Session,
    employee_number: str,
    vin: str,
    unassigned_date: Optional[date] = None
) -> Dict:
    """End-date the open assignment between an employee and a vehicle."""
    employee = _get_employee(db, employee_number, active_only=False)
    vehicle = _get_vehicle(db, vin, active_only=False)

    assignment = db.query(VehicleAssignment).filter(
        VehicleAssignment.employee_id == employee.id,
        VehicleAssignment.vehicle_id == vehicle.id,
        VehicleAssignment.unassigned_date.is_(None)
    ).first()
    if assignment is None:
        return {
            "success": False,
            "message": f"No active assignment found for {employee.full_name} and vehicle {vehicle.make} {vehicle.model}"
        }

    assignment.unassigned_date = unassigned_date or date.today()
    db.commit()
    db.refresh(assignment)
    logger.info("Unassigned %s from %s", employee.employee_number, vehicle.vin)

    return {
        "success": True,
        "message": f"Unassigned {employee.full_name} from {_describe(vehicle)}",
        "details": {
            "employee": employee.full_name,
            "vehicle": f"{vehicle.make} {vehicle.model}",
            "assigned_date": assignment.assigned_date.isoformat(),
            "unassigned_date": assignment.unassigned_date.isoformat()
        }
    }


def list_assignments(db: Session, employee_number: Optional[str] = None, vin: Optional[str] = None) -> Dict:
    """List open assignments ordered by department, last name, first name."""
    query = db.query(VehicleAssignment, Employee, Vehicle, Department.name).join(
        Employee, VehicleAssignment.employee_id == Employee.id
    ).join(
        Vehicle, VehicleAssignment.vehicle_id == Vehicle.id
    ).outerjoin(
        Department, Employee.department_id == Department.id
    ).filter(VehicleAssignment.unassigned_date.is_(None))

    if employee_number:
        query = query.filter(Employee.employee_number == employee_number)
    if vin:
        query = query.filter(Vehicle.vin == vin)

    rows = query.order_by(Department.name, Employee.last_name, Employee.first_name).all()

    assignments = []
    for assignment, employee, vehicle, department_name in rows:
        assignments.append({
            "id": assignment.id,
            "employee": {
                "number": employee.employee_number,
                "name": employee.full_name,
                "email": employee.email,
                "department": department_name
            },
            "vehicle": {
                "vin": vehicle.vin,
                "license_plate": vehicle.license_plate,
                "description": f"{vehicle.make} {vehicle.model} {vehicle.year}"
            },
            "assigned_date": assignment.assigned_date.isoformat(),
            "is_primary_driver": assignment.is_primary_driver
        })

    return {"success": True, "count": len(assignments), "assignments": assignments}
