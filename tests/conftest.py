"""
Shared test fixtures: a file-backed SQLite database per test, a fleet data
builder and a fake telematics provider served through httpx.MockTransport.
"""

import os
from datetime import datetime, timezone

import httpx
import pytest

# Point the application at SQLite before any fleetsync import
os.environ["DATABASE_URL"] = "sqlite://"
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ.setdefault("LOG_FILE", "")

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from fleetsync.db import init_db
from fleetsync.models import Department, Employee, Vehicle, VehicleAssignment
from fleetsync.provider import FleetProviderClient
from fleetsync.sync import SyncOrchestrator

SYNC_NOW = datetime(2024, 2, 20, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def engine(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'fleet.db'}",
        future=True,
        connect_args={"check_same_thread": False},
    )
    init_db(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


class FleetBuilder:
    """Creates reference rows (departments, employees, vehicles, assignments)."""

    def __init__(self, db):
        self.db = db

    def department(self, name):
        department = Department(name=name)
        self.db.add(department)
        self.db.commit()
        return department

    def employee(self, number, first="Test", last=None, department=None, is_active=True):
        employee = Employee(
            employee_number=number,
            first_name=first,
            last_name=last or number,
            email=f"{number.lower()}@example.com",
            department_id=department.id if department else None,
            is_active=is_active,
        )
        self.db.add(employee)
        self.db.commit()
        return employee

    def vehicle(self, vin, provider_id=None, make="Ford", model="Transit", year=2022, plate=None):
        vehicle = Vehicle(
            vin=vin,
            provider_vehicle_id=provider_id or f"fp-{vin}",
            make=make,
            model=model,
            year=year,
            license_plate=plate or f"PL-{vin[-4:]}",
        )
        self.db.add(vehicle)
        self.db.commit()
        return vehicle

    def assignment(self, employee, vehicle, assigned, unassigned=None, primary=False):
        assignment = VehicleAssignment(
            employee_id=employee.id,
            vehicle_id=vehicle.id,
            assigned_date=assigned,
            unassigned_date=unassigned,
            is_primary_driver=primary,
        )
        self.db.add(assignment)
        self.db.commit()
        return assignment


@pytest.fixture
def fleet(db):
    return FleetBuilder(db)


class FakeProvider:
    """In-memory provider API answering the same routes as the real one."""

    def __init__(self):
        self.vehicles = []
        self.events = {}
        self.behavior = {}
        self.failing_vehicles = set()
        self.token_status = 200
        self.roster_status = 200
        self.requests = []

    def add_vehicle(self, provider_id, vin, make="Ford", model="Transit", year=2022, plate=None):
        self.vehicles.append({
            "vehicleId": provider_id,
            "vin": vin,
            "make": make,
            "model": model,
            "year": year,
            "licensePlate": plate,
        })

    def add_event(self, provider_id, event_id, timestamp, event_type="HARSH_BRAKE", severity="HIGH", **extra):
        self.events.setdefault(provider_id, []).append({
            "eventId": event_id,
            "vehicleId": provider_id,
            "timestamp": timestamp,
            "eventType": event_type,
            "severity": severity,
            **extra,
        })

    def add_behavior(self, provider_id, day, miles=100.0, harsh=0, accel=0, speeding=0, seatbelt=0,
                     overall=None):
        row = {
            "vehicleId": provider_id,
            "date": day,
            "milesDriven": miles,
            "harshBrakeCount": harsh,
            "rapidAccelCount": accel,
            "speedingCount": speeding,
            "seatbeltOffCount": seatbelt,
        }
        if overall is not None:
            row["overallScore"] = overall
        self.behavior.setdefault(provider_id, []).append(row)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path

        if path == "/oauth/token":
            if self.token_status != 200:
                return httpx.Response(self.token_status, json={"error": "invalid_client"})
            return httpx.Response(200, json={"access_token": "tok-123", "token_type": "Bearer", "expires_in": 3600})

        if request.headers.get("Authorization") != "Bearer tok-123":
            return httpx.Response(401)

        parts = path.strip("/").split("/")
        if parts[1:2] == ["fleets"]:
            if self.roster_status != 200:
                return httpx.Response(self.roster_status)
            return httpx.Response(200, json={"vehicles": self.vehicles})

        if parts[1:2] == ["vehicles"]:
            provider_id, resource = parts[2], parts[3]
            if provider_id in self.failing_vehicles:
                raise httpx.ConnectError("connection reset", request=request)
            if resource == "safety-events":
                return httpx.Response(200, json={"events": self.events.get(provider_id, [])})
            if resource == "driver-behavior":
                return httpx.Response(200, json={"dailyBehavior": self.behavior.get(provider_id, [])})

        return httpx.Response(404)

    def client(self):
        return FleetProviderClient(
            base_url="https://provider.test",
            client_id="client",
            client_secret="secret",
            fleet_id="FLEET1",
            transport=httpx.MockTransport(self.handler),
        )


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def orchestrator(session_factory, provider):
    return SyncOrchestrator(
        session_factory=session_factory,
        client_factory=provider.client,
        max_concurrency=2,
        clock=lambda: SYNC_NOW,
    )
