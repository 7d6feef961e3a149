from sqlalchemy import (
    Boolean, Column, Integer, String, Float, Date, DateTime, ForeignKey, JSON, Text, UniqueConstraint
)
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.sql import func

Base = declarative_base()


class Department(Base):
    __tablename__ = "departments"
    id = Column(Integer, primary_key=True)
    name = Column(String(128), unique=True, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class Employee(Base):
    __tablename__ = "employees"
    id = Column(Integer, primary_key=True)
    employee_number = Column(String(64), unique=True, nullable=False)
    first_name = Column(String(128), nullable=False)
    last_name = Column(String(128), nullable=False)
    email = Column(String(255))
    department_id = Column(Integer, ForeignKey("departments.id"))
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
    department = relationship("Department")

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"


class Vehicle(Base):
    __tablename__ = "vehicles"
    id = Column(Integer, primary_key=True)
    vin = Column(String(32), unique=True, nullable=False)
    provider_vehicle_id = Column(String(128), index=True)
    make = Column(String(64))
    model = Column(String(64))
    year = Column(Integer)
    license_plate = Column(String(32))
    department_id = Column(Integer, ForeignKey("departments.id"))
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
    department = relationship("Department")


class VehicleAssignment(Base):
    __tablename__ = "vehicle_assignments"
    id = Column(Integer, primary_key=True)
    employee_id = Column(Integer, ForeignKey("employees.id"), nullable=False)
    vehicle_id = Column(Integer, ForeignKey("vehicles.id"), nullable=False, index=True)
    assigned_date = Column(Date, nullable=False)
    # Open-ended while the assignment is active
    unassigned_date = Column(Date)
    is_primary_driver = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    employee = relationship("Employee")
    vehicle = relationship("Vehicle")


class SafetyEvent(Base):
    __tablename__ = "safety_events"
    id = Column(Integer, primary_key=True)
    provider_event_id = Column(String(128), unique=True, nullable=False)
    vehicle_id = Column(Integer, ForeignKey("vehicles.id"), nullable=False)
    employee_id = Column(Integer, ForeignKey("employees.id"))
    event_time = Column(DateTime(timezone=True), nullable=False)
    event_type = Column(String(32), nullable=False)
    severity = Column(String(16), nullable=False)
    speed_mph = Column(Float)
    duration_seconds = Column(Float)
    location_lat = Column(Float)
    location_lon = Column(Float)
    location_address = Column(String(255))
    meta = Column(JSON)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class DailyDriverScore(Base):
    __tablename__ = "daily_driver_scores"
    __table_args__ = (UniqueConstraint("date", "employee_id", "vehicle_id", name="uq_daily_driver_score"),)
    id = Column(Integer, primary_key=True)
    date = Column(Date, nullable=False)
    employee_id = Column(Integer, ForeignKey("employees.id"), nullable=False)
    vehicle_id = Column(Integer, ForeignKey("vehicles.id"), nullable=False)
    miles_driven = Column(Float, default=0.0)
    total_events = Column(Integer, default=0)
    harsh_brake_count = Column(Integer, default=0)
    rapid_accel_count = Column(Integer, default=0)
    speeding_count = Column(Integer, default=0)
    seatbelt_off_count = Column(Integer, default=0)
    overall_score = Column(Float)
    brake_score = Column(Float)
    acceleration_score = Column(Float)
    speed_score = Column(Float)
    seatbelt_score = Column(Float)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class DepartmentDailyScore(Base):
    __tablename__ = "department_daily_scores"
    __table_args__ = (UniqueConstraint("date", "department_id", name="uq_department_daily_score"),)
    id = Column(Integer, primary_key=True)
    date = Column(Date, nullable=False)
    department_id = Column(Integer, ForeignKey("departments.id"), nullable=False)
    active_drivers = Column(Integer, default=0)
    total_miles = Column(Float, default=0.0)
    avg_overall_score = Column(Float)
    avg_brake_score = Column(Float)
    avg_acceleration_score = Column(Float)
    avg_speed_score = Column(Float)
    avg_seatbelt_score = Column(Float)
    high_risk_drivers = Column(Integer, default=0)
    medium_risk_drivers = Column(Integer, default=0)
    low_risk_drivers = Column(Integer, default=0)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class SyncLog(Base):
    __tablename__ = "sync_log"
    id = Column(Integer, primary_key=True)
    sync_type = Column(String(16), nullable=False)
    # started -> completed | failed
    status = Column(String(16), nullable=False, default="started")
    meta = Column(JSON)
    records_processed = Column(Integer)
    vehicles_processed = Column(Integer)
    error_message = Column(Text)
    started_at = Column(DateTime(timezone=True), server_default=func.now())
    completed_at = Column(DateTime(timezone=True))
