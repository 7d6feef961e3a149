"""Typed representations of provider payloads and API request/response bodies.

Provider records are validated here, at the API boundary, so a malformed
payload fails on ingestion instead of flowing untyped into storage.
"""
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator


class SyncType(str, Enum):
    FULL = "full"
    INCREMENTAL = "incremental"
    MANUAL = "manual"


class ProviderEventType(str, Enum):
    HARSH_BRAKE = "HARSH_BRAKE"
    RAPID_ACCELERATION = "RAPID_ACCELERATION"
    SPEEDING = "SPEEDING"
    SEATBELT_OFF = "SEATBELT_OFF"
    COLLISION_ALERT = "COLLISION_ALERT"


class ProviderSeverity(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


# Provider vocabulary -> internal vocabulary stored in safety_events
EVENT_TYPE_MAP = {
    ProviderEventType.HARSH_BRAKE: "harsh_brake",
    ProviderEventType.RAPID_ACCELERATION: "rapid_accel",
    ProviderEventType.SPEEDING: "speeding",
    ProviderEventType.SEATBELT_OFF: "seatbelt_off",
    ProviderEventType.COLLISION_ALERT: "collision",
}


def _normalize_token(value: Any) -> Any:
    """Accept both ``harsh-brake`` and ``HARSH_BRAKE`` spellings."""
    if isinstance(value, str):
        return value.strip().upper().replace("-", "_")
    return value


class ProviderModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class AccessToken(ProviderModel):
    access_token: str
    token_type: str = "Bearer"
    expires_in: Optional[int] = None


class ProviderVehicle(ProviderModel):
    external_vehicle_id: str = Field(validation_alias=AliasChoices("vehicleId", "externalVehicleId"))
    vin: str = Field(min_length=1)
    make: Optional[str] = None
    model: Optional[str] = None
    year: Optional[int] = None
    license_plate: Optional[str] = Field(default=None, alias="licensePlate")


class ProviderLocation(ProviderModel):
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    address: Optional[str] = None


class ProviderSafetyEvent(ProviderModel):
    event_id: str = Field(alias="eventId", min_length=1)
    vehicle_id: Optional[str] = Field(default=None, alias="vehicleId")
    timestamp: datetime
    event_type: ProviderEventType = Field(alias="eventType")
    severity: ProviderSeverity
    location: Optional[ProviderLocation] = None
    speed: Optional[float] = None
    duration: Optional[float] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("event_type", "severity", mode="before")
    @classmethod
    def normalize_vocabulary(cls, value):
        return _normalize_token(value)

    @field_validator("metadata", mode="before")
    @classmethod
    def default_metadata(cls, value):
        return value or {}

    @property
    def internal_event_type(self) -> str:
        return EVENT_TYPE_MAP[self.event_type]

    @property
    def internal_severity(self) -> str:
        return self.severity.value.lower()


class ProviderDriverBehavior(ProviderModel):
    date: date
    vehicle_id: Optional[str] = Field(default=None, alias="vehicleId")
    miles_driven: float = Field(default=0.0, alias="milesDriven", ge=0)
    harsh_brake_count: int = Field(default=0, alias="harshBrakeCount", ge=0)
    rapid_accel_count: int = Field(default=0, alias="rapidAccelCount", ge=0)
    speeding_count: int = Field(default=0, alias="speedingCount", ge=0)
    seatbelt_off_count: int = Field(default=0, alias="seatbeltOffCount", ge=0)
    overall_score: Optional[float] = Field(default=None, alias="overallScore")


class SyncRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    sync_type: SyncType = Field(default=SyncType.INCREMENTAL, alias="syncType")
    days_to_sync: int = Field(default=7, alias="daysToSync", ge=1, le=365)


class SyncResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: bool
    events_processed: int = Field(alias="eventsProcessed")
    vehicles_processed: int = Field(alias="vehiclesProcessed")
    sync_run_id: Optional[int] = Field(default=None, alias="syncRunId")


class AssignmentRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    employee_number: str = Field(alias="employeeNumber")
    vehicle_vin: str = Field(alias="vehicleVin")
    is_primary_driver: bool = Field(default=False, alias="isPrimaryDriver")
