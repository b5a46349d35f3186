# careportal/schemas.py
from datetime import datetime, date, time
from typing import List, Optional, Dict, Any
from pydantic import BaseModel, Field, field_validator
from enum import Enum

from .models import ConsentStatus, ConsultationStatus, DataType, EventType


# --- Enum Classes ---
class ConsentDecision(str, Enum):
    approved = "approved"
    denied = "denied"


# --- Base Schemas ---
class BaseSchema(BaseModel):
    class Config:
        from_attributes = True


# --- Slots ---
class SlotResponse(BaseSchema):
    start: datetime
    end: datetime
    grid_end: datetime
    available: bool
    blocking_entry_ids: List[str] = []


class SlotAvailabilityResponse(BaseSchema):
    day: date
    doctor_id: Optional[str] = None
    duration_minutes: int
    requires_doctor: bool
    timezone: str
    slots: List[SlotResponse]


# --- Consultations ---
class ConsultationBase(BaseSchema):
    doctor_id: Optional[str] = None
    patient_id: Optional[str] = None
    consultation_date: Optional[date] = None
    consultation_time: Optional[time] = None
    end_time: Optional[time] = None
    duration_minutes: Optional[int] = None
    event_type: Optional[EventType] = None
    title: Optional[str] = Field(None, max_length=255)
    reason: Optional[str] = None
    notes: Optional[str] = None


class ConsultationCreate(ConsultationBase):
    """Booking form payload. Required fields are checked by the booking service
    so that every missing field is reported together."""


class ConsultationUpdate(ConsultationBase):
    pass


class ConsultationResponse(BaseSchema):
    id: str
    doctor_id: str
    patient_id: Optional[str] = None
    consultation_date: date
    consultation_time: time
    end_time: Optional[time] = None
    duration_minutes: Optional[int] = None
    event_type: Optional[EventType] = None
    title: Optional[str] = None
    reason: Optional[str] = None
    notes: Optional[str] = None
    status: ConsultationStatus


class ConflictCheckRequest(BaseModel):
    doctor_id: str
    start: datetime
    duration_minutes: int = 30
    exclude_id: Optional[str] = None


class ConflictCheckResponse(BaseModel):
    conflict: bool
    conflicting_ids: List[str] = []
    message: Optional[str] = None


# --- Consent ---
class ConsentRequestCreate(BaseModel):
    patient_id: str
    doctor_id: Optional[str] = None  # defaults to the requesting doctor
    purpose: str
    requested_data_types: List[DataType]
    duration_days: Optional[int] = None
    message: Optional[str] = None

    @field_validator("requested_data_types")
    @classmethod
    def dedupe_data_types(cls, v):
        unique = []
        for item in v:
            if item not in unique:
                unique.append(item)
        return unique


class ConsentRespond(BaseModel):
    decision: ConsentDecision


class ConsentExtend(BaseModel):
    additional_days: Optional[int] = Field(None, gt=0)


class ConsentRequestResponse(BaseSchema):
    id: str
    source: str = "consent_request"
    patient_id: Optional[str] = None
    doctor_id: Optional[str] = None
    purpose: str
    requested_data_types: List[str]
    duration_days: int
    status: ConsentStatus
    effective_status: ConsentStatus
    requested_at: Optional[datetime] = None
    responded_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    revoked_at: Optional[datetime] = None
    message: Optional[str] = None
    grant_sync_state: Optional[str] = None
    missing_grant_types: List[str] = []


class AccessCheckResponse(BaseModel):
    patient_id: str
    doctor_id: str
    data_type: str
    authorized: bool


# --- Disclosure ---
class RenderedDocumentResponse(BaseModel):
    record_id: str
    title: str
    viewer_role: str
    body: str
    identity_fields: Dict[str, Optional[str]]
    metadata: Dict[str, Any]


# --- Consistency ---
class ConsentIssue(BaseModel):
    consent_request_id: str
    patient_id: Optional[str] = None
    doctor_id: Optional[str] = None
    issue: str


class ConsentConsistencyReport(BaseModel):
    checked_at: datetime
    approved_without_grants: List[ConsentIssue]
    revoked_with_active_grants: List[ConsentIssue]
    incomplete_requests: List[ConsentIssue]


class ConsentFixReport(BaseModel):
    checked_at: datetime
    created_grants: List[Dict[str, Any]] = []
    revoked_grants: List[Dict[str, Any]] = []
    migrated_forms: List[str] = []
    errors: List[Dict[str, Any]] = []
