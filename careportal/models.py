# careportal/models.py
import enum
import uuid

from sqlalchemy import (
    Column, Integer, String, DateTime, Time, ForeignKey, Text, Date,
    Enum as SQLAlchemyEnum, JSON, Index
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from .database import Base


def _uuid() -> str:
    return str(uuid.uuid4())


class ProfileRole(str, enum.Enum):
    patient = "patient"
    doctor = "doctor"
    admin = "admin"


class ConsultationStatus(str, enum.Enum):
    scheduled = "scheduled"
    confirmed = "confirmed"
    scheduled_no_consent = "scheduled_no_consent"
    completed = "completed"
    cancelled = "cancelled"


class EventType(str, enum.Enum):
    consultation = "consultation"
    followup = "followup"
    blocked = "blocked"
    meeting = "meeting"
    reminder = "reminder"


class ConsentStatus(str, enum.Enum):
    pending = "pending"
    approved = "approved"
    denied = "denied"
    revoked = "revoked"
    expired = "expired"

    @property
    def is_terminal(self) -> bool:
        return self in (ConsentStatus.denied, ConsentStatus.revoked, ConsentStatus.expired)


class DataType(str, enum.Enum):
    health_records = "health_records"
    prescriptions = "prescriptions"
    consultation_notes = "consultation_notes"
    all = "all"


class AccessType(str, enum.Enum):
    view_records = "view_records"
    view_prescriptions = "view_prescriptions"
    view_consultation_notes = "view_consultation_notes"
    all = "all"


class GrantStatus(str, enum.Enum):
    active = "active"
    revoked = "revoked"


class GrantSyncState(str, enum.Enum):
    complete = "complete"
    incomplete = "incomplete"
    revocation_pending = "revocation_pending"


class AuditAction(str, enum.Enum):
    CREATE = "CREATE"
    READ = "READ"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    APPROVE = "APPROVE"
    DENY = "DENY"
    REVOKE = "REVOKE"
    DISCLOSE = "DISCLOSE"
    ACCESS_DENIED = "ACCESS_DENIED"


class Profile(Base):
    """Portal identity for a patient, doctor or administrator."""
    __tablename__ = "profiles"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(36), unique=True, index=True, nullable=True)
    full_name = Column(String(255), nullable=False)
    email = Column(String(255), nullable=True)
    role = Column(SQLAlchemyEnum(ProfileRole, name='profile_role'), default=ProfileRole.patient, nullable=False)
    mrn = Column(String(64), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class Consultation(Base):
    """A consultation or a doctor-blocked interval (patient_id is null)."""
    __tablename__ = "consultations"
    __table_args__ = (
        Index('idx_consultations_doctor_date', 'doctor_id', 'consultation_date'),
        Index('idx_consultations_patient_date', 'patient_id', 'consultation_date'),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    doctor_id = Column(String(36), ForeignKey("profiles.id"), nullable=False)
    patient_id = Column(String(36), ForeignKey("profiles.id"), nullable=True)
    consultation_date = Column(Date, nullable=False)
    consultation_time = Column(Time, nullable=False)
    end_time = Column(Time, nullable=True)
    duration_minutes = Column(Integer, nullable=True)
    event_type = Column(SQLAlchemyEnum(EventType, name='event_type'), nullable=True)
    title = Column(String(255), nullable=True)
    reason = Column(Text, nullable=True)
    notes = Column(Text, nullable=True)
    status = Column(SQLAlchemyEnum(ConsultationStatus, name='consultation_status'), default=ConsultationStatus.scheduled, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    doctor = relationship("Profile", foreign_keys=[doctor_id])
    patient = relationship("Profile", foreign_keys=[patient_id])


class ConsentRequest(Base):
    """Doctor's request for access to a patient's data."""
    __tablename__ = "consent_requests"
    __table_args__ = (
        Index('idx_consent_patient_doctor', 'patient_id', 'doctor_id'),
        Index('idx_consent_status', 'status'),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    patient_id = Column(String(36), ForeignKey("profiles.id"), nullable=False)
    doctor_id = Column(String(36), ForeignKey("profiles.id"), nullable=False)
    purpose = Column(Text, nullable=False)
    requested_data_types = Column(JSON, nullable=False, default=list)
    duration_days = Column(Integer, nullable=False, default=7)
    status = Column(SQLAlchemyEnum(ConsentStatus, name='consent_status'), default=ConsentStatus.pending, nullable=False)
    message = Column(Text, nullable=True)
    requested_at = Column(DateTime(timezone=True), nullable=False)
    responded_at = Column(DateTime(timezone=True), nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    revoked_at = Column(DateTime(timezone=True), nullable=True)
    # Approval saga record: which grant kinds still have to be created
    grant_sync_state = Column(String(32), nullable=True)
    missing_grant_types = Column(JSON, nullable=True)
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    patient = relationship("Profile", foreign_keys=[patient_id])
    doctor = relationship("Profile", foreign_keys=[doctor_id])
    grants = relationship("PatientAccess", back_populates="consent_request")


class PatientAccess(Base):
    """Access grant derived from an approved consent request."""
    __tablename__ = "patient_access"
    __table_args__ = (
        Index('idx_access_patient_doctor_status', 'patient_id', 'doctor_id', 'status'),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    patient_id = Column(String(36), ForeignKey("profiles.id"), nullable=False)
    doctor_id = Column(String(36), ForeignKey("profiles.id"), nullable=False)
    access_type = Column(SQLAlchemyEnum(AccessType, name='access_type'), nullable=False)
    granted_at = Column(DateTime(timezone=True), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    status = Column(SQLAlchemyEnum(GrantStatus, name='grant_status'), default=GrantStatus.active, nullable=False)
    consent_request_id = Column(String(36), ForeignKey("consent_requests.id"), nullable=True)
    revoked_at = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    consent_request = relationship("ConsentRequest", back_populates="grants")


class HealthRecord(Base):
    """Patient health record; consent forms are records tagged `consent_form`."""
    __tablename__ = "health_records"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(36), index=True, nullable=False)
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    record_type = Column(String(50), nullable=False, default="consultation")
    tags = Column(JSON, nullable=False, default=list)
    provider_name = Column(String(255), nullable=True)
    consent_metadata = Column(JSON, nullable=True)
    metadata_version = Column(Integer, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())


class AuditLog(Base):
    """Compliance trail for consent transitions and disclosures."""
    __tablename__ = "audit_logs"
    __table_args__ = (
        Index('idx_audit_actor_date', 'actor_id', 'timestamp'),
        Index('idx_audit_resource', 'resource_type', 'resource_id'),
    )

    id = Column(Integer, primary_key=True, index=True)
    actor_id = Column(String(36), nullable=True)
    actor_role = Column(String(20), nullable=True)
    action = Column(SQLAlchemyEnum(AuditAction, name='audit_action'), nullable=False)
    category = Column(String(50), nullable=False, default="GENERAL", index=True)
    severity = Column(String(20), default="INFO", index=True)  # INFO, WARN, ERROR, CRITICAL
    resource_type = Column(String(50), nullable=True)
    resource_id = Column(String(36), nullable=True)
    details = Column(Text, nullable=True)
    timestamp = Column(DateTime(timezone=True), server_default=func.now(), index=True)
