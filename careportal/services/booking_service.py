# careportal/services/booking_service.py
"""Write-time booking of consultations and blocked time.

Slot availability shown to the user may be stale by the time they submit.
Every write here locks the doctor's profile row, re-reads the doctor's
calendar and re-runs the overlap guard before committing, so concurrent
bookings for one doctor serialize and the last check before commit wins.
"""
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy.orm import Session

from .. import crud, models, schemas
from ..compliance_logger import compliance_logger
from ..config import Settings, get_settings
from ..errors import InputValidationError, NotFoundError, SlotConflictError
from ..models import ConsultationStatus, EventType, ProfileRole
from .consent_service import ConsentLifecycleManager
from .overlap_guard import describe_conflict, find_conflicts
from .slot_service import (
    RESOURCE_BOUND_KINDS, BusyEntry, SlotGridConfig, available_slots,
    busy_entries_from_consultations, infer_event_kind,
)
from .time_window import TimeInterval, local_datetime, overlaps

logger = structlog.get_logger(__name__)

_ACTIVE = (ConsultationStatus.scheduled, ConsultationStatus.confirmed, ConsultationStatus.scheduled_no_consent)


def validate_schedule_request(payload, kind: EventType) -> None:
    """Collect every missing field at once so the form can highlight them together."""
    errors = {}
    if not (payload.title or "").strip() and kind not in RESOURCE_BOUND_KINDS:
        errors["title"] = "Title is required."
    if payload.consultation_date is None:
        errors["consultation_date"] = "Date is required."
    if payload.consultation_time is None:
        errors["consultation_time"] = "Time is required."
    if not payload.doctor_id:
        errors["doctor_id"] = "Select a doctor."
    if kind in RESOURCE_BOUND_KINDS and not payload.patient_id:
        errors["patient_id"] = "Select a patient for a consultation."
    if payload.duration_minutes is not None and payload.duration_minutes <= 0:
        errors["duration_minutes"] = "Duration must be a positive number of minutes."
    if errors:
        raise InputValidationError(errors)


def load_busy_entries(
    db: Session,
    day: date,
    settings: Settings,
    doctor_id: Optional[str] = None,
    patient_id: Optional[str] = None,
) -> List[BusyEntry]:
    # Neighbouring days too: late entries can run past midnight
    rows = crud.get_consultations_in_range(
        db, day - timedelta(days=1), day + timedelta(days=1),
        doctor_id=doctor_id, patient_id=patient_id,
    )
    return busy_entries_from_consultations(rows, settings.clinic_tz, settings.default_appointment_minutes)


def slots_for_day(
    db: Session,
    day: date,
    duration_minutes: int,
    doctor_id: Optional[str] = None,
    patient_id: Optional[str] = None,
    event_type: Optional[EventType] = None,
    exclude_id: Optional[str] = None,
    settings: Optional[Settings] = None,
):
    settings = settings or get_settings()
    kind = EventType(event_type) if event_type else EventType.consultation
    requires_doctor = kind in RESOURCE_BOUND_KINDS
    entries = []
    if doctor_id or not requires_doctor:
        entries = load_busy_entries(db, day, settings, doctor_id=doctor_id, patient_id=patient_id)
    return available_slots(
        day,
        duration_minutes,
        entries,
        resource_filter=doctor_id,
        requires_resource=requires_doctor,
        patient_id=patient_id,
        exclude_entry_id=exclude_id,
        config=SlotGridConfig.from_settings(settings),
    )


class BookingService:
    def __init__(self, db: Session, settings: Optional[Settings] = None, consent: Optional[ConsentLifecycleManager] = None):
        self.db = db
        self.settings = settings or get_settings()
        self.consent = consent or ConsentLifecycleManager(db, self.settings)

    def _candidate(self, day: date, at, end_time, duration_minutes: Optional[int]) -> TimeInterval:
        tz = self.settings.clinic_tz
        start = local_datetime(day, at, tz)
        if end_time is not None:
            end = local_datetime(day, end_time, tz)
            if end <= start:
                end += timedelta(days=1)
            return TimeInterval(start, end)
        return TimeInterval.from_duration(start, duration_minutes or self.settings.default_appointment_minutes)

    def _guard(self, candidate: TimeInterval, doctor_id: str, patient_id: Optional[str], exclude_id: Optional[str] = None):
        """Authoritative overlap check against freshly read rows."""
        day = candidate.start.astimezone(self.settings.clinic_tz).date()
        entries = load_busy_entries(self.db, day, self.settings, doctor_id=doctor_id, patient_id=patient_id)
        conflicts = find_conflicts(candidate, doctor_id, entries, exclude_id=exclude_id)
        if patient_id:
            conflicts += [
                e for e in entries
                if e.counter_party_id == patient_id and e.resource_id != doctor_id
                and e.id != exclude_id and overlaps(candidate, e.interval)
            ]
        if conflicts:
            logger.info("booking_conflict",
                doctor_id=doctor_id,
                start=candidate.start.isoformat(),
                conflicting=[e.id for e in conflicts])
            raise SlotConflictError(describe_conflict(conflicts, self.settings.clinic_tz), [e.id for e in conflicts])

    def _lock_doctor(self, doctor_id: str) -> models.Profile:
        doctor = crud.lock_profile(self.db, doctor_id)
        if doctor is None or doctor.role != ProfileRole.doctor:
            raise NotFoundError(f"Doctor {doctor_id} not found")
        return doctor

    def _check_patient(self, patient_id: Optional[str]):
        if not patient_id:
            return
        patient = crud.get_profile(self.db, patient_id)
        if patient is None or patient.role != ProfileRole.patient:
            raise NotFoundError(f"Patient {patient_id} not found")

    def _initial_status(self, kind: EventType, doctor_id: str, patient_id: Optional[str]) -> ConsultationStatus:
        if kind in RESOURCE_BOUND_KINDS and patient_id:
            if not self.consent.is_authorized(patient_id, doctor_id, models.DataType.health_records):
                return ConsultationStatus.scheduled_no_consent
        return ConsultationStatus.scheduled

    def book(self, payload: "schemas.ConsultationCreate", actor_id: Optional[str] = None) -> models.Consultation:
        kind = infer_event_kind(payload.title, payload.event_type)
        validate_schedule_request(payload, kind)
        candidate = self._candidate(payload.consultation_date, payload.consultation_time,
                                    payload.end_time, payload.duration_minutes)
        patient_id = payload.patient_id or None

        try:
            self._lock_doctor(payload.doctor_id)
            self._check_patient(patient_id)
            self._guard(candidate, payload.doctor_id, patient_id)
            status = self._initial_status(kind, payload.doctor_id, patient_id)
        except Exception:
            self.db.rollback()
            raise

        consultation = crud.create_consultation(self.db, {
            "doctor_id": payload.doctor_id,
            "patient_id": patient_id,
            "consultation_date": payload.consultation_date,
            "consultation_time": payload.consultation_time,
            "end_time": payload.end_time,
            "duration_minutes": candidate.duration_minutes,
            "event_type": kind,
            "title": (payload.title or "").strip() or kind.value.title(),
            "reason": payload.reason,
            "notes": payload.notes,
            "status": status,
        })
        logger.info("consultation_booked",
            consultation_id=consultation.id,
            doctor_id=consultation.doctor_id,
            kind=kind.value,
            status=status.value)
        compliance_logger.log_event(actor_id, None, 'BOOK_CONSULTATION', 'SCHEDULING',
                                    resource_type='consultation', resource_id=consultation.id)
        return consultation

    def reschedule(self, consultation_id: str, payload: "schemas.ConsultationUpdate", actor_id: Optional[str] = None) -> models.Consultation:
        current = crud.get_consultation(self.db, consultation_id)
        if current is None:
            raise NotFoundError(f"Consultation {consultation_id} not found")
        if current.status not in _ACTIVE:
            raise InputValidationError({"status": f"A {current.status.value} consultation cannot be rescheduled."})

        changes: Dict[str, Any] = payload.model_dump(exclude_unset=True)
        merged = schemas.ConsultationCreate(**{
            "doctor_id": current.doctor_id,
            "patient_id": current.patient_id,
            "consultation_date": current.consultation_date,
            "consultation_time": current.consultation_time,
            "end_time": current.end_time,
            "duration_minutes": current.duration_minutes,
            "event_type": current.event_type,
            "title": current.title,
            "reason": current.reason,
            "notes": current.notes,
            **changes,
        })
        # A new time without a new end time keeps the duration, not the old end
        if ("consultation_time" in changes or "duration_minutes" in changes) and "end_time" not in changes:
            merged.end_time = None
        kind = infer_event_kind(merged.title, merged.event_type)
        validate_schedule_request(merged, kind)
        candidate = self._candidate(merged.consultation_date, merged.consultation_time,
                                    merged.end_time, merged.duration_minutes)

        try:
            self._lock_doctor(merged.doctor_id)
            self._check_patient(merged.patient_id)
            self._guard(candidate, merged.doctor_id, merged.patient_id, exclude_id=consultation_id)
            current = crud.get_consultation(self.db, consultation_id, for_update=True)
        except Exception:
            self.db.rollback()
            raise

        updated = crud.update_consultation(self.db, current, {
            "doctor_id": merged.doctor_id,
            "patient_id": merged.patient_id,
            "consultation_date": merged.consultation_date,
            "consultation_time": merged.consultation_time,
            "end_time": merged.end_time,
            "duration_minutes": candidate.duration_minutes,
            "event_type": kind,
            "title": merged.title,
            "reason": merged.reason,
            "notes": merged.notes,
        })
        logger.info("consultation_rescheduled", consultation_id=updated.id, start=candidate.start.isoformat())
        compliance_logger.log_event(actor_id, None, 'RESCHEDULE_CONSULTATION', 'SCHEDULING',
                                    resource_type='consultation', resource_id=updated.id)
        return updated

    def cancel(self, consultation_id: str, actor_id: Optional[str] = None) -> models.Consultation:
        current = crud.get_consultation(self.db, consultation_id, for_update=True)
        if current is None:
            raise NotFoundError(f"Consultation {consultation_id} not found")
        if current.status == ConsultationStatus.cancelled:
            return current
        updated = crud.update_consultation(self.db, current, {"status": ConsultationStatus.cancelled})
        logger.info("consultation_cancelled", consultation_id=updated.id)
        compliance_logger.log_event(actor_id, None, 'CANCEL_CONSULTATION', 'SCHEDULING',
                                    resource_type='consultation', resource_id=updated.id)
        return updated

    def check_conflict(self, doctor_id: str, start: datetime, duration_minutes: int,
                       exclude_id: Optional[str] = None) -> List[BusyEntry]:
        """Advisory check for the booking form; ``book`` repeats it authoritatively."""
        if duration_minutes <= 0:
            raise InputValidationError({"duration_minutes": "Duration must be a positive number of minutes."})
        if start.tzinfo is None:
            start = start.replace(tzinfo=self.settings.clinic_tz)
        candidate = TimeInterval.from_duration(start, duration_minutes)
        day = start.astimezone(self.settings.clinic_tz).date()
        entries = load_busy_entries(self.db, day, self.settings, doctor_id=doctor_id)
        return find_conflicts(candidate, doctor_id, entries, exclude_id=exclude_id)
