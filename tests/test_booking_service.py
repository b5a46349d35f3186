# tests/test_booking_service.py
from datetime import date, time

import pytest

from careportal import models, schemas
from careportal.errors import InputValidationError, NotFoundError, SlotConflictError
from careportal.models import ConsultationStatus, DataType
from careportal.services.booking_service import BookingService, slots_for_day
from careportal.services.consent_service import ConsentLifecycleManager
from careportal.services.time_window import local_datetime

DAY = date(2030, 1, 15)


def payload(doctor, patient=None, at=time(10, 0), minutes=30, **fields):
    return schemas.ConsultationCreate(
        doctor_id=doctor.id,
        patient_id=patient.id if patient else None,
        consultation_date=DAY,
        consultation_time=at,
        duration_minutes=minutes,
        **fields,
    )


def slot_at(slots, settings, hour, minute=0):
    start = local_datetime(DAY, time(hour, minute), settings.clinic_tz)
    return next(s for s in slots if s.start == start)


def test_booking_without_consent_is_flagged(db, doctor, patient):
    consultation = BookingService(db).book(payload(doctor, patient), actor_id=doctor.id)
    assert consultation.status == ConsultationStatus.scheduled_no_consent
    assert consultation.event_type == models.EventType.consultation
    assert consultation.duration_minutes == 30


def test_booking_with_consent_is_scheduled(db, doctor, patient):
    consent = ConsentLifecycleManager(db)
    request = consent.create_request(patient.id, doctor.id, "Treatment", [DataType.health_records])
    consent.approve(request.id)

    consultation = BookingService(db).book(payload(doctor, patient))
    assert consultation.status == ConsultationStatus.scheduled


def test_overlapping_booking_is_rejected(db, doctor, patient, other_patient):
    service = BookingService(db)
    first = service.book(payload(doctor, patient))
    with pytest.raises(SlotConflictError) as exc_info:
        service.book(payload(doctor, other_patient, at=time(9, 30), minutes=60))
    assert exc_info.value.conflicting_ids == [first.id]
    assert "Please choose another slot" in exc_info.value.message


def test_adjacent_booking_is_accepted(db, doctor, patient, other_patient):
    service = BookingService(db)
    service.book(payload(doctor, patient))
    second = service.book(payload(doctor, other_patient, at=time(10, 30)))
    assert second.id


def test_patient_cannot_be_booked_twice_at_once(db, doctor, other_doctor, patient):
    service = BookingService(db)
    service.book(payload(doctor, patient))
    with pytest.raises(SlotConflictError):
        service.book(payload(other_doctor, patient, at=time(10, 15)))


def test_blocked_time_needs_no_patient_and_blocks_slots(db, doctor, patient, settings):
    service = BookingService(db)
    blocked = service.book(payload(doctor, at=time(13, 0), minutes=60, title="Lunch break"))
    assert blocked.event_type == models.EventType.blocked
    assert blocked.patient_id is None

    slots = slots_for_day(db, DAY, 30, doctor_id=doctor.id, settings=settings)
    assert not slot_at(slots, settings, 13).available
    assert not slot_at(slots, settings, 13, 30).available
    assert slot_at(slots, settings, 14).available

    with pytest.raises(SlotConflictError):
        service.book(payload(doctor, patient, at=time(13, 30)))


def test_missing_fields_are_reported_together(db, doctor):
    incomplete = schemas.ConsultationCreate(doctor_id=doctor.id, event_type=models.EventType.consultation)
    with pytest.raises(InputValidationError) as exc_info:
        BookingService(db).book(incomplete)
    assert set(exc_info.value.errors) == {"consultation_date", "consultation_time", "patient_id"}


def test_blocked_time_requires_a_title(db, doctor):
    with pytest.raises(InputValidationError) as exc_info:
        BookingService(db).book(payload(doctor, event_type=models.EventType.meeting))
    assert "title" in exc_info.value.errors


def test_unknown_doctor_is_not_found(db, patient):
    ghost = models.Profile(id="missing-doctor", full_name="Nobody")
    with pytest.raises(NotFoundError):
        BookingService(db).book(payload(ghost, patient))


def test_reschedule_does_not_conflict_with_itself(db, doctor, patient):
    service = BookingService(db)
    consultation = service.book(payload(doctor, patient))
    moved = service.reschedule(consultation.id, schemas.ConsultationUpdate(consultation_time=time(10, 15)))
    assert moved.consultation_time == time(10, 15)
    assert moved.duration_minutes == 30


def test_reschedule_into_another_booking_conflicts(db, doctor, patient, other_patient):
    service = BookingService(db)
    service.book(payload(doctor, patient))
    second = service.book(payload(doctor, other_patient, at=time(11, 0)))
    with pytest.raises(SlotConflictError):
        service.reschedule(second.id, schemas.ConsultationUpdate(consultation_time=time(10, 0)))


def test_cancel_frees_the_slot(db, doctor, patient, other_patient, settings):
    service = BookingService(db)
    consultation = service.book(payload(doctor, patient))
    cancelled = service.cancel(consultation.id)
    assert cancelled.status == ConsultationStatus.cancelled

    slots = slots_for_day(db, DAY, 30, doctor_id=doctor.id, settings=settings)
    assert slot_at(slots, settings, 10).available
    assert service.book(payload(doctor, other_patient)).id

    with pytest.raises(InputValidationError):
        service.reschedule(consultation.id, schemas.ConsultationUpdate(consultation_time=time(12, 0)))


def test_check_conflict_is_advisory_and_honours_exclude_id(db, doctor, patient, settings):
    service = BookingService(db)
    consultation = service.book(payload(doctor, patient))
    start = local_datetime(DAY, time(10, 0), settings.clinic_tz)

    assert [e.id for e in service.check_conflict(doctor.id, start, 30)] == [consultation.id]
    assert service.check_conflict(doctor.id, start, 30, exclude_id=consultation.id) == []
    # Naive start times are read in the clinic timezone
    assert service.check_conflict(doctor.id, start.replace(tzinfo=None), 30)


def test_slots_for_consultation_require_a_doctor(db, patient, settings):
    slots = slots_for_day(db, DAY, 30, patient_id=patient.id, settings=settings)
    assert slots and not any(s.available for s in slots)


def test_slots_for_day_excludes_entry_being_edited(db, doctor, patient, settings):
    consultation = BookingService(db).book(payload(doctor, patient))
    slots = slots_for_day(db, DAY, 30, doctor_id=doctor.id, exclude_id=consultation.id, settings=settings)
    assert slot_at(slots, settings, 10).available
