# careportal/crud.py
from sqlalchemy.orm import Session
from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError
from datetime import datetime, timezone, date
from typing import Optional, List, Dict, Any, Iterable
import logging

from . import models
from .errors import BackendError
from .services.time_window import as_utc

logger = logging.getLogger(__name__)


class CRUDError(BackendError):
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _commit(db: Session, obj, action: str):
    try:
        db.commit()
        db.refresh(obj)
        return obj
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Error during {action}: {str(e)}")
        raise CRUDError(f"Database error: {str(e)}")


# ==================== PROFILES ====================

def get_profile(db: Session, profile_id: str) -> Optional[models.Profile]:
    try:
        return db.query(models.Profile).filter(models.Profile.id == profile_id).first()
    except SQLAlchemyError as e:
        logger.error(f"Error fetching profile {profile_id}: {str(e)}")
        raise CRUDError(f"Database error: {str(e)}")


def get_profile_by_subject(db: Session, subject: str) -> Optional[models.Profile]:
    """Resolve a token subject (auth user id or profile id) to a profile."""
    try:
        return db.query(models.Profile).filter(
            or_(models.Profile.user_id == subject, models.Profile.id == subject)
        ).first()
    except SQLAlchemyError as e:
        logger.error(f"Error resolving token subject {subject}: {str(e)}")
        raise CRUDError(f"Database error: {str(e)}")


def lock_profile(db: Session, profile_id: str) -> Optional[models.Profile]:
    """Fetch a profile row FOR UPDATE; serializes bookings against one doctor."""
    try:
        return db.query(models.Profile).filter(models.Profile.id == profile_id).with_for_update().first()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Error locking profile {profile_id}: {str(e)}")
        raise CRUDError(f"Database error: {str(e)}")


def create_profile(db: Session, **fields) -> models.Profile:
    profile = models.Profile(**fields)
    db.add(profile)
    return _commit(db, profile, "profile creation")


# ==================== CONSULTATIONS ====================

def get_consultation(db: Session, consultation_id: str, for_update: bool = False) -> Optional[models.Consultation]:
    try:
        query = db.query(models.Consultation).filter(models.Consultation.id == consultation_id)
        if for_update:
            query = query.with_for_update()
        return query.first()
    except SQLAlchemyError as e:
        logger.error(f"Error fetching consultation {consultation_id}: {str(e)}")
        raise CRUDError(f"Database error: {str(e)}")


def get_consultations_in_range(
    db: Session,
    start_day: date,
    end_day: date,
    doctor_id: Optional[str] = None,
    patient_id: Optional[str] = None,
    include_cancelled: bool = False,
) -> List[models.Consultation]:
    """Consultations and blocked entries between two dates (inclusive).

    With both ``doctor_id`` and ``patient_id`` the rows of either are returned.
    """
    try:
        query = db.query(models.Consultation).filter(
            models.Consultation.consultation_date >= start_day,
            models.Consultation.consultation_date <= end_day,
        )
        owners = []
        if doctor_id:
            owners.append(models.Consultation.doctor_id == doctor_id)
        if patient_id:
            owners.append(models.Consultation.patient_id == patient_id)
        if owners:
            query = query.filter(or_(*owners))
        if not include_cancelled:
            query = query.filter(models.Consultation.status != models.ConsultationStatus.cancelled)
        return query.order_by(models.Consultation.consultation_date, models.Consultation.consultation_time).all()
    except SQLAlchemyError as e:
        logger.error(f"Error fetching consultations {start_day}..{end_day}: {str(e)}")
        raise CRUDError(f"Database error: {str(e)}")


def create_consultation(db: Session, values: Dict[str, Any]) -> models.Consultation:
    consultation = models.Consultation(**values)
    db.add(consultation)
    return _commit(db, consultation, "consultation creation")


def update_consultation(db: Session, consultation: models.Consultation, values: Dict[str, Any]) -> models.Consultation:
    for key, value in values.items():
        setattr(consultation, key, value)
    db.add(consultation)
    return _commit(db, consultation, f"consultation update {consultation.id}")


# ==================== CONSENT REQUESTS ====================

def create_consent_request(db: Session, values: Dict[str, Any]) -> models.ConsentRequest:
    request = models.ConsentRequest(**values)
    db.add(request)
    return _commit(db, request, "consent request creation")


def get_consent_request(db: Session, request_id: str, for_update: bool = False) -> Optional[models.ConsentRequest]:
    try:
        query = db.query(models.ConsentRequest).filter(models.ConsentRequest.id == request_id)
        if for_update:
            query = query.with_for_update()
        return query.first()
    except SQLAlchemyError as e:
        logger.error(f"Error fetching consent request {request_id}: {str(e)}")
        raise CRUDError(f"Database error: {str(e)}")


def list_consent_requests(
    db: Session,
    patient_id: Optional[str] = None,
    doctor_id: Optional[str] = None,
    statuses: Optional[Iterable[models.ConsentStatus]] = None,
    sync_state: Optional[str] = None,
) -> List[models.ConsentRequest]:
    try:
        query = db.query(models.ConsentRequest)
        if patient_id:
            query = query.filter(models.ConsentRequest.patient_id == patient_id)
        if doctor_id:
            query = query.filter(models.ConsentRequest.doctor_id == doctor_id)
        if statuses:
            query = query.filter(models.ConsentRequest.status.in_(list(statuses)))
        if sync_state:
            query = query.filter(models.ConsentRequest.grant_sync_state == sync_state)
        return query.order_by(models.ConsentRequest.requested_at.desc()).all()
    except SQLAlchemyError as e:
        logger.error(f"Error listing consent requests: {str(e)}")
        raise CRUDError(f"Database error: {str(e)}")


def update_consent_request(db: Session, request: models.ConsentRequest, values: Dict[str, Any]) -> models.ConsentRequest:
    for key, value in values.items():
        setattr(request, key, value)
    db.add(request)
    return _commit(db, request, f"consent request update {request.id}")


# ==================== ACCESS GRANTS ====================

def create_access_grant(
    db: Session,
    patient_id: str,
    doctor_id: str,
    access_type: models.AccessType,
    expires_at: Optional[datetime],
    consent_request_id: Optional[str] = None,
    granted_at: Optional[datetime] = None,
) -> models.PatientAccess:
    grant = models.PatientAccess(
        patient_id=patient_id,
        doctor_id=doctor_id,
        access_type=access_type,
        granted_at=granted_at or _utcnow(),
        expires_at=expires_at,
        status=models.GrantStatus.active,
        consent_request_id=consent_request_id,
    )
    db.add(grant)
    return _commit(db, grant, f"access grant creation ({access_type})")


def get_active_grants(db: Session, patient_id: str, doctor_id: str) -> List[models.PatientAccess]:
    try:
        return db.query(models.PatientAccess).filter(
            models.PatientAccess.patient_id == patient_id,
            models.PatientAccess.doctor_id == doctor_id,
            models.PatientAccess.status == models.GrantStatus.active,
        ).all()
    except SQLAlchemyError as e:
        logger.error(f"Error fetching access grants for {patient_id}/{doctor_id}: {str(e)}")
        raise CRUDError(f"Database error: {str(e)}")


def get_grants_for_request(db: Session, consent_request_id: str, active_only: bool = True) -> List[models.PatientAccess]:
    try:
        query = db.query(models.PatientAccess).filter(models.PatientAccess.consent_request_id == consent_request_id)
        if active_only:
            query = query.filter(models.PatientAccess.status == models.GrantStatus.active)
        return query.all()
    except SQLAlchemyError as e:
        logger.error(f"Error fetching grants of consent request {consent_request_id}: {str(e)}")
        raise CRUDError(f"Database error: {str(e)}")


def revoke_access_grants(db: Session, patient_id: str, doctor_id: str, revoked_at: Optional[datetime] = None) -> int:
    """Flip every active grant of the (patient, doctor) pair to revoked. Returns the count."""
    try:
        grants = db.query(models.PatientAccess).filter(
            models.PatientAccess.patient_id == patient_id,
            models.PatientAccess.doctor_id == doctor_id,
            models.PatientAccess.status == models.GrantStatus.active,
        ).with_for_update().all()
        for grant in grants:
            grant.status = models.GrantStatus.revoked
            grant.revoked_at = revoked_at or _utcnow()
        db.commit()
        return len(grants)
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Error revoking access grants for {patient_id}/{doctor_id}: {str(e)}")
        raise CRUDError(f"Database error: {str(e)}")


def update_grant_expiry(db: Session, consent_request_id: str, expires_at: datetime) -> int:
    try:
        grants = db.query(models.PatientAccess).filter(
            models.PatientAccess.consent_request_id == consent_request_id,
            models.PatientAccess.status == models.GrantStatus.active,
        ).all()
        for grant in grants:
            grant.expires_at = expires_at
        db.commit()
        return len(grants)
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Error extending grants of consent request {consent_request_id}: {str(e)}")
        raise CRUDError(f"Database error: {str(e)}")


# ==================== HEALTH RECORDS ====================

def get_health_record(db: Session, record_id: str) -> Optional[models.HealthRecord]:
    try:
        return db.query(models.HealthRecord).filter(models.HealthRecord.id == record_id).first()
    except SQLAlchemyError as e:
        logger.error(f"Error fetching health record {record_id}: {str(e)}")
        raise CRUDError(f"Database error: {str(e)}")


def create_health_record(db: Session, values: Dict[str, Any]) -> models.HealthRecord:
    record = models.HealthRecord(**values)
    db.add(record)
    return _commit(db, record, "health record creation")


def update_health_record(db: Session, record: models.HealthRecord, values: Dict[str, Any]) -> models.HealthRecord:
    for key, value in values.items():
        setattr(record, key, value)
    db.add(record)
    return _commit(db, record, f"health record update {record.id}")


def list_consent_form_records(db: Session, patient_id: Optional[str] = None) -> List[models.HealthRecord]:
    """Health records tagged as consent forms, newest first."""
    try:
        query = db.query(models.HealthRecord)
        if patient_id:
            query = query.filter(models.HealthRecord.user_id == patient_id)
        records = query.order_by(models.HealthRecord.created_at.desc()).all()
    except SQLAlchemyError as e:
        logger.error(f"Error fetching consent form records: {str(e)}")
        raise CRUDError(f"Database error: {str(e)}")
    # JSON containment differs between backends; filter tags here
    return [record for record in records if "consent_form" in (record.tags or [])]


# ==================== CONSISTENCY ====================

def run_consent_consistency_checks(db: Session, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Report consent requests whose access grants disagree with their status."""
    now = now or _utcnow()
    report = {
        "checked_at": now,
        "approved_without_grants": [],
        "revoked_with_active_grants": [],
        "incomplete_requests": [],
    }
    try:
        approved = db.query(models.ConsentRequest).filter(
            models.ConsentRequest.status == models.ConsentStatus.approved
        ).all()
        for request in approved:
            if request.expires_at is None or now > as_utc(request.expires_at):
                continue
            active = get_grants_for_request(db, request.id)
            if not active:
                report["approved_without_grants"].append({
                    "consent_request_id": request.id,
                    "patient_id": request.patient_id,
                    "doctor_id": request.doctor_id,
                    "issue": "Consent is approved but no active access grant exists.",
                })
            elif request.grant_sync_state == models.GrantSyncState.incomplete.value:
                report["incomplete_requests"].append({
                    "consent_request_id": request.id,
                    "patient_id": request.patient_id,
                    "doctor_id": request.doctor_id,
                    "issue": f"Missing grants for: {', '.join(request.missing_grant_types or [])}",
                })

        revoked = db.query(models.ConsentRequest).filter(
            models.ConsentRequest.status == models.ConsentStatus.revoked
        ).all()
        for request in revoked:
            active = get_grants_for_request(db, request.id)
            if active:
                report["revoked_with_active_grants"].append({
                    "consent_request_id": request.id,
                    "patient_id": request.patient_id,
                    "doctor_id": request.doctor_id,
                    "issue": f"Consent is revoked but {len(active)} access grant(s) are still active.",
                })
    except SQLAlchemyError as e:
        logger.error(f"Error running consent consistency checks: {str(e)}")
        raise CRUDError(f"Database error: {str(e)}")
    return report
