# careportal/routers/consultations.py
from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from .. import crud, schemas, security, models
from ..config import get_settings
from ..database import get_db
from ..errors import CarePortalError, to_http_exception
from ..models import ProfileRole
from ..services.booking_service import BookingService
from ..services.overlap_guard import describe_conflict

router = APIRouter(
    prefix="/consultations",
    tags=["Consultations"],
    dependencies=[Depends(security.get_current_user)],  # Ensure user is logged in
    responses={404: {"description": "Not found"}},
)


def _scope_to_viewer(payload, current_user: models.Profile):
    """Doctors book in their own calendar; patients book for themselves."""
    if current_user.role == ProfileRole.doctor:
        if payload.doctor_id and payload.doctor_id != current_user.id:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Doctors can only manage their own calendar.")
        payload.doctor_id = current_user.id
    elif current_user.role == ProfileRole.patient:
        if payload.patient_id and payload.patient_id != current_user.id:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Patients can only book for themselves.")
        payload.patient_id = current_user.id
    return payload


def _get_owned(db: Session, consultation_id: str, current_user: models.Profile) -> models.Consultation:
    consultation = crud.get_consultation(db, consultation_id)
    if consultation is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Consultation not found")
    if current_user.role != ProfileRole.admin and current_user.id not in (consultation.doctor_id, consultation.patient_id):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="You do not have access to this consultation.")
    return consultation


@router.post("/check-conflict", response_model=schemas.ConflictCheckResponse)
def check_conflict_endpoint(
    request: schemas.ConflictCheckRequest,
    db: Session = Depends(get_db),
):
    """
    Immediate feedback for the booking form.
    The result is advisory: booking re-checks against fresh data before saving.
    """
    service = BookingService(db)
    try:
        conflicts = service.check_conflict(request.doctor_id, request.start, request.duration_minutes, request.exclude_id)
    except CarePortalError as e:
        raise to_http_exception(e)
    return schemas.ConflictCheckResponse(
        conflict=bool(conflicts),
        conflicting_ids=[entry.id for entry in conflicts],
        message=describe_conflict(conflicts, get_settings().clinic_tz) or None,
    )


@router.post("/", response_model=schemas.ConsultationResponse, status_code=status.HTTP_201_CREATED)
def create_consultation_endpoint(
    consultation: schemas.ConsultationCreate,
    db: Session = Depends(get_db),
    current_user: models.Profile = Depends(security.get_current_user),
):
    """
    Book a consultation, or block time when no patient is given.
    Returns 409 when the time overlaps the doctor's or the patient's calendar.
    """
    consultation = _scope_to_viewer(consultation, current_user)
    try:
        return BookingService(db).book(consultation, actor_id=current_user.id)
    except CarePortalError as e:
        raise to_http_exception(e)


@router.get("/{consultation_id}", response_model=schemas.ConsultationResponse)
def get_consultation_endpoint(
    consultation_id: str,
    db: Session = Depends(get_db),
    current_user: models.Profile = Depends(security.get_current_user),
):
    try:
        return _get_owned(db, consultation_id, current_user)
    except crud.CRUDError as e:
        raise to_http_exception(e)


@router.put("/{consultation_id}", response_model=schemas.ConsultationResponse)
def reschedule_consultation_endpoint(
    consultation_id: str,
    changes: schemas.ConsultationUpdate,
    db: Session = Depends(get_db),
    current_user: models.Profile = Depends(security.get_current_user),
):
    """Move or edit a consultation; it never conflicts with its own previous time."""
    try:
        _get_owned(db, consultation_id, current_user)
        if current_user.role == ProfileRole.patient and changes.patient_id not in (None, current_user.id):
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Patients can only book for themselves.")
        if current_user.role == ProfileRole.doctor and changes.doctor_id not in (None, current_user.id):
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Doctors can only manage their own calendar.")
        return BookingService(db).reschedule(consultation_id, changes, actor_id=current_user.id)
    except CarePortalError as e:
        raise to_http_exception(e)


@router.post("/{consultation_id}/cancel", response_model=schemas.ConsultationResponse)
def cancel_consultation_endpoint(
    consultation_id: str,
    db: Session = Depends(get_db),
    current_user: models.Profile = Depends(security.get_current_user),
):
    try:
        _get_owned(db, consultation_id, current_user)
        return BookingService(db).cancel(consultation_id, actor_id=current_user.id)
    except CarePortalError as e:
        raise to_http_exception(e)
