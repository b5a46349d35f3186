# careportal/routers/consents.py
from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session
from typing import List, Optional

from .. import crud, schemas, security, models
from ..database import get_db
from ..errors import CarePortalError, NotFoundError, to_http_exception
from ..models import DataType, ProfileRole
from ..services.consent_service import ConsentLifecycleManager

router = APIRouter(
    prefix="/consents",
    tags=["Consents"],
    dependencies=[Depends(security.get_current_user)],
    responses={404: {"description": "Not found"}},
)


def _require_subject(request: models.ConsentRequest, current_user: models.Profile):
    if request.patient_id != current_user.id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Only the patient can respond to this consent request.")


@router.post("/", response_model=schemas.ConsentRequestResponse, status_code=status.HTTP_201_CREATED)
def create_consent_request_endpoint(
    payload: schemas.ConsentRequestCreate,
    db: Session = Depends(get_db),
    current_user: models.Profile = Depends(security.require_doctor),
):
    """A doctor asks a patient for access to one or more kinds of data."""
    if payload.doctor_id and payload.doctor_id != current_user.id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Doctors can only request consent for themselves.")
    manager = ConsentLifecycleManager(db)
    try:
        request = manager.create_request(
            patient_id=payload.patient_id,
            doctor_id=current_user.id,
            purpose=payload.purpose,
            requested_data_types=payload.requested_data_types,
            duration_days=payload.duration_days,
            message=payload.message,
        )
    except CarePortalError as e:
        raise to_http_exception(e)
    return manager.redacted_for_requester(manager.view(request), current_user.full_name)


@router.get("/", response_model=List[schemas.ConsentRequestResponse])
def list_consents_endpoint(
    db: Session = Depends(get_db),
    current_user: models.Profile = Depends(security.get_current_user),
):
    """Consent requests and legacy consent forms of the caller, newest first."""
    manager = ConsentLifecycleManager(db)
    try:
        if current_user.role == ProfileRole.doctor:
            return manager.list_for_doctor(current_user.id)
        if current_user.role == ProfileRole.patient:
            return manager.list_for_patient(current_user.id)
    except CarePortalError as e:
        raise to_http_exception(e)
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Only patients and doctors have consents.")


@router.get("/access", response_model=schemas.AccessCheckResponse)
def check_access_endpoint(
    patient_id: str,
    data_type: DataType = DataType.health_records,
    db: Session = Depends(get_db),
    current_user: models.Profile = Depends(security.require_doctor),
):
    manager = ConsentLifecycleManager(db)
    try:
        authorized = manager.is_authorized(patient_id, current_user.id, data_type)
    except CarePortalError as e:
        raise to_http_exception(e)
    return schemas.AccessCheckResponse(
        patient_id=patient_id,
        doctor_id=current_user.id,
        data_type=data_type.value,
        authorized=authorized,
    )


@router.post("/{request_id}/respond", response_model=schemas.ConsentRequestResponse)
def respond_to_consent_endpoint(
    request_id: str,
    response: schemas.ConsentRespond,
    db: Session = Depends(get_db),
    current_user: models.Profile = Depends(security.get_current_user),
):
    """
    Approve or deny a pending request.
    Approval with no grant created at all returns 503 and leaves the request pending.
    """
    manager = ConsentLifecycleManager(db)
    try:
        _require_subject(manager.get(request_id), current_user)
        request = manager.respond(request_id, response.decision.value, actor_id=current_user.id)
    except CarePortalError as e:
        raise to_http_exception(e)
    return manager.view(request)


@router.post("/{request_id}/revoke", response_model=Optional[schemas.ConsentRequestResponse])
def revoke_consent_endpoint(
    request_id: str,
    db: Session = Depends(get_db),
    current_user: models.Profile = Depends(security.get_current_user),
):
    """Revoke an approved consent request, or a legacy consent form with the same id."""
    manager = ConsentLifecycleManager(db)
    try:
        request = crud.get_consent_request(db, request_id)
        if request is None:
            record = crud.get_health_record(db, request_id)
            if record is None or record.user_id != current_user.id:
                raise NotFoundError(f"Consent {request_id} not found")
            manager.revoke_consent_form(request_id, actor_id=current_user.id)
            return None
        _require_subject(request, current_user)
        request = manager.revoke(request_id, actor_id=current_user.id)
    except CarePortalError as e:
        raise to_http_exception(e)
    return manager.view(request)


@router.post("/{request_id}/extend", response_model=schemas.ConsentRequestResponse)
def extend_consent_endpoint(
    request_id: str,
    payload: schemas.ConsentExtend,
    db: Session = Depends(get_db),
    current_user: models.Profile = Depends(security.get_current_user),
):
    manager = ConsentLifecycleManager(db)
    try:
        _require_subject(manager.get(request_id), current_user)
        request = manager.extend(request_id, payload.additional_days, actor_id=current_user.id)
    except CarePortalError as e:
        raise to_http_exception(e)
    return manager.view(request)
