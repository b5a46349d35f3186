# careportal/routers/consent_forms.py
from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from .. import crud, schemas, security, models
from ..compliance_logger import compliance_logger
from ..config import get_settings
from ..database import get_db
from ..errors import CarePortalError, DisclosureIntegrityError, to_http_exception
from ..models import DataType, ProfileRole
from ..services import consent_forms
from ..services.consent_service import ConsentLifecycleManager
from ..services.disclosure_service import (
    DisclosureSanitizer, PatientIdentity, ViewerRole, document_from_consent_form,
)

router = APIRouter(
    prefix="/consent-forms",
    tags=["Consent Forms"],
    dependencies=[Depends(security.get_current_user)],
    responses={404: {"description": "Not found"}},
)


def _viewer_role(db: Session, form: consent_forms.ConsentForm, subject_id: str,
                 current_user: models.Profile) -> ViewerRole:
    """Only the data subject sees real identity; everyone else is a requester."""
    if current_user.role == ProfileRole.patient:
        if current_user.id != subject_id:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="You do not have access to this document.")
        return ViewerRole.patient
    if current_user.role == ProfileRole.doctor:
        written_by = form.metadata.doctor_id == current_user.id or form.record.provider_name == current_user.full_name
        if not written_by and not ConsentLifecycleManager(db).is_authorized(subject_id, current_user.id, DataType.health_records):
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="No active consent covers this document.")
    return ViewerRole.requester


@router.get("/{record_id}", response_model=schemas.RenderedDocumentResponse)
def read_consent_form_endpoint(
    record_id: str,
    db: Session = Depends(get_db),
    current_user: models.Profile = Depends(security.get_current_user),
):
    """
    A consent form rendered for the caller.
    Doctors see redaction tokens in place of the patient's identity; the
    patient sees their own details. A document that cannot be verified as
    redacted is withheld with 403.
    """
    try:
        record = crud.get_health_record(db, record_id)
        if record is None or not consent_forms.is_consent_form(record):
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Consent form not found")
        form = consent_forms.read_consent_form(record)
        subject_id = form.metadata.patient_id or record.user_id
        viewer_role = _viewer_role(db, form, subject_id, current_user)

        patient = crud.get_profile(db, subject_id)
        identity = PatientIdentity(
            patient_id=subject_id,
            full_name=(patient.full_name if patient else None) or form.metadata.patient_name,
            mrn=(patient.mrn if patient else None) or form.metadata.mrn,
        )
        sanitizer = DisclosureSanitizer(get_settings().redaction_token)
        rendered = sanitizer.render(document_from_consent_form(form), viewer_role, identity)
    except DisclosureIntegrityError as e:
        compliance_logger.log_event(current_user.id, current_user.role, 'DISCLOSURE_WITHHELD', 'DATA_ACCESS',
                                    details=e.message, severity='CRITICAL',
                                    resource_type='consent_form', resource_id=record_id)
        raise to_http_exception(e)
    except CarePortalError as e:
        raise to_http_exception(e)

    compliance_logger.log_access(current_user.id, current_user.role, 'consent_form', record.id,
                                 purpose=f"{rendered.viewer_role.value} view")
    return schemas.RenderedDocumentResponse(
        record_id=record.id,
        title=rendered.title or "",
        viewer_role=rendered.viewer_role.value,
        body=rendered.body,
        identity_fields=rendered.fields,
        metadata=rendered.metadata,
    )
