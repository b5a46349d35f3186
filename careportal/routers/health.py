# careportal/routers/health.py
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
import structlog

from .. import crud, schemas, security
from ..database import get_db
from ..errors import CarePortalError, to_http_exception
from ..services import consent_forms
from ..services.consent_service import ConsentLifecycleManager

logger = structlog.get_logger(__name__)

router = APIRouter(
    prefix="/health",
    tags=["Health Checks"],
    responses={404: {"description": "Not found"}},
)


@router.get("/consent-consistency", response_model=schemas.ConsentConsistencyReport,
            dependencies=[Depends(security.require_admin)])
def check_consent_consistency(db: Session = Depends(get_db)):
    """
    Consent requests whose access grants disagree with their status.
    Accessible only by admin users.
    """
    logger.info("consent_consistency_check_started")
    try:
        report = crud.run_consent_consistency_checks(db)
    except CarePortalError as e:
        raise to_http_exception(e)
    logger.info("consent_consistency_check_completed",
        approved_without_grants=len(report["approved_without_grants"]),
        revoked_with_active_grants=len(report["revoked_with_active_grants"]),
        incomplete=len(report["incomplete_requests"]))
    return report


@router.post("/fix-consent-grants", response_model=schemas.ConsentFixReport,
             dependencies=[Depends(security.require_admin)])
def fix_consent_grants(db: Session = Depends(get_db)):
    """
    Creates missing grants, retries pending revocations and moves legacy
    consent-form metadata to the structured column.
    Returns a report of all actions taken.
    """
    manager = ConsentLifecycleManager(db)
    try:
        created = manager.reconcile_grants()
        revoked = manager.retry_pending_revocations()
        migrated = consent_forms.migrate_packed_metadata(db)
    except CarePortalError as e:
        raise to_http_exception(e)
    return schemas.ConsentFixReport(
        checked_at=manager.now(),
        created_grants=created["created_grants"],
        revoked_grants=revoked["revoked_grants"],
        migrated_forms=migrated["migrated"],
        errors=created["errors"] + revoked["errors"] + migrated["errors"],
    )
