# careportal/services/consent_service.py
"""Consent request lifecycle and the access grants derived from it.

    pending --approve--> approved --revoke--> revoked
       |                    |
       +--deny--> denied    +--(now > expires_at)--> expired (derived on read)

Approval creates one access grant per requested data type. The store gives
no multi-row transaction across those inserts, so approval runs as a saga:
the request row records which grant kinds are still missing, a total
failure is compensated by returning the request to pending, and a partial
failure leaves the request approved but flagged ``incomplete`` until
``reconcile_grants`` fills the gaps.
"""
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Sequence

import structlog
from sqlalchemy.orm import Session

from .. import crud, models
from ..compliance_logger import ComplianceLogger, compliance_logger
from ..config import Settings, get_settings
from ..errors import (
    ConsentApprovalError, ConsentTransitionError, GrantRevocationError,
    InputValidationError, NotFoundError,
)
from ..models import AccessType, ConsentStatus, DataType, GrantSyncState
from . import consent_forms
from .disclosure_service import DisclosureSanitizer, PatientIdentity
from .time_window import as_utc

logger = structlog.get_logger(__name__)

_ACCESS_BY_DATA_TYPE = {
    DataType.health_records.value: AccessType.view_records,
    DataType.prescriptions.value: AccessType.view_prescriptions,
    DataType.consultation_notes.value: AccessType.view_consultation_notes,
    DataType.all.value: AccessType.all,
}


def access_type_for(data_type) -> AccessType:
    """Grant kind for a requested data type. Unknown legacy types map to record viewing."""
    value = data_type.value if isinstance(data_type, DataType) else str(data_type)
    return _ACCESS_BY_DATA_TYPE.get(value, AccessType.view_records)


def _unique(values: Sequence[str]) -> List[str]:
    seen = []
    for value in values:
        value = value.value if isinstance(value, DataType) else str(value)
        if value not in seen:
            seen.append(value)
    return seen


@dataclass
class ApprovalSaga:
    """Progress of one approval: grants created so far and per-type failures."""
    request_id: str
    data_types: List[str]
    granted: List[str] = field(default_factory=list)
    failures: Dict[str, str] = field(default_factory=dict)

    @property
    def missing(self) -> List[str]:
        return [t for t in self.data_types if t not in self.granted]

    @property
    def succeeded(self) -> bool:
        return bool(self.granted)


@dataclass
class ConsentView:
    """A consent as shown to a patient or doctor, from either storage source."""
    id: str
    source: str
    patient_id: Optional[str]
    doctor_id: Optional[str]
    purpose: str
    requested_data_types: List[str]
    duration_days: int
    status: ConsentStatus
    effective_status: ConsentStatus
    requested_at: Optional[datetime]
    responded_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    revoked_at: Optional[datetime] = None
    message: Optional[str] = None
    grant_sync_state: Optional[str] = None
    missing_grant_types: List[str] = field(default_factory=list)


class ConsentLifecycleManager:
    def __init__(
        self,
        db: Session,
        settings: Optional[Settings] = None,
        now: Optional[Callable[[], datetime]] = None,
        audit: Optional[ComplianceLogger] = None,
    ):
        self.db = db
        self.settings = settings or get_settings()
        self._now = now or (lambda: datetime.now(timezone.utc))
        self.audit = audit or compliance_logger

    def now(self) -> datetime:
        return as_utc(self._now())

    # ---------------- queries ----------------

    def effective_status(self, request: models.ConsentRequest, now: Optional[datetime] = None) -> ConsentStatus:
        """Stored status with expiry applied; expiry is never written back."""
        status = ConsentStatus(request.status)
        if status == ConsentStatus.approved and request.expires_at is not None:
            if (now or self.now()) > as_utc(request.expires_at):
                return ConsentStatus.expired
        return status

    def is_authorized(self, patient_id: str, doctor_id: str, data_type) -> bool:
        """True if an active, unexpired grant covers ``data_type`` (or everything)."""
        wanted = access_type_for(data_type)
        now = self.now()
        for grant in crud.get_active_grants(self.db, patient_id, doctor_id):
            if grant.access_type not in (wanted, AccessType.all):
                continue
            if grant.expires_at is None or now > as_utc(grant.expires_at):
                continue
            # A revoked consent never authorizes, even while its grants await revocation
            origin = grant.consent_request
            if origin is not None and ConsentStatus(origin.status) == ConsentStatus.revoked:
                continue
            return True
        return False

    def get(self, request_id: str, for_update: bool = False) -> models.ConsentRequest:
        request = crud.get_consent_request(self.db, request_id, for_update=for_update)
        if request is None:
            raise NotFoundError(f"Consent request {request_id} not found")
        return request

    # ---------------- transitions ----------------

    def create_request(
        self,
        patient_id: str,
        doctor_id: str,
        purpose: str,
        requested_data_types: Sequence,
        duration_days: Optional[int] = None,
        message: Optional[str] = None,
    ) -> models.ConsentRequest:
        errors = {}
        if not (purpose or "").strip():
            errors["purpose"] = "Purpose is required."
        data_types = _unique(requested_data_types or [])
        if not data_types:
            errors["requested_data_types"] = "Select at least one data type."
        duration_days = duration_days if duration_days is not None else self.settings.default_consent_duration_days
        if duration_days <= 0:
            errors["duration_days"] = "Duration must be at least one day."
        if errors:
            raise InputValidationError(errors)

        patient = crud.get_profile(self.db, patient_id)
        if patient is None or patient.role != models.ProfileRole.patient:
            raise NotFoundError(f"Patient {patient_id} not found")
        doctor = crud.get_profile(self.db, doctor_id)
        if doctor is None or doctor.role != models.ProfileRole.doctor:
            raise NotFoundError(f"Doctor {doctor_id} not found")

        request = crud.create_consent_request(self.db, {
            "patient_id": patient_id,
            "doctor_id": doctor_id,
            "purpose": purpose.strip(),
            "requested_data_types": data_types,
            "duration_days": duration_days,
            "status": ConsentStatus.pending,
            "message": message,
            "requested_at": self.now(),
        })
        logger.info("consent_requested",
            consent_request_id=request.id,
            patient_id=patient_id,
            doctor_id=doctor_id,
            data_types=data_types)
        self.audit.log_event(doctor_id, models.ProfileRole.doctor, 'CONSENT_CREATE', 'CONSENT',
                             details=f"Requested {', '.join(data_types)} for {duration_days} days",
                             resource_type='consent_request', resource_id=request.id)
        return request

    def respond(self, request_id: str, decision, actor_id: Optional[str] = None) -> models.ConsentRequest:
        value = decision.value if isinstance(decision, ConsentStatus) else str(decision)
        if value == ConsentStatus.approved.value:
            return self.approve(request_id, actor_id=actor_id)
        if value == ConsentStatus.denied.value:
            return self.deny(request_id, actor_id=actor_id)
        raise InputValidationError({"decision": "Decision must be 'approved' or 'denied'."})

    def _require_pending(self, request: models.ConsentRequest, target: ConsentStatus):
        current = self.effective_status(request)
        if current != ConsentStatus.pending:
            raise ConsentTransitionError(
                f"Consent request {request.id} is {current.value}; only pending requests can be {target.value}. "
                "A new request is required."
            )

    def deny(self, request_id: str, actor_id: Optional[str] = None) -> models.ConsentRequest:
        request = self.get(request_id, for_update=True)
        self._require_pending(request, ConsentStatus.denied)
        request = crud.update_consent_request(self.db, request, {
            "status": ConsentStatus.denied,
            "responded_at": self.now(),
        })
        logger.info("consent_denied", consent_request_id=request.id, patient_id=request.patient_id)
        self.audit.log_event(actor_id or request.patient_id, models.ProfileRole.patient, 'DENY', 'CONSENT',
                             resource_type='consent_request', resource_id=request.id)
        return request

    def approve(self, request_id: str, actor_id: Optional[str] = None) -> models.ConsentRequest:
        """pending -> approved, creating one grant per requested data type.

        Raises ConsentApprovalError (request back to pending) when no grant
        could be created at all.
        """
        request = self.get(request_id, for_update=True)
        self._require_pending(request, ConsentStatus.approved)

        now = self.now()
        expires_at = now + timedelta(days=request.duration_days)
        saga = ApprovalSaga(request_id=request.id, data_types=_unique(request.requested_data_types or []))

        # Step 1: record the approval and the work still to do
        request = crud.update_consent_request(self.db, request, {
            "status": ConsentStatus.approved,
            "responded_at": now,
            "expires_at": expires_at,
            "grant_sync_state": GrantSyncState.incomplete.value,
            "missing_grant_types": saga.missing,
        })

        # Step 2: one grant per data type; a failure does not stop the rest
        self._create_grants(request, saga, now, expires_at)

        # Step 3: compensate or settle
        if not saga.succeeded:
            crud.update_consent_request(self.db, request, {
                "status": ConsentStatus.pending,
                "responded_at": None,
                "expires_at": None,
                "grant_sync_state": None,
                "missing_grant_types": None,
            })
            logger.error("consent_approval_rolled_back", consent_request_id=request.id, failures=saga.failures)
            raise ConsentApprovalError(
                "Consent could not be approved because no access could be granted. Please try again.",
                failures=saga.failures,
            )

        request = crud.update_consent_request(self.db, request, {
            "grant_sync_state": GrantSyncState.complete.value if not saga.missing else GrantSyncState.incomplete.value,
            "missing_grant_types": saga.missing or None,
        })
        if saga.missing:
            logger.warning("consent_approved_with_missing_grants",
                consent_request_id=request.id,
                missing=saga.missing,
                failures=saga.failures)
        else:
            logger.info("consent_approved", consent_request_id=request.id, grants=len(saga.granted))
        self.audit.log_event(actor_id or request.patient_id, models.ProfileRole.patient, 'APPROVE', 'CONSENT',
                             details=f"Granted {', '.join(saga.granted)} until {expires_at.isoformat()}",
                             resource_type='consent_request', resource_id=request.id)
        return request

    def _create_grants(self, request: models.ConsentRequest, saga: ApprovalSaga, now: datetime, expires_at: datetime):
        for data_type in saga.missing:
            try:
                crud.create_access_grant(
                    self.db,
                    patient_id=request.patient_id,
                    doctor_id=request.doctor_id,
                    access_type=access_type_for(data_type),
                    expires_at=expires_at,
                    consent_request_id=request.id,
                    granted_at=now,
                )
                saga.granted.append(data_type)
            except crud.CRUDError as e:
                saga.failures[data_type] = str(e)
                logger.error("access_grant_failed",
                    consent_request_id=request.id,
                    data_type=data_type,
                    error=str(e))

    def revoke(self, request_id: str, actor_id: Optional[str] = None) -> models.ConsentRequest:
        """approved -> revoked, then revoke every active grant of the pair.

        The request is revoked first. If the grants still cannot be revoked
        after the configured attempts, the request is flagged
        ``revocation_pending`` and GrantRevocationError is raised.
        """
        request = self.get(request_id, for_update=True)
        current = self.effective_status(request)
        if current != ConsentStatus.approved:
            raise ConsentTransitionError(f"Consent request {request.id} is {current.value}; only approved consents can be revoked.")

        request = crud.update_consent_request(self.db, request, {
            "status": ConsentStatus.revoked,
            "revoked_at": self.now(),
        })
        logger.info("consent_revoked", consent_request_id=request.id, patient_id=request.patient_id)
        self.audit.log_event(actor_id or request.patient_id, models.ProfileRole.patient, 'REVOKE', 'CONSENT',
                             resource_type='consent_request', resource_id=request.id)
        self._revoke_grants(request)
        return request

    def _revoke_with_retry(self, patient_id: str, doctor_id: str, **context) -> int:
        """Revoke the pair's active grants, retrying up to the configured attempts.

        Raises the last CRUDError when every attempt failed.
        """
        attempts = self.settings.grant_revoke_max_attempts
        last_error = None
        for attempt in range(1, attempts + 1):
            try:
                return crud.revoke_access_grants(self.db, patient_id, doctor_id, self.now())
            except crud.CRUDError as e:
                last_error = e
                logger.warning("grant_revocation_retry",
                    attempt=attempt,
                    max_attempts=attempts,
                    error=str(e),
                    **context)
        raise last_error

    def _revoke_grants(self, request: models.ConsentRequest) -> int:
        try:
            revoked = self._revoke_with_retry(request.patient_id, request.doctor_id, consent_request_id=request.id)
        except crud.CRUDError as last_error:
            logger.critical("grant_revocation_failed", consent_request_id=request.id, error=str(last_error))
            try:
                crud.update_consent_request(self.db, request, {"grant_sync_state": GrantSyncState.revocation_pending.value})
            except crud.CRUDError as e:
                logger.critical("grant_revocation_flag_failed", consent_request_id=request.id, error=str(e))
            self.audit.log_event(None, None, 'REVOKE_GRANTS_FAILED', 'CONSENT', severity='CRITICAL',
                                 details=str(last_error), resource_type='consent_request', resource_id=request.id)
            raise GrantRevocationError(
                "Consent was revoked but access grants are still active. Revocation will be retried.",
                request_id=request.id,
            ) from last_error
        crud.update_consent_request(self.db, request, {
            "grant_sync_state": GrantSyncState.complete.value,
            "missing_grant_types": None,
        })
        logger.info("access_grants_revoked", consent_request_id=request.id, count=revoked)
        return revoked

    def _revoke_form_grants(self, record: models.HealthRecord, patient_id: str, doctor_id: str) -> int:
        """Revoke the grants behind a legacy form already marked revoked.

        The form keeps ``revocation_pending`` in its metadata until this succeeds.
        """
        try:
            revoked = self._revoke_with_retry(patient_id, doctor_id, consent_form_id=record.id)
        except crud.CRUDError as last_error:
            logger.critical("grant_revocation_failed", consent_form_id=record.id, error=str(last_error))
            self.audit.log_event(None, None, 'REVOKE_GRANTS_FAILED', 'CONSENT', severity='CRITICAL',
                                 details=str(last_error), resource_type='consent_form', resource_id=record.id)
            raise GrantRevocationError(
                "Consent form was revoked but access grants are still active. Revocation will be retried.",
                request_id=record.id,
            ) from last_error
        consent_forms.set_grant_sync_state(self.db, record, GrantSyncState.complete.value)
        logger.info("access_grants_revoked", consent_form_id=record.id, count=revoked)
        return revoked

    def extend(self, request_id: str, additional_days: Optional[int] = None, actor_id: Optional[str] = None) -> models.ConsentRequest:
        """Push the expiry of an active consent and its grants forward."""
        additional_days = additional_days if additional_days is not None else self.settings.consent_extension_days
        if additional_days <= 0:
            raise InputValidationError({"additional_days": "Extension must be at least one day."})
        request = self.get(request_id, for_update=True)
        current = self.effective_status(request)
        if current != ConsentStatus.approved:
            raise ConsentTransitionError(f"Consent request {request.id} is {current.value}; only active consents can be extended.")

        expires_at = as_utc(request.expires_at) + timedelta(days=additional_days)
        request = crud.update_consent_request(self.db, request, {"expires_at": expires_at})
        updated = crud.update_grant_expiry(self.db, request.id, expires_at)
        logger.info("consent_extended", consent_request_id=request.id, expires_at=expires_at.isoformat(), grants=updated)
        self.audit.log_event(actor_id or request.patient_id, models.ProfileRole.patient, 'CONSENT_EXTEND', 'CONSENT',
                             details=f"Extended by {additional_days} days", resource_type='consent_request',
                             resource_id=request.id)
        return request

    # ---------------- repair ----------------

    def reconcile_grants(self) -> Dict[str, list]:
        """Create grants missing from approved, unexpired consents."""
        report = {"created_grants": [], "errors": []}
        now = self.now()
        for request in crud.list_consent_requests(self.db, statuses=[ConsentStatus.approved]):
            if self.effective_status(request, now) != ConsentStatus.approved:
                continue
            present = {grant.access_type for grant in crud.get_grants_for_request(self.db, request.id)}
            saga = ApprovalSaga(
                request_id=request.id,
                data_types=_unique(request.requested_data_types or []),
            )
            saga.granted = [t for t in saga.data_types if access_type_for(t) in present]
            if not saga.missing:
                if request.grant_sync_state != GrantSyncState.complete.value:
                    crud.update_consent_request(self.db, request, {
                        "grant_sync_state": GrantSyncState.complete.value,
                        "missing_grant_types": None,
                    })
                continue
            before = list(saga.granted)
            self._create_grants(request, saga, now, as_utc(request.expires_at))
            for data_type in saga.granted:
                if data_type not in before:
                    report["created_grants"].append({"consent_request_id": request.id, "data_type": data_type})
            for data_type, error in saga.failures.items():
                report["errors"].append({"consent_request_id": request.id, "data_type": data_type, "error": error})
            crud.update_consent_request(self.db, request, {
                "grant_sync_state": GrantSyncState.complete.value if not saga.missing else GrantSyncState.incomplete.value,
                "missing_grant_types": saga.missing or None,
            })
        logger.info("consent_grants_reconciled",
            created=len(report["created_grants"]),
            errors=len(report["errors"]))
        return report

    def retry_pending_revocations(self) -> Dict[str, list]:
        """Re-run grant revocation for revoked consents whose grants are still active."""
        report = {"revoked_grants": [], "errors": []}
        pending = crud.list_consent_requests(
            self.db,
            statuses=[ConsentStatus.revoked],
            sync_state=GrantSyncState.revocation_pending.value,
        )
        for request in pending:
            try:
                count = self._revoke_grants(request)
                report["revoked_grants"].append({"consent_request_id": request.id, "count": count})
            except GrantRevocationError as e:
                report["errors"].append({"consent_request_id": request.id, "error": e.message})
        for form in consent_forms.list_consent_forms(self.db):
            if form.metadata.grant_sync_state != GrantSyncState.revocation_pending.value:
                continue
            patient_id = form.metadata.patient_id or form.record.user_id
            try:
                count = self._revoke_form_grants(form.record, patient_id, form.metadata.doctor_id)
                report["revoked_grants"].append({"consent_form_id": form.record.id, "count": count})
            except GrantRevocationError as e:
                report["errors"].append({"consent_form_id": form.record.id, "error": e.message})
        return report

    # ---------------- listings ----------------

    def _view_of_request(self, request: models.ConsentRequest, now: datetime) -> ConsentView:
        return ConsentView(
            id=request.id,
            source="consent_request",
            patient_id=request.patient_id,
            doctor_id=request.doctor_id,
            purpose=request.purpose,
            requested_data_types=list(request.requested_data_types or []),
            duration_days=request.duration_days,
            status=ConsentStatus(request.status),
            effective_status=self.effective_status(request, now),
            requested_at=request.requested_at,
            responded_at=request.responded_at,
            expires_at=request.expires_at,
            revoked_at=request.revoked_at,
            message=request.message,
            grant_sync_state=request.grant_sync_state,
            missing_grant_types=list(request.missing_grant_types or []),
        )

    def _view_of_form(self, form: consent_forms.ConsentForm, now: datetime) -> ConsentView:
        meta = form.metadata
        if meta.status == ConsentStatus.pending.value:
            status = ConsentStatus.pending
        elif meta.status == ConsentStatus.revoked.value or "revoked" in (form.record.tags or []):
            status = ConsentStatus.revoked
        else:
            # Older forms carry no status and were approved when written
            status = ConsentStatus.approved
        effective = status
        if status == ConsentStatus.approved and meta.expires_at is not None and now > as_utc(meta.expires_at):
            effective = ConsentStatus.expired
        return ConsentView(
            id=form.record.id,
            source="consent_form",
            patient_id=meta.patient_id or form.record.user_id,
            doctor_id=meta.doctor_id,
            purpose=form.record.title,
            requested_data_types=[DataType.health_records.value],
            duration_days=meta.duration_days or self.settings.legacy_consent_duration_days,
            status=status,
            effective_status=effective,
            requested_at=form.record.created_at,
            expires_at=meta.expires_at,
            revoked_at=meta.revoked_at,
            grant_sync_state=meta.grant_sync_state,
        )

    def view(self, request: models.ConsentRequest) -> ConsentView:
        return self._view_of_request(request, self.now())

    def redacted_for_requester(self, view: ConsentView, provider_name: Optional[str] = None) -> ConsentView:
        """The view a doctor gets: no patient identifier, identity removed from free text."""
        patient = crud.get_profile(self.db, view.patient_id) if view.patient_id else None
        identity = PatientIdentity(
            patient_id=view.patient_id or "",
            full_name=patient.full_name if patient else None,
            mrn=patient.mrn if patient else None,
        )
        sanitizer = DisclosureSanitizer(self.settings.redaction_token)
        return replace(
            view,
            patient_id=sanitizer.token,
            purpose=sanitizer.redact_identity(view.purpose, identity, provider_name),
            message=sanitizer.redact_identity(view.message, identity, provider_name),
        )

    def _sorted(self, views: List[ConsentView]) -> List[ConsentView]:
        epoch = datetime.min.replace(tzinfo=timezone.utc)
        return sorted(views, key=lambda v: as_utc(v.requested_at) if v.requested_at else epoch, reverse=True)

    def list_for_patient(self, patient_id: str) -> List[ConsentView]:
        now = self.now()
        views = [self._view_of_request(r, now) for r in crud.list_consent_requests(self.db, patient_id=patient_id)]
        views += [self._view_of_form(f, now) for f in consent_forms.list_consent_forms(self.db, patient_id=patient_id)]
        return self._sorted(views)

    def list_for_doctor(self, doctor_id: str) -> List[ConsentView]:
        """Consents requested by, or written by, the doctor. Patient identity is redacted."""
        now = self.now()
        doctor = crud.get_profile(self.db, doctor_id)
        if doctor is None:
            raise NotFoundError(f"Doctor {doctor_id} not found")
        views = [self._view_of_request(r, now) for r in crud.list_consent_requests(self.db, doctor_id=doctor_id)]
        views += [self._view_of_form(f, now) for f in consent_forms.list_consent_forms(self.db, doctor=doctor)]
        return [self.redacted_for_requester(v, doctor.full_name) for v in self._sorted(views)]

    def revoke_consent_form(self, record_id: str, actor_id: Optional[str] = None) -> models.HealthRecord:
        """Revoke a legacy consent form and the grants of its patient/doctor pair.

        A form already revoked whose grants are still ``revocation_pending``
        only has the grant step re-run.
        """
        record = crud.get_health_record(self.db, record_id)
        if record is None or not consent_forms.is_consent_form(record):
            raise NotFoundError(f"Consent form {record_id} not found")
        form = consent_forms.read_consent_form(record)
        view = self._view_of_form(form, self.now())
        if view.status == ConsentStatus.revoked and view.grant_sync_state == GrantSyncState.revocation_pending.value:
            self._revoke_form_grants(record, view.patient_id, view.doctor_id)
            return record
        if view.effective_status != ConsentStatus.approved:
            raise ConsentTransitionError(f"Consent form {record_id} is {view.effective_status.value}; only approved consents can be revoked.")

        has_grants = bool(view.patient_id and view.doctor_id)
        state = GrantSyncState.revocation_pending if has_grants else GrantSyncState.complete
        record = consent_forms.mark_form_revoked(self.db, record, self.now(), grant_sync_state=state.value)
        logger.info("consent_form_revoked", consent_form_id=record.id, patient_id=view.patient_id)
        self.audit.log_event(actor_id or view.patient_id, models.ProfileRole.patient, 'REVOKE', 'CONSENT',
                             resource_type='consent_form', resource_id=record.id)
        if has_grants:
            self._revoke_form_grants(record, view.patient_id, view.doctor_id)
        return record
