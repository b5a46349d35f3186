# tests/test_consent_service.py
from datetime import datetime, timedelta, timezone

import pytest

from careportal import crud, models
from careportal.errors import (
    ConsentApprovalError, ConsentTransitionError, GrantRevocationError, InputValidationError, NotFoundError,
)
from careportal.models import AccessType, ConsentStatus, DataType, GrantStatus, GrantSyncState
from careportal.services import consent_forms
from careportal.services.consent_service import ConsentLifecycleManager, access_type_for
from careportal.services.time_window import as_utc

NOW = datetime(2030, 1, 1, 9, 0, tzinfo=timezone.utc)


class Clock:
    def __init__(self, now=NOW):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **delta):
        self.now += timedelta(**delta)


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def manager(db, clock):
    return ConsentLifecycleManager(db, now=clock)


@pytest.fixture
def pending(manager, doctor, patient):
    return manager.create_request(
        patient.id, doctor.id, "Follow-up treatment",
        [DataType.health_records, DataType.prescriptions],
        duration_days=7,
    )


def _grants(db, request_id, active_only=True):
    db.expire_all()
    return crud.get_grants_for_request(db, request_id, active_only=active_only)


def test_access_type_mapping():
    assert access_type_for(DataType.prescriptions) == AccessType.view_prescriptions
    assert access_type_for("all") == AccessType.all
    assert access_type_for("lab_results") == AccessType.view_records


def test_create_request_collects_validation_errors(manager, doctor, patient):
    with pytest.raises(InputValidationError) as exc_info:
        manager.create_request(patient.id, doctor.id, "  ", [], duration_days=0)
    assert set(exc_info.value.errors) == {"purpose", "requested_data_types", "duration_days"}


def test_create_request_defaults_and_dedupes(manager, doctor, patient, settings):
    request = manager.create_request(
        patient.id, doctor.id, "Second opinion",
        [DataType.prescriptions, DataType.prescriptions],
    )
    assert request.status == ConsentStatus.pending
    assert request.requested_data_types == ["prescriptions"]
    assert request.duration_days == settings.default_consent_duration_days
    assert request.expires_at is None


def test_create_request_requires_real_parties(manager, doctor, patient):
    with pytest.raises(NotFoundError):
        manager.create_request(doctor.id, doctor.id, "Wrong way round", [DataType.health_records])


def test_approval_creates_one_grant_per_data_type(db, manager, pending, doctor, patient):
    approved = manager.approve(pending.id, actor_id=patient.id)

    assert approved.status == ConsentStatus.approved
    assert as_utc(approved.expires_at) == NOW + timedelta(days=7)
    assert as_utc(approved.responded_at) == NOW
    assert approved.grant_sync_state == GrantSyncState.complete.value
    grants = _grants(db, pending.id)
    assert sorted(g.access_type.value for g in grants) == ["view_prescriptions", "view_records"]
    assert manager.is_authorized(patient.id, doctor.id, DataType.health_records)
    assert manager.is_authorized(patient.id, doctor.id, DataType.prescriptions)
    assert not manager.is_authorized(patient.id, doctor.id, DataType.consultation_notes)


def test_approval_is_audited(db, manager, pending, patient):
    manager.approve(pending.id, actor_id=patient.id)
    entries = db.query(models.AuditLog).filter(models.AuditLog.resource_id == pending.id).all()
    assert models.AuditAction.APPROVE in [e.action for e in entries]


def test_denied_request_can_never_be_approved(manager, pending):
    denied = manager.respond(pending.id, "denied")
    assert denied.status == ConsentStatus.denied
    assert denied.responded_at is not None
    with pytest.raises(ConsentTransitionError):
        manager.approve(pending.id)
    with pytest.raises(ConsentTransitionError):
        manager.revoke(pending.id)


def test_revoked_request_can_never_be_approved(manager, pending):
    manager.approve(pending.id)
    manager.revoke(pending.id)
    with pytest.raises(ConsentTransitionError):
        manager.approve(pending.id)
    with pytest.raises(ConsentTransitionError):
        manager.respond(pending.id, "approved")


def test_unknown_decision_is_rejected(manager, pending):
    with pytest.raises(InputValidationError):
        manager.respond(pending.id, "maybe")


def test_revoke_flips_every_grant(db, manager, pending, doctor, patient):
    manager.approve(pending.id)
    revoked = manager.revoke(pending.id, actor_id=patient.id)

    assert revoked.status == ConsentStatus.revoked
    assert revoked.revoked_at is not None
    assert revoked.expires_at is not None  # kept for history
    assert _grants(db, pending.id) == []
    assert all(g.status == GrantStatus.revoked for g in _grants(db, pending.id, active_only=False))
    assert not manager.is_authorized(patient.id, doctor.id, DataType.health_records)


def test_expiry_is_derived_on_read(db, manager, pending, clock, doctor, patient):
    manager.approve(pending.id)
    clock.advance(days=8)

    request = manager.get(pending.id)
    assert request.status == ConsentStatus.approved
    assert manager.effective_status(request) == ConsentStatus.expired
    assert not manager.is_authorized(patient.id, doctor.id, DataType.health_records)
    with pytest.raises(ConsentTransitionError):
        manager.revoke(pending.id)
    with pytest.raises(ConsentTransitionError):
        manager.extend(pending.id, 5)


def test_extend_moves_request_and_grant_expiry(db, manager, pending, clock, doctor, patient):
    manager.approve(pending.id)
    extended = manager.extend(pending.id, 10)

    assert as_utc(extended.expires_at) == NOW + timedelta(days=17)
    assert all(as_utc(g.expires_at) == NOW + timedelta(days=17) for g in _grants(db, pending.id))
    clock.advance(days=12)
    assert manager.is_authorized(patient.id, doctor.id, DataType.prescriptions)


def test_partial_grant_failure_leaves_request_incomplete(db, manager, pending, monkeypatch, doctor, patient):
    real_create = crud.create_access_grant

    def flaky_create(db_, **kwargs):
        if kwargs["access_type"] == AccessType.view_prescriptions:
            raise crud.CRUDError("connection reset")
        return real_create(db_, **kwargs)

    monkeypatch.setattr(crud, "create_access_grant", flaky_create)
    approved = manager.approve(pending.id)

    assert approved.status == ConsentStatus.approved
    assert approved.grant_sync_state == GrantSyncState.incomplete.value
    assert approved.missing_grant_types == ["prescriptions"]
    assert manager.is_authorized(patient.id, doctor.id, DataType.health_records)
    assert not manager.is_authorized(patient.id, doctor.id, DataType.prescriptions)

    report = crud.run_consent_consistency_checks(db, now=NOW)
    assert [i["consent_request_id"] for i in report["incomplete_requests"]] == [pending.id]

    monkeypatch.setattr(crud, "create_access_grant", real_create)
    reconciled = manager.reconcile_grants()
    assert reconciled["created_grants"] == [{"consent_request_id": pending.id, "data_type": "prescriptions"}]
    assert manager.get(pending.id).grant_sync_state == GrantSyncState.complete.value
    assert manager.is_authorized(patient.id, doctor.id, DataType.prescriptions)


def test_total_grant_failure_compensates_to_pending(db, manager, pending, monkeypatch):
    def broken_create(db_, **kwargs):
        raise crud.CRUDError("database unavailable")

    monkeypatch.setattr(crud, "create_access_grant", broken_create)
    with pytest.raises(ConsentApprovalError) as exc_info:
        manager.approve(pending.id)

    assert set(exc_info.value.failures) == {"health_records", "prescriptions"}
    request = manager.get(pending.id)
    assert request.status == ConsentStatus.pending
    assert request.expires_at is None
    assert request.responded_at is None
    assert _grants(db, pending.id) == []


def test_failed_grant_revocation_is_flagged_and_retried(db, manager, pending, monkeypatch, doctor, patient):
    manager.approve(pending.id)
    real_revoke = crud.revoke_access_grants
    calls = []

    def broken_revoke(*args, **kwargs):
        calls.append(args)
        raise crud.CRUDError("timeout")

    monkeypatch.setattr(crud, "revoke_access_grants", broken_revoke)
    with pytest.raises(GrantRevocationError) as exc_info:
        manager.revoke(pending.id)

    assert exc_info.value.request_id == pending.id
    assert len(calls) == manager.settings.grant_revoke_max_attempts
    request = manager.get(pending.id)
    assert request.status == ConsentStatus.revoked
    assert request.grant_sync_state == GrantSyncState.revocation_pending.value
    assert len(_grants(db, pending.id)) == 2
    # Grants still active, but a revoked consent never authorizes
    assert not manager.is_authorized(patient.id, doctor.id, DataType.health_records)

    report = crud.run_consent_consistency_checks(db, now=NOW)
    assert [i["consent_request_id"] for i in report["revoked_with_active_grants"]] == [pending.id]

    monkeypatch.setattr(crud, "revoke_access_grants", real_revoke)
    retried = manager.retry_pending_revocations()
    assert retried == {"revoked_grants": [{"consent_request_id": pending.id, "count": 2}], "errors": []}
    assert _grants(db, pending.id) == []
    assert manager.get(pending.id).grant_sync_state == GrantSyncState.complete.value


def test_consistency_check_finds_approved_without_grants(db, manager, pending):
    crud.update_consent_request(db, pending, {
        "status": ConsentStatus.approved,
        "expires_at": NOW + timedelta(days=3),
    })
    report = crud.run_consent_consistency_checks(db, now=NOW)
    assert [i["consent_request_id"] for i in report["approved_without_grants"]] == [pending.id]

    created = manager.reconcile_grants()
    assert len(created["created_grants"]) == 2
    assert crud.run_consent_consistency_checks(db, now=NOW)["approved_without_grants"] == []


def _legacy_form(db, patient, doctor, **metadata):
    meta = {"patient_id": patient.id, "patient_name": patient.full_name, "doctor_id": doctor.id}
    meta.update(metadata)
    return crud.create_health_record(db, {
        "user_id": patient.id,
        "title": "Consent for record sharing",
        "description": consent_forms.pack_description(f"Patient: {patient.full_name}\nI consent.", meta),
        "tags": ["consent_form", "identified"],
        "provider_name": doctor.full_name,
    })


def test_listing_merges_requests_and_legacy_forms(db, manager, pending, doctor, patient, settings):
    form = _legacy_form(db, patient, doctor)

    patient_views = manager.list_for_patient(patient.id)
    doctor_views = manager.list_for_doctor(doctor.id)
    assert {v.id for v in patient_views} == {pending.id, form.id}
    assert {v.id for v in doctor_views} == {pending.id, form.id}

    legacy = next(v for v in patient_views if v.source == "consent_form")
    assert legacy.status == ConsentStatus.approved
    assert legacy.duration_days == settings.legacy_consent_duration_days
    assert legacy.doctor_id == doctor.id


def test_legacy_form_status_rules(db, manager, doctor, patient):
    pending_form = _legacy_form(db, patient, doctor, status="pending")
    expired_form = _legacy_form(db, patient, doctor, expires_at=(NOW - timedelta(days=1)).isoformat())

    views = {v.id: v for v in manager.list_for_patient(patient.id)}
    assert views[pending_form.id].effective_status == ConsentStatus.pending
    assert views[expired_form.id].status == ConsentStatus.approved
    assert views[expired_form.id].effective_status == ConsentStatus.expired


def test_revoking_a_legacy_form(db, manager, doctor, patient):
    form = _legacy_form(db, patient, doctor)
    crud.create_access_grant(db, patient_id=patient.id, doctor_id=doctor.id,
                             access_type=AccessType.view_records, expires_at=NOW + timedelta(days=30))

    record = manager.revoke_consent_form(form.id, actor_id=patient.id)
    assert "revoked" in record.tags
    assert record.consent_metadata["status"] == "revoked"
    assert not manager.is_authorized(patient.id, doctor.id, DataType.health_records)
    view = next(v for v in manager.list_for_patient(patient.id) if v.id == form.id)
    assert view.status == ConsentStatus.revoked

    with pytest.raises(ConsentTransitionError):
        manager.revoke_consent_form(form.id)


def test_failed_legacy_form_revocation_can_be_retried(db, manager, monkeypatch, doctor, patient):
    form = _legacy_form(db, patient, doctor)
    crud.create_access_grant(db, patient_id=patient.id, doctor_id=doctor.id,
                             access_type=AccessType.view_records, expires_at=NOW + timedelta(days=30))
    real_revoke = crud.revoke_access_grants

    def broken_revoke(*args, **kwargs):
        raise crud.CRUDError("timeout")

    monkeypatch.setattr(crud, "revoke_access_grants", broken_revoke)
    with pytest.raises(GrantRevocationError) as exc_info:
        manager.revoke_consent_form(form.id, actor_id=patient.id)
    assert exc_info.value.request_id == form.id

    record = crud.get_health_record(db, form.id)
    assert record.consent_metadata["status"] == "revoked"
    assert record.consent_metadata["grant_sync_state"] == GrantSyncState.revocation_pending.value
    view = next(v for v in manager.list_for_patient(patient.id) if v.id == form.id)
    assert view.grant_sync_state == GrantSyncState.revocation_pending.value

    monkeypatch.setattr(crud, "revoke_access_grants", real_revoke)
    report = manager.retry_pending_revocations()
    assert report["revoked_grants"] == [{"consent_form_id": form.id, "count": 1}]
    assert report["errors"] == []
    assert crud.get_active_grants(db, patient.id, doctor.id) == []
    assert crud.get_health_record(db, form.id).consent_metadata["grant_sync_state"] == GrantSyncState.complete.value


def test_revoking_a_pending_legacy_form_again_retries_the_grants(db, manager, monkeypatch, doctor, patient):
    form = _legacy_form(db, patient, doctor)
    crud.create_access_grant(db, patient_id=patient.id, doctor_id=doctor.id,
                             access_type=AccessType.view_records, expires_at=NOW + timedelta(days=30))
    real_revoke = crud.revoke_access_grants

    def broken_revoke(*args, **kwargs):
        raise crud.CRUDError("timeout")

    monkeypatch.setattr(crud, "revoke_access_grants", broken_revoke)
    with pytest.raises(GrantRevocationError):
        manager.revoke_consent_form(form.id)

    monkeypatch.setattr(crud, "revoke_access_grants", real_revoke)
    record = manager.revoke_consent_form(form.id)
    assert record.consent_metadata["grant_sync_state"] == GrantSyncState.complete.value
    assert crud.get_active_grants(db, patient.id, doctor.id) == []
    with pytest.raises(ConsentTransitionError):
        manager.revoke_consent_form(form.id)


def test_revoked_form_keeps_de_identified_visibility_from_metadata(db, manager, doctor, patient):
    form = crud.create_health_record(db, {
        "user_id": patient.id,
        "title": "Consent for teaching use",
        "description": consent_forms.pack_description("Patient: [REDACTED]\nI consent.", {
            "patient_id": patient.id, "doctor_id": doctor.id, "de_identified": True,
        }),
        "tags": ["consent_form"],
        "provider_name": doctor.full_name,
    })

    record = manager.revoke_consent_form(form.id)
    assert record.tags == ["consent_form", "revoked", "de-identified"]
    assert record.consent_metadata["de_identified"] is True


def test_doctor_listing_hides_patient_identity(db, manager, doctor, patient):
    request = manager.create_request(
        patient.id, doctor.id, "Review Jane Doe's labs", [DataType.health_records],
        message=f"Hello Jane Doe (MRN {patient.mrn}), Dr. Alan Grant here.",
    )
    form = _legacy_form(db, patient, doctor)
    crud.update_health_record(db, form, {"title": "Consent Form - Jane Doe"})

    views = {v.id: v for v in manager.list_for_doctor(doctor.id)}
    assert views[request.id].patient_id == "[REDACTED]"
    assert views[request.id].purpose == "Review [REDACTED]'s labs"
    assert views[request.id].message == "Hello [REDACTED] (MRN [REDACTED]), Dr. Alan Grant here."
    assert views[form.id].patient_id == "[REDACTED]"
    assert views[form.id].purpose == "Consent Form - [REDACTED]"

    own = {v.id: v for v in manager.list_for_patient(patient.id)}
    assert own[request.id].patient_id == patient.id
    assert own[request.id].purpose == "Review Jane Doe's labs"
