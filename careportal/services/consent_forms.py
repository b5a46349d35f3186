# careportal/services/consent_forms.py
"""Consent forms stored as health records.

Older forms pack their metadata into the ``description`` column after a
``[METADATA]`` marker. Newer ones keep the body in ``description`` and the
metadata in the structured ``consent_metadata`` column. Both are readable;
``migrate_packed_metadata`` moves old rows to the structured layout.
"""
import json
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

import structlog
from pydantic import BaseModel, ConfigDict, ValidationError
from sqlalchemy.orm import Session

from .. import crud, models

logger = structlog.get_logger(__name__)

METADATA_MARKER = "[METADATA]"
METADATA_SEPARATOR = "\n\n---\n[METADATA]\n"
CONSENT_FORM_TAG = "consent_form"
LEGACY_SCHEMA_VERSION = 1
CURRENT_SCHEMA_VERSION = 2

_METADATA_PATTERN = re.compile(r"\[METADATA\]\s*(\{[\s\S]*\})")
_TRAILING_RULE = re.compile(r"\s*-{3,}\s*$")
_PATIENT_LINE = re.compile(r"Patient:[^\n]*", re.IGNORECASE)


class ConsentFormMetadata(BaseModel):
    """Versioned metadata of a consent form document."""

    model_config = ConfigDict(extra="allow")

    schema_version: int = CURRENT_SCHEMA_VERSION
    patient_id: Optional[str] = None
    patient_name: Optional[str] = None
    mrn: Optional[str] = None
    doctor_id: Optional[str] = None
    provider: Optional[str] = None
    summary: Optional[str] = None
    consent_request_id: Optional[str] = None
    status: Optional[str] = None
    duration_days: Optional[int] = None
    expires_at: Optional[datetime] = None
    revoked_at: Optional[datetime] = None
    grant_sync_state: Optional[str] = None
    de_identified: Optional[bool] = None


@dataclass
class ConsentForm:
    record: models.HealthRecord
    body: str
    metadata: ConsentFormMetadata
    legacy: bool


def unpack_description(description: str) -> Tuple[str, Optional[Dict[str, Any]]]:
    """Split a packed description into body text and metadata dict."""
    match = _METADATA_PATTERN.search(description or "")
    if not match:
        return description or "", None
    try:
        metadata = json.loads(match.group(1))
    except json.JSONDecodeError as e:
        logger.warning("consent_form_metadata_unreadable", error=str(e))
        return description, None
    body = _TRAILING_RULE.sub("", description[:match.start()]).strip()
    return body, metadata


def pack_description(body: str, metadata: Dict[str, Any]) -> str:
    return f"{body}{METADATA_SEPARATOR}{json.dumps(metadata, indent=2, default=str)}"


def _validate_metadata(raw: Dict[str, Any], record_id: str, version: int) -> ConsentFormMetadata:
    data = dict(raw)
    data.setdefault("schema_version", version)
    try:
        return ConsentFormMetadata.model_validate(data)
    except ValidationError as e:
        # Keep the identity and revocation fields we can read
        logger.warning("consent_form_metadata_invalid", record_id=record_id, errors=e.error_count())
        keep = {k: data[k] for k in ("patient_id", "patient_name", "mrn", "doctor_id", "provider", "status", "grant_sync_state")
                if isinstance(data.get(k), str)}
        return ConsentFormMetadata(schema_version=version, **keep)


def is_consent_form(record: models.HealthRecord) -> bool:
    return CONSENT_FORM_TAG in (record.tags or [])


def read_consent_form(record: models.HealthRecord) -> ConsentForm:
    if record.consent_metadata:
        metadata = _validate_metadata(record.consent_metadata, record.id,
                                      record.metadata_version or CURRENT_SCHEMA_VERSION)
        return ConsentForm(record=record, body=record.description or "", metadata=metadata, legacy=False)
    body, raw = unpack_description(record.description or "")
    metadata = _validate_metadata(raw or {}, record.id, LEGACY_SCHEMA_VERSION)
    return ConsentForm(record=record, body=body, metadata=metadata, legacy=True)


def ensure_patient_id_line(body: str, patient_id: Optional[str]) -> str:
    """Insert ``Patient ID: ...`` right after the ``Patient:`` line when absent."""
    if not patient_id or "Patient ID:" in body:
        return body
    match = _PATIENT_LINE.search(body)
    if not match:
        return body
    return body[:match.end()] + f"\nPatient ID: {patient_id}" + body[match.end():]


def write_metadata(db: Session, record: models.HealthRecord, metadata: ConsentFormMetadata,
                   body: Optional[str] = None, **changes):
    """Persist metadata in the structured column, upgrading legacy rows on the way."""
    metadata.schema_version = CURRENT_SCHEMA_VERSION
    changes.update({
        "description": body if body is not None else read_consent_form(record).body,
        "consent_metadata": metadata.model_dump(mode="json", exclude_none=True),
        "metadata_version": CURRENT_SCHEMA_VERSION,
    })
    return crud.update_health_record(db, record, changes)


def migrate_packed_metadata(db: Session) -> Dict[str, Any]:
    """Move packed ``[METADATA]`` blocks into ``consent_metadata``."""
    report = {"migrated": [], "skipped": [], "errors": []}
    for record in crud.list_consent_form_records(db):
        if record.consent_metadata:
            continue
        body, raw = unpack_description(record.description or "")
        if raw is None:
            report["skipped"].append(record.id)
            continue
        metadata = _validate_metadata(raw, record.id, LEGACY_SCHEMA_VERSION)
        try:
            write_metadata(db, record, metadata, body=body)
            report["migrated"].append(record.id)
        except crud.CRUDError as e:
            report["errors"].append({"record_id": record.id, "error": str(e)})
    logger.info("consent_form_metadata_migrated",
        migrated=len(report["migrated"]),
        skipped=len(report["skipped"]),
        errors=len(report["errors"]))
    return report


def list_consent_forms(db: Session, patient_id: Optional[str] = None, doctor: Optional[models.Profile] = None) -> List[ConsentForm]:
    """Consent forms for a patient, or those written by ``doctor``."""
    forms = []
    for record in crud.list_consent_form_records(db, patient_id=patient_id):
        form = read_consent_form(record)
        if doctor is not None:
            written_by = form.metadata.doctor_id == doctor.id or record.provider_name == doctor.full_name
            if not written_by:
                continue
        forms.append(form)
    return forms


def mark_form_revoked(db: Session, record: models.HealthRecord, revoked_at: datetime,
                      grant_sync_state: str = models.GrantSyncState.revocation_pending.value) -> models.HealthRecord:
    """Record the revocation on the form. Grants stay ``revocation_pending`` until revoked."""
    form = read_consent_form(record)
    form.metadata.status = models.ConsentStatus.revoked.value
    form.metadata.revoked_at = revoked_at
    form.metadata.grant_sync_state = grant_sync_state
    de_identified = form.metadata.de_identified
    if de_identified is None:
        de_identified = "de-identified" in (record.tags or [])
    visibility = "de-identified" if de_identified else "identified"
    return write_metadata(db, record, form.metadata, body=form.body,
                          tags=[CONSENT_FORM_TAG, "revoked", visibility])


def set_grant_sync_state(db: Session, record: models.HealthRecord, state: str) -> models.HealthRecord:
    form = read_consent_form(record)
    form.metadata.grant_sync_state = state
    return write_metadata(db, record, form.metadata, body=form.body)
