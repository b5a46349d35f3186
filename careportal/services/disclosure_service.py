# careportal/services/disclosure_service.py
"""Viewer-dependent rendering of documents that carry patient identity.

``DisclosureSanitizer.render`` is the single place that decides what a
viewer may see. Doctors (requesters) always get the patient's name,
identifier and MRN replaced by the redaction token, in the body, the title
and every string nested in the metadata. The patient gets real values back
in place of tokens and placeholders, without de-identification banners.
The provider is never redacted and the stored document is never modified.
"""
import copy
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

import structlog

from ..errors import DisclosureIntegrityError
from .consent_forms import ConsentForm, ensure_patient_id_line

logger = structlog.get_logger(__name__)

PATIENT_ID_PLACEHOLDER = "[Patient ID]"

# Banners added when a document was de-identified for a doctor
SANITIZATION_ANNOTATIONS = (
    "(SANITIZED VERSION)",
    "De-identified for educational purposes.",
    "NOTE: This document has been de-identified for privacy protection. All personal identifiers have been removed.",
)

# Metadata keys describing the provider, left untouched
PROVIDER_KEYS = frozenset({"doctor_id", "provider", "provider_name"})
PATIENT_KEYS = ("patient_name", "patient_id", "mrn")


class ViewerRole(str, Enum):
    patient = "patient"
    requester = "requester"


@dataclass(frozen=True)
class PatientIdentity:
    """Real identity of the data subject, looked up from the profile."""
    patient_id: str
    full_name: Optional[str] = None
    mrn: Optional[str] = None


@dataclass(frozen=True)
class DisclosableDocument:
    body: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    provider_name: Optional[str] = None
    title: Optional[str] = None


@dataclass(frozen=True)
class RenderedDocument:
    body: str
    fields: Dict[str, Optional[str]]
    metadata: Dict[str, Any]
    viewer_role: ViewerRole
    title: Optional[str] = None


def document_from_consent_form(form: ConsentForm) -> DisclosableDocument:
    metadata = form.metadata.model_dump(mode="json", exclude_none=True)
    provider = form.metadata.provider or form.record.provider_name
    body = ensure_patient_id_line(form.body, form.metadata.patient_id)
    return DisclosableDocument(body=body, metadata=metadata, provider_name=provider, title=form.record.title)


def _map_strings(value: Any, convert: Callable[[str], str]) -> Any:
    """Apply ``convert`` to every string inside nested lists and dicts. Keys are kept."""
    if isinstance(value, str):
        return convert(value)
    if isinstance(value, dict):
        return {key: _map_strings(item, convert) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_map_strings(item, convert) for item in value]
    return value


def _strings(value: Any) -> Iterator[str]:
    if isinstance(value, str):
        yield value
    elif isinstance(value, dict):
        for key, item in value.items():
            if isinstance(key, str):
                yield key
            yield from _strings(item)
    elif isinstance(value, (list, tuple, set)):
        for item in value:
            yield from _strings(item)


class DisclosureSanitizer:
    def __init__(self, redaction_token: str = "[REDACTED]"):
        self.token = redaction_token

    def render(self, document: DisclosableDocument, viewer_role: ViewerRole,
               identity: PatientIdentity) -> RenderedDocument:
        """Render ``document`` for ``viewer_role``.

        Raises DisclosureIntegrityError when a requester rendering still
        contains an identity value after substitution; the caller must then
        withhold the document.
        """
        viewer_role = ViewerRole(viewer_role)
        metadata = copy.deepcopy(dict(document.metadata))
        if viewer_role == ViewerRole.requester:
            return self._render_for_requester(document, metadata, identity)
        return self._render_for_patient(document, metadata, identity)

    # --- requester ---

    def identity_values(self, identity: PatientIdentity, metadata: Optional[Dict[str, Any]] = None) -> List[str]:
        """Literal strings that identify the patient, longest first."""
        metadata = metadata or {}
        candidates = [identity.full_name, identity.patient_id, identity.mrn]
        candidates += [metadata.get(key) for key in PATIENT_KEYS]
        seen = set()
        values = []
        for value in candidates:
            if not isinstance(value, str):
                continue
            value = value.strip()
            if not value or value in (self.token, PATIENT_ID_PLACEHOLDER) or value.lower() in seen:
                continue
            seen.add(value.lower())
            values.append(value)
        # Longest first so a full name is replaced before a shorter value inside it
        return sorted(values, key=len, reverse=True)

    @staticmethod
    def _provider_spans(text: str, provider: Optional[str]) -> List[Tuple[int, int]]:
        if not provider:
            return []
        return [m.span() for m in re.finditer(re.escape(provider), text, re.IGNORECASE)]

    def _identity_matches(self, text: str, values: List[str], provider: Optional[str]) -> List[Tuple[int, int]]:
        """Character spans of identity values outside provider mentions, non-overlapping."""
        protected = self._provider_spans(text, provider)
        spans: List[Tuple[int, int]] = []
        for value in values:
            for match in re.finditer(re.escape(value), text, re.IGNORECASE):
                start, end = match.span()
                if any(p_start <= start and end <= p_end for p_start, p_end in protected):
                    continue
                if any(start < s_end and s_start < end for s_start, s_end in spans):
                    continue
                spans.append((start, end))
        spans.extend(m.span() for m in re.finditer(re.escape(PATIENT_ID_PLACEHOLDER), text)
                     if not any(m.start() < s_end and s_start < m.end() for s_start, s_end in spans))
        return sorted(spans)

    def redact(self, text: str, values: List[str], provider: Optional[str] = None) -> str:
        pieces = []
        cursor = 0
        for start, end in self._identity_matches(text, values, provider):
            pieces.append(text[cursor:start])
            pieces.append(self.token)
            cursor = end
        pieces.append(text[cursor:])
        return "".join(pieces)

    def _leaks(self, text: str, values: List[str], provider: Optional[str]) -> bool:
        """Plain substring check, independent of the span matching used by ``redact``."""
        visible = text.replace(self.token, " ")
        if provider:
            visible = re.sub(re.escape(provider), " ", visible, flags=re.IGNORECASE)
        visible = visible.lower()
        if PATIENT_ID_PLACEHOLDER.lower() in visible:
            return True
        return any(value.lower() in visible for value in values)

    def redact_identity(self, text: Optional[str], identity: PatientIdentity,
                        provider: Optional[str] = None) -> Optional[str]:
        """Redact one free-text field. A field that still leaks is replaced by the token."""
        if not text:
            return text
        values = self.identity_values(identity)
        redacted = self.redact(text, values, provider)
        if self._leaks(redacted, values, provider):
            logger.warning("field_redaction_unverified", patient_id=identity.patient_id)
            return self.token
        return redacted

    def _render_for_requester(self, document: DisclosableDocument, metadata: Dict[str, Any],
                              identity: PatientIdentity) -> RenderedDocument:
        provider = document.provider_name
        values = self.identity_values(identity, metadata)

        def scrub(text: str) -> str:
            return self.redact(text, values, provider)

        body = scrub(document.body)
        title = scrub(document.title) if document.title else document.title
        for key, value in list(metadata.items()):
            if key in PATIENT_KEYS:
                metadata[key] = self.token
            elif key not in PROVIDER_KEYS:
                metadata[key] = _map_strings(value, scrub)

        texts = [body, title or ""]
        texts += list(_strings({k: v for k, v in metadata.items() if k not in PROVIDER_KEYS}))
        if any(self._leaks(text, values, provider) for text in texts):
            logger.critical("disclosure_redaction_unverified", patient_id=identity.patient_id)
            raise DisclosureIntegrityError("This document cannot be displayed: patient identity could not be fully redacted.")

        fields = {
            "patient_name": self.token,
            "patient_id": self.token,
            "mrn": self.token,
            "provider_name": provider,
        }
        return RenderedDocument(body=body, fields=fields, metadata=metadata,
                                viewer_role=ViewerRole.requester, title=title)

    # --- patient ---

    def restore(self, text: str, identity: PatientIdentity) -> str:
        name = identity.full_name or "N/A"
        patient_id = identity.patient_id or "N/A"
        mrn = identity.mrn or "N/A"
        token = re.escape(self.token)
        placeholder = re.escape(PATIENT_ID_PLACEHOLDER)
        text = re.sub(rf"Patient: {token}", lambda _: f"Patient: {name}", text)
        text = re.sub(rf"Patient ID: (?:{token}|{placeholder})", lambda _: f"Patient ID: {patient_id}", text)
        text = re.sub(rf"MRN: {token}", lambda _: f"MRN: {mrn}", text)
        text = text.replace(PATIENT_ID_PLACEHOLDER, patient_id)
        # Any other leftover token stood for the patient's name
        return text.replace(self.token, name)

    def strip_annotations(self, text: str) -> str:
        for annotation in SANITIZATION_ANNOTATIONS:
            text = text.replace(annotation, "")
        text = re.sub(r"[ \t]+\n", "\n", text)
        return re.sub(r"\n{3,}", "\n\n", text).strip()

    def _render_for_patient(self, document: DisclosableDocument, metadata: Dict[str, Any],
                            identity: PatientIdentity) -> RenderedDocument:
        body = self.strip_annotations(self.restore(document.body, identity))
        title = self.restore(document.title, identity) if document.title else document.title

        metadata["patient_id"] = identity.patient_id
        if identity.full_name:
            metadata["patient_name"] = identity.full_name
        if identity.mrn:
            metadata["mrn"] = identity.mrn
        for key, value in list(metadata.items()):
            if key not in PATIENT_KEYS:
                metadata[key] = _map_strings(value, lambda text: self.restore(text, identity))

        fields = {
            "patient_name": identity.full_name,
            "patient_id": identity.patient_id,
            "mrn": identity.mrn,
            "provider_name": document.provider_name,
        }
        return RenderedDocument(body=body, fields=fields, metadata=metadata,
                                viewer_role=ViewerRole.patient, title=title)
