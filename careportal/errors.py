# careportal/errors.py
"""Error taxonomy shared by the scheduling and consent services.

Routers translate these into HTTP responses with ``to_http_exception``.
"""
from typing import Dict, Iterable, Optional

from fastapi import HTTPException


class CarePortalError(Exception):
    """Base class for portal errors."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InputValidationError(CarePortalError):
    """Missing or malformed user input. Reported inline, never logged as a system error."""

    status_code = 422

    def __init__(self, errors: Dict[str, str], message: str = "Please correct the highlighted fields."):
        super().__init__(message)
        self.errors = dict(errors)


class NotFoundError(CarePortalError):
    status_code = 404


class SlotConflictError(CarePortalError):
    """The requested interval overlaps an existing entry for the same doctor."""

    status_code = 409

    def __init__(self, message: str, conflicting_ids: Iterable[str] = ()):
        super().__init__(message)
        self.conflicting_ids = list(conflicting_ids)


class ConsentTransitionError(CarePortalError):
    """Illegal consent state change, e.g. approving a denied request."""

    status_code = 409


class DisclosureIntegrityError(CarePortalError):
    """A document could not be verified as safe for the viewer and must be withheld."""

    status_code = 403


class BackendError(CarePortalError):
    """Transient store failure. The user did nothing wrong."""

    status_code = 503
    retryable = True


class ConsentApprovalError(BackendError):
    """No access grant could be created; the request is back to pending."""

    def __init__(self, message: str, failures: Optional[Dict[str, str]] = None):
        super().__init__(message)
        self.failures = dict(failures or {})


class GrantRevocationError(BackendError):
    """The consent is revoked but its access grants are still active. Retry required."""

    def __init__(self, message: str, request_id: str):
        super().__init__(message)
        self.request_id = request_id


def to_http_exception(exc: CarePortalError) -> HTTPException:
    """HTTP response for a portal error; routers raise the result."""
    if isinstance(exc, InputValidationError):
        detail = {"message": exc.message, "errors": exc.errors}
    elif isinstance(exc, SlotConflictError):
        detail = {"message": exc.message, "conflicting_ids": exc.conflicting_ids}
    elif isinstance(exc, BackendError):
        detail = {"message": exc.message, "retryable": exc.retryable}
    else:
        detail = exc.message
    return HTTPException(status_code=exc.status_code, detail=detail)
