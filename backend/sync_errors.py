"""
Fault taxonomy and error classification for the sync orchestrator.

Backend clients (HubSpot, Supabase) raise SyncFault subclasses so the
classifier can switch on the variant. The string/status-code heuristics in
classify_error() only apply to foreign exceptions that slipped past a client.
"""

import logging
from typing import Optional

import httpx

logger = logging.getLogger(__name__)


class SyncErrorCode:
    """Stable error codes, surfaced verbatim to API clients."""

    VALIDATION_ERROR = "VALIDATION_ERROR"
    CONTACT_NOT_FOUND = "CONTACT_NOT_FOUND"
    RATE_LIMITED = "RATE_LIMITED"
    AUTH_ERROR = "AUTH_ERROR"
    TARGET_API_ERROR = "TARGET_API_ERROR"
    SOURCE_STORE_ERROR = "SOURCE_STORE_ERROR"
    SYNC_CONFLICT = "SYNC_CONFLICT"
    SYNC_FAILED = "SYNC_FAILED"
    NOT_RETRYABLE = "NOT_RETRYABLE"
    OPERATION_NOT_FOUND = "OPERATION_NOT_FOUND"

    # HTTP-layer codes
    INVALID_JSON = "INVALID_JSON"
    UNAUTHORIZED = "UNAUTHORIZED"
    INTERNAL_ERROR = "INTERNAL_ERROR"

    RETRYABLE = frozenset({RATE_LIMITED, TARGET_API_ERROR, SOURCE_STORE_ERROR})

    @classmethod
    def is_retryable(cls, code: str) -> bool:
        return code in cls.RETRYABLE


# ============ Backend faults ============

class SyncFault(Exception):
    """Base class for faults raised by the source store and the target CRM."""

    code = SyncErrorCode.SYNC_FAILED

    def __init__(self, message: str, status_code: Optional[int] = None, details: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.details = details or {}

    @property
    def retryable(self) -> bool:
        return SyncErrorCode.is_retryable(self.code)


class ValidationFault(SyncFault):
    code = SyncErrorCode.VALIDATION_ERROR


class ContactNotFoundFault(SyncFault):
    code = SyncErrorCode.CONTACT_NOT_FOUND


class RateLimitedFault(SyncFault):
    code = SyncErrorCode.RATE_LIMITED


class AuthFault(SyncFault):
    code = SyncErrorCode.AUTH_ERROR


class TargetAPIFault(SyncFault):
    code = SyncErrorCode.TARGET_API_ERROR


class SourceStoreFault(SyncFault):
    code = SyncErrorCode.SOURCE_STORE_ERROR


# ============ Orchestrator outcomes ============

class SyncError(Exception):
    """Base class for outcomes the orchestrator reports without creating a record."""

    code = SyncErrorCode.SYNC_FAILED

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class StatusValidationError(SyncError):
    code = SyncErrorCode.VALIDATION_ERROR


class SyncConflictError(SyncError):
    code = SyncErrorCode.SYNC_CONFLICT

    def __init__(self, source_contact_id: int, existing_operation_id: str):
        super().__init__(
            f"A sync for contact {source_contact_id} is already in flight",
            details={"operationId": existing_operation_id, "sourceContactId": source_contact_id},
        )
        self.source_contact_id = source_contact_id
        self.existing_operation_id = existing_operation_id


class NotRetryableError(SyncError):
    code = SyncErrorCode.NOT_RETRYABLE


class OperationNotFoundError(SyncError):
    code = SyncErrorCode.OPERATION_NOT_FOUND

    def __init__(self, operation_id: str):
        super().__init__(
            f"Operation with ID {operation_id} not found",
            details={"operationId": operation_id},
        )
        self.operation_id = operation_id


# ============ Classifier ============

def _status_code_of(error: Exception) -> Optional[int]:
    status = getattr(error, "status_code", None)
    if status is None and isinstance(error, httpx.HTTPStatusError):
        status = error.response.status_code
    if status is None:
        status = getattr(error, "status", None)
    return status if isinstance(status, int) else None


def classify_error(error: Exception) -> tuple[str, bool]:
    """Map a raised fault to (error code, can_retry)."""
    if isinstance(error, SyncFault):
        return error.code, error.retryable

    status = _status_code_of(error)
    message = str(error).lower()

    if "not found" in message or status == 404:
        code = SyncErrorCode.CONTACT_NOT_FOUND
    elif status == 429 or "rate limit" in message:
        code = SyncErrorCode.RATE_LIMITED
    elif status == 401 or "authentication" in message:
        code = SyncErrorCode.AUTH_ERROR
    elif (status is not None and status >= 500) or "hubspot" in message:
        code = SyncErrorCode.TARGET_API_ERROR
    elif "database" in message or "supabase" in message or "pgrst" in message or str(getattr(error, "code", None) or "").startswith("PGRST"):
        code = SyncErrorCode.SOURCE_STORE_ERROR
    elif isinstance(error, (httpx.TimeoutException, httpx.TransportError)):
        code = SyncErrorCode.TARGET_API_ERROR
    else:
        code = SyncErrorCode.SYNC_FAILED

    logger.debug(f"Classified untyped {type(error).__name__} as {code}")
    return code, SyncErrorCode.is_retryable(code)


def error_details(error: Exception) -> dict:
    """Internal details for the error payload; run through sanitize_details() before responding."""
    details = {"type": type(error).__name__}
    status = _status_code_of(error)
    if status is not None:
        details["statusCode"] = status
    if isinstance(error, SyncFault) and error.details:
        details.update(error.details)
    return details


_SECRET_MARKERS = ("token", "authorization", "secret", "password", "api_key", "apikey", "key", "credential")


def sanitize_details(details):
    """Drop credential-like keys from an error details payload, recursively."""
    if isinstance(details, dict):
        return {
            k: sanitize_details(v)
            for k, v in details.items()
            if not any(marker in str(k).lower() for marker in _SECRET_MARKERS)
        }
    if isinstance(details, list):
        return [sanitize_details(v) for v in details]
    return details
