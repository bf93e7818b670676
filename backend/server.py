"""Email Verification Sync - Main Server"""
from fastapi import FastAPI, APIRouter, HTTPException, Depends, Header, Request, Query
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from dotenv import load_dotenv
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.cors import CORSMiddleware
import os
import json
import time
import uuid
import logging
from pathlib import Path
from pydantic import BaseModel, ConfigDict, Field, AliasChoices, StrictInt, StrictStr, ValidationError
from typing import Optional, Any
from datetime import datetime, timezone, timedelta

from database import AsyncSessionLocal, create_tables, dispose_engine
from auth_service import authenticate, Caller
from hubspot_crm import HubSpotCRM
from operation_registry import (
    OperationRegistry, start_cleanup_loop, stop_cleanup_loop,
)
from status_aggregator import StatusAggregator, poll_interval_for_collection, poll_interval_for_operation
from supabase_contacts import create_contact_store
from sync_backends import SourceContactStore, TargetCRM
from sync_errors import SyncError, SyncErrorCode, NotRetryableError, sanitize_details
from sync_executor import SyncExecutor, DEFAULT_STEP_TIMEOUT
from sync_operation import SyncOperation
from sync_retry import RetryCoordinator, retry_budget_exhausted, DEFAULT_MAX_RETRIES
from sync_status import SyncStatus

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

SYNC_RETENTION_HOURS = float(os.environ.get('SYNC_RETENTION_HOURS', '24'))
SYNC_STALE_SECONDS = float(os.environ.get('SYNC_STALE_SECONDS', '600'))
SYNC_CLEANUP_INTERVAL = float(os.environ.get('SYNC_CLEANUP_INTERVAL', '900'))

app = FastAPI(title="Email Verification Sync")
api_router = APIRouter(prefix="/api")

# HTTP status for orchestrator outcomes raised before a record exists
_SYNC_ERROR_STATUS = {
    SyncErrorCode.VALIDATION_ERROR: 400,
    SyncErrorCode.OPERATION_NOT_FOUND: 404,
    SyncErrorCode.SYNC_CONFLICT: 409,
    SyncErrorCode.NOT_RETRYABLE: 409,
}

_HTTP_ERROR_CODES = {
    401: SyncErrorCode.UNAUTHORIZED,
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
}


# ============ Service wiring ============

class SyncService:
    """Everything the sync endpoints need, built once per process."""

    def __init__(
        self,
        registry: OperationRegistry,
        source: SourceContactStore,
        target: TargetCRM,
        step_timeout: float = DEFAULT_STEP_TIMEOUT,
        max_retries: int = DEFAULT_MAX_RETRIES,
    ):
        self.registry = registry
        self.executor = SyncExecutor(registry, source, target, step_timeout=step_timeout)
        self.retry = RetryCoordinator(registry, self.executor)
        self.aggregator = StatusAggregator(registry)
        self.max_retries = max_retries


def build_sync_service() -> SyncService:
    return SyncService(
        registry=OperationRegistry(AsyncSessionLocal),
        source=create_contact_store(),
        target=HubSpotCRM(),
    )


def get_sync_service(request: Request) -> SyncService:
    service = getattr(request.app.state, "sync_service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Sync service is not initialized")
    return service


# ============ Pydantic Models ============

class SyncRequest(BaseModel):
    """Submit-sync body. Accepts the dashboard's legacy field names too."""
    model_config = ConfigDict(extra="ignore")

    source_contact_id: StrictInt = Field(
        validation_alias=AliasChoices("sourceContactId", "supabaseContactId")
    )
    target_contact_id: StrictStr = Field(
        min_length=1,
        validation_alias=AliasChoices("targetContactId", "hubspotContactId"),
    )
    status: StrictStr = Field(
        validation_alias=AliasChoices("status", "emailVerificationStatus")
    )


# ============ Response envelope ============

@app.middleware("http")
async def attach_request_metadata(request: Request, call_next):
    request.state.request_id = f"req_{uuid.uuid4().hex}"
    request.state.started_at = time.perf_counter()
    response = await call_next(request)
    response.headers["X-Request-ID"] = request.state.request_id
    return response


def _metadata(request: Request) -> dict:
    started_at = getattr(request.state, "started_at", None)
    duration_ms = int((time.perf_counter() - started_at) * 1000) if started_at else 0
    return {
        "requestId": getattr(request.state, "request_id", None) or f"req_{uuid.uuid4().hex}",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "durationMs": duration_ms,
    }


def envelope(
    request: Request,
    data: Any = None,
    error: Optional[dict] = None,
    status_code: int = 200,
    success: Optional[bool] = None,
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "success": error is None if success is None else success,
            "data": data,
            "error": error,
            "metadata": _metadata(request),
        },
    )


def error_body(code: str, message: str, details: Optional[dict] = None, **extra) -> dict:
    body = {"code": code, "message": message, **extra}
    if details:
        body["details"] = sanitize_details(details)
    return body


def operation_response(request: Request, operation: SyncOperation, include_details: bool) -> JSONResponse:
    """Terminal record -> response. Failures are 200s except a missing contact (404)."""
    data = operation.to_public(include_details)
    if operation.status != SyncStatus.FAILED:
        return envelope(request, data=data, success=operation.status == SyncStatus.COMPLETED)

    failure = operation.error
    details = {"operationId": operation.id}
    if include_details:
        details.update(failure.details)
    error = error_body(failure.code, failure.message, details, canRetry=failure.can_retry)

    status_code = 404 if failure.code == SyncErrorCode.CONTACT_NOT_FOUND else 200
    return envelope(request, data=data, error=error, status_code=status_code)


@app.exception_handler(SyncError)
async def sync_error_handler(request: Request, exc: SyncError):
    status_code = _SYNC_ERROR_STATUS.get(exc.code, 500)
    return envelope(request, error=error_body(exc.code, exc.message, exc.details), status_code=status_code)


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    code = _HTTP_ERROR_CODES.get(exc.status_code, "HTTP_ERROR")
    response = envelope(request, error=error_body(code, str(exc.detail)), status_code=exc.status_code)
    if exc.headers:
        response.headers.update(exc.headers)
    return response


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    fields = sorted({str(err["loc"][-1]) for err in exc.errors() if err.get("loc")})
    return envelope(
        request,
        error=error_body(
            SyncErrorCode.VALIDATION_ERROR,
            f"Invalid request parameters: {', '.join(fields)}",
            {"fields": fields},
        ),
        status_code=400,
    )


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled error on {request.method} {request.url.path}: {exc}", exc_info=exc)
    return envelope(
        request,
        error=error_body(SyncErrorCode.INTERNAL_ERROR, "Internal server error"),
        status_code=500,
    )


# ============ Auth Middleware ============

async def get_caller(
    authorization: Optional[str] = Header(None),
) -> Caller:
    """Resolve the bearer token to a caller; 401 otherwise"""
    if not authorization:
        raise HTTPException(status_code=401, detail="Authorization header required")

    try:
        scheme, token = authorization.split()
        if scheme.lower() != "bearer":
            raise HTTPException(status_code=401, detail="Invalid authentication scheme")
    except ValueError:
        raise HTTPException(status_code=401, detail="Invalid authorization header")

    caller = authenticate(token)
    if caller is None:
        raise HTTPException(status_code=401, detail="Invalid or expired token", headers={"WWW-Authenticate": "Bearer"})

    return caller


# ============ Sync Endpoints ============

@api_router.post("/sync-email-verification")
async def submit_sync(
    request: Request,
    include_details: bool = Query(False, alias="includeDetails"),
    caller: Caller = Depends(get_caller),
    service: SyncService = Depends(get_sync_service),
):
    """Sync one contact's email verification status from Supabase to HubSpot"""
    try:
        payload = json.loads(await request.body())
    except (json.JSONDecodeError, UnicodeDecodeError):
        return envelope(
            request,
            error=error_body(SyncErrorCode.INVALID_JSON, "Invalid JSON in request body"),
            status_code=400,
        )

    if not isinstance(payload, dict):
        return envelope(
            request,
            error=error_body(SyncErrorCode.VALIDATION_ERROR, "Request body must be a JSON object"),
            status_code=400,
        )

    try:
        sync_request = SyncRequest.model_validate(payload)
    except ValidationError as e:
        fields = sorted({str(err["loc"][0]) for err in e.errors() if err.get("loc")})
        return envelope(
            request,
            error=error_body(
                SyncErrorCode.VALIDATION_ERROR,
                f"Missing or invalid fields: {', '.join(fields)}. "
                "sourceContactId must be an integer, targetContactId and status must be strings",
                {"fields": fields},
            ),
            status_code=400,
        )

    logger.info(
        f"Sync requested by {caller.kind} {caller.subject}: contact {sync_request.source_contact_id} "
        f"-> HubSpot {sync_request.target_contact_id} ({sync_request.status})"
    )
    operation = await service.executor.execute(
        sync_request.source_contact_id,
        sync_request.target_contact_id,
        sync_request.status,
        initiated_by=caller.kind,
    )
    return operation_response(request, operation, include_details)


@api_router.get("/sync-status")
async def list_sync_status(
    request: Request,
    include_details: bool = Query(False, alias="includeDetails"),
    service: SyncService = Depends(get_sync_service),
):
    """All tracked operations with per-status counts"""
    operations, summary = await service.aggregator.overview()
    return envelope(request, data={
        "operations": [op.to_public(include_details) for op in operations],
        "total": summary["total"],
        "summary": summary,
        "pollAfterSeconds": poll_interval_for_collection(operations),
    })


@api_router.get("/sync-status/{operation_id}")
async def get_sync_status(
    operation_id: str,
    request: Request,
    include_details: bool = Query(False, alias="includeDetails"),
    service: SyncService = Depends(get_sync_service),
):
    """One operation by id"""
    operation = await service.aggregator.get(operation_id)
    return envelope(request, data={
        "operation": operation.to_public(include_details),
        "pollAfterSeconds": poll_interval_for_operation(operation),
    })


@api_router.post("/sync-status/{operation_id}/retry")
async def retry_sync(
    operation_id: str,
    request: Request,
    include_details: bool = Query(False, alias="includeDetails"),
    caller: Caller = Depends(get_caller),
    service: SyncService = Depends(get_sync_service),
):
    """Re-run a failed, retryable operation as a new operation"""
    previous = await service.registry.get(operation_id)
    if retry_budget_exhausted(previous, service.max_retries):
        raise NotRetryableError(
            f"Retry limit of {service.max_retries} reached for this contact; the failure is permanent",
            details={"operationId": operation_id, "retryCount": previous.retry_count},
        )

    logger.info(f"Retry of {operation_id} requested by {caller.kind} {caller.subject}")
    operation = await service.retry.retry(operation_id)
    return operation_response(request, operation, include_details)


# ============ Health Check ============

@api_router.get("/health")
async def health_check(request: Request):
    return envelope(request, data={"status": "healthy", "timestamp": datetime.now(timezone.utc).isoformat()})


# Include router and add middleware
app.include_router(api_router)

app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=os.environ.get('CORS_ORIGINS', '*').split(','),
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
async def startup():
    await create_tables()
    logger.info("Database tables created")

    if getattr(app.state, "sync_service", None) is None:
        app.state.sync_service = build_sync_service()

    start_cleanup_loop(
        app.state.sync_service.registry,
        interval=SYNC_CLEANUP_INTERVAL,
        retention=timedelta(hours=SYNC_RETENTION_HOURS),
        stale_after=timedelta(seconds=SYNC_STALE_SECONDS),
    )


@app.on_event("shutdown")
async def shutdown():
    await stop_cleanup_loop()
    await dispose_engine()
