# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""
FastAPI application factory and HTTP schemas for the reminder relay.

The public surface is a liveness check and the submission endpoint. The
read-only inspection endpoints (quota snapshot, queue contents, metrics) and
the channel and store self-tests are protected by an optional API token carried in the
``X-API-Token`` header.
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Optional, Dict, Any, List, Union, Callable, AsyncContextManager

from fastapi import FastAPI, HTTPException, Depends, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse, Response
from fastapi.security import APIKeyHeader
from pydantic import BaseModel, Field, ConfigDict, ValidationError

from .core import ReminderService
from .errors import PayloadValidationError, StoreUnavailable
from .logger import get_logger

service: ReminderService | None = None
API_TOKEN_HEADER_NAME = "X-API-Token"
api_key_scheme = APIKeyHeader(name=API_TOKEN_HEADER_NAME, auto_error=False)
logger = get_logger("ReminderRelay.api")

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "X-XSS-Protection": "1; mode=block",
}


async def require_token(request: Request, api_token: str | None = Depends(api_key_scheme)) -> None:
    """Validate the API token carried in the ``X-API-Token`` header.

    When no token is configured the dependency is bypassed.
    """
    expected = getattr(request.app.state, "api_token", None)
    if expected is None:
        return
    if not api_token or api_token != expected:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid or missing API token")


auth_dependency = Depends(require_token)


class ReminderPayload(BaseModel):
    """Body accepted by ``POST /send-reminder``."""
    model_config = ConfigDict(populate_by_name=True)
    email: Optional[str] = None
    time_in_days: Optional[Union[float, str]] = Field(default=None, alias="timeInDays")
    problem_link: Optional[str] = Field(default=None, alias="problemLink")
    problem_name: Optional[str] = Field(default=None, alias="problemName")
    notes: Optional[str] = None


class SubmissionResponse(BaseModel):
    success: bool
    message: Optional[str] = None
    jobId: Optional[str] = None
    error: Optional[str] = None


class ChannelStatus(BaseModel):
    emailsSent: int
    remaining: int
    isAvailable: bool


class BulkChannelStatus(ChannelStatus):
    name: Optional[str] = None


class AccountStatus(ChannelStatus):
    email: str


class ServiceStatus(BaseModel):
    sendgrid: BulkChannelStatus
    gmailAccounts: List[AccountStatus]


class StatusResponse(BaseModel):
    success: bool
    status: ServiceStatus


class JobRecord(BaseModel):
    """A job as exposed by the inspection endpoints."""
    id: str
    status: str
    state: str
    attempts: int
    max_attempts: int
    delay_seconds: float
    run_at: float
    lease_until: Optional[float] = None
    created_at: Optional[float] = None
    updated_at: Optional[float] = None
    finished_at: Optional[float] = None
    error: Optional[str] = None
    payload: Dict[str, Any]


class JobsResponse(BaseModel):
    success: bool
    counts: Dict[str, int]
    jobs: List[JobRecord]


class JobResponse(BaseModel):
    success: bool
    job: JobRecord


class ChannelTestPayload(BaseModel):
    address: str


class ChannelTestResult(BaseModel):
    channel: str
    index: int
    status: str


class ChannelTestResponse(BaseModel):
    success: bool
    message: str
    results: List[ChannelTestResult]


class StoreTestResponse(BaseModel):
    success: bool
    message: str
    dbPath: str
    testValue: int


def _failure(status_code: int, error: str, headers: Optional[Dict[str, str]] = None, **extra: Any) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "error": error, **extra}, headers=headers)


def _client_id(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def _describe_invalid(exc: ValidationError) -> str:
    fields = sorted({str(err["loc"][0]) for err in exc.errors() if err.get("loc")})
    if not fields:
        return "Invalid reminder payload."
    return f"Invalid value for: {', '.join(fields)}."


def create_app(
    svc: ReminderService,
    api_token: str | None = None,
    lifespan: Callable[[FastAPI], AsyncContextManager] | None = None,
    frontend_url: str = "*",
) -> FastAPI:
    """Create and configure the FastAPI application.

    Parameters
    ----------
    svc:
        Instance of :class:`reminder_relay.core.ReminderService` that
        implements scheduling and inspection.
    api_token:
        Optional secret protecting the inspection endpoints. When provided,
        the ``X-API-Token`` header must match it.
    lifespan:
        Optional lifespan context manager for startup/shutdown events.
    frontend_url:
        Origin allowed by CORS.

    Returns
    -------
    FastAPI
        A configured application ready to be served by Uvicorn.
    """
    global service
    service = svc

    if lifespan is not None:
        api = FastAPI(title="Reminder Relay", lifespan=lifespan)
    else:
        api = FastAPI(title="Reminder Relay")

    api.state.api_token = api_token
    api.add_middleware(
        CORSMiddleware,
        allow_origins=[frontend_url or "*"],
        allow_methods=["GET", "POST"],
        allow_headers=["Content-Type", API_TOKEN_HEADER_NAME],
    )

    @api.middleware("http")
    async def security_headers(request: Request, call_next):
        response = await call_next(request)
        for name, value in SECURITY_HEADERS.items():
            response.headers[name] = value
        return response

    @api.get("/", response_class=PlainTextResponse)
    async def root():
        """Liveness check."""
        return "Server is running"

    @api.post("/send-reminder", response_model=SubmissionResponse, response_model_exclude_none=True)
    async def send_reminder(request: Request):
        """Rate-limit the caller, validate the body and schedule the reminder."""
        if not service:
            raise HTTPException(500, "Service not initialized")
        admission = await service.admit(_client_id(request))
        if not admission.allowed:
            minutes = admission.retry_after // 60
            return _failure(
                429,
                "Rate limit exceeded. Too many requests.",
                headers={"Retry-After": str(admission.retry_after)},
                remainingTime=f"Try again in {minutes} minutes",
            )
        try:
            body = await request.json()
        except ValueError:
            return _failure(400, "Request body must be a JSON object.")
        if not isinstance(body, dict):
            return _failure(400, "Request body must be a JSON object.")
        try:
            payload = ReminderPayload.model_validate(body)
            result = await service.schedule_reminder(
                {
                    "email": payload.email,
                    "link": payload.problem_link,
                    "label": payload.problem_name,
                    "notes": payload.notes,
                    "days": payload.time_in_days,
                }
            )
        except ValidationError as exc:
            return _failure(400, _describe_invalid(exc))
        except PayloadValidationError as exc:
            return _failure(400, str(exc))
        except StoreUnavailable as exc:
            logger.error("Scheduling failed, store unavailable: %s", exc)
            return _failure(503, "Reminder store unavailable, try again later.")
        except Exception:
            logger.exception("Scheduling error")
            return _failure(500, "Failed to schedule email.")
        days = result["days"]
        shown = int(days) if float(days).is_integer() else days
        return SubmissionResponse(
            success=True,
            message=f"Reminder email scheduled for {shown} days",
            jobId=result["job_id"],
        )

    @api.get("/email-service-status", response_model=StatusResponse, dependencies=[auth_dependency])
    async def email_service_status():
        """Quota usage per channel."""
        if not service:
            raise HTTPException(500, "Service not initialized")
        try:
            snapshot = await service.service_status()
        except StoreUnavailable:
            return _failure(503, "Failed to get email service status")
        return StatusResponse.model_validate({"success": True, "status": snapshot})

    @api.get("/jobs", response_model=JobsResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def list_jobs(state: Optional[str] = None, limit: int = 100):
        """Expose queued, active and finished jobs."""
        if not service:
            raise HTTPException(500, "Service not initialized")
        if state is not None and state not in {"waiting", "ready", "active", "completed", "failed"}:
            raise HTTPException(400, f"Unknown job state: {state}")
        try:
            result = await service.list_jobs(state=state, limit=max(1, min(limit, 1000)))
        except StoreUnavailable:
            return _failure(503, "Job store unavailable")
        return JobsResponse.model_validate({"success": True, **result})

    @api.get("/jobs/{job_id}", response_model=JobResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def get_job(job_id: str):
        """Return a single job."""
        if not service:
            raise HTTPException(500, "Service not initialized")
        try:
            job = await service.get_job(job_id)
        except StoreUnavailable:
            return _failure(503, "Job store unavailable")
        if job is None:
            raise HTTPException(404, "Job not found")
        return JobResponse.model_validate({"success": True, "job": job})

    @api.post("/test-email-services", response_model=ChannelTestResponse, dependencies=[auth_dependency])
    async def test_email_services(payload: ChannelTestPayload):
        """Send a test email through every channel."""
        if not service:
            raise HTTPException(500, "Service not initialized")
        results = await service.test_channels(payload.address)
        return ChannelTestResponse(success=True, message="Email service test completed", results=results)

    @api.get("/store-test", response_model=StoreTestResponse, dependencies=[auth_dependency])
    async def store_test():
        """Check that the store accepts a write and returns it."""
        if not service:
            raise HTTPException(500, "Service not initialized")
        try:
            result = await service.store_health()
        except StoreUnavailable as exc:
            logger.error("Store health check failed: %s", exc)
            return _failure(500, str(exc))
        return StoreTestResponse(success=True, message="Store connection successful", **result)

    @api.get("/metrics", dependencies=[auth_dependency])
    async def metrics():
        """Expose Prometheus metrics collected by the service."""
        if not service:
            raise HTTPException(500, "Service not initialized")
        return Response(content=service.metrics.generate_latest(), media_type="text/plain; version=0.0.4")

    return api


def create_service_app(settings: Dict[str, Any], svc: Optional[ReminderService] = None) -> FastAPI:
    """Build the service described by ``settings`` and an app bound to its lifecycle."""
    core = svc or ReminderService.from_settings(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        await core.start()
        yield
        await core.stop()

    return create_app(
        core,
        api_token=settings.get("api_token"),
        lifespan=lifespan,
        frontend_url=settings.get("frontend_url") or "*",
    )
