"""
FastAPI application factory and HTTP schemas for the bulk mail scheduler.

The module exposes a `create_app` function that builds the REST API used to
submit bulk sends and inspect their progress. Authentication is enforced
through a configurable API token carried in the ``X-API-Token`` header; the
caller's identity is passed explicitly as ``user_id``.
"""

from typing import Any, AsyncContextManager, Callable, List, Optional, Union

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, status
from fastapi.responses import Response
from fastapi.security import APIKeyHeader
from pydantic import BaseModel, Field

from .core import BulkMailCore
from .models import JobStatus

app = FastAPI(title="Bulk Mail Scheduler")
service: BulkMailCore | None = None
API_TOKEN_HEADER_NAME = "X-API-Token"
api_key_scheme = APIKeyHeader(name=API_TOKEN_HEADER_NAME, auto_error=False)
app.state.api_token = None


async def require_token(api_token: str | None = Depends(api_key_scheme)) -> None:
    """Validate the API token carried in the ``X-API-Token`` header.

    When no token has been configured through :func:`create_app` the
    dependency is effectively bypassed.
    """
    expected = getattr(app.state, "api_token", None)
    if expected is None:
        return
    if not api_token or api_token != expected:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid or missing API token")


auth_dependency = Depends(require_token)


class CommandStatus(BaseModel):
    """Base schema shared by most responses produced by the service."""
    ok: bool
    error: Optional[str] = None


class BasicOkResponse(CommandStatus):
    pass


class StatusResponse(CommandStatus):
    running: bool = False
    queued: int = 0
    scheduled: int = 0


class SchedulePayload(BaseModel):
    """Bulk send request: one message, many recipients, spaced in time."""
    user_id: str
    sender_email: str
    subject: str
    body: str
    recipients: Union[List[str], str] = Field(description="Addresses, or CSV text containing them")
    start_time: Optional[Union[float, str]] = Field(
        default=None, description="Epoch seconds or ISO-8601; defaults to now"
    )
    delay_between_emails: int = Field(default=0, ge=0, description="Milliseconds between consecutive due times")
    hourly_limit: Optional[int] = Field(default=None, gt=0, description="Per-campaign hourly cap for the sender")


class ScheduledJobInfo(BaseModel):
    job_id: str
    recipient: str
    due_time: float


class ScheduleResponse(CommandStatus):
    count: int = 0
    jobs: List[ScheduledJobInfo] = Field(default_factory=list)


class EmailRecord(BaseModel):
    """A job as reported by the query endpoints."""
    job_id: str
    user_id: str
    recipient: str
    subject: str
    body: str
    sender: str
    due_time: float
    status: JobStatus
    sent_at: Optional[float] = None
    error_message: Optional[str] = None
    attempts: int = 0
    hourly_limit: Optional[int] = None
    created_at: Optional[float] = None
    updated_at: Optional[float] = None


class EmailsResponse(CommandStatus):
    emails: List[EmailRecord]


def _require_service() -> BulkMailCore:
    if not service:
        raise HTTPException(500, "Service not initialized")
    return service


def create_app(
    svc: BulkMailCore,
    api_token: str | None = None,
    lifespan: Callable[[FastAPI], AsyncContextManager] | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Parameters
    ----------
    svc:
        Instance of :class:`bulk_mail_scheduler.core.BulkMailCore` that
        implements the business logic for each command.
    api_token:
        Optional secret used to protect every endpoint.
    lifespan:
        Optional lifespan context manager for startup/shutdown events.
    """
    global service
    service = svc

    if lifespan is not None:
        api = FastAPI(title="Bulk Mail Scheduler", lifespan=lifespan)
    else:
        api = app

    api.state.api_token = api_token
    app.state.api_token = api_token
    commands = APIRouter(prefix="/commands", tags=["commands"], dependencies=[auth_dependency])
    emails = APIRouter(prefix="/emails", tags=["emails"], dependencies=[auth_dependency])

    @api.get("/status", response_model=StatusResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def get_status():
        """Return dispatcher health and queue sizes."""
        result = await _require_service().handle_command("status", {})
        return StatusResponse.model_validate(result)

    @commands.post("/schedule", response_model=ScheduleResponse, response_model_exclude_none=True)
    async def schedule(payload: SchedulePayload):
        """Create one scheduled job per recipient."""
        result: dict[str, Any] = await _require_service().handle_command("schedule", payload.model_dump())
        if not isinstance(result, dict) or result.get("ok") is not True:
            detail = {"error": result.get("error"), "code": result.get("code")}
            raise HTTPException(status_code=400, detail=detail)
        return ScheduleResponse.model_validate(result)

    @commands.post("/run-now", response_model=BasicOkResponse, response_model_exclude_none=True)
    async def run_now():
        """Wake the workers so due jobs are picked up immediately."""
        result = await _require_service().handle_command("run now", {})
        return BasicOkResponse.model_validate(result)

    @emails.get("/scheduled", response_model=EmailsResponse, response_model_exclude_none=True)
    async def scheduled_emails(user_id: str = Query(...)):
        """List a user's jobs still waiting for dispatch, earliest first."""
        result = await _require_service().handle_command("listScheduled", {"user_id": user_id})
        return EmailsResponse.model_validate(result)

    @emails.get("/sent", response_model=EmailsResponse, response_model_exclude_none=True)
    async def sent_emails(user_id: str = Query(...)):
        """List a user's sent and failed jobs, most recent first."""
        result = await _require_service().handle_command("listSent", {"user_id": user_id})
        return EmailsResponse.model_validate(result)

    @api.get("/metrics", dependencies=[auth_dependency])
    async def metrics():
        """Expose Prometheus metrics collected by the dispatcher."""
        return Response(
            content=_require_service().metrics.generate_latest(),
            media_type="text/plain; version=0.0.4",
        )

    api.include_router(commands)
    api.include_router(emails)
    return api
