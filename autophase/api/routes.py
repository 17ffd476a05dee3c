"""FastAPI REST API for Autophase."""

import hmac
import logging
from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from fastapi import Body, Depends, FastAPI, Header, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from autophase.engine.candidates import RUN_SOURCES
from autophase.engine.orchestrator import RunOptions, RunSummary, run_workspace_auto_phase, unlock_thread_for_auto_phase
from autophase.engine.retag import create_retag_job, get_retag_job, run_retag_step, run_retag_to_completion
from autophase.engine.settings_store import AutomationConfig, get_automation_settings, update_automation_settings
from autophase.engine.sweep import SweepResult, run_sweep
from autophase.errors import RetagAlreadyRunningError, RetagJobNotFoundError, RetagWeeklyLimitError
from autophase.runtime import Runtime, build_runtime
from autophase.storage.audit import list_audit_entries

logger = logging.getLogger(__name__)

app = FastAPI(
    title="Autophase API",
    description="REST API for Autophase: confidence-gated lead phase automation",
    version="0.1.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:5173", "http://localhost:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

TRIGGER_ROLES = ("owner", "setter")


# --- Pydantic request/response models ---

class Actor(BaseModel):
    user_id: Optional[str] = None
    role: str


class RunRequest(BaseModel):
    source: str = "incremental"
    conversation_ids: Optional[list[str]] = None
    max_conversations: Optional[int] = None
    force_run_when_disabled: bool = False


class UnlockRequest(BaseModel):
    conversation_id: str = Field(min_length=1)


class RetagRequest(BaseModel):
    tag_id: Optional[UUID] = None
    only_last_30_days: bool = False


class RetagJobResponse(BaseModel):
    id: UUID
    workspace_id: UUID
    requested_by: Optional[str] = None
    tag_id: Optional[UUID] = None
    only_last_30_days: bool = False
    status: str
    progress_total: int = 0
    progress_done: int = 0
    message: Optional[str] = None
    error: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class RetagRunAllResponse(BaseModel):
    job: RetagJobResponse
    rounds: int


class AuditEntryResponse(BaseModel):
    id: UUID
    conversation_id: str
    action: str
    actor_user_id: Optional[str] = None
    details: Optional[dict] = None
    created_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


# --- Dependencies ---

def get_runtime() -> Runtime:
    return build_runtime()


def get_actor(
    x_actor_id: Optional[str] = Header(None),
    x_actor_role: Optional[str] = Header(None),
) -> Actor:
    """Only workspace owners and setters may drive automation."""
    role = (x_actor_role or "").strip().lower()
    if role not in TRIGGER_ROLES:
        raise HTTPException(status_code=403, detail="Only owners and setters can run lead automation")
    return Actor(user_id=x_actor_id or None, role=role)


def _retag_http_error(error: Exception) -> HTTPException:
    if isinstance(error, RetagJobNotFoundError):
        return HTTPException(status_code=404, detail=str(error))
    if isinstance(error, RetagAlreadyRunningError):
        return HTTPException(status_code=409, detail=str(error))
    if isinstance(error, RetagWeeklyLimitError):
        return HTTPException(status_code=429, detail=str(error))
    return HTTPException(status_code=400, detail=str(error))


# --- Routes ---

@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/api/workspaces/{workspace_id}/auto-phase/settings", response_model=AutomationConfig)
async def read_settings(
    workspace_id: UUID,
    actor: Actor = Depends(get_actor),
    runtime: Runtime = Depends(get_runtime),
):
    """Current automation settings (defaults are created on first read)."""
    async with runtime.session_factory() as session:
        return await get_automation_settings(session, workspace_id)


@app.patch("/api/workspaces/{workspace_id}/auto-phase/settings", response_model=AutomationConfig)
async def patch_settings(
    workspace_id: UUID,
    patch: Optional[dict[str, Any]] = Body(None),
    actor: Actor = Depends(get_actor),
    runtime: Runtime = Depends(get_runtime),
):
    """Partial update; unknown keys are ignored and numbers are clamped."""
    async with runtime.session_factory() as session:
        return await update_automation_settings(session, workspace_id, patch or {})


@app.post("/api/workspaces/{workspace_id}/auto-phase/run", response_model=RunSummary)
async def trigger_run(
    workspace_id: UUID,
    request: Optional[RunRequest] = None,
    actor: Actor = Depends(get_actor),
    runtime: Runtime = Depends(get_runtime),
):
    request = request or RunRequest()
    if request.source not in RUN_SOURCES:
        raise HTTPException(status_code=422, detail=f"Unknown source: {request.source}")

    return await run_workspace_auto_phase(
        runtime,
        RunOptions(
            workspace_id=workspace_id,
            source=request.source,
            actor_user_id=actor.user_id,
            actor_role=actor.role,
            conversation_ids=request.conversation_ids,
            max_conversations=request.max_conversations,
            force_run_when_disabled=request.force_run_when_disabled,
        ),
    )


@app.post("/api/workspaces/{workspace_id}/auto-phase/unlock", response_model=RunSummary)
async def unlock_conversation(
    workspace_id: UUID,
    request: UnlockRequest,
    actor: Actor = Depends(get_actor),
    runtime: Runtime = Depends(get_runtime),
):
    """Drop a conversation's manual phase tags and re-run automation on it."""
    return await unlock_thread_for_auto_phase(
        runtime, workspace_id, request.conversation_id, actor_user_id=actor.user_id, actor_role=actor.role
    )


@app.get("/api/workspaces/{workspace_id}/audit", response_model=list[AuditEntryResponse])
async def list_audit(
    workspace_id: UUID,
    conversation_id: Optional[str] = Query(None),
    action: Optional[str] = Query(None),
    limit: int = Query(50, ge=1, le=200),
    actor: Actor = Depends(get_actor),
    runtime: Runtime = Depends(get_runtime),
):
    async with runtime.session_factory() as session:
        return await list_audit_entries(session, workspace_id, conversation_id, action, limit)


@app.post("/api/workspaces/{workspace_id}/retag", response_model=RetagJobResponse)
async def start_retag(
    workspace_id: UUID,
    request: Optional[RetagRequest] = None,
    actor: Actor = Depends(get_actor),
    runtime: Runtime = Depends(get_runtime),
):
    """Create a Re-Phase Leads job; drive it with the step endpoint."""
    request = request or RetagRequest()
    try:
        async with runtime.session_factory() as session:
            job = await create_retag_job(
                session,
                workspace_id,
                requested_by=actor.user_id,
                tag_id=request.tag_id,
                only_last_30_days=request.only_last_30_days,
                cooldown_days=runtime.settings.retag.full_scope_cooldown_days,
            )
    except (RetagAlreadyRunningError, RetagWeeklyLimitError) as e:
        raise _retag_http_error(e)
    return job


@app.post("/api/workspaces/{workspace_id}/retag/run-all", response_model=RetagRunAllResponse)
async def run_retag_all(
    workspace_id: UUID,
    request: Optional[RetagRequest] = None,
    actor: Actor = Depends(get_actor),
    runtime: Runtime = Depends(get_runtime),
):
    request = request or RetagRequest()
    try:
        job, rounds = await run_retag_to_completion(
            runtime,
            workspace_id,
            requested_by=actor.user_id,
            tag_id=request.tag_id,
            only_last_30_days=request.only_last_30_days,
        )
    except (RetagAlreadyRunningError, RetagWeeklyLimitError) as e:
        raise _retag_http_error(e)
    return RetagRunAllResponse(job=RetagJobResponse.model_validate(job), rounds=rounds)


@app.post("/api/workspaces/{workspace_id}/retag/{job_id}/step", response_model=RetagJobResponse)
async def step_retag(
    workspace_id: UUID,
    job_id: UUID,
    actor: Actor = Depends(get_actor),
    runtime: Runtime = Depends(get_runtime),
):
    try:
        return await run_retag_step(runtime, workspace_id, job_id, actor_user_id=actor.user_id)
    except RetagJobNotFoundError as e:
        raise _retag_http_error(e)


@app.get("/api/workspaces/{workspace_id}/retag/{job_id}", response_model=RetagJobResponse)
async def read_retag(
    workspace_id: UUID,
    job_id: UUID,
    actor: Actor = Depends(get_actor),
    runtime: Runtime = Depends(get_runtime),
):
    try:
        async with runtime.session_factory() as session:
            return await get_retag_job(session, workspace_id, job_id)
    except RetagJobNotFoundError as e:
        raise _retag_http_error(e)


@app.post("/api/auto-phase/sweep", response_model=SweepResult)
async def trigger_sweep(
    x_auto_phase_secret: Optional[str] = Header(None),
    runtime: Runtime = Depends(get_runtime),
):
    """Scheduled sweep over enabled workspaces, guarded by the cron secret."""
    expected = runtime.settings.runs.cron_secret
    if not expected:
        raise HTTPException(status_code=503, detail="Cron secret is not configured")
    if not x_auto_phase_secret or not hmac.compare_digest(x_auto_phase_secret, expected):
        raise HTTPException(status_code=401, detail="Invalid cron secret")

    logger.info("Sweep triggered over HTTP")
    return await run_sweep(runtime)
