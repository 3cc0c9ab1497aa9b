# ============================================================================
# API ROUTES
# ============================================================================
# STATUS: Core - FastAPI route definitions
# PURPOSE: HTTP endpoints for events, runs, approvals and pipelines
# CREATED: 19 OCT 2026
# ============================================================================
"""
API Routes

FastAPI routes for the pipeline orchestrator:
- event ingestion (returns instantiated run ids)
- run control surface (list, job graph, timeline, cancel)
- approval decisions (authorized against the environment's approvers)
- pipeline and environment registry views
"""

import logging
from typing import Optional

import yaml
from fastapi import APIRouter, HTTPException, Query

from core.contracts import ApprovalState, RunStatus
from core.errors import ApprovalError, InvalidTransitionError, PipelineValidationError
from core.models import ApprovalRequest, EventType, PipelineDefinition, RunInstance
from services.pipeline_service import parse_pipeline_document
from .schemas import (
    ApprovalDecisionCreate,
    ApprovalListResponse,
    ApprovalResponse,
    EnvironmentResponse,
    ErrorResponse,
    EventCreate,
    IngestResponse,
    JobRunResponse,
    PipelineListResponse,
    PipelineResponse,
    PipelineValidate,
    RunCancel,
    RunDetailResponse,
    RunListResponse,
    RunResponse,
    ValidationResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter()


# ============================================================================
# DEPENDENCY INJECTION
# ============================================================================
# These will be set by the main app at startup

_pipeline_service = None
_environment_service = None
_run_service = None
_scheduler = None
_event_service = None
_rollback_service = None
_ticker = None


def set_services(
    pipeline_service,
    environment_service,
    run_service,
    scheduler,
    event_service=None,
    rollback_service=None,
    ticker=None,
):
    """Set service instances for dependency injection."""
    global _pipeline_service, _environment_service, _run_service, _scheduler
    global _event_service, _rollback_service, _ticker
    _pipeline_service = pipeline_service
    _environment_service = environment_service
    _run_service = run_service
    _scheduler = scheduler
    _event_service = event_service
    _rollback_service = rollback_service
    _ticker = ticker


def get_pipeline_service():
    if _pipeline_service is None:
        raise HTTPException(500, "Services not initialized")
    return _pipeline_service


def get_environment_service():
    if _environment_service is None:
        raise HTTPException(500, "Services not initialized")
    return _environment_service


def get_run_service():
    if _run_service is None:
        raise HTTPException(500, "Services not initialized")
    return _run_service


def get_event_service():
    if _event_service is None:
        raise HTTPException(500, "Event service not initialized")
    return _event_service


# ============================================================================
# CONVERSIONS
# ============================================================================

def _pipeline_response(definition: PipelineDefinition) -> PipelineResponse:
    return PipelineResponse(
        pipeline_id=definition.pipeline_id,
        name=definition.name or definition.pipeline_id,
        revision=definition.revision,
        description=definition.description,
        triggers=[rule.event.value for rule in definition.triggers],
        jobs=list(definition.jobs),
        concurrency=definition.concurrency,
    )


def _approval_response(request: ApprovalRequest) -> ApprovalResponse:
    response = ApprovalResponse.model_validate(request)
    response.approvals = list(request.approvals)
    return response


def _run_detail(run: RunInstance) -> RunDetailResponse:
    summary = {}
    for job in run.jobs.values():
        summary[job.status.value] = summary.get(job.status.value, 0) + 1
    return RunDetailResponse(
        run=RunResponse.model_validate(run),
        jobs=[JobRunResponse.model_validate(job) for job in run.jobs.values()],
        topo_levels=run.topo_levels,
        job_summary=summary,
    )


# ============================================================================
# SCHEDULER STATUS
# ============================================================================

@router.get("/scheduler/status", tags=["Scheduler"])
async def get_scheduler_status():
    """
    Get scheduler status and statistics.

    Returns runner pool usage, active runs, approval counts, rollback
    decisions and the schedule ticker state.
    """
    if _scheduler is None:
        raise HTTPException(500, "Scheduler not initialized")

    return {
        "scheduler": _scheduler.stats,
        "runs": _run_service.stats if _run_service else {},
        "approvals": _environment_service.stats if _environment_service else {},
        "artifacts": _scheduler.artifact_store.stats,
        "rollbacks": _rollback_service.stats if _rollback_service else {},
        "ticker": _ticker.stats if _ticker else None,
    }


# ============================================================================
# PIPELINES
# ============================================================================

@router.get("/pipelines", response_model=PipelineListResponse, tags=["Pipelines"])
async def list_pipelines():
    """
    List the latest revision of every pipeline, plus files rejected at load.
    """
    service = get_pipeline_service()
    return PipelineListResponse(
        pipelines=[_pipeline_response(p) for p in service.list_all()],
        load_errors=dict(service.load_errors),
    )


@router.get(
    "/pipelines/{pipeline_id}",
    tags=["Pipelines"],
    responses={404: {"model": ErrorResponse}},
)
async def get_pipeline(pipeline_id: str, revision: Optional[int] = Query(None, ge=1)):
    """
    Get a pipeline definition (latest revision unless one is given).
    """
    service = get_pipeline_service()
    definition = service.get(pipeline_id, revision)
    if definition is None:
        raise HTTPException(404, f"Pipeline not found: {pipeline_id}")
    return {
        "definition": definition.model_dump(by_alias=True, mode="json"),
        "revisions": service.revisions(pipeline_id),
    }


@router.post("/pipelines/validate", response_model=ValidationResponse, tags=["Pipelines"])
async def validate_pipeline(request: PipelineValidate):
    """
    Validate a pipeline document without registering it.
    """
    service = get_pipeline_service()
    try:
        data = yaml.safe_load(request.document)
        definition = parse_pipeline_document(data)
    except yaml.YAMLError as e:
        return ValidationResponse(valid=False, errors=[f"Malformed YAML: {e}"])
    except PipelineValidationError as e:
        return ValidationResponse(valid=False, errors=e.errors)

    errors = service.validate(definition)
    return ValidationResponse(valid=not errors, pipeline_id=definition.pipeline_id, errors=errors)


@router.post(
    "/pipelines",
    response_model=PipelineResponse,
    status_code=201,
    tags=["Pipelines"],
    responses={400: {"model": ErrorResponse}},
)
async def register_pipeline(request: PipelineValidate):
    """
    Register a pipeline document as the pipeline's next revision.

    Running instances keep their pinned revision.
    """
    service = get_pipeline_service()
    try:
        definition = service.load_text(request.document)
    except PipelineValidationError as e:
        raise HTTPException(400, {"error": str(e), "errors": e.errors})
    logger.info(f"Registered pipeline {definition.pipeline_id} r{definition.revision} via API")
    return _pipeline_response(definition)


@router.post("/pipelines/reload", tags=["Pipelines"])
async def reload_pipelines():
    """Reload pipeline files from disk; changed files become new revisions."""
    service = get_pipeline_service()
    count = service.reload()
    return {"loaded": count, "load_errors": dict(service.load_errors)}


# ============================================================================
# EVENTS
# ============================================================================

@router.post(
    "/events",
    response_model=IngestResponse,
    status_code=202,
    tags=["Events"],
    responses={202: {"description": "Event evaluated; zero or more runs started"}},
)
async def ingest_event(request: EventCreate):
    """
    Ingest an event.

    Evaluates the event against every pipeline's triggers and starts one
    run per matching pipeline. A mismatch is not an error: the response
    then carries no run ids. Bad dispatch inputs are reported in `errors`.
    """
    service = get_run_service()
    try:
        event = request.to_event()
    except ValueError as e:
        raise HTTPException(400, f"Invalid event: {e}")
    result = await service.ingest(event)
    return IngestResponse(run_ids=result.run_ids, errors=result.errors)


# ============================================================================
# RUNS
# ============================================================================

@router.get("/runs", response_model=RunListResponse, tags=["Runs"])
async def list_runs(
    pipeline_id: Optional[str] = Query(None, description="Filter by pipeline"),
    status: Optional[RunStatus] = Query(None, description="Filter by status"),
    limit: int = Query(100, ge=1, le=1000),
):
    """
    List runs, newest first.
    """
    service = get_run_service()
    runs = service.list_runs(pipeline_id=pipeline_id, status=status, limit=limit)
    return RunListResponse(
        runs=[RunResponse.model_validate(r) for r in runs],
        total=len(runs),
    )


@router.get(
    "/runs/{run_id}",
    response_model=RunDetailResponse,
    tags=["Runs"],
    responses={404: {"model": ErrorResponse}},
)
async def get_run(run_id: str):
    """
    Get a run with its job graph and job states.
    """
    service = get_run_service()
    try:
        run = service.get_run(run_id)
    except KeyError:
        raise HTTPException(404, f"Run not found: {run_id}")
    return _run_detail(run)


@router.get("/runs/{run_id}/timeline", tags=["Runs"])
async def get_run_timeline(
    run_id: str,
    job: Optional[str] = Query(None, description="Only events of this job"),
    event_type: Optional[EventType] = Query(None, description="Only events of this type"),
    limit: int = Query(500, ge=1, le=5000),
):
    """
    Get the event timeline of a run.
    """
    try:
        get_run_service().get_run(run_id)
    except KeyError:
        raise HTTPException(404, f"Run not found: {run_id}")
    events = get_event_service().get_timeline(
        run_id,
        job=job,
        event_types=[event_type] if event_type else None,
        limit=limit,
    )
    return {
        "run_id": run_id,
        "events": [e.model_dump(mode="json") for e in events],
        "total": len(events),
    }


@router.get("/runs/{run_id}/artifacts", tags=["Runs"])
async def get_run_artifacts(run_id: str):
    """
    List artifact keys written by the run's jobs.
    """
    if _scheduler is None:
        raise HTTPException(500, "Scheduler not initialized")
    store = _scheduler.artifact_store
    if not store.has_run(run_id):
        raise HTTPException(404, f"No artifacts for run: {run_id}")
    keys = store.list_keys(run_id)
    return {
        "run_id": run_id,
        "artifacts": [{"job": job, "key": key} for job, key in keys],
        "total": len(keys),
    }


@router.post(
    "/runs/{run_id}/cancel",
    response_model=RunDetailResponse,
    tags=["Runs"],
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
async def cancel_run(run_id: str, request: Optional[RunCancel] = None):
    """
    Cancel a run.

    Every non-terminal job becomes CANCELLED, pending approvals are
    released and running steps are cancelled. No rollback is triggered.
    """
    service = get_run_service()
    actor = request.actor if request else None
    try:
        run = await service.cancel_run(run_id, actor)
    except KeyError:
        raise HTTPException(404, f"Run not found: {run_id}")
    except InvalidTransitionError as e:
        raise HTTPException(409, str(e))
    logger.info(f"Run {run_id} cancelled via API by {actor or 'anonymous'}")
    return _run_detail(run)


# ============================================================================
# APPROVALS
# ============================================================================

@router.get("/approvals", response_model=ApprovalListResponse, tags=["Approvals"])
async def list_approvals(
    state: Optional[ApprovalState] = Query(None, description="Filter by state"),
    run_id: Optional[str] = Query(None),
    environment: Optional[str] = Query(None),
):
    """
    List approval requests.
    """
    service = get_environment_service()
    requests = service.list_requests(state=state, run_id=run_id, environment=environment)
    return ApprovalListResponse(
        approvals=[_approval_response(r) for r in requests],
        total=len(requests),
    )


@router.get(
    "/approvals/{request_id}",
    response_model=ApprovalResponse,
    tags=["Approvals"],
    responses={404: {"model": ErrorResponse}},
)
async def get_approval(request_id: str):
    service = get_environment_service()
    try:
        return _approval_response(service.get_request(request_id))
    except KeyError:
        raise HTTPException(404, f"Approval request not found: {request_id}")


def _decide(request_id: str, decision: ApprovalDecisionCreate, approve: bool) -> ApprovalResponse:
    service = get_environment_service()
    try:
        if approve:
            request = service.approve(request_id, decision.actor, decision.comment)
        else:
            request = service.reject(request_id, decision.actor, decision.comment)
    except KeyError:
        raise HTTPException(404, f"Approval request not found: {request_id}")
    except PermissionError as e:
        raise HTTPException(403, str(e))
    except (ApprovalError, InvalidTransitionError) as e:
        raise HTTPException(409, str(e))
    return _approval_response(request)


@router.post(
    "/approvals/{request_id}/approve",
    response_model=ApprovalResponse,
    tags=["Approvals"],
    responses={
        403: {"model": ErrorResponse, "description": "Actor is not an approver"},
        404: {"model": ErrorResponse},
        409: {"model": ErrorResponse, "description": "Request no longer pending"},
    },
)
async def approve_request(request_id: str, decision: ApprovalDecisionCreate):
    """
    Approve a pending request.

    The actor must be listed in the environment's approvers. The job
    re-enters the ready path once enough approvals are recorded.
    """
    return _decide(request_id, decision, approve=True)


@router.post(
    "/approvals/{request_id}/reject",
    response_model=ApprovalResponse,
    tags=["Approvals"],
    responses={
        403: {"model": ErrorResponse, "description": "Actor is not an approver"},
        404: {"model": ErrorResponse},
        409: {"model": ErrorResponse, "description": "Request no longer pending"},
    },
)
async def reject_request(request_id: str, decision: ApprovalDecisionCreate):
    """
    Reject a pending request. The owning job fails permanently.
    """
    return _decide(request_id, decision, approve=False)


# ============================================================================
# ENVIRONMENTS
# ============================================================================

def _environment_response(environment) -> EnvironmentResponse:
    response = EnvironmentResponse.model_validate(environment)
    response.is_gated = environment.is_gated
    return response


@router.get("/environments", tags=["Environments"])
async def list_environments():
    service = get_environment_service()
    environments = service.list_all()
    return {
        "environments": [_environment_response(e) for e in environments],
        "total": len(environments),
    }


@router.get(
    "/environments/{name}",
    tags=["Environments"],
    responses={404: {"model": ErrorResponse}},
)
async def get_environment(name: str):
    """
    Get an environment with its deploy markers (newest first).
    """
    service = get_environment_service()
    try:
        environment = service.get_or_raise(name)
    except KeyError:
        raise HTTPException(404, f"Environment not found: {name}")
    markers = _scheduler.artifact_store.markers(name) if _scheduler else []
    return {
        "environment": _environment_response(environment),
        "deploy_markers": [m.model_dump(mode="json") for m in markers],
    }
