"""
Orchestrator API Controller

Thin wrapper over Orchestrator.dispatch. Caller identity comes from the
X-User-Id header (authentication happens upstream).
"""
import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request

from exceptions import BaseLifecycleException, EXCEPTION_TO_STATUS
from orchestrator import Orchestrator
from schemas import OrchestratorRequest, RunJobsRequest


router = APIRouter()


def map_exception_to_http(exc: BaseLifecycleException) -> HTTPException:
    """
    Map domain exception to HTTP response.

    Args:
        exc: Domain exception from service layer

    Returns:
        HTTPException with proper status code and structured error payload
    """
    exception_class = type(exc)
    status_code = EXCEPTION_TO_STATUS.get(exception_class, 500)

    return HTTPException(status_code=status_code, detail=exc.to_dict())


def get_orchestrator(request: Request) -> Orchestrator:
    return request.app.state.orchestrator


def get_user_id(x_user_id: Optional[str] = Header(default=None)) -> str:
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(
            status_code=401,
            detail={"error": {"code": "Unauthorized", "message": "X-User-Id header required", "details": {}}},
        )
    return x_user_id.strip()


@router.get("/health", tags=["System"])
async def health():
    return {"status": "ok"}


@router.post(
    "/orchestrator",
    status_code=200,
    responses={
        400: {"model": dict, "description": "Invalid request, stage or promotion path"},
        404: {"model": dict, "description": "Entity, project or approval not found"},
        409: {"model": dict, "description": "Review pending, approvals incomplete or wrong status"},
        500: {"model": dict, "description": "Persistence failure or invariant violation"},
    },
    tags=["Orchestrator"],
    summary="Run a named orchestrator action",
)
async def run_action(
    payload: OrchestratorRequest,
    user_id: str = Depends(get_user_id),
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    try:
        return await orchestrator.dispatch(payload.action, payload.params, user_id)
    except BaseLifecycleException as e:
        raise map_exception_to_http(e)


@router.post("/scheduler/run_jobs", tags=["Scheduler"], summary="Run scheduler jobs for one project")
async def run_jobs(
    payload: RunJobsRequest,
    user_id: str = Depends(get_user_id),
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    try:
        return await orchestrator.dispatch(
            "run_worker_jobs", payload.model_dump(mode="json", exclude_none=True), user_id
        )
    except BaseLifecycleException as e:
        raise map_exception_to_http(e)


@router.get("/entities/{entity_id}", tags=["Orchestrator"], summary="Read one orchestrated entity")
async def get_entity(
    entity_id: uuid.UUID,
    user_id: str = Depends(get_user_id),
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    try:
        return {"entity": await orchestrator.get_entity(entity_id, user_id)}
    except BaseLifecycleException as e:
        raise map_exception_to_http(e)
