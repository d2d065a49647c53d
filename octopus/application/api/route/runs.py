from typing import Any, Dict, List, Optional, TYPE_CHECKING
from datetime import datetime, timezone
from fastapi import APIRouter, BackgroundTasks, Depends, Header, HTTPException, Request
import structlog

from octopus.application.websocket.schema.events import CreateRunRequest, CreateRunResponse, ExecuteRunResponse
from octopus.domain.errors import RunNotFound
from octopus.domain.models.run_state import Run
from octopus.infrastructure.observability.logging import metrics

if TYPE_CHECKING:
    from octopus.application.api.api_server import AppServices

logger = structlog.get_logger(__name__)

router = APIRouter()


def get_services(request: Request):
    return request.app.state.services


def get_owner_id(x_user_id: Optional[str] = Header(None)) -> str:
    """Caller identity; token verification happens upstream"""
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Missing user")
    return x_user_id


def _owned_run(services: "AppServices", run_id: str, owner_id: str) -> Run:
    try:
        run = services.orchestrator.get_run(run_id)
    except RunNotFound:
        raise HTTPException(status_code=404, detail="not found")
    if run.owner_id != owner_id:
        raise HTTPException(status_code=404, detail="not found")
    return run


async def execute_in_background(services: "AppServices", run_id: str):
    try:
        await services.orchestrator.execute(run_id)
    except Exception as e:
        logger.error("Run execution crashed", run_id=run_id, error=str(e), exc_info=True)
    finally:
        await services.hooks.drain()


@router.get("/health")
async def health_check(services=Depends(get_services)):
    """Health check endpoint"""
    return {
        "status": "healthy",
        "tools": services.registry.known_tools(),
        "active_connections": len(services.connection_manager.get_active_connections()),
        "metrics": metrics.get_metrics_summary(),
        "timestamp": datetime.now(timezone.utc).isoformat()
    }


@router.post("/runs", response_model=CreateRunResponse)
async def create_run(
    body: CreateRunRequest,
    owner_id: str = Depends(get_owner_id),
    services=Depends(get_services)
):
    if not body.instruction.strip() or not body.tools:
        raise HTTPException(status_code=400, detail="instruction + tools required")

    file_url = services.settings.source_file_url(body.file_id) if body.file_id else None
    run_id = services.orchestrator.create_run(
        owner_id=owner_id,
        instruction=body.instruction,
        tools=body.tools,
        source_file_id=body.file_id,
        source_file_url=file_url
    )
    return CreateRunResponse(id=run_id)


@router.get("/runs/{run_id}")
async def get_run(
    run_id: str,
    owner_id: str = Depends(get_owner_id),
    services=Depends(get_services)
) -> Dict[str, Any]:
    return _owned_run(services, run_id, owner_id).model_dump(mode="json")


@router.post("/runs/{run_id}/execute", response_model=ExecuteRunResponse)
async def execute_run(
    run_id: str,
    background_tasks: BackgroundTasks,
    owner_id: str = Depends(get_owner_id),
    services=Depends(get_services)
):
    _owned_run(services, run_id, owner_id)
    background_tasks.add_task(execute_in_background, services, run_id)
    return ExecuteRunResponse(ok=True)


@router.get("/history")
async def list_history(
    limit: int = 50,
    owner_id: str = Depends(get_owner_id),
    services=Depends(get_services)
) -> List[Dict[str, Any]]:
    return await services.history.list_runs_for_owner(owner_id, limit=limit)


@router.get("/history/{run_id}")
async def get_history(
    run_id: str,
    owner_id: str = Depends(get_owner_id),
    services=Depends(get_services)
) -> Dict[str, Any]:
    doc = await services.history.get_run_full(run_id)
    if doc is None or doc.get("owner_id") != owner_id:
        raise HTTPException(status_code=404, detail="not found")
    return doc
