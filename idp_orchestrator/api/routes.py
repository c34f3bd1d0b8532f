"""FastAPI routes for the provisioning service."""
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, Query, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from ..orchestration.errors import (
    AlreadyExists,
    ConflictingWorkflow,
    EngineUnavailable,
    InvalidState,
    NotFound,
    ProvisioningError,
    UnknownStep,
    ValidationError,
)
from ..orchestration.main import WorkflowOrchestrator
from ..orchestration.models import Subject, SubjectKind, WorkflowStatus
from ..orchestration.strategy import select_strategy
from ..services import catalog
from .schemas import (
    AbortRequestSchema,
    ClusterRequestSchema,
    NamespaceRequestSchema,
    RetryRequestSchema,
    StrategySchema,
)

router = APIRouter()

ERROR_STATUS = (
    (ValidationError, status.HTTP_400_BAD_REQUEST),
    (NotFound, status.HTTP_404_NOT_FOUND),
    (UnknownStep, status.HTTP_404_NOT_FOUND),
    (InvalidState, status.HTTP_409_CONFLICT),
    (ConflictingWorkflow, status.HTTP_409_CONFLICT),
    (AlreadyExists, status.HTTP_409_CONFLICT),
    (EngineUnavailable, status.HTTP_503_SERVICE_UNAVAILABLE),
)


def get_orchestrator(request: Request) -> WorkflowOrchestrator:
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        raise RuntimeError("WorkflowOrchestrator dependency not configured")
    return orchestrator


def _status_for(exc: ProvisioningError) -> int:
    for error_type, code in ERROR_STATUS:
        if isinstance(exc, error_type):
            return code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(ProvisioningError)
    async def provisioning_error_handler(request: Request, exc: ProvisioningError) -> JSONResponse:
        return JSONResponse(status_code=_status_for(exc), content={"error": exc.to_dict()})

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        errors = [
            {"field": ".".join(str(part) for part in error["loc"][1:]), "message": error["msg"]}
            for error in exc.errors()
        ]
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"error": {"code": "ValidationError", "message": "invalid request", "details": errors}},
        )


@router.post("/namespaces", status_code=status.HTTP_201_CREATED)
def create_namespace(
    body: NamespaceRequestSchema,
    orchestrator: WorkflowOrchestrator = Depends(get_orchestrator),
) -> dict:
    record = orchestrator.provision_namespace(body.to_request())
    return {"workflow": record.to_dict(include_manifests=True)}


@router.post("/clusters", status_code=status.HTTP_201_CREATED)
def create_cluster(
    body: ClusterRequestSchema,
    orchestrator: WorkflowOrchestrator = Depends(get_orchestrator),
) -> dict:
    record = orchestrator.provision_cluster(body.to_request())
    return {"workflow": record.to_dict(include_manifests=True)}


@router.post("/namespaces/preview")
def preview_namespace(
    body: NamespaceRequestSchema,
    orchestrator: WorkflowOrchestrator = Depends(get_orchestrator),
) -> dict:
    return {"preview": orchestrator.preview(body.to_request()).to_dict()}


@router.post("/clusters/preview")
def preview_cluster(
    body: ClusterRequestSchema,
    orchestrator: WorkflowOrchestrator = Depends(get_orchestrator),
) -> dict:
    return {"preview": orchestrator.preview(body.to_request()).to_dict()}


@router.get("/namespaces/{name}/manifests")
def namespace_manifests(
    name: str,
    orchestrator: WorkflowOrchestrator = Depends(get_orchestrator),
) -> dict:
    record = orchestrator.provisioned(Subject(SubjectKind.NAMESPACE, name))
    return {"workflowId": record.id, "manifests": record.manifests}


@router.get("/clusters/{name}/manifests")
def cluster_manifests(
    name: str,
    orchestrator: WorkflowOrchestrator = Depends(get_orchestrator),
) -> dict:
    record = orchestrator.provisioned(Subject(SubjectKind.CLUSTER, name.lower()))
    return {
        "workflowId": record.id,
        "strategy": getattr(record.strategy, "value", None),
        "manifests": record.manifests,
    }


@router.delete("/namespaces/{name}", status_code=status.HTTP_202_ACCEPTED)
def delete_namespace(
    name: str,
    dry_run: bool = Query(False, alias="dryRun"),
    orchestrator: WorkflowOrchestrator = Depends(get_orchestrator),
) -> dict:
    record = orchestrator.delete_namespace(name, dry_run=dry_run)
    return {"workflow": record.to_dict(include_manifests=False)}


@router.delete("/clusters/{name}", status_code=status.HTTP_202_ACCEPTED)
def delete_cluster(
    name: str,
    dry_run: bool = Query(True, alias="dryRun"),
    orchestrator: WorkflowOrchestrator = Depends(get_orchestrator),
) -> dict:
    record = orchestrator.delete_cluster(name, dry_run=dry_run)
    return {"workflow": record.to_dict(include_manifests=False)}


@router.get("/workflows")
def list_workflows(
    status_filter: Optional[WorkflowStatus] = Query(None, alias="status"),
    limit: Optional[int] = Query(None, ge=1),
    orchestrator: WorkflowOrchestrator = Depends(get_orchestrator),
) -> dict:
    records = orchestrator.list_workflows(status_filter, limit)
    return {"workflows": [record.to_dict(include_manifests=False) for record in records]}


@router.get("/workflows/{workflow_id}")
def workflow_status(
    workflow_id: str,
    orchestrator: WorkflowOrchestrator = Depends(get_orchestrator),
) -> dict:
    return {"workflow": orchestrator.get_status(workflow_id).to_dict()}


@router.get("/workflows/{workflow_id}/steps")
def workflow_steps(
    workflow_id: str,
    orchestrator: WorkflowOrchestrator = Depends(get_orchestrator),
) -> dict:
    return {"steps": [step.to_dict() for step in orchestrator.get_steps(workflow_id)]}


@router.get("/workflows/{workflow_id}/logs")
def workflow_logs(
    workflow_id: str,
    orchestrator: WorkflowOrchestrator = Depends(get_orchestrator),
) -> dict:
    return {"logs": [entry.to_dict() for entry in orchestrator.get_logs(workflow_id)]}


@router.post("/workflows/{workflow_id}/abort")
def abort_workflow(
    workflow_id: str,
    body: Optional[AbortRequestSchema] = None,
    orchestrator: WorkflowOrchestrator = Depends(get_orchestrator),
) -> dict:
    record = orchestrator.abort(workflow_id, body.reason if body else "")
    return {"workflow": record.to_dict(include_manifests=False)}


@router.post("/workflows/{workflow_id}/retry", status_code=status.HTTP_201_CREATED)
def retry_workflow(
    workflow_id: str,
    body: Optional[RetryRequestSchema] = None,
    orchestrator: WorkflowOrchestrator = Depends(get_orchestrator),
) -> dict:
    record = orchestrator.retry(workflow_id, body.from_step if body else None)
    return {"workflow": record.to_dict(include_manifests=False)}


@router.get("/catalog/node-pools")
def node_pool_types() -> dict:
    return {"nodePoolTypes": [pool.to_dict() for pool in catalog.list_pool_types()]}


@router.get("/catalog/node-pools/recommendations")
def node_pool_recommendations() -> dict:
    return {"recommendations": [item.to_dict() for item in catalog.get_recommendations()]}


@router.get("/catalog/node-pools/{pool_type}")
def node_pool_type(pool_type: str) -> dict:
    return {"nodePoolType": catalog.describe(pool_type).to_dict()}


@router.get("/catalog/locations")
def locations() -> dict:
    return {"locations": [location.to_dict() for location in catalog.get_available_locations()]}


@router.get("/catalog/vm-sizes")
def vm_sizes(location: str = Query("eastus")) -> dict:
    return {"location": location, "vmSizes": [size.to_dict() for size in catalog.list_vm_sizes(location)]}


@router.get("/strategy")
def current_strategy(orchestrator: WorkflowOrchestrator = Depends(get_orchestrator)) -> dict:
    enabled = orchestrator.strategy_toggle.enabled
    return {"useDirect": enabled, "strategy": select_strategy(enabled).value}


@router.put("/strategy")
def update_strategy(
    body: StrategySchema,
    orchestrator: WorkflowOrchestrator = Depends(get_orchestrator),
) -> dict:
    orchestrator.strategy_toggle.set(body.use_direct)
    return {"useDirect": body.use_direct, "strategy": select_strategy(body.use_direct).value}


__all__ = ["router", "register_error_handlers", "get_orchestrator"]
