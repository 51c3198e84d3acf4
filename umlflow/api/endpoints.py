"""FastAPI REST endpoints for the workflow engine."""

from datetime import datetime, timezone
from typing import Dict, List, Optional, Union
from fastapi import APIRouter, HTTPException, Depends, Query, status
from pydantic import BaseModel, Field

from ..core.action_registry import ActionHandlerRegistry
from ..core.exceptions import WorkflowEngineError, create_error_response
from ..core.logging import get_logger
from ..core.middleware import get_status_code_for_error
from ..core.workflow_service import WorkflowService
from ..models.core import DispatchResult, WorkflowDefinition, WorkflowStatePayload

logger = get_logger(__name__)

router = APIRouter(prefix="/api/v1", tags=["workflow"])

# Global instances (initialized by the application lifespan)
_workflow_service: Optional[WorkflowService] = None
_action_registry: Optional[ActionHandlerRegistry] = None


def init_dependencies(
    workflow_service: WorkflowService,
    action_registry: ActionHandlerRegistry
):
    """Initialize the global dependencies."""
    global _workflow_service, _action_registry
    _workflow_service = workflow_service
    _action_registry = action_registry


def get_workflow_service() -> WorkflowService:
    """Dependency to get the workflow service."""
    if _workflow_service is None:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Workflow service not initialized"
        )
    return _workflow_service


def get_action_registry() -> ActionHandlerRegistry:
    """Dependency to get the action handler registry."""
    if _action_registry is None:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Action registry not initialized"
        )
    return _action_registry


def _raise_http_error(e: WorkflowEngineError, operation: str):
    logger.warning(f"Workflow engine error during {operation}: {e.message}")
    raise HTTPException(
        status_code=get_status_code_for_error(e),
        detail=create_error_response(e)
    )


# Request/Response models
class ImportWorkflowRequest(BaseModel):
    """Request model for importing a diagram."""
    plantuml: str = Field(..., description="Activity-diagram document text")
    workflow_id: Optional[str] = Field(None, description="Identifier to store the workflow under")
    name: Optional[str] = Field(None, description="Workflow name")


class ImportWorkflowResponse(BaseModel):
    """Response model for a diagram import."""
    workflow_id: str = Field(..., description="Identifier of the stored workflow")
    name: str = Field(..., description="Workflow name")
    node_count: int = Field(..., description="Number of compiled nodes")
    transition_count: int = Field(..., description="Number of compiled transitions")
    current_node_id: Optional[str] = Field(None, description="Node the default instance starts at")
    warnings: List[str] = Field(default_factory=list, description="Constructs skipped or repaired while parsing")


class WorkflowStateResponse(BaseModel):
    """Current position and prompt of an instance."""
    workflow_id: str = Field(..., description="Workflow identifier")
    instance_id: str = Field(..., description="Instance identifier")
    current_node_id: Optional[str] = Field(None, description="Node the instance is at")
    state: WorkflowStatePayload = Field(..., description="Prompt for the current node")


class AdvanceRequest(BaseModel):
    """Request model for advancing an instance."""
    choice: Optional[Union[int, str]] = Field(None, description="Target node ID, label or index")
    instance_id: Optional[str] = Field(None, description="Instance to advance, defaults to the workflow ID")


class AdvanceResponse(WorkflowStateResponse):
    """Response model for an advance request."""
    advanced: bool = Field(..., description="Whether the instance moved")
    last_dispatch: Optional[DispatchResult] = Field(None, description="Most recent action dispatch outcome")


class RestartRequest(BaseModel):
    """Request model for restarting an instance."""
    instance_id: Optional[str] = Field(None, description="Instance to restart, defaults to the workflow ID")


async def _state_response(service: WorkflowService, workflow_id: str, instance_id: Optional[str]) -> Dict:
    instance_id = instance_id or workflow_id
    payload = await service.get_current_state_payload(workflow_id, instance_id)
    return {
        "workflow_id": workflow_id,
        "instance_id": instance_id,
        "current_node_id": service.get_current_node_id(workflow_id, instance_id),
        "state": payload,
    }


# Endpoints

@router.post(
    "/workflows/import",
    response_model=ImportWorkflowResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Import an activity diagram",
    description="Compile an activity diagram, store it and start its default instance"
)
async def import_workflow(
    request: ImportWorkflowRequest,
    service: WorkflowService = Depends(get_workflow_service)
) -> ImportWorkflowResponse:
    """
    Import a workflow from diagram text.

    Args:
        request: Import request containing the diagram text
        service: Workflow service dependency

    Returns:
        Summary of the compiled workflow and any parser warnings

    Raises:
        HTTPException: If the diagram cannot be compiled
    """
    try:
        definition = await service.import_workflow(request.plantuml, request.workflow_id, request.name)
        return ImportWorkflowResponse(
            workflow_id=definition.id,
            name=definition.name,
            node_count=len(definition.nodes),
            transition_count=len(definition.transitions),
            current_node_id=service.get_current_node_id(definition.id),
            warnings=service.last_import_warnings
        )
    except WorkflowEngineError as e:
        _raise_http_error(e, "workflow import")


@router.get(
    "/workflows",
    response_model=List[str],
    summary="List stored workflow IDs"
)
async def list_workflows(service: WorkflowService = Depends(get_workflow_service)) -> List[str]:
    """List identifiers of all stored workflows."""
    return service.list_workflow_ids()


@router.get(
    "/workflows/{workflow_id}",
    response_model=WorkflowDefinition,
    summary="Get a compiled workflow definition"
)
async def get_workflow(
    workflow_id: str,
    service: WorkflowService = Depends(get_workflow_service)
) -> WorkflowDefinition:
    """Return the compiled graph of a stored workflow."""
    try:
        return service.get_definition(workflow_id)
    except WorkflowEngineError as e:
        _raise_http_error(e, "workflow lookup")


@router.get(
    "/workflows/{workflow_id}/state",
    response_model=WorkflowStateResponse,
    summary="Get the current prompt of an instance"
)
async def get_workflow_state(
    workflow_id: str,
    instance_id: Optional[str] = Query(None, description="Instance to inspect, defaults to the workflow ID"),
    service: WorkflowService = Depends(get_workflow_service)
) -> WorkflowStateResponse:
    """Return the text or choice payload for the instance's current node."""
    try:
        return WorkflowStateResponse(**await _state_response(service, workflow_id, instance_id))
    except WorkflowEngineError as e:
        _raise_http_error(e, "state calculation")


@router.post(
    "/workflows/{workflow_id}/advance",
    response_model=AdvanceResponse,
    summary="Advance an instance by choice"
)
async def advance_workflow(
    workflow_id: str,
    request: AdvanceRequest,
    service: WorkflowService = Depends(get_workflow_service)
) -> AdvanceResponse:
    """
    Advance an instance along the chosen transition.

    Args:
        workflow_id: Workflow to advance
        request: Choice and optional instance ID
        service: Workflow service dependency

    Returns:
        Whether the instance moved, and its new state
    """
    try:
        advanced = await service.advance_by_choice(workflow_id, request.choice, request.instance_id)
        body = await _state_response(service, workflow_id, request.instance_id)
        return AdvanceResponse(
            advanced=advanced,
            last_dispatch=service.get_last_dispatch(body["instance_id"]),
            **body
        )
    except WorkflowEngineError as e:
        _raise_http_error(e, "workflow advance")


@router.post(
    "/workflows/{workflow_id}/restart",
    response_model=WorkflowStateResponse,
    summary="Restart an instance"
)
async def restart_workflow(
    workflow_id: str,
    request: Optional[RestartRequest] = None,
    service: WorkflowService = Depends(get_workflow_service)
) -> WorkflowStateResponse:
    """Reset an instance to the start node of its workflow."""
    instance_id = request.instance_id if request else None
    try:
        await service.restart_instance(workflow_id, instance_id)
        return WorkflowStateResponse(**await _state_response(service, workflow_id, instance_id))
    except WorkflowEngineError as e:
        _raise_http_error(e, "workflow restart")


@router.delete(
    "/workflows/{workflow_id}/instances/{instance_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Remove an instance"
)
async def remove_instance(
    workflow_id: str,
    instance_id: str,
    service: WorkflowService = Depends(get_workflow_service)
) -> None:
    """Forget an instance's position, variables and last dispatch."""
    try:
        removed = await service.remove_instance(workflow_id, instance_id)
    except WorkflowEngineError as e:
        _raise_http_error(e, "instance removal")
    if not removed:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Instance not found: {instance_id}"
        )


@router.get(
    "/actions",
    response_model=Dict[str, str],
    summary="List registered action handlers"
)
async def list_actions(registry: ActionHandlerRegistry = Depends(get_action_registry)) -> Dict[str, str]:
    """Map registered action names to their descriptions."""
    return registry.list_handlers()


@router.get("/status", summary="Engine status")
async def engine_status(
    service: WorkflowService = Depends(get_workflow_service),
    registry: ActionHandlerRegistry = Depends(get_action_registry)
) -> Dict:
    """Counts of stored workflows, live instances and registered actions."""
    return {
        "workflows": len(service.list_workflow_ids()),
        "instances": len(service.instance_manager.list_instances()),
        "actions": len(registry.list_handlers()),
        "timestamp": datetime.now(timezone.utc).isoformat()
    }
