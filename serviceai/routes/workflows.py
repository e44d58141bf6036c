from typing import Optional

from fastapi import APIRouter, Depends, Header, Query

from serviceai.container import Services
from serviceai.dependencies import get_current_user, get_services, require_member
from serviceai.models import CancelWorkflowRequest, CreateWorkflowRequest, TimeRange
from serviceai.utils.errors import AuthenticationError
from serviceai.utils.logging import logger
from serviceai.utils.webhook_security import verify_shared_secret

router = APIRouter()


@router.post("/create")
async def create_workflow(
    request: CreateWorkflowRequest,
    user_id: str = Depends(get_current_user),
    services: Services = Depends(get_services)
):
    await require_member(services, request.organizationId, user_id)
    workflow = await services.workflows.create_workflow(
        request.organizationId,
        request.customerId,
        request.workflowType,
        request.scheduledAt,
        metadata=request.metadata,
        appointment_id=request.appointmentId,
    )
    return {"success": True, "data": workflow.model_dump(mode="json")}


@router.post("/cancel")
async def cancel_workflow(
    request: CancelWorkflowRequest,
    user_id: str = Depends(get_current_user),
    services: Services = Depends(get_services)
):
    workflow = await services.workflows.get_workflow(request.workflowId)
    await require_member(services, workflow.organization_id, user_id)
    cancelled = await services.workflows.cancel_workflow(request.workflowId, workflow.organization_id)
    return {"success": True, "data": cancelled.model_dump(mode="json")}


@router.get("/metrics")
async def workflow_metrics(
    organizationId: str = Query(...),
    timeRange: TimeRange = Query(TimeRange.LAST_WEEK),
    user_id: str = Depends(get_current_user),
    services: Services = Depends(get_services)
):
    await require_member(services, organizationId, user_id)
    metrics = await services.workflows.get_workflow_metrics(organizationId, timeRange)
    return {
        "success": True,
        "data": metrics.model_dump(),
        "timeRange": timeRange.value,
        "organizationId": organizationId,
    }


@router.post("/execute-due")
async def execute_due_workflows(
    limit: int = Query(100, ge=1, le=1000),
    x_cron_secret: Optional[str] = Header(default=None),
    services: Services = Depends(get_services)
):
    """Entry point for the external scheduler"""
    if not verify_shared_secret(x_cron_secret, services.settings.cron_secret):
        raise AuthenticationError("Invalid cron secret")
    summary = await services.workflows.execute_due_workflows(limit=limit)
    logger.info(f"⏰ Due workflows run: {summary['processed']} processed")
    return {"success": True, "data": summary}


@router.get("/{workflow_id}")
async def get_workflow(
    workflow_id: str,
    user_id: str = Depends(get_current_user),
    services: Services = Depends(get_services)
):
    workflow = await services.workflows.get_workflow(workflow_id)
    await require_member(services, workflow.organization_id, user_id)
    return {"success": True, "data": workflow.model_dump(mode="json")}
