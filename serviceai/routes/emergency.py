from typing import Optional

from fastapi import APIRouter, Depends, Query

from serviceai.container import Services
from serviceai.dependencies import get_current_user, get_services, require_member
from serviceai.models import EmergencyDetectRequest, EmergencyStatus, ResolveEmergencyRequest
from serviceai.utils.errors import NotFoundError
from serviceai.utils.logging import logger

router = APIRouter()


@router.post("/alerts/{notification_id}/resolve")
async def resolve_emergency(
    notification_id: str,
    request: Optional[ResolveEmergencyRequest] = None,
    organizationId: str = Query(...),
    user_id: str = Depends(get_current_user),
    services: Services = Depends(get_services)
):
    """Close an emergency notification; resolving twice keeps the first resolution"""
    await require_member(services, organizationId, user_id)
    notification = await services.persistence.get_emergency_notification(organizationId, notification_id)
    if not notification:
        raise NotFoundError("Emergency notification not found", details={"notification_id": notification_id})

    for _ in range(3):
        if notification.status == EmergencyStatus.RESOLVED:
            break
        metadata = dict(notification.metadata)
        if request and request.notes:
            metadata["resolution_notes"] = request.notes
        resolved = await services.persistence.update_emergency_notification(notification.id, {
            "status": EmergencyStatus.RESOLVED,
            "resolved_at": services.clock(),
            "resolved_by": user_id,
            "metadata": metadata,
        }, expected_status=notification.status)
        if resolved:
            notification = resolved
            logger.info(f"✅ Emergency {notification_id} resolved by {user_id}")
            break
        # Someone else moved the row; look at what they wrote
        notification = await services.persistence.get_emergency_notification(organizationId, notification_id)
        if not notification:
            raise NotFoundError("Emergency notification not found", details={"notification_id": notification_id})

    return {"success": True, "data": notification.model_dump(mode="json")}


@router.post("/detect")
async def detect_emergency(
    request: EmergencyDetectRequest,
    user_id: str = Depends(get_current_user),
    services: Services = Depends(get_services)
):
    """Score a call transcript and page the on-call staff when it is urgent"""
    await require_member(services, request.organizationId, user_id)
    result = await services.detector.detect(
        request.organizationId,
        request.callData,
        industry_code=request.industryCode,
        context=request.context,
        language_preference=request.languagePreference,
    )
    return {"success": True, "result": result.model_dump(mode="json")}


@router.get("/alerts")
async def list_emergency_alerts(
    organizationId: str = Query(...),
    status: Optional[EmergencyStatus] = Query(None),
    limit: int = Query(10, ge=1, le=100),
    user_id: str = Depends(get_current_user),
    services: Services = Depends(get_services)
):
    await require_member(services, organizationId, user_id)
    alerts = await services.persistence.list_emergency_notifications(organizationId, status=status, limit=limit)
    return {"success": True, "data": [a.model_dump(mode="json") for a in alerts]}
