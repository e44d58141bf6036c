"""
SMS analytics, the message log, template management and manual sends for the dashboard.
Every endpoint checks organization membership before reading anything.
"""
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Query

from serviceai.container import Services
from serviceai.dependencies import get_current_user, get_services, require_member
from serviceai.models import (
    DispatchMetadata,
    Language,
    MessageDirection,
    MessageStatus,
    Recipient,
    SendSMSRequest,
    TemplateCategory,
    TemplateDraft,
    TemplateTestRequest,
    TemplateUpdate,
    TimeRange,
)
from serviceai.utils.errors import InvalidRequestError

router = APIRouter()


def _envelope(data, time_range: TimeRange, organization_id: str):
    return {
        "success": True,
        "data": data,
        "timeRange": time_range.value,
        "organizationId": organization_id,
    }


@router.get("/statistics")
async def delivery_statistics(
    organizationId: str = Query(...),
    timeRange: TimeRange = Query(TimeRange.LAST_DAY),
    user_id: str = Depends(get_current_user),
    services: Services = Depends(get_services)
):
    await require_member(services, organizationId, user_id)
    stats = await services.tracker.get_delivery_statistics(organizationId, timeRange)
    return _envelope(stats.model_dump(), timeRange, organizationId)


@router.get("/trends")
async def delivery_trends(
    organizationId: str = Query(...),
    timeRange: TimeRange = Query(TimeRange.LAST_WEEK),
    user_id: str = Depends(get_current_user),
    services: Services = Depends(get_services)
):
    await require_member(services, organizationId, user_id)
    buckets = await services.tracker.get_delivery_trends(organizationId, timeRange)
    return _envelope([b.model_dump(mode="json") for b in buckets], timeRange, organizationId)


@router.get("/template-performance")
async def template_performance(
    organizationId: str = Query(...),
    templateKey: str = Query(..., min_length=1),
    timeRange: TimeRange = Query(TimeRange.LAST_WEEK),
    user_id: str = Depends(get_current_user),
    services: Services = Depends(get_services)
):
    await require_member(services, organizationId, user_id)
    performance = await services.tracker.get_template_performance(organizationId, templateKey, timeRange)
    return _envelope(performance.model_dump(), timeRange, organizationId)


@router.get("/language-performance")
async def language_performance(
    organizationId: str = Query(...),
    timeRange: TimeRange = Query(TimeRange.LAST_MONTH),
    user_id: str = Depends(get_current_user),
    services: Services = Depends(get_services)
):
    await require_member(services, organizationId, user_id)
    performance = await services.tracker.get_language_performance(organizationId, timeRange)
    return _envelope(performance.model_dump(), timeRange, organizationId)


# Templates

@router.get("/templates")
async def list_templates(
    organizationId: str = Query(...),
    category: Optional[TemplateCategory] = Query(None),
    language: Optional[Language] = Query(None),
    user_id: str = Depends(get_current_user),
    services: Services = Depends(get_services)
):
    await require_member(services, organizationId, user_id)
    templates = await services.templates.list_templates(organizationId, category, language)
    return {"success": True, "data": [t.model_dump(mode="json") for t in templates]}


@router.post("/templates")
async def create_template(
    draft: TemplateDraft,
    user_id: str = Depends(get_current_user),
    services: Services = Depends(get_services)
):
    await require_member(services, draft.organizationId, user_id)
    template = await services.templates.save_template(draft)
    return {"success": True, "data": template.model_dump(mode="json")}


@router.put("/templates")
async def update_template(
    update: TemplateUpdate,
    user_id: str = Depends(get_current_user),
    services: Services = Depends(get_services)
):
    await require_member(services, update.organizationId, user_id)
    template = await services.templates.update_template(update)
    return {"success": True, "data": template.model_dump(mode="json")}


@router.post("/templates/test")
async def test_template(
    request: TemplateTestRequest,
    user_id: str = Depends(get_current_user),
    services: Services = Depends(get_services)
):
    await require_member(services, request.organizationId, user_id)
    return await services.templates.test_template(
        request.organizationId, request.key, request.language, request.variables
    )


# Sending

@router.post("/send")
async def send_sms(
    request: SendSMSRequest,
    user_id: str = Depends(get_current_user),
    services: Services = Depends(get_services)
):
    """Direct text to one number, or a template to one or many recipients"""
    await require_member(services, request.organizationId, user_id)
    meta = DispatchMetadata(category=request.category, provider=request.provider, language=request.language)

    if request.templateKey:
        recipients = list(request.recipients)
        if request.to:
            recipients.append(Recipient(phone=request.to))
        if not recipients:
            raise InvalidRequestError("At least one recipient is required")
        results = await services.dispatcher.send_templated(
            request.organizationId,
            request.templateKey,
            recipients,
            variables=request.variables,
            language=request.language,
            metadata=meta.model_copy(update={"language": None}),
        )
        return {
            "success": any(r.success for r in results),
            "data": [r.model_dump(mode="json") for r in results],
        }

    if not request.to or not request.message:
        raise InvalidRequestError("Either templateKey or both to and message are required")
    result = await services.dispatcher.send_direct(request.organizationId, request.to, request.message, meta)
    return {"success": result.success, "data": result.model_dump(mode="json")}


# Message log

def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


@router.get("/communications")
async def list_communications(
    organizationId: str = Query(...),
    status: Optional[MessageStatus] = Query(None),
    direction: Optional[MessageDirection] = Query(None),
    startDate: Optional[datetime] = Query(None),
    endDate: Optional[datetime] = Query(None),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    user_id: str = Depends(get_current_user),
    services: Services = Depends(get_services)
):
    """Newest-first page of the organization's inbound and outbound texts"""
    await require_member(services, organizationId, user_id)
    rows = await services.persistence.list_message_log(
        organizationId,
        status=status,
        direction=direction,
        start=_as_utc(startDate),
        end=_as_utc(endDate),
        limit=limit + 1,
        offset=offset,
    )
    return {
        "success": True,
        "data": [r.model_dump(mode="json") for r in rows[:limit]],
        "pagination": {"limit": limit, "offset": offset, "hasMore": len(rows) > limit},
    }
