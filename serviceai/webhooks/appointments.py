from fastapi import APIRouter, Depends, Header
from typing import Optional

from serviceai.container import Services
from serviceai.dependencies import get_services
from serviceai.models import AppointmentWebhookPayload
from serviceai.utils.errors import AuthenticationError
from serviceai.utils.logging import logger
from serviceai.utils.webhook_security import verify_shared_secret

router = APIRouter()


@router.post("/appointments")
async def appointment_webhook(
    payload: AppointmentWebhookPayload,
    x_webhook_secret: Optional[str] = Header(default=None),
    services: Services = Depends(get_services)
):
    """Supabase database webhook on the appointments table"""
    if not verify_shared_secret(x_webhook_secret, services.settings.webhook_secret):
        raise AuthenticationError("Invalid webhook secret")

    logger.info(f"📥 Appointment {payload.type} on {payload.table}")
    result = await services.workflows.handle_appointment_event(payload)
    return {"success": True, **result}
