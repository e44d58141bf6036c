"""
Twilio SMS webhooks: delivery status callbacks and inbound replies.

Status callbacks are acknowledged with 200 even when the message is unknown,
otherwise Twilio keeps retrying.
"""
from typing import Dict

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from serviceai.container import Services
from serviceai.dependencies import get_services
from serviceai.models import InboundSMS, SMSStatusCallback
from serviceai.notifications import StatusUpdateOutcome
from serviceai.utils.logging import logger
from serviceai.utils.webhook_security import verify_twilio_signature

router = APIRouter()


def _public_url(request: Request, services: Services) -> str:
    """The URL Twilio signed; behind a proxy that is the public base URL"""
    base = services.settings.public_base_url
    if base:
        url = base.rstrip("/") + request.url.path
        if request.url.query:
            url += f"?{request.url.query}"
        return url
    return str(request.url)


async def _verified_form(request: Request, services: Services):
    form = await request.form()
    params: Dict[str, str] = {key: str(value) for key, value in form.items()}
    if services.settings.twilio_validate_signatures and services.settings.twilio_auth_token:
        signature = request.headers.get("X-Twilio-Signature")
        if not verify_twilio_signature(
            services.settings.twilio_auth_token, _public_url(request, services), params, signature
        ):
            return params, False
    return params, True


@router.post("/twilio/status")
async def twilio_status_webhook(request: Request, services: Services = Depends(get_services)):
    params, valid = await _verified_form(request, services)
    if not valid:
        logger.warning("❌ Rejected Twilio status callback with invalid signature")
        return JSONResponse(status_code=403, content={"success": False, "error": "Invalid signature"})

    try:
        callback = SMSStatusCallback.model_validate(params)
    except ValidationError:
        logger.warning("⚠️  Twilio status callback missing MessageSid/MessageStatus (flagged for review)")
        return {"success": True, "outcome": StatusUpdateOutcome.IGNORED}

    logger.info(f"📥 SMS status {callback.MessageStatus} for {callback.MessageSid}")
    outcome = await services.tracker.record_status_update(
        callback.MessageSid,
        callback.MessageStatus,
        error_code=callback.ErrorCode,
        error_message=callback.ErrorMessage,
    )
    return {"success": True, "outcome": outcome}


@router.post("/twilio/incoming")
async def twilio_incoming_webhook(request: Request, services: Services = Depends(get_services)):
    params, valid = await _verified_form(request, services)
    if not valid:
        logger.warning("❌ Rejected inbound SMS with invalid signature")
        return JSONResponse(status_code=403, content={"success": False, "error": "Invalid signature"})

    try:
        sms = InboundSMS.model_validate(params)
    except ValidationError:
        logger.warning("⚠️  Inbound SMS missing MessageSid/From/To")
        return JSONResponse(
            status_code=400,
            content={"success": False, "error": "MessageSid, From and To are required"},
        )

    result = await services.inbound.handle(sms)
    return result.model_dump(exclude_none=True)
