"""
Per-tool endpoints. Vapi can be pointed at one URL per tool; these accept the
per-tool payload ({toolCallId, call, parameters}) and answer with the same
results envelope as the unified webhook.
"""
import json

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from serviceai.container import Services
from serviceai.dependencies import get_services
from serviceai.functions import run_tool
from serviceai.models import ToolCallResponse, ToolCallResult, VapiToolRequest
from serviceai.utils.logging import logger
from serviceai.utils.webhook_security import extract_vapi_signature, verify_vapi_webhook_signature
from serviceai.webhooks.vapi import normalize_tool_call

router = APIRouter()


async def _run_single_tool(request: Request, services: Services, tool_name: str):
    raw_body = await request.body()
    signature = extract_vapi_signature(request.headers)
    if not verify_vapi_webhook_signature(raw_body, signature, services.settings.vapi_webhook_secret):
        logger.warning(f"❌ Rejected {tool_name} call with invalid signature")
        return JSONResponse(status_code=401, content={"results": [], "error": "Invalid signature"})

    try:
        payload = VapiToolRequest.model_validate(json.loads(raw_body or b"{}"))
    except (json.JSONDecodeError, ValidationError):
        logger.warning(f"⚠️  Malformed {tool_name} payload (flagged for review)")
        return JSONResponse(status_code=400, content={"results": [], "error": "toolCallId is required"})

    call = await normalize_tool_call(services, payload.toolCallId, tool_name, payload.parameters, payload.call)
    result: ToolCallResult = await run_tool(services, call)
    return ToolCallResponse(results=[result]).model_dump()


@router.post("/transfer-call")
async def transfer_call_endpoint(request: Request, services: Services = Depends(get_services)):
    return await _run_single_tool(request, services, "transfer_call")


@router.post("/escalate-emergency")
async def escalate_emergency_endpoint(request: Request, services: Services = Depends(get_services)):
    return await _run_single_tool(request, services, "escalate_emergency")


@router.post("/check-availability")
async def check_availability_endpoint(request: Request, services: Services = Depends(get_services)):
    return await _run_single_tool(request, services, "check_availability")
