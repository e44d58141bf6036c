"""
Vapi server webhook.

The signature is checked on the raw body first. Whatever happens after that,
tool calls are answered in Vapi's {"results": [{toolCallId, result}]} shape;
an ill-shaped reply breaks the live phone call.
"""
import json
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from serviceai.container import Services
from serviceai.dependencies import get_services
from serviceai.functions import run_tool
from serviceai.models import (
    Language,
    ToolCall,
    ToolCallResponse,
    VapiCall,
    VapiEndOfCallReportMessage,
    VapiStatusUpdateMessage,
    VapiToolCallsMessage,
    VapiUnknownMessage,
)
from serviceai.utils.logging import logger
from serviceai.utils.webhook_security import extract_vapi_signature, verify_vapi_webhook_signature

router = APIRouter()

MESSAGE_TYPES = {
    "tool-calls": VapiToolCallsMessage,
    "status-update": VapiStatusUpdateMessage,
    "end-of-call-report": VapiEndOfCallReportMessage,
}


def parse_message(body: Dict[str, Any]):
    """Pick the model for message.type; anything unrecognized stays an unknown message"""
    message = body.get("message") if isinstance(body.get("message"), dict) else body
    model = MESSAGE_TYPES.get(message.get("type"), VapiUnknownMessage)
    try:
        return model.model_validate(message)
    except ValidationError as e:
        logger.warning(f"⚠️  Malformed Vapi {message.get('type')} message (flagged for review): {e.error_count()} error(s)")
        return VapiUnknownMessage.model_validate(message)


def parse_arguments(arguments: Any) -> Dict[str, Any]:
    if isinstance(arguments, dict):
        return arguments
    if isinstance(arguments, str) and arguments.strip():
        try:
            parsed = json.loads(arguments)
        except json.JSONDecodeError:
            logger.warning("⚠️  Tool arguments are not valid JSON, ignoring them")
            return {}
        return parsed if isinstance(parsed, dict) else {}
    return {}


def _language(value: Any) -> Optional[Language]:
    if not value:
        return None
    code = str(value).strip().lower()[:2]
    try:
        return Language(code)
    except ValueError:
        return None


async def normalize_tool_call(
    services: Services,
    tool_call_id: str,
    name: str,
    parameters: Dict[str, Any],
    call: Optional[VapiCall]
) -> ToolCall:
    """Attach organization and language context to a tool invocation"""
    call = call or VapiCall()
    organization_id = call.metadata.get("organizationId") or call.metadata.get("organization_id")
    organization = None
    if organization_id:
        organization = await services.persistence.get_organization(organization_id)
    elif call.assistantId:
        organization = await services.persistence.find_organization_by_assistant(call.assistantId)
        organization_id = organization.id if organization else None

    language = (
        _language(parameters.get("language"))
        or _language(call.metadata.get("language"))
        or (organization.default_language if organization else None)
        or Language(services.settings.default_language)
    )
    return ToolCall(
        tool_call_id=tool_call_id,
        name=name,
        parameters=parameters,
        call_id=call.id,
        assistant_id=call.assistantId,
        organization_id=organization_id,
        language=language,
    )


async def handle_tool_calls(services: Services, message: VapiToolCallsMessage) -> ToolCallResponse:
    items = message.toolCallList or message.toolCalls
    results = []
    for item in items:
        call = await normalize_tool_call(
            services, item.id, item.function.name, parse_arguments(item.function.arguments), message.call
        )
        logger.info(f"🔧 Tool call {call.name} ({call.tool_call_id}) for org {call.organization_id}")
        results.append(await run_tool(services, call))
    return ToolCallResponse(results=results)


@router.post("/vapi")
async def vapi_webhook(request: Request, services: Services = Depends(get_services)):
    raw_body = await request.body()
    signature = extract_vapi_signature(request.headers)
    if not verify_vapi_webhook_signature(raw_body, signature, services.settings.vapi_webhook_secret):
        logger.warning("❌ Rejected Vapi webhook with invalid signature")
        return JSONResponse(status_code=401, content={"results": [], "error": "Invalid signature"})

    try:
        body = json.loads(raw_body or b"{}")
    except json.JSONDecodeError:
        logger.warning("⚠️  Vapi webhook body is not JSON (flagged for review)")
        return {"results": [], "success": False, "error": "Invalid JSON"}
    if not isinstance(body, dict):
        logger.warning("⚠️  Vapi webhook body is not an object (flagged for review)")
        return {"results": [], "success": False, "error": "Invalid payload"}

    message = parse_message(body)
    call_id = message.call.id if message.call else None

    if isinstance(message, VapiToolCallsMessage):
        response = await handle_tool_calls(services, message)
        return response.model_dump()

    if isinstance(message, VapiStatusUpdateMessage):
        logger.info(f"📞 Call {call_id} status: {message.status}")
        return {"success": True}

    if isinstance(message, VapiEndOfCallReportMessage):
        logger.info(f"📞 Call {call_id} ended: {message.endedReason}")
        return {"success": True}

    logger.warning(f"⚠️  Unhandled Vapi message type '{message.type}' (flagged for review)")
    return {"success": True, "handled": False}
