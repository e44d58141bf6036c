from typing import Any, Dict, Optional

from serviceai.container import Services
from serviceai.models import CallTransfer, Language, Organization, ToolCall
from serviceai.utils.errors import DuplicateRecordError
from serviceai.utils.logging import logger

TRANSFER_MESSAGES = {
    "emergency": {
        Language.EN: "I understand this is urgent. I'm connecting you with our emergency contact right away. Please stay on the line.",
        Language.ES: "Entiendo que es urgente. Le estoy comunicando con nuestro contacto de emergencia de inmediato. Por favor permanezca en la línea.",
    },
    "high": {
        Language.EN: "I'm connecting you with a specialist who can help you with this right away.",
        Language.ES: "Le estoy comunicando con un especialista que puede ayudarle de inmediato.",
    },
    "normal": {
        Language.EN: "Let me connect you with a team member who can better assist you. Please hold for just a moment.",
        Language.ES: "Permítame comunicarle con un miembro del equipo que pueda ayudarle mejor. Por favor espere un momento.",
    },
}


def transfer_instruction(transfer: CallTransfer) -> Dict[str, Any]:
    """The result the voice assistant reads back: stored once, replayed as-is"""
    return {
        "success": True,
        "action": "transfer",
        "transferTo": transfer.transfer_to,
        "message": transfer.message,
        "transferMode": transfer.transfer_mode,
        "metadata": {
            "transferId": transfer.id,
            "reason": transfer.reason,
            "urgency": transfer.urgency,
        },
    }


def _destination(organization: Organization, urgency: str) -> Optional[str]:
    if urgency == "emergency" and organization.emergency_contact_phone:
        return organization.emergency_contact_phone
    return organization.transfer_phone_number


async def transfer_call(services: Services, call: ToolCall) -> Dict[str, Any]:
    """
    Hand the caller over to a human.

    Parameters: reason, urgency (normal|high|emergency), summary,
    customer_name, customer_phone. Replays of the same tool call return the
    transfer that was logged the first time.
    """
    persistence = services.persistence
    if not call.organization_id:
        return {"success": False, "error": "Organization could not be resolved for this call"}

    existing = await persistence.find_call_transfer_by_tool_call(call.organization_id, call.tool_call_id)
    if existing:
        logger.info(f"↩️  Transfer for tool call {call.tool_call_id} already logged, replaying")
        return transfer_instruction(existing)

    organization = await persistence.get_organization(call.organization_id)
    if not organization:
        return {"success": False, "error": "Organization not found"}

    params = call.parameters
    urgency = str(params.get("urgency") or "normal").lower()
    transfer_to = _destination(organization, urgency)
    if not transfer_to:
        logger.error(f"❌ No transfer number configured for {organization.id}")
        return {"success": False, "error": "No transfer number configured for this organization"}

    messages = TRANSFER_MESSAGES.get(urgency, TRANSFER_MESSAGES["normal"])
    transfer = CallTransfer(
        organization_id=organization.id,
        tool_call_id=call.tool_call_id,
        vapi_call_id=call.call_id,
        reason=params.get("reason"),
        urgency=urgency,
        summary=params.get("summary"),
        customer_name=params.get("customer_name") or params.get("customerName"),
        customer_phone=params.get("customer_phone") or params.get("customerPhone"),
        transfer_to=transfer_to,
        transfer_mode=organization.transfer_mode or "warm",
        message=messages[call.language],
    )

    try:
        transfer = await persistence.insert_call_transfer(transfer)
    except DuplicateRecordError:
        # A concurrent replay won the insert
        winner = await persistence.find_call_transfer_by_tool_call(organization.id, call.tool_call_id)
        if winner:
            return transfer_instruction(winner)
        raise

    logger.info(f"📞 Transfer logged for call {call.call_id} ({urgency}) -> {transfer_to}")
    return transfer_instruction(transfer)
