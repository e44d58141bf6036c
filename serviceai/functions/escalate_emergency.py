"""
Emergency escalation tool.

The notification row is written before the alert text goes out, and the
caller is transferred whether or not the text succeeds: reaching a person
by voice comes first.
"""
from typing import Any, Dict, Optional

from serviceai.container import Services
from serviceai.models import (
    DispatchMetadata,
    EmergencyNotification,
    EmergencyStatus,
    Language,
    TemplateCategory,
    ToolCall,
)
from serviceai.utils.errors import DuplicateRecordError
from serviceai.utils.logging import logger

SPOKEN_MESSAGES = {
    Language.EN: "This is an emergency situation. I'm connecting you with our emergency contact {name} right now. Please stay on the line.",
    Language.ES: "Esta es una situación de emergencia. Le estoy comunicando con nuestro contacto de emergencia {name} ahora mismo. Por favor permanezca en la línea.",
}


def escalation_instruction(notification: EmergencyNotification, language: Language) -> Dict[str, Any]:
    name = notification.contact_name or ("el equipo" if language == Language.ES else "our team")
    return {
        "success": True,
        "action": "transfer",
        "transferTo": notification.transfer_to,
        "message": SPOKEN_MESSAGES[language].format(name=name),
        "transferMode": "warm",
        "priority": "emergency",
        "metadata": {
            "notificationId": notification.id,
            "emergencyType": notification.emergency_type,
            "severity": notification.severity,
            "smsSent": notification.status == EmergencyStatus.SENT,
        },
    }


def alert_text(notification: EmergencyNotification) -> str:
    lines = [f"EMERGENCY: {notification.emergency_type or 'urgent service'}"]
    if notification.severity:
        lines.append(f"Severity: {notification.severity}")
    if notification.customer_name or notification.customer_phone:
        lines.append(f"Caller: {notification.customer_name or 'Unknown'} {notification.customer_phone or ''}".rstrip())
    if notification.location:
        lines.append(f"Location: {notification.location}")
    if notification.description:
        lines.append(notification.description)
    lines.append("Transferring call now.")
    return "\n".join(lines)


def _param(params: Dict[str, Any], *names: str) -> Optional[str]:
    for name in names:
        if params.get(name):
            return str(params[name])
    return None


async def escalate_emergency(services: Services, call: ToolCall) -> Dict[str, Any]:
    """
    Parameters: emergency_type, severity, description, location,
    customer_name, customer_phone.
    """
    persistence = services.persistence
    if not call.organization_id:
        return {"success": False, "error": "Organization could not be resolved for this call"}

    existing = await persistence.find_emergency_notification_by_tool_call(call.organization_id, call.tool_call_id)
    if existing:
        logger.info(f"↩️  Emergency for tool call {call.tool_call_id} already escalated, replaying")
        return escalation_instruction(existing, call.language)

    organization = await persistence.get_organization(call.organization_id)
    if not organization:
        return {"success": False, "error": "Organization not found"}

    contact = await persistence.get_on_call_contact(organization.id, services.clock())
    if contact:
        contact_id, contact_name, transfer_to = contact.id, contact.name, contact.phone
    else:
        contact_id, contact_name = None, None
        transfer_to = organization.emergency_contact_phone or organization.transfer_phone_number
    if not transfer_to:
        logger.error(f"❌ No emergency contact available for {organization.id}")
        return {"success": False, "error": "No emergency contact configured for this organization"}

    params = call.parameters
    notification = EmergencyNotification(
        organization_id=organization.id,
        tool_call_id=call.tool_call_id,
        vapi_call_id=call.call_id,
        contact_id=contact_id,
        contact_name=contact_name,
        transfer_to=transfer_to,
        emergency_type=_param(params, "emergency_type", "emergencyType"),
        severity=_param(params, "severity", "urgency"),
        description=_param(params, "description", "summary"),
        location=_param(params, "location", "address"),
        customer_name=_param(params, "customer_name", "customerName"),
        customer_phone=_param(params, "customer_phone", "customerPhone"),
    )

    try:
        notification = await persistence.insert_emergency_notification(notification)
    except DuplicateRecordError:
        winner = await persistence.find_emergency_notification_by_tool_call(organization.id, call.tool_call_id)
        if winner:
            return escalation_instruction(winner, call.language)
        raise

    logger.info(f"🚨 Emergency escalation {notification.id} for call {call.call_id} -> {contact_name or transfer_to}")

    result = await services.dispatcher.send_direct(
        organization.id,
        transfer_to,
        alert_text(notification),
        DispatchMetadata(
            category=TemplateCategory.EMERGENCY,
            message_type="emergency_escalation",
            language=organization.default_language,
            extra={"emergency_notification_id": notification.id},
        ),
    )
    if result.success:
        fields = {
            "status": EmergencyStatus.SENT,
            "sent_at": services.clock(),
            "sms_message_id": result.message_id,
        }
    else:
        logger.warning(f"⚠️  Emergency SMS failed for {notification.id}, transferring anyway: {result.error}")
        fields = {"sms_error": result.error}
    notification = await persistence.update_emergency_notification(notification.id, fields) or notification

    return escalation_instruction(notification, call.language)
