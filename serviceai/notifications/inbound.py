"""
Two-way SMS: keyword handling for customer replies.
"""
import re
from datetime import datetime
from typing import Callable, Dict, Optional

from serviceai.models import (
    AppointmentStatus,
    Customer,
    DispatchMetadata,
    InboundSMS,
    InboundSMSResult,
    Language,
    MessageDirection,
    MessageRecord,
    MessageStatus,
    Organization,
    TemplateCategory,
    utcnow,
)
from serviceai.notifications.dispatcher import NotificationDispatcher
from serviceai.notifications.workflows import WorkflowEngine
from serviceai.persistence import Persistence
from serviceai.utils.errors import DuplicateRecordError
from serviceai.utils.logging import logger

STOP_WORDS = {"stop", "stopall", "unsubscribe", "end", "quit", "parar", "alto"}
START_WORDS = {"start", "unstop", "subscribe", "comenzar", "iniciar"}
CONFIRM_WORDS = {"yes", "y", "si", "sí", "confirm", "confirmar", "ok", "okay"}
CANCEL_WORDS = {"cancel", "cancelar", "no"}
RESCHEDULE_WORDS = {"reschedule", "reprogramar", "reagendar", "change", "cambiar"}
HELP_WORDS = {"help", "info", "ayuda"}
EMERGENCY_WORDS = {"emergency", "emergencia", "urgent", "urgente"}

SPANISH_HINTS = {"hola", "gracias", "sí", "si", "ayuda", "cita", "cancelar", "confirmar", "emergencia"}
ENGLISH_HINTS = {"hello", "hi", "thanks", "thank", "yes", "help", "appointment", "cancel", "confirm", "emergency"}

REPLIES: Dict[str, Dict[Language, str]] = {
    "opted_in": {
        Language.EN: "You're subscribed to messages from {business_name} again. Reply STOP to opt out.",
        Language.ES: "Está suscrito nuevamente a los mensajes de {business_name}. Responda STOP para cancelar.",
    },
    "appointment_confirmed": {
        Language.EN: "Thank you! Your appointment has been confirmed. We'll send you a reminder before your visit.",
        Language.ES: "¡Gracias! Su cita ha sido confirmada. Le enviaremos un recordatorio antes de su visita.",
    },
    "appointment_cancelled": {
        Language.EN: "Your appointment has been cancelled. To reschedule, call us at {business_phone}.",
        Language.ES: "Su cita ha sido cancelada. Para reprogramar, llámenos al {business_phone}.",
    },
    "no_appointment": {
        Language.EN: "We couldn't find an upcoming appointment for this number. Call us at {business_phone}.",
        Language.ES: "No encontramos una cita próxima para este número. Llámenos al {business_phone}.",
    },
    "rescheduling_requested": {
        Language.EN: "We understand you need to reschedule. Please call us at {business_phone} to find a new time.",
        Language.ES: "Entendemos que necesita reprogramar. Llámenos al {business_phone} para encontrar un nuevo horario.",
    },
    "help": {
        Language.EN: "{business_name}: reply CONFIRM, CANCEL or RESCHEDULE for your appointment, "
                     "EMERGENCY for urgent help, STOP to opt out. Call {business_phone}.",
        Language.ES: "{business_name}: responda CONFIRMAR, CANCELAR o REPROGRAMAR para su cita, "
                     "EMERGENCIA para ayuda urgente, STOP para cancelar mensajes. Llame al {business_phone}.",
    },
    "emergency_alerted": {
        Language.EN: "Understood! We've alerted our emergency team. Someone will contact you soon.",
        Language.ES: "¡Entendido! Hemos alertado a nuestro equipo de emergencias. Alguien se comunicará con usted pronto.",
    },
    "satisfaction_recorded": {
        Language.EN: "Thank you for your feedback! We value your opinion.",
        Language.ES: "¡Gracias por su retroalimentación! Valoramos su opinión.",
    },
    "default_response": {
        Language.EN: "Thank you for your message. For assistance, call us at {business_phone}.",
        Language.ES: "Gracias por su mensaje. Para asistencia, llámenos al {business_phone}.",
    },
}


def _words(body: str):
    return re.findall(r"[\wáéíóúñü]+", (body or "").lower())


def classify(body: str) -> str:
    """Map a reply to the action keyword it carries"""
    words = _words(body)
    if not words:
        return "default_response"
    first = words[0]
    if first in STOP_WORDS:
        return "opted_out"
    if first in START_WORDS:
        return "opted_in"
    if set(words) & EMERGENCY_WORDS:
        return "emergency_alerted"
    if len(words) == 1 and re.fullmatch(r"[1-5]", first):
        return "satisfaction_recorded"
    if first in CONFIRM_WORDS:
        return "appointment_confirmed"
    if first in CANCEL_WORDS:
        return "appointment_cancelled"
    if set(words) & RESCHEDULE_WORDS:
        return "rescheduling_requested"
    if first in HELP_WORDS:
        return "help"
    return "default_response"


def detect_language(body: str, fallback: Language) -> Language:
    words = set(_words(body))
    spanish, english = len(words & SPANISH_HINTS), len(words & ENGLISH_HINTS)
    if spanish > english:
        return Language.ES
    if english > spanish:
        return Language.EN
    return fallback


class InboundSMSHandler:
    def __init__(
        self,
        persistence: Persistence,
        dispatcher: NotificationDispatcher,
        workflows: WorkflowEngine,
        clock: Callable[[], datetime] = utcnow
    ):
        self.persistence = persistence
        self.dispatcher = dispatcher
        self.workflows = workflows
        self.clock = clock

    async def handle(self, sms: InboundSMS) -> InboundSMSResult:
        logger.info(f"📥 Inbound SMS {sms.MessageSid} to {sms.To}")

        organization = await self.persistence.find_organization_by_sms_number(sms.To)
        if not organization:
            logger.warning(f"⚠️  Inbound SMS to unknown number {sms.To} (flagged for review)")
            return InboundSMSResult(success=False, action="unknown_number", error="No organization for this number")

        if await self.persistence.get_message_by_external_id(sms.MessageSid, organization.id):
            logger.info(f"↩️  Inbound SMS {sms.MessageSid} already handled")
            return InboundSMSResult(success=True, action="duplicate")

        customer = await self.persistence.find_customer_by_phone(organization.id, sms.From)
        language = customer.language if customer else detect_language(sms.Body, organization.default_language)

        record = MessageRecord(
            organization_id=organization.id,
            customer_id=customer.id if customer else None,
            direction=MessageDirection.INBOUND,
            phone_number=sms.From,
            message_type="incoming_response",
            language=language,
            content=sms.Body,
            status=MessageStatus.DELIVERED,
            external_message_id=sms.MessageSid,
            delivered_at=self.clock(),
        )
        try:
            record = await self.persistence.insert_message(record)
        except DuplicateRecordError:
            return InboundSMSResult(success=True, action="duplicate")

        action = classify(sms.Body)
        action = await self._apply(action, organization, customer, sms, record)
        logger.info(f"✅ Inbound SMS {sms.MessageSid} handled: {action}")

        if action == "opted_out":
            return InboundSMSResult(success=True, action=action)

        reply = REPLIES[action][language].format(
            business_name=organization.name,
            business_phone=organization.business_phone or organization.sms_phone_number or "",
        )
        result = await self.dispatcher.send_direct(
            organization.id,
            sms.From,
            reply,
            DispatchMetadata(
                category=TemplateCategory.DIRECT,
                message_type="auto_reply",
                language=language,
                customer_id=customer.id if customer else None,
            ),
        )
        if not result.success:
            logger.warning(f"⚠️  Auto-reply to {sms.From} not sent: {result.error}")
        return InboundSMSResult(success=True, action=action, message=reply)

    async def _apply(
        self,
        action: str,
        organization: Organization,
        customer: Optional[Customer],
        sms: InboundSMS,
        record: MessageRecord
    ) -> str:
        if action in ("opted_out", "opted_in"):
            if customer:
                await self.persistence.update_customer(
                    organization.id, customer.id, {"sms_opt_in": action == "opted_in"}
                )
            logger.info(f"📵 SMS preference for {sms.From}: {action}")
            return action

        if action in ("appointment_confirmed", "appointment_cancelled"):
            if not customer:
                return "no_appointment"
            wanted = [AppointmentStatus.PENDING]
            if action == "appointment_cancelled":
                wanted.append(AppointmentStatus.CONFIRMED)
            appointment = await self.persistence.find_latest_appointment(organization.id, customer.id, wanted)
            if not appointment:
                return "no_appointment"

            if action == "appointment_confirmed":
                await self.persistence.update_appointment(
                    organization.id, appointment.id, {"status": AppointmentStatus.CONFIRMED}
                )
            else:
                await self.persistence.update_appointment(
                    organization.id, appointment.id, {"status": AppointmentStatus.CANCELLED}
                )
                await self.workflows.cancel_pending_for_appointment(appointment)
            return action

        if action == "emergency_alerted":
            who = customer.name if customer and customer.name else sms.From
            await self.dispatcher.send_emergency_broadcast(
                organization.id,
                f"EMERGENCY SMS from {who} ({sms.From}): {sms.Body}",
                organization.default_language,
                DispatchMetadata(
                    message_type="inbound_emergency",
                    customer_id=customer.id if customer else None,
                ),
            )
            return action

        if action == "satisfaction_recorded":
            await self.persistence.update_message(
                record.id, {"metadata": {**record.metadata, "rating": int(_words(sms.Body)[0])}}
            )
            return action

        return action
