"""
Emergency detection for call transcripts in English and Spanish.

A transcript is scored from weighted emergency keywords, then nudged by the
caller's language and by trade-specific signals (cold snaps for heating,
freezing pipes for plumbing, hazards for electrical). Anything above the
threshold opens an emergency_alert workflow, which pages the on-call staff
and confirms to the caller in their language.
"""
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional

from serviceai.models import (
    Customer,
    EmergencyCallContext,
    EmergencyCallData,
    EmergencyDetection,
    EmergencyNotification,
    EmergencyStatus,
    Language,
    StepStatus,
    WorkflowType,
    utcnow,
)
from serviceai.notifications.inbound import detect_language
from serviceai.notifications.workflows import WorkflowEngine
from serviceai.persistence import Persistence
from serviceai.utils.business_hours import to_local
from serviceai.utils.errors import ContentError, DuplicateRecordError, NotFoundError
from serviceai.utils.logging import logger
from serviceai.utils.validation import validate_phone_number

IMMEDIATE_ATTENTION_THRESHOLD = 0.7
BASE_SCORE_CAP = 0.8
SPANISH_MODIFIER = 0.05

COMMON_KEYWORDS: Dict[Language, List[str]] = {
    Language.EN: [
        "emergency", "urgent", "immediately", "right now", "asap", "dangerous",
        "serious problem", "broken", "not working", "leak", "flooding", "damage",
    ],
    Language.ES: [
        "emergencia", "urgente", "inmediatamente", "ahora mismo", "peligroso",
        "problema grave", "roto", "no funciona", "fuga", "inundación", "daño", "descompuesto",
    ],
}

INDUSTRY_KEYWORDS: Dict[str, Dict[Language, List[str]]] = {
    "hvac": {
        Language.EN: ["no heat", "no air", "gas leak", "carbon monoxide", "furnace", "freezing"],
        Language.ES: ["sin calefacción", "sin aire", "fuga de gas", "monóxido de carbono", "calentador", "congelando"],
    },
    "plumbing": {
        Language.EN: ["no water", "water leak", "burst pipe", "sewage", "overflow"],
        Language.ES: ["sin agua", "fuga de agua", "tubería rota", "aguas negras", "desbordamiento"],
    },
    "electrical": {
        Language.EN: ["no power", "sparking", "electrical fire", "burning smell", "shock"],
        Language.ES: ["sin luz", "chispas", "incendio eléctrico", "olor a quemado", "descarga"],
    },
}

HIGH_URGENCY = {
    "emergency", "urgent", "immediately", "right now", "asap",
    "emergencia", "urgente", "inmediatamente", "ahora mismo",
    "no heat", "no air", "no water", "no power",
    "sin calefacción", "sin aire", "sin agua", "sin luz",
    "gas leak", "water leak", "electrical fire", "sparking", "carbon monoxide", "burst pipe",
    "fuga de gas", "fuga de agua", "incendio eléctrico", "chispas", "monóxido de carbono", "tubería rota",
}
MEDIUM_URGENCY = {
    "broken", "not working", "leak", "flooding", "overflow", "damage", "dangerous", "serious problem",
    "roto", "no funciona", "fuga", "inundación", "desbordamiento", "daño", "peligroso", "problema grave",
    "descompuesto",
}

NO_ADDRESS = {
    Language.EN: "Address not provided",
    Language.ES: "Dirección no proporcionada",
}


def keyword_weight(keyword: str) -> float:
    if keyword in HIGH_URGENCY:
        return 3.0
    if keyword in MEDIUM_URGENCY:
        return 2.0
    return 1.5


def emergency_keywords(industry_code: str, language: Language) -> List[str]:
    return COMMON_KEYWORDS[language] + INDUSTRY_KEYWORDS.get(industry_code, {}).get(language, [])


def _occurrences(text: str, keyword: str) -> int:
    return len(re.findall(rf"\b{re.escape(keyword)}\b", text))


def detect_transcript_language(transcript: str, fallback: Language) -> Language:
    """Emergency vocabulary decides first; greetings and courtesy words break ties"""
    text = transcript.lower()
    hits = {
        language: sum(1 for kw in set(COMMON_KEYWORDS[language]) if _occurrences(text, kw))
        + sum(1 for table in INDUSTRY_KEYWORDS.values() for kw in table[language] if _occurrences(text, kw))
        for language in (Language.EN, Language.ES)
    }
    if hits[Language.ES] != hits[Language.EN]:
        return Language.ES if hits[Language.ES] > hits[Language.EN] else Language.EN
    return detect_language(transcript, fallback)


def cultural_context(language: Language, transcript: str) -> str:
    text = transcript.lower()
    if language == Language.ES:
        if any(word in text for word in ("usted", "señor", "señora")):
            return "formal_respectful"
        if any(word in text for word in ("tú", "contigo")):
            return "informal_friendly"
        return "neutral_polite"
    if "please" in text or "thank you" in text:
        return "polite_professional"
    if "urgent" in text or "emergency" in text:
        return "direct_urgent"
    return "neutral_professional"


def urgency_level(score: float) -> str:
    if score >= 0.8:
        return "emergency"
    if score >= 0.6:
        return "high"
    if score >= 0.4:
        return "medium"
    return "low"


def estimated_arrival(score: float) -> str:
    if score > 0.9:
        return "15-30 minutes"
    if score > 0.8:
        return "30-45 minutes"
    if score > 0.7:
        return "45-60 minutes"
    return "1-2 hours"


@dataclass
class UrgencyAssessment:
    score: float
    keywords: List[str] = field(default_factory=list)
    modifiers: List[str] = field(default_factory=list)

    @property
    def requires_immediate_attention(self) -> bool:
        return self.score > IMMEDIATE_ATTENTION_THRESHOLD


def industry_modifiers(industry_code: str, context: EmergencyCallContext, local_hour: int):
    """(score delta, labels) for trade-specific urgency signals"""
    delta, labels = 0.0, []
    temperature = context.temperature
    if industry_code == "hvac":
        if temperature is not None and temperature < 32:
            delta += 0.2
            labels.append("winter_heating_emergency")
        elif temperature is not None and temperature > 90:
            delta += 0.15
            labels.append("summer_cooling_emergency")
        if local_hour >= 22 or local_hour <= 6:
            delta += 0.1
            labels.append("after_hours")
    elif industry_code == "plumbing":
        if temperature is not None and temperature < 32:
            delta += 0.25
            labels.append("freezing_pipe_risk")
        if context.waterDamage:
            delta += 0.2
            labels.append("water_damage")
    elif industry_code == "electrical":
        labels.append("safety_hazard_priority")
        if context.safetyHazard:
            delta += 0.3
        if context.powerOutage:
            delta += 0.2
            labels.append("power_outage")
    return delta, labels


def score_transcript(
    transcript: str,
    language: Language,
    industry_code: str,
    context: EmergencyCallContext,
    local_hour: int
) -> UrgencyAssessment:
    text = transcript.lower()
    found: List[str] = []
    base = 0.0
    for keyword in emergency_keywords(industry_code, language):
        count = _occurrences(text, keyword)
        if count:
            found.append(keyword)
            base += count * keyword_weight(keyword) * 0.1
    score = min(base, BASE_SCORE_CAP)

    if language == Language.ES:
        score = min(score + SPANISH_MODIFIER, 1.0)

    delta, labels = industry_modifiers(industry_code, context, local_hour)
    score = min(score + delta, 1.0)
    return UrgencyAssessment(score=round(score, 2), keywords=found, modifiers=labels)


class EmergencyDetector:
    def __init__(
        self,
        persistence: Persistence,
        workflows: WorkflowEngine,
        clock: Callable[[], datetime] = utcnow
    ):
        self.persistence = persistence
        self.workflows = workflows
        self.clock = clock

    async def detect(
        self,
        organization_id: str,
        call: EmergencyCallData,
        industry_code: str = "hvac",
        context: Optional[EmergencyCallContext] = None,
        language_preference: Optional[Language] = None
    ) -> EmergencyDetection:
        organization = await self.persistence.get_organization(organization_id)
        if not organization:
            raise NotFoundError("Organization not found", details={"organization_id": organization_id})

        context = context or EmergencyCallContext()
        industry_code = (industry_code or "").strip().lower()
        now = self.clock()
        language = detect_transcript_language(
            call.transcript, language_preference or organization.default_language
        )
        local_hour = to_local(now, organization.timezone).hour
        assessment = score_transcript(call.transcript, language, industry_code, context, local_hour)

        result = EmergencyDetection(
            urgencyScore=assessment.score,
            urgencyLevel=urgency_level(assessment.score),
            detectedLanguage=language,
            emergencyKeywordsFound=assessment.keywords,
            requiresImmediateAttention=assessment.requires_immediate_attention,
            culturalContext=cultural_context(language, call.transcript),
            industryModifiers=assessment.modifiers,
            estimatedArrival=estimated_arrival(assessment.score),
            timestamp=now,
        )
        logger.info(
            f"🔎 Emergency analysis for {organization_id}: {assessment.score:.2f} "
            f"({result.urgencyLevel}, {language.value})"
        )
        if not result.requiresImmediateAttention:
            return result

        logger.info(f"🚨 Emergency detected for {organization_id}, alerting staff")
        customer = await self._customer(organization_id, call, language)
        issue = call.issueDescription or call.transcript[:160]
        notification = await self.persistence.insert_emergency_notification(EmergencyNotification(
            organization_id=organization_id,
            vapi_call_id=call.callId,
            emergency_type="detected",
            severity=result.urgencyLevel,
            description=issue,
            location=call.customerAddress,
            customer_name=call.customerName,
            customer_phone=customer.phone,
            metadata={
                "urgency_score": assessment.score,
                "keywords": assessment.keywords,
                "detected_language": language.value,
                "industry_code": industry_code,
            },
        ))

        workflow = await self.workflows.create_workflow(
            organization_id,
            customer.id,
            WorkflowType.EMERGENCY_ALERT,
            now,
            metadata={
                "language": language.value,
                "emergency_notification_id": notification.id,
                "variables": {
                    "customer_name": call.customerName,
                    "issue_description": issue,
                    "address": call.customerAddress or NO_ADDRESS[organization.default_language],
                    "urgency_level": result.urgencyLevel,
                },
            },
        )

        broadcast = workflow.steps[0] if workflow.steps else None
        sent = broadcast is not None and broadcast.status == StepStatus.COMPLETED
        fields = {"metadata": {**notification.metadata, "workflow_id": workflow.id}}
        if sent:
            fields.update(status=EmergencyStatus.SENT, sent_at=self.clock(), sms_message_id=broadcast.message_id)
        else:
            fields["sms_error"] = workflow.failure_reason or (broadcast.error if broadcast else None)
        await self.persistence.update_emergency_notification(
            notification.id, fields, expected_status=EmergencyStatus.PENDING
        )

        result.smsAlertsSent = sent
        result.workflowId = workflow.id
        result.notificationId = notification.id
        return result

    async def _customer(self, organization_id: str, call: EmergencyCallData, language: Language) -> Customer:
        existing = await self.persistence.find_customer_by_phone(organization_id, call.customerPhone)
        if existing:
            return existing
        try:
            phone = validate_phone_number(call.customerPhone)
        except ContentError:
            phone = call.customerPhone
        try:
            return await self.persistence.insert_customer(Customer(
                organization_id=organization_id,
                phone=phone,
                name=call.customerName,
                language=language,
            ))
        except DuplicateRecordError:
            # Created by a concurrent call from the same number
            return await self.persistence.find_customer_by_phone(organization_id, call.customerPhone)
