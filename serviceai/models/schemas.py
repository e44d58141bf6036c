from pydantic import BaseModel, ConfigDict, Field
from typing import Optional, List, Dict, Any, Literal, Union
from datetime import datetime
from enum import Enum

from .records import (
    Language,
    TemplateCategory,
    WorkflowType,
    SMSProvider,
)


class TimeRange(str, Enum):
    LAST_HOUR = "1h"
    LAST_DAY = "24h"
    LAST_WEEK = "7d"
    LAST_MONTH = "30d"


# Template / dispatch results

class RenderResult(BaseModel):
    success: bool
    template_key: str
    requested_language: Language
    language: Language
    fallback: bool = False
    text: Optional[str] = None
    category: Optional[TemplateCategory] = None
    template_version: Optional[int] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    missing_variables: List[str] = Field(default_factory=list)


class TemplateValidation(BaseModel):
    valid: bool
    missing: List[str] = Field(default_factory=list)
    extra: List[str] = Field(default_factory=list)


class SendReceipt(BaseModel):
    provider: str
    message_id: str
    status: str = "sent"
    price: Optional[float] = None


class DispatchResult(BaseModel):
    success: bool
    provider: Optional[str] = None
    message_id: Optional[str] = None
    record_id: Optional[str] = None
    to: Optional[str] = None
    cost: Optional[float] = None
    segments: int = 0
    language: Optional[Language] = None
    fallback: bool = False
    error: Optional[str] = None
    error_code: Optional[str] = None
    transient: bool = False
    deliveries: List["DispatchResult"] = Field(default_factory=list)


DispatchResult.model_rebuild()


class Recipient(BaseModel):
    phone: str
    customer_id: Optional[str] = None
    name: Optional[str] = None
    language: Optional[Language] = None
    variables: Dict[str, Any] = Field(default_factory=dict)


class DispatchMetadata(BaseModel):
    category: TemplateCategory = TemplateCategory.DIRECT
    message_type: Optional[str] = None
    template_key: Optional[str] = None
    language: Optional[Language] = None
    requested_language: Optional[Language] = None
    language_fallback: bool = False
    customer_id: Optional[str] = None
    workflow_id: Optional[str] = None
    appointment_id: Optional[str] = None
    provider: SMSProvider = SMSProvider.AUTO
    extra: Dict[str, Any] = Field(default_factory=dict)


# Delivery analytics

class DeliveryStatistics(BaseModel):
    totalSent: int = 0
    delivered: int = 0
    failed: int = 0
    undelivered: int = 0
    pending: int = 0
    deliveryRate: float = 0.0
    failureRate: float = 0.0
    averageDeliveryTime: float = 0.0
    totalCost: float = 0.0
    fallbackCount: int = 0
    byLanguage: Dict[str, int] = Field(default_factory=dict)
    byTemplate: Dict[str, int] = Field(default_factory=dict)


class TrendBucket(BaseModel):
    bucketStart: datetime
    sent: int = 0
    delivered: int = 0
    failed: int = 0
    deliveryRate: float = 0.0


class TemplatePerformance(BaseModel):
    templateKey: str
    totalSent: int = 0
    delivered: int = 0
    failed: int = 0
    deliveryRate: float = 0.0
    averageDeliveryTime: float = 0.0
    fallbackCount: int = 0
    byLanguage: Dict[str, int] = Field(default_factory=dict)
    commonErrors: List[str] = Field(default_factory=list)


class LanguageComparison(BaseModel):
    deliveryRateDifference: float = 0.0
    averageDeliveryTimeDifference: float = 0.0


class LanguagePerformance(BaseModel):
    english: DeliveryStatistics
    spanish: DeliveryStatistics
    comparison: LanguageComparison
    fallbackCount: int = 0


class WorkflowMetrics(BaseModel):
    created: int = 0
    scheduled: int = 0
    in_progress: int = 0
    completed: int = 0
    cancelled: int = 0
    failed: int = 0
    success_rate: float = 0.0
    avg_step_latency: float = 0.0
    best_effort_failures: int = 0
    by_type: Dict[str, int] = Field(default_factory=dict)


# Management API requests

class CreateWorkflowRequest(BaseModel):
    organizationId: str
    customerId: str
    workflowType: WorkflowType
    scheduledAt: datetime
    appointmentId: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class CancelWorkflowRequest(BaseModel):
    workflowId: str


class SendSMSRequest(BaseModel):
    organizationId: str
    to: Optional[str] = None
    message: Optional[str] = None
    templateKey: Optional[str] = None
    recipients: List[Recipient] = Field(default_factory=list)
    variables: Dict[str, Any] = Field(default_factory=dict)
    language: Language = Language.EN
    category: TemplateCategory = TemplateCategory.DIRECT
    provider: SMSProvider = SMSProvider.AUTO


class TemplateDraft(BaseModel):
    organizationId: str
    key: str = Field(min_length=1)
    language: Language
    content: str = Field(min_length=1)
    variables: Optional[List[str]] = None
    category: TemplateCategory
    is_active: bool = True


class TemplateUpdate(BaseModel):
    organizationId: str
    key: str
    language: Language
    content: Optional[str] = None
    variables: Optional[List[str]] = None
    category: Optional[TemplateCategory] = None
    is_active: Optional[bool] = None


class TemplateTestRequest(BaseModel):
    organizationId: str
    key: str
    language: Language = Language.EN
    variables: Dict[str, Any] = Field(default_factory=dict)


class ResolveEmergencyRequest(BaseModel):
    notes: Optional[str] = None


# Emergency detection

class EmergencyCallData(BaseModel):
    transcript: str = Field(min_length=1)
    customerName: str = Field(min_length=1)
    customerPhone: str = Field(min_length=1)
    customerAddress: Optional[str] = None
    issueDescription: Optional[str] = None
    callId: Optional[str] = None


class EmergencyCallContext(BaseModel):
    """Signals that raise urgency beyond what the caller said"""
    temperature: Optional[float] = None  # outdoor, Fahrenheit
    waterDamage: bool = False
    safetyHazard: bool = False
    powerOutage: bool = False


class EmergencyDetectRequest(BaseModel):
    organizationId: str
    industryCode: str = "hvac"
    languagePreference: Optional[Language] = None
    callData: EmergencyCallData
    context: EmergencyCallContext = Field(default_factory=EmergencyCallContext)


class EmergencyDetection(BaseModel):
    urgencyScore: float
    urgencyLevel: str
    detectedLanguage: Language
    emergencyKeywordsFound: List[str] = Field(default_factory=list)
    requiresImmediateAttention: bool
    culturalContext: str
    industryModifiers: List[str] = Field(default_factory=list)
    estimatedArrival: str
    smsAlertsSent: bool = False
    workflowId: Optional[str] = None
    notificationId: Optional[str] = None
    timestamp: datetime


# Vapi webhook payloads (tagged by message.type)

class VapiCall(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: Optional[str] = None
    assistantId: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class VapiToolFunction(BaseModel):
    model_config = ConfigDict(extra="allow")

    name: str
    arguments: Union[Dict[str, Any], str] = Field(default_factory=dict)


class VapiToolCallItem(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str
    function: VapiToolFunction


class VapiToolCallsMessage(BaseModel):
    model_config = ConfigDict(extra="allow")

    type: Literal["tool-calls"]
    call: Optional[VapiCall] = None
    toolCallList: List[VapiToolCallItem] = Field(default_factory=list)
    toolCalls: List[VapiToolCallItem] = Field(default_factory=list)


class VapiStatusUpdateMessage(BaseModel):
    model_config = ConfigDict(extra="allow")

    type: Literal["status-update"]
    call: Optional[VapiCall] = None
    status: Optional[str] = None


class VapiEndOfCallReportMessage(BaseModel):
    model_config = ConfigDict(extra="allow")

    type: Literal["end-of-call-report"]
    call: Optional[VapiCall] = None
    endedReason: Optional[str] = None
    summary: Optional[str] = None


class VapiUnknownMessage(BaseModel):
    model_config = ConfigDict(extra="allow")

    type: str = "unknown"
    call: Optional[VapiCall] = None


VapiMessage = Union[
    VapiToolCallsMessage,
    VapiStatusUpdateMessage,
    VapiEndOfCallReportMessage,
    VapiUnknownMessage,
]


class VapiToolRequest(BaseModel):
    """Per-tool payload: {toolCallId, call, parameters}"""
    model_config = ConfigDict(extra="allow")

    toolCallId: str
    call: Optional[VapiCall] = None
    parameters: Dict[str, Any] = Field(default_factory=dict)
    message: Optional[Dict[str, Any]] = None


class ToolCall(BaseModel):
    """A tool invocation normalized from either Vapi payload shape"""
    tool_call_id: str
    name: str
    parameters: Dict[str, Any] = Field(default_factory=dict)
    call_id: Optional[str] = None
    assistant_id: Optional[str] = None
    organization_id: Optional[str] = None
    language: Language = Language.EN


class ToolCallResult(BaseModel):
    toolCallId: str
    result: Dict[str, Any]


class ToolCallResponse(BaseModel):
    results: List[ToolCallResult]


# Twilio webhook payloads (form-encoded)

class SMSStatusCallback(BaseModel):
    model_config = ConfigDict(extra="ignore")

    MessageSid: str = Field(min_length=1)
    MessageStatus: str = Field(min_length=1)
    To: Optional[str] = None
    From: Optional[str] = None
    ErrorCode: Optional[str] = None
    ErrorMessage: Optional[str] = None


class InboundSMS(BaseModel):
    model_config = ConfigDict(extra="ignore")

    MessageSid: str = Field(min_length=1)
    From: str = Field(min_length=1)
    To: str = Field(min_length=1)
    Body: str = ""
    NumMedia: Optional[str] = None


class InboundSMSResult(BaseModel):
    success: bool
    action: str
    message: Optional[str] = None
    error: Optional[str] = None


# Supabase database webhook (appointments table)

class AppointmentWebhookPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    type: Literal["INSERT", "UPDATE", "DELETE"]
    table: str
    record: Optional[Dict[str, Any]] = None
    old_record: Optional[Dict[str, Any]] = None
