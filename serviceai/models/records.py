"""
Persisted entities. Every row is partitioned by organization_id.
"""
from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any
from datetime import datetime, timezone
from enum import Enum
import uuid


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class Language(str, Enum):
    EN = "en"
    ES = "es"


class WorkflowType(str, Enum):
    APPOINTMENT_CONFIRMATION = "appointment_confirmation"
    APPOINTMENT_REMINDER = "appointment_reminder"
    EMERGENCY_ALERT = "emergency_alert"
    FOLLOW_UP = "follow_up"
    SURVEY = "survey"


class WorkflowStatus(str, Enum):
    SCHEDULED = "scheduled"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


TERMINAL_WORKFLOW_STATUSES = {
    WorkflowStatus.COMPLETED,
    WorkflowStatus.CANCELLED,
    WorkflowStatus.FAILED,
}


class StepType(str, Enum):
    SEND_TEMPLATE = "send_template"
    EMERGENCY_BROADCAST = "emergency_broadcast"


class StepStatus(str, Enum):
    PENDING = "pending"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class MessageDirection(str, Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"


class MessageStatus(str, Enum):
    QUEUED = "queued"
    SENT = "sent"
    DELIVERED = "delivered"
    FAILED = "failed"
    UNDELIVERED = "undelivered"


TERMINAL_MESSAGE_STATUSES = {
    MessageStatus.DELIVERED,
    MessageStatus.FAILED,
    MessageStatus.UNDELIVERED,
}


def message_status_rank(status: MessageStatus) -> int:
    if status == MessageStatus.QUEUED:
        return 0
    if status == MessageStatus.SENT:
        return 1
    return 2


class TemplateCategory(str, Enum):
    APPOINTMENT = "appointment"
    CONFIRMATION = "confirmation"
    REMINDER = "reminder"
    EMERGENCY = "emergency"
    FOLLOW_UP = "follow_up"
    SURVEY = "survey"
    DIRECT = "direct"


class SMSProvider(str, Enum):
    TWILIO = "twilio"
    VONAGE = "vonage"
    AUTO = "auto"


class EmergencyStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    RESOLVED = "resolved"


class AppointmentStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    COMPLETED = "completed"
    NO_SHOW = "no_show"


class Organization(BaseModel):
    id: str
    name: str
    default_language: Language = Language.EN
    timezone: Optional[str] = None
    business_phone: Optional[str] = None
    sms_phone_number: Optional[str] = None
    sms_provider: SMSProvider = SMSProvider.AUTO
    emergency_contact_phone: Optional[str] = None
    transfer_phone_number: Optional[str] = None
    transfer_mode: str = "warm"
    is_active: bool = True


class Customer(BaseModel):
    id: str = Field(default_factory=new_id)
    organization_id: str
    phone: str
    name: Optional[str] = None
    email: Optional[str] = None
    language: Language = Language.EN
    sms_opt_in: bool = True


class EmergencyContact(BaseModel):
    id: str = Field(default_factory=new_id)
    organization_id: str
    name: str
    phone: str
    is_active: bool = True
    sms_enabled: bool = True
    priority: int = 1
    available_days: List[int] = Field(default_factory=lambda: [0, 1, 2, 3, 4, 5, 6])  # Monday=0
    available_hours_start: Optional[str] = None  # "HH:MM"
    available_hours_end: Optional[str] = None


class Appointment(BaseModel):
    id: str = Field(default_factory=new_id)
    organization_id: str
    customer_id: Optional[str] = None
    service_type: str = "service"
    scheduled_start: datetime
    duration_minutes: int = 60
    status: AppointmentStatus = AppointmentStatus.PENDING
    language: Optional[Language] = None
    address: Optional[str] = None


class Template(BaseModel):
    id: str = Field(default_factory=new_id)
    organization_id: Optional[str] = None  # None = system template
    key: str
    language: Language
    content: str
    variables: List[str] = Field(default_factory=list)
    category: TemplateCategory
    is_active: bool = True
    version: int = 1
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class MessageRecord(BaseModel):
    id: str = Field(default_factory=new_id)
    organization_id: str
    workflow_id: Optional[str] = None
    appointment_id: Optional[str] = None
    customer_id: Optional[str] = None
    direction: MessageDirection = MessageDirection.OUTBOUND
    phone_number: str
    message_type: str = "direct"
    template_key: Optional[str] = None
    category: TemplateCategory = TemplateCategory.DIRECT
    language: Language = Language.EN
    requested_language: Optional[Language] = None
    language_fallback: bool = False
    content: Optional[str] = None
    status: MessageStatus = MessageStatus.QUEUED
    external_message_id: Optional[str] = None
    provider: Optional[str] = None
    cost: Optional[float] = None
    segments: int = 1
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    sent_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class DeliveryEvent(BaseModel):
    id: str = Field(default_factory=new_id)
    organization_id: str
    message_id: str
    external_message_id: str
    status: MessageStatus
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    occurred_at: datetime = Field(default_factory=utcnow)


class WorkflowStep(BaseModel):
    order: int
    step_type: StepType
    template_key: str
    best_effort: bool = False
    status: StepStatus = StepStatus.PENDING
    attempts: int = 0
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    latency_ms: Optional[float] = None
    message_id: Optional[str] = None
    error: Optional[str] = None


class Workflow(BaseModel):
    id: str = Field(default_factory=new_id)
    organization_id: str
    customer_id: str
    appointment_id: Optional[str] = None
    workflow_type: WorkflowType
    status: WorkflowStatus = WorkflowStatus.SCHEDULED
    scheduled_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    failure_reason: Optional[str] = None
    failed_step: Optional[int] = None
    in_flight: bool = False
    steps: List[WorkflowStep] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_WORKFLOW_STATUSES


class EmergencyNotification(BaseModel):
    id: str = Field(default_factory=new_id)
    organization_id: str
    tool_call_id: Optional[str] = None
    vapi_call_id: Optional[str] = None
    contact_id: Optional[str] = None
    contact_name: Optional[str] = None
    transfer_to: Optional[str] = None
    emergency_type: Optional[str] = None
    severity: Optional[str] = None
    description: Optional[str] = None
    location: Optional[str] = None
    customer_name: Optional[str] = None
    customer_phone: Optional[str] = None
    status: EmergencyStatus = EmergencyStatus.PENDING
    sms_message_id: Optional[str] = None
    sms_error: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    sent_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class CallTransfer(BaseModel):
    id: str = Field(default_factory=new_id)
    organization_id: str
    tool_call_id: Optional[str] = None
    vapi_call_id: Optional[str] = None
    reason: Optional[str] = None
    urgency: Optional[str] = None
    summary: Optional[str] = None
    customer_name: Optional[str] = None
    customer_phone: Optional[str] = None
    transfer_to: str
    transfer_mode: str = "warm"
    message: Optional[str] = None
    status: str = "initiated"
    created_at: datetime = Field(default_factory=utcnow)
    metadata: Dict[str, Any] = Field(default_factory=dict)
