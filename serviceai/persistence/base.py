"""
Persistence capability consumed by the notification services.

Every method is scoped by organization where the entity is tenant-owned.
Conditional updates (expected_status / expected_statuses) are compare-and-set
writes keyed by primary id: they return None when the row no longer matches,
so concurrent webhook replays settle on one end state.
"""
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from serviceai.models import (
    Appointment,
    AppointmentStatus,
    CallTransfer,
    Customer,
    DeliveryEvent,
    EmergencyContact,
    EmergencyNotification,
    EmergencyStatus,
    Language,
    MessageDirection,
    MessageRecord,
    MessageStatus,
    Organization,
    Template,
    TemplateCategory,
    Workflow,
    WorkflowStatus,
)


class Persistence(ABC):
    # Organizations / membership

    @abstractmethod
    async def get_organization(self, organization_id: str) -> Optional[Organization]: ...

    @abstractmethod
    async def find_organization_by_assistant(self, assistant_id: str) -> Optional[Organization]: ...

    @abstractmethod
    async def find_organization_by_sms_number(self, phone: str) -> Optional[Organization]: ...

    @abstractmethod
    async def resolve_user(self, access_token: str) -> Optional[str]: ...

    @abstractmethod
    async def is_member(self, organization_id: str, user_id: str) -> bool: ...

    # Customers / contacts / appointments

    @abstractmethod
    async def get_customer(self, organization_id: str, customer_id: str) -> Optional[Customer]: ...

    @abstractmethod
    async def find_customer_by_phone(self, organization_id: str, phone: str) -> Optional[Customer]: ...

    @abstractmethod
    async def update_customer(
        self, organization_id: str, customer_id: str, fields: Dict[str, Any]
    ) -> Optional[Customer]: ...

    @abstractmethod
    async def insert_customer(self, customer: Customer) -> Customer:
        """Raises DuplicateRecordError when the phone is already taken in the organization"""

    @abstractmethod
    async def list_emergency_contacts(self, organization_id: str) -> List[EmergencyContact]: ...

    @abstractmethod
    async def get_on_call_contact(
        self, organization_id: str, at: datetime
    ) -> Optional[EmergencyContact]: ...

    @abstractmethod
    async def get_appointment(self, organization_id: str, appointment_id: str) -> Optional[Appointment]: ...

    @abstractmethod
    async def list_appointments(
        self, organization_id: str, start: datetime, end: datetime
    ) -> List[Appointment]: ...

    @abstractmethod
    async def find_latest_appointment(
        self,
        organization_id: str,
        customer_id: str,
        statuses: Iterable[AppointmentStatus]
    ) -> Optional[Appointment]: ...

    @abstractmethod
    async def update_appointment(
        self, organization_id: str, appointment_id: str, fields: Dict[str, Any]
    ) -> Optional[Appointment]: ...

    # Templates

    @abstractmethod
    async def get_template(
        self, organization_id: Optional[str], key: str, language: Language
    ) -> Optional[Template]: ...

    @abstractmethod
    async def list_templates(
        self,
        organization_id: str,
        category: Optional[TemplateCategory] = None,
        language: Optional[Language] = None
    ) -> List[Template]: ...

    @abstractmethod
    async def upsert_template(self, template: Template) -> Template: ...

    # Messages / delivery events

    @abstractmethod
    async def insert_message(self, record: MessageRecord) -> MessageRecord: ...

    @abstractmethod
    async def get_message_by_external_id(
        self, external_message_id: str, organization_id: Optional[str] = None
    ) -> Optional[MessageRecord]: ...

    @abstractmethod
    async def update_message(
        self,
        record_id: str,
        fields: Dict[str, Any],
        expected_status: Optional[MessageStatus] = None
    ) -> Optional[MessageRecord]: ...

    @abstractmethod
    async def list_messages(
        self,
        organization_id: str,
        since: datetime,
        direction: Optional[MessageDirection] = MessageDirection.OUTBOUND,
        template_key: Optional[str] = None,
        language: Optional[Language] = None
    ) -> List[MessageRecord]: ...

    @abstractmethod
    async def list_message_log(
        self,
        organization_id: str,
        status: Optional[MessageStatus] = None,
        direction: Optional[MessageDirection] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: int = 50,
        offset: int = 0
    ) -> List[MessageRecord]:
        """Newest first, one page of inbound and outbound rows"""

    @abstractmethod
    async def insert_delivery_event(self, event: DeliveryEvent) -> DeliveryEvent: ...

    # Workflows

    @abstractmethod
    async def insert_workflow(self, workflow: Workflow) -> Workflow: ...

    @abstractmethod
    async def get_workflow(self, workflow_id: str) -> Optional[Workflow]: ...

    @abstractmethod
    async def update_workflow(
        self,
        workflow_id: str,
        fields: Dict[str, Any],
        expected_statuses: Optional[Iterable[WorkflowStatus]] = None,
        expected_in_flight: Optional[bool] = None
    ) -> Optional[Workflow]: ...

    @abstractmethod
    async def list_due_workflows(self, now: datetime, limit: int = 100) -> List[Workflow]: ...

    @abstractmethod
    async def list_workflows(
        self,
        organization_id: str,
        since: Optional[datetime] = None,
        appointment_id: Optional[str] = None,
        statuses: Optional[Iterable[WorkflowStatus]] = None
    ) -> List[Workflow]: ...

    # Emergencies / transfers

    @abstractmethod
    async def insert_emergency_notification(
        self, notification: EmergencyNotification
    ) -> EmergencyNotification: ...

    @abstractmethod
    async def get_emergency_notification(
        self, organization_id: str, notification_id: str
    ) -> Optional[EmergencyNotification]: ...

    @abstractmethod
    async def find_emergency_notification_by_tool_call(
        self, organization_id: str, tool_call_id: str
    ) -> Optional[EmergencyNotification]: ...

    @abstractmethod
    async def list_emergency_notifications(
        self,
        organization_id: str,
        status: Optional[EmergencyStatus] = None,
        limit: int = 10
    ) -> List[EmergencyNotification]: ...

    @abstractmethod
    async def update_emergency_notification(
        self,
        notification_id: str,
        fields: Dict[str, Any],
        expected_status: Optional[EmergencyStatus] = None
    ) -> Optional[EmergencyNotification]:
        """Compare-and-set when expected_status is given; None when the row moved on"""

    @abstractmethod
    async def insert_call_transfer(self, transfer: CallTransfer) -> CallTransfer: ...

    @abstractmethod
    async def find_call_transfer_by_tool_call(
        self, organization_id: str, tool_call_id: str
    ) -> Optional[CallTransfer]: ...
