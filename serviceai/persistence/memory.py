"""
In-process Persistence used by tests and local development.

Rows are copied on the way in and out so callers never share mutable state
with the store, the way they would not with a database.
"""
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

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
    utcnow,
)
from serviceai.persistence.base import Persistence
from serviceai.utils.business_hours import is_available
from serviceai.utils.errors import DuplicateRecordError
from serviceai.utils.phone_normalize import phones_match


def _copy(model):
    return model.model_copy(deep=True) if model is not None else None


def _apply(model, fields: Dict[str, Any]):
    data = model.model_dump()
    data.update(fields)
    return type(model).model_validate(data)


class InMemoryPersistence(Persistence):
    def __init__(self):
        self.organizations: Dict[str, Organization] = {}
        self.assistants: Dict[str, str] = {}  # assistant_id -> organization_id
        self.tokens: Dict[str, str] = {}  # access token -> user_id
        self.memberships: set = set()  # (organization_id, user_id)
        self.customers: Dict[str, Customer] = {}
        self.emergency_contacts: Dict[str, EmergencyContact] = {}
        self.appointments: Dict[str, Appointment] = {}
        self.templates: Dict[Tuple[Optional[str], str, str], Template] = {}
        self.messages: Dict[str, MessageRecord] = {}
        self.delivery_events: List[DeliveryEvent] = []
        self.workflows: Dict[str, Workflow] = {}
        self.emergency_notifications: Dict[str, EmergencyNotification] = {}
        self.call_transfers: Dict[str, CallTransfer] = {}

    # Seeding helpers

    def add_organization(self, organization: Organization, assistant_ids: Iterable[str] = ()) -> Organization:
        self.organizations[organization.id] = _copy(organization)
        for assistant_id in assistant_ids:
            self.assistants[assistant_id] = organization.id
        return organization

    def add_member(self, organization_id: str, user_id: str, token: str) -> None:
        self.tokens[token] = user_id
        self.memberships.add((organization_id, user_id))

    def add_customer(self, customer: Customer) -> Customer:
        self.customers[customer.id] = _copy(customer)
        return customer

    def add_emergency_contact(self, contact: EmergencyContact) -> EmergencyContact:
        self.emergency_contacts[contact.id] = _copy(contact)
        return contact

    def add_appointment(self, appointment: Appointment) -> Appointment:
        self.appointments[appointment.id] = _copy(appointment)
        return appointment

    # Organizations / membership

    async def get_organization(self, organization_id: str) -> Optional[Organization]:
        return _copy(self.organizations.get(organization_id))

    async def find_organization_by_assistant(self, assistant_id: str) -> Optional[Organization]:
        organization_id = self.assistants.get(assistant_id)
        return await self.get_organization(organization_id) if organization_id else None

    async def find_organization_by_sms_number(self, phone: str) -> Optional[Organization]:
        for org in self.organizations.values():
            if phones_match(org.sms_phone_number, phone):
                return _copy(org)
        return None

    async def resolve_user(self, access_token: str) -> Optional[str]:
        return self.tokens.get(access_token)

    async def is_member(self, organization_id: str, user_id: str) -> bool:
        return (organization_id, user_id) in self.memberships

    # Customers / contacts / appointments

    async def get_customer(self, organization_id: str, customer_id: str) -> Optional[Customer]:
        customer = self.customers.get(customer_id)
        if customer and customer.organization_id == organization_id:
            return _copy(customer)
        return None

    async def find_customer_by_phone(self, organization_id: str, phone: str) -> Optional[Customer]:
        for customer in self.customers.values():
            if customer.organization_id == organization_id and phones_match(customer.phone, phone):
                return _copy(customer)
        return None

    async def update_customer(
        self, organization_id: str, customer_id: str, fields: Dict[str, Any]
    ) -> Optional[Customer]:
        customer = self.customers.get(customer_id)
        if not customer or customer.organization_id != organization_id:
            return None
        self.customers[customer_id] = _apply(customer, fields)
        return _copy(self.customers[customer_id])

    async def insert_customer(self, customer: Customer) -> Customer:
        if await self.find_customer_by_phone(customer.organization_id, customer.phone):
            raise DuplicateRecordError(
                "Customer phone already exists in this organization",
                details={"phone": customer.phone},
            )
        self.customers[customer.id] = _copy(customer)
        return _copy(customer)

    async def list_emergency_contacts(self, organization_id: str) -> List[EmergencyContact]:
        contacts = [
            c for c in self.emergency_contacts.values()
            if c.organization_id == organization_id and c.is_active
        ]
        return [_copy(c) for c in sorted(contacts, key=lambda c: c.priority)]

    async def get_on_call_contact(
        self, organization_id: str, at: datetime
    ) -> Optional[EmergencyContact]:
        org = self.organizations.get(organization_id)
        tz_key = org.timezone if org else None
        for contact in await self.list_emergency_contacts(organization_id):
            if is_available(
                at,
                tz_key,
                contact.available_days,
                contact.available_hours_start,
                contact.available_hours_end,
            ):
                return contact
        return None

    async def get_appointment(self, organization_id: str, appointment_id: str) -> Optional[Appointment]:
        appointment = self.appointments.get(appointment_id)
        if appointment and appointment.organization_id == organization_id:
            return _copy(appointment)
        return None

    async def list_appointments(
        self, organization_id: str, start: datetime, end: datetime
    ) -> List[Appointment]:
        return [
            _copy(a) for a in self.appointments.values()
            if a.organization_id == organization_id and start <= a.scheduled_start < end
        ]

    async def find_latest_appointment(
        self,
        organization_id: str,
        customer_id: str,
        statuses: Iterable[AppointmentStatus]
    ) -> Optional[Appointment]:
        wanted = set(statuses)
        matches = [
            a for a in self.appointments.values()
            if a.organization_id == organization_id
            and a.customer_id == customer_id
            and a.status in wanted
        ]
        if not matches:
            return None
        return _copy(max(matches, key=lambda a: a.scheduled_start))

    async def update_appointment(
        self, organization_id: str, appointment_id: str, fields: Dict[str, Any]
    ) -> Optional[Appointment]:
        appointment = self.appointments.get(appointment_id)
        if not appointment or appointment.organization_id != organization_id:
            return None
        self.appointments[appointment_id] = _apply(appointment, fields)
        return _copy(self.appointments[appointment_id])

    # Templates

    async def get_template(
        self, organization_id: Optional[str], key: str, language: Language
    ) -> Optional[Template]:
        return _copy(self.templates.get((organization_id, key, Language(language).value)))

    async def list_templates(
        self,
        organization_id: str,
        category: Optional[TemplateCategory] = None,
        language: Optional[Language] = None
    ) -> List[Template]:
        rows = [
            t for t in self.templates.values()
            if t.organization_id == organization_id
            and (category is None or t.category == category)
            and (language is None or t.language == language)
        ]
        return [_copy(t) for t in sorted(rows, key=lambda t: (t.key, t.language.value))]

    async def upsert_template(self, template: Template) -> Template:
        key = (template.organization_id, template.key, template.language.value)
        existing = self.templates.get(key)
        if existing:
            template = template.model_copy(update={"id": existing.id, "created_at": existing.created_at})
        self.templates[key] = _copy(template)
        return _copy(template)

    # Messages / delivery events

    async def insert_message(self, record: MessageRecord) -> MessageRecord:
        if record.external_message_id:
            existing = await self.get_message_by_external_id(
                record.external_message_id, record.organization_id
            )
            if existing:
                raise DuplicateRecordError(
                    "Message with this external id already exists",
                    details={"external_message_id": record.external_message_id},
                )
        self.messages[record.id] = _copy(record)
        return _copy(record)

    async def get_message_by_external_id(
        self, external_message_id: str, organization_id: Optional[str] = None
    ) -> Optional[MessageRecord]:
        for record in self.messages.values():
            if record.external_message_id != external_message_id:
                continue
            if organization_id is None or record.organization_id == organization_id:
                return _copy(record)
        return None

    async def update_message(
        self,
        record_id: str,
        fields: Dict[str, Any],
        expected_status: Optional[MessageStatus] = None
    ) -> Optional[MessageRecord]:
        record = self.messages.get(record_id)
        if not record:
            return None
        if expected_status is not None and record.status != expected_status:
            return None
        self.messages[record_id] = _apply(record, {**fields, "updated_at": utcnow()})
        return _copy(self.messages[record_id])

    async def list_messages(
        self,
        organization_id: str,
        since: datetime,
        direction: Optional[MessageDirection] = MessageDirection.OUTBOUND,
        template_key: Optional[str] = None,
        language: Optional[Language] = None
    ) -> List[MessageRecord]:
        rows = []
        for record in self.messages.values():
            if record.organization_id != organization_id:
                continue
            if direction is not None and record.direction != direction:
                continue
            if template_key is not None and record.template_key != template_key:
                continue
            if language is not None and record.language != language:
                continue
            stamp = record.sent_at or record.created_at
            if stamp < since:
                continue
            rows.append(_copy(record))
        return sorted(rows, key=lambda r: r.sent_at or r.created_at)

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
        rows = [
            r for r in self.messages.values()
            if r.organization_id == organization_id
            and (status is None or r.status == status)
            and (direction is None or r.direction == direction)
            and (start is None or r.created_at >= start)
            and (end is None or r.created_at <= end)
        ]
        rows.sort(key=lambda r: r.created_at, reverse=True)
        return [_copy(r) for r in rows[offset:offset + limit]]

    async def insert_delivery_event(self, event: DeliveryEvent) -> DeliveryEvent:
        self.delivery_events.append(_copy(event))
        return _copy(event)

    # Workflows

    async def insert_workflow(self, workflow: Workflow) -> Workflow:
        self.workflows[workflow.id] = _copy(workflow)
        return _copy(workflow)

    async def get_workflow(self, workflow_id: str) -> Optional[Workflow]:
        return _copy(self.workflows.get(workflow_id))

    async def update_workflow(
        self,
        workflow_id: str,
        fields: Dict[str, Any],
        expected_statuses: Optional[Iterable[WorkflowStatus]] = None,
        expected_in_flight: Optional[bool] = None
    ) -> Optional[Workflow]:
        workflow = self.workflows.get(workflow_id)
        if not workflow:
            return None
        if expected_statuses is not None and workflow.status not in set(expected_statuses):
            return None
        if expected_in_flight is not None and workflow.in_flight != expected_in_flight:
            return None
        self.workflows[workflow_id] = _apply(workflow, {**fields, "updated_at": utcnow()})
        return _copy(self.workflows[workflow_id])

    async def list_due_workflows(self, now: datetime, limit: int = 100) -> List[Workflow]:
        due = [
            w for w in self.workflows.values()
            if w.status == WorkflowStatus.SCHEDULED and w.scheduled_at <= now
        ]
        due.sort(key=lambda w: w.scheduled_at)
        return [_copy(w) for w in due[:limit]]

    async def list_workflows(
        self,
        organization_id: str,
        since: Optional[datetime] = None,
        appointment_id: Optional[str] = None,
        statuses: Optional[Iterable[WorkflowStatus]] = None
    ) -> List[Workflow]:
        wanted = set(statuses) if statuses is not None else None
        rows = [
            w for w in self.workflows.values()
            if w.organization_id == organization_id
            and (since is None or w.created_at >= since)
            and (appointment_id is None or w.appointment_id == appointment_id)
            and (wanted is None or w.status in wanted)
        ]
        return [_copy(w) for w in sorted(rows, key=lambda w: w.created_at)]

    # Emergencies / transfers

    async def insert_emergency_notification(
        self, notification: EmergencyNotification
    ) -> EmergencyNotification:
        if notification.tool_call_id and await self.find_emergency_notification_by_tool_call(
            notification.organization_id, notification.tool_call_id
        ):
            raise DuplicateRecordError(
                "Emergency notification already recorded for this tool call",
                details={"tool_call_id": notification.tool_call_id},
            )
        self.emergency_notifications[notification.id] = _copy(notification)
        return _copy(notification)

    async def get_emergency_notification(
        self, organization_id: str, notification_id: str
    ) -> Optional[EmergencyNotification]:
        notification = self.emergency_notifications.get(notification_id)
        if notification and notification.organization_id == organization_id:
            return _copy(notification)
        return None

    async def find_emergency_notification_by_tool_call(
        self, organization_id: str, tool_call_id: str
    ) -> Optional[EmergencyNotification]:
        for notification in self.emergency_notifications.values():
            if notification.organization_id == organization_id and notification.tool_call_id == tool_call_id:
                return _copy(notification)
        return None

    async def list_emergency_notifications(
        self,
        organization_id: str,
        status: Optional[EmergencyStatus] = None,
        limit: int = 10
    ) -> List[EmergencyNotification]:
        rows = [
            n for n in self.emergency_notifications.values()
            if n.organization_id == organization_id and (status is None or n.status == status)
        ]
        rows.sort(key=lambda n: n.created_at, reverse=True)
        return [_copy(n) for n in rows[:limit]]

    async def update_emergency_notification(
        self,
        notification_id: str,
        fields: Dict[str, Any],
        expected_status: Optional[EmergencyStatus] = None
    ) -> Optional[EmergencyNotification]:
        notification = self.emergency_notifications.get(notification_id)
        if not notification:
            return None
        if expected_status is not None and notification.status != expected_status:
            return None
        self.emergency_notifications[notification_id] = _apply(notification, fields)
        return _copy(self.emergency_notifications[notification_id])

    async def insert_call_transfer(self, transfer: CallTransfer) -> CallTransfer:
        if transfer.tool_call_id and await self.find_call_transfer_by_tool_call(
            transfer.organization_id, transfer.tool_call_id
        ):
            raise DuplicateRecordError(
                "Call transfer already recorded for this tool call",
                details={"tool_call_id": transfer.tool_call_id},
            )
        self.call_transfers[transfer.id] = _copy(transfer)
        return _copy(transfer)

    async def find_call_transfer_by_tool_call(
        self, organization_id: str, tool_call_id: str
    ) -> Optional[CallTransfer]:
        for transfer in self.call_transfers.values():
            if transfer.organization_id == organization_id and transfer.tool_call_id == tool_call_id:
                return _copy(transfer)
        return None
