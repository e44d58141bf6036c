"""
Persistence backed by Supabase (PostgREST + GoTrue) over httpx.

Conditional updates are expressed as extra filters on the PATCH; PostgREST
returns an empty representation when no row matched, which maps to None.
"""
import httpx
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from serviceai.config import settings
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
from serviceai.persistence.base import Persistence
from serviceai.utils.errors import DuplicateRecordError, SupabaseAPIError
from serviceai.utils.logging import logger
from serviceai.utils.phone_normalize import phones_match


def _value(value: Any) -> str:
    if isinstance(value, datetime):
        return value.isoformat()
    if hasattr(value, "value"):
        return str(value.value)
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _in(values: Iterable[Any]) -> str:
    return "in.(" + ",".join(_value(v) for v in values) + ")"


def _row(model) -> Dict[str, Any]:
    return model.model_dump(mode="json")


def _fields(fields: Dict[str, Any]) -> Dict[str, Any]:
    out = {}
    for name, value in fields.items():
        if hasattr(value, "model_dump"):
            out[name] = value.model_dump(mode="json")
        elif isinstance(value, list):
            out[name] = [v.model_dump(mode="json") if hasattr(v, "model_dump") else _json(v) for v in value]
        else:
            out[name] = _json(value)
    return out


def _json(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if hasattr(value, "value"):
        return value.value
    return value


class SupabasePersistence(Persistence):
    def __init__(self, url: Optional[str] = None, service_role_key: Optional[str] = None):
        self.base_url = (url or settings.supabase_url or "").rstrip("/")
        self.service_role_key = service_role_key or settings.supabase_service_role_key
        if not self.base_url or not self.service_role_key:
            logger.warning("⚠️  Supabase credentials not configured")
        self.headers = {
            "apikey": self.service_role_key or "",
            "Authorization": f"Bearer {self.service_role_key}",
            "Content-Type": "application/json",
            "Prefer": "return=representation",
        }

    async def _request(
        self,
        method: str,
        endpoint: str,
        data: Optional[Any] = None,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None
    ) -> Any:
        url = f"{self.base_url}/{endpoint}"
        try:
            async with httpx.AsyncClient(timeout=settings.http_timeout) as client:
                response = await client.request(
                    method=method,
                    url=url,
                    headers=headers or self.headers,
                    json=data,
                    params=params
                )
                response.raise_for_status()
                if not response.content:
                    return None
                return response.json()
        except httpx.HTTPStatusError as e:
            error_text = e.response.text
            if e.response.status_code == 409:
                raise DuplicateRecordError(
                    "Record already exists",
                    details={"response": error_text, "endpoint": endpoint}
                )
            logger.error(f"Supabase API error: {e.response.status_code} - {error_text}")
            raise SupabaseAPIError(
                f"Supabase request failed: {e.response.status_code}",
                status_code=e.response.status_code,
                details={"response": error_text, "endpoint": endpoint, "method": method}
            )
        except httpx.RequestError as e:
            logger.error(f"Supabase request error: {str(e)}")
            raise SupabaseAPIError(f"Supabase request failed: {str(e)}", status_code=503)

    async def _select(self, table: str, params: Dict[str, Any]) -> List[Dict[str, Any]]:
        rows = await self._request("GET", f"rest/v1/{table}", params={"select": "*", **params})
        return rows or []

    async def _select_one(self, table: str, params: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        rows = await self._select(table, {**params, "limit": 1})
        return rows[0] if rows else None

    async def _insert(self, table: str, row: Dict[str, Any]) -> Dict[str, Any]:
        rows = await self._request("POST", f"rest/v1/{table}", data=row)
        return rows[0] if rows else row

    async def _update(
        self, table: str, filters: Dict[str, Any], fields: Dict[str, Any]
    ) -> Optional[Dict[str, Any]]:
        rows = await self._request("PATCH", f"rest/v1/{table}", data=_fields(fields), params=filters)
        return rows[0] if rows else None

    # Organizations / membership

    async def get_organization(self, organization_id: str) -> Optional[Organization]:
        row = await self._select_one("organizations", {"id": f"eq.{organization_id}"})
        return Organization.model_validate(row) if row else None

    async def find_organization_by_assistant(self, assistant_id: str) -> Optional[Organization]:
        row = await self._select_one("vapi_assistants", {"assistant_id": f"eq.{assistant_id}"})
        if not row:
            return None
        return await self.get_organization(row["organization_id"])

    async def find_organization_by_sms_number(self, phone: str) -> Optional[Organization]:
        rows = await self._select("organizations", {"sms_phone_number": "not.is.null"})
        for row in rows:
            if phones_match(row.get("sms_phone_number"), phone):
                return Organization.model_validate(row)
        return None

    async def resolve_user(self, access_token: str) -> Optional[str]:
        headers = {
            "apikey": self.service_role_key or "",
            "Authorization": f"Bearer {access_token}",
        }
        try:
            user = await self._request("GET", "auth/v1/user", headers=headers)
        except SupabaseAPIError as e:
            if e.status_code in (401, 403):
                return None
            raise
        return user.get("id") if user else None

    async def is_member(self, organization_id: str, user_id: str) -> bool:
        row = await self._select_one(
            "organization_members",
            {"organization_id": f"eq.{organization_id}", "user_id": f"eq.{user_id}"}
        )
        return row is not None

    # Customers / contacts / appointments

    async def get_customer(self, organization_id: str, customer_id: str) -> Optional[Customer]:
        row = await self._select_one(
            "customers", {"id": f"eq.{customer_id}", "organization_id": f"eq.{organization_id}"}
        )
        return Customer.model_validate(row) if row else None

    async def find_customer_by_phone(self, organization_id: str, phone: str) -> Optional[Customer]:
        row = await self._select_one(
            "customers", {"phone": f"eq.{phone}", "organization_id": f"eq.{organization_id}"}
        )
        return Customer.model_validate(row) if row else None

    async def update_customer(
        self, organization_id: str, customer_id: str, fields: Dict[str, Any]
    ) -> Optional[Customer]:
        row = await self._update(
            "customers",
            {"id": f"eq.{customer_id}", "organization_id": f"eq.{organization_id}"},
            fields
        )
        return Customer.model_validate(row) if row else None

    async def insert_customer(self, customer: Customer) -> Customer:
        return Customer.model_validate(await self._insert("customers", _row(customer)))

    async def list_emergency_contacts(self, organization_id: str) -> List[EmergencyContact]:
        rows = await self._select(
            "emergency_contacts",
            {"organization_id": f"eq.{organization_id}", "is_active": "eq.true", "order": "priority.asc"}
        )
        return [EmergencyContact.model_validate(r) for r in rows]

    async def get_on_call_contact(
        self, organization_id: str, at: datetime
    ) -> Optional[EmergencyContact]:
        rows = await self._request(
            "POST",
            "rest/v1/rpc/get_on_call_contact",
            data={"org_id": organization_id, "check_time": at.isoformat()}
        )
        if not rows:
            return None
        row = rows[0] if isinstance(rows, list) else rows
        return EmergencyContact.model_validate({"organization_id": organization_id, **row})

    async def get_appointment(self, organization_id: str, appointment_id: str) -> Optional[Appointment]:
        row = await self._select_one(
            "appointments", {"id": f"eq.{appointment_id}", "organization_id": f"eq.{organization_id}"}
        )
        return Appointment.model_validate(row) if row else None

    async def list_appointments(
        self, organization_id: str, start: datetime, end: datetime
    ) -> List[Appointment]:
        rows = await self._select("appointments", {
            "organization_id": f"eq.{organization_id}",
            "and": f"(scheduled_start.gte.{start.isoformat()},scheduled_start.lt.{end.isoformat()})",
        })
        return [Appointment.model_validate(r) for r in rows]

    async def find_latest_appointment(
        self,
        organization_id: str,
        customer_id: str,
        statuses: Iterable[AppointmentStatus]
    ) -> Optional[Appointment]:
        row = await self._select_one("appointments", {
            "organization_id": f"eq.{organization_id}",
            "customer_id": f"eq.{customer_id}",
            "status": _in(statuses),
            "order": "scheduled_start.desc",
        })
        return Appointment.model_validate(row) if row else None

    async def update_appointment(
        self, organization_id: str, appointment_id: str, fields: Dict[str, Any]
    ) -> Optional[Appointment]:
        row = await self._update(
            "appointments",
            {"id": f"eq.{appointment_id}", "organization_id": f"eq.{organization_id}"},
            fields
        )
        return Appointment.model_validate(row) if row else None

    # Templates

    async def get_template(
        self, organization_id: Optional[str], key: str, language: Language
    ) -> Optional[Template]:
        owner = f"eq.{organization_id}" if organization_id else "is.null"
        row = await self._select_one("sms_templates", {
            "organization_id": owner,
            "template_key": f"eq.{key}",
            "language": f"eq.{_value(language)}",
        })
        return self._template(row) if row else None

    async def list_templates(
        self,
        organization_id: str,
        category: Optional[TemplateCategory] = None,
        language: Optional[Language] = None
    ) -> List[Template]:
        params = {"organization_id": f"eq.{organization_id}", "order": "template_key.asc"}
        if category:
            params["category"] = f"eq.{_value(category)}"
        if language:
            params["language"] = f"eq.{_value(language)}"
        return [self._template(r) for r in await self._select("sms_templates", params)]

    async def upsert_template(self, template: Template) -> Template:
        row = _row(template)
        row["template_key"] = row.pop("key")
        headers = {**self.headers, "Prefer": "return=representation,resolution=merge-duplicates"}
        rows = await self._request(
            "POST",
            "rest/v1/sms_templates",
            data=row,
            params={"on_conflict": "organization_id,template_key,language"},
            headers=headers
        )
        return self._template(rows[0]) if rows else template

    @staticmethod
    def _template(row: Dict[str, Any]) -> Template:
        data = dict(row)
        if "template_key" in data:
            data["key"] = data.pop("template_key")
        return Template.model_validate(data)

    # Messages / delivery events

    async def insert_message(self, record: MessageRecord) -> MessageRecord:
        return MessageRecord.model_validate(await self._insert("sms_communications", _row(record)))

    async def get_message_by_external_id(
        self, external_message_id: str, organization_id: Optional[str] = None
    ) -> Optional[MessageRecord]:
        params = {"external_message_id": f"eq.{external_message_id}"}
        if organization_id:
            params["organization_id"] = f"eq.{organization_id}"
        row = await self._select_one("sms_communications", params)
        return MessageRecord.model_validate(row) if row else None

    async def update_message(
        self,
        record_id: str,
        fields: Dict[str, Any],
        expected_status: Optional[MessageStatus] = None
    ) -> Optional[MessageRecord]:
        filters = {"id": f"eq.{record_id}"}
        if expected_status is not None:
            filters["status"] = f"eq.{_value(expected_status)}"
        row = await self._update("sms_communications", filters, fields)
        return MessageRecord.model_validate(row) if row else None

    async def list_messages(
        self,
        organization_id: str,
        since: datetime,
        direction: Optional[MessageDirection] = MessageDirection.OUTBOUND,
        template_key: Optional[str] = None,
        language: Optional[Language] = None
    ) -> List[MessageRecord]:
        params = {
            "organization_id": f"eq.{organization_id}",
            "created_at": f"gte.{since.isoformat()}",
            "order": "created_at.asc",
        }
        if direction is not None:
            params["direction"] = f"eq.{_value(direction)}"
        if template_key is not None:
            params["template_key"] = f"eq.{template_key}"
        if language is not None:
            params["language"] = f"eq.{_value(language)}"
        return [MessageRecord.model_validate(r) for r in await self._select("sms_communications", params)]

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
        params: Dict[str, Any] = {
            "organization_id": f"eq.{organization_id}",
            "order": "created_at.desc",
            "limit": limit,
            "offset": offset,
        }
        if status is not None:
            params["status"] = f"eq.{_value(status)}"
        if direction is not None:
            params["direction"] = f"eq.{_value(direction)}"
        bounds = []
        if start is not None:
            bounds.append(f"created_at.gte.{start.isoformat()}")
        if end is not None:
            bounds.append(f"created_at.lte.{end.isoformat()}")
        if bounds:
            params["and"] = "(" + ",".join(bounds) + ")"
        return [MessageRecord.model_validate(r) for r in await self._select("sms_communications", params)]

    async def insert_delivery_event(self, event: DeliveryEvent) -> DeliveryEvent:
        return DeliveryEvent.model_validate(await self._insert("sms_delivery_events", _row(event)))

    # Workflows

    async def insert_workflow(self, workflow: Workflow) -> Workflow:
        return Workflow.model_validate(await self._insert("sms_workflows", _row(workflow)))

    async def get_workflow(self, workflow_id: str) -> Optional[Workflow]:
        row = await self._select_one("sms_workflows", {"id": f"eq.{workflow_id}"})
        return Workflow.model_validate(row) if row else None

    async def update_workflow(
        self,
        workflow_id: str,
        fields: Dict[str, Any],
        expected_statuses: Optional[Iterable[WorkflowStatus]] = None,
        expected_in_flight: Optional[bool] = None
    ) -> Optional[Workflow]:
        filters = {"id": f"eq.{workflow_id}"}
        if expected_statuses is not None:
            filters["status"] = _in(expected_statuses)
        if expected_in_flight is not None:
            filters["in_flight"] = f"is.{_value(expected_in_flight)}"
        row = await self._update("sms_workflows", filters, fields)
        return Workflow.model_validate(row) if row else None

    async def list_due_workflows(self, now: datetime, limit: int = 100) -> List[Workflow]:
        rows = await self._select("sms_workflows", {
            "status": f"eq.{WorkflowStatus.SCHEDULED.value}",
            "scheduled_at": f"lte.{now.isoformat()}",
            "order": "scheduled_at.asc",
            "limit": limit,
        })
        return [Workflow.model_validate(r) for r in rows]

    async def list_workflows(
        self,
        organization_id: str,
        since: Optional[datetime] = None,
        appointment_id: Optional[str] = None,
        statuses: Optional[Iterable[WorkflowStatus]] = None
    ) -> List[Workflow]:
        params = {"organization_id": f"eq.{organization_id}", "order": "created_at.asc"}
        if since is not None:
            params["created_at"] = f"gte.{since.isoformat()}"
        if appointment_id is not None:
            params["appointment_id"] = f"eq.{appointment_id}"
        if statuses is not None:
            params["status"] = _in(statuses)
        return [Workflow.model_validate(r) for r in await self._select("sms_workflows", params)]

    # Emergencies / transfers

    async def insert_emergency_notification(
        self, notification: EmergencyNotification
    ) -> EmergencyNotification:
        row = await self._insert("emergency_notifications", _row(notification))
        return EmergencyNotification.model_validate(row)

    async def get_emergency_notification(
        self, organization_id: str, notification_id: str
    ) -> Optional[EmergencyNotification]:
        row = await self._select_one(
            "emergency_notifications",
            {"id": f"eq.{notification_id}", "organization_id": f"eq.{organization_id}"}
        )
        return EmergencyNotification.model_validate(row) if row else None

    async def find_emergency_notification_by_tool_call(
        self, organization_id: str, tool_call_id: str
    ) -> Optional[EmergencyNotification]:
        row = await self._select_one(
            "emergency_notifications",
            {"organization_id": f"eq.{organization_id}", "tool_call_id": f"eq.{tool_call_id}"}
        )
        return EmergencyNotification.model_validate(row) if row else None

    async def list_emergency_notifications(
        self,
        organization_id: str,
        status: Optional[EmergencyStatus] = None,
        limit: int = 10
    ) -> List[EmergencyNotification]:
        params: Dict[str, Any] = {
            "organization_id": f"eq.{organization_id}",
            "order": "created_at.desc",
            "limit": limit,
        }
        if status is not None:
            params["status"] = f"eq.{_value(status)}"
        rows = await self._select("emergency_notifications", params)
        return [EmergencyNotification.model_validate(r) for r in rows]

    async def update_emergency_notification(
        self,
        notification_id: str,
        fields: Dict[str, Any],
        expected_status: Optional[EmergencyStatus] = None
    ) -> Optional[EmergencyNotification]:
        filters = {"id": f"eq.{notification_id}"}
        if expected_status is not None:
            filters["status"] = f"eq.{_value(expected_status)}"
        row = await self._update("emergency_notifications", filters, fields)
        return EmergencyNotification.model_validate(row) if row else None

    async def insert_call_transfer(self, transfer: CallTransfer) -> CallTransfer:
        return CallTransfer.model_validate(await self._insert("call_transfers", _row(transfer)))

    async def find_call_transfer_by_tool_call(
        self, organization_id: str, tool_call_id: str
    ) -> Optional[CallTransfer]:
        row = await self._select_one(
            "call_transfers",
            {"organization_id": f"eq.{organization_id}", "tool_call_id": f"eq.{tool_call_id}"}
        )
        return CallTransfer.model_validate(row) if row else None
