"""
Workflow engine for multi-step, templated, bilingual SMS campaigns.

A workflow is one business event (appointment booked, reminder due,
emergency reported...) expanded into an ordered list of steps stored on the
workflow row. Every status change is a compare-and-set on the current
status, so a scheduler tick, a webhook replay and an operator cancel can
race without corrupting the row: whoever writes first wins and the others
see the new state.

Cancellation is soft. It stops steps that have not started yet and never
recalls messages that already went out.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from serviceai.config import settings
from serviceai.models import (
    Appointment,
    AppointmentStatus,
    AppointmentWebhookPayload,
    Customer,
    DispatchMetadata,
    DispatchResult,
    Language,
    Organization,
    Recipient,
    StepStatus,
    StepType,
    TemplateCategory,
    TimeRange,
    Workflow,
    WorkflowMetrics,
    WorkflowStatus,
    WorkflowStep,
    WorkflowType,
    utcnow,
)
from serviceai.notifications.delivery import RANGE_SPAN
from serviceai.notifications.dispatcher import NotificationDispatcher
from serviceai.notifications.templates import TemplateStore
from serviceai.persistence import Persistence
from serviceai.utils.business_hours import to_local
from serviceai.utils.errors import (
    InvalidRequestError,
    InvalidStateTransition,
    NotFoundError,
    StepInFlight,
)
from serviceai.utils.logging import logger

ACTIVE_STATUSES = [WorkflowStatus.SCHEDULED, WorkflowStatus.IN_PROGRESS]

# (step type, template key, best effort)
STEP_PLANS: Dict[WorkflowType, List[Tuple[StepType, str, bool]]] = {
    WorkflowType.APPOINTMENT_CONFIRMATION: [
        (StepType.SEND_TEMPLATE, "appointment_confirmation", False),
    ],
    WorkflowType.APPOINTMENT_REMINDER: [
        (StepType.SEND_TEMPLATE, "appointment_reminder", False),
    ],
    WorkflowType.EMERGENCY_ALERT: [
        (StepType.EMERGENCY_BROADCAST, "emergency_alert", False),
        (StepType.SEND_TEMPLATE, "emergency_received", True),
    ],
    WorkflowType.FOLLOW_UP: [
        (StepType.SEND_TEMPLATE, "service_completion", False),
    ],
    WorkflowType.SURVEY: [
        (StepType.SEND_TEMPLATE, "survey_request", False),
    ],
}


def build_steps(workflow_type: WorkflowType) -> List[WorkflowStep]:
    return [
        WorkflowStep(order=index, step_type=step_type, template_key=key, best_effort=best_effort)
        for index, (step_type, key, best_effort) in enumerate(STEP_PLANS[workflow_type], start=1)
    ]


def _aware(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment


def appointment_variables(
    appointment: Appointment, language: Language, tz_key: Optional[str]
) -> Dict[str, Any]:
    local = to_local(appointment.scheduled_start, tz_key)
    if language == Language.ES:
        date, time = local.strftime("%d/%m/%Y"), local.strftime("%H:%M")
    else:
        date, time = local.strftime("%m/%d/%Y"), local.strftime("%I:%M %p").lstrip("0")
    variables = {
        "service_type": appointment.service_type,
        "date": date,
        "time": time,
    }
    if appointment.address:
        variables["address"] = appointment.address
    return variables


@dataclass
class StepContext:
    """Everything a step needs, resolved once per execution"""
    organization: Organization
    customer: Customer
    phone: str
    language: Language
    variables: Dict[str, Any]


class WorkflowEngine:
    def __init__(
        self,
        persistence: Persistence,
        dispatcher: NotificationDispatcher,
        templates: TemplateStore,
        clock: Callable[[], datetime] = utcnow,
        reminder_lead_hours: Optional[int] = None,
        follow_up_delay_hours: Optional[int] = None
    ):
        self.persistence = persistence
        self.dispatcher = dispatcher
        self.templates = templates
        self.clock = clock
        self.reminder_lead = timedelta(hours=reminder_lead_hours or settings.reminder_lead_hours)
        self.follow_up_delay = timedelta(hours=follow_up_delay_hours or settings.follow_up_delay_hours)

    # Creation / lookup

    async def create_workflow(
        self,
        organization_id: str,
        customer_id: str,
        workflow_type: WorkflowType,
        scheduled_at: datetime,
        metadata: Optional[Dict[str, Any]] = None,
        appointment_id: Optional[str] = None
    ) -> Workflow:
        """
        Persist a workflow in `scheduled`. When scheduled_at is now or past it
        is executed right away.
        """
        organization = await self.persistence.get_organization(organization_id)
        if not organization:
            raise NotFoundError("Organization not found", details={"organization_id": organization_id})
        customer = await self.persistence.get_customer(organization_id, customer_id)
        if not customer:
            raise NotFoundError("Customer not found", details={"customer_id": customer_id})
        if appointment_id and not await self.persistence.get_appointment(organization_id, appointment_id):
            raise NotFoundError("Appointment not found", details={"appointment_id": appointment_id})

        workflow = await self.persistence.insert_workflow(Workflow(
            organization_id=organization_id,
            customer_id=customer_id,
            appointment_id=appointment_id,
            workflow_type=workflow_type,
            scheduled_at=_aware(scheduled_at),
            steps=build_steps(workflow_type),
            metadata=metadata or {},
        ))
        logger.info(
            f"🗓️  Workflow {workflow.id} ({workflow_type.value}) created for {organization_id}, "
            f"scheduled {workflow.scheduled_at.isoformat()}"
        )

        if workflow.scheduled_at <= self.clock():
            return await self.execute_workflow(workflow.id)
        return workflow

    async def get_workflow(self, workflow_id: str, organization_id: Optional[str] = None) -> Workflow:
        workflow = await self.persistence.get_workflow(workflow_id)
        if not workflow or (organization_id and workflow.organization_id != organization_id):
            raise NotFoundError("Workflow not found", details={"workflow_id": workflow_id})
        return workflow

    # Execution

    async def execute_due_workflows(self, limit: int = 100) -> Dict[str, Any]:
        """Run every scheduled workflow whose time has come. Called by the external scheduler."""
        due = await self.persistence.list_due_workflows(self.clock(), limit=limit)
        summary: Dict[str, Any] = {
            "processed": 0, "completed": 0, "failed": 0, "skipped": 0, "errors": 0, "workflow_ids": []
        }
        logger.info(f"⏰ {len(due)} workflow(s) due")

        for workflow in due:
            summary["processed"] += 1
            summary["workflow_ids"].append(workflow.id)
            try:
                result = await self.execute_workflow(workflow.id)
            except Exception as e:
                # One broken row must not starve the rest of the batch
                logger.exception(f"❌ Workflow {workflow.id} errored: {e}")
                summary["errors"] += 1
                continue
            if result.status == WorkflowStatus.COMPLETED:
                summary["completed"] += 1
            elif result.status == WorkflowStatus.FAILED:
                summary["failed"] += 1
            else:
                summary["skipped"] += 1
        return summary

    async def execute_workflow(self, workflow_id: str) -> Workflow:
        now = self.clock()
        workflow = await self.persistence.update_workflow(
            workflow_id,
            {"status": WorkflowStatus.IN_PROGRESS, "started_at": now},
            expected_statuses=[WorkflowStatus.SCHEDULED],
        )
        if not workflow:
            current = await self.get_workflow(workflow_id)
            logger.info(f"⏭️  Workflow {workflow_id} not claimable (status: {current.status.value})")
            return current

        logger.info(f"▶️  Executing workflow {workflow_id} ({workflow.workflow_type.value})")
        try:
            context = await self._context(workflow)
        except (NotFoundError, InvalidRequestError) as e:
            return await self._fail(workflow, workflow.steps, None, e.message)

        steps = workflow.steps
        for index, step in enumerate(steps):
            if step.status != StepStatus.PENDING:
                continue

            # Re-read so a cancel issued between steps takes effect
            current = await self.get_workflow(workflow_id)
            if current.status != WorkflowStatus.IN_PROGRESS:
                logger.info(f"🛑 Workflow {workflow_id} is {current.status.value}, stopping before step {step.order}")
                return current

            step.status = StepStatus.EXECUTING
            step.started_at = self.clock()
            step.attempts += 1
            claimed = await self.persistence.update_workflow(
                workflow_id,
                {"steps": steps, "in_flight": True},
                expected_statuses=[WorkflowStatus.IN_PROGRESS],
                expected_in_flight=False,
            )
            if not claimed:
                return await self.get_workflow(workflow_id)

            try:
                result = await self._run_step(workflow, step, context)
            except Exception as e:
                # The message may already be out; the step still has to settle
                logger.exception(f"❌ Step {step.order} of {workflow_id} raised")
                result = DispatchResult(success=False, error=f"{type(e).__name__}: {e}")

            step.completed_at = self.clock()
            step.latency_ms = round((step.completed_at - step.started_at).total_seconds() * 1000, 2)
            step.message_id = result.message_id
            if result.success:
                step.status = StepStatus.COMPLETED
            else:
                step.status = StepStatus.FAILED
                step.error = result.error or "send failed"

            if not result.success and not step.best_effort:
                for remaining in steps[index + 1:]:
                    if remaining.status == StepStatus.PENDING:
                        remaining.status = StepStatus.SKIPPED
                return await self._fail(workflow, steps, step.order, f"Step {step.order} ({step.template_key}) failed: {step.error}")

            if not result.success:
                logger.warning(f"⚠️  Best-effort step {step.order} of {workflow_id} failed: {step.error}")

            await self.persistence.update_workflow(
                workflow_id,
                {"steps": steps, "in_flight": False},
                expected_statuses=[WorkflowStatus.IN_PROGRESS],
            )

        finished = await self.persistence.update_workflow(
            workflow_id,
            {"status": WorkflowStatus.COMPLETED, "completed_at": self.clock(), "in_flight": False},
            expected_statuses=[WorkflowStatus.IN_PROGRESS],
        )
        if finished:
            logger.info(f"✅ Workflow {workflow_id} completed")
            return finished
        return await self.get_workflow(workflow_id)

    async def _fail(
        self,
        workflow: Workflow,
        steps: List[WorkflowStep],
        failed_step: Optional[int],
        reason: str
    ) -> Workflow:
        for step in steps:
            if step.status == StepStatus.PENDING:
                step.status = StepStatus.SKIPPED
        failed = await self.persistence.update_workflow(
            workflow.id,
            {
                "status": WorkflowStatus.FAILED,
                "steps": steps,
                "in_flight": False,
                "failure_reason": reason,
                "failed_step": failed_step,
                "completed_at": self.clock(),
            },
            expected_statuses=[WorkflowStatus.IN_PROGRESS],
        )
        logger.error(f"❌ Workflow {workflow.id} failed: {reason}")
        return failed or await self.get_workflow(workflow.id)

    async def _context(self, workflow: Workflow) -> StepContext:
        organization = await self.persistence.get_organization(workflow.organization_id)
        if not organization:
            raise NotFoundError("Organization not found")
        customer = await self.persistence.get_customer(workflow.organization_id, workflow.customer_id)
        if not customer:
            raise NotFoundError(f"Customer {workflow.customer_id} not found")

        metadata = workflow.metadata or {}
        phone = metadata.get("phone_number") or customer.phone
        if not phone:
            raise InvalidRequestError("No phone number for workflow recipient")

        if metadata.get("language"):
            try:
                language = Language(metadata["language"])
            except ValueError:
                language = customer.language
        else:
            language = customer.language or organization.default_language

        variables: Dict[str, Any] = {
            "business_name": organization.name,
            "business_phone": organization.business_phone or organization.sms_phone_number,
            "customer_phone": customer.phone,
        }
        if customer.name:
            variables["customer_name"] = customer.name
        if workflow.appointment_id:
            appointment = await self.persistence.get_appointment(workflow.organization_id, workflow.appointment_id)
            if appointment:
                variables.update(appointment_variables(appointment, language, organization.timezone))
        variables.update(metadata.get("variables") or {})
        variables = {k: v for k, v in variables.items() if v is not None}

        return StepContext(organization, customer, phone, language, variables)

    async def _run_step(self, workflow: Workflow, step: WorkflowStep, context: StepContext) -> DispatchResult:
        meta = DispatchMetadata(
            message_type=workflow.workflow_type.value,
            customer_id=context.customer.id,
            workflow_id=workflow.id,
            appointment_id=workflow.appointment_id,
        )

        if step.step_type == StepType.EMERGENCY_BROADCAST:
            # Staff alerts go out in the organization's language
            staff_language = context.organization.default_language
            rendered = await self.templates.render_template(
                workflow.organization_id, step.template_key, staff_language, context.variables,
                staff_language
            )
            if not rendered.success:
                return DispatchResult(success=False, error=rendered.error, error_code=rendered.error_code)
            meta = meta.model_copy(update={
                "template_key": step.template_key,
                "language": rendered.language,
                "requested_language": rendered.requested_language,
                "language_fallback": rendered.fallback,
                "category": TemplateCategory.EMERGENCY,
            })
            return await self.dispatcher.send_emergency_broadcast(
                workflow.organization_id, rendered.text, rendered.language, meta
            )

        recipient = Recipient(
            phone=context.phone,
            customer_id=context.customer.id,
            name=context.customer.name,
            language=context.language,
        )
        results = await self.dispatcher.send_templated(
            workflow.organization_id,
            step.template_key,
            [recipient],
            context.variables,
            context.language,
            meta,
        )
        return results[0]

    # Cancellation

    async def cancel_workflow(self, workflow_id: str, organization_id: Optional[str] = None) -> Workflow:
        """
        Cancel a scheduled or in-progress workflow. Steps not yet started
        become `skipped`; messages already sent stay sent.
        """
        workflow = await self.get_workflow(workflow_id, organization_id)

        for _ in range(3):
            if workflow.is_terminal:
                raise InvalidStateTransition(
                    f"Workflow is already {workflow.status.value}",
                    details={"workflow_id": workflow_id, "status": workflow.status.value}
                )
            if workflow.in_flight:
                raise StepInFlight(
                    "A workflow step is being sent; retry the cancel shortly",
                    details={"workflow_id": workflow_id}
                )

            steps = [s.model_copy() for s in workflow.steps]
            for step in steps:
                if step.status == StepStatus.PENDING:
                    step.status = StepStatus.SKIPPED

            cancelled = await self.persistence.update_workflow(
                workflow_id,
                {"status": WorkflowStatus.CANCELLED, "cancelled_at": self.clock(), "steps": steps},
                expected_statuses=ACTIVE_STATUSES,
                expected_in_flight=False,
            )
            if cancelled:
                logger.info(f"🛑 Workflow {workflow_id} cancelled")
                return cancelled
            workflow = await self.get_workflow(workflow_id, organization_id)

        raise InvalidStateTransition("Workflow changed concurrently", details={"workflow_id": workflow_id})

    # Metrics

    async def get_workflow_metrics(
        self, organization_id: str, time_range: TimeRange = TimeRange.LAST_WEEK
    ) -> WorkflowMetrics:
        since = self.clock() - RANGE_SPAN[time_range]
        workflows = await self.persistence.list_workflows(organization_id, since=since)

        metrics = WorkflowMetrics(created=len(workflows))
        latencies: List[float] = []
        for workflow in workflows:
            status = workflow.status.value
            setattr(metrics, status, getattr(metrics, status) + 1)
            metrics.by_type[workflow.workflow_type.value] = metrics.by_type.get(workflow.workflow_type.value, 0) + 1
            for step in workflow.steps:
                if step.latency_ms is not None:
                    latencies.append(step.latency_ms)
                if step.best_effort and step.status == StepStatus.FAILED:
                    metrics.best_effort_failures += 1

        finished = metrics.completed + metrics.failed
        metrics.success_rate = round(metrics.completed / finished * 100, 2) if finished else 0.0
        metrics.avg_step_latency = round(sum(latencies) / len(latencies), 2) if latencies else 0.0
        return metrics

    # Appointment lifecycle triggers

    async def cancel_pending_for_appointment(self, appointment: Appointment) -> List[str]:
        pending = await self.persistence.list_workflows(
            appointment.organization_id,
            appointment_id=appointment.id,
            statuses=[WorkflowStatus.SCHEDULED],
        )
        cancelled = []
        for workflow in pending:
            try:
                await self.cancel_workflow(workflow.id, appointment.organization_id)
                cancelled.append(workflow.id)
            except InvalidStateTransition as e:
                logger.warning(f"⚠️  Could not cancel workflow {workflow.id}: {e.message}")
        return cancelled

    async def on_appointment_created(self, appointment: Appointment) -> List[Workflow]:
        """Confirmation now, reminder ahead of the visit when there is still time"""
        if not appointment.customer_id:
            logger.info(f"Appointment {appointment.id} has no customer, no workflows created")
            return []
        if appointment.status in (AppointmentStatus.CANCELLED, AppointmentStatus.COMPLETED, AppointmentStatus.NO_SHOW):
            return []

        metadata = {"language": appointment.language.value} if appointment.language else {}
        now = self.clock()
        created = [await self.create_workflow(
            appointment.organization_id,
            appointment.customer_id,
            WorkflowType.APPOINTMENT_CONFIRMATION,
            now,
            metadata=dict(metadata),
            appointment_id=appointment.id,
        )]

        remind_at = _aware(appointment.scheduled_start) - self.reminder_lead
        if remind_at > now:
            created.append(await self.create_workflow(
                appointment.organization_id,
                appointment.customer_id,
                WorkflowType.APPOINTMENT_REMINDER,
                remind_at,
                metadata=dict(metadata),
                appointment_id=appointment.id,
            ))
        return created

    async def on_appointment_rescheduled(self, appointment: Appointment) -> List[Workflow]:
        await self.cancel_pending_for_appointment(appointment)
        return await self.on_appointment_created(appointment)

    async def on_appointment_cancelled(self, appointment: Appointment) -> List[DispatchResult]:
        await self.cancel_pending_for_appointment(appointment)
        if not appointment.customer_id:
            return []

        organization = await self.persistence.get_organization(appointment.organization_id)
        customer = await self.persistence.get_customer(appointment.organization_id, appointment.customer_id)
        if not organization or not customer:
            return []

        language = appointment.language or customer.language or organization.default_language
        variables = {
            "business_name": organization.name,
            "business_phone": organization.business_phone or organization.sms_phone_number,
            "customer_name": customer.name,
            **appointment_variables(appointment, language, organization.timezone),
        }
        return await self.dispatcher.send_templated(
            appointment.organization_id,
            "appointment_cancelled",
            [Recipient(phone=customer.phone, customer_id=customer.id, name=customer.name, language=language)],
            {k: v for k, v in variables.items() if v is not None},
            language,
            DispatchMetadata(appointment_id=appointment.id, customer_id=customer.id),
        )

    async def on_appointment_completed(self, appointment: Appointment) -> List[Workflow]:
        if not appointment.customer_id:
            return []
        metadata = {"language": appointment.language.value} if appointment.language else {}
        return [await self.create_workflow(
            appointment.organization_id,
            appointment.customer_id,
            WorkflowType.FOLLOW_UP,
            self.clock() + self.follow_up_delay,
            metadata=metadata,
            appointment_id=appointment.id,
        )]

    async def handle_appointment_event(self, payload: AppointmentWebhookPayload) -> Dict[str, Any]:
        """Route a database change on the appointments table to the matching trigger"""
        if payload.type == "DELETE":
            if not payload.old_record:
                return {"action": "ignored"}
            old = Appointment.model_validate(payload.old_record)
            return {"action": "deleted", "cancelled": await self.cancel_pending_for_appointment(old)}

        if not payload.record:
            raise InvalidRequestError("Appointment record missing from webhook payload")
        appointment = Appointment.model_validate(payload.record)

        if payload.type == "INSERT":
            workflows = await self.on_appointment_created(appointment)
            return {"action": "created", "workflow_ids": [w.id for w in workflows]}

        old = Appointment.model_validate(payload.old_record) if payload.old_record else None
        if appointment.status == AppointmentStatus.CANCELLED and (not old or old.status != AppointmentStatus.CANCELLED):
            results = await self.on_appointment_cancelled(appointment)
            return {"action": "cancelled", "notified": any(r.success for r in results)}
        if appointment.status == AppointmentStatus.COMPLETED and (not old or old.status != AppointmentStatus.COMPLETED):
            workflows = await self.on_appointment_completed(appointment)
            return {"action": "completed", "workflow_ids": [w.id for w in workflows]}
        if old and _aware(old.scheduled_start) != _aware(appointment.scheduled_start):
            workflows = await self.on_appointment_rescheduled(appointment)
            return {"action": "rescheduled", "workflow_ids": [w.id for w in workflows]}
        return {"action": "ignored"}
