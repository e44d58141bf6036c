"""
Notification dispatcher: turns a logical send into vendor calls.

Content problems (bad number, opted-out recipient, oversized text, render
failure) are returned as failed results without touching the network.
Transport problems are retried with exponential backoff and, when the
provider is "auto", handed to the next configured provider.
"""
import asyncio
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional

from serviceai.config import settings
from serviceai.integrations.base import MessageSender
from serviceai.models import (
    DispatchMetadata,
    DispatchResult,
    Language,
    MessageRecord,
    MessageStatus,
    Organization,
    Recipient,
    SendReceipt,
    SMSProvider,
    TemplateCategory,
    utcnow,
)
from serviceai.notifications.delivery import DeliveryTracker
from serviceai.notifications.templates import TemplateStore
from serviceai.persistence import Persistence
from serviceai.utils.errors import (
    ContentError,
    EmptyMessage,
    MessageTooLong,
    NotFoundError,
    ProviderError,
    RecipientOptedOut,
)
from serviceai.utils.logging import logger
from serviceai.utils.phone_normalize import normalize_phone_for_comparison
from serviceai.utils.sms_segments import segment_count, split_message
from serviceai.utils.validation import validate_phone_number

PROVIDER_ORDER = [SMSProvider.TWILIO.value, SMSProvider.VONAGE.value]


def _failed(to: Optional[str], error: Exception, **extra: Any) -> DispatchResult:
    code = getattr(error, "code", None) or type(error).__name__
    return DispatchResult(
        success=False,
        to=to,
        error=getattr(error, "message", str(error)),
        error_code=str(code),
        transient=bool(getattr(error, "transient", False)),
        **extra
    )


class NotificationDispatcher:
    def __init__(
        self,
        persistence: Persistence,
        templates: TemplateStore,
        tracker: DeliveryTracker,
        senders: Dict[str, MessageSender],
        default_provider: Optional[str] = None,
        max_attempts: Optional[int] = None,
        base_delay: Optional[float] = None,
        max_delay: Optional[float] = None,
        max_segments: Optional[int] = None,
        status_callback: Optional[str] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], datetime] = utcnow
    ):
        self.persistence = persistence
        self.templates = templates
        self.tracker = tracker
        self.senders = senders
        self.default_provider = default_provider or settings.sms_default_provider
        self.max_attempts = max(1, max_attempts or settings.sms_max_attempts)
        self.base_delay = settings.sms_retry_base_delay if base_delay is None else base_delay
        self.max_delay = settings.sms_retry_max_delay if max_delay is None else max_delay
        self.max_segments = max_segments or settings.sms_max_segments
        self.status_callback = status_callback if status_callback is not None else settings.status_callback_url()
        self.sleep = sleep
        self.clock = clock

    # Provider selection / transport

    def provider_chain(self, organization: Organization, requested: SMSProvider = SMSProvider.AUTO) -> List[MessageSender]:
        """
        Senders to try, in order. An explicit provider is used alone; "auto"
        prefers the organization's provider, then the configured default,
        then the remaining configured senders.
        """
        requested = SMSProvider(requested)
        if requested != SMSProvider.AUTO:
            sender = self.senders.get(requested.value)
            return [sender] if sender and sender.is_configured else []

        preferred = []
        if organization.sms_provider != SMSProvider.AUTO:
            preferred.append(organization.sms_provider.value)
        if self.default_provider and self.default_provider != SMSProvider.AUTO.value:
            preferred.append(self.default_provider)
        chain: List[MessageSender] = []
        for name in preferred + PROVIDER_ORDER + list(self.senders):
            sender = self.senders.get(name)
            if sender and sender.is_configured and sender not in chain:
                chain.append(sender)
        return chain

    def _backoff(self, attempt: int) -> float:
        return min(self.max_delay, self.base_delay * (2 ** attempt))

    async def _send_with_retries(
        self,
        sender: MessageSender,
        to: str,
        body: str,
        from_number: Optional[str]
    ) -> SendReceipt:
        for attempt in range(self.max_attempts):
            try:
                return await sender.send(to, body, from_number=from_number, status_callback=self.status_callback)
            except ProviderError as e:
                if not e.transient or attempt >= self.max_attempts - 1:
                    raise
                delay = self._backoff(attempt)
                logger.warning(
                    f"⚠️  {sender.name} send to {to} failed ({e.message}), "
                    f"retry {attempt + 1}/{self.max_attempts - 1} in {delay:.1f}s"
                )
                if delay:
                    await self.sleep(delay)

    async def _transmit(
        self,
        organization: Organization,
        to: str,
        body: str,
        requested: SMSProvider
    ) -> SendReceipt:
        chain = self.provider_chain(organization, requested)
        if not chain:
            raise ProviderError(
                f"No SMS provider configured for {SMSProvider(requested).value}",
                status_code=503
            )

        last_error: Optional[ProviderError] = None
        for index, sender in enumerate(chain):
            from_number = organization.sms_phone_number if sender.name == SMSProvider.TWILIO.value else None
            try:
                return await self._send_with_retries(sender, to, body, from_number)
            except ProviderError as e:
                last_error = e
                if not e.transient:
                    raise
                if index < len(chain) - 1:
                    logger.warning(f"🔁 {sender.name} exhausted retries, failing over to {chain[index + 1].name}")
        raise last_error

    # Recording

    def _record(
        self,
        organization_id: str,
        to: str,
        body: str,
        meta: DispatchMetadata,
        segments: int,
        **fields: Any
    ) -> MessageRecord:
        language = meta.language or Language(settings.default_language)
        return MessageRecord(
            organization_id=organization_id,
            workflow_id=meta.workflow_id,
            appointment_id=meta.appointment_id,
            customer_id=meta.customer_id,
            phone_number=to,
            message_type=meta.message_type or meta.template_key or meta.category.value,
            template_key=meta.template_key,
            category=meta.category,
            language=language,
            requested_language=meta.requested_language or language,
            language_fallback=meta.language_fallback,
            content=body,
            segments=segments,
            metadata=dict(meta.extra),
            **fields
        )

    async def _check_recipient(self, organization_id: str, phone: str, meta: DispatchMetadata) -> str:
        to = validate_phone_number(phone)
        customer = await self.persistence.find_customer_by_phone(organization_id, to)
        if customer and not customer.sms_opt_in:
            raise RecipientOptedOut(
                f"Recipient {to} has opted out of SMS",
                details={"customer_id": customer.id}
            )
        if customer and not meta.customer_id:
            meta.customer_id = customer.id
        return to

    async def _deliver(
        self,
        organization: Organization,
        phone: str,
        body: str,
        meta: DispatchMetadata
    ) -> DispatchResult:
        meta = meta.model_copy(deep=True)
        try:
            to = await self._check_recipient(organization.id, phone, meta)
            if not (body or "").strip():
                raise EmptyMessage("Message body is empty")
            if meta.category == TemplateCategory.EMERGENCY:
                parts = split_message(body)
            else:
                segments = segment_count(body)
                if segments > self.max_segments:
                    raise MessageTooLong(
                        f"Message needs {segments} segments (max {self.max_segments})",
                        details={"segments": segments, "max_segments": self.max_segments}
                    )
                parts = [body]
        except ContentError as e:
            logger.warning(f"⚠️  Not sending to {phone}: {e.message}")
            return _failed(phone, e, language=meta.language, fallback=meta.language_fallback)

        if meta.category == TemplateCategory.EMERGENCY:
            return await self._deliver_logged_first(organization, to, parts, meta)

        segments = segment_count(body)
        try:
            receipt = await self._transmit(organization, to, body, meta.provider)
        except ProviderError as e:
            record = await self.tracker.record_attempt(self._record(
                organization.id, to, body, meta, segments,
                status=MessageStatus.FAILED,
                provider=e.provider,
                error_code=e.code,
                error_message=e.message,
            ))
            logger.error(f"❌ SMS to {to} failed: {e.message}")
            return _failed(
                to, e,
                provider=e.provider,
                record_id=record.id,
                segments=segments,
                language=meta.language,
                fallback=meta.language_fallback
            )

        cost = self._cost(receipt.provider, segments)
        record = await self.tracker.record_attempt(self._record(
            organization.id, to, body, meta, segments,
            status=MessageStatus.SENT,
            provider=receipt.provider,
            external_message_id=receipt.message_id,
            cost=cost,
            sent_at=self.clock(),
        ))
        return DispatchResult(
            success=True,
            provider=receipt.provider,
            message_id=receipt.message_id,
            record_id=record.id,
            to=to,
            cost=cost,
            segments=segments,
            language=meta.language,
            fallback=meta.language_fallback,
        )

    async def _deliver_logged_first(
        self,
        organization: Organization,
        to: str,
        parts: List[str],
        meta: DispatchMetadata
    ) -> DispatchResult:
        """Emergency sends: a queued row exists before each network call"""
        results: List[DispatchResult] = []
        for part in parts:
            record = await self.tracker.record_attempt(
                self._record(organization.id, to, part, meta, 1, status=MessageStatus.QUEUED)
            )
            logger.info(f"🚨 Emergency SMS logged ({record.id}), sending to {to}")
            try:
                receipt = await self._transmit(organization, to, part, meta.provider)
            except ProviderError as e:
                await self.persistence.update_message(record.id, {
                    "status": MessageStatus.FAILED,
                    "provider": e.provider,
                    "error_code": e.code,
                    "error_message": e.message,
                }, expected_status=MessageStatus.QUEUED)
                logger.error(f"❌ Emergency SMS to {to} failed: {e.message}")
                results.append(_failed(to, e, provider=e.provider, record_id=record.id, segments=1))
                break

            cost = self._cost(receipt.provider, 1)
            await self.persistence.update_message(record.id, {
                "status": MessageStatus.SENT,
                "provider": receipt.provider,
                "external_message_id": receipt.message_id,
                "cost": cost,
                "sent_at": self.clock(),
            }, expected_status=MessageStatus.QUEUED)
            results.append(DispatchResult(
                success=True,
                provider=receipt.provider,
                message_id=receipt.message_id,
                record_id=record.id,
                to=to,
                cost=cost,
                segments=1,
            ))

        first = results[0]
        failure = next((r for r in results if not r.success), None)
        return DispatchResult(
            success=failure is None,
            provider=(failure or first).provider,
            message_id=first.message_id,
            record_id=first.record_id,
            to=to,
            cost=round(sum(r.cost or 0.0 for r in results), 6),
            segments=len(parts),
            language=meta.language,
            fallback=meta.language_fallback,
            error=failure.error if failure else None,
            error_code=failure.error_code if failure else None,
            transient=failure.transient if failure else False,
        )

    def _cost(self, provider: str, segments: int) -> float:
        sender = self.senders.get(provider)
        per_segment = sender.cost_per_segment if sender else 0.0
        return round(per_segment * segments, 6)

    async def _organization(self, organization_id: str) -> Organization:
        organization = await self.persistence.get_organization(organization_id)
        if not organization:
            raise NotFoundError("Organization not found", details={"organization_id": organization_id})
        return organization

    # Public operations

    async def send_direct(
        self,
        organization_id: str,
        to: str,
        text: str,
        metadata: Optional[DispatchMetadata] = None
    ) -> DispatchResult:
        organization = await self._organization(organization_id)
        meta = metadata or DispatchMetadata()
        logger.info(f"📤 Sending {meta.category.value} SMS for {organization_id}")
        return await self._deliver(organization, to, text, meta)

    async def send_templated(
        self,
        organization_id: str,
        template_key: str,
        recipients: List[Recipient],
        variables: Optional[Dict[str, Any]] = None,
        language: Language = Language.EN,
        metadata: Optional[DispatchMetadata] = None
    ) -> List[DispatchResult]:
        """
        One result per recipient, in order. A failing recipient never stops
        the rest of the batch.
        """
        organization = await self._organization(organization_id)
        base = metadata or DispatchMetadata()
        results: List[DispatchResult] = []

        for recipient in recipients:
            requested = recipient.language or language
            merged = {**(variables or {}), **recipient.variables}
            if recipient.name and "customer_name" not in merged:
                merged["customer_name"] = recipient.name

            rendered = await self.templates.render_template(
                organization_id, template_key, requested, merged, organization.default_language
            )
            if not rendered.success:
                results.append(DispatchResult(
                    success=False,
                    to=recipient.phone,
                    language=rendered.language,
                    fallback=rendered.fallback,
                    error=rendered.error,
                    error_code=rendered.error_code,
                ))
                continue

            meta = base.model_copy(update={
                "template_key": template_key,
                "language": rendered.language,
                "requested_language": rendered.requested_language,
                "language_fallback": rendered.fallback,
                "customer_id": recipient.customer_id or base.customer_id,
                "category": base.category if base.category != TemplateCategory.DIRECT else rendered.category,
            })
            results.append(await self._deliver(organization, recipient.phone, rendered.text, meta))

        sent = sum(1 for r in results if r.success)
        logger.info(f"✅ Template {template_key}: {sent}/{len(results)} recipients sent")
        return results

    async def emergency_recipients(self, organization: Organization) -> List[Recipient]:
        """On-call contact first, then active SMS-enabled contacts, then the org fallback number"""
        recipients: List[Recipient] = []
        seen = set()

        def add(phone: Optional[str], name: Optional[str]):
            key = normalize_phone_for_comparison(phone)
            if key and key not in seen:
                seen.add(key)
                recipients.append(Recipient(phone=phone, name=name))

        on_call = await self.persistence.get_on_call_contact(organization.id, self.clock())
        if on_call and on_call.sms_enabled:
            add(on_call.phone, on_call.name)
        for contact in await self.persistence.list_emergency_contacts(organization.id):
            if contact.is_active and contact.sms_enabled:
                add(contact.phone, contact.name)
        if not recipients:
            add(organization.emergency_contact_phone, organization.name)
        return recipients

    async def send_emergency_broadcast(
        self,
        organization_id: str,
        message: str,
        language: Language = Language.EN,
        metadata: Optional[DispatchMetadata] = None
    ) -> DispatchResult:
        """
        Alert every reachable emergency contact. Succeeds if at least one
        contact was reached; per-contact outcomes are in `deliveries`.
        """
        organization = await self._organization(organization_id)
        recipients = await self.emergency_recipients(organization)
        if not recipients:
            logger.error(f"❌ No emergency contacts configured for {organization_id}")
            return DispatchResult(
                success=False,
                language=language,
                error="No emergency contacts configured",
                error_code="NoEmergencyContacts",
            )

        meta = (metadata or DispatchMetadata()).model_copy(update={
            "category": TemplateCategory.EMERGENCY,
            "language": (metadata.language if metadata and metadata.language else language),
        })
        logger.info(f"🚨 Emergency broadcast for {organization_id} to {len(recipients)} contact(s)")

        deliveries = [await self._deliver(organization, r.phone, message, meta) for r in recipients]
        reached = [d for d in deliveries if d.success]
        first = reached[0] if reached else deliveries[0]
        return DispatchResult(
            success=bool(reached),
            provider=first.provider,
            message_id=first.message_id,
            record_id=first.record_id,
            to=first.to,
            cost=round(sum(d.cost or 0.0 for d in deliveries), 6),
            segments=sum(d.segments for d in deliveries),
            language=meta.language,
            fallback=meta.language_fallback,
            error=None if reached else first.error,
            error_code=None if reached else first.error_code,
            transient=False if reached else first.transient,
            deliveries=deliveries,
        )
