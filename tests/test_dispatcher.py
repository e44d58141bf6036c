"""
Tests for the notification dispatcher.

Coverage:
- Partial-batch templated sends
- Content errors (bad number, opt-out, oversized or blank text) never hit the network
- Retry with backoff, failover on transient errors only
- Emergency sends are logged before each network call
- Emergency broadcast recipient resolution
"""
import pytest

from serviceai.models import (
    DispatchMetadata,
    Language,
    MessageStatus,
    Recipient,
    SMSProvider,
    TemplateCategory,
)

from tests.conftest import ORG_A

WELCOME_VARS = {"business_name": "Cool Air HVAC", "business_phone": "+15035550100"}


@pytest.mark.asyncio
async def test_partial_batch_returns_one_result_per_recipient(services, senders, persistence):
    recipients = [
        Recipient(phone="+15035552001"),
        Recipient(phone="not-a-number"),
        Recipient(phone="(503) 555-2003"),
        Recipient(phone="123"),
    ]
    results = await services.dispatcher.send_templated(
        ORG_A, "welcome_message", recipients, WELCOME_VARS, Language.EN
    )

    assert len(results) == 4
    assert [r.success for r in results] == [True, False, True, False]
    assert results[1].error_code == "InvalidPhoneNumber"
    assert results[3].error_code == "InvalidPhoneNumber"
    assert results[2].to == "+15035552003"
    assert len(senders.all_sent) == 2
    assert len(persistence.messages) == 2


@pytest.mark.asyncio
async def test_recipient_language_picks_template_language(services, senders, persistence):
    results = await services.dispatcher.send_templated(
        ORG_A, "welcome_message",
        [Recipient(phone="+15035551001", language=Language.ES)],
        WELCOME_VARS, Language.EN,
    )
    assert results[0].success
    assert results[0].language == Language.ES
    assert senders.twilio.sent[0].body.startswith("¡Bienvenido")

    record = next(iter(persistence.messages.values()))
    assert record.language == Language.ES
    assert record.template_key == "welcome_message"
    assert record.customer_id == "cust-es"


@pytest.mark.asyncio
async def test_send_uses_org_number_and_status_callback(services, senders):
    result = await services.dispatcher.send_direct(ORG_A, "+15035552001", "Hello")
    assert result.success
    sent = senders.twilio.sent[0]
    assert sent.from_number == "+15035550001"
    assert sent.status_callback == "https://api.example.com/webhooks/twilio/status"


@pytest.mark.asyncio
async def test_sent_record_carries_provider_id_and_cost(services, persistence):
    result = await services.dispatcher.send_direct(ORG_A, "+15035552001", "Hello")
    record = persistence.messages[result.record_id]
    assert record.status == MessageStatus.SENT
    assert record.external_message_id == result.message_id
    assert record.provider == "twilio"
    assert record.cost == pytest.approx(0.0075)
    assert record.sent_at is not None


@pytest.mark.asyncio
async def test_transient_error_is_retried_on_same_provider(services, senders):
    senders.twilio.transient(times=1)
    result = await services.dispatcher.send_direct(ORG_A, "+15035552001", "Hello")
    assert result.success
    assert result.provider == "twilio"
    assert senders.twilio.calls == 2
    assert senders.vonage.calls == 0


@pytest.mark.asyncio
async def test_fails_over_after_retries_exhausted(services, senders):
    senders.twilio.transient(times=3)
    result = await services.dispatcher.send_direct(ORG_A, "+15035552001", "Hello")
    assert result.success
    assert result.provider == "vonage"
    assert senders.twilio.calls == 3
    assert len(senders.vonage.sent) == 1


@pytest.mark.asyncio
async def test_permanent_error_is_not_retried_or_failed_over(services, senders, persistence):
    senders.twilio.permanent()
    result = await services.dispatcher.send_direct(ORG_A, "+15035552001", "Hello")
    assert not result.success
    assert not result.transient
    assert result.error_code == "21211"
    assert senders.twilio.calls == 1
    assert senders.vonage.calls == 0

    record = persistence.messages[result.record_id]
    assert record.status == MessageStatus.FAILED
    assert record.error_code == "21211"


@pytest.mark.asyncio
async def test_explicit_provider_never_fails_over(services, senders):
    senders.twilio.transient(times=3)
    result = await services.dispatcher.send_direct(
        ORG_A, "+15035552001", "Hello", DispatchMetadata(provider=SMSProvider.TWILIO)
    )
    assert not result.success
    assert result.transient
    assert senders.vonage.calls == 0


@pytest.mark.asyncio
async def test_no_configured_provider_fails_cleanly(services, senders):
    senders.twilio.configured = False
    senders.vonage.configured = False
    result = await services.dispatcher.send_direct(ORG_A, "+15035552001", "Hello")
    assert not result.success
    assert "No SMS provider" in result.error


@pytest.mark.asyncio
async def test_opted_out_recipient_is_never_sent(services, senders, persistence):
    await persistence.update_customer(ORG_A, "cust-en", {"sms_opt_in": False})
    result = await services.dispatcher.send_direct(ORG_A, "+15035551002", "Hello")
    assert not result.success
    assert result.error_code == "RecipientOptedOut"
    assert senders.all_sent == []
    assert persistence.messages == {}


@pytest.mark.asyncio
async def test_oversized_text_is_rejected_before_sending(services, senders, persistence):
    result = await services.dispatcher.send_direct(ORG_A, "+15035552001", "x" * 500)
    assert not result.success
    assert result.error_code == "MessageTooLong"
    assert senders.all_sent == []
    assert persistence.messages == {}


@pytest.mark.asyncio
async def test_blank_emergency_text_is_rejected_before_sending(services, senders, persistence):
    result = await services.dispatcher.send_direct(
        ORG_A, "+15035550400", " " * 200, DispatchMetadata(category=TemplateCategory.EMERGENCY)
    )
    assert not result.success
    assert result.error_code == "EmptyMessage"
    assert senders.all_sent == []
    assert persistence.messages == {}


@pytest.mark.asyncio
async def test_emergency_text_is_split_and_logged_before_each_send(services, senders, persistence):
    seen_queued = []

    def check_logged(to, body):
        queued = [
            m for m in persistence.messages.values()
            if m.content == body and m.status == MessageStatus.QUEUED
        ]
        seen_queued.append(len(queued) == 1)

    senders.twilio.before_send = check_logged
    text = " ".join(["Gas leak reported at 12 Main St, customer evacuated."] * 8)

    result = await services.dispatcher.send_direct(
        ORG_A, "+15035550400", text, DispatchMetadata(category=TemplateCategory.EMERGENCY)
    )

    assert result.success
    assert result.segments == len(senders.twilio.sent) > 1
    assert all(seen_queued)
    assert all(m.status == MessageStatus.SENT for m in persistence.messages.values())
    assert senders.twilio.sent[0].body.startswith(f"(1/{result.segments}) ")


@pytest.mark.asyncio
async def test_failed_emergency_send_keeps_its_log_row(services, senders, persistence):
    senders.twilio.permanent()
    result = await services.dispatcher.send_direct(
        ORG_A, "+15035550400", "Gas leak", DispatchMetadata(category=TemplateCategory.EMERGENCY)
    )
    assert not result.success
    record = persistence.messages[result.record_id]
    assert record.status == MessageStatus.FAILED
    assert record.category == TemplateCategory.EMERGENCY


@pytest.mark.asyncio
async def test_broadcast_reaches_on_call_contact_once(services, senders, on_call_contact):
    result = await services.dispatcher.send_emergency_broadcast(ORG_A, "Flooded basement at 4 Elm St")
    assert result.success
    assert [d.to for d in result.deliveries] == ["+15035550400"]


@pytest.mark.asyncio
async def test_broadcast_without_contacts_uses_org_emergency_phone(services, senders):
    result = await services.dispatcher.send_emergency_broadcast(ORG_A, "No heat, elderly resident")
    assert result.success
    assert senders.twilio.sent[0].to == "+15035550300"
