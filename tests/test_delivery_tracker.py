"""
Tests for delivery tracking and SMS analytics.

Coverage:
- Idempotent, monotonic status updates
- Unknown message ids are discarded without side effects
- Statistics, trends (zero-filled), template and language performance
"""
from datetime import timedelta

import pytest

from serviceai.models import Language, MessageStatus, Recipient, TimeRange
from serviceai.notifications import StatusUpdateOutcome

from tests.conftest import ORG_A, ORG_B

WELCOME_VARS = {"business_name": "Cool Air HVAC", "business_phone": "+15035550100"}


async def _send(services, phone="+15035552001", text="Hello"):
    result = await services.dispatcher.send_direct(ORG_A, phone, text)
    assert result.success
    return result


@pytest.mark.asyncio
async def test_same_status_applied_many_times_equals_once(services, persistence):
    result = await _send(services)
    tracker = services.tracker

    first = await tracker.record_status_update(result.message_id, "delivered")
    after_first = persistence.messages[result.record_id].model_dump(exclude={"updated_at"})
    replays = [await tracker.record_status_update(result.message_id, "delivered") for _ in range(3)]

    assert first == StatusUpdateOutcome.APPLIED
    assert replays == [StatusUpdateOutcome.DUPLICATE] * 3
    assert persistence.messages[result.record_id].model_dump(exclude={"updated_at"}) == after_first
    assert len(persistence.delivery_events) == 1


@pytest.mark.asyncio
async def test_out_of_order_status_does_not_regress(services, persistence):
    result = await _send(services)
    await services.tracker.record_status_update(result.message_id, "delivered")
    outcome = await services.tracker.record_status_update(result.message_id, "sent")

    assert outcome == StatusUpdateOutcome.STALE
    assert persistence.messages[result.record_id].status == MessageStatus.DELIVERED


@pytest.mark.asyncio
async def test_terminal_status_is_final(services, persistence):
    result = await _send(services)
    await services.tracker.record_status_update(result.message_id, "undelivered", error_code="30003")
    outcome = await services.tracker.record_status_update(result.message_id, "delivered")

    assert outcome == StatusUpdateOutcome.STALE
    record = persistence.messages[result.record_id]
    assert record.status == MessageStatus.UNDELIVERED
    assert record.error_code == "30003"


@pytest.mark.asyncio
async def test_unknown_message_is_discarded(services, persistence):
    outcome = await services.tracker.record_status_update("SM_does_not_exist", "delivered")
    assert outcome == StatusUpdateOutcome.UNKNOWN_MESSAGE
    assert persistence.messages == {}
    assert persistence.delivery_events == []


@pytest.mark.asyncio
async def test_intermediate_vendor_statuses_are_ignored(services, persistence):
    result = await _send(services)
    assert await services.tracker.record_status_update(result.message_id, "sending") == StatusUpdateOutcome.IGNORED
    assert persistence.messages[result.record_id].status == MessageStatus.SENT


@pytest.mark.asyncio
async def test_statistics(services):
    delivered = await _send(services, "+15035552001")
    failed = await _send(services, "+15035552002")
    await _send(services, "+15035552003")

    record = await services.persistence.get_message_by_external_id(delivered.message_id)
    await services.tracker.record_status_update(
        delivered.message_id, "delivered", occurred_at=record.sent_at + timedelta(seconds=4)
    )
    await services.tracker.record_status_update(failed.message_id, "failed", error_message="Carrier rejected")

    stats = await services.tracker.get_delivery_statistics(ORG_A, TimeRange.LAST_DAY)
    assert stats.totalSent == 3
    assert stats.delivered == 1
    assert stats.failed == 1
    assert stats.pending == 1
    assert stats.deliveryRate == pytest.approx(33.33)
    assert stats.failureRate == pytest.approx(33.33)
    assert stats.averageDeliveryTime == pytest.approx(4.0)
    assert stats.totalCost == pytest.approx(0.0225)


@pytest.mark.asyncio
async def test_statistics_are_scoped_to_the_organization(services):
    await _send(services)
    stats = await services.tracker.get_delivery_statistics(ORG_B, TimeRange.LAST_DAY)
    assert stats.totalSent == 0
    assert stats.deliveryRate == 0.0


@pytest.mark.asyncio
async def test_trends_for_empty_org_are_zero_filled(services):
    buckets = await services.tracker.get_delivery_trends(ORG_B, TimeRange.LAST_DAY)
    assert len(buckets) == 24
    assert all(b.sent == 0 and b.delivered == 0 and b.failed == 0 and b.deliveryRate == 0.0 for b in buckets)
    starts = [b.bucketStart for b in buckets]
    assert all(later - earlier == timedelta(hours=1) for earlier, later in zip(starts, starts[1:]))


@pytest.mark.asyncio
async def test_trends_count_messages_in_current_bucket(services):
    result = await _send(services)
    await services.tracker.record_status_update(result.message_id, "delivered")

    buckets = await services.tracker.get_delivery_trends(ORG_A, TimeRange.LAST_WEEK)
    assert len(buckets) == 7
    assert buckets[-1].sent == 1
    assert buckets[-1].deliveryRate == 100.0
    assert sum(b.sent for b in buckets) == 1


@pytest.mark.asyncio
async def test_template_performance_lists_common_errors(services, senders):
    ok, bad = await services.dispatcher.send_templated(
        ORG_A, "welcome_message",
        [Recipient(phone="+15035552001"), Recipient(phone="+15035552002")],
        WELCOME_VARS,
    )
    await services.tracker.record_status_update(ok.message_id, "delivered")
    await services.tracker.record_status_update(bad.message_id, "undelivered", error_message="Unreachable handset")

    performance = await services.tracker.get_template_performance(ORG_A, "welcome_message")
    assert performance.totalSent == 2
    assert performance.delivered == 1
    assert performance.failed == 1
    assert performance.commonErrors == ["Unreachable handset"]


@pytest.mark.asyncio
async def test_language_performance_splits_by_language(services):
    await services.dispatcher.send_templated(
        ORG_A, "welcome_message",
        [Recipient(phone="+15035552001", language=Language.ES), Recipient(phone="+15035552002")],
        WELCOME_VARS,
    )
    performance = await services.tracker.get_language_performance(ORG_A)
    assert performance.english.totalSent == 1
    assert performance.spanish.totalSent == 1
    assert performance.fallbackCount == 0
