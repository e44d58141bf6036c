"""
SMS delivery tracking and delivery analytics.

Status callbacks are applied with a compare-and-set on the record's current
status so replays and out-of-order callbacks settle on one final state.
Analytics are computed from the message rows at query time.
"""
from collections import Counter
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Tuple

from serviceai.models import (
    DeliveryEvent,
    DeliveryStatistics,
    Language,
    LanguageComparison,
    LanguagePerformance,
    MessageDirection,
    MessageRecord,
    MessageStatus,
    TemplatePerformance,
    TERMINAL_MESSAGE_STATUSES,
    TimeRange,
    TrendBucket,
    message_status_rank,
    utcnow,
)
from serviceai.persistence import Persistence
from serviceai.utils.errors import DuplicateRecordError
from serviceai.utils.logging import logger

# Vendor lifecycle statuses that carry no delivery outcome
IGNORED_STATUSES = {"accepted", "queued", "sending", "receiving", "received", "scheduled"}

# time range -> (bucket width, bucket count)
TREND_GRID: Dict[TimeRange, Tuple[timedelta, int]] = {
    TimeRange.LAST_HOUR: (timedelta(minutes=5), 12),
    TimeRange.LAST_DAY: (timedelta(hours=1), 24),
    TimeRange.LAST_WEEK: (timedelta(days=1), 7),
    TimeRange.LAST_MONTH: (timedelta(days=1), 30),
}

RANGE_SPAN: Dict[TimeRange, timedelta] = {
    TimeRange.LAST_HOUR: timedelta(hours=1),
    TimeRange.LAST_DAY: timedelta(hours=24),
    TimeRange.LAST_WEEK: timedelta(days=7),
    TimeRange.LAST_MONTH: timedelta(days=30),
}

FAILED_STATUSES = {MessageStatus.FAILED, MessageStatus.UNDELIVERED}


class StatusUpdateOutcome:
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    STALE = "stale"
    IGNORED = "ignored"
    UNKNOWN_MESSAGE = "unknown_message"


def _percent(part: int, whole: int) -> float:
    return round(part / whole * 100, 2) if whole else 0.0


def _stamp(record: MessageRecord) -> datetime:
    return record.sent_at or record.created_at


def _floor(moment: datetime, width: timedelta) -> datetime:
    if width >= timedelta(days=1):
        return moment.replace(hour=0, minute=0, second=0, microsecond=0)
    if width >= timedelta(hours=1):
        return moment.replace(minute=0, second=0, microsecond=0)
    step = int(width.total_seconds() // 60)
    return moment.replace(minute=moment.minute - moment.minute % step, second=0, microsecond=0)


def compute_statistics(records: List[MessageRecord]) -> DeliveryStatistics:
    stats = DeliveryStatistics(totalSent=len(records))
    delivery_seconds: List[float] = []
    by_language: Counter = Counter()
    by_template: Counter = Counter()
    cost = 0.0

    for record in records:
        if record.status == MessageStatus.DELIVERED:
            stats.delivered += 1
            if record.sent_at and record.delivered_at:
                delivery_seconds.append((record.delivered_at - record.sent_at).total_seconds())
        elif record.status == MessageStatus.FAILED:
            stats.failed += 1
        elif record.status == MessageStatus.UNDELIVERED:
            stats.undelivered += 1
        else:
            stats.pending += 1

        by_language[record.language.value] += 1
        by_template[record.template_key or record.message_type] += 1
        if record.language_fallback:
            stats.fallbackCount += 1
        cost += record.cost or 0.0

    stats.deliveryRate = _percent(stats.delivered, stats.totalSent)
    stats.failureRate = _percent(stats.failed + stats.undelivered, stats.totalSent)
    if delivery_seconds:
        stats.averageDeliveryTime = round(sum(delivery_seconds) / len(delivery_seconds), 2)
    stats.totalCost = round(cost, 4)
    stats.byLanguage = dict(by_language)
    stats.byTemplate = dict(by_template)
    return stats


class DeliveryTracker:
    def __init__(self, persistence: Persistence, clock: Callable[[], datetime] = utcnow):
        self.persistence = persistence
        self.clock = clock

    # Recording

    async def record_attempt(self, record: MessageRecord) -> MessageRecord:
        try:
            return await self.persistence.insert_message(record)
        except DuplicateRecordError:
            logger.info(f"↩️  Message {record.external_message_id} already recorded, keeping existing row")
            existing = await self.persistence.get_message_by_external_id(
                record.external_message_id, record.organization_id
            )
            return existing or record

    async def record_status_update(
        self,
        external_message_id: str,
        status: str,
        error_code: Optional[str] = None,
        error_message: Optional[str] = None,
        occurred_at: Optional[datetime] = None
    ) -> str:
        """
        Apply a vendor delivery status to the matching message record.

        Never raises for unknown ids or out-of-order statuses; the outcome is
        returned for logging instead, so the webhook can always acknowledge.
        """
        normalized = (status or "").strip().lower()
        if normalized in IGNORED_STATUSES:
            logger.debug(f"Ignoring intermediate status {normalized} for {external_message_id}")
            return StatusUpdateOutcome.IGNORED
        try:
            new_status = MessageStatus(normalized)
        except ValueError:
            logger.warning(f"⚠️  Unrecognized SMS status '{status}' for {external_message_id} (flagged for review)")
            return StatusUpdateOutcome.IGNORED

        record = await self.persistence.get_message_by_external_id(external_message_id)
        if not record:
            logger.warning(f"⚠️  Status {normalized} for unknown message {external_message_id}, discarding")
            return StatusUpdateOutcome.UNKNOWN_MESSAGE

        when = occurred_at or self.clock()
        for _ in range(3):
            if record.status == new_status:
                logger.info(f"↩️  Duplicate status {normalized} for {external_message_id}")
                return StatusUpdateOutcome.DUPLICATE
            if record.status in TERMINAL_MESSAGE_STATUSES or (
                message_status_rank(new_status) <= message_status_rank(record.status)
            ):
                logger.info(
                    f"⏭️  Stale status {normalized} for {external_message_id} (current: {record.status.value})"
                )
                return StatusUpdateOutcome.STALE

            fields = {"status": new_status}
            if new_status == MessageStatus.SENT and not record.sent_at:
                fields["sent_at"] = when
            if new_status == MessageStatus.DELIVERED:
                fields["delivered_at"] = when
            if new_status in FAILED_STATUSES:
                fields["error_code"] = error_code
                fields["error_message"] = error_message

            updated = await self.persistence.update_message(record.id, fields, expected_status=record.status)
            if updated:
                await self.persistence.insert_delivery_event(DeliveryEvent(
                    organization_id=record.organization_id,
                    message_id=record.id,
                    external_message_id=external_message_id,
                    status=new_status,
                    error_code=error_code,
                    error_message=error_message,
                    occurred_at=when,
                ))
                logger.info(f"✅ SMS delivery tracked: {external_message_id} -> {normalized}")
                return StatusUpdateOutcome.APPLIED

            # Lost the race; look at what the winner wrote
            record = await self.persistence.get_message_by_external_id(external_message_id)
            if not record:
                return StatusUpdateOutcome.UNKNOWN_MESSAGE

        logger.warning(f"⚠️  Gave up applying {normalized} to {external_message_id} after concurrent updates")
        return StatusUpdateOutcome.STALE

    # Analytics

    async def _outbound(
        self,
        organization_id: str,
        since: datetime,
        template_key: Optional[str] = None
    ) -> List[MessageRecord]:
        return await self.persistence.list_messages(
            organization_id, since, direction=MessageDirection.OUTBOUND, template_key=template_key
        )

    async def get_delivery_statistics(
        self, organization_id: str, time_range: TimeRange = TimeRange.LAST_DAY
    ) -> DeliveryStatistics:
        since = self.clock() - RANGE_SPAN[time_range]
        stats = compute_statistics(await self._outbound(organization_id, since))
        logger.info(
            f"📊 SMS statistics for {organization_id} ({time_range.value}): "
            f"{stats.totalSent} total, {stats.deliveryRate:.2f}% delivered"
        )
        return stats

    async def get_delivery_trends(
        self, organization_id: str, time_range: TimeRange = TimeRange.LAST_WEEK
    ) -> List[TrendBucket]:
        width, count = TREND_GRID[time_range]
        last_start = _floor(self.clock(), width)
        first_start = last_start - width * (count - 1)
        buckets = [TrendBucket(bucketStart=first_start + width * i) for i in range(count)]

        for record in await self._outbound(organization_id, first_start):
            index = int((_stamp(record) - first_start) // width)
            if not 0 <= index < count:
                continue
            bucket = buckets[index]
            bucket.sent += 1
            if record.status == MessageStatus.DELIVERED:
                bucket.delivered += 1
            elif record.status in FAILED_STATUSES:
                bucket.failed += 1

        for bucket in buckets:
            bucket.deliveryRate = _percent(bucket.delivered, bucket.sent)
        return buckets

    async def get_template_performance(
        self,
        organization_id: str,
        template_key: str,
        time_range: TimeRange = TimeRange.LAST_WEEK
    ) -> TemplatePerformance:
        since = self.clock() - RANGE_SPAN[time_range]
        records = await self._outbound(organization_id, since, template_key=template_key)
        stats = compute_statistics(records)

        errors = Counter(
            r.error_message for r in records
            if r.status in FAILED_STATUSES and r.error_message
        )
        return TemplatePerformance(
            templateKey=template_key,
            totalSent=stats.totalSent,
            delivered=stats.delivered,
            failed=stats.failed + stats.undelivered,
            deliveryRate=stats.deliveryRate,
            averageDeliveryTime=stats.averageDeliveryTime,
            fallbackCount=stats.fallbackCount,
            byLanguage=stats.byLanguage,
            commonErrors=[message for message, _ in errors.most_common(5)],
        )

    async def get_language_performance(
        self, organization_id: str, time_range: TimeRange = TimeRange.LAST_MONTH
    ) -> LanguagePerformance:
        since = self.clock() - RANGE_SPAN[time_range]
        records = await self._outbound(organization_id, since)
        english = compute_statistics([r for r in records if r.language == Language.EN])
        spanish = compute_statistics([r for r in records if r.language == Language.ES])
        return LanguagePerformance(
            english=english,
            spanish=spanish,
            comparison=LanguageComparison(
                deliveryRateDifference=round(spanish.deliveryRate - english.deliveryRate, 2),
                averageDeliveryTimeDifference=round(
                    spanish.averageDeliveryTime - english.averageDeliveryTime, 2
                ),
            ),
            fallbackCount=english.fallbackCount + spanish.fallbackCount,
        )
