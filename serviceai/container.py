"""
Service container: every capability is built once from settings and handed
to request handlers explicitly.
"""
import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable, Dict, Optional

from serviceai.config import Settings, settings as default_settings
from serviceai.integrations import MessageSender, TwilioService, VonageClient
from serviceai.models import utcnow
from serviceai.notifications import (
    DeliveryTracker,
    EmergencyDetector,
    InboundSMSHandler,
    NotificationDispatcher,
    TemplateStore,
    WorkflowEngine,
)
from serviceai.persistence import InMemoryPersistence, Persistence, SupabasePersistence
from serviceai.utils.logging import logger


@dataclass
class Services:
    settings: Settings
    persistence: Persistence
    templates: TemplateStore
    tracker: DeliveryTracker
    dispatcher: NotificationDispatcher
    workflows: WorkflowEngine
    inbound: InboundSMSHandler
    detector: EmergencyDetector
    clock: Callable[[], datetime] = utcnow


def build_persistence(config: Settings) -> Persistence:
    if config.supabase_url and config.supabase_service_role_key:
        return SupabasePersistence(config.supabase_url, config.supabase_service_role_key)
    logger.warning("⚠️  Supabase not configured - using in-memory persistence (data is not durable)")
    return InMemoryPersistence()


def build_senders(config: Settings) -> Dict[str, MessageSender]:
    return {
        "twilio": TwilioService(
            account_sid=config.get_twilio_account_sid(),
            auth_token=config.twilio_auth_token,
            phone_number=config.twilio_phone_number,
        ),
        "vonage": VonageClient(
            api_key=config.vonage_api_key,
            api_secret=config.vonage_api_secret,
            phone_number=config.vonage_phone_number,
            base_url=config.vonage_base_url,
        ),
    }


def build_services(
    config: Optional[Settings] = None,
    persistence: Optional[Persistence] = None,
    senders: Optional[Dict[str, MessageSender]] = None,
    clock: Callable[[], datetime] = utcnow,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    retry_base_delay: Optional[float] = None
) -> Services:
    config = config or default_settings
    persistence = persistence or build_persistence(config)
    senders = senders if senders is not None else build_senders(config)

    templates = TemplateStore(persistence, default_language=config.default_language)
    tracker = DeliveryTracker(persistence, clock=clock)
    dispatcher = NotificationDispatcher(
        persistence,
        templates,
        tracker,
        senders,
        default_provider=config.sms_default_provider,
        max_attempts=config.sms_max_attempts,
        base_delay=config.sms_retry_base_delay if retry_base_delay is None else retry_base_delay,
        max_delay=config.sms_retry_max_delay,
        max_segments=config.sms_max_segments,
        status_callback=config.status_callback_url() or "",
        sleep=sleep,
        clock=clock,
    )
    workflows = WorkflowEngine(
        persistence,
        dispatcher,
        templates,
        clock=clock,
        reminder_lead_hours=config.reminder_lead_hours,
        follow_up_delay_hours=config.follow_up_delay_hours,
    )
    inbound = InboundSMSHandler(persistence, dispatcher, workflows, clock=clock)
    detector = EmergencyDetector(persistence, workflows, clock=clock)
    return Services(
        settings=config,
        persistence=persistence,
        templates=templates,
        tracker=tracker,
        dispatcher=dispatcher,
        workflows=workflows,
        inbound=inbound,
        detector=detector,
        clock=clock,
    )
