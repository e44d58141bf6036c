"""
Test configuration and fixtures.

Provides:
- InMemoryPersistence seeded with two organizations (tenant isolation)
- A recording fake SMS sender per provider, with scripted failures
- The service container with zero retry backoff
- HTTPX AsyncClient over the real FastAPI app
"""
from dataclasses import dataclass, field
from typing import AsyncGenerator, List, Optional

import pytest
from httpx import ASGITransport, AsyncClient

from serviceai.config import Settings
from serviceai.container import Services, build_services
from serviceai.integrations import MessageSender
from serviceai.main import create_app
from serviceai.models import (
    Customer,
    EmergencyContact,
    Language,
    Organization,
    SendReceipt,
)
from serviceai.persistence import InMemoryPersistence
from serviceai.utils.errors import ProviderError, TwilioAPIError, VonageAPIError

ORG_A = "org-a"
ORG_B = "org-b"
TOKEN_A = "token-a"
TOKEN_B = "token-b"
USER_A = "user-a"
USER_B = "user-b"


# =============================================================================
# Fakes
# =============================================================================

@dataclass
class SentMessage:
    to: str
    body: str
    from_number: Optional[str]
    status_callback: Optional[str]


class FakeSender(MessageSender):
    """Records every send; pops scripted failures before succeeding"""

    def __init__(self, name: str, cost_per_segment: float = 0.01):
        self.name = name
        self.cost_per_segment = cost_per_segment
        self.sent: List[SentMessage] = []
        self.failures: List[ProviderError] = []
        self.calls = 0
        self.configured = True
        self.before_send = None

    @property
    def is_configured(self) -> bool:
        return self.configured

    def fail_with(self, *errors: ProviderError) -> None:
        self.failures.extend(errors)

    def transient(self, times: int = 1) -> None:
        error_type = TwilioAPIError if self.name == "twilio" else VonageAPIError
        self.fail_with(*[
            error_type("Service unavailable", status_code=503, transient=True, code="503")
            for _ in range(times)
        ])

    def permanent(self, code: str = "21211") -> None:
        error_type = TwilioAPIError if self.name == "twilio" else VonageAPIError
        self.fail_with(error_type("Invalid 'To' number", status_code=400, transient=False, code=code))

    async def send(
        self,
        to: str,
        body: str,
        from_number: Optional[str] = None,
        status_callback: Optional[str] = None
    ) -> SendReceipt:
        self.calls += 1
        if self.before_send:
            self.before_send(to, body)
        if self.failures:
            raise self.failures.pop(0)
        self.sent.append(SentMessage(to, body, from_number, status_callback))
        return SendReceipt(provider=self.name, message_id=f"{self.name[:2].upper()}{self.calls:04d}{len(self.sent)}")


@dataclass
class Senders:
    twilio: FakeSender = field(default_factory=lambda: FakeSender("twilio", 0.0075))
    vonage: FakeSender = field(default_factory=lambda: FakeSender("vonage", 0.005))

    def as_dict(self):
        return {"twilio": self.twilio, "vonage": self.vonage}

    @property
    def all_sent(self) -> List[SentMessage]:
        return self.twilio.sent + self.vonage.sent


# =============================================================================
# Configuration
# =============================================================================

@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        supabase_url="",
        supabase_service_role_key="",
        twilio_auth_token=None,
        twilio_validate_signatures=True,
        vapi_webhook_secret=None,
        webhook_secret="hook-secret",
        cron_secret="cron-secret",
        public_base_url="https://api.example.com",
        sms_default_provider="auto",
        sms_max_attempts=3,
        sms_max_segments=3,
        default_language="en",
        default_timezone="America/Los_Angeles",
        environment="test",
    )


# =============================================================================
# Persistence Fixtures
# =============================================================================

@pytest.fixture
def persistence() -> InMemoryPersistence:
    store = InMemoryPersistence()
    store.add_organization(Organization(
        id=ORG_A,
        name="Cool Air HVAC",
        timezone="America/Los_Angeles",
        business_phone="+15035550100",
        sms_phone_number="+15035550001",
        emergency_contact_phone="+15035550300",
        transfer_phone_number="+15035550200",
    ), assistant_ids=["asst-a"])
    store.add_organization(Organization(
        id=ORG_B,
        name="Fontanería Rápida",
        default_language=Language.ES,
        timezone="America/Chicago",
        business_phone="+13125550100",
        sms_phone_number="+13125550001",
        transfer_phone_number="+13125550200",
    ), assistant_ids=["asst-b"])

    store.add_member(ORG_A, USER_A, TOKEN_A)
    store.add_member(ORG_B, USER_B, TOKEN_B)

    store.add_customer(Customer(
        id="cust-es", organization_id=ORG_A, phone="+15035551001", name="María", language=Language.ES,
    ))
    store.add_customer(Customer(
        id="cust-en", organization_id=ORG_A, phone="+15035551002", name="John", language=Language.EN,
    ))
    store.add_customer(Customer(
        id="cust-b", organization_id=ORG_B, phone="+13125551001", name="Lucía", language=Language.ES,
    ))
    return store


@pytest.fixture
def on_call_contact(persistence: InMemoryPersistence) -> EmergencyContact:
    """Always-available on-call technician for org A"""
    return persistence.add_emergency_contact(EmergencyContact(
        id="contact-1",
        organization_id=ORG_A,
        name="Dave",
        phone="+15035550400",
        priority=1,
    ))


# =============================================================================
# Service Fixtures
# =============================================================================

@pytest.fixture
def senders() -> Senders:
    return Senders()


@pytest.fixture
def services(test_settings: Settings, persistence: InMemoryPersistence, senders: Senders) -> Services:
    async def no_sleep(_seconds: float) -> None:
        return None

    return build_services(
        test_settings,
        persistence=persistence,
        senders=senders.as_dict(),
        sleep=no_sleep,
        retry_base_delay=0,
    )


# =============================================================================
# Client Fixtures
# =============================================================================

@pytest.fixture
async def client(services: Services) -> AsyncGenerator[AsyncClient, None]:
    """Unauthenticated client for webhooks"""
    app = create_app(services)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c


@pytest.fixture
async def authed_client(services: Services) -> AsyncGenerator[AsyncClient, None]:
    """Client holding org A's bearer token"""
    app = create_app(services)
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
        headers={"Authorization": f"Bearer {TOKEN_A}"},
    ) as c:
        yield c
