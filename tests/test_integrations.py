"""
Tests for the SMS provider clients.
"""
from serviceai.config import settings
from serviceai.integrations import TwilioService


def test_twilio_client_uses_configured_timeout():
    service = TwilioService("ACxxxxxxxxxxxxxxxx", "token", "+15035550001")

    assert service.is_configured
    assert service.client.http_client.timeout == settings.http_timeout


def test_twilio_without_credentials_is_not_configured(monkeypatch):
    monkeypatch.setattr(settings, "twilio_account_sid", None)
    monkeypatch.setattr(settings, "twilio_sid", None)
    monkeypatch.setattr(settings, "twilio_auth_token", None)

    service = TwilioService(account_sid="", auth_token="", phone_number="+15035550001")

    assert service.client is None
    assert not service.is_configured
