from pydantic_settings import BaseSettings
from pydantic import ConfigDict
from typing import Optional


class Settings(BaseSettings):
    # Supabase (PostgREST + GoTrue)
    supabase_url: str = ""
    supabase_service_role_key: str = ""

    # Twilio (supports both twilio_sid and twilio_account_sid)
    twilio_account_sid: Optional[str] = None
    twilio_sid: Optional[str] = None  # Alternative name
    twilio_auth_token: Optional[str] = None
    twilio_phone_number: Optional[str] = None
    twilio_validate_signatures: bool = True

    def get_twilio_account_sid(self) -> Optional[str]:
        """Get Twilio account SID from either twilio_account_sid or twilio_sid"""
        return self.twilio_account_sid or self.twilio_sid

    # Vonage (secondary SMS provider)
    vonage_api_key: Optional[str] = None
    vonage_api_secret: Optional[str] = None
    vonage_phone_number: Optional[str] = None
    vonage_base_url: str = "https://rest.nexmo.com"

    # Vapi.ai
    vapi_webhook_secret: Optional[str] = None

    # Webhooks / scheduler
    webhook_secret: Optional[str] = None
    cron_secret: Optional[str] = None
    public_base_url: Optional[str] = None

    # SMS delivery policy
    sms_default_provider: str = "auto"
    sms_max_attempts: int = 3
    sms_retry_base_delay: float = 1.0
    sms_retry_max_delay: float = 8.0
    sms_max_segments: int = 3
    twilio_cost_per_segment: float = 0.0075
    vonage_cost_per_segment: float = 0.005

    # Workflow policy
    reminder_lead_hours: int = 24
    follow_up_delay_hours: int = 2

    # Localization / business hours
    default_language: str = "en"
    default_timezone: str = "America/Los_Angeles"
    business_hours_start: str = "08:00"
    business_hours_end: str = "17:00"
    appointment_slot_minutes: int = 60

    # Server
    port: int = 8000
    host: str = "0.0.0.0"
    environment: str = "development"
    log_level: str = "INFO"
    http_timeout: float = 30.0

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        # Override port from environment if PORT is set (for Fly.io)
        import os
        if os.getenv("PORT"):
            self.port = int(os.getenv("PORT"))

    def status_callback_url(self) -> Optional[str]:
        """Delivery status callback handed to the SMS provider, if a public URL is known"""
        if not self.public_base_url:
            return None
        return f"{self.public_base_url.rstrip('/')}/webhooks/twilio/status"

    model_config = ConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore"  # Ignore extra environment variables
    )


settings = Settings()
