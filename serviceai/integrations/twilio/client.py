import asyncio
from twilio.rest import Client as TwilioClient
from twilio.base.exceptions import TwilioException, TwilioRestException
from twilio.http.http_client import TwilioHttpClient
from typing import Optional

from serviceai.config import settings
from serviceai.integrations.base import MessageSender
from serviceai.models import SendReceipt
from serviceai.utils.errors import TwilioAPIError, is_transient_status
from serviceai.utils.logging import logger

# Twilio error codes that will fail identically on every retry
PERMANENT_ERROR_CODES = {
    21211,  # invalid 'To' number
    21408,  # region not enabled
    21610,  # recipient unsubscribed (STOP)
    21612,  # unreachable via this number
    21614,  # not a mobile number
}


class TwilioService(MessageSender):
    name = "twilio"

    def __init__(
        self,
        account_sid: Optional[str] = None,
        auth_token: Optional[str] = None,
        phone_number: Optional[str] = None,
        client: Optional[TwilioClient] = None
    ):
        account_sid = account_sid or settings.get_twilio_account_sid()
        auth_token = auth_token or settings.twilio_auth_token
        self.cost_per_segment = settings.twilio_cost_per_segment
        self.phone_number = phone_number or settings.twilio_phone_number

        if client is not None:
            self.client = client
        elif not account_sid or not auth_token:
            logger.warning("⚠️  Twilio credentials not configured")
            self.client = None
        else:
            self.client = TwilioClient(
                account_sid, auth_token, http_client=TwilioHttpClient(timeout=settings.http_timeout)
            )

        if self.client and not self.phone_number:
            logger.warning("⚠️  Twilio phone number not configured - SMS sending will fail")

    @property
    def is_configured(self) -> bool:
        return self.client is not None and bool(self.phone_number)

    def _send_sync(
        self,
        to: str,
        body: str,
        from_number: str,
        status_callback: Optional[str]
    ):
        params = {"body": body, "from_": from_number, "to": to}
        if status_callback:
            params["status_callback"] = status_callback
        return self.client.messages.create(**params)

    async def send(
        self,
        to: str,
        body: str,
        from_number: Optional[str] = None,
        status_callback: Optional[str] = None
    ) -> SendReceipt:
        """Send SMS message via Twilio"""
        if not self.client:
            raise TwilioAPIError(
                "Twilio client not initialized. Check TWILIO_ACCOUNT_SID and TWILIO_AUTH_TOKEN environment variables.",
                status_code=500
            )

        from_num = from_number or self.phone_number
        if not from_num:
            raise TwilioAPIError(
                "Twilio phone number not configured. Set TWILIO_PHONE_NUMBER environment variable.",
                status_code=500
            )

        try:
            # The SDK is blocking; keep it off the event loop
            message_obj = await asyncio.to_thread(self._send_sync, to, body, from_num, status_callback)
        except TwilioRestException as e:
            transient = e.code not in PERMANENT_ERROR_CODES and is_transient_status(e.status)
            logger.error(f"❌ Twilio API error sending SMS to {to}: {e.status} {e.code} {e.msg}")
            raise TwilioAPIError(
                f"HTTP {e.status} error: {e.msg}",
                status_code=502,
                details={"twilio_error": str(e.msg), "to": to, "from": from_num},
                transient=transient,
                code=str(e.code) if e.code else None
            )
        except (TwilioException, OSError) as e:
            # Connection resets and timeouts surface here
            logger.error(f"❌ Twilio transport error sending SMS to {to}: {str(e)}")
            raise TwilioAPIError(
                f"Twilio request failed: {str(e)}",
                status_code=503,
                details={"twilio_error": str(e), "to": to},
                transient=True
            )

        logger.info(f"✅ SMS sent to {to}, SID: {message_obj.sid}")
        price = None
        if message_obj.price:
            try:
                price = abs(float(message_obj.price))
            except (TypeError, ValueError):
                price = None
        return SendReceipt(
            provider=self.name,
            message_id=message_obj.sid,
            status=message_obj.status or "queued",
            price=price
        )
