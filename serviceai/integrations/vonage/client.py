import httpx
from typing import Any, Dict, Optional

from serviceai.config import settings
from serviceai.integrations.base import MessageSender
from serviceai.models import SendReceipt
from serviceai.utils.errors import VonageAPIError, is_transient_status
from serviceai.utils.logging import logger

# Per-message status codes in the SMS API response body.
# 1 = throttled, 5 = internal error; everything else is a rejection.
TRANSIENT_STATUS_CODES = {"1", "5"}


class VonageClient(MessageSender):
    """Secondary SMS provider over the Vonage (Nexmo) SMS REST API"""

    name = "vonage"

    def __init__(
        self,
        api_key: Optional[str] = None,
        api_secret: Optional[str] = None,
        phone_number: Optional[str] = None,
        base_url: Optional[str] = None
    ):
        self.api_key = api_key or settings.vonage_api_key
        self.api_secret = api_secret or settings.vonage_api_secret
        self.phone_number = phone_number or settings.vonage_phone_number
        self.base_url = (base_url or settings.vonage_base_url).rstrip("/")
        self.cost_per_segment = settings.vonage_cost_per_segment
        self.headers = {"Content-Type": "application/json"}

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key and self.api_secret and self.phone_number)

    async def _request(
        self,
        method: str,
        endpoint: str,
        data: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        url = f"{self.base_url}/{endpoint}"
        try:
            async with httpx.AsyncClient(timeout=settings.http_timeout) as client:
                response = await client.request(
                    method=method,
                    url=url,
                    headers=self.headers,
                    json=data
                )
                response.raise_for_status()
                return response.json()
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            logger.error(f"Vonage API error: {status} - {e.response.text}")
            raise VonageAPIError(
                f"Vonage API request failed: {status}",
                status_code=502,
                details={"response": e.response.text, "url": url},
                transient=is_transient_status(status),
                code=str(status)
            )
        except httpx.RequestError as e:
            logger.error(f"Vonage API request error: {str(e)}")
            raise VonageAPIError(
                f"Vonage API request failed: {str(e)}",
                status_code=503,
                transient=True
            )

    async def send(
        self,
        to: str,
        body: str,
        from_number: Optional[str] = None,
        status_callback: Optional[str] = None
    ) -> SendReceipt:
        if not self.api_key or not self.api_secret:
            raise VonageAPIError(
                "Vonage client not configured. Set VONAGE_API_KEY and VONAGE_API_SECRET.",
                status_code=500
            )
        sender = from_number or self.phone_number
        if not sender:
            raise VonageAPIError(
                "Vonage phone number not configured. Set VONAGE_PHONE_NUMBER.",
                status_code=500
            )

        payload = {
            "api_key": self.api_key,
            "api_secret": self.api_secret,
            "from": sender.lstrip("+"),
            "to": to.lstrip("+"),
            "text": body,
            "type": "unicode",
        }
        if status_callback:
            payload["callback"] = status_callback

        result = await self._request("POST", "sms/json", data=payload)
        messages = result.get("messages") or []
        if not messages:
            raise VonageAPIError("Vonage returned no message status", transient=True)

        # A concatenated send returns one entry per part; any rejection fails the send
        for part in messages:
            status = str(part.get("status", ""))
            if status != "0":
                error_text = part.get("error-text") or "rejected"
                logger.error(f"❌ Vonage rejected SMS to {to}: {status} {error_text}")
                raise VonageAPIError(
                    f"Vonage error {status}: {error_text}",
                    details={"to": to, "status": status},
                    transient=status in TRANSIENT_STATUS_CODES,
                    code=status
                )

        price = 0.0
        for part in messages:
            try:
                price += float(part.get("message-price") or 0)
            except (TypeError, ValueError):
                pass
        message_id = messages[0].get("message-id")
        logger.info(f"✅ SMS sent to {to} via Vonage, id: {message_id}")
        return SendReceipt(
            provider=self.name,
            message_id=message_id,
            status="sent",
            price=price or None
        )
