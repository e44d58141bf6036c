"""
Webhook authentication.

Signatures are always computed over the raw request body, before any JSON or
form parsing touches it.
"""
import hashlib
import hmac
from typing import Mapping, Optional

from twilio.request_validator import RequestValidator

from serviceai.utils.logging import logger

VAPI_SIGNATURE_HEADERS = ("x-vapi-signature", "x-signature")


def compute_vapi_signature(secret: str, body: bytes) -> str:
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def extract_vapi_signature(headers: Mapping[str, str]) -> Optional[str]:
    lowered = {k.lower(): v for k, v in headers.items()}
    for name in VAPI_SIGNATURE_HEADERS:
        if lowered.get(name):
            return lowered[name]
    return None


def verify_vapi_webhook_signature(
    body: bytes,
    signature: Optional[str],
    secret: Optional[str]
) -> bool:
    """
    Verify an HMAC-SHA256 "sha256=<hex>" signature over the raw body.
    No secret configured means verification is skipped (development).
    """
    if not secret:
        logger.debug("VAPI_WEBHOOK_SECRET not configured, skipping signature verification")
        return True

    if not signature:
        logger.warning("❌ Vapi webhook missing signature header")
        return False

    expected = compute_vapi_signature(secret, body)
    provided = signature if signature.startswith("sha256=") else f"sha256={signature}"
    return hmac.compare_digest(provided, expected)


def verify_twilio_signature(
    auth_token: Optional[str],
    url: str,
    params: Mapping[str, str],
    signature: Optional[str]
) -> bool:
    """Validate X-Twilio-Signature for a form-encoded callback"""
    if not auth_token:
        logger.debug("Twilio auth token not configured, skipping signature verification")
        return True
    if not signature:
        logger.warning("❌ Twilio webhook missing X-Twilio-Signature")
        return False
    validator = RequestValidator(auth_token)
    return validator.validate(url, dict(params), signature)


def verify_shared_secret(provided: Optional[str], expected: Optional[str]) -> bool:
    """Constant-time comparison for secret headers (database webhooks, cron)"""
    if not expected:
        logger.debug("Shared secret not configured, accepting request")
        return True
    if not provided:
        return False
    return hmac.compare_digest(provided, expected)
