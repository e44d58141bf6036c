from serviceai.integrations.base import MessageSender
from serviceai.integrations.twilio import TwilioService
from serviceai.integrations.vonage import VonageClient

__all__ = ["MessageSender", "TwilioService", "VonageClient"]
