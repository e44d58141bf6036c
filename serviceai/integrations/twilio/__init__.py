from serviceai.integrations.twilio.client import TwilioService

__all__ = ["TwilioService"]
