from serviceai.notifications.templates import TemplateStore, DEFAULT_TEMPLATES
from serviceai.notifications.delivery import DeliveryTracker, StatusUpdateOutcome
from serviceai.notifications.dispatcher import NotificationDispatcher
from serviceai.notifications.workflows import WorkflowEngine
from serviceai.notifications.inbound import InboundSMSHandler
from serviceai.notifications.emergency import EmergencyDetector

__all__ = [
    "TemplateStore",
    "DEFAULT_TEMPLATES",
    "DeliveryTracker",
    "StatusUpdateOutcome",
    "NotificationDispatcher",
    "WorkflowEngine",
    "InboundSMSHandler",
    "EmergencyDetector",
]
