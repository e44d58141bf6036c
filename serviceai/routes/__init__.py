from .workflows import router as workflows_router
from .sms import router as sms_router
from .emergency import router as emergency_router
from .functions import router as functions_router

__all__ = ["workflows_router", "sms_router", "emergency_router", "functions_router"]
