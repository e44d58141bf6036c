from fastapi import APIRouter

from .vapi import router as vapi_router
from .twilio import router as twilio_router
from .appointments import router as appointments_router

router = APIRouter()
router.include_router(vapi_router)
router.include_router(twilio_router)
router.include_router(appointments_router)

__all__ = ["router"]
