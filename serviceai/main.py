from typing import Optional

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from serviceai.config import settings
from serviceai.container import Services, build_services
from serviceai.routes import emergency_router, functions_router, sms_router, workflows_router
from serviceai.utils.errors import APIError, handle_api_error
from serviceai.utils.logging import logger, setup_logging
from serviceai.webhooks import router as webhook_router

SERVICE_NAME = "ServiceAI Notification API"


def create_app(services: Optional[Services] = None) -> FastAPI:
    """Build the application around a service container (tests pass their own)"""
    setup_logging()

    app = FastAPI(
        title=SERVICE_NAME,
        description="Templated bilingual SMS workflows, delivery tracking and voice-assistant webhooks",
        version="1.0.0"
    )
    app.state.services = services or build_services(settings)

    # Global exception handlers
    @app.exception_handler(APIError)
    async def api_error_handler(request: Request, exc: APIError):
        return JSONResponse(status_code=exc.status_code, content=handle_api_error(exc))

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=400,
            content={
                "success": False,
                "error": "Validation error",
                "details": jsonable_encoder(exc.errors()),
            }
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception):
        logger.exception("Unhandled exception")
        return JSONResponse(
            status_code=500,
            content={
                "success": False,
                "error": "Internal server error",
                "message": str(exc) if app.state.services.settings.environment == "development" else "An error occurred"
            }
        )

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(webhook_router, prefix="/webhooks", tags=["webhooks"])
    app.include_router(functions_router, prefix="/functions", tags=["functions"])
    app.include_router(workflows_router, prefix="/workflows", tags=["workflows"])
    app.include_router(sms_router, prefix="/sms", tags=["sms"])
    app.include_router(emergency_router, prefix="/emergency", tags=["emergency"])

    @app.get("/")
    async def root():
        return {
            "status": "ok",
            "service": SERVICE_NAME,
            "version": "1.0.0"
        }

    @app.get("/health")
    async def health():
        return {"status": "healthy"}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "serviceai.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.environment == "development"
    )
