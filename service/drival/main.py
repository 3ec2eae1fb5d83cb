import logging
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config import settings
from .deps import Services, build_services
from . import admin, api
from .errors import UsageError
from .realtime import routes as realtime_routes

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def create_app(services: Optional[Services] = None) -> FastAPI:
    """Build the API around an explicit set of services (defaults from settings)."""
    app = FastAPI(title="Drival Usage API", version="0.1.0")
    app.state.services = services or build_services()

    # Configure CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.ALLOWED_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(UsageError)
    async def usage_error_handler(request: Request, exc: UsageError):
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        details = [
            f"{'.'.join(str(part) for part in error.get('loc', ()) if part != 'body')}: {error.get('msg')}"
            for error in exc.errors()
        ]
        return JSONResponse(
            status_code=400,
            content={"error": "Missing or invalid fields", "code": "BAD_REQUEST", "details": details},
        )

    @app.exception_handler(Exception)
    async def server_error_handler(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s", request.url.path)
        return JSONResponse(
            status_code=500,
            content={"error": "Internal server error", "code": "SERVER_ERROR"},
        )

    @app.on_event("startup")
    async def startup_event():
        """Initialize the usage store and background jobs."""
        services = app.state.services
        if not settings.JWT_SECRET_CONFIGURED:
            logger.warning("JWT_SECRET not set, using a generated key (sessions will not survive restarts)")
        await services.store.initialize()
        if services.jobs:
            services.jobs.start()
        logger.info("Usage service initialized")

    @app.on_event("shutdown")
    async def shutdown_event():
        services = app.state.services
        if services.jobs:
            services.jobs.shutdown()
        await services.monitor.shutdown()
        await services.broker.close()
        await services.store.close()
        logger.info("Services shut down")

    app.include_router(api.router)
    app.include_router(admin.router)
    app.include_router(realtime_routes.router)

    @app.get("/health")
    async def health():
        """Health check endpoint."""
        return {
            "status": "ok",
            "message": "Drival usage API is running",
            "monitoredSessions": app.state.services.monitor.active_count(),
        }

    return app


app = create_app()
