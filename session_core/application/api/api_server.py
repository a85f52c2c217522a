from typing import Optional
from datetime import datetime
import asyncio
import math
import uuid
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import structlog

from session_core.application.container import CoreServices, build_services
from session_core.application.api.route import sessions, tools, turn
from session_core.application.api.schema.events import HealthResponse, error_body
from session_core.domain.models.errors import CoreError, RateLimited
from session_core.infrastructure.config.settings import Settings
from session_core.infrastructure.observability.logging import setup_logging
from session_core.infrastructure.security.admin_auth import AdminAuthError

logger = structlog.get_logger(__name__)


def create_app(settings: Optional[Settings] = None, services: Optional[CoreServices] = None) -> FastAPI:
    """Build the HTTP application around one set of shared services"""

    if services is not None:
        settings = services.settings
    settings = settings or Settings.from_env()
    setup_logging(settings.log_level, settings.log_format, settings.service_name)
    services = services or build_services(settings)

    app = FastAPI(title="Session Core")
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["Retry-After", "X-Idempotent-Replay", "X-Trace-Id"],
    )

    @app.middleware("http")
    async def bind_request_context(request: Request, call_next):
        trace_id = request.headers.get("X-Trace-Id") or str(uuid.uuid4())
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(
            service=settings.service_name,
            trace_id=trace_id,
            session_id=request.headers.get("X-Session-Id"),
        )
        response = await call_next(request)
        response.headers["X-Trace-Id"] = trace_id
        return response

    @app.exception_handler(CoreError)
    async def core_error_handler(request: Request, exc: CoreError):
        headers = None
        if isinstance(exc, RateLimited):
            headers = {"Retry-After": str(max(1, math.ceil(exc.retry_after_ms / 1000)))}
        if exc.status_code >= 500:
            logger.error("Request failed", path=request.url.path, error_code=exc.code, error=exc.message)
        else:
            logger.info("Request rejected", path=request.url.path, error_code=exc.code)
        return JSONResponse(status_code=exc.status_code, content=exc.to_payload(), headers=headers)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        errors = [
            {"field": ".".join(str(part) for part in err["loc"]), "message": err["msg"]}
            for err in exc.errors()
        ]
        body = error_body(exc, "validation_error", "Malformed request")
        body["details"] = {"errors": errors}
        return JSONResponse(status_code=400, content=body)

    @app.exception_handler(AdminAuthError)
    async def admin_auth_handler(request: Request, exc: AdminAuthError):
        return JSONResponse(status_code=401, content=error_body(exc, "unauthorized"))

    app.include_router(turn.router)
    app.include_router(tools.router)
    app.include_router(sessions.router)

    @app.get("/health", response_model=HealthResponse)
    async def health_check():
        """Health check endpoint"""
        return HealthResponse(
            status="healthy",
            service=settings.service_name,
            sessions=services.store.stats()["sessions"],
            pending_write_backs=services.orchestrator.pending_write_backs,
            timestamp=datetime.utcnow().isoformat(),
        )

    async def sweep_expired(interval_seconds: float = 60.0):
        """Drop expired rate windows, idempotency entries and voice grants"""
        while True:
            await asyncio.sleep(interval_seconds)
            removed = 0
            for expiring in (services.rate_limiter.store, services.idempotency.entries, services.voice_tokens):
                clear_expired = getattr(expiring, "clear_expired", None)
                if clear_expired is not None:
                    removed += clear_expired()
            if removed:
                logger.debug("Expired entries swept", removed=removed)

    @app.on_event("startup")
    async def startup_event():
        app.state.sweeper = asyncio.create_task(sweep_expired())

    @app.on_event("shutdown")
    async def shutdown_event():
        """Stop the sweeper and let completed turns finish their write-back"""
        sweeper = getattr(app.state, "sweeper", None)
        if sweeper is not None:
            sweeper.cancel()
        await services.orchestrator.wait_for_write_backs()
        logger.info("Session core shutdown")

    logger.info(
        "Session core started",
        provider="mock" if settings.use_mock_provider else settings.llm_provider,
        tools=len(services.tools.registry.tools),
    )
    return app


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(create_app(), host="0.0.0.0", port=8000)
