"""VDID identity service FastAPI application.

Run with:
    uvicorn vdid.main:app
"""
import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from vdid import __version__
from vdid.api import auth, health, passkeys, vscore, wallet
from vdid.config import is_production
from vdid.core.logging import configure_logging
from vdid.db.session import init_database
from vdid.exceptions import VDIDError
from vdid.services import Services, build_services

configure_logging()
log = logging.getLogger("vdid")


def error_body(message: str, code: str, details=None) -> dict:
    error = {"message": message, "code": code}
    if details:
        error["details"] = details
    return {
        "success": False,
        "error": error,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


def create_app(services: Services | None = None) -> FastAPI:
    """Build the application around a service container.

    Args:
        services: Pre-built container (tests); built from configuration when omitted
    """
    services = services or build_services()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        log.info("Starting VDID service...")
        try:
            init_database(services.engine)
        except Exception as e:
            log.error(f"Failed to initialize database: {e}")
            raise
        log.info("VDID service started")

        yield

        removed = services.challenges.cleanup_expired()
        log.info(f"Shutting down VDID service (dropped {removed} expired challenges)")
        services.engine.dispose()

    app = FastAPI(
        title="VDID",
        version=__version__,
        description="Velon Decentralized Identity core service",
        lifespan=lifespan,
    )
    app.state.services = services

    # -------------------------------------------------------------------------
    # Request logging
    # -------------------------------------------------------------------------

    @app.middleware("http")
    async def request_logging(request: Request, call_next):
        """Log all requests with timing."""
        start = time.time()
        response = await call_next(request)
        duration_ms = int((time.time() - start) * 1000)

        log.info(
            f"request_complete status={response.status_code} duration_ms={duration_ms}",
            extra={
                "route": request.url.path,
                "method": request.method,
                "status": response.status_code,
            },
        )
        return response

    # -------------------------------------------------------------------------
    # Error handlers
    # -------------------------------------------------------------------------

    @app.exception_handler(VDIDError)
    async def vdid_error_handler(request: Request, exc: VDIDError):
        if exc.status_code >= 500:
            log.error(f"{exc.code} on {request.url.path}: {exc.message}")
        return JSONResponse(
            status_code=exc.status_code,
            content=error_body(exc.message, exc.code, exc.details),
        )

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        details: dict[str, list[str]] = {}
        for err in exc.errors():
            field = ".".join(str(p) for p in err.get("loc", ()) if p != "body") or "body"
            details.setdefault(field, []).append(err.get("msg", "Invalid value"))
        return JSONResponse(
            status_code=400,
            content=error_body("Validation failed", "VALIDATION_ERROR", details),
        )

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        log.exception(f"Unhandled error on {request.method} {request.url.path}")
        message = "Internal server error" if is_production() else str(exc)
        return JSONResponse(status_code=500, content=error_body(message, "INTERNAL_ERROR"))

    app.include_router(health.router)
    app.include_router(auth.router)
    app.include_router(wallet.router)
    app.include_router(passkeys.router)
    app.include_router(vscore.router)

    return app


app = create_app()
