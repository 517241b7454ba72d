"""
main.py
FastAPI application entry point.
Registers all routers, middleware, startup/shutdown events.

Production-ready features:
- Multiple instances behind NGINX load balancer
- Circuit breakers around the SMS provider
- Structured JSON logging with request ids
- Prometheus metrics
"""

import logging
import time
import uuid
from contextlib import asynccontextmanager
from decimal import Decimal

from fastapi import FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator
from starlette.exceptions import HTTPException as StarletteHTTPException

from config.database import close_db, init_db, transaction
from config.logging_config import configure_logging
from config.redis_client import close_redis, init_redis
from config.settings import settings
from shared.errors import DispatchError, InternalError, ValidationError

# Service routers
from services.auth.router import router as auth_router
from services.booking.router import router as booking_router
from services.dispatch.router import router as dispatch_router
from services.tracking.router import router as tracking_router
from services.verification.router import router as verification_router


configure_logging()
logger = logging.getLogger(__name__)

HTTP_ERROR_KINDS = {
    401: "Unauthorized",
    403: "Forbidden",
    404: "NotFound",
    405: "MethodNotAllowed",
}


# ── Lifespan (startup/shutdown) ───────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown lifecycle handler."""
    logger.info(f"Starting {settings.APP_NAME}...")

    # Initialize connections
    await init_db()
    logger.info("Database connected")

    await init_redis()
    logger.info("Redis connected")

    # Seed the service catalog, only in dev
    if settings.APP_ENV == "development":
        await seed_initial_data()

    logger.info(f"{settings.APP_NAME} v{settings.APP_VERSION} is ready")
    yield

    # Cleanup
    await close_redis()
    await close_db()
    logger.info("Server shutdown complete")


# ── App Factory ───────────────────────────────────────────────

def create_app() -> FastAPI:
    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        description="""
## Field Dispatch Platform API

Booking dispatch and lifecycle for on-demand home services:
- **Bookings**: create, accept (first wins), start, cancel, reject
- **Dispatch**: nearest-first matching, emergency priority, professional presence
- **Tracking**: live location pings, distance/ETA, WebSocket relay
- **Completion**: one-time code sent to the customer gates completion and payout

### Authentication
All endpoints require `Authorization: Bearer <access_token>` issued by the
identity service. The token carries `sub` and `role`
(`customer`, `professional` or `admin`).

### Errors
Failures are returned as `{"error": {"kind", "code", "message", ...}}`.
        """,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    # ── Middleware (order matters: outermost first) ────────────────
    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID", "X-Process-Time", "Retry-After"],
    )

    # GZip compression
    app.add_middleware(GZipMiddleware, minimum_size=500)

    # ── Custom Middleware ──────────────────────────────────────────

    @app.middleware("http")
    async def request_id_middleware(request: Request, call_next):
        """Add unique X-Request-ID to every request for distributed tracing."""
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response

    @app.middleware("http")
    async def process_time_middleware(request: Request, call_next):
        """Track and expose request processing time."""
        start = time.perf_counter()
        response = await call_next(request)
        process_time = round((time.perf_counter() - start) * 1000, 2)
        response.headers["X-Process-Time"] = f"{process_time}ms"
        return response

    # ── Exception Handlers ─────────────────────────────────────────

    @app.exception_handler(DispatchError)
    async def dispatch_error_handler(request: Request, exc: DispatchError):
        request_id = getattr(request.state, "request_id", None)
        level = logging.ERROR if exc.status_code >= 500 else logging.INFO
        logger.log(
            level,
            f"{request.method} {request.url.path} -> {exc.status_code} {exc.code}: {exc.message}",
            extra={"request_id": request_id},
        )
        headers = {}
        retry_after = exc.hints.get("retry_after_seconds")
        if retry_after is not None:
            headers["Retry-After"] = str(retry_after)
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": jsonable_encoder(exc.to_dict())},
            headers=headers,
        )

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        error = ValidationError("Request validation failed", errors=exc.errors())
        return JSONResponse(
            status_code=error.status_code,
            content={"error": jsonable_encoder(error.to_dict())},
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        """Auth and routing failures use the same error body as the engine."""
        kind = HTTP_ERROR_KINDS.get(exc.status_code, "HTTPError")
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": {"kind": kind, "code": kind, "message": str(exc.detail)}},
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Catch-all exception handler. Never expose stack traces in production."""
        request_id = getattr(request.state, "request_id", None)
        logger.error(f"[{request_id}] Exception: {str(exc)}", exc_info=True, extra={"request_id": request_id})

        error = InternalError(str(exc) if settings.DEBUG else None, request_id=request_id)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": error.to_dict()},
        )

    # ── Routes ────────────────────────────────────────────────────

    # Health check (public)
    @app.get("/health", tags=["Health"], include_in_schema=False)
    async def health_check():
        from config.redis_client import redis_client
        from sqlalchemy import text
        from config.database import AsyncSessionLocal

        checks = {"status": "ok", "version": settings.APP_VERSION}

        # DB check
        try:
            async with AsyncSessionLocal() as session:
                await session.execute(text("SELECT 1"))
            checks["database"] = "ok"
        except Exception:
            checks["database"] = "error"
            checks["status"] = "degraded"

        # Redis check
        try:
            if redis_client:
                await redis_client.ping()
            checks["redis"] = "ok"
        except Exception:
            checks["redis"] = "error"
            checks["status"] = "degraded"

        status_code = 200 if checks["status"] == "ok" else 503
        return JSONResponse(content=checks, status_code=status_code)

    @app.get("/", include_in_schema=False)
    async def root():
        return {
            "name": settings.APP_NAME,
            "version": settings.APP_VERSION,
            "docs": "/docs",
            "health": "/health",
        }

    # Register all service routers
    app.include_router(auth_router)
    app.include_router(booking_router)
    app.include_router(tracking_router)
    app.include_router(verification_router)
    app.include_router(dispatch_router)

    # ── Prometheus Metrics ─────────────────────────────────────────
    Instrumentator().instrument(app).expose(app, endpoint="/metrics", tags=["Monitoring"])

    return app


# ── Dev Data Seeder ───────────────────────────────────────────

async def seed_initial_data():
    """Seed the service catalog on first run (development only)."""
    from shared.models.models import Service, ServiceCategory
    from sqlalchemy import select, func

    async with transaction() as session:
        count = await session.scalar(select(func.count(Service.id)))
        if count and count > 0:
            return  # Already seeded

        seed_services = [
            {"name": "Tap & Leak Repair", "category": ServiceCategory.PLUMBING, "base_price": Decimal("399.00")},
            {"name": "Drain Unclogging", "category": ServiceCategory.PLUMBING, "base_price": Decimal("499.00")},
            {"name": "Switch & Socket Repair", "category": ServiceCategory.ELECTRICAL, "base_price": Decimal("299.00")},
            {"name": "Fan Installation", "category": ServiceCategory.ELECTRICAL, "base_price": Decimal("349.00")},
            {"name": "AC Service", "category": ServiceCategory.HVAC, "base_price": Decimal("699.00")},
            {"name": "Furniture Repair", "category": ServiceCategory.CARPENTRY, "base_price": Decimal("449.00")},
            {"name": "Deep Home Cleaning", "category": ServiceCategory.CLEANING, "base_price": Decimal("1999.00")},
            {"name": "Wall Painting (per room)", "category": ServiceCategory.PAINTING, "base_price": Decimal("2499.00")},
            {"name": "Cockroach Control", "category": ServiceCategory.PEST_CONTROL, "base_price": Decimal("899.00")},
            {"name": "Washing Machine Repair", "category": ServiceCategory.APPLIANCE_REPAIR, "base_price": Decimal("549.00")},
        ]

        for s in seed_services:
            session.add(Service(**s))

    logger.info(f"Seeded {len(seed_services)} services")


# ── Entry Point ───────────────────────────────────────────────

app = create_app()

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        workers=1 if settings.DEBUG else settings.WORKERS,
        log_level="debug" if settings.DEBUG else "info",
        access_log=True,
    )
