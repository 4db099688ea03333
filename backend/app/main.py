"""
FastAPI application entry point.

Run with:
    uvicorn backend.app.main:app --reload --port 3000

Or from the project root:
    python -m uvicorn backend.app.main:app --reload
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

# ── Core infrastructure ──
from backend.app.core.config import settings
from backend.app.core.logging_config import setup_logging, get_logger
from backend.app.core.errors import register_error_handlers
from backend.app.core.middleware import RequestLoggingMiddleware
from backend.app.core.health import HealthStatus, run_health_check
from backend.app.core.database import async_session_factory, close_db, engine, init_db

# ── Dispatch ──
from backend.app.dispatch.channel_config import load_channel_config
from backend.app.dispatch.channels import build_senders
from backend.app.dispatch.jobs import DispatchJobManager
from backend.app.dispatch.orchestrator import DispatchOrchestrator
from backend.app.dispatch.storage import SqlAlchemyStorage

# ── API routers ──
from backend.app.api.v1.messages import router as message_router

# ── Initialise logging ──
setup_logging()
logger = get_logger(__name__)


# ── Application lifespan (startup / shutdown) ──

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the dispatch stack, verify channels, and tear it down on exit."""
    logger.info(
        "Starting %s v%s [%s]",
        settings.APP_NAME, settings.APP_VERSION, settings.ENVIRONMENT,
    )
    await init_db()

    channel_config = load_channel_config(settings)
    senders = build_senders(channel_config)
    orchestrator = DispatchOrchestrator(
        SqlAlchemyStorage(async_session_factory),
        senders,
        email_accounts=channel_config.email.account_identifiers,
        resend_includes_attachments=settings.RESEND_INCLUDE_ATTACHMENTS,
        upload_dir=settings.UPLOAD_DIR,
    )
    app.state.channel_config = channel_config
    app.state.orchestrator = orchestrator
    app.state.job_manager = DispatchJobManager(
        orchestrator,
        max_workers=settings.DISPATCH_MAX_WORKERS,
        serialize_per_message=settings.DISPATCH_SERIALIZE_PER_MESSAGE,
        job_retention_hours=settings.JOB_RETENTION_HOURS,
    )

    if settings.VERIFY_CHANNELS_ON_STARTUP:
        for channel, sender in senders.items():
            ok = await sender.verify()
            logger.info("Channel %s: %s", channel.value, "ready" if ok else "unavailable")

    yield

    # Shutdown: let in-flight runs finish, then close provider clients
    await app.state.job_manager.wait_all()
    for sender in senders.values():
        await sender.aclose()
    await close_db()
    logger.info("Shutting down %s", settings.APP_NAME)


# ── Create application ──

app = FastAPI(
    title=settings.APP_NAME,
    description=(
        "Multi-channel message broadcasting: email through two SMTP "
        "accounts, chat-bot and social-graph community messaging, "
        "per-recipient delivery tracking, audit trail and resend."
    ),
    version=settings.APP_VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

# ── Middleware stack (order matters — outermost first) ──

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS if not settings.CORS_ALLOW_ALL else ["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(RequestLoggingMiddleware)

# ── Error handlers ──
register_error_handlers(app)

# ── Register routers ──
app.include_router(message_router)


# ── Root & health endpoints ──

@app.get("/", tags=["root"])
async def root():
    return {
        "service": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "environment": settings.ENVIRONMENT,
        "channels": ["email", "chat", "social"],
        "docs": "/docs",
    }


async def _health_report():
    config = getattr(app.state, "channel_config", None)
    return await run_health_check(engine, config.status() if config else None)


@app.get("/health", tags=["health"])
async def health_check():
    """Deep health probe — checks all subsystems."""
    report = await _health_report()
    return report.to_dict()


@app.get("/health/live", tags=["health"])
async def liveness():
    """Kubernetes liveness probe — is the process alive?"""
    return {"status": "alive"}


@app.get("/health/ready", tags=["health"])
async def readiness():
    """Kubernetes readiness probe — can we serve traffic?"""
    report = await _health_report()
    if report.status == HealthStatus.UNHEALTHY:
        return JSONResponse(status_code=503, content=report.to_dict())
    return report.to_dict()
