import logging
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from chatsales.config import settings
from chatsales.database import init_db

from chatsales.agents.orchestrator import ConversationOrchestrator
from chatsales.api import (
    auth,
    chat,
    dashboard,
    health,
)
from chatsales.middleware import SecurityHeadersMiddleware
from chatsales.services.openai_service import OpenAICompletionProvider
from chatsales.utils.rate_limit import limiter

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger("chatsales.main")

app = FastAPI(title="ChatSales Conversation Engine", version="1.0.0")

# Rate limiting (per client IP; RATE_LIMIT_ENABLED=false disables)
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


def build_orchestrator() -> ConversationOrchestrator:
    return ConversationOrchestrator(provider=OpenAICompletionProvider())


@app.on_event("startup")
async def startup_event():
    logger.info("ChatSales Backend Starting...")

    # Validate configuration (don't raise in dev mode)
    from chatsales.config import validate_config, ConfigValidationError

    try:
        result = validate_config(raise_on_error=settings.ENVIRONMENT == "production")
        for warning in result.get("warnings", []):
            logger.warning(f"Config warning: {warning}")
        for error in result.get("errors", []):
            logger.error(f"Config error: {error}")
    except ConfigValidationError as e:
        logger.critical(f"FATAL: {e}")
        raise SystemExit(1)

    init_db()
    logger.info("Database tables created/verified")

    # tests install their own orchestrator before startup
    if getattr(app.state, "orchestrator", None) is None:
        app.state.orchestrator = build_orchestrator()

    logger.info("ChatSales Backend Started")


@app.on_event("shutdown")
async def shutdown_event():
    """Cleanup resources on shutdown."""
    logger.info("ChatSales Backend Shutting Down...")
    orchestrator = getattr(app.state, "orchestrator", None)
    if orchestrator is None:
        return

    try:
        await orchestrator.notifier.drain(timeout=settings.NOTIFICATION_TIMEOUT)
    except Exception as e:
        logger.error(f"Error draining notifications: {e}")

    lock_count = orchestrator.locks.cleanup_all()
    if lock_count > 0:
        logger.info(f"Released {lock_count} idle session locks")

    try:
        await orchestrator.provider.close()
    except Exception as e:
        logger.error(f"Error closing completion provider: {e}")

    logger.info("ChatSales Backend Shutdown Complete")


# Security headers on all responses
app.add_middleware(SecurityHeadersMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Routers
app.include_router(chat.router)
app.include_router(auth.router)
app.include_router(dashboard.router)
app.include_router(health.router)


@app.get("/")
async def root():
    return {"message": "ChatSales API", "status": "running", "version": "1.0.0"}
