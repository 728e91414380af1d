# chatsales/config.py
import os
from pathlib import Path
from dotenv import load_dotenv

PACKAGE_DIR = Path(__file__).resolve().parent     # chatsales/
REPO_DIR = PACKAGE_DIR.parent                      # repo root

ENV_PACKAGE = PACKAGE_DIR / ".env"
ENV_REPO = REPO_DIR / ".env"
ENV_FILE = ENV_PACKAGE if ENV_PACKAGE.exists() else ENV_REPO

load_dotenv(dotenv_path=str(ENV_FILE), override=False)


def _env_bool(name: str, default: str = "false") -> bool:
    return (os.getenv(name, default) or "").strip().lower() in ("1", "true", "yes", "on")


def _parse_origins(raw: str) -> list[str]:
    # split, strip, drop empties, drop trailing slashes
    out = []
    for o in (raw or "").split(","):
        o = (o or "").strip().rstrip("/")
        if o:
            out.append(o)
    return out


class Settings:
    DATABASE_URL: str = os.getenv("DATABASE_URL", f"sqlite:///{REPO_DIR / 'chatsales.db'}")

    OPENAI_API_KEY: str | None = os.getenv("OPENAI_API_KEY")
    OPENAI_MODEL: str = os.getenv("OPENAI_MODEL", "gpt-4o-mini")

    # ================= Agent Persona =================
    AGENT_PERSONA_NAME: str = os.getenv("AGENT_PERSONA_NAME", "Abby")
    PRODUCT_NAME: str = os.getenv("PRODUCT_NAME", "WebChatSales")
    PRODUCT_PRICE: str = os.getenv("PRODUCT_PRICE", "$97 a month")

    # Demo mode: the chat itself is the product demo, no qualification or booking
    FRONTEND_URL: str = os.getenv("FRONTEND_URL", "http://localhost:3000")
    DEMO_MODE: bool = _env_bool("DEMO_MODE") or "webchatsales.com" in (os.getenv("FRONTEND_URL") or "")

    # ================= LLM Call Budgets =================
    LLM_STREAM_TEMPERATURE: float = float(os.getenv("LLM_STREAM_TEMPERATURE", "0.7"))
    LLM_STREAM_FIRST_TOKEN_TIMEOUT: float = float(os.getenv("LLM_STREAM_FIRST_TOKEN_TIMEOUT", "15.0"))
    LLM_STREAM_IDLE_TIMEOUT: float = float(os.getenv("LLM_STREAM_IDLE_TIMEOUT", "20.0"))
    LLM_AUX_TIMEOUT: float = float(os.getenv("LLM_AUX_TIMEOUT", "10.0"))

    STREAM_MAX_ATTEMPTS: int = int(os.getenv("STREAM_MAX_ATTEMPTS", "3"))
    STREAM_RETRY_BASE_DELAY: float = float(os.getenv("STREAM_RETRY_BASE_DELAY", "0.5"))
    STREAM_RETRY_MAX_DELAY: float = float(os.getenv("STREAM_RETRY_MAX_DELAY", "4.0"))

    # Answers at or below this length are rejected when the validator itself is unavailable
    VALIDATOR_SHORT_ANSWER_MAX_LEN: int = int(os.getenv("VALIDATOR_SHORT_ANSWER_MAX_LEN", "2"))

    # Auxiliary LLM calls share one breaker
    LLM_BREAKER_FAILURE_THRESHOLD: int = int(os.getenv("LLM_BREAKER_FAILURE_THRESHOLD", "5"))
    LLM_BREAKER_RESET_TIMEOUT: float = float(os.getenv("LLM_BREAKER_RESET_TIMEOUT", "30.0"))

    MAX_SESSION_LOCKS: int = int(os.getenv("MAX_SESSION_LOCKS", "5000"))
    EXTRACTION_CACHE_TTL_SECONDS: int = int(os.getenv("EXTRACTION_CACHE_TTL_SECONDS", "900"))

    # Longer user messages are rejected at the API; stored text is capped to this
    MAX_MESSAGE_LENGTH: int = int(os.getenv("MAX_MESSAGE_LENGTH", "4000"))

    # ================= Rate limiting (per client IP) =================
    RATE_LIMIT_ENABLED: bool = _env_bool("RATE_LIMIT_ENABLED", "true")
    RATE_LIMIT_CHAT: str = os.getenv("RATE_LIMIT_CHAT", "20/minute")

    # ================= Notifications =================
    ADMIN_EMAIL: str | None = os.getenv("ADMIN_EMAIL")
    CLIENT_EMAIL: str | None = os.getenv("CLIENT_EMAIL")
    NOTIFICATION_EMAIL: str | None = os.getenv("NOTIFICATION_EMAIL")
    DASHBOARD_API_URL: str | None = os.getenv("DASHBOARD_API_URL")
    NOTIFICATION_TIMEOUT: float = float(os.getenv("NOTIFICATION_TIMEOUT", "30.0"))

    SMTP_HOST: str | None = os.getenv("SMTP_HOST")
    SMTP_PORT: int = int(os.getenv("SMTP_PORT", "587"))
    SMTP_USER: str | None = os.getenv("SMTP_USER")
    SMTP_PASSWORD: str | None = os.getenv("SMTP_PASSWORD")
    SMTP_TLS: bool = os.getenv("SMTP_TLS", "True") == "True"
    EMAIL_FROM: str | None = os.getenv("EMAIL_FROM")
    EMAIL_FROM_NAME: str | None = os.getenv("EMAIL_FROM_NAME")

    # test: logs emails instead of sending
    EMAIL_ENVIRONMENT: str = os.getenv("EMAIL_ENVIRONMENT", "production")
    EMAIL_MAX_PER_HOUR: int = int(os.getenv("EMAIL_MAX_PER_HOUR", "100"))

    CORS_ORIGINS: list[str] = _parse_origins(
        os.getenv(
            "CORS_ORIGINS",
            "http://127.0.0.1:3000,http://localhost:3000",
        )
    )

    # ================= Environment Configuration =================
    ENVIRONMENT: str = os.getenv("ENVIRONMENT", "development")

    # ================= Dashboard Authentication =================
    JWT_SECRET_KEY: str | None = os.getenv("JWT_SECRET_KEY")
    JWT_ACCESS_TOKEN_EXPIRE_MINUTES: int = int(os.getenv("JWT_ACCESS_TOKEN_EXPIRE_MINUTES", "1440"))
    ADMIN_USERNAME: str = os.getenv("ADMIN_USERNAME", "admin")
    # bcrypt hash; takes precedence over ADMIN_PASSWORD
    ADMIN_PASSWORD_HASH: str | None = os.getenv("ADMIN_PASSWORD_HASH")
    ADMIN_PASSWORD: str | None = os.getenv("ADMIN_PASSWORD")


settings = Settings()


# =============================================================================
# CONFIGURATION VALIDATION
# =============================================================================

class ConfigValidationError(Exception):
    """Raised when required configuration is missing or invalid."""
    pass


def validate_config(raise_on_error: bool = True) -> dict:
    """
    Validate all configuration settings.

    Args:
        raise_on_error: If True, raises ConfigValidationError on critical errors.
                       If False, returns dict with errors and warnings.

    Returns:
        Dict with 'errors' (critical) and 'warnings' (non-critical) lists.
    """
    errors = []
    warnings = []

    if not settings.DATABASE_URL:
        errors.append("DATABASE_URL is required")

    if not settings.OPENAI_API_KEY:
        errors.append("OPENAI_API_KEY is required for chat replies")

    if settings.STREAM_MAX_ATTEMPTS < 1:
        errors.append("STREAM_MAX_ATTEMPTS must be at least 1")
    if settings.MAX_MESSAGE_LENGTH < 1:
        errors.append("MAX_MESSAGE_LENGTH must be at least 1")

    if not settings.SMTP_HOST:
        warnings.append("SMTP_HOST missing - email notifications disabled")
    if not (settings.ADMIN_EMAIL or settings.NOTIFICATION_EMAIL):
        warnings.append("ADMIN_EMAIL/NOTIFICATION_EMAIL missing - lead and ticket emails skipped")
    if not settings.CLIENT_EMAIL:
        warnings.append("CLIENT_EMAIL missing - urgent inquiry alerts go to ADMIN_EMAIL")
    if not settings.DASHBOARD_API_URL:
        warnings.append("DASHBOARD_API_URL missing - dashboard pushes disabled")
    if not settings.JWT_SECRET_KEY:
        warnings.append("JWT_SECRET_KEY missing - dashboard tokens reset on restart")
    if not (settings.ADMIN_PASSWORD_HASH or settings.ADMIN_PASSWORD):
        warnings.append("ADMIN_PASSWORD_HASH/ADMIN_PASSWORD missing - dashboard login disabled")

    if settings.ENVIRONMENT == "production":
        if not settings.CORS_ORIGINS or any("localhost" in o for o in settings.CORS_ORIGINS):
            warnings.append("CORS_ORIGINS includes localhost in production - consider restricting")
        if settings.ADMIN_PASSWORD and not settings.ADMIN_PASSWORD_HASH:
            warnings.append("ADMIN_PASSWORD is plain text in production - set ADMIN_PASSWORD_HASH")

    result = {"errors": errors, "warnings": warnings}

    if raise_on_error and errors:
        raise ConfigValidationError(f"Configuration errors: {'; '.join(errors)}")

    return result


def get_config_status() -> dict:
    """Configuration presence flags for the health endpoint."""
    return {
        "environment": settings.ENVIRONMENT,
        "demo_mode": settings.DEMO_MODE,
        "database_configured": bool(settings.DATABASE_URL),
        "openai_configured": bool(settings.OPENAI_API_KEY),
        "smtp_configured": bool(settings.SMTP_HOST),
        "dashboard_push_configured": bool(settings.DASHBOARD_API_URL),
        "dashboard_login_configured": bool(settings.ADMIN_PASSWORD_HASH or settings.ADMIN_PASSWORD),
    }
