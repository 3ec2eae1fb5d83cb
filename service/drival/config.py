import os
import secrets
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


def _get_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes")


class Settings:
    """Application settings from environment variables."""

    OPENAI_API_KEY: str = os.getenv("OPENAI_API_KEY", "")
    REALTIME_MODEL: str = os.getenv("REALTIME_MODEL", "gpt-4o-mini-realtime-preview-2024-12-17")
    REALTIME_VOICE: str = os.getenv("REALTIME_VOICE", "alloy")
    REALTIME_INSTRUCTIONS: str = os.getenv(
        "REALTIME_INSTRUCTIONS",
        "You are Drival, a helpful driving assistant and trip analyst. Be concise and conversational.",
    )

    # Signed session credentials. An unset secret means tokens do not survive a restart.
    JWT_SECRET_CONFIGURED: bool = bool(os.getenv("JWT_SECRET"))
    JWT_SECRET: str = os.getenv("JWT_SECRET") or secrets.token_hex(64)
    JWT_ISSUER: str = os.getenv("JWT_ISSUER", "aiVoiceAgent")

    USAGE_BACKEND: str = os.getenv("USAGE_BACKEND", "sqlite").lower()
    DATABASE_PATH: str = os.getenv("DATABASE_PATH", "./data/usage.db")
    JSON_FALLBACK_PATH: str = os.getenv("JSON_FALLBACK_PATH", "")

    ALLOWED_ORIGINS: list = [
        origin.strip()
        for origin in os.getenv(
            "ALLOWED_ORIGINS",
            "http://localhost:5173,http://localhost:5174,http://localhost:8082"
        ).split(",")
        if origin.strip()
    ]

    # Session time accounting (seconds)
    INITIAL_SESSION_SECONDS: int = int(os.getenv("INITIAL_SESSION_SECONDS", "900"))
    MAX_SESSION_SECONDS: int = int(os.getenv("MAX_SESSION_SECONDS", "900"))
    MIN_SESSION_SECONDS: int = int(os.getenv("MIN_SESSION_SECONDS", "30"))
    WARNING_THRESHOLD_SECONDS: int = int(os.getenv("WARNING_THRESHOLD_SECONDS", "300"))
    STALE_SESSION_SECONDS: int = int(os.getenv("STALE_SESSION_SECONDS", "300"))
    MAX_CONCURRENT_SESSIONS: int = int(os.getenv("MAX_CONCURRENT_SESSIONS", "3"))
    USAGE_PERIOD: str = os.getenv("USAGE_PERIOD", "month").lower()

    HEARTBEAT_TOKEN_SECONDS: int = int(os.getenv("HEARTBEAT_TOKEN_SECONDS", "300"))
    HEARTBEAT_TOLERANCE_SECONDS: int = int(os.getenv("HEARTBEAT_TOLERANCE_SECONDS", "300"))
    STORE_TIMEOUT_SECONDS: float = float(os.getenv("STORE_TIMEOUT_SECONDS", "5"))

    # Background jobs
    ENABLE_BACKGROUND_JOBS: bool = _get_bool("ENABLE_BACKGROUND_JOBS", "true")
    CLEANUP_INTERVAL_SECONDS: int = int(os.getenv("CLEANUP_INTERVAL_SECONDS", "120"))
    MONITOR_REAP_INTERVAL_SECONDS: int = int(os.getenv("MONITOR_REAP_INTERVAL_SECONDS", "30"))
    MONITOR_IDLE_TIMEOUT_SECONDS: int = int(os.getenv("MONITOR_IDLE_TIMEOUT_SECONDS", "90"))
    MONITOR_CLOSE_GRACE_SECONDS: float = float(os.getenv("MONITOR_CLOSE_GRACE_SECONDS", "1.0"))

    ADMIN_API_KEY: str = os.getenv("ADMIN_API_KEY", "")
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()

settings = Settings()
