"""
config/settings.py
Application settings loaded from environment variables.
Uses Pydantic BaseSettings for validation and type safety.
"""

from functools import lru_cache
from typing import List
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ── Application ──────────────────────────────────────────
    APP_NAME: str = "Field Dispatch Platform"
    APP_ENV: str = "development"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    SECRET_KEY: str

    # ── Server ───────────────────────────────────────────────
    HOST: str = "0.0.0.0"
    PORT: int = 8000
    WORKERS: int = 4

    # ── Database ─────────────────────────────────────────────
    DATABASE_URL: str
    DATABASE_POOL_SIZE: int = 20
    DATABASE_MAX_OVERFLOW: int = 40
    DATABASE_POOL_TIMEOUT: int = 30
    DATABASE_STATEMENT_TIMEOUT_SECONDS: float = 5.0

    # ── Redis ────────────────────────────────────────────────
    REDIS_URL: str = "redis://localhost:6379/0"
    REDIS_CACHE_TTL: int = 300          # 5 minutes
    LOCATION_CACHE_TTL: int = 300       # professional location, 5 minutes

    # ── JWT ──────────────────────────────────────────────────
    JWT_SECRET_KEY: str
    JWT_ALGORITHM: str = "HS256"
    JWT_ACCESS_TOKEN_EXPIRE_MINUTES: int = 15

    # ── Firebase ─────────────────────────────────────────────
    FIREBASE_CREDENTIALS_PATH: str = "./config/firebase-credentials.json"
    FIREBASE_PROJECT_ID: str = ""

    # ── Twilio Verify ────────────────────────────────────────
    TWILIO_ACCOUNT_SID: str = ""
    TWILIO_AUTH_TOKEN: str = ""
    TWILIO_VERIFY_SERVICE_SID: str = ""
    DEFAULT_COUNTRY_CODE: str = "+91"
    CODE_CHANNEL_TIMEOUT_SECONDS: float = 5.0

    # ── Frontend ─────────────────────────────────────────────
    ALLOWED_ORIGINS: str = "http://localhost:3000,http://localhost:3001"

    # ── Celery ───────────────────────────────────────────────
    CELERY_BROKER_URL: str = "redis://localhost:6379/1"
    CELERY_RESULT_BACKEND: str = "redis://localhost:6379/2"
    CELERY_TASK_ALWAYS_EAGER: bool = False

    # ── Dispatch ─────────────────────────────────────────────
    DISPATCH_MODE: str = "broadcast"            # broadcast | auto_assign
    ASSUMED_SPEED_KMH: float = 30.0
    SEARCH_RADIUS_KM: float = 25.0
    EMERGENCY_SEARCH_RADIUS_KM: float = 50.0
    MAX_SEARCH_RADIUS_KM: float = 100.0
    EMERGENCY_FEE: float = 200.0
    BOOKING_MIN_LEAD_MINUTES: int = 30
    BOOKING_MAX_ADVANCE_DAYS: int = 30
    PENDING_NO_MATCH_POLICY: str = "keep"       # keep | auto_cancel
    PENDING_NO_MATCH_TIMEOUT_MINUTES: int = 30
    ETA_OVERRIDE_MAX_MINUTES: int = 720
    BOOKING_HISTORY_MAX_PAGE_SIZE: int = 50

    # ── Completion Verification ──────────────────────────────
    VERIFICATION_RESEND_COOLDOWN_SECONDS: int = 30
    VERIFICATION_EXPIRY_MINUTES: int = 10
    VERIFICATION_MAX_ATTEMPTS: int = 3

    # ── Payout ───────────────────────────────────────────────
    PLATFORM_COMMISSION_RATE: float = 0.15

    @field_validator("DISPATCH_MODE")
    @classmethod
    def validate_dispatch_mode(cls, v: str) -> str:
        if v not in ("broadcast", "auto_assign"):
            raise ValueError("DISPATCH_MODE must be 'broadcast' or 'auto_assign'")
        return v

    @field_validator("PENDING_NO_MATCH_POLICY")
    @classmethod
    def validate_pending_policy(cls, v: str) -> str:
        if v not in ("keep", "auto_cancel"):
            raise ValueError("PENDING_NO_MATCH_POLICY must be 'keep' or 'auto_cancel'")
        return v

    @property
    def allowed_origins_list(self) -> List[str]:
        return [o.strip() for o in self.ALLOWED_ORIGINS.split(",")]

    @property
    def is_production(self) -> bool:
        return self.APP_ENV == "production"

    @property
    def is_sqlite(self) -> bool:
        return self.DATABASE_URL.startswith("sqlite")


@lru_cache()
def get_settings() -> Settings:
    """Cached settings instance; call this everywhere."""
    return Settings()


settings = get_settings()
