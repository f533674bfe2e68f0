from typing import List, Optional

from pydantic import Field, SecretStr, ValidationInfo, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    PROJECT_NAME: str = "ChainAudit"
    VERSION: str = "1.0.0"
    API_V1_PREFIX: str = "/api/v1"

    # --- Environment & Debug ---
    ENVIRONMENT: str = "local"
    DEBUG: bool = False  # Default to False for security
    LOG_LEVEL: str = "INFO"
    LOG_DIR: str = "logs"

    # --- Security ---
    API_KEY: Optional[SecretStr] = None  # Tenant-scoped access
    ADMIN_API_KEY: Optional[SecretStr] = None  # Admin / cross-tenant access

    # --- Audit chain ---
    AUDIT_HASH_SECRET: Optional[SecretStr] = None  # HMAC key for row hashes
    AUDIT_SNAPSHOT_SECRET: Optional[SecretStr] = None  # falls back to AUDIT_HASH_SECRET
    AUDIT_FAIL_CLOSED: bool = True
    AUDIT_VERIFY_LIMIT: int = Field(default=20000, ge=1)
    AUDIT_VERIFY_DEADLINE_SECONDS: Optional[float] = None

    # --- Audit analytics ---
    AUDIT_EXPORT_MAX_ROWS: int = Field(default=20000, ge=1)
    AUDIT_REPORT_MAX_EVENTS: int = Field(default=200, ge=1)
    AUDIT_TOP_N: int = Field(default=10, ge=1)
    AUDIT_MAX_WINDOW_DAYS: int = Field(default=366, ge=1)

    # Report policy. Business hours are local time in AUDIT_BUSINESS_TZ,
    # start inclusive, end exclusive.
    AUDIT_BUSINESS_HOURS_START: int = Field(default=7, ge=0, le=23)
    AUDIT_BUSINESS_HOURS_END: int = Field(default=20, ge=1, le=24)
    AUDIT_BUSINESS_TZ: str = "UTC"
    AUDIT_LOGIN_ACTIONS: List[str] = Field(default_factory=lambda: ["LOGIN"])
    AUDIT_FAILED_LOGIN_ACTIONS: List[str] = Field(
        default_factory=lambda: ["LOGIN_FAILED"]
    )
    AUDIT_ROLE_CHANGE_ACTIONS: List[str] = Field(
        default_factory=lambda: ["USER_ROLE_UPDATE"]
    )
    AUDIT_DESTRUCTIVE_SUFFIXES: List[str] = Field(default_factory=lambda: ["_DELETE"])
    AUDIT_DESTRUCTIVE_ACTIONS: List[str] = Field(default_factory=list)

    # --- Rate Limiting / Proxy ---
    AUDIT_RATE_LIMIT_PER_MINUTE: int = Field(default=60, ge=1)
    TRUSTED_PROXIES: List[str] = Field(
        default_factory=lambda: ["127.0.0.1", "10.0.0.0/8", "172.16.0.0/12", "192.168.0.0/16"],
        description="CIDR ranges of trusted reverse proxies for X-Forwarded-For",
    )

    # --- Redis / Celery ---
    REDIS_URL: str = "redis://localhost:6379/0"
    CELERY_BROKER_URL: Optional[str] = None
    CELERY_RESULT_BACKEND: Optional[str] = None

    # --- CORS ---
    ALLOWED_ORIGINS: List[str] = Field(
        default_factory=list,
        description="List of allowed CORS origins. Configure in .env",
    )

    # --- Database ---
    DATABASE_URL: str = "sqlite:///./chainaudit.db"
    TEST_DATABASE_URL: Optional[str] = None
    DB_POOL_SIZE: int = 5
    DB_MAX_OVERFLOW: int = 10
    DB_POOL_PRE_PING: bool = True

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=True, extra="ignore"
    )

    @field_validator("ALLOWED_ORIGINS", mode="before")
    @classmethod
    def default_allowed_origins(
        cls, v: Optional[List[str]], info: ValidationInfo
    ) -> Optional[List[str]]:
        env = info.data.get("ENVIRONMENT") or "local"
        if env != "production":
            if v is None:
                return ["http://localhost:5173", "http://localhost:3000"]
            if isinstance(v, str) and v.strip() in ("", "[]"):
                return ["http://localhost:5173", "http://localhost:3000"]
            if isinstance(v, list) and len(v) == 0:
                return ["http://localhost:5173", "http://localhost:3000"]
        return v

    @field_validator("AUDIT_HASH_SECRET", mode="before")
    @classmethod
    def validate_hash_secret(
        cls, v: Optional[SecretStr], info: ValidationInfo
    ) -> Optional[SecretStr]:
        # Unkeyed SHA-256 chains are only acceptable for local work
        env = info.data.get("ENVIRONMENT") or "local"
        if env not in ("local", "test") and not v:
            raise ValueError(
                "AUDIT_HASH_SECRET must be set in environment for non-local deployments"
            )
        return v

    @field_validator("AUDIT_BUSINESS_TZ", mode="after")
    @classmethod
    def validate_business_tz(cls, v: str) -> str:
        from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"Unknown AUDIT_BUSINESS_TZ: {v}") from exc
        return v

    @field_validator("AUDIT_BUSINESS_HOURS_END", mode="after")
    @classmethod
    def validate_business_hours(cls, v: int, info: ValidationInfo) -> int:
        start = info.data.get("AUDIT_BUSINESS_HOURS_START", 0)
        if v <= start:
            raise ValueError(
                "AUDIT_BUSINESS_HOURS_END must be later than AUDIT_BUSINESS_HOURS_START"
            )
        return v


settings = Settings()


def _secret(value: Optional[SecretStr]) -> Optional[str]:
    if value is None:
        return None
    return value.get_secret_value() or None


def get_hash_secret() -> Optional[str]:
    """HMAC key for event hashes; read at call time so tests can patch settings."""
    return _secret(settings.AUDIT_HASH_SECRET)


def get_snapshot_secret() -> Optional[str]:
    return _secret(settings.AUDIT_SNAPSHOT_SECRET) or get_hash_secret()
