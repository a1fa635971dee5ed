from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Floors applied to every configured deadline / window (milliseconds)
MIN_TIMEOUT_MS = 250
MIN_WINDOW_MS = 250
MIN_BODY_BYTES = 1024


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # PostgreSQL (settings store)
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    postgres_user: str = "aigate"
    postgres_password: str = "changeme"
    postgres_db: str = "aigate"

    @property
    def postgres_url(self) -> str:
        return (
            f"postgresql+asyncpg://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    # Settings store; disabled means provider resolution never leaves the process
    settings_store_enabled: bool = False
    settings_store_timeout_ms: int = 3000
    provider_cache_ttl_s: float = 60.0

    # Auth (bearer tokens issued elsewhere, verified here)
    jwt_secret_key: str = "change-this-to-a-random-string"
    jwt_algorithm: str = "HS256"
    auth_timeout_ms: int = 5000

    # Usage ledger; an empty URL falls back to the in-process safety cap
    usage_oracle_url: str = ""
    usage_oracle_api_key: str = ""
    usage_timeout_ms: int = 8000
    usage_increment_timeout_ms: int = 2000

    # Vendors
    openai_api_key: str = ""
    openai_model: str = "gpt-4o-mini"
    openai_image_model: str = "gpt-image-1"
    anthropic_api_key: str = ""
    anthropic_model: str = "claude-3-5-sonnet-20240620"
    gemini_api_key: str = ""
    gemini_model: str = "gemini-2.5-flash"
    gemini_image_model: str = "imagen-4.0-generate-preview-06-06"

    # Admission ceilings
    max_body_bytes: int = 2 * 1024 * 1024
    ai_timeout_ms: int = 45_000
    rate_limit_window_ms: int = 60_000
    rate_limit_chat_max: int = 30
    rate_limit_json_max: int = 30
    rate_limit_image_max: int = 10
    rate_limit_usage_max: int = 120

    # App
    app_env: str = "development"
    app_debug: bool = True
    app_host: str = "0.0.0.0"
    app_port: int = 8000

    # CORS
    allowed_origins: str = "*"  # comma-separated

    # Logging
    log_level: str = "INFO"
    log_json: bool = False  # set True in production for structured JSON logs

    # Sentry
    sentry_dsn: str = ""  # leave empty to disable

    @field_validator(
        "settings_store_timeout_ms",
        "auth_timeout_ms",
        "usage_timeout_ms",
        "usage_increment_timeout_ms",
        "ai_timeout_ms",
    )
    @classmethod
    def _clamp_timeout(cls, v: int) -> int:
        return max(MIN_TIMEOUT_MS, int(v))

    @field_validator("rate_limit_window_ms")
    @classmethod
    def _clamp_window(cls, v: int) -> int:
        return max(MIN_WINDOW_MS, int(v))

    @field_validator("rate_limit_chat_max", "rate_limit_json_max", "rate_limit_image_max", "rate_limit_usage_max")
    @classmethod
    def _clamp_max(cls, v: int) -> int:
        return max(1, int(v))

    @field_validator("max_body_bytes")
    @classmethod
    def _clamp_body(cls, v: int) -> int:
        return max(MIN_BODY_BYTES, int(v))

    @field_validator("provider_cache_ttl_s")
    @classmethod
    def _clamp_ttl(cls, v: float) -> float:
        return max(0.0, float(v))

    @property
    def is_production(self) -> bool:
        return self.app_env.lower() == "production"


settings = Settings()


def validate_settings_for_production() -> None:
    """Validate critical settings. Called on startup in non-test environments."""
    errors: list[str] = []

    if settings.is_production:
        if settings.jwt_secret_key in ("change-this-to-a-random-string", ""):
            errors.append("JWT_SECRET_KEY must be set to a secure random value")
        elif len(settings.jwt_secret_key) < 32:
            errors.append("JWT_SECRET_KEY must be at least 32 characters")

        if settings.allowed_origins == "*":
            errors.append("ALLOWED_ORIGINS must not be '*' in production")
        if settings.app_debug:
            errors.append("APP_DEBUG must be false in production")
        if not settings.usage_oracle_url:
            errors.append("USAGE_ORACLE_URL must be set in production (in-process caps are per instance)")
        if not (settings.openai_api_key or settings.anthropic_api_key or settings.gemini_api_key):
            errors.append("At least one of OPENAI_API_KEY, ANTHROPIC_API_KEY, GEMINI_API_KEY must be set")

    if errors:
        raise SystemExit("Configuration errors:\n  - " + "\n  - ".join(errors))
