"""
Application configuration.
All settings are loaded from environment variables.
Use env.example as a reference for required variables.
"""
from pydantic import field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    IMPORTANT: Credentials have no defaults - they MUST be set in .env file.
    """

    # ===========================================
    # APPLICATION
    # ===========================================
    app_env: str = "local"
    # Public base URL, used to build the hosted gateway callback URL
    app_url: str = "http://localhost:8000"

    # ===========================================
    # DATABASE (PostgreSQL)
    # ===========================================
    database_url: str  # Required, no default

    # ===========================================
    # REDIS & CELERY
    # ===========================================
    redis_url: str  # Required, no default
    celery_broker_url: str = "redis://localhost:6379/1"
    celery_result_backend: str = "redis://localhost:6379/2"

    # ===========================================
    # TELEGRAM BOT
    # ===========================================
    telegram_bot_token: str  # Required, no default
    telegram_bot_username: str = ""
    # Comma-separated Telegram ids of administrators (manual review, alerts)
    admin_telegram_ids: str = ""
    support_handle: str = ""

    # ===========================================
    # REMOTE PANEL (Remnawave)
    # ===========================================
    remnawave_url: str = "http://localhost:3000"
    remnawave_token: str = ""
    remnawave_timeout: float = 20.0

    # ===========================================
    # HOSTED PAYMENT GATEWAY (Tetra98)
    # ===========================================
    tetra98_api_url: str = "https://tetra98.ir"
    tetra98_api_key: str = ""
    tetra98_timeout: float = 20.0
    tetra98_pay_link_template: str = "https://t.me/Tetra98_bot?start=pay_{authority}"
    hosted_callback_path: str = "/callback/tetra98"

    # ===========================================
    # MANUAL PAYMENT (card to card)
    # ===========================================
    manual_card_number: str = ""

    # ===========================================
    # WALLET
    # ===========================================
    min_wallet_charge_tomans: int = 10_000
    max_wallet_charge_tomans: int = 10_000_000

    # ===========================================
    # UPSTREAM RETRIES
    # ===========================================
    # Only network errors and 5xx are retried; 4xx are final
    upstream_retry_max_attempts: int = 3
    upstream_retry_backoff_seconds: float = 0.5

    # ===========================================
    # CIRCUIT BREAKER
    # ===========================================
    cb_failure_threshold: int = 5
    cb_open_seconds: int = 30
    cb_storage: str = "redis"  # redis, memory

    # ===========================================
    # RATE LIMITS (per Telegram user)
    # ===========================================
    start_rate_limit: int = 5
    start_rate_window_seconds: int = 15
    purchase_rate_limit: int = 3
    purchase_rate_window_seconds: int = 60

    # ===========================================
    # ADMIN API
    # ===========================================
    admin_api_key: str | None = None  # Optional, but recommended

    # ===========================================
    # HTTP / LOGGING
    # ===========================================
    http_client_timeout: float = 10.0
    request_id_header: str = "X-Request-Id"
    log_level: str = "INFO"
    log_file: str | None = None
    log_max_bytes: int = 10_000_000
    log_backup_count: int = 5

    @field_validator("hosted_callback_path")
    @classmethod
    def validate_callback_path(cls, v: str) -> str:
        """Callback path must be absolute."""
        v = v.strip()
        if not v.startswith("/"):
            raise ValueError("hosted_callback_path must start with '/'")
        return v

    @field_validator("max_wallet_charge_tomans")
    @classmethod
    def validate_wallet_bounds(cls, v: int, info) -> int:
        low = info.data.get("min_wallet_charge_tomans", 0)
        if v < low:
            raise ValueError("max_wallet_charge_tomans must be >= min_wallet_charge_tomans")
        return v

    @property
    def admin_telegram_ids_set(self) -> set[str]:
        """Get admin Telegram ids as a set."""
        return {i.strip() for i in self.admin_telegram_ids.split(",") if i.strip()}

    @property
    def hosted_callback_url(self) -> str:
        return f"{self.app_url.rstrip('/')}{self.hosted_callback_path}"

    class Config:
        env_file = ".env"
        case_sensitive = False
        extra = "ignore"


settings = Settings()
