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
    # CORS: comma-separated origins (e.g. http://localhost:19006). Empty = default list in main.py.
    cors_origins: str = ""
    # Trusted proxy IPs (comma-separated). Used for X-Forwarded-For in production.
    trusted_proxy_ips: str = ""

    # ===========================================
    # DATABASE (PostgreSQL)
    # ===========================================
    database_url: str  # Required, no default

    # ===========================================
    # REDIS & CELERY
    # ===========================================
    redis_url: str  # Required, no default
    celery_broker_url: str  # Required, no default
    celery_result_backend: str  # Required, no default

    # ===========================================
    # M-PESA (Daraja STK push)
    # ===========================================
    # Empty by default: MpesaConfig.validate() fails closed before any network call.
    mpesa_consumer_key: str = ""
    mpesa_consumer_secret: str = ""
    mpesa_business_short_code: str = ""
    mpesa_passkey: str = ""
    mpesa_environment: str = "sandbox"  # sandbox | production
    mpesa_callback_url: str = ""
    # Shared secret appended to the callback URL as ?token=...; empty = not checked
    mpesa_callback_token: str = ""
    # Comma-separated source IPs allowed to call the webhook; empty = any
    mpesa_callback_allowed_ips: str = ""
    mpesa_account_reference: str = "KASNEB Materials"
    mpesa_request_timeout: float = 30.0

    # ===========================================
    # PENDING RECONCILIATION (celery beat)
    # ===========================================
    mpesa_reconcile_after_minutes: int = 5
    mpesa_reconcile_max_age_hours: int = 24

    # ===========================================
    # ADMIN API
    # ===========================================
    admin_api_key: str | None = None  # Required for sales status override

    # ===========================================
    # CIRCUIT BREAKER
    # ===========================================
    cb_failure_threshold: int = 5
    cb_open_seconds: int = 30

    # ===========================================
    # LOGGING
    # ===========================================
    log_level: str = "INFO"
    request_id_header: str = "X-Request-Id"
    log_file: str | None = None
    log_max_bytes: int = 10_000_000
    log_backup_count: int = 5

    # ===========================================
    # STATE MANAGEMENT
    # ===========================================
    idempotency_ttl: int = 86400  # default key lifetime
    # In-flight lock for one callback delivery; expires on its own if the worker dies mid-commit
    mpesa_callback_lock_seconds: int = 60

    @field_validator("mpesa_environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        v = v.lower().strip()
        if v not in ("sandbox", "production"):
            raise ValueError("mpesa_environment must be 'sandbox' or 'production'")
        return v

    @property
    def trusted_proxy_ips_set(self) -> set[str]:
        """Get trusted proxy IPs as a set."""
        return {ip.strip() for ip in self.trusted_proxy_ips.split(",") if ip.strip()}

    @property
    def mpesa_callback_allowed_ips_set(self) -> set[str]:
        return {ip.strip() for ip in self.mpesa_callback_allowed_ips.split(",") if ip.strip()}

    class Config:
        env_file = ".env"
        case_sensitive = False
        extra = "ignore"


settings = Settings()
