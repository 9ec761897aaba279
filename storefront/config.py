"""Shared configuration."""
from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Base settings for all services."""

    # Service info
    service_name: str = "storefront"
    service_port: int = 8000

    # Database
    postgres_user: str = "postgres"
    postgres_password: str = "postgres"
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    postgres_db: str = "storefront"
    database_url_override: Optional[str] = None
    database_echo: bool = False

    # RabbitMQ
    rabbitmq_user: str = "guest"
    rabbitmq_password: str = "guest"
    rabbitmq_host: str = "localhost"
    rabbitmq_port: int = 5672

    # Redis (response and product caches)
    redis_host: str = "localhost"
    redis_port: int = 6379
    redis_password: Optional[str] = None
    redis_db: int = 0
    cache_enabled: bool = True
    cache_ttl_seconds: int = 3600

    # Card / bank gateway
    midtrans_server_key: str = ""
    midtrans_base_url: str = "https://api.sandbox.midtrans.com/v2"

    # Crypto invoice gateway
    plisio_api_key: str = ""
    plisio_secret_key: str = ""
    plisio_base_url: str = "https://api.plisio.net/api/v1"
    plisio_default_currency: str = "BTC"
    plisio_invoice_expire_min: int = 60
    idr_to_usd_rate: float = 0.000065

    gateway_timeout_seconds: float = 30.0

    # Public URLs used in gateway redirects and callbacks
    backend_url: str = "http://localhost:8000"
    frontend_url: str = "http://localhost:3000"

    # Payment queue
    payment_queue_name: str = "payment-processing"
    payment_concurrency: int = 3
    payment_attempts: int = 3
    payment_backoff_ms: int = 2000
    payment_keep_completed: int = 50
    payment_keep_failed: int = 25

    # OTP queue
    otp_queue_name: str = "otp-processing"
    otp_concurrency: int = 5
    otp_attempts: int = 3
    otp_backoff_ms: int = 2000
    otp_rate_limit_max: int = 10
    otp_rate_limit_seconds: float = 60.0
    otp_keep_completed: int = 100
    otp_keep_failed: int = 50

    # Stale payment sweeper
    sweeper_interval_seconds: int = 300
    pending_timeout_minutes: int = 30
    reservation_timeout_minutes: int = 120

    # SMTP
    smtp_host: str = "localhost"
    smtp_port: int = 1025
    smtp_username: str = ""
    smtp_password: str = ""
    smtp_from: str = "no-reply@example.com"
    smtp_use_tls: bool = False

    # Logging
    log_level: str = "INFO"

    @property
    def database_url(self) -> str:
        """Get async database connection URL."""
        if self.database_url_override:
            return self.database_url_override
        return (
            f"postgresql+asyncpg://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    @property
    def rabbitmq_url(self) -> str:
        """Get RabbitMQ connection URL."""
        return (
            f"amqp://{self.rabbitmq_user}:{self.rabbitmq_password}"
            f"@{self.rabbitmq_host}:{self.rabbitmq_port}/"
        )

    @property
    def redis_url(self) -> str:
        """Get Redis connection URL."""
        if self.redis_password:
            return f"redis://:{self.redis_password}@{self.redis_host}:{self.redis_port}/{self.redis_db}"
        return f"redis://{self.redis_host}:{self.redis_port}/{self.redis_db}"

    class Config:
        env_file = ".env"
        case_sensitive = False
