import os
from pydantic_settings import BaseSettings

class Settings(BaseSettings):
    service_name: str = os.getenv("SERVICE_NAME", "payments-ledger")
    log_level: str = os.getenv("LOG_LEVEL", "INFO")

    kafka_bootstrap: str = os.getenv("KAFKA_BOOTSTRAP", "kafka:9092")

    database_url: str = os.getenv("DATABASE_URL", "")
    mysql_user: str = os.getenv("MYSQL_USER", "root")
    mysql_password: str = os.getenv("MYSQL_PASSWORD", "root")
    mysql_host: str = os.getenv("MYSQL_HOST", "mysql")
    mysql_db: str = os.getenv("MYSQL_DB", "ledger")
    mysql_port: int = int(os.getenv("MYSQL_PORT", "3306"))

    redis_url: str = os.getenv("REDIS_URL", "redis://redis:6379/0")

    # Webhook signing secrets
    stripe_webhook_secret: str = os.getenv("STRIPE_WEBHOOK_SECRET", "")
    stripe_signature_tolerance_seconds: int = int(os.getenv("STRIPE_SIGNATURE_TOLERANCE_SECONDS", "300"))
    paystack_secret_key: str = os.getenv("PAYSTACK_SECRET_KEY", "")
    flutterwave_secret_hash: str = os.getenv("FLUTTERWAVE_SECRET_HASH", "")

    # Provider API credentials used by reconciliation
    stripe_secret_key: str = os.getenv("STRIPE_SECRET_KEY", "")
    flutterwave_secret_key: str = os.getenv("FLUTTERWAVE_SECRET_KEY", "")
    provider_http_timeout_seconds: float = float(os.getenv("PROVIDER_HTTP_TIMEOUT_SECONDS", "10"))

    # "database" or "redis"
    idempotency_backend: str = os.getenv("IDEMPOTENCY_BACKEND", "database")
    idempotency_ttl_seconds: int = int(os.getenv("IDEMPOTENCY_TTL_SECONDS", str(7 * 24 * 3600)))

    allow_description_reference_match: bool = os.getenv("ALLOW_DESCRIPTION_REFERENCE_MATCH", "false").lower() == "true"

    # Redelivered events that failed on an unexpected error are re-dispatched up to this many times
    webhook_max_auto_retries: int = int(os.getenv("WEBHOOK_MAX_AUTO_RETRIES", "4"))
    # A `processing` event untouched for this long is treated as abandoned
    webhook_processing_stale_seconds: int = int(os.getenv("WEBHOOK_PROCESSING_STALE_SECONDS", "300"))

    reconciliation_timeout_seconds: float = float(os.getenv("RECONCILIATION_TIMEOUT_SECONDS", "60"))
    reconciliation_max_attempts: int = int(os.getenv("RECONCILIATION_MAX_ATTEMPTS", "3"))
    reconciliation_default_window_hours: int = int(os.getenv("RECONCILIATION_DEFAULT_WINDOW_HOURS", "24"))

    @property
    def sqlalchemy_url(self) -> str:
        if self.database_url:
            return self.database_url
        return f"mysql+mysqldb://{self.mysql_user}:{self.mysql_password}@{self.mysql_host}:{self.mysql_port}/{self.mysql_db}"

    def webhook_secret(self, provider: str) -> str:
        return {
            "stripe": self.stripe_webhook_secret,
            "paystack": self.paystack_secret_key,
            "flutterwave": self.flutterwave_secret_hash,
        }.get(provider, "")

settings = Settings()
