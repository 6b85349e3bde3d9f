import os
from dotenv import load_dotenv

load_dotenv()

class Settings:
    REDIS_URL: str = os.getenv("REDIS_URL", "redis://localhost:6379/0")
    RQ_QUEUE_NAME: str = os.getenv("RQ_QUEUE_NAME", "escrow")
    # "redis" in every deployed environment; "memory" for local runs without Redis
    STORE_BACKEND: str = os.getenv("STORE_BACKEND", "redis").lower()

    APP_BASE_URL: str = os.getenv("APP_BASE_URL", "http://localhost:8000")
    CORS_ORIGINS: str = os.getenv("CORS_ORIGINS", "")
    SUCCESS_PAGE_PATH: str = os.getenv("SUCCESS_PAGE_PATH", "/payment/success")
    ERROR_PAGE_PATH: str = os.getenv("ERROR_PAGE_PATH", "/payment/error")

    # Payment intents
    DEFAULT_PROVIDER: str = os.getenv("DEFAULT_PROVIDER", "paystack").lower()
    CURRENCY: str = os.getenv("CURRENCY", "ZAR")
    INTENT_TTL_MINUTES: int = int(os.getenv("INTENT_TTL_MINUTES", "30"))
    PROVIDER_TIMEOUT_SEC: float = float(os.getenv("PROVIDER_TIMEOUT_SEC", "10"))
    CALLBACK_CAS_RETRIES: int = int(os.getenv("CALLBACK_CAS_RETRIES", "3"))

    # Card/bank provider
    PAYSTACK_SECRET_KEY: str = os.getenv("PAYSTACK_SECRET_KEY", "")
    PAYSTACK_BASE_URL: str = os.getenv("PAYSTACK_BASE_URL", "https://api.paystack.co")
    PAYSTACK_VERIFY_SIGNATURES: bool = os.getenv("PAYSTACK_VERIFY_SIGNATURES", "true").lower() == "true"

    # Trust-account escrow provider
    TRADESAFE_CLIENT_ID: str = os.getenv("TRADESAFE_CLIENT_ID", "")
    TRADESAFE_CLIENT_SECRET: str = os.getenv("TRADESAFE_CLIENT_SECRET", "")
    TRADESAFE_ENVIRONMENT: str = os.getenv("TRADESAFE_ENVIRONMENT", "sandbox").lower()
    TRADESAFE_DAYS_TO_DELIVER: int = int(os.getenv("TRADESAFE_DAYS_TO_DELIVER", "7"))
    TRADESAFE_DAYS_TO_INSPECT: int = int(os.getenv("TRADESAFE_DAYS_TO_INSPECT", "7"))
    # HMAC-SHA256 of the webhook body keyed with the client secret
    TRADESAFE_VERIFY_SIGNATURES: bool = os.getenv("TRADESAFE_VERIFY_SIGNATURES", "true").lower() == "true"

    # Auto-release policy. Cadence is owned by the external trigger; kept here for /health output.
    CRON_SECRET: str = os.getenv("CRON_SECRET", "")
    AUTO_RELEASE_GRACE_DAYS: float = float(os.getenv("AUTO_RELEASE_GRACE_DAYS", "7"))
    AUTO_RELEASE_CADENCE_HOURS: float = float(os.getenv("AUTO_RELEASE_CADENCE_HOURS", "6"))
    AUTO_RELEASE_BATCH_LIMIT: int = int(os.getenv("AUTO_RELEASE_BATCH_LIMIT", "500"))

    # Notifications (best effort)
    NOTIFY_WEBHOOK_URL: str = os.getenv("NOTIFY_WEBHOOK_URL", "")
    NOTIFY_TIMEOUT_SEC: float = float(os.getenv("NOTIFY_TIMEOUT_SEC", "5"))
    INBOX_MAX_ITEMS: int = int(os.getenv("INBOX_MAX_ITEMS", "200"))

    # Security & privacy
    ADMIN_API_KEY: str = os.getenv("ADMIN_API_KEY", "")
    ENABLE_PII_REDACTION: bool = os.getenv("ENABLE_PII_REDACTION", "true").lower() == "true"

    # Observability
    ENABLE_METRICS: bool = os.getenv("ENABLE_METRICS", "true").lower() == "true"

settings = Settings()
