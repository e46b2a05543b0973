import os

BASE_DIR = os.path.abspath(os.path.dirname(__file__))


def _int(name, default):
    return int(os.getenv(name, str(default)))


def _float(name, default):
    return float(os.getenv(name, str(default)))


class Config:
    # Secrets
    SECRET_KEY = os.getenv("SECRET_KEY", "dev-only-change-me")

    # SQLite database file stored next to the app as courtslot.db
    SQLALCHEMY_DATABASE_URI = os.getenv(
        "DATABASE_URL",
        "sqlite:///" + os.path.join(BASE_DIR, "courtslot.db")
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

    # Stripe
    STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY")
    STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET")
    STRIPE_WEBHOOK_TOLERANCE = _int("STRIPE_WEBHOOK_TOLERANCE", 300)
    DEFAULT_CURRENCY = os.getenv("DEFAULT_CURRENCY", "eur")

    # Shared secret for the recovery endpoint (X-API-Key)
    RECOVERY_API_KEY = os.getenv("RECOVERY_API_KEY")

    # Admin bearer tokens (itsdangerous), 12 hours
    ADMIN_TOKEN_MAX_AGE_SECONDS = _int("ADMIN_TOKEN_MAX_AGE_SECONDS", 12 * 60 * 60)

    # Calendar
    SLOT_GRANULARITY_MINUTES = _int("SLOT_GRANULARITY_MINUTES", 30)
    VENUE_OPEN_HOUR = _int("VENUE_OPEN_HOUR", 8)
    VENUE_CLOSE_HOUR = _int("VENUE_CLOSE_HOUR", 22)

    # Holds: heartbeat grace, and the hard cap for holds that never heartbeat
    HOLD_GRACE_MINUTES = _int("HOLD_GRACE_MINUTES", 8)
    HOLD_MAX_AGE_MINUTES = _int("HOLD_MAX_AGE_MINUTES", 30)

    # Reconciliation
    RECONCILE_AFTER_MINUTES = _int("RECONCILE_AFTER_MINUTES", 15)
    ABANDON_AFTER_HOURS = _int("ABANDON_AFTER_HOURS", 2)
    RECONCILE_WORKERS = _int("RECONCILE_WORKERS", 4)
    RECOVERY_SCAN_DAYS = _int("RECOVERY_SCAN_DAYS", 7)
    CLEANUP_BATCH_SIZE = _int("CLEANUP_BATCH_SIZE", 100)

    # Archive
    ARCHIVE_AFTER_DAYS = _int("ARCHIVE_AFTER_DAYS", 90)
    ARCHIVE_BATCH_SIZE = _int("ARCHIVE_BATCH_SIZE", 100)

    # Retries: backoff for transient errors, immediate re-run on contention
    RETRY_ATTEMPTS = _int("RETRY_ATTEMPTS", 3)
    RETRY_BASE_DELAY = _float("RETRY_BASE_DELAY", 0.5)
    CONTENTION_MAX_ATTEMPTS = _int("CONTENTION_MAX_ATTEMPTS", 5)

    # Invoices
    INVOICE_COUNTER_START = _int("INVOICE_COUNTER_START", 1)
    INVOICE_PADDING = _int("INVOICE_PADDING", 6)

    # Email (SMTP)
    SMTP_HOST = os.getenv("SMTP_HOST")
    SMTP_PORT = _int("SMTP_PORT", 587)
    SMTP_USERNAME = os.getenv("SMTP_USERNAME")
    SMTP_PASSWORD = os.getenv("SMTP_PASSWORD")
    SMTP_FROM_EMAIL = os.getenv("SMTP_FROM_EMAIL")
    SMTP_USE_TLS = os.getenv("SMTP_USE_TLS", "true").lower() == "true"
    EMAIL_MAX_RETRY_ATTEMPTS = _int("EMAIL_MAX_RETRY_ATTEMPTS", 3)
    # send confirmations on a background pool; False sends inline
    EMAIL_BACKGROUND = os.getenv("EMAIL_BACKGROUND", "true").lower() == "true"

    # Basic app settings
    DEBUG = False
