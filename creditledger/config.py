import os


def _env_bool(name, default=""):
    return os.environ.get(name, default).lower() in ("1", "true", "yes")


class Config:
    """Base configuration. Shared across all environments."""

    # --- Required ---
    SECRET_KEY = os.environ.get("SECRET_KEY")

    # Handle DATABASE_URL: some PaaS providers (Railway, Heroku) use
    # "postgres://" which SQLAlchemy 1.4+ doesn't accept.
    _db_url = os.environ.get("DATABASE_URL", "")
    if _db_url.startswith("postgres://"):
        _db_url = _db_url.replace("postgres://", "postgresql://", 1)
    SQLALCHEMY_DATABASE_URI = _db_url or None

    STRIPE_SECRET_KEY = os.environ.get("STRIPE_SECRET_KEY")
    STRIPE_WEBHOOK_SECRET = os.environ.get("STRIPE_WEBHOOK_SECRET")

    # When False, purchases are only recorded as PENDING and the charge is
    # initiated by another service that echoes transaction_id in metadata.
    STRIPE_INITIATE_CHARGES = _env_bool("STRIPE_INITIATE_CHARGES")

    # --- Pricing ---
    CREDIT_CURRENCY = os.environ.get("CREDIT_CURRENCY", "AUD")
    CREDIT_TAX_RATE = os.environ.get("CREDIT_TAX_RATE", "0.10")  # 10% GST
    CREDIT_PROCESSING_FEE_RATE = os.environ.get(
        "CREDIT_PROCESSING_FEE_RATE", "0.029"
    )

    # --- Transaction limits ---
    CREDIT_MIN_PURCHASE_AMOUNT = os.environ.get("CREDIT_MIN_PURCHASE_AMOUNT", "5.00")
    CREDIT_MAX_PURCHASE_AMOUNT = os.environ.get("CREDIT_MAX_PURCHASE_AMOUNT", "500.00")
    CREDIT_MIN_CREDITS_USAGE = int(os.environ.get("CREDIT_MIN_CREDITS_USAGE", 1))
    CREDIT_MAX_CREDITS_USAGE = int(os.environ.get("CREDIT_MAX_CREDITS_USAGE", 50))
    CREDIT_DEFAULT_ROLE = os.environ.get("CREDIT_DEFAULT_ROLE", "tradie")
    CREDIT_TRIAL_AMOUNT = int(os.environ.get("CREDIT_TRIAL_AMOUNT", 3))

    # --- Refunds ---
    REFUND_WINDOW_DAYS = int(os.environ.get("REFUND_WINDOW_DAYS", 30))
    REFUND_MAX_USED_PERCENTAGE = int(os.environ.get("REFUND_MAX_USED_PERCENTAGE", 0))

    # --- Monitoring ---
    STUCK_PENDING_MINUTES = int(os.environ.get("STUCK_PENDING_MINUTES", 60))

    # --- Webhooks ---
    WEBHOOK_SIGNATURE_TOLERANCE = int(os.environ.get("WEBHOOK_SIGNATURE_TOLERANCE", 300))
    WEBHOOK_MAX_ATTEMPTS = int(os.environ.get("WEBHOOK_MAX_ATTEMPTS", 5))
    WEBHOOK_RETRY_BASE_SECONDS = int(os.environ.get("WEBHOOK_RETRY_BASE_SECONDS", 60))
    WEBHOOK_RETRY_MULTIPLIER = int(os.environ.get("WEBHOOK_RETRY_MULTIPLIER", 2))
    WEBHOOK_RETRY_MAX_SECONDS = int(os.environ.get("WEBHOOK_RETRY_MAX_SECONDS", 3600))

    # --- Auto-topup ---
    AUTO_TOPUP_COOLDOWN_HOURS = float(os.environ.get("AUTO_TOPUP_COOLDOWN_HOURS", 1))
    AUTO_TOPUP_MAX_FAILURES = int(os.environ.get("AUTO_TOPUP_MAX_FAILURES", 3))
    AUTO_TOPUP_BACKOFF_BASE = int(os.environ.get("AUTO_TOPUP_BACKOFF_BASE", 2))
    AUTO_TOPUP_MAX_RETRY_DELAY_HOURS = int(
        os.environ.get("AUTO_TOPUP_MAX_RETRY_DELAY_HOURS", 168)
    )  # 7 days

    # --- SQLAlchemy ---
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_recycle": 300,
    }

    # --- Rate limiting ---
    WEBHOOK_RATE_LIMIT = os.environ.get("WEBHOOK_RATE_LIMIT", "100 per minute")

    @staticmethod
    def validate():
        """Fail fast if required env vars are missing."""
        required = [
            "SECRET_KEY",
            "DATABASE_URL",
            "STRIPE_WEBHOOK_SECRET",
        ]
        # Charging from this service also needs the API key
        if _env_bool("STRIPE_INITIATE_CHARGES"):
            required.append("STRIPE_SECRET_KEY")
        missing = [v for v in required if not os.environ.get(v)]
        if missing:
            raise RuntimeError(
                f"Missing required environment variables: {', '.join(missing)}"
            )


class DevConfig(Config):
    """Local development."""

    DEBUG = True


class TestConfig(Config):
    """Testing: in-memory SQLite, no rate limiting or outbound charges."""

    TESTING = True
    DEBUG = True
    SECRET_KEY = "test-secret-key-not-for-production"
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    STRIPE_SECRET_KEY = "sk_test_fake"
    STRIPE_WEBHOOK_SECRET = "whsec_test_fake"
    STRIPE_INITIATE_CHARGES = False  # override per-test as needed
    RATELIMIT_ENABLED = False  # disable rate limiting in tests
    SERVER_NAME = "localhost"

    @staticmethod
    def validate():
        """Skip validation in test mode, everything is hardcoded."""
        pass


class ProdConfig(Config):
    """Production."""

    DEBUG = False


config_by_name = {
    "development": DevConfig,
    "production": ProdConfig,
    "testing": TestConfig,
}
