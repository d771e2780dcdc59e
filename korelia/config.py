import os

_PROJECT_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))


def _flag(name, default=""):
    return os.environ.get(name, default).lower() in ("1", "true", "yes")


class Config:
    """Base configuration. Shared across all environments."""

    # --- Required ---
    SECRET_KEY = os.environ.get("SECRET_KEY")
    JWT_SECRET = os.environ.get("JWT_SECRET") or os.environ.get("SECRET_KEY")
    JWT_EXPIRES_DAYS = int(os.environ.get("JWT_EXPIRES_DAYS", 7))

    STRIPE_SECRET_KEY = os.environ.get("STRIPE_SECRET_KEY")
    STRIPE_WEBHOOK_SECRET = os.environ.get("STRIPE_WEBHOOK_SECRET")

    # --- Storefront ---
    # Front origin, e.g. https://korelia-seven.vercel.app
    CLIENT_URL = os.environ.get("CLIENT_URL", "http://localhost:5173")
    API_URL = os.environ.get("API_URL", "http://localhost:4242")
    CURRENCY = "eur"
    SHIPPING_COUNTRIES = os.environ.get("SHIPPING_COUNTRIES", "BE,FR,LU").split(",")
    FREE_SHIPPING_THRESHOLD_CENTS = 5000   # 50 EUR
    STANDARD_SHIPPING_CENTS = 490
    EXPRESS_SHIPPING_CENTS = 990
    REQUIRE_EMAIL_VERIFIED = _flag("REQUIRE_EMAIL_VERIFIED")
    # /api/orders/by-session polls while the webhook catches up
    ORDER_LOOKUP_ATTEMPTS = 6
    ORDER_LOOKUP_DELAY = 0.35

    # --- Flat-file storage (users.json, orders.json, products.json) ---
    DATA_DIR = os.environ.get("DATA_DIR", os.path.join(_PROJECT_DIR, "data"))

    # --- Email (SMTP) ---
    MAIL_SMTP_HOST = os.environ.get("MAIL_SMTP_HOST", "smtp.gmail.com")
    MAIL_SMTP_PORT = int(os.environ.get("MAIL_SMTP_PORT", 587))
    MAIL_USERNAME = os.environ.get("MAIL_USERNAME")
    MAIL_PASSWORD = os.environ.get("MAIL_PASSWORD")
    MAIL_FROM_NAME = os.environ.get("MAIL_FROM_NAME", "Korelia")
    MAIL_FROM_ADDRESS = os.environ.get("MAIL_FROM_ADDRESS")  # defaults to MAIL_USERNAME
    MAIL_ASYNC = True
    MAIL_MAX_ATTEMPTS = int(os.environ.get("MAIL_MAX_ATTEMPTS", 4))
    MAIL_RETRY_BASE_DELAY = float(os.environ.get("MAIL_RETRY_BASE_DELAY", 2.0))
    MAIL_RETRY_MAX_DELAY = float(os.environ.get("MAIL_RETRY_MAX_DELAY", 60.0))

    # --- Rate limiting / brute force ---
    RATELIMIT_DEFAULT = "1000 per 15 minutes"
    RATELIMIT_HEADERS_ENABLED = True
    # (failure count, lockout seconds), checked highest first
    LOGIN_LOCKOUT_STEPS = ((15, 15 * 60), (10, 5 * 60), (5, 60))

    # --- Session / cookies ---
    # Front and API on different sites need SameSite=None; Secure
    CROSS_SITE = bool(CLIENT_URL) and "localhost" not in CLIENT_URL
    SESSION_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = "None" if CROSS_SITE else "Lax"
    AUTH_COOKIE_NAME = "token"
    AUTH_COOKIE_SAMESITE = "None" if CROSS_SITE else "Lax"
    AUTH_COOKIE_SECURE = CROSS_SITE

    # --- WTF / CSRF ---
    WTF_CSRF_ENABLED = True
    WTF_CSRF_TIME_LIMIT = 2 * 3600
    WTF_CSRF_SSL_STRICT = False

    @staticmethod
    def validate():
        """Fail fast if required env vars are missing."""
        required = [
            "SECRET_KEY",
            "STRIPE_SECRET_KEY",
            "STRIPE_WEBHOOK_SECRET",
        ]
        missing = [v for v in required if not os.environ.get(v)]
        if missing:
            raise RuntimeError(
                f"Missing required environment variables: {', '.join(missing)}"
            )


class DevConfig(Config):
    """Local development."""

    DEBUG = True
    SESSION_COOKIE_SECURE = Config.CROSS_SITE


class TestConfig(Config):
    """Testing — temp data dir, CSRF and rate limits disabled, inline mail."""

    TESTING = True
    DEBUG = True
    SECRET_KEY = "test-secret-key-not-for-production"
    JWT_SECRET = "test-jwt-secret-not-for-production"
    STRIPE_SECRET_KEY = "sk_test_fake"
    STRIPE_WEBHOOK_SECRET = "whsec_test_fake"
    CLIENT_URL = "http://localhost:5173"
    API_URL = "http://localhost:4242"
    DATA_DIR = None  # set per test
    REQUIRE_EMAIL_VERIFIED = False
    ORDER_LOOKUP_DELAY = 0.0
    MAIL_USERNAME = "shop@korelia.test"
    MAIL_PASSWORD = "not-a-real-password"
    MAIL_ASYNC = False
    MAIL_MAX_ATTEMPTS = 3
    MAIL_RETRY_BASE_DELAY = 0.0
    MAIL_RETRY_MAX_DELAY = 0.0
    WTF_CSRF_ENABLED = False  # disable CSRF for test requests
    RATELIMIT_ENABLED = False  # disable rate limiting in tests
    CROSS_SITE = False
    SESSION_COOKIE_SAMESITE = "Lax"
    SESSION_COOKIE_SECURE = False
    AUTH_COOKIE_SAMESITE = "Lax"
    AUTH_COOKIE_SECURE = False

    @staticmethod
    def validate():
        """Skip validation in test mode — everything is hardcoded."""
        pass


class ProdConfig(Config):
    """Production."""

    DEBUG = False
    SESSION_COOKIE_SECURE = True
    AUTH_COOKIE_SECURE = True


config_by_name = {
    "development": DevConfig,
    "production": ProdConfig,
    "testing": TestConfig,
}
