import os


def _normalize_database_url(url: str) -> str:
    # Render/Heroku sometimes provide postgres:// which SQLAlchemy expects as postgresql://
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql://", 1)
    return url


def _int_env(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    try:
        return int(raw) if raw else default
    except ValueError:
        return default


class Config:
    # Base directory of the backend (one level above this `bountypay` package)
    BACKEND_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
    INSTANCE_DIR = os.path.join(BACKEND_DIR, "instance")

    ENV = (os.getenv("BOUNTYPAY_ENV", "dev") or "dev").strip().lower()
    SECRET_KEY = os.getenv("SECRET_KEY", "dev-secret")
    LOG_LEVEL = (os.getenv("LOG_LEVEL") or "INFO").upper()
    ACCESS_TOKEN_TTL_SECONDS = _int_env("ACCESS_TOKEN_TTL_SECONDS", 60 * 60 * 12)
    TOKEN_ISSUER = os.getenv("TOKEN_ISSUER", "bountypay")

    _default_sqlite_path = os.path.join(INSTANCE_DIR, "bountypay.db").replace("\\", "/")
    _db_url = os.getenv("DATABASE_URL") or os.getenv("SQLALCHEMY_DATABASE_URI") or f"sqlite:///{_default_sqlite_path}"
    SQLALCHEMY_DATABASE_URI = _normalize_database_url(_db_url)
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # CORS: comma-separated origins for web builds
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "")

    # Payment provider
    STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY", "").strip()
    STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET", "").strip()
    STRIPE_API_BASE = os.getenv("STRIPE_API_BASE", "https://api.stripe.com").rstrip("/")
    PROVIDER_TIMEOUT_SECONDS = _int_env("PROVIDER_TIMEOUT_SECONDS", 20)
    WEBHOOK_TOLERANCE_SECONDS = _int_env("WEBHOOK_TOLERANCE_SECONDS", 300)
    CURRENCY = os.getenv("CURRENCY", "usd").strip().lower()

    # Marketplace economics; amounts are in minor units (cents)
    PLATFORM_FEE_PERCENT = os.getenv("PLATFORM_FEE_PERCENT", "10")
    PLATFORM_USER_ID = os.getenv("PLATFORM_USER_ID", "").strip()
    MIN_ESCROW_CENTS = _int_env("MIN_ESCROW_CENTS", 1)

    IDEMPOTENCY_TTL_SECONDS = _int_env("IDEMPOTENCY_TTL_SECONDS", 24 * 60 * 60)

    # Holdback percentages by risk level, applied to trailing volume
    RESERVE_PERCENTAGES = {
        "low": os.getenv("RESERVE_PERCENT_LOW", "0"),
        "medium": os.getenv("RESERVE_PERCENT_MEDIUM", "10"),
        "high": os.getenv("RESERVE_PERCENT_HIGH", "20"),
        "critical": os.getenv("RESERVE_PERCENT_CRITICAL", "30"),
    }
    RESERVE_WINDOW_DAYS = _int_env("RESERVE_WINDOW_DAYS", 30)


class TestConfig(Config):
    ENV = "test"
    TESTING = True
    SECRET_KEY = "test-secret-key-0123456789"
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    STRIPE_SECRET_KEY = "sk_test_dummy"
    STRIPE_WEBHOOK_SECRET = "whsec_test_secret"
    PLATFORM_FEE_PERCENT = "10"
    PLATFORM_USER_ID = ""
