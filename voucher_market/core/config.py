import os
from dotenv import load_dotenv

# Load .env from the project root
load_dotenv()


def _env_flag(name: str, default: str = "") -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./voucher_market.db")
ENV = os.getenv("ENV", "dev")
ENV_NORMALIZED = ENV.lower()
IS_DEV = ENV_NORMALIZED in {"dev", "development", "local"}
IS_TEST = ENV_NORMALIZED in {"test", "testing"}
IS_PROD = ENV_NORMALIZED in {"prod", "production"}
APP_VERSION = "1.0.0"

# CORS
_cors_env = os.getenv("CORS_ORIGINS", "")
CORS_ORIGINS = [origin.strip() for origin in _cors_env.split(",") if origin.strip() and origin.strip() != "*"]

if not CORS_ORIGINS and (IS_DEV or IS_TEST):
    CORS_ORIGINS = [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]

# Auth (JWT)
JWT_SECRET_KEY = os.getenv("JWT_SECRET_KEY", "change-me-in-production")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
JWT_EXPIRE_MINUTES = int(os.getenv("JWT_EXPIRE_MINUTES", str(60 * 24 * 7)))

# Vouchers
QR_SIGNING_SECRET = os.getenv("QR_SIGNING_SECRET", "").strip() or JWT_SECRET_KEY
VOUCHER_VALIDITY_DAYS = int(os.getenv("VOUCHER_VALIDITY_DAYS", "90"))
MAX_PURCHASE_QUANTITY = 10
DEFAULT_CURRENCY = os.getenv("DEFAULT_CURRENCY", "ZAR")

# Rate limiting per client IP: (limit, window_seconds). Empty REDIS_URL keeps counters in memory.
REDIS_URL = os.getenv("REDIS_URL", "").strip()
RATE_LIMIT_POLICIES = {
    "general": (int(os.getenv("RATE_LIMIT_GENERAL", "100")), 15 * 60),
    "auth": (int(os.getenv("RATE_LIMIT_AUTH", "10")), 15 * 60),
    "payment": (int(os.getenv("RATE_LIMIT_PAYMENT", "5")), 10 * 60),
}

# Email
EMAIL_PROVIDER = os.getenv("EMAIL_PROVIDER", "smtp" if IS_PROD else "console").strip().lower()
SMTP_HOST = os.getenv("SMTP_HOST", "localhost")
SMTP_PORT = int(os.getenv("SMTP_PORT", "587"))
SMTP_USER = os.getenv("SMTP_USER", "")
SMTP_PASSWORD = os.getenv("SMTP_PASSWORD", "")
FROM_EMAIL = os.getenv("FROM_EMAIL", "noreply@vouchermarket.local")

# Payment gateway (PayFast)
PAYFAST_MERCHANT_ID = os.getenv("PAYFAST_MERCHANT_ID", "")
PAYFAST_MERCHANT_KEY = os.getenv("PAYFAST_MERCHANT_KEY", "")
PAYFAST_PASSPHRASE = os.getenv("PAYFAST_PASSPHRASE", "")
PAYFAST_SANDBOX = _env_flag("PAYFAST_SANDBOX", "1" if not IS_PROD else "0")
FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:3000").rstrip("/")
API_URL = os.getenv("API_URL", "http://localhost:8000").rstrip("/")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# First admin account, created at startup when both values are set
ADMIN_BOOTSTRAP_EMAIL = os.getenv("ADMIN_BOOTSTRAP_EMAIL", "").strip().lower()
ADMIN_BOOTSTRAP_PASSWORD = os.getenv("ADMIN_BOOTSTRAP_PASSWORD", "").strip()
