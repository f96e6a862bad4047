import os

# ----------------------------
# Config & Constants
# ----------------------------
HOST = os.getenv("HOST", "127.0.0.1")
PORT = int(os.getenv("PORT", "8000"))

DATABASE_URL = os.environ.get("DATABASE_URL", "sqlite:///./boxoffice.db")

# postgres pool; the in-process gate defaults to the pool size
DB_POOL_SIZE = int(os.getenv("DB_POOL_SIZE", "10"))
DB_MAX_OVERFLOW = int(os.getenv("DB_MAX_OVERFLOW", "10"))
DB_POOL_TIMEOUT = int(os.getenv("DB_POOL_TIMEOUT", "30"))
DB_GATE_LIMIT = int(os.getenv("DB_GATE_LIMIT", "0")) or None
SQLITE_BUSY_TIMEOUT_MS = int(os.getenv("SQLITE_BUSY_TIMEOUT_MS", "5000"))

# 'pg' keeps the idempotency key in the same SQL transaction as the
# transition; 'redis' uses SET NX with a compensating delete.
WEBHOOK_BACKEND = os.getenv("WEBHOOK_BACKEND", "pg").lower()
REDIS_URL = os.getenv("REDIS_URL", "redis://127.0.0.1:6379")
REDIS_MAX_CONN = int(os.getenv("REDIS_MAX_CONN", "512"))
WEBHOOK_RETENTION_DAYS = int(os.getenv("WEBHOOK_RETENTION_DAYS", "7"))

CASH_HOLD_MINUTES = int(os.getenv("CASH_HOLD_MINUTES", "30"))
ACTIVATION_CODE_TTL_HOURS = int(os.getenv("ACTIVATION_CODE_TTL_HOURS", "48"))
DEFAULT_MAX_RETRIES = int(os.getenv("DEFAULT_MAX_RETRIES", "3"))
MAX_RETRIES_LIMIT = 10

PLATFORM_FEE_PERCENT = float(os.getenv("PLATFORM_FEE_PERCENT", "3.7"))
PLATFORM_FEE_FIXED_CENTS = int(os.getenv("PLATFORM_FEE_FIXED_CENTS", "179"))
PROCESSING_FEE_PERCENT = float(os.getenv("PROCESSING_FEE_PERCENT", "2.9"))
PROCESSING_FEE_FIXED_CENTS = int(os.getenv("PROCESSING_FEE_FIXED_CENTS", "30"))

MAX_STAFF_DEPTH = int(os.getenv("MAX_STAFF_DEPTH", "3"))

STRIPE_WEBHOOK_SECRET = os.environ.get("STRIPE_WEBHOOK_SECRET")
PAYPAL_WEBHOOK_SECRET = os.environ.get("PAYPAL_WEBHOOK_SECRET")
MOCK_SECRET = os.environ.get("MOCK_SECRET", "supersecret")

NOTIFY_URL = os.environ.get("NOTIFY_URL")
SWEEP_INTERVAL_SECONDS = int(os.getenv("SWEEP_INTERVAL_SECONDS", "60"))

SESSION_SECRET = os.environ.get("SESSION_SECRET", "dev-secret-change-me")
ADMIN_USERNAME = os.environ.get("ADMIN_USERNAME", "admin")
ADMIN_PASSWORD = os.environ.get("ADMIN_PASSWORD", "supasecret")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_JSON = os.getenv("LOG_JSON", "0") == "1"
