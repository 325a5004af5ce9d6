"""
Configuration module for the Trading Journal.
Manages database, auth, API keys and data provider settings.
"""
import os
from dotenv import load_dotenv

load_dotenv(os.path.join(os.path.dirname(os.path.abspath(__file__)), ".env"))

# =============================================================================
# DATABASE
# =============================================================================
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///journal.db").strip()

# Hosted Postgres providers hand out postgres:// URLs
if DATABASE_URL.startswith("postgres://"):
    DATABASE_URL = DATABASE_URL.replace("postgres://", "postgresql://", 1)

# =============================================================================
# AUTH
# =============================================================================
SECRET_KEY = os.getenv("SECRET_KEY", "change-me-in-production")
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", str(60 * 24 * 7)))

# =============================================================================
# QUOTE PROVIDERS
# =============================================================================
FINNHUB_API_KEY = os.getenv("FINNHUB_API_KEY", "")
FINNHUB_ENABLED = bool(FINNHUB_API_KEY)

# In-memory quote cache (seconds)
PRICE_CACHE_TTL = int(os.getenv("PRICE_CACHE_TTL", "60"))
# Persisted price_cache table freshness (seconds)
PRICE_DB_CACHE_SECONDS = int(os.getenv("PRICE_DB_CACHE_SECONDS", "300"))
# Finnhub free tier = 60 calls per minute
QUOTE_MIN_INTERVAL = float(os.getenv("QUOTE_MIN_INTERVAL", "1.0"))

BENCHMARK_SYMBOL = os.getenv("BENCHMARK_SYMBOL", "^GSPC")

# =============================================================================
# AI FEEDBACK
# =============================================================================
GEMINI_API_KEY = os.getenv("GEMINI_API_KEY")
GEMINI_MODEL = os.getenv("GEMINI_MODEL", "gemini-2.0-flash")

# =============================================================================
# NOTIFICATIONS
# =============================================================================
TELEGRAM_BOT_TOKEN = os.getenv("TELEGRAM_BOT_TOKEN", "")
APP_URL = os.getenv("APP_URL", "")

# =============================================================================
# JOURNAL DEFAULTS
# =============================================================================
DEFAULT_TOTAL_CAPITAL = float(os.getenv("DEFAULT_TOTAL_CAPITAL", "500000"))
SCHEDULER_ENABLED = os.getenv("SCHEDULER_ENABLED", "true").lower() in ("1", "true", "yes")
SCHEDULER_TIMEZONE = os.getenv("SCHEDULER_TIMEZONE", "America/New_York")
# Daily snapshot after the US close
SNAPSHOT_HOUR = int(os.getenv("SNAPSHOT_HOUR", "17"))
REMINDER_CHECK_MINUTES = int(os.getenv("REMINDER_CHECK_MINUTES", "5"))
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]
