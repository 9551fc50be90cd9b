import os

from dotenv import load_dotenv

load_dotenv()


def _flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


# --- STORAGE ---
DATABASE_URL = os.getenv("DATABASE_URL")  # e.g. sqlite+aiosqlite:///./storefront.db; unset -> in-memory
SEED_DEMO_DATA = _flag("SEED_DEMO_DATA", "true")

# --- CACHE / BACKGROUND JOBS ---
REDIS_URL = os.getenv("REDIS_URL")  # redis://redis:6379/0; unset -> no product cache
PRODUCTS_CACHE_TTL = int(os.getenv("PRODUCTS_CACHE_TTL", "600"))
CELERY_BROKER_URL = os.getenv("CELERY_BROKER_URL")

# --- AUTH ---
SECRET_KEY = os.getenv("SECRET_KEY", "development-secret-key")
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", str(60 * 24)))

# --- SUBSCRIPTIONS ---
TRIAL_DAYS = int(os.getenv("TRIAL_DAYS", "15"))
SUBSCRIPTION_DAYS = int(os.getenv("SUBSCRIPTION_DAYS", "30"))
ENFORCE_SUBSCRIPTION = _flag("ENFORCE_SUBSCRIPTION", "true")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
