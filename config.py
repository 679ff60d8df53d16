"""
Runtime settings for the Study Tracker backend and client.

Everything is read from the environment once, at import time.
"""

import os


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


# Auth
JWT_SECRET = os.getenv("JWT_SECRET", "devsecret")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
ACCESS_TOKEN_EXPIRE_MINUTES = _env_int("ACCESS_TOKEN_EXPIRE_MINUTES", 60)
MIN_PASSWORD_LENGTH = 6

# Storage
DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")
KV_COLLECTION = os.getenv("KV_COLLECTION", "kv_store")

# HTTP
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]
PORT = _env_int("PORT", 8000)
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# Client
API_BASE_URL = os.getenv("API_BASE_URL", "http://localhost:8000")
CACHE_TTL_SECONDS = _env_float("CACHE_TTL_SECONDS", 30.0)
REQUEST_TIMEOUT_SECONDS = _env_float("REQUEST_TIMEOUT_SECONDS", 10.0)
