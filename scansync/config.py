# config.py

# ───────────────────────── stdlib
import os
import logging
from pathlib import Path
from typing import Optional, Tuple

# ───────────────────────── third-party
from dotenv import load_dotenv

# --- ENV Setup ---
ENV_PATH = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(dotenv_path=ENV_PATH)


def _env_bool(name: str, default: str = "False") -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "t")


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        return default


# --- Server ---
PORT            = _env_int("PORT", 3000)
DEBUG_MODE      = _env_bool("DEBUG")
LOG_LEVEL       = os.getenv("LOG_LEVEL", "INFO").upper()
DATABASE_URL    = os.getenv("DATABASE_URL")
PGSSLMODE       = os.getenv("PGSSLMODE", "prefer")
DB_POOL_MAX     = _env_int("DB_POOL_MAX", 20)

JWT_SECRET      = os.getenv("JWT_SECRET", "unsafe_default_secret")
JWT_ALGORITHM   = os.getenv("JWT_ALGORITHM", "HS256")
ACCESS_TOKEN_EXPIRE_MINUTES = _env_int("ACCESS_TOKEN_EXPIRE_MINUTES", 43200)

CORS_ORIGINS = [
    "http://localhost:3000",
    "http://127.0.0.1:3000",
    os.getenv("CORS_ORIGIN_1"),
    os.getenv("CORS_ORIGIN_2"),
]

# --- Count contract limits ---
BATCH_MAX_COUNTS = 50
COUNT_LIST_DEFAULT = 50
COUNT_LIST_MAX = 100
PRODUCT_LIST_MAX = 100

# --- Device sync agent ---
CONNECT_TIMEOUT         = float(os.getenv("CONNECT_TIMEOUT", "5"))
READ_TIMEOUT            = float(os.getenv("READ_TIMEOUT", "30"))
SYNC_API_URL            = (os.getenv("SYNC_API_URL") or f"http://localhost:{PORT}").rstrip("/")
SYNC_API_TOKEN          = os.getenv("SYNC_API_TOKEN", "")
SYNC_USER_ID            = os.getenv("SYNC_USER_ID", "")
SYNC_DEVICE_ID          = os.getenv("SYNC_DEVICE_ID", "")
SYNC_QUEUE_PATH         = os.getenv("SYNC_QUEUE_PATH", str(Path.home() / ".scansync" / "queue.json"))
SYNC_INTERVAL_SECONDS   = _env_int("SYNC_INTERVAL_SECONDS", 30)
SYNC_OPERATION_DELAY_MS = _env_int("SYNC_OPERATION_DELAY_MS", 200)
SYNC_MAX_RETRIES        = _env_int("SYNC_MAX_RETRIES", 3)
SYNC_BATCH_COUNTS       = _env_bool("SYNC_BATCH_COUNTS")


def http_timeout() -> Tuple[float, float]:
    return (CONNECT_TIMEOUT, READ_TIMEOUT)


def configure_logging(level: Optional[str] = None) -> None:
    logging.basicConfig(
        level=getattr(logging, (level or LOG_LEVEL), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
