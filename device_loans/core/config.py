# device_loans/core/config.py
import os
import sys
import logging
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from loguru import logger

# --- Load .env from the project root if present ---
project_root = Path(__file__).resolve().parent.parent.parent
dotenv_path = project_root / ".env"
if dotenv_path.is_file():
    logger.info(f"Loading environment variables from: {dotenv_path}")
    load_dotenv(dotenv_path=dotenv_path)
else:
    logger.debug(f".env file not found at {dotenv_path}. Relying on system environment variables.")


class InterceptHandler(logging.Handler):
    """Routes standard library log records into Loguru."""
    def emit(self, record: logging.LogRecord) -> None:
        try: level = logger.level(record.levelname).name
        except ValueError: level = record.levelno
        frame, depth = logging.currentframe(), 2
        while frame and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1
        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def setup_logging():
    """Configure Loguru sinks and intercept stdlib logging."""
    log_level_name = os.getenv("LOG_LEVEL", "INFO").upper()

    log_format = (
        "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
        "<level>{level: <8}</level> | "
        "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>"
    )
    log_file_path = Path(os.getenv("LOG_FILE_PATH", "logs/device_loans_{time:YYYY-MM-DD}.log"))
    log_rotation = os.getenv("LOG_ROTATION", "1 day")
    log_retention = os.getenv("LOG_RETENTION", "7 days")
    log_serialize = os.getenv("LOG_SERIALIZE", "False").lower() == "true"

    logger.remove()
    logger.add(sys.stderr, level=log_level_name, format=log_format, colorize=True)

    try:
        log_file_path.parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            log_file_path,
            level=log_level_name,
            format=log_format,
            rotation=log_rotation,
            retention=log_retention,
            serialize=log_serialize,
            enqueue=True,
            backtrace=True,
            diagnose=False,
            encoding="utf-8",
        )
        logger.info(f"File logging enabled at: {log_file_path}")
    except Exception as e:
        logger.error(f"Failed to setup file logging at {log_file_path}: {e}")

    # --- Intercept standard logging ---
    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)
    for name in list(logging.root.manager.loggerDict):
        if name.startswith(("uvicorn", "fastapi", "starlette", "apscheduler")):
            existing_logger = logging.getLogger(name)
            existing_logger.handlers = [InterceptHandler()]
            existing_logger.propagate = False

    logger.info(f"Loguru logging setup complete. Level: {log_level_name}")


def _get_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"Invalid {name}={raw!r}. Using default: {default}.")
        return default


def _get_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _require(name: str) -> str:
    value = os.getenv(name)
    if not value:
        logger.critical(f"FATAL: {name} environment variable is not set.")
        raise ValueError(f"{name} environment variable is not set.")
    return value


# --- JWT / identity ---
SECRET_KEY: str = _require("SECRET_KEY")
ALGORITHM: str = os.getenv("ALGORITHM", "HS256")
TOKEN_AUDIENCE: Optional[str] = os.getenv("TOKEN_AUDIENCE") or None
TOKEN_ISSUER: Optional[str] = os.getenv("TOKEN_ISSUER") or None
TOKEN_CACHE_TTL_SECONDS: int = _get_int("TOKEN_CACHE_TTL_SECONDS", 300)
TOKEN_CACHE_MAX_ENTRIES: int = _get_int("TOKEN_CACHE_MAX_ENTRIES", 1024)

# --- Database ---
MONGODB_URL: str = _require("MONGODB_URL")

_default_db_name = "device_loans"
path_part = MONGODB_URL.rsplit("/", 1)[-1].split("?")[0]
if path_part and "://" in MONGODB_URL and MONGODB_URL.count("/") > 2:
    _default_db_name = path_part
DATABASE_NAME: str = os.getenv("DATABASE_NAME", _default_db_name)

# --- Loan rules ---
LOAN_DEFAULT_DAYS: int = _get_int("LOAN_DEFAULT_DAYS", 7)
GUARD_MAX_ATTEMPTS: int = _get_int("GUARD_MAX_ATTEMPTS", 5)
DEVICE_CLAIM_LEASE_SECONDS: int = _get_int("DEVICE_CLAIM_LEASE_SECONDS", 30)

# --- Events ---
EVENT_GRID_TOPIC_ENDPOINT: Optional[str] = os.getenv("EVENT_GRID_TOPIC_ENDPOINT") or None
EVENT_GRID_TOPIC_KEY: Optional[str] = os.getenv("EVENT_GRID_TOPIC_KEY") or None
EVENT_QUEUE_MAX_SIZE: int = _get_int("EVENT_QUEUE_MAX_SIZE", 1000)
EVENT_PUBLISH_RETRIES: int = _get_int("EVENT_PUBLISH_RETRIES", 3)
EVENT_PUBLISH_TIMEOUT_SECONDS: int = _get_int("EVENT_PUBLISH_TIMEOUT_SECONDS", 10)
EVENT_FLUSH_INTERVAL_SECONDS: int = _get_int("EVENT_FLUSH_INTERVAL_SECONDS", 5)

# --- Runtime ---
RATE_LIMIT_ENABLED: bool = _get_bool("RATE_LIMIT_ENABLED", True)
SCHEDULER_TIMEZONE: str = os.getenv("SCHEDULER_TIMEZONE", "UTC")

logger.info(f"JWT Algorithm: {ALGORITHM}")
logger.info(f"Database Name: {DATABASE_NAME}")
logger.info(f"Event transport configured: {bool(EVENT_GRID_TOPIC_ENDPOINT and EVENT_GRID_TOPIC_KEY)}")
