# device_loans/main.py
import logging
from contextlib import asynccontextmanager

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from fastapi import FastAPI, Request, status as fastapi_status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from slowapi.errors import RateLimitExceeded
from starlette.concurrency import run_in_threadpool
from starlette.exceptions import HTTPException as StarletteHTTPException

from device_loans.core.config import (
    ALGORITHM,
    EVENT_FLUSH_INTERVAL_SECONDS,
    EVENT_GRID_TOPIC_ENDPOINT,
    EVENT_GRID_TOPIC_KEY,
    EVENT_PUBLISH_RETRIES,
    EVENT_PUBLISH_TIMEOUT_SECONDS,
    EVENT_QUEUE_MAX_SIZE,
    SCHEDULER_TIMEZONE,
    SECRET_KEY,
    TOKEN_AUDIENCE,
    TOKEN_CACHE_MAX_ENTRIES,
    TOKEN_CACHE_TTL_SECONDS,
    TOKEN_ISSUER,
    setup_logging,
)
from device_loans.core.errors import LoanServiceError
from device_loans.core.rate_limiter import get_rate_limiter, rate_limit_exception_handler
from device_loans.core.security import IdentityVerifier, TokenCache
from device_loans.db.database import init_db
from device_loans.db.favourites import MongoFavouriteStore
from device_loans.events.publisher import LoanEventPublisher
from device_loans.middleware.authentication import AuthMiddleware
from device_loans.middleware.logging import RequestLoggingMiddleware
from device_loans.api.v1.api import api_router_v1
from device_loans.scheduler.jobs import flush_loan_events, purge_identity_cache

setup_logging()
logger = logging.getLogger(__name__)

# --- Shared components ---
token_cache = TokenCache(ttl_seconds=TOKEN_CACHE_TTL_SECONDS, max_entries=TOKEN_CACHE_MAX_ENTRIES)
identity_verifier = IdentityVerifier(
    SECRET_KEY,
    algorithm=ALGORITHM,
    audience=TOKEN_AUDIENCE,
    issuer=TOKEN_ISSUER,
    cache=token_cache,
)
event_publisher = LoanEventPublisher(
    EVENT_GRID_TOPIC_ENDPOINT,
    EVENT_GRID_TOPIC_KEY,
    max_queue_size=EVENT_QUEUE_MAX_SIZE,
    max_retries=EVENT_PUBLISH_RETRIES,
    timeout_seconds=EVENT_PUBLISH_TIMEOUT_SECONDS,
)

# --- Scheduler Instance ---
scheduler = AsyncIOScheduler(timezone=SCHEDULER_TIMEZONE)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Application startup...")
    app.state.loan_store = await init_db()
    app.state.favourite_store = MongoFavouriteStore()
    logger.info("Database initialized.")

    logger.info("Adding scheduler jobs...")
    # Plain functions run in the scheduler's thread pool, off the event loop
    scheduler.add_job(
        flush_loan_events,
        trigger=IntervalTrigger(seconds=EVENT_FLUSH_INTERVAL_SECONDS),
        args=[app.state.event_publisher],
        id="flush_loan_events_job",
        name="Publish Loan Events",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    scheduler.add_job(
        purge_identity_cache,
        trigger=IntervalTrigger(seconds=max(TOKEN_CACHE_TTL_SECONDS, 60)),
        args=[token_cache],
        id="purge_identity_cache_job",
        name="Purge Identity Cache",
        replace_existing=True,
    )
    scheduler.start()
    logger.info(f"Scheduler started with timezone: {scheduler.timezone}")
    yield
    logger.info("Application shutdown...")
    if scheduler.running:
        scheduler.shutdown(wait=False)
    await run_in_threadpool(flush_loan_events, app.state.event_publisher)


app = FastAPI(
    title="Device Loans API",
    description="Device loan lifecycle and per-device waitlists.",
    version="1.0.0",
    lifespan=lifespan,
)
app.state.event_publisher = event_publisher


# --- Error Handling ---
def _error_response(status_code: int, code: str, message: str, headers=None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"success": False, "error": {"code": code, "message": message}},
        headers=headers,
    )


_HTTP_ERROR_CODES = {
    400: "VALIDATION_ERROR",
    401: "UNAUTHORIZED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "ALREADY_EXISTS",
    429: "RATE_LIMITED",
}

app.add_exception_handler(RateLimitExceeded, rate_limit_exception_handler)


@app.exception_handler(LoanServiceError)
async def loan_service_exception_handler(request: Request, exc: LoanServiceError):
    request_id = getattr(request.state, "request_id", "N/A")
    if exc.status_code >= 500:
        logger.error(f"RID:{request_id} {exc.code}: {exc.message} ({exc.detail})")
    else:
        logger.warning(f"RID:{request_id} {exc.code}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content={"success": False, "error": exc.to_dict()})


@app.exception_handler(RequestValidationError)
@app.exception_handler(ValidationError)
async def validation_exception_handler(request: Request, exc: ValidationError):
    errors = exc.errors()
    logger.error(f"Validation Error: {errors}", exc_info=False)
    if errors:
        first = errors[0]
        location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
        message = f"{location}: {first.get('msg')}" if location else str(first.get("msg"))
    else:
        message = "Invalid request"
    return _error_response(fastapi_status.HTTP_400_BAD_REQUEST, "VALIDATION_ERROR", message)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    logger.warning(f"HTTP Exception: Status={exc.status_code}, Detail={exc.detail}")
    return _error_response(
        exc.status_code,
        _HTTP_ERROR_CODES.get(exc.status_code, "HTTP_ERROR"),
        str(exc.detail),
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled Exception: {exc}", exc_info=True)
    return _error_response(
        fastapi_status.HTTP_500_INTERNAL_SERVER_ERROR, "INTERNAL_ERROR", "An internal server error occurred."
    )


# --- Middleware (last added runs first) ---
app.add_middleware(AuthMiddleware, verifier=identity_verifier)
app.add_middleware(RequestLoggingMiddleware)
app.state.limiter = get_rate_limiter()
app.add_middleware(GZipMiddleware, minimum_size=500)


app.include_router(api_router_v1)


@app.get("/")
async def read_root():
    return {"message": "Device Loans API"}


@app.get("/health")
async def health():
    return {
        "status": "ok",
        "events": {
            "configured": app.state.event_publisher.configured,
            "pending": app.state.event_publisher.pending,
            "dropped": app.state.event_publisher.dropped,
        },
    }


@app.get("/health/db")
async def health_db(request: Request):
    store = getattr(request.app.state, "loan_store", None)
    if store is None:
        return _error_response(503, "PERSISTENCE_ERROR", "Database is not initialized.")
    if not await store.ping():
        return _error_response(503, "PERSISTENCE_ERROR", "MongoDB connection failed.")
    return {"status": "success", "message": "MongoDB connection is healthy."}
