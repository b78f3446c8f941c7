# device_loans/scheduler/jobs.py
import logging

from device_loans.core.security import TokenCache
from device_loans.events.publisher import LoanEventPublisher

logger = logging.getLogger("scheduler_jobs")


def flush_loan_events(publisher: LoanEventPublisher) -> int:
    """Deliver queued lifecycle events. Runs in the scheduler's thread pool."""
    pending = publisher.pending
    if not pending:
        return 0
    logger.info(f"Running flush_loan_events with {pending} queued event(s)")
    try:
        delivered = publisher.flush()
    except Exception:
        logger.error("Error while flushing loan events.", exc_info=True)
        return 0
    logger.info(
        f"Job finished. Delivered: {delivered}, Pending: {publisher.pending}, "
        f"Dropped (total): {publisher.dropped}"
    )
    return delivered


def purge_identity_cache(cache: TokenCache) -> int:
    purged = cache.purge_expired()
    if purged:
        logger.debug(f"Purged {purged} expired token(s) from the identity cache.")
    return purged
