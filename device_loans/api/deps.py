# device_loans/api/deps.py
from fastapi import Depends, Request

from device_loans.core.config import DEVICE_CLAIM_LEASE_SECONDS, GUARD_MAX_ATTEMPTS, LOAN_DEFAULT_DAYS
from device_loans.db.favourites import FavouriteStore
from device_loans.db.store import LoanStore
from device_loans.events.publisher import LoanEventPublisher
from device_loans.services.favourites import FavouriteService
from device_loans.services.loans import LoanService
from device_loans.services.waitlist import WaitlistCoordinator


def get_loan_store(request: Request) -> LoanStore:
    return request.app.state.loan_store


def get_favourite_store(request: Request) -> FavouriteStore:
    return request.app.state.favourite_store


def get_event_publisher(request: Request) -> LoanEventPublisher:
    return request.app.state.event_publisher


def get_correlation_id(request: Request) -> str:
    return getattr(request.state, "correlation_id", None) or getattr(request.state, "request_id", "")


def get_loan_service(
    store: LoanStore = Depends(get_loan_store),
    publisher: LoanEventPublisher = Depends(get_event_publisher),
) -> LoanService:
    return LoanService(
        store,
        publisher,
        default_loan_days=LOAN_DEFAULT_DAYS,
        max_attempts=GUARD_MAX_ATTEMPTS,
        claim_lease_seconds=DEVICE_CLAIM_LEASE_SECONDS,
    )


def get_waitlist_coordinator(store: LoanStore = Depends(get_loan_store)) -> WaitlistCoordinator:
    return WaitlistCoordinator(store, max_attempts=GUARD_MAX_ATTEMPTS)


def get_favourite_service(store: FavouriteStore = Depends(get_favourite_store)) -> FavouriteService:
    return FavouriteService(store)
