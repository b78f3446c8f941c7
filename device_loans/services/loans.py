# device_loans/services/loans.py
import logging
import uuid
from collections import Counter
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from device_loans.core.errors import DeviceUnavailable, LoanNotFound, LoanServiceError, ValidationFailed
from device_loans.core.utils import as_utc, utcnow
from device_loans.db.store import DeviceClaim, LoanStore
from device_loans.events.publisher import LoanEventPublisher, build_status_event
from device_loans.models.enums import ACTIVE_STATUSES, LoanAction, LoanStatus
from device_loans.models.loan import DeviceLoanHistory, DeviceLoanStats, Loan, StatusChange
from device_loans.services.guard import conditional_update
from device_loans.services.state_machine import apply_transition, check_transition

logger = logging.getLogger(__name__)


class LoanService:
    """Loan lifecycle: creation, state transitions and read models."""

    def __init__(
        self,
        store: LoanStore,
        publisher: LoanEventPublisher,
        *,
        default_loan_days: int = 7,
        max_attempts: int = 5,
        claim_lease_seconds: int = 30,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.publisher = publisher
        self.default_loan_days = default_loan_days
        self.max_attempts = max_attempts
        self.claim_lease = timedelta(seconds=claim_lease_seconds)
        self.clock = clock

    # --- Create / read ---
    async def create(
        self,
        device_id: str,
        user_id: str,
        *,
        loan_id: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> Loan:
        device_id = (device_id or "").strip()
        user_id = (user_id or "").strip()
        if not device_id or not user_id:
            raise ValidationFailed("deviceId and userId are required")

        now = self.clock()
        start = as_utc(start) or now
        end = as_utc(end) or start + timedelta(days=self.default_loan_days)
        if end <= start:
            raise ValidationFailed("'till' must be after 'from'")

        loan_id = (loan_id or "").strip() or f"LOAN-{uuid.uuid4().hex}"
        loan = Loan(
            id=loan_id,
            device_id=device_id,
            user_id=user_id,
            status=LoanStatus.REQUESTED,
            from_=start,
            till=end,
            created_at=now,
            updated_at=now,
            status_history=[StatusChange(new_status=LoanStatus.REQUESTED, changed_at=now, changed_by=user_id)],
        )
        created = await self.store.insert(loan)
        logger.info(f"Loan '{created.id}' requested by '{user_id}' for device '{device_id}'.")
        return created

    async def get(self, loan_id: str) -> Loan:
        loan = await self.store.get(loan_id)
        if loan is None:
            raise LoanNotFound(f"Loan with ID '{loan_id}' not found")
        return loan

    async def list_loans(self, skip: int = 0, limit: int = 100) -> List[Loan]:
        return await self.store.list(skip=skip, limit=limit)

    async def loans_for_user(self, user_id: str) -> List[Loan]:
        return await self.store.find_by_user(user_id)

    async def device_history(self, device_id: str) -> DeviceLoanHistory:
        loans = [l for l in await self.store.find_by_device(device_id, newest_first=True) if not l.placeholder]
        logger.info(f"Found {len(loans)} loans for device {device_id}")
        by_status = Counter(l.status.value for l in loans if l.status)
        current = next((l for l in loans if l.status in ACTIVE_STATUSES), None)
        return DeviceLoanHistory(
            device_id=device_id,
            loans=loans,
            stats=DeviceLoanStats(total_loans=len(loans), by_status=dict(by_status), current_loan=current),
        )

    # --- Transitions ---
    async def approve(self, loan_id: str, actor: Optional[str] = None, correlation_id: Optional[str] = None) -> Loan:
        loan = await self.get(loan_id)
        check_transition(loan, LoanAction.APPROVE, actor)

        await self._claim_device(loan)
        try:
            return await self._transition(loan_id, LoanAction.APPROVE, actor, correlation_id=correlation_id)
        except LoanServiceError:
            await self._release_unless_active(loan_id, loan.device_id)
            raise

    async def reject(
        self,
        loan_id: str,
        actor: Optional[str],
        reason: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> Loan:
        return await self._transition(loan_id, LoanAction.REJECT, actor, reason=reason, correlation_id=correlation_id)

    async def cancel(self, loan_id: str, actor: str, correlation_id: Optional[str] = None) -> Loan:
        return await self._transition(loan_id, LoanAction.CANCEL, actor, correlation_id=correlation_id)

    async def collect(self, loan_id: str, actor: str, correlation_id: Optional[str] = None) -> Loan:
        return await self._transition(loan_id, LoanAction.COLLECT, actor, correlation_id=correlation_id)

    async def return_loan(self, loan_id: str, actor: Optional[str] = None, correlation_id: Optional[str] = None) -> Loan:
        return await self._transition(loan_id, LoanAction.RETURN, actor, correlation_id=correlation_id)

    async def revert_collection(self, loan_id: str, actor: str, correlation_id: Optional[str] = None) -> Loan:
        loan = await self._transition(loan_id, LoanAction.REVERT_COLLECTION, actor, correlation_id=correlation_id)
        logger.warning(f"Loan {loan_id} collection reverted to 'Approved' by user {actor}.")
        return loan

    async def _transition(
        self,
        loan_id: str,
        action: LoanAction,
        actor: Optional[str],
        reason: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> Loan:
        def _apply(current: Loan) -> Loan:
            return apply_transition(current, action, at=self.clock(), actor=actor, reason=reason)

        before, after = await conditional_update(self.store, loan_id, _apply, max_attempts=self.max_attempts)
        logger.info(
            f"Loan {loan_id} moved '{before.status.value}' -> '{after.status.value}'"
            + (f" by {actor}" if actor else "")
        )

        if before.status in ACTIVE_STATUSES and after.status not in ACTIVE_STATUSES:
            await self._release_device(after.device_id, after.id)

        self.publisher.emit(
            build_status_event(
                before,
                after,
                correlation_id=correlation_id,
                reason=after.rejection_reason if action == LoanAction.REJECT else None,
            )
        )
        return after

    # --- Device claims (one active loan per device) ---
    async def _claim_device(self, loan: Loan) -> None:
        claim = await self.store.get_device_claim(loan.device_id)
        holder = claim.loan_id if claim else None

        if holder not in (None, loan.id) and not await self._claim_is_stale(claim):
            raise DeviceUnavailable(
                f"Device '{loan.device_id}' is already on loan",
                detail=f"Held by loan '{holder}'",
            )

        expected = None if holder == loan.id else holder
        if not await self.store.claim_device(loan.device_id, loan.id, expected_holder=expected, at=self.clock()):
            raise DeviceUnavailable(f"Device '{loan.device_id}' was claimed by another loan")
        logger.debug(f"Device '{loan.device_id}' claimed by loan '{loan.id}'.")

    async def _claim_is_stale(self, claim: DeviceClaim) -> bool:
        """A claim is stale once its holder left Approved/Collected, or never got there within the lease."""
        holder = await self.store.get(claim.loan_id)
        if holder is None or holder.status in (LoanStatus.REJECTED, LoanStatus.CANCELLED, LoanStatus.RETURNED):
            logger.info(f"Taking over stale claim on device '{claim.device_id}' from loan '{claim.loan_id}'.")
            return True
        if holder.status == LoanStatus.REQUESTED:
            claimed_at = as_utc(claim.claimed_at)
            if claimed_at is None or self.clock() - claimed_at > self.claim_lease:
                logger.info(f"Claim on device '{claim.device_id}' by '{claim.loan_id}' expired.")
                return True
        return False

    async def _release_device(self, device_id: str, loan_id: str) -> None:
        try:
            await self.store.release_device(device_id, loan_id)
        except LoanServiceError as e:
            # Stale claims are reclaimed on the next approval
            logger.error(f"Could not release device '{device_id}' from loan '{loan_id}': {e.message}")

    async def _release_unless_active(self, loan_id: str, device_id: str) -> None:
        try:
            current = await self.store.get(loan_id)
        except LoanServiceError as e:
            logger.error(f"Could not re-read loan '{loan_id}' after failed approval: {e.message}")
            return
        if current is None or current.status not in ACTIVE_STATUSES:
            await self._release_device(device_id, loan_id)
