# device_loans/services/waitlist.py
import logging
from datetime import datetime
from typing import Callable, List, Optional, Tuple

from device_loans.core.errors import AlreadyExists, Forbidden, LoanNotFound
from device_loans.core.utils import required, utcnow
from device_loans.db.store import LoanStore
from device_loans.models.loan import DeviceWaitlist, Loan, WaitlistPosition
from device_loans.services.guard import conditional_update

logger = logging.getLogger(__name__)


def placeholder_id(device_id: str) -> str:
    return f"LOAN-{device_id}"


class WaitlistCoordinator:
    """
    Per-device FIFO queues of users, stored on loan records.

    A device's queue lives on its anchor record. Once the `LOAN-<deviceId>`
    placeholder exists it is the anchor, whatever loans are created later.
    Without one, the anchor is the earliest-created loan for the device, and
    a placeholder is created when the device has no record at all. The
    coordinator only maintains queues; it never triggers loan transitions.
    """

    def __init__(
        self,
        store: LoanStore,
        *,
        max_attempts: int = 5,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.max_attempts = max_attempts
        self.clock = clock

    async def _anchor_for(self, device_id: str) -> Optional[Loan]:
        # A loan created concurrently with the placeholder can carry an earlier createdAt
        placeholder = await self.store.get(placeholder_id(device_id))
        if placeholder is not None:
            return placeholder
        loans = await self.store.find_by_device(device_id)
        return loans[0] if loans else None

    async def _anchor_or_placeholder(self, device_id: str) -> Loan:
        anchor = await self._anchor_for(device_id)
        if anchor is not None:
            return anchor

        now = self.clock()
        placeholder = Loan(
            id=placeholder_id(device_id),
            device_id=device_id,
            created_at=now,
            updated_at=now,
            placeholder=True,
        )
        try:
            created = await self.store.insert(placeholder)
            logger.info(f"Created waitlist placeholder '{created.id}' for device '{device_id}'.")
            return created
        except AlreadyExists:
            # Lost the race to another joiner
            existing = await self.store.get(placeholder.id)
            if existing is None:
                raise
            return existing

    def _append(self, user_id: str, fail_if_present: bool):
        def mutate(loan: Loan) -> Optional[Loan]:
            if user_id in loan.waitlist:
                if fail_if_present:
                    raise AlreadyExists(f"User '{user_id}' is already in the waitlist for loan '{loan.id}'")
                return None
            return loan.model_copy(update={"waitlist": [*loan.waitlist, user_id], "updated_at": self.clock()})
        return mutate

    async def join(self, device_id: str, user_id: str) -> Loan:
        """Join a device's waitlist. Joining again is a no-op."""
        device_id = required(device_id, "deviceId")
        user_id = required(user_id, "userId")

        anchor = await self._anchor_or_placeholder(device_id)
        before, after = await conditional_update(
            self.store, anchor.id, self._append(user_id, fail_if_present=False), max_attempts=self.max_attempts
        )
        if before is after:
            logger.info(f"User '{user_id}' already waiting for device '{device_id}'; no change.")
        else:
            logger.info(f"User '{user_id}' added to waitlist for device '{device_id}' (loan '{after.id}').")
        return after

    async def join_by_id(self, loan_id: str, user_id: str) -> Tuple[Loan, int]:
        """Join the waitlist held on a specific loan. Joining again is ALREADY_EXISTS."""
        user_id = required(user_id, "userId")
        loan_id = required(loan_id, "Loan ID")

        _, after = await conditional_update(
            self.store, loan_id, self._append(user_id, fail_if_present=True), max_attempts=self.max_attempts
        )
        position = after.waitlist.index(user_id) + 1
        logger.info(f"User '{user_id}' added to waitlist for loan '{loan_id}' at position {position}.")
        return after, position

    async def leave(self, loan_id: str, user_id: str, actor: str) -> Loan:
        user_id = required(user_id, "userId")
        loan_id = required(loan_id, "Loan ID")
        if actor != user_id:
            raise Forbidden("Access denied: Cannot remove other users from waitlist")

        def mutate(loan: Loan) -> Loan:
            if user_id not in loan.waitlist:
                raise LoanNotFound(f"User '{user_id}' is not in the waitlist for loan '{loan_id}'")
            waitlist = list(loan.waitlist)
            waitlist.remove(user_id)
            return loan.model_copy(update={"waitlist": waitlist, "updated_at": self.clock()})

        _, after = await conditional_update(self.store, loan_id, mutate, max_attempts=self.max_attempts)
        logger.info(f"User '{user_id}' removed from waitlist for loan '{loan_id}'.")
        return after

    async def positions_of(self, user_id: str) -> List[WaitlistPosition]:
        user_id = required(user_id, "userId")
        loans = await self.store.find_by_waitlist_member(user_id)
        return [
            WaitlistPosition(device_id=l.device_id, loan_id=l.id, position=l.waitlist.index(user_id) + 1)
            for l in loans
            if user_id in l.waitlist
        ]

    async def list_for(self, device_id: str) -> DeviceWaitlist:
        device_id = required(device_id, "deviceId")
        anchor = await self._anchor_for(device_id)
        if anchor is None:
            raise LoanNotFound(f"No loan found for device '{device_id}'")
        return DeviceWaitlist(
            device_id=anchor.device_id,
            loan_id=anchor.id,
            waitlist=list(anchor.waitlist),
            waitlist_count=len(anchor.waitlist),
        )
