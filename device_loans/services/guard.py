# device_loans/services/guard.py
import logging
from typing import Callable, Optional, Tuple

from device_loans.core.errors import ConcurrentModification, LoanNotFound
from device_loans.db.store import LoanStore
from device_loans.models.loan import Loan

logger = logging.getLogger(__name__)

# Returns the updated record, or None when nothing needs writing
Mutation = Callable[[Loan], Optional[Loan]]


async def conditional_update(
    store: LoanStore,
    loan_id: str,
    mutate: Mutation,
    max_attempts: int = 5,
) -> Tuple[Loan, Loan]:
    """
    Read-modify-write a loan under its version token.

    `mutate` is re-run against a fresh read after every lost race, so rule
    checks (status, ownership, waitlist membership) always see the record the
    write is conditioned on. Returns (before, after).
    """
    for attempt in range(1, max_attempts + 1):
        current = await store.get(loan_id)
        if current is None:
            raise LoanNotFound(f"Loan with ID '{loan_id}' not found")

        updated = mutate(current)
        if updated is None:
            return current, current

        updated = updated.model_copy(update={"version": current.version + 1})
        committed = await store.replace_if_version(updated, expected_version=current.version)
        if committed is not None:
            return current, committed

        logger.warning(
            f"Version conflict on loan '{loan_id}' (expected v{current.version}), attempt {attempt}/{max_attempts}."
        )

    raise ConcurrentModification(
        f"Loan '{loan_id}' was modified concurrently. Please retry.",
        detail=f"Gave up after {max_attempts} attempts",
    )
