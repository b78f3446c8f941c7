# device_loans/services/state_machine.py
"""
Legal transition graph over a single Loan record.

Everything here is pure: `apply_transition` returns a new Loan and never
touches storage. Persistence and conflict handling live in `guard.py`.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, FrozenSet, Optional

from device_loans.core.errors import Forbidden, InvalidStatus
from device_loans.models.enums import LoanAction, LoanStatus
from device_loans.models.loan import Loan, StatusChange

DEFAULT_REJECTION_REASON = "No reason provided"


@dataclass(frozen=True)
class TransitionRule:
    sources: FrozenSet[LoanStatus]
    target: LoanStatus
    owner_only: bool = False
    verb: str = ""


TRANSITIONS: Dict[LoanAction, TransitionRule] = {
    LoanAction.APPROVE: TransitionRule(frozenset({LoanStatus.REQUESTED}), LoanStatus.APPROVED, verb="approved"),
    LoanAction.REJECT: TransitionRule(frozenset({LoanStatus.REQUESTED}), LoanStatus.REJECTED, verb="rejected"),
    LoanAction.CANCEL: TransitionRule(
        frozenset({LoanStatus.REQUESTED, LoanStatus.APPROVED}), LoanStatus.CANCELLED, owner_only=True, verb="cancelled"
    ),
    LoanAction.COLLECT: TransitionRule(
        frozenset({LoanStatus.APPROVED}), LoanStatus.COLLECTED, owner_only=True, verb="collected"
    ),
    LoanAction.RETURN: TransitionRule(frozenset({LoanStatus.COLLECTED}), LoanStatus.RETURNED, verb="returned"),
    LoanAction.REVERT_COLLECTION: TransitionRule(
        frozenset({LoanStatus.COLLECTED}), LoanStatus.APPROVED, verb="reverted"
    ),
}


def allowed_actions(status: Optional[LoanStatus]) -> FrozenSet[LoanAction]:
    return frozenset(action for action, rule in TRANSITIONS.items() if status in rule.sources)


def check_transition(loan: Loan, action: LoanAction, actor: Optional[str] = None) -> TransitionRule:
    """Ownership first, then source status. Raises Forbidden / InvalidStatus."""
    rule = TRANSITIONS[action]
    if rule.owner_only and actor != loan.user_id:
        raise Forbidden(f"Access denied: Cannot {action.value} loan for other users")

    if loan.status not in rule.sources:
        current = loan.status.value if loan.status else "None"
        expected = " or ".join(f'"{s.value}"' for s in sorted(rule.sources, key=lambda s: s.value))
        raise InvalidStatus(
            f"Loan cannot be {rule.verb}. Current status: '{current}'",
            detail=f"Only loans with status {expected} can be {rule.verb}",
        )
    return rule


def apply_transition(
    loan: Loan,
    action: LoanAction,
    at: datetime,
    actor: Optional[str] = None,
    reason: Optional[str] = None,
) -> Loan:
    rule = check_transition(loan, action, actor)

    changes = {"status": rule.target, "updated_at": at}
    if action == LoanAction.APPROVE:
        changes.update(approved_at=at, approved_by=actor)
    elif action == LoanAction.REJECT:
        changes.update(
            rejected_at=at,
            rejected_by=actor,
            rejection_reason=(reason or "").strip() or DEFAULT_REJECTION_REASON,
        )
    elif action == LoanAction.CANCEL:
        changes.update(cancelled_at=at, cancelled_by=actor)
    elif action == LoanAction.COLLECT:
        changes.update(collected_at=at)
    elif action == LoanAction.RETURN:
        changes.update(returned_at=at)
    elif action == LoanAction.REVERT_COLLECTION:
        changes.update(collected_at=None, collection_reverted_at=at, collection_reverted_by=actor)

    entry = StatusChange(previous_status=loan.status, new_status=rule.target, changed_at=at, changed_by=actor)
    changes["status_history"] = [*loan.status_history, entry]
    return loan.model_copy(update=changes)
