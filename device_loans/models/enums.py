# device_loans/models/enums.py
from enum import Enum


class LoanStatus(str, Enum):
    REQUESTED = "Requested"   # initial status after the borrower submits
    APPROVED = "Approved"
    REJECTED = "Rejected"
    COLLECTED = "Collected"   # device physically handed over
    RETURNED = "Returned"
    CANCELLED = "Cancelled"


class LoanAction(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"
    CANCEL = "cancel"
    COLLECT = "collect"
    RETURN = "return"
    REVERT_COLLECTION = "revert_collection"


# Statuses in which a loan holds its device
ACTIVE_STATUSES = frozenset({LoanStatus.APPROVED, LoanStatus.COLLECTED})

TERMINAL_STATUSES = frozenset({LoanStatus.REJECTED, LoanStatus.RETURNED, LoanStatus.CANCELLED})
