# device_loans/models/loan.py
from datetime import datetime
from typing import Any, Dict, Generic, List, Optional, TypeVar

from beanie import Document
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from pymongo import IndexModel, ASCENDING, DESCENDING

from .enums import LoanStatus


class CamelModel(BaseModel):
    """Wire/storage shape uses camelCase keys (deviceId, createdAt, ...)."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, use_enum_values=False)


class StatusChange(CamelModel):
    previous_status: Optional[LoanStatus] = None
    new_status: LoanStatus
    changed_at: datetime
    changed_by: Optional[str] = None


class Loan(CamelModel):
    """One user borrowing one device for a time window."""
    id: str
    device_id: str
    user_id: Optional[str] = None     # None only on a waitlist placeholder
    status: Optional[LoanStatus] = None
    from_: Optional[datetime] = Field(None, alias="from")
    till: Optional[datetime] = None
    created_at: datetime
    updated_at: Optional[datetime] = None

    # --- Transition stamps ---
    approved_at: Optional[datetime] = None
    approved_by: Optional[str] = None
    rejected_at: Optional[datetime] = None
    rejected_by: Optional[str] = None
    rejection_reason: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    cancelled_by: Optional[str] = None
    collected_at: Optional[datetime] = None
    returned_at: Optional[datetime] = None
    collection_reverted_at: Optional[datetime] = None
    collection_reverted_by: Optional[str] = None

    waitlist: List[str] = Field(default_factory=list)
    placeholder: bool = False
    version: int = 0
    status_history: List[StatusChange] = Field(default_factory=list)

    # --- Request Schemas ---
    class Create(CamelModel):
        id: Optional[str] = None
        device_id: str = ""
        user_id: str = ""
        from_: Optional[datetime] = Field(None, alias="from")
        till: Optional[datetime] = None

    class Reject(CamelModel):
        reason: Optional[str] = None

    class WaitlistMember(CamelModel):
        user_id: str = ""


# --- Response Schemas ---
T = TypeVar("T")


class ApiError(BaseModel):
    code: str
    message: str
    detail: Optional[str] = None


class ApiResponse(BaseModel, Generic[T]):
    success: bool = True
    data: Optional[T] = None
    error: Optional[ApiError] = None


class WaitlistJoinResult(CamelModel):
    loan: Loan
    position: int


class WaitlistPosition(CamelModel):
    device_id: str
    loan_id: str
    position: int


class DeviceWaitlist(CamelModel):
    device_id: str
    loan_id: str
    waitlist: List[str]
    waitlist_count: int


class DeviceLoanStats(CamelModel):
    total_loans: int
    by_status: Dict[str, int]
    current_loan: Optional[Loan] = None


class DeviceLoanHistory(CamelModel):
    device_id: str
    loans: List[Loan]
    stats: DeviceLoanStats


# --- Beanie documents (collection registration and indexes) ---
class LoanDocument(Document):
    id: str
    deviceId: str
    userId: Optional[str] = None
    status: Optional[LoanStatus] = None
    waitlist: List[str] = Field(default_factory=list)
    createdAt: datetime
    version: int = 0

    model_config = ConfigDict(extra="allow")

    class Settings:
        name = "loans"
        indexes = [
            IndexModel([("deviceId", ASCENDING), ("createdAt", ASCENDING)], name="loan_device_created_index"),
            IndexModel([("userId", ASCENDING)], name="loan_user_index", sparse=True),
            IndexModel([("waitlist", ASCENDING)], name="loan_waitlist_index"),
            IndexModel([("status", ASCENDING)], name="loan_status_index"),
            IndexModel([("createdAt", DESCENDING)], name="loan_created_at_index"),
        ]


class DeviceClaimDocument(Document):
    """Which loan currently holds a device in Approved/Collected. _id is the deviceId."""
    id: str
    loanId: Optional[str] = None
    claimedAt: Optional[datetime] = None

    class Settings:
        name = "device_claims"


def loan_to_document(loan: Loan) -> Dict[str, Any]:
    doc = loan.model_dump(by_alias=True, mode="python")
    doc["_id"] = doc.pop("id")
    # BSON has no Enum type
    doc["status"] = loan.status.value if loan.status else None
    for entry in doc["statusHistory"]:
        for key in ("previousStatus", "newStatus"):
            if isinstance(entry.get(key), LoanStatus):
                entry[key] = entry[key].value
    return doc


def loan_from_document(doc: Dict[str, Any]) -> Loan:
    data = dict(doc)
    if "_id" in data:
        data["id"] = str(data.pop("_id"))
    return Loan.model_validate(data)
