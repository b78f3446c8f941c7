# device_loans/db/store.py
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional, Protocol

from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

from device_loans.core.errors import AlreadyExists, PersistenceError
from device_loans.models.loan import (
    DeviceClaimDocument,
    Loan,
    LoanDocument,
    loan_from_document,
    loan_to_document,
)

logger = logging.getLogger(__name__)


@dataclass
class DeviceClaim:
    device_id: str
    loan_id: Optional[str]
    claimed_at: Optional[datetime]


class LoanStore(Protocol):
    """
    Keyed storage of Loan records plus device claims.

    Single-key reads observe the latest write. The only atomic primitives are
    single-document: `insert` (fails on duplicate id), `replace_if_version`
    and `claim_device`. There are no cross-document transactions.
    """

    async def get(self, loan_id: str) -> Optional[Loan]: ...

    async def insert(self, loan: Loan) -> Loan: ...

    async def replace_if_version(self, loan: Loan, expected_version: int) -> Optional[Loan]: ...

    async def list(self, skip: int = 0, limit: int = 100) -> List[Loan]: ...

    async def find_by_device(self, device_id: str, newest_first: bool = False) -> List[Loan]: ...

    async def find_by_user(self, user_id: str) -> List[Loan]: ...

    async def find_by_waitlist_member(self, user_id: str) -> List[Loan]: ...

    async def get_device_claim(self, device_id: str) -> Optional[DeviceClaim]: ...

    async def claim_device(self, device_id: str, loan_id: str, expected_holder: Optional[str], at: datetime) -> bool: ...

    async def release_device(self, device_id: str, loan_id: str) -> bool: ...

    async def ping(self) -> bool: ...


class MongoLoanStore:
    """LoanStore backed by the collections Beanie registers for LoanDocument/DeviceClaimDocument."""

    def __init__(self, loans_collection=None, claims_collection=None):
        self._loans = loans_collection if loans_collection is not None else LoanDocument.get_motor_collection()
        self._claims = claims_collection if claims_collection is not None else DeviceClaimDocument.get_motor_collection()

    async def get(self, loan_id: str) -> Optional[Loan]:
        try:
            doc = await self._loans.find_one({"_id": loan_id})
        except PyMongoError as e:
            logger.error(f"Error reading loan '{loan_id}': {e}", exc_info=True)
            raise PersistenceError("Failed to read loan") from e
        return loan_from_document(doc) if doc else None

    async def insert(self, loan: Loan) -> Loan:
        try:
            await self._loans.insert_one(loan_to_document(loan))
        except DuplicateKeyError as e:
            raise AlreadyExists(f"A loan with ID '{loan.id}' already exists") from e
        except PyMongoError as e:
            logger.error(f"Error inserting loan '{loan.id}': {e}", exc_info=True)
            raise PersistenceError("Failed to create loan") from e
        return loan

    async def replace_if_version(self, loan: Loan, expected_version: int) -> Optional[Loan]:
        """Replace the stored document only if its version is still `expected_version`."""
        try:
            doc = await self._loans.find_one_and_replace(
                {"_id": loan.id, "version": expected_version},
                loan_to_document(loan),
                return_document=ReturnDocument.AFTER,
            )
        except PyMongoError as e:
            logger.error(f"Error updating loan '{loan.id}': {e}", exc_info=True)
            raise PersistenceError("Failed to update loan") from e
        return loan_from_document(doc) if doc else None

    async def _find(self, query, sort, skip: int = 0, limit: int = 0) -> List[Loan]:
        try:
            cursor = self._loans.find(query, sort=sort, skip=skip, limit=limit)
            docs = await cursor.to_list(length=None)
        except PyMongoError as e:
            logger.error(f"Error querying loans {query}: {e}", exc_info=True)
            raise PersistenceError("Failed to query loans") from e
        return [loan_from_document(d) for d in docs]

    async def list(self, skip: int = 0, limit: int = 100) -> List[Loan]:
        return await self._find({}, [("createdAt", DESCENDING), ("_id", ASCENDING)], skip=skip, limit=limit)

    async def find_by_device(self, device_id: str, newest_first: bool = False) -> List[Loan]:
        direction = DESCENDING if newest_first else ASCENDING
        return await self._find({"deviceId": device_id}, [("createdAt", direction), ("_id", direction)])

    async def find_by_user(self, user_id: str) -> List[Loan]:
        return await self._find({"userId": user_id}, [("createdAt", DESCENDING)])

    async def find_by_waitlist_member(self, user_id: str) -> List[Loan]:
        # Array equality match: documents whose waitlist contains user_id
        return await self._find({"waitlist": user_id}, [("createdAt", ASCENDING), ("_id", ASCENDING)])

    async def get_device_claim(self, device_id: str) -> Optional[DeviceClaim]:
        try:
            doc = await self._claims.find_one({"_id": device_id})
        except PyMongoError as e:
            logger.error(f"Error reading device claim '{device_id}': {e}", exc_info=True)
            raise PersistenceError("Failed to read device claim") from e
        if not doc:
            return None
        return DeviceClaim(device_id=device_id, loan_id=doc.get("loanId"), claimed_at=doc.get("claimedAt"))

    async def claim_device(self, device_id: str, loan_id: str, expected_holder: Optional[str], at: datetime) -> bool:
        """
        Atomically point the device claim at `loan_id` if the current holder is
        `expected_holder` (None = unclaimed) or already `loan_id`.
        """
        holders = [loan_id, expected_holder]
        try:
            await self._claims.find_one_and_update(
                {"_id": device_id, "loanId": {"$in": holders}},
                {"$set": {"loanId": loan_id, "claimedAt": at}},
                upsert=True,
                return_document=ReturnDocument.AFTER,
            )
        except DuplicateKeyError:
            # Filter missed (someone else holds it) and the upsert collided with the existing _id
            return False
        except PyMongoError as e:
            logger.error(f"Error claiming device '{device_id}': {e}", exc_info=True)
            raise PersistenceError("Failed to claim device") from e
        return True

    async def release_device(self, device_id: str, loan_id: str) -> bool:
        try:
            result = await self._claims.update_one(
                {"_id": device_id, "loanId": loan_id},
                {"$set": {"loanId": None, "claimedAt": datetime.now(timezone.utc)}},
            )
        except PyMongoError as e:
            logger.error(f"Error releasing device '{device_id}': {e}", exc_info=True)
            raise PersistenceError("Failed to release device") from e
        return result.modified_count > 0

    async def ping(self) -> bool:
        try:
            await self._loans.database.command("ping")
        except PyMongoError as e:
            logger.warning(f"MongoDB ping failed: {e}")
            return False
        return True
