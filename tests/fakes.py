# tests/fakes.py
import asyncio
from datetime import datetime
from typing import Any, Dict, List, Optional

from device_loans.core.errors import AlreadyExists
from device_loans.db.store import DeviceClaim
from device_loans.models.favourite import Favourite
from device_loans.models.loan import Loan


class InMemoryLoanStore:
    """LoanStore kept in dicts. Every call yields to the loop so gathered coroutines interleave."""

    def __init__(self, delay: float = 0):
        self.delay = delay
        self.loans: Dict[str, Loan] = {}
        self.claims: Dict[str, DeviceClaim] = {}
        self.version_conflicts = 0

    async def _tick(self):
        await asyncio.sleep(self.delay)

    async def get(self, loan_id: str) -> Optional[Loan]:
        await self._tick()
        loan = self.loans.get(loan_id)
        return loan.model_copy(deep=True) if loan else None

    async def insert(self, loan: Loan) -> Loan:
        await self._tick()
        if loan.id in self.loans:
            raise AlreadyExists(f"A loan with ID '{loan.id}' already exists")
        self.loans[loan.id] = loan.model_copy(deep=True)
        return loan

    async def replace_if_version(self, loan: Loan, expected_version: int) -> Optional[Loan]:
        await self._tick()
        current = self.loans.get(loan.id)
        if current is None or current.version != expected_version:
            self.version_conflicts += 1
            return None
        self.loans[loan.id] = loan.model_copy(deep=True)
        return loan.model_copy(deep=True)

    def _sorted(self, loans: List[Loan], newest_first: bool = False) -> List[Loan]:
        return sorted(loans, key=lambda l: (l.created_at, l.id), reverse=newest_first)

    async def list(self, skip: int = 0, limit: int = 100) -> List[Loan]:
        await self._tick()
        return self._sorted(list(self.loans.values()), newest_first=True)[skip:skip + limit]

    async def find_by_device(self, device_id: str, newest_first: bool = False) -> List[Loan]:
        await self._tick()
        return self._sorted([l for l in self.loans.values() if l.device_id == device_id], newest_first)

    async def find_by_user(self, user_id: str) -> List[Loan]:
        await self._tick()
        return self._sorted([l for l in self.loans.values() if l.user_id == user_id], newest_first=True)

    async def find_by_waitlist_member(self, user_id: str) -> List[Loan]:
        await self._tick()
        return self._sorted([l for l in self.loans.values() if user_id in l.waitlist])

    async def get_device_claim(self, device_id: str) -> Optional[DeviceClaim]:
        await self._tick()
        claim = self.claims.get(device_id)
        return DeviceClaim(claim.device_id, claim.loan_id, claim.claimed_at) if claim else None

    async def claim_device(self, device_id: str, loan_id: str, expected_holder: Optional[str], at: datetime) -> bool:
        await self._tick()
        claim = self.claims.get(device_id)
        holder = claim.loan_id if claim else None
        if holder not in (loan_id, expected_holder):
            return False
        self.claims[device_id] = DeviceClaim(device_id, loan_id, at)
        return True

    async def release_device(self, device_id: str, loan_id: str) -> bool:
        await self._tick()
        claim = self.claims.get(device_id)
        if claim is None or claim.loan_id != loan_id:
            return False
        self.claims[device_id] = DeviceClaim(device_id, None, claim.claimed_at)
        return True

    async def ping(self) -> bool:
        return True


class RecordingPublisher:
    """Stands in for LoanEventPublisher; keeps every emitted event."""

    configured = True
    dropped = 0

    def __init__(self):
        self.events: List[Dict[str, Any]] = []

    @property
    def pending(self) -> int:
        return len(self.events)

    def emit(self, event: Dict[str, Any]) -> None:
        self.events.append(event)

    def statuses(self) -> List[tuple]:
        return [(e["data"]["previousStatus"], e["data"]["newStatus"]) for e in self.events]


class InMemoryFavouriteStore:
    """FavouriteStore kept in a dict keyed by (userId, deviceId)."""

    def __init__(self):
        self.favourites: Dict[tuple, Favourite] = {}

    async def insert(self, favourite: Favourite) -> Favourite:
        key = (favourite.user_id, favourite.device_id)
        if key in self.favourites:
            raise AlreadyExists(f"Device '{favourite.device_id}' is already a favourite")
        self.favourites[key] = favourite
        return favourite

    async def list_for_user(self, user_id: str) -> List[Favourite]:
        mine = [f for (user, _), f in self.favourites.items() if user == user_id]
        return sorted(mine, key=lambda f: (f.added_at, f.device_id))

    async def delete(self, user_id: str, device_id: str) -> bool:
        return self.favourites.pop((user_id, device_id), None) is not None

    async def delete_for_user(self, user_id: str) -> int:
        keys = [k for k in self.favourites if k[0] == user_id]
        for key in keys:
            del self.favourites[key]
        return len(keys)

    async def replace_for_user(self, user_id: str, favourites: List[Favourite]) -> List[Favourite]:
        await self.delete_for_user(user_id)
        for favourite in favourites:
            self.favourites[(user_id, favourite.device_id)] = favourite
        return favourites
