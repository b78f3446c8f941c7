# device_loans/services/favourites.py
import logging
from datetime import datetime
from typing import Any, Callable, Iterable, List

from device_loans.core.errors import FavouriteNotFound
from device_loans.core.utils import required, utcnow
from device_loans.db.favourites import FavouriteStore
from device_loans.models.favourite import Favourite, favourite_id

logger = logging.getLogger(__name__)


class FavouriteService:
    """Per-user starred devices. Independent of loans and waitlists."""

    def __init__(self, store: FavouriteStore, *, clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.clock = clock

    def _build(self, user_id: str, device_id: str) -> Favourite:
        return Favourite(
            id=favourite_id(user_id, device_id),
            user_id=user_id,
            device_id=device_id,
            added_at=self.clock(),
        )

    async def add(self, user_id: str, device_id: str) -> List[Favourite]:
        """Star a device. Returns the user's updated favourites; ALREADY_EXISTS when starred twice."""
        user_id = required(user_id, "userId")
        device_id = required(device_id, "deviceId")
        await self.store.insert(self._build(user_id, device_id))
        logger.info(f"User '{user_id}' added device '{device_id}' to favourites.")
        return await self.store.list_for_user(user_id)

    async def list_for(self, user_id: str) -> List[Favourite]:
        return await self.store.list_for_user(required(user_id, "userId"))

    async def remove(self, user_id: str, device_id: str) -> None:
        user_id = required(user_id, "userId")
        device_id = required(device_id, "deviceId")
        if not await self.store.delete(user_id, device_id):
            raise FavouriteNotFound(f"Device '{device_id}' is not in favourites")
        logger.info(f"User '{user_id}' removed device '{device_id}' from favourites.")

    async def clear(self, user_id: str) -> int:
        user_id = required(user_id, "userId")
        deleted = await self.store.delete_for_user(user_id)
        logger.info(f"Cleared {deleted} favourite(s) for user '{user_id}'.")
        return deleted

    async def sync(self, user_id: str, device_ids: Iterable[Any]) -> List[Favourite]:
        """Replace the user's favourites with `device_ids` (blank and non-string entries ignored, order kept)."""
        user_id = required(user_id, "userId")
        unique: List[str] = []
        for value in device_ids:
            device_id = value.strip() if isinstance(value, str) else ""
            if device_id and device_id not in unique:
                unique.append(device_id)

        favourites = await self.store.replace_for_user(user_id, [self._build(user_id, d) for d in unique])
        logger.info(f"Synced {len(favourites)} favourite(s) for user '{user_id}'.")
        return favourites
