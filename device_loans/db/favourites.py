# device_loans/db/favourites.py
import logging
from typing import List, Protocol

from pymongo import ASCENDING
from pymongo.errors import BulkWriteError, DuplicateKeyError, PyMongoError

from device_loans.core.errors import AlreadyExists, PersistenceError
from device_loans.models.favourite import (
    Favourite,
    FavouriteDocument,
    favourite_from_document,
    favourite_to_document,
)

logger = logging.getLogger(__name__)


class FavouriteStore(Protocol):
    async def insert(self, favourite: Favourite) -> Favourite: ...

    async def list_for_user(self, user_id: str) -> List[Favourite]: ...

    async def delete(self, user_id: str, device_id: str) -> bool: ...

    async def delete_for_user(self, user_id: str) -> int: ...

    async def replace_for_user(self, user_id: str, favourites: List[Favourite]) -> List[Favourite]: ...


class MongoFavouriteStore:
    """FavouriteStore over the collection Beanie registers for FavouriteDocument."""

    def __init__(self, collection=None):
        self._favourites = collection if collection is not None else FavouriteDocument.get_motor_collection()

    async def insert(self, favourite: Favourite) -> Favourite:
        try:
            await self._favourites.insert_one(favourite_to_document(favourite))
        except DuplicateKeyError as e:
            raise AlreadyExists(f"Device '{favourite.device_id}' is already a favourite") from e
        except PyMongoError as e:
            logger.error(f"Error adding favourite for '{favourite.user_id}': {e}", exc_info=True)
            raise PersistenceError("Failed to add favourite") from e
        return favourite

    async def list_for_user(self, user_id: str) -> List[Favourite]:
        try:
            cursor = self._favourites.find({"userId": user_id}, sort=[("addedAt", ASCENDING), ("deviceId", ASCENDING)])
            docs = await cursor.to_list(length=None)
        except PyMongoError as e:
            logger.error(f"Error listing favourites for '{user_id}': {e}", exc_info=True)
            raise PersistenceError("Failed to list favourites") from e
        return [favourite_from_document(d) for d in docs]

    async def delete(self, user_id: str, device_id: str) -> bool:
        try:
            result = await self._favourites.delete_one({"userId": user_id, "deviceId": device_id})
        except PyMongoError as e:
            logger.error(f"Error removing favourite '{device_id}' for '{user_id}': {e}", exc_info=True)
            raise PersistenceError("Failed to remove favourite") from e
        return result.deleted_count > 0

    async def delete_for_user(self, user_id: str) -> int:
        try:
            result = await self._favourites.delete_many({"userId": user_id})
        except PyMongoError as e:
            logger.error(f"Error clearing favourites for '{user_id}': {e}", exc_info=True)
            raise PersistenceError("Failed to clear favourites") from e
        return result.deleted_count

    async def replace_for_user(self, user_id: str, favourites: List[Favourite]) -> List[Favourite]:
        await self.delete_for_user(user_id)
        if not favourites:
            return []
        try:
            await self._favourites.insert_many([favourite_to_document(f) for f in favourites], ordered=False)
        except BulkWriteError as e:
            write_errors = e.details.get("writeErrors", [])
            if any(err.get("code") != 11000 for err in write_errors):
                logger.error(f"Error syncing favourites for '{user_id}': {write_errors}")
                raise PersistenceError("Failed to sync favourites") from e
            # A concurrent add already stored some of them
            logger.warning(f"Favourite sync for '{user_id}' skipped {len(write_errors)} existing entries.")
        except PyMongoError as e:
            logger.error(f"Error syncing favourites for '{user_id}': {e}", exc_info=True)
            raise PersistenceError("Failed to sync favourites") from e
        return favourites
