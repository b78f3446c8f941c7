# device_loans/models/favourite.py
import hashlib
from datetime import datetime
from typing import Any, Dict, List

from beanie import Document
from pydantic import Field
from pymongo import IndexModel, ASCENDING

from .loan import CamelModel


def favourite_id(user_id: str, device_id: str) -> str:
    """Deterministic id: one favourite per (user, device)."""
    return hashlib.sha256(f"{user_id.strip()}:{device_id.strip()}".encode("utf-8")).hexdigest()


class Favourite(CamelModel):
    """A device a user has starred."""
    id: str
    device_id: str
    user_id: str
    added_at: datetime

    # --- Request Schemas ---
    class Add(CamelModel):
        user_id: str = ""
        device_id: str = ""

    class Sync(CamelModel):
        # Wire name follows the catalogue frontend
        favourites: List[Any] = Field(default_factory=list, alias="favorites")


class FavouritesCleared(CamelModel):
    deleted_count: int


class FavouriteDocument(Document):
    id: str
    userId: str
    deviceId: str
    addedAt: datetime

    class Settings:
        name = "favourites"
        indexes = [
            IndexModel([("userId", ASCENDING), ("addedAt", ASCENDING)], name="favourite_user_added_index"),
            IndexModel(
                [("userId", ASCENDING), ("deviceId", ASCENDING)], name="favourite_user_device_unique", unique=True
            ),
        ]


def favourite_to_document(favourite: Favourite) -> Dict[str, Any]:
    doc = favourite.model_dump(by_alias=True, mode="python")
    doc["_id"] = doc.pop("id")
    return doc


def favourite_from_document(doc: Dict[str, Any]) -> Favourite:
    data = dict(doc)
    if "_id" in data:
        data["id"] = str(data.pop("_id"))
    return Favourite.model_validate(data)
