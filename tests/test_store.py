# tests/test_store.py
import asyncio
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
from pymongo import ReturnDocument
from pymongo.errors import BulkWriteError, DuplicateKeyError, PyMongoError

from device_loans.core.errors import AlreadyExists, PersistenceError
from device_loans.db.favourites import MongoFavouriteStore
from device_loans.db.store import MongoLoanStore
from device_loans.models.enums import LoanStatus
from device_loans.models.favourite import Favourite
from device_loans.models.loan import Loan, loan_to_document
from tests.conftest import auth

NOW = datetime(2025, 3, 1, 9, 0, tzinfo=timezone.utc)


def _collection():
    collection = MagicMock()
    for name in ("find_one", "insert_one", "insert_many", "find_one_and_replace", "find_one_and_update",
                 "update_one", "delete_one", "delete_many"):
        setattr(collection, name, AsyncMock())
    collection.database.command = AsyncMock()
    return collection


def _cursor(docs):
    cursor = MagicMock()
    cursor.to_list = AsyncMock(return_value=docs)
    return cursor


def _loan(**kwargs):
    kwargs.setdefault("id", "L1")
    kwargs.setdefault("device_id", "D1")
    kwargs.setdefault("user_id", "U1")
    kwargs.setdefault("status", LoanStatus.REQUESTED)
    kwargs.setdefault("created_at", NOW)
    return Loan(**kwargs)


def _store():
    loans, claims = _collection(), _collection()
    return MongoLoanStore(loans, claims), loans, claims


def test_replace_is_conditional_on_id_and_version():
    store, loans, _ = _store()
    loan = _loan(version=4, status=LoanStatus.APPROVED)
    loans.find_one_and_replace.return_value = loan_to_document(loan)

    result = asyncio.run(store.replace_if_version(loan, 3))

    assert result.status == LoanStatus.APPROVED
    args, kwargs = loans.find_one_and_replace.call_args
    assert args[0] == {"_id": "L1", "version": 3}
    assert args[1]["_id"] == "L1"
    assert args[1]["status"] == "Approved"
    assert kwargs["return_document"] == ReturnDocument.AFTER


def test_replace_on_stale_version_returns_none():
    store, loans, _ = _store()
    loans.find_one_and_replace.return_value = None
    assert asyncio.run(store.replace_if_version(_loan(version=2), 1)) is None


def test_insert_maps_driver_errors():
    store, loans, _ = _store()
    loans.insert_one.side_effect = DuplicateKeyError("E11000 duplicate key")
    with pytest.raises(AlreadyExists):
        asyncio.run(store.insert(_loan()))

    loans.insert_one.side_effect = PyMongoError("connection reset")
    with pytest.raises(PersistenceError):
        asyncio.run(store.insert(_loan()))


def test_read_failure_is_persistence_error():
    store, loans, _ = _store()
    loans.find_one.side_effect = PyMongoError("timeout")
    with pytest.raises(PersistenceError):
        asyncio.run(store.get("L1"))


def test_find_by_device_sorts_oldest_first():
    store, loans, _ = _store()
    loans.find.return_value = _cursor([loan_to_document(_loan())])

    result = asyncio.run(store.find_by_device("D1"))

    assert [l.id for l in result] == ["L1"]
    args, kwargs = loans.find.call_args
    assert args[0] == {"deviceId": "D1"}
    assert kwargs["sort"][0] == ("createdAt", 1)


def test_claim_upserts_when_holder_matches():
    store, _, claims = _store()
    assert asyncio.run(store.claim_device("D1", "L2", "L1", NOW)) is True

    args, kwargs = claims.find_one_and_update.call_args
    assert args[0] == {"_id": "D1", "loanId": {"$in": ["L2", "L1"]}}
    assert args[1] == {"$set": {"loanId": "L2", "claimedAt": NOW}}
    assert kwargs["upsert"] is True


def test_claim_held_by_another_loan_returns_false():
    store, _, claims = _store()
    claims.find_one_and_update.side_effect = DuplicateKeyError("E11000 duplicate key")
    assert asyncio.run(store.claim_device("D1", "L2", None, NOW)) is False

    claims.find_one_and_update.side_effect = PyMongoError("not primary")
    with pytest.raises(PersistenceError):
        asyncio.run(store.claim_device("D1", "L2", None, NOW))


def test_release_only_by_holder():
    store, _, claims = _store()
    claims.update_one.return_value = MagicMock(modified_count=0)
    assert asyncio.run(store.release_device("D1", "L9")) is False
    assert claims.update_one.call_args.args[0] == {"_id": "D1", "loanId": "L9"}

    claims.update_one.return_value = MagicMock(modified_count=1)
    assert asyncio.run(store.release_device("D1", "L1")) is True


def test_get_device_claim():
    store, _, claims = _store()
    claims.find_one.return_value = {"_id": "D1", "loanId": "L1", "claimedAt": NOW}
    claim = asyncio.run(store.get_device_claim("D1"))
    assert (claim.device_id, claim.loan_id, claim.claimed_at) == ("D1", "L1", NOW)

    claims.find_one.return_value = None
    assert asyncio.run(store.get_device_claim("D1")) is None


def test_ping_reports_failure_as_false():
    store, loans, _ = _store()
    assert asyncio.run(store.ping()) is True
    loans.database.command.side_effect = PyMongoError("down")
    assert asyncio.run(store.ping()) is False


# --- Favourites ---

def _favourite(device_id="D1"):
    return Favourite(id=f"id-{device_id}", user_id="U1", device_id=device_id, added_at=NOW)


def test_favourite_insert_maps_duplicate():
    collection = _collection()
    store = MongoFavouriteStore(collection)
    collection.insert_one.side_effect = DuplicateKeyError("E11000 duplicate key")
    with pytest.raises(AlreadyExists):
        asyncio.run(store.insert(_favourite()))


def test_favourite_delete_reports_missing():
    collection = _collection()
    store = MongoFavouriteStore(collection)
    collection.delete_one.return_value = MagicMock(deleted_count=0)
    assert asyncio.run(store.delete("U1", "D1")) is False
    assert collection.delete_one.call_args.args[0] == {"userId": "U1", "deviceId": "D1"}


def test_favourite_sync_tolerates_duplicate_writes_only():
    collection = _collection()
    store = MongoFavouriteStore(collection)
    collection.delete_many.return_value = MagicMock(deleted_count=1)
    collection.insert_many.side_effect = BulkWriteError({"writeErrors": [{"code": 11000}]})

    result = asyncio.run(store.replace_for_user("U1", [_favourite("D1"), _favourite("D2")]))
    assert [f.device_id for f in result] == ["D1", "D2"]
    assert collection.insert_many.call_args.kwargs["ordered"] is False

    collection.insert_many.side_effect = BulkWriteError({"writeErrors": [{"code": 121}]})
    with pytest.raises(PersistenceError):
        asyncio.run(store.replace_for_user("U1", [_favourite("D1")]))


# --- HTTP ---

class _UnavailableStore:
    async def get(self, loan_id):
        raise PersistenceError("Failed to read loan")


def test_store_failure_is_503(client, app_module):
    from device_loans.api.deps import get_loan_store

    app_module.app.dependency_overrides[get_loan_store] = lambda: _UnavailableStore()
    r = client.get("/api/v1/loans/L1", headers=auth("U1"))
    assert r.status_code == 503
    assert r.json()["success"] is False
    assert r.json()["error"]["code"] == "PERSISTENCE_ERROR"
