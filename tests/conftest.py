import os
import tempfile
from datetime import datetime, timedelta, timezone

# ---- Environment must be in place before device_loans.core.config is imported ----
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("MONGODB_URL", "mongodb://localhost:27017/device_loans_test")
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["LOG_FILE_PATH"] = os.path.join(tempfile.gettempdir(), "device_loans_tests.log")
os.environ.pop("EVENT_GRID_TOPIC_ENDPOINT", None)
os.environ.pop("EVENT_GRID_TOPIC_KEY", None)

import pytest
from fastapi.testclient import TestClient
from jose import jwt

from tests.fakes import InMemoryFavouriteStore, InMemoryLoanStore, RecordingPublisher


def make_token(user_id, expires_in=timedelta(minutes=30), secret=None, **claims):
    payload = {"exp": datetime.now(timezone.utc) + expires_in, **claims}
    if user_id is not None:
        payload["sub"] = user_id
    return jwt.encode(payload, secret or os.environ["SECRET_KEY"], algorithm="HS256")


def auth(user_id):
    return {"Authorization": f"Bearer {make_token(user_id)}"}


@pytest.fixture()
def store():
    return InMemoryLoanStore()


@pytest.fixture()
def publisher():
    return RecordingPublisher()


@pytest.fixture()
def favourite_store():
    return InMemoryFavouriteStore()


@pytest.fixture()
def app_module():
    from device_loans import main
    return main


@pytest.fixture()
def client(app_module, store, publisher, favourite_store):
    from device_loans.api.deps import get_event_publisher, get_favourite_store, get_loan_store

    app = app_module.app
    app.dependency_overrides[get_loan_store] = lambda: store
    app.dependency_overrides[get_event_publisher] = lambda: publisher
    app.dependency_overrides[get_favourite_store] = lambda: favourite_store
    # No `with`: the lifespan (MongoDB + scheduler) is not started
    c = TestClient(app)
    yield c
    app.dependency_overrides.clear()
