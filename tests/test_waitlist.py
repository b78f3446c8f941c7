# tests/test_waitlist.py
import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from device_loans.core.errors import AlreadyExists, Forbidden, LoanNotFound, ValidationFailed
from device_loans.models.loan import Loan
from device_loans.services.waitlist import WaitlistCoordinator, placeholder_id

T0 = datetime(2025, 3, 1, 9, 0, tzinfo=timezone.utc)


def run(coro):
    return asyncio.run(coro)


@pytest.fixture()
def waitlists(store):
    return WaitlistCoordinator(store, max_attempts=5, clock=lambda: T0)


def _seed(store, loan_id, device_id, created_at=T0, user_id="owner"):
    store.loans[loan_id] = Loan(id=loan_id, device_id=device_id, user_id=user_id, created_at=created_at)


def test_join_twice_by_device_is_noop(waitlists, store):
    first = run(waitlists.join("D2", "U2"))
    second = run(waitlists.join("D2", "U2"))

    assert first.id == placeholder_id("D2")
    assert first.placeholder is True
    assert second.waitlist == ["U2"]
    assert store.loans[first.id].version == 1


def test_join_twice_by_id_is_already_exists(waitlists, store):
    _seed(store, "L1", "D2")
    loan, position = run(waitlists.join_by_id("L1", "U2"))
    assert position == 1

    with pytest.raises(AlreadyExists):
        run(waitlists.join_by_id("L1", "U2"))
    assert store.loans["L1"].waitlist == ["U2"]


def test_join_by_id_unknown_loan(waitlists):
    with pytest.raises(LoanNotFound):
        run(waitlists.join_by_id("nope", "U1"))


def test_join_uses_earliest_record_for_device(waitlists, store):
    _seed(store, "L-new", "D1", created_at=T0 + timedelta(hours=1))
    _seed(store, "L-old", "D1", created_at=T0)

    loan = run(waitlists.join("D1", "U1"))
    assert loan.id == "L-old"
    assert placeholder_id("D1") not in store.loans


def test_fifo_after_leave(waitlists):
    for user in ("U1", "U2", "U3"):
        run(waitlists.join("D3", user))

    positions = run(waitlists.positions_of("U3"))
    assert [p.position for p in positions] == [3]

    run(waitlists.leave(placeholder_id("D3"), "U2", actor="U2"))

    positions = run(waitlists.positions_of("U3"))
    assert len(positions) == 1
    assert positions[0].device_id == "D3"
    assert positions[0].position == 2

    listing = run(waitlists.list_for("D3"))
    assert listing.waitlist == ["U1", "U3"]
    assert listing.waitlist_count == 2


def test_leave_rules(waitlists, store):
    _seed(store, "L1", "D1")
    run(waitlists.join_by_id("L1", "U1"))

    with pytest.raises(Forbidden):
        run(waitlists.leave("L1", "U1", actor="U2"))
    with pytest.raises(LoanNotFound):
        run(waitlists.leave("L1", "U3", actor="U3"))
    with pytest.raises(LoanNotFound):
        run(waitlists.leave("missing", "U1", actor="U1"))

    assert run(waitlists.leave("L1", "U1", actor="U1")).waitlist == []


def test_positions_span_devices(waitlists):
    run(waitlists.join("D1", "U1"))
    run(waitlists.join("D2", "U0"))
    run(waitlists.join("D2", "U1"))

    positions = {p.device_id: p.position for p in run(waitlists.positions_of("U1"))}
    assert positions == {"D1": 1, "D2": 2}


def test_list_for_unknown_device(waitlists):
    with pytest.raises(LoanNotFound):
        run(waitlists.list_for("D404"))


def test_blank_identifiers_are_rejected(waitlists):
    with pytest.raises(ValidationFailed):
        run(waitlists.join("D1", "  "))
    with pytest.raises(ValidationFailed):
        run(waitlists.join("", "U1"))


def test_placeholder_stays_anchor_when_older_loan_appears(waitlists, store):
    run(waitlists.join("D1", "U1"))
    # Loan stamped before the placeholder but committed after it
    _seed(store, "L0", "D1", created_at=T0 - timedelta(hours=1))

    loan = run(waitlists.join("D1", "U2"))
    assert loan.id == placeholder_id("D1")
    assert store.loans["L0"].waitlist == []

    listing = run(waitlists.list_for("D1"))
    assert listing.loan_id == placeholder_id("D1")
    assert listing.waitlist == ["U1", "U2"]
    assert [p.position for p in run(waitlists.positions_of("U2"))] == [2]
