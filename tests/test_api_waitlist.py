# tests/test_api_waitlist.py
from tests.conftest import auth

BASE = "/api/v1/loans"


def _join_device(client, device_id, user_id, token_user=None):
    return client.post(
        f"{BASE}/device/{device_id}/waitlist",
        json={"userId": user_id},
        headers=auth(token_user or user_id),
    )


def test_double_join_by_device_is_noop(client):
    r = _join_device(client, "D2", "U2")
    assert r.status_code == 200
    assert r.json()["data"]["waitlist"] == ["U2"]
    assert r.json()["data"]["placeholder"] is True

    r = _join_device(client, "D2", "U2")
    assert r.status_code == 200
    assert r.json()["data"]["waitlist"] == ["U2"]

    r = client.get(f"{BASE}/device/D2/waitlist")
    assert r.json()["data"] == {"deviceId": "D2", "loanId": "LOAN-D2", "waitlist": ["U2"], "waitlistCount": 1}


def test_double_join_by_loan_conflicts(client):
    client.post(BASE, json={"id": "L1", "deviceId": "D2", "userId": "U1"}, headers=auth("U1"))

    r = client.post(f"{BASE}/L1/waitlist", json={"userId": "U2"})
    assert r.status_code == 200
    assert r.json()["data"]["position"] == 1
    assert r.json()["data"]["loan"]["waitlist"] == ["U2"]

    r = client.post(f"{BASE}/L1/waitlist", json={"userId": "U2"})
    assert r.status_code == 409
    assert r.json()["error"]["code"] == "ALREADY_EXISTS"


def test_join_for_someone_else_is_forbidden(client):
    r = _join_device(client, "D1", "U1", token_user="U2")
    assert r.status_code == 403
    assert client.post(f"{BASE}/device/D1/waitlist", json={"userId": "U1"}).status_code == 401


def test_fifo_positions_after_leave(client):
    for user in ("U1", "U2", "U3"):
        _join_device(client, "D3", user)

    r = client.request("DELETE", f"{BASE}/LOAN-D3/waitlist", json={"userId": "U2"}, headers=auth("U2"))
    assert r.status_code == 200
    assert r.json()["data"]["waitlist"] == ["U1", "U3"]

    r = client.get(f"{BASE}/waitlist/U3", headers=auth("U3"))
    assert r.status_code == 200
    assert r.json()["data"] == [{"deviceId": "D3", "loanId": "LOAN-D3", "position": 2}]


def test_leave_rules(client):
    _join_device(client, "D1", "U1")

    r = client.request("DELETE", f"{BASE}/LOAN-D1/waitlist", json={"userId": "U1"}, headers=auth("U2"))
    assert r.status_code == 403

    r = client.request("DELETE", f"{BASE}/LOAN-D1/waitlist", json={"userId": "U9"}, headers=auth("U9"))
    assert r.status_code == 404


def test_positions_are_private(client):
    assert client.get(f"{BASE}/waitlist/U1", headers=auth("U2")).status_code == 403


def test_unknown_device_waitlist(client):
    r = client.get(f"{BASE}/device/D404/waitlist")
    assert r.status_code == 404
    assert r.json()["success"] is False
