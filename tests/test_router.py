from __future__ import annotations

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from entitlements.api.router import build_services, get_services, router
from entitlements.db.memory import InMemoryDBManager


ADMIN = {"X-User-Id": "admin-1"}
USER = {"X-User-Id": "user-1"}


@pytest.fixture
def services(tmp_path):
    return build_services(db=InMemoryDBManager(), ledger_path=tmp_path / "ledger.log")


@pytest.fixture
def client(services):
    app = FastAPI()
    app.include_router(router)
    app.dependency_overrides[get_services] = lambda: services
    return TestClient(app)


def generate(client, plan="1year", count=2, batch_name="promo"):
    resp = client.post(
        "/subscriptions/codes/generate",
        json={"plan": plan, "count": count, "batch_name": batch_name},
        headers=ADMIN,
    )
    assert resp.status_code == 201, resp.text
    return resp.json()


def test_requires_user_header(client):
    resp = client.get("/subscriptions/status")
    assert resp.status_code == 401


def test_status_without_subscription(client):
    resp = client.get("/subscriptions/status", headers=USER)
    assert resp.status_code == 404


def test_trial_then_status(client):
    resp = client.post("/subscriptions/trial", headers=USER)
    assert resp.status_code == 201
    assert resp.json()["plan"] == "3days"

    again = client.post("/subscriptions/trial", headers=USER)
    assert again.status_code == 409
    assert again.json()["detail"]["code"] == "TrialUnavailableError"

    status = client.get("/subscriptions/status", headers=USER)
    assert status.status_code == 200
    body = status.json()
    assert body["days_remaining"] == 3
    assert body["is_expired"] is False


def test_generate_and_redeem(client):
    generated = generate(client)
    assert len(generated["codes"]) == 2
    assert generated["batch_info"]["name"] == "promo"
    code = generated["codes"][0]["formatted_code"]

    client.post("/subscriptions/trial", headers=USER)
    resp = client.post("/subscriptions/activate/code", json={"code": code}, headers=USER)
    assert resp.status_code == 200, resp.text
    body = resp.json()
    assert body["extended"] is True
    assert body["subscription"]["plan"] == "1year"
    assert body["subscription"]["total_days"] == 368
    assert body["code_info"]["days_added"] == 365

    reuse = client.post(
        "/subscriptions/activate/code", json={"code": code}, headers={"X-User-Id": "user-2"}
    )
    assert reuse.status_code == 409
    detail = reuse.json()["detail"]
    assert detail["code"] == "CodeAlreadyUsedError"
    assert detail["used_by"] == "user-1"

    usage = client.get("/subscriptions/codes/usage", headers=ADMIN)
    assert usage.status_code == 200
    assert [c["used_by"] for c in usage.json()] == ["user-1"]


@pytest.mark.parametrize(
    "code, expected",
    [
        ("ABC", 400),
        ("AKM3-QX7R-ZD", 404),
    ],
)
def test_redeem_errors(client, code, expected):
    resp = client.post("/subscriptions/activate/code", json={"code": code}, headers=USER)
    assert resp.status_code == expected


def test_generate_rejects_oversized_batch(client, services):
    resp = client.post(
        "/subscriptions/codes/generate",
        json={"plan": "1year", "count": 20000, "batch_name": "huge"},
        headers=ADMIN,
    )
    assert resp.status_code == 400
    assert resp.json()["detail"]["code"] == "BatchTooLargeError"


def test_generate_rejects_unknown_plan(client):
    resp = client.post(
        "/subscriptions/codes/generate", json={"plan": "lifetime", "count": 1}, headers=ADMIN
    )
    assert resp.status_code == 400
    assert resp.json()["detail"]["code"] == "InvalidPlanError"


def test_payment_activation(client):
    denied = client.post(
        "/subscriptions/activate/payment",
        json={"plan": "3months", "payment_verified": False},
        headers=USER,
    )
    assert denied.status_code == 400

    resp = client.post(
        "/subscriptions/activate/payment",
        json={"plan": "3months", "payment_verified": True, "payment_reference": "pay_1"},
        headers=USER,
    )
    assert resp.status_code == 200
    body = resp.json()
    assert body["extended"] is False
    assert body["subscription"]["activation_method"] == "payment"


def test_batch_admin_routes(client):
    generated = generate(client, plan="6months", count=3, batch_name="admin")
    batch_id = generated["batch_info"]["id"]

    listing = client.get("/subscriptions/batches", headers=ADMIN)
    assert listing.status_code == 200
    assert listing.json()["total"] == 1

    detail = client.get(f"/subscriptions/batches/{batch_id}", headers=ADMIN)
    assert detail.status_code == 200
    assert detail.json()["summary"] == {
        "total_codes": 3,
        "used_codes": 0,
        "unused_codes": 3,
        "usage_rate": 0.0,
    }

    foreign = client.get(f"/subscriptions/batches/{batch_id}", headers=USER)
    assert foreign.status_code == 404

    archived = client.post(f"/subscriptions/batches/{batch_id}/archive", headers=ADMIN)
    assert archived.status_code == 200
    assert archived.json()["status"] == "archived"

    again = client.post(f"/subscriptions/batches/{batch_id}/archive", headers=ADMIN)
    assert again.status_code == 409

    only_archived = client.get("/subscriptions/batches", params={"status": "archived"}, headers=ADMIN)
    assert only_archived.json()["total"] == 1

    bad_filter = client.get("/subscriptions/batches", params={"status": "bogus"}, headers=ADMIN)
    assert bad_filter.status_code == 400

    code = generated["codes"][0]["code"]
    redeem = client.post("/subscriptions/activate/code", json={"code": code}, headers=USER)
    assert redeem.status_code == 409
    assert redeem.json()["detail"]["code"] == "BatchArchivedError"
