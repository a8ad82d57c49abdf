import hashlib
import hmac
import json
import time

import pytest
from conftest import plan_session
from fastapi.testclient import TestClient

from doc_translator.api.main import create_app

U1 = {"x-user-id": "u1"}
ADMIN = {"x-admin-token": "test-admin-token"}


@pytest.fixture
def client(services):
    return TestClient(create_app(services))


def _signed(payload: bytes, secret: str = "whsec_test_secret") -> dict:
    ts = int(time.time())
    sig = hmac.new(secret.encode(), f"{ts}.".encode() + payload, hashlib.sha256).hexdigest()
    return {"Stripe-Signature": f"t={ts},v1={sig}", "Content-Type": "application/json"}


def _completed_event(session: dict) -> bytes:
    return json.dumps({"id": "evt_1", "type": "checkout.session.completed", "data": {"object": session}}).encode()


def _upload(client, name: str = "notes.txt", data: bytes = b"Hello world", headers: dict = U1) -> dict:
    r = client.post("/v1/files", files={"file": (name, data, "text/plain")}, headers=headers)
    assert r.status_code == 200
    return r.json()["data"]


def test_health(client) -> None:
    r = client.get("/health")
    assert r.status_code == 200
    body = r.json()
    assert body["status"] == "ok"
    assert body["data"]["service"] == "doc-translator"


def test_languages(client) -> None:
    data = client.get("/v1/languages").json()["data"]
    assert data["source"]["de"] == "German"
    assert data["target"]["pt-br"] == "Portuguese (Brazilian)"
    assert ".pdf" in data["document_extensions"]


def test_caller_identity_required(client) -> None:
    assert client.get("/v1/credits").status_code == 401
    assert client.get("/v1/jobs").status_code == 401


def test_admin_grant_and_balance(client) -> None:
    r = client.post("/v1/admin/credits/grant", json={"owner_id": "u1", "credits": 5}, headers=ADMIN)
    assert r.status_code == 200
    assert r.json()["data"]["credits"] == 5

    balance = client.get("/v1/credits", headers=U1).json()["data"]
    assert balance == {"owner_id": "u1", "credits": 5}


def test_admin_auth_required(client) -> None:
    r = client.post("/v1/admin/credits/grant", json={"owner_id": "u1", "credits": 5})
    assert r.status_code == 401
    r = client.get("/v1/admin/queue/stats", headers={"x-admin-token": "nope"})
    assert r.status_code == 401


def test_job_without_credits_is_payment_required(client) -> None:
    f = _upload(client)
    r = client.post("/v1/jobs", json={"file_id": f["file_id"], "target_lang": "de"}, headers=U1)
    assert r.status_code == 402
    body = r.json()
    assert body["status"] == "error"
    assert body["error"]["code"] == "INSUFFICIENT_BALANCE"


def test_job_validation_maps_to_400(client) -> None:
    f = _upload(client)
    r = client.post("/v1/jobs", json={"file_id": f["file_id"]}, headers=U1)
    assert r.status_code == 400
    assert r.json()["error"]["code"] == "VALIDATION_ERROR"


def test_upload_translate_download(client, services, pool) -> None:
    client.post("/v1/admin/credits/grant", json={"owner_id": "u1", "credits": 1}, headers=ADMIN)
    f = _upload(client)

    r = client.post("/v1/jobs", json={"file_id": f["file_id"], "target_lang": "de"}, headers=U1)
    assert r.status_code == 201
    job = r.json()["data"]
    assert job["status"] == "pending"

    r = client.get(f"/v1/jobs/{job['job_id']}/download", headers=U1)
    assert r.status_code == 409

    pool.run_until_idle()

    r = client.get(f"/v1/jobs/{job['job_id']}", headers=U1)
    assert r.json()["data"]["status"] == "completed"
    r = client.get(f"/v1/jobs/{job['job_id']}/download", headers=U1)
    assert r.status_code == 200
    assert r.content == b"[de] Hello world"
    assert "notes_de.txt" in r.headers["content-disposition"]

    assert client.get("/v1/credits", headers=U1).json()["data"]["credits"] == 0
    kinds = [n["kind"] for n in client.get("/v1/notifications", headers=U1).json()["data"]["notifications"]]
    assert "translation_completed" in kinds

    # other users see nothing
    r = client.get(f"/v1/jobs/{job['job_id']}", headers={"x-user-id": "u2"})
    assert r.status_code == 404


def test_cancel_then_cancel_again_conflicts(client) -> None:
    client.post("/v1/admin/credits/grant", json={"owner_id": "u1", "credits": 1}, headers=ADMIN)
    f = _upload(client)
    job = client.post("/v1/jobs", json={"file_id": f["file_id"], "target_lang": "fr"}, headers=U1).json()["data"]

    r = client.post(f"/v1/jobs/{job['job_id']}/cancel", headers=U1)
    assert r.status_code == 200
    assert r.json()["data"]["status"] == "cancelled"
    r = client.post(f"/v1/jobs/{job['job_id']}/cancel", headers=U1)
    assert r.status_code == 409


def test_webhook_credits_once(client, services) -> None:
    payload = _completed_event(plan_session("cs_hook", "u1", credits=10))

    first = client.post("/v1/webhooks/stripe", content=payload, headers=_signed(payload))
    assert first.status_code == 200
    assert first.json() == {"received": True, "outcome": "processed"}

    second = client.post("/v1/webhooks/stripe", content=payload, headers=_signed(payload))
    assert second.json() == {"received": True, "outcome": "already_processed"}

    assert services.ledger.get_balance("u1") == 10


def test_webhook_bad_signature(client, services) -> None:
    payload = _completed_event(plan_session("cs_hook", "u1", credits=10))
    r = client.post("/v1/webhooks/stripe", content=payload, headers=_signed(payload, secret="whsec_wrong"))
    assert r.status_code == 400
    assert services.ledger.get_balance("u1") == 0


def test_webhook_malformed_one_off_is_acknowledged(client, services) -> None:
    session = plan_session("cs_bad", "u1")
    session["metadata"]["usageType"] = "one_off"
    payload = _completed_event(session)
    r = client.post("/v1/webhooks/stripe", content=payload, headers=_signed(payload))
    assert r.status_code == 200
    assert r.json()["outcome"] == "ignored"
    assert services.ledger.get_payment("cs_bad") is None


def test_webhook_other_events_acknowledged(client) -> None:
    payload = json.dumps({"type": "payment_intent.succeeded", "data": {"object": {"id": "pi_1"}}}).encode()
    r = client.post("/v1/webhooks/stripe", content=payload, headers=_signed(payload))
    assert r.json() == {"received": True}


def test_checkout_and_confirm(client, gateway) -> None:
    r = client.post("/v1/payments/checkout", json={"plan": "starter"}, headers=U1)
    assert r.status_code == 200
    session_id = r.json()["data"]["session_id"]
    gateway.pay(session_id)

    r = client.post("/v1/payments/confirm", json={"session_id": session_id}, headers={"x-user-id": "u2"})
    assert r.status_code == 403

    r = client.post("/v1/payments/confirm", json={"session_id": session_id}, headers=U1)
    assert r.json()["data"]["outcome"] == "processed"
    assert client.get("/v1/credits", headers=U1).json()["data"]["credits"] == 10

    history = client.get("/v1/payments/history", headers=U1).json()["data"]["payments"]
    assert [p["session_id"] for p in history] == [session_id]


def test_one_off_flow(client, gateway, pool) -> None:
    f = _upload(client, data=b"word " * 100)
    quote = client.get(f"/v1/files/{f['file_id']}/quote", headers=U1).json()["data"]
    assert quote["amount"] >= 500

    r = client.post("/v1/payments/one-off-checkout", json={"file_id": f["file_id"]}, headers=U1)
    created = r.json()["data"]
    assert created["quote"]["amount"] == quote["amount"]
    gateway.pay(created["session_id"])
    client.post("/v1/payments/confirm", json={"session_id": created["session_id"]}, headers=U1)

    body = {
        "file_id": f["file_id"],
        "target_lang": "es",
        "billing_mode": "one_off",
        "billing_reference": created["billing_reference"],
    }
    r = client.post("/v1/jobs", json=body, headers=U1)
    assert r.status_code == 201
    r = client.post("/v1/jobs", json=body, headers=U1)
    assert r.status_code == 402
    assert r.json()["error"]["code"] == "PAYMENT_NOT_FOUND"

    pool.run_until_idle()
    assert client.get("/v1/credits", headers=U1).json()["data"]["credits"] == 0


def test_notifications_mark_read(client, services) -> None:
    services.reconciler.reconcile(plan_session("cs_plan", "u1", credits=3))
    items = client.get("/v1/notifications", headers=U1).json()["data"]["notifications"]
    assert len(items) == 1

    r = client.post(f"/v1/notifications/{items[0]['id']}/read", headers=U1)
    assert r.status_code == 200
    assert client.get("/v1/notifications?unread_only=true", headers=U1).json()["data"]["notifications"] == []
    assert client.post(f"/v1/notifications/{items[0]['id']}/read", headers={"x-user-id": "u2"}).status_code == 404


def test_queue_stats(client) -> None:
    client.post("/v1/admin/credits/grant", json={"owner_id": "u1", "credits": 1}, headers=ADMIN)
    f = _upload(client)
    client.post("/v1/jobs", json={"file_id": f["file_id"], "target_lang": "de"}, headers=U1)
    r = client.get("/v1/admin/queue/stats", headers=ADMIN)
    assert r.json()["data"]["queued"] == 1
    assert r.json()["data"]["failed"] == 0


def test_job_listing_pages(client) -> None:
    client.post("/v1/admin/credits/grant", json={"owner_id": "u1", "credits": 3}, headers=ADMIN)
    f = _upload(client)
    for lang in ("de", "fr", "es"):
        client.post("/v1/jobs", json={"file_id": f["file_id"], "target_lang": lang}, headers=U1)

    page = client.get("/v1/jobs?limit=2&offset=2", headers=U1).json()["data"]
    assert page["total"] == 3
    assert len(page["jobs"]) == 1
    assert client.get("/v1/jobs?offset=-1", headers=U1).status_code == 422
    assert client.get("/v1/jobs", headers={"x-user-id": "u2"}).json()["data"] == {"jobs": [], "total": 0}


def test_notifications_read_all(client, services) -> None:
    services.reconciler.reconcile(plan_session("cs_a", "u1", credits=3))
    services.reconciler.reconcile(plan_session("cs_b", "u1", credits=3))
    services.reconciler.reconcile(plan_session("cs_c", "u2", credits=3))

    r = client.post("/v1/notifications/read-all", headers=U1)
    assert r.json()["data"] == {"updated": 2}
    assert client.get("/v1/notifications?unread_only=true", headers=U1).json()["data"]["notifications"] == []
    assert client.post("/v1/notifications/read-all", headers=U1).json()["data"] == {"updated": 0}
    other = client.get("/v1/notifications?unread_only=true", headers={"x-user-id": "u2"}).json()["data"]
    assert len(other["notifications"]) == 1


def test_translation_usage(client) -> None:
    assert client.get("/v1/languages/usage").status_code == 401
    r = client.get("/v1/languages/usage", headers=U1)
    assert r.status_code == 200
    assert r.json()["data"] == {"character_count": 1200, "character_limit": 500000}


def test_confirm_unknown_session_is_not_found(client) -> None:
    r = client.post("/v1/payments/confirm", json={"session_id": "cs_missing"}, headers=U1)
    assert r.status_code == 404
    assert r.json()["error"]["code"] == "NOT_FOUND"
