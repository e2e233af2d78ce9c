import hashlib
import hmac
import json

import httpx
import pytest
from bson import ObjectId

from marketplace.main import app
from marketplace.models import PaymentStatus

WEBHOOK_SECRET = "whsec_test"


@pytest.fixture
async def client(db, gateway, cache):
    app.mongodb = db
    app.gateway = gateway
    app.cache = cache
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as c:
        yield c
    app.mongodb = app.gateway = app.cache = None


def signed(payload: dict):
    raw = json.dumps(payload).encode()
    signature = hmac.new(WEBHOOK_SECRET.encode(), raw, hashlib.sha256).hexdigest()
    return raw, {"paymongo-signature": signature, "content-type": "application/json"}


def paid_event(intent_id):
    return {"data": {"attributes": {
        "type": "payment.paid",
        "data": {"id": "pay_wh_1", "attributes": {"payment_intent_id": intent_id}},
    }}}


async def test_webhook_with_bad_signature_is_rejected(client, db, seed):
    payment_id = await seed.payment(status=PaymentStatus.AWAITING_PAYMENT, payment_intent_id="pi_wh")
    raw, headers = signed(paid_event("pi_wh"))
    headers["paymongo-signature"] = "0" * 64

    response = await client.post("/webhooks/gateway", content=raw, headers=headers)

    assert response.status_code == 400
    assert response.json() == {"detail": "Invalid signature"}
    payment = await db.payments.find_one({"_id": ObjectId(payment_id)})
    assert payment["status"] == "awaiting_payment"
    assert payment["webhook_received"] is False


async def test_signed_paid_webhook_materializes_orders(client, db, seed):
    await seed.catalog()
    payment_id = await seed.payment(status=PaymentStatus.AWAITING_PAYMENT, payment_intent_id="pi_wh")
    raw, headers = signed(paid_event("pi_wh"))

    response = await client.post("/webhooks/gateway", content=raw, headers=headers)

    assert response.status_code == 200
    assert response.json() == {"received": True}
    payment = await db.payments.find_one({"_id": ObjectId(payment_id)})
    assert payment["status"] == "succeeded"
    assert payment["orders_created"] is True
    assert await db.orders.count_documents({"payment_id": payment_id}) == 2


async def test_webhook_for_unknown_payment_is_acknowledged(client):
    raw, headers = signed(paid_event("pi_unknown"))

    response = await client.post("/webhooks/gateway", content=raw, headers=headers)

    assert response.status_code == 200
    assert response.json() == {"received": True}


async def test_recover_orders_endpoint(client, seed, auth_headers):
    await seed.catalog()
    payment_id = await seed.payment()
    url = f"/admin/payments/{payment_id}/recover-orders"

    forbidden = await client.post(url, headers=auth_headers("buyer-1"))
    assert forbidden.status_code == 403
    assert forbidden.json()["error"] == "AUTHORIZATION_ERROR"

    response = await client.post(url, headers=auth_headers("admin-1", "admin"))
    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert len(body["data"]["order_ids"]) == 2
    assert body["message"] == "2 order(s) created successfully"

    again = await client.post(url, headers=auth_headers("admin-1", "admin"))
    assert again.status_code == 409
    assert again.json()["error"] == "CONFLICT_ERROR"


async def test_recover_orders_endpoint_errors(client, seed, auth_headers):
    admin = auth_headers("admin-1", "admin")
    pending = await seed.payment(status=PaymentStatus.PROCESSING)

    missing = await client.post(f"/admin/payments/{ObjectId()}/recover-orders", headers=admin)
    assert missing.status_code == 404

    not_paid = await client.post(f"/admin/payments/{pending}/recover-orders", headers=admin)
    assert not_paid.status_code == 400
    assert not_paid.json()["details"] == "Payment has not succeeded yet"


async def test_checkout_endpoint_returns_qr_code(client, seed, auth_headers):
    payload = {"checkout_data": seed.snapshot(shipping_fee=50).model_dump(), "payment_method": "qrph"}

    response = await client.post("/payments/checkout", json=payload, headers=auth_headers("buyer-1"))

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["qr_code_url"] == "https://qr.test/code.png"
    assert data["payment"]["amount"] == 300
    assert data["payment"]["fee"] == 8
    assert data["payment"]["status"] == "awaiting_payment"


async def test_requests_without_valid_token_are_rejected(client):
    response = await client.get("/payments", headers={"Authorization": "Bearer not-a-token"})

    assert response.status_code == 401
    assert response.json()["error"] == "AUTHENTICATION_ERROR"


async def test_refund_over_original_returns_validation_error(client, seed, auth_headers, gateway_stub):
    payment_id = await seed.payment(amount=800)

    response = await client.post(
        f"/payments/{payment_id}/refunds", json={"amount": 1000}, headers=auth_headers("admin-1", "admin")
    )

    assert response.status_code == 400
    assert response.json() == {
        "success": False,
        "error": "VALIDATION_ERROR",
        "details": "Total refund amount would exceed original payment",
    }
    assert gateway_stub.calls("POST", "/refunds") == []


async def test_refund_requires_admin(client, seed, auth_headers):
    payment_id = await seed.payment(amount=800)

    response = await client.post(f"/payments/{payment_id}/refunds", json={"amount": 100},
                                 headers=auth_headers("buyer-1"))

    assert response.status_code == 403


async def test_payment_visible_to_owner_only(client, seed, auth_headers):
    payment_id = await seed.payment()

    own = await client.get(f"/payments/{payment_id}", headers=auth_headers("buyer-1"))
    other = await client.get(f"/payments/{payment_id}", headers=auth_headers("buyer-2"))

    assert own.status_code == 200
    assert own.json()["data"]["id"] == payment_id
    assert other.status_code == 403


async def test_escrow_release_and_refund_request_endpoints(client, db, seed, auth_headers):
    await seed.catalog()
    released = await seed.order(subtotal=200)
    refunded = await seed.order(subtotal=150)

    response = await client.post(f"/admin/escrow/{released}/release", json={"notes": "delivered"},
                                 headers=auth_headers("admin-1", "admin"))
    assert response.status_code == 200
    assert response.json()["data"]["escrow_status"] == "released"

    response = await client.post(f"/orders/{refunded}/refund-request", json={"reason": "damaged"},
                                 headers=auth_headers("buyer-1"))
    assert response.status_code == 200
    assert response.json()["data"]["escrow_status"] == "refund_requested"

    response = await client.get("/admin/escrow/pending-refunds", headers=auth_headers("admin-1", "admin"))
    assert [view["order_id"] for view in response.json()["data"]] == [refunded]

    response = await client.post(f"/admin/escrow/{released}/release", json={},
                                 headers=auth_headers("admin-1", "admin"))
    assert response.status_code == 400
    assert response.json()["details"] == "Payment is not held in escrow"
    assert (await db.vendors.find_one({"user_id": "vendor-1"}))["balance"] == 200


async def test_stock_endpoints(client, seed, auth_headers):
    products = await seed.catalog()
    url = f"/products/{products['rice']}/stock"

    response = await client.get(url)
    assert response.json()["data"]["stock"] == 10

    response = await client.post(url, json={"delta": -3}, headers=auth_headers("vendor-1", "vendor"))
    assert response.status_code == 200
    assert response.json()["data"]["stock"] == 7

    response = await client.post(url, json={"delta": 1}, headers=auth_headers("vendor-2", "vendor"))
    assert response.status_code == 403


async def test_webhook_processing_error_is_still_acknowledged(client, mocker):
    mocker.patch("marketplace.payments.PaymentService.process_webhook", side_effect=RuntimeError("boom"))
    raw, headers = signed(paid_event("pi_any"))

    response = await client.post("/webhooks/gateway", content=raw, headers=headers)

    assert response.status_code == 200
    assert response.json() == {"received": True}
