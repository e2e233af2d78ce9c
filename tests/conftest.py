import json
import os
import re
from datetime import datetime

os.environ.setdefault("RATE_LIMIT_ENABLED", "false")
os.environ.setdefault("SWEEP_ENABLED", "false")

import httpx
import pytest
from bson import ObjectId
from mongomock_motor import AsyncMongoMockClient

from shared.cache import InMemoryCache
from shared.utils import create_access_token

from marketplace.gateway import PaymentGateway
from marketplace.models import CheckoutPayment, CheckoutSnapshot, PaymentStatus

WEBHOOK_SECRET = "whsec_test"


class GatewayStub:
    """In-process stand-in for the PayMongo API, served through httpx.MockTransport."""

    def __init__(self):
        self.requests = []
        self.intent_status = "awaiting_payment_method"
        self.fail_refunds = False
        self.intents = 0

    def calls(self, method=None, path_prefix=""):
        return [
            (m, p, body) for m, p, body in self.requests
            if (method is None or m == method) and p.startswith(path_prefix)
        ]

    def handler(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content) if request.content else {}
        path = request.url.path
        self.requests.append((request.method, path, body))

        if request.method == "POST" and path == "/payment_intents":
            self.intents += 1
            return self._data(f"pi_test_{self.intents}", {"status": "awaiting_payment_method", "client_key": "ck_test"})
        if request.method == "POST" and path == "/payment_methods":
            return self._data("pm_test_1", {"type": body["data"]["attributes"]["type"]})
        match = re.match(r"^/payment_intents/([^/]+)/attach$", path)
        if match:
            return self._data(match.group(1), {
                "status": "awaiting_next_action",
                "next_action": {"type": "consume_qr", "code": {"image_url": "https://qr.test/code.png"}},
            })
        match = re.match(r"^/payment_intents/([^/]+)/cancel$", path)
        if match:
            return self._data(match.group(1), {"status": "cancelled"})
        match = re.match(r"^/payment_intents/([^/]+)$", path)
        if match and request.method == "GET":
            attributes = {"status": self.intent_status, "payments": []}
            if self.intent_status == "succeeded":
                attributes["payments"] = [{"id": "pay_test_1", "attributes": {"status": "paid"}}]
            if self.intent_status == "failed":
                attributes["last_payment_error"] = {"message": "Card declined"}
            return self._data(match.group(1), attributes)
        if request.method == "POST" and path == "/refunds":
            if self.fail_refunds:
                return httpx.Response(400, json={"errors": [{"code": "parameter_invalid", "detail": "Refund rejected"}]})
            return self._data("ref_test_1", {"status": "pending", "amount": body["data"]["attributes"]["amount"]})
        return httpx.Response(404, json={"errors": [{"detail": f"Unknown path {path}"}]})

    @staticmethod
    def _data(resource_id, attributes):
        return httpx.Response(200, json={"data": {"id": resource_id, "attributes": attributes}})


class Seeder:
    def __init__(self, db):
        self.db = db
        self.product_ids = {}

    async def catalog(self):
        for key, vendor_id, stock in (("rice", "vendor-1", 10), ("mango", "vendor-2", 5)):
            result = await self.db.products.insert_one({
                "vendor_id": vendor_id, "name": key.title(), "stock": stock, "sold": 0, "version": 0, "options": [],
            })
            self.product_ids[key] = str(result.inserted_id)
        await self.db.vendors.insert_many([
            {"user_id": "vendor-1", "store_name": "Rice Farm", "balance": 0, "total_revenue": 0, "total_orders": 0,
             "current_monthly_revenue": 0, "monthly_revenue": []},
            {"user_id": "vendor-2", "store_name": "Mango Grove", "balance": 0, "total_revenue": 0, "total_orders": 0,
             "current_monthly_revenue": 0, "monthly_revenue": []},
        ])
        return self.product_ids

    def snapshot(self, shipping_fee=0, items=None) -> CheckoutSnapshot:
        if items is None:
            items = [
                {"vendor_id": "vendor-1", "product_id": self.product_ids.get("rice", str(ObjectId())),
                 "name": "Rice", "price": 100, "quantity": 2},
                {"vendor_id": "vendor-2", "product_id": self.product_ids.get("mango", str(ObjectId())),
                 "name": "Mango", "price": 50, "quantity": 1},
            ]
        return CheckoutSnapshot(
            items=items,
            customer_name="Juan Dela Cruz",
            phone="09171234567",
            shipping_address={"street": "1 Rizal St", "city": "Iloilo", "province": "Iloilo", "zip_code": "5000"},
            shipping_fee=shipping_fee,
        )

    async def payment(self, status=PaymentStatus.SUCCEEDED, amount=None, snapshot=None, **fields) -> str:
        snapshot = snapshot or self.snapshot()
        payment = CheckoutPayment(
            user_id=fields.pop("user_id", "buyer-1"),
            amount=amount if amount is not None else snapshot.items_total + snapshot.shipping_fee,
            status=status,
            checkout_data=snapshot,
            payment_intent_id=fields.pop("payment_intent_id", f"pi_seed_{ObjectId()}"),
            charge_id=fields.pop("charge_id", "pay_test_1"),
            paid_at=datetime.utcnow() if status == PaymentStatus.SUCCEEDED else None,
            **fields,
        )
        result = await self.db.payments.insert_one(payment.to_document())
        return str(result.inserted_id)

    async def order(self, escrow_status="held", customer_id="buyer-1", vendor_id="vendor-1", subtotal=200,
                    payment_id=None, payment_method="qrph") -> str:
        result = await self.db.orders.insert_one({
            "customer_id": customer_id,
            "vendor_id": vendor_id,
            "items": [{"product_id": str(ObjectId()), "name": "Rice", "price": subtotal, "quantity": 1}],
            "subtotal": subtotal,
            "shipping_fee": 0,
            "payment_id": payment_id,
            "payment_method": payment_method,
            "payment_status": "Paid" if escrow_status else "Pending",
            "status": "paid" if escrow_status else "pending",
            "escrow_status": escrow_status,
            "created_at": datetime.utcnow(),
            "updated_at": datetime.utcnow(),
        })
        return str(result.inserted_id)


@pytest.fixture
def db():
    return AsyncMongoMockClient()["marketplace_test"]


@pytest.fixture
def cache():
    return InMemoryCache()


@pytest.fixture
def gateway_stub():
    return GatewayStub()


@pytest.fixture
def gateway(gateway_stub):
    return PaymentGateway(
        secret_key="sk_test",
        webhook_secret=WEBHOOK_SECRET,
        base_url="https://gateway.test",
        base_delay=0,
        max_delay=0,
        transport=httpx.MockTransport(gateway_stub.handler),
    )


@pytest.fixture
def seed(db):
    return Seeder(db)


def bearer(sub, role="user"):
    return {"Authorization": f"Bearer {create_access_token({'sub': sub, 'role': role})}"}


@pytest.fixture
def auth_headers():
    return bearer
