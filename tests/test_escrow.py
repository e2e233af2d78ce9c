import pytest
from bson import ObjectId

from shared.utils import ForbiddenException, NotFoundException, ValidationException

from marketplace.escrow import EscrowService
from marketplace.gateway import PaymentGatewayError
from marketplace.payments import PaymentService


@pytest.fixture
def escrow(db, gateway, cache):
    return EscrowService(db, PaymentService(db, gateway, cache=cache), cache)


async def load_order(db, order_id):
    return await db.orders.find_one({"_id": ObjectId(order_id)})


async def test_release_credits_vendor_and_audits(escrow, db, seed, cache):
    await seed.catalog()
    order_id = await seed.order(subtotal=200)

    order = await escrow.release(order_id, "admin-1", "delivered")

    assert order["escrow_status"] == "released"
    assert order["escrow_released_by"] == "admin-1"
    vendor = await db.vendors.find_one({"user_id": "vendor-1"})
    assert vendor["balance"] == 200
    log = await db.audit_logs.find_one({"resource_id": order_id})
    assert log["action"] == "escrow.release"
    assert log["actor_id"] == "admin-1"
    assert f"orders:{order_id}" in cache.invalidated


async def test_release_twice_is_rejected_and_credits_once(escrow, db, seed):
    await seed.catalog()
    order_id = await seed.order(subtotal=200)
    await escrow.release(order_id, "admin-1")

    with pytest.raises(ValidationException) as exc_info:
        await escrow.release(order_id, "admin-1")

    assert exc_info.value.detail == "Payment is not held in escrow"
    assert (await db.vendors.find_one({"user_id": "vendor-1"}))["balance"] == 200


async def test_unknown_order(escrow):
    with pytest.raises(NotFoundException):
        await escrow.release(str(ObjectId()), "admin-1")


async def test_hold_requires_reason_and_hides_from_pending(escrow, seed):
    order_id = await seed.order()
    other_id = await seed.order()

    with pytest.raises(ValidationException):
        await escrow.hold(order_id, "admin-1", "  ")

    order = await escrow.hold(order_id, "admin-1", "fraud review")
    assert order["on_hold"] is True
    assert order["escrow_status"] == "held"

    pending = [view["order_id"] for view in await escrow.list_pending_releases()]
    assert pending == [other_id]


async def test_refund_request_flow_and_approval(escrow, db, seed):
    payment_id = await seed.payment(amount=250)
    order_id = await seed.order(subtotal=200, payment_id=payment_id)

    order = await escrow.request_refund(order_id, "buyer-1", "damaged", "box was crushed")
    assert order["escrow_status"] == "refund_requested"
    assert [view["order_id"] for view in await escrow.list_pending_refunds()] == [order_id]

    order = await escrow.approve_refund(order_id, "admin-1")

    assert order["escrow_status"] == "refunded"
    assert order["refund_approved_by"] == "admin-1"
    refund = await db.payments.find_one({"_id": ObjectId(order["refund_payment_id"])})
    assert refund["amount"] == 200
    assert refund["order_id"] == order_id
    original = await db.payments.find_one({"_id": ObjectId(payment_id)})
    assert original["status"] == "partially_refunded"
    stats = await db.platform_stats.find_one({"_id": "orders"})
    assert stats["pending_refunds"] == 0
    assert stats["total_refunds"] == 1


async def test_failed_refund_reverts_escrow(escrow, db, seed, gateway_stub):
    payment_id = await seed.payment(amount=250)
    order_id = await seed.order(subtotal=200, payment_id=payment_id)
    await escrow.request_refund(order_id, "buyer-1", "damaged")
    gateway_stub.fail_refunds = True

    with pytest.raises(PaymentGatewayError):
        await escrow.approve_refund(order_id, "admin-1")

    order = await load_order(db, order_id)
    assert order["escrow_status"] == "refund_requested"
    assert "refund_approved_by" not in order


async def test_refund_over_payment_leaves_order_untouched(escrow, db, seed, gateway_stub):
    payment_id = await seed.payment(amount=800)
    order_id = await seed.order(subtotal=1000, payment_id=payment_id)
    await escrow.request_refund(order_id, "buyer-1", "damaged")
    before = await load_order(db, order_id)

    with pytest.raises(ValidationException) as exc_info:
        await escrow.approve_refund(order_id, "admin-1", "approved by support")

    assert exc_info.value.detail == "Total refund amount would exceed original payment"
    assert await load_order(db, order_id) == before
    assert gateway_stub.calls("POST", "/refunds") == []
    assert await db.audit_logs.count_documents({"resource_id": order_id}) == 0


async def test_approving_without_pending_request_is_rejected(escrow, db, seed):
    payment_id = await seed.payment(amount=250)
    order_id = await seed.order(subtotal=200, payment_id=payment_id)

    with pytest.raises(ValidationException) as exc_info:
        await escrow.approve_refund(order_id, "admin-1")

    assert exc_info.value.detail == "No refund request pending"
    assert (await load_order(db, order_id))["escrow_status"] == "held"


async def test_only_customer_may_request_refund(escrow, seed):
    order_id = await seed.order()
    with pytest.raises(ForbiddenException):
        await escrow.request_refund(order_id, "buyer-2", "damaged")


async def test_refund_request_needs_held_escrow(escrow, seed):
    order_id = await seed.order(escrow_status="released")
    with pytest.raises(ValidationException) as exc_info:
        await escrow.request_refund(order_id, "buyer-1", "damaged")
    assert exc_info.value.detail == "Cannot request refund - payment not in escrow"


async def test_reject_refund_returns_to_held(escrow, seed):
    order_id = await seed.order()
    await escrow.request_refund(order_id, "buyer-1", "late")

    with pytest.raises(ValidationException):
        await escrow.reject_refund(order_id, "admin-1", None)

    order = await escrow.reject_refund(order_id, "admin-1", "delivered on time")
    assert order["escrow_status"] == "held"
    assert order["refund_rejection_reason"] == "delivered on time"


async def test_cancel_refund_request(escrow, db, seed):
    order_id = await seed.order()
    await escrow.request_refund(order_id, "buyer-1", "changed my mind")

    order = await escrow.cancel_refund_request(order_id, "buyer-1")

    assert order["escrow_status"] == "held"
    assert "refund_requested_by" not in order
    with pytest.raises(ValidationException):
        await escrow.cancel_refund_request(order_id, "buyer-1")


async def test_bulk_release_reports_per_order_outcome(escrow, seed):
    await seed.catalog()
    held = await seed.order()
    released = await seed.order(escrow_status="released")
    missing = str(ObjectId())

    result = await escrow.bulk_release([held, released, missing], "admin-1")

    assert result["total_processed"] == 3
    assert result["success_count"] == 1
    assert result["successful"] == [held]
    assert result["failed_count"] == 2
    assert {entry["order_id"] for entry in result["failed"]} == {released, missing}


async def test_escrow_status_visibility(escrow, seed):
    order_id = await seed.order()

    view = await escrow.get_escrow_status(order_id, {"sub": "vendor-1", "role": "vendor"})
    assert view["escrow_status"] == "held"
    assert view["order_id"] == order_id

    await escrow.get_escrow_status(order_id, {"sub": "admin-9", "role": "admin"})
    with pytest.raises(ForbiddenException):
        await escrow.get_escrow_status(order_id, {"sub": "stranger", "role": "user"})
