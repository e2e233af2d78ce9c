import pytest
from pydantic import ValidationError
from pymongo.errors import AutoReconnect, DuplicateKeyError

from shared.retry import with_database_retry
from shared.utils import DatabaseException

from marketplace.models import (
    CashInPayment, CheckoutPayment, RefundPayment, WithdrawPayment, can_transition, parse_payment,
)


async def test_stored_documents_parse_into_their_variant(db, seed):
    checkout_id = await seed.payment(amount=800)
    await db.payments.insert_many([
        RefundPayment(user_id="buyer-1", amount=100, original_payment_id=checkout_id).to_document(),
        CashInPayment(user_id="buyer-1", amount=500, fee=13).to_document(),
        WithdrawPayment(user_id="vendor-1", amount=100_000, fee=4500, bank_account={
            "account_number": "0012", "account_name": "Rice Farm", "bank_name": "BPI",
        }).to_document(),
    ])

    variants = {type(parse_payment(doc)) async for doc in db.payments.find({})}

    assert variants == {CheckoutPayment, RefundPayment, CashInPayment, WithdrawPayment}
    cash_in = parse_payment(await db.payments.find_one({"type": "cash_in"}))
    assert cash_in.net_amount == 487


def test_checkout_payment_needs_snapshot_or_order():
    with pytest.raises(ValidationError):
        CheckoutPayment(user_id="buyer-1", amount=100)
    assert CheckoutPayment(user_id="buyer-1", amount=100, order_id="o-1").order_id == "o-1"


def test_status_transitions():
    assert can_transition("awaiting_payment", "succeeded")
    assert can_transition("succeeded", "partially_refunded")
    assert not can_transition("succeeded", "failed")
    assert not can_transition("cancelled", "succeeded")
    assert not can_transition("refunded", "refunded")
    assert can_transition("expired", "succeeded")
    assert not can_transition("expired", "failed")


async def test_database_retry_recovers_from_transient_errors():
    calls = []

    async def flaky():
        calls.append(1)
        if len(calls) < 2:
            raise AutoReconnect("primary stepped down")
        return "ok"

    assert await with_database_retry(flaky) == "ok"
    assert len(calls) == 2


async def test_database_retry_gives_up_with_database_error():
    async def down():
        raise AutoReconnect("no primary")

    with pytest.raises(DatabaseException) as exc_info:
        await with_database_retry(down, max_attempts=2, name="insert payment")

    assert exc_info.value.status_code == 500
    assert "insert payment" in exc_info.value.detail


async def test_database_retry_does_not_retry_duplicates():
    calls = []

    async def duplicate():
        calls.append(1)
        raise DuplicateKeyError("E11000")

    with pytest.raises(DuplicateKeyError):
        await with_database_retry(duplicate)
    assert len(calls) == 1
