import logging
import re
import secrets
from datetime import datetime, timedelta
from typing import List, Optional

from pymongo.errors import DuplicateKeyError

from shared.cache import CacheInvalidator, NullCache, safe_invalidate
from shared.retry import with_database_retry
from shared.utils import (
    ConflictException, ForbiddenException, NotFoundException, ValidationException, settings, str_to_oid,
)

from marketplace.gateway import PaymentGateway, flatten_metadata, intent_status, latest_charge
from marketplace.materializer import OrderMaterializer
from marketplace.models import (
    CANCELLABLE_PAYMENT_STATUSES, FINAL_PAYMENT_STATUSES, BankAccount, CashInPayment, CheckoutPayment,
    CheckoutSnapshot, EscrowStatus, PaymentStatus, PaymentType, RefundPayment, WithdrawPayment, can_transition,
)

logger = logging.getLogger(__name__)

# Fees in basis points of the amount
QR_FEE_BP = 250
CHECKOUT_FEE_BP = 350
CASH_IN_FEE_BP = 250
WITHDRAW_FEE_BP = 200
WITHDRAW_FIXED_FEE = 2500

MIN_CASH_IN = 1
MAX_CASH_IN = 10_000_000
MIN_WITHDRAWAL = 100_000

REFUND_REASONS = {"duplicate", "fraudulent", "requested_by_customer", "others"}

GATEWAY_STATUS_MAP = {
    "awaiting_payment_method": PaymentStatus.AWAITING_PAYMENT,
    "awaiting_next_action": PaymentStatus.PROCESSING,
    "processing": PaymentStatus.PROCESSING,
    "succeeded": PaymentStatus.SUCCEEDED,
    "failed": PaymentStatus.FAILED,
    "cancelled": PaymentStatus.CANCELLED,
}

_OBJECT_ID = re.compile(r"^[0-9a-fA-F]{24}$")


def compute_fee(amount: int, basis_points: int, fixed: int = 0) -> int:
    return (amount * basis_points + 5000) // 10000 + fixed


def is_admin(user: dict) -> bool:
    return user.get("role") == "admin"


def validate_snapshot(snapshot: CheckoutSnapshot):
    if not snapshot.items:
        raise ValidationException("Checkout data with items is required")
    if not snapshot.customer_name:
        raise ValidationException("Customer name is required")
    if not snapshot.phone:
        raise ValidationException("Phone number is required")
    if not snapshot.shipping_address:
        raise ValidationException("Shipping address is required")
    for item in snapshot.items:
        if not item.vendor_id:
            raise ValidationException("Each item must have a vendor_id")
        if not item.product_id:
            raise ValidationException("Each item must have a product_id")
        if item.price <= 0:
            raise ValidationException("Each item must have a valid price")
        if item.quantity <= 0:
            raise ValidationException("Each item must have a valid quantity")


def qr_code_url(intent: dict) -> Optional[str]:
    next_action = (intent.get("attributes") or {}).get("next_action") or {}
    return (next_action.get("code") or {}).get("image_url")


class PaymentService:
    def __init__(self, db, gateway: PaymentGateway, materializer: OrderMaterializer = None,
                 cache: CacheInvalidator = None):
        self.db = db
        self.gateway = gateway
        self.cache = cache or NullCache()
        self.materializer = materializer or OrderMaterializer(db, cache=self.cache)

    # --- Lookups ---

    async def _get(self, payment_id: str) -> dict:
        payment = await self.db.payments.find_one({"_id": str_to_oid(payment_id)})
        if not payment:
            raise NotFoundException("Payment not found")
        return payment

    async def _resolve(self, identifier: str) -> dict:
        if _OBJECT_ID.match(identifier):
            payment = await self.db.payments.find_one({"_id": str_to_oid(identifier)})
        elif identifier.startswith("pi_"):
            payment = await self.db.payments.find_one({"payment_intent_id": identifier})
        else:
            raise ValidationException("Invalid payment identifier, expected a payment id or an intent id starting with 'pi_'")
        if not payment:
            raise NotFoundException("Payment not found")
        return payment

    @staticmethod
    def _authorize(payment: dict, user: dict):
        if payment["user_id"] != user["sub"] and not is_admin(user):
            raise ForbiddenException("Not authorized to access this payment")

    async def get_payment(self, payment_id: str, user: dict) -> dict:
        payment = await self._get(payment_id)
        self._authorize(payment, user)
        return payment

    async def list_user_payments(self, user_id: str, payment_type: Optional[str] = None, limit: int = 50) -> List[dict]:
        query = {"user_id": user_id}
        if payment_type:
            query["type"] = PaymentType(payment_type).value
        cursor = self.db.payments.find(query).sort("created_at", -1).limit(limit)
        return [doc async for doc in cursor]

    async def list_unmaterialized_payments(self, limit: int = 50) -> List[dict]:
        cursor = self.db.payments.find({
            "type": PaymentType.CHECKOUT.value,
            "status": PaymentStatus.SUCCEEDED.value,
            "checkout_data": {"$ne": None},
            "orders_created": False,
        }).sort("updated_at", 1).limit(limit)
        return [doc async for doc in cursor]

    # --- Creation ---

    async def _insert(self, payment) -> dict:
        doc = payment.to_document()
        result = await with_database_retry(lambda: self.db.payments.insert_one(doc))
        doc["_id"] = result.inserted_id
        return doc

    async def create_checkout_payment(self, user_id: str, checkout_data: CheckoutSnapshot,
                                      payment_method: str = "qrph", description: Optional[str] = None,
                                      metadata: Optional[dict] = None) -> dict:
        validate_snapshot(checkout_data)
        amount = checkout_data.items_total + checkout_data.shipping_fee
        if amount <= 0:
            raise ValidationException("Amount must be positive")

        raw_metadata = {
            **(metadata or {}),
            "user_id": user_id,
            "payment_method": payment_method,
            "order_type": "preorder",
            "item_count": len(checkout_data.items),
        }
        description = description or f"Marketplace checkout ({len(checkout_data.items)} items)"
        intent = await self.gateway.create_intent(amount, description, raw_metadata)

        method_id = None
        qr_url = None
        gateway_response = intent
        if payment_method == "qrph":
            method = await self.gateway.create_payment_method("qrph", {})
            method_id = method["id"]
            gateway_response = await self.gateway.attach_method(intent["id"], method_id)
            qr_url = qr_code_url(gateway_response)
            if not qr_url:
                logger.warning("No QR code URL in gateway response", extra={"payment_intent_id": intent["id"]})
            expires_at = datetime.utcnow() + timedelta(minutes=settings.QR_PAYMENT_EXPIRY_MINUTES)
            fee = compute_fee(amount, QR_FEE_BP)
        else:
            expires_at = datetime.utcnow() + timedelta(hours=settings.PAYMENT_EXPIRY_HOURS)
            fee = compute_fee(amount, CHECKOUT_FEE_BP)

        payment = CheckoutPayment(
            user_id=user_id,
            amount=amount,
            fee=fee,
            currency=settings.CURRENCY,
            status=PaymentStatus.AWAITING_PAYMENT,
            description=description,
            metadata=flatten_metadata(raw_metadata),
            idempotency_key=secrets.token_hex(16),
            payment_intent_id=intent["id"],
            payment_method_id=method_id,
            payment_method=payment_method,
            checkout_data=checkout_data,
            gateway_response=gateway_response,
            expires_at=expires_at,
        )
        doc = await self._insert(payment)
        logger.info(
            f"Checkout payment created for {amount}",
            extra={"payment_id": str(doc["_id"]), "payment_intent_id": intent["id"], "user_id": user_id},
        )
        return {
            "payment": doc,
            "qr_code_url": qr_url,
            "client_key": (intent.get("attributes") or {}).get("client_key"),
        }

    async def create_order_payment(self, user_id: str, order_id: str, description: Optional[str] = None,
                                   metadata: Optional[dict] = None) -> dict:
        order = await self.db.orders.find_one({"_id": str_to_oid(order_id)})
        if not order:
            raise NotFoundException("Order not found")
        if order["customer_id"] != user_id:
            raise ForbiddenException("Not authorized to pay for this order")

        paid = await self.db.payments.find_one({"order_id": order_id, "status": PaymentStatus.SUCCEEDED.value})
        if paid:
            raise ConflictException("Order has already been paid")

        amount = order.get("subtotal", 0) + order.get("shipping_fee", 0)
        raw_metadata = {**(metadata or {}), "user_id": user_id, "order_id": order_id}
        description = description or f"Payment for order {order_id}"
        intent = await self.gateway.create_intent(amount, description, raw_metadata)

        payment = CheckoutPayment(
            user_id=user_id,
            order_id=order_id,
            amount=amount,
            fee=compute_fee(amount, CHECKOUT_FEE_BP),
            currency=settings.CURRENCY,
            status=PaymentStatus.AWAITING_PAYMENT,
            description=description,
            metadata=flatten_metadata(raw_metadata),
            idempotency_key=secrets.token_hex(16),
            payment_intent_id=intent["id"],
            payment_method=order.get("payment_method") or "card",
            gateway_response=intent,
            expires_at=datetime.utcnow() + timedelta(hours=settings.PAYMENT_EXPIRY_HOURS),
        )
        doc = await self._insert(payment)
        logger.info("Order payment created", extra={"payment_id": str(doc["_id"]), "order_id": order_id})
        return {"payment": doc, "qr_code_url": None, "client_key": (intent.get("attributes") or {}).get("client_key")}

    async def create_cash_in(self, user_id: str, amount: int, payment_method: str = "gcash") -> dict:
        if amount < MIN_CASH_IN:
            raise ValidationException("Minimum cash-in amount is 0.01 PHP")
        if amount > MAX_CASH_IN:
            raise ValidationException("Maximum cash-in amount is 100,000 PHP")

        raw_metadata = {"user_id": user_id, "type": "cash_in", "payment_method": payment_method}
        intent = await self.gateway.create_intent(amount, "Wallet top-up", raw_metadata)
        payment = CashInPayment(
            user_id=user_id,
            amount=amount,
            fee=compute_fee(amount, CASH_IN_FEE_BP),
            currency=settings.CURRENCY,
            status=PaymentStatus.AWAITING_PAYMENT,
            description="Wallet top-up",
            metadata=flatten_metadata(raw_metadata),
            idempotency_key=secrets.token_hex(16),
            payment_intent_id=intent["id"],
            gateway_response=intent,
            expires_at=datetime.utcnow() + timedelta(hours=settings.PAYMENT_EXPIRY_HOURS),
        )
        doc = await self._insert(payment)
        logger.info("Cash-in created", extra={"payment_id": str(doc["_id"]), "user_id": user_id})
        return {"payment": doc, "qr_code_url": None, "client_key": (intent.get("attributes") or {}).get("client_key")}

    async def create_withdrawal(self, vendor_id: str, amount: int, bank_account: BankAccount) -> dict:
        if amount < MIN_WITHDRAWAL:
            raise ValidationException("Minimum withdrawal amount is 1,000 PHP")

        payment = WithdrawPayment(
            user_id=vendor_id,
            amount=amount,
            fee=compute_fee(amount, WITHDRAW_FEE_BP, WITHDRAW_FIXED_FEE),
            currency=settings.CURRENCY,
            status=PaymentStatus.PENDING,
            description="Vendor withdrawal",
            metadata={"vendor_id": vendor_id, "bank_name": bank_account.bank_name},
            idempotency_key=secrets.token_hex(16),
            bank_account=bank_account,
        )
        doc = await self._insert(payment)
        logger.info("Withdrawal recorded", extra={"payment_id": str(doc["_id"]), "vendor_id": vendor_id})
        return doc

    # --- State machine ---

    async def _transition(self, payment: dict, target: PaymentStatus, changes: Optional[dict] = None) -> bool:
        """Move `payment` to `target` only if nobody else moved it first."""
        current = payment["status"]
        if not can_transition(current, target.value):
            return False
        update = {"status": target.value, "updated_at": datetime.utcnow(), **(changes or {})}
        try:
            result = await self.db.payments.update_one({"_id": payment["_id"], "status": current}, {"$set": update})
        except DuplicateKeyError:
            raise ConflictException("Order has already been paid")
        applied = result.modified_count == 1
        if applied:
            logger.info(
                f"Payment status {current} -> {target.value}",
                extra={"payment_id": str(payment["_id"]), "payment_intent_id": payment.get("payment_intent_id")},
            )
        return applied

    async def apply_gateway_status(self, payment: dict, gateway_status: Optional[str],
                                   gateway_data: Optional[dict] = None, charge_id: Optional[str] = None) -> dict:
        """
        Reconcile a payment with the status the gateway reports.

        Success triggers order materialization (snapshot checkouts) or marks the
        linked order paid (single-order checkouts). Both are retried on every
        observation until they stick.
        """
        target = GATEWAY_STATUS_MAP.get(gateway_status or "")
        if target and target.value != payment["status"]:
            changes = {"gateway_response": gateway_data} if gateway_data else {}
            if target == PaymentStatus.SUCCEEDED:
                charge = latest_charge(gateway_data or {})
                changes.update({
                    "paid_at": datetime.utcnow(),
                    "is_final": True,
                    "charge_id": charge_id or (charge or {}).get("id") or payment.get("charge_id"),
                })
            elif target == PaymentStatus.FAILED:
                error = ((gateway_data or {}).get("attributes") or {}).get("last_payment_error") or {}
                changes.update({"is_final": True, "failure_reason": (error.get("message") or "Payment failed")[:1000]})
            elif target == PaymentStatus.CANCELLED:
                changes.update({"is_final": True, "cancelled_at": datetime.utcnow()})
            await self._transition(payment, target, changes)

        payment = await self._get(str(payment["_id"]))
        if payment["status"] == PaymentStatus.SUCCEEDED.value:
            await self._on_success(payment)
            payment = await self._get(str(payment["_id"]))
        return payment

    async def _on_success(self, payment: dict):
        if payment.get("type") != PaymentType.CHECKOUT.value:
            return
        if payment.get("checkout_data") and not payment.get("orders_created"):
            try:
                await self.materializer.materialize(str(payment["_id"]))
            except Exception as exc:
                # left for the next observation or admin recovery
                logger.error(
                    "Order materialization failed",
                    extra={"payment_id": str(payment["_id"]), "error": str(exc)},
                )
        elif payment.get("order_id"):
            await self._mark_order_paid(payment)

    async def _mark_order_paid(self, payment: dict):
        now = datetime.utcnow()
        result = await self.db.orders.update_one(
            {"_id": str_to_oid(payment["order_id"]), "payment_status": {"$ne": "Paid"}},
            {"$set": {
                "payment_status": "Paid",
                "paid_at": now,
                "payment_id": str(payment["_id"]),
                "status": "paid",
                "escrow_status": EscrowStatus.HELD.value,
                "escrow_held_at": now,
                "updated_at": now,
            }},
        )
        if result.modified_count:
            order = await self.db.orders.find_one({"_id": str_to_oid(payment["order_id"])}, {"vendor_id": 1})
            await safe_invalidate(self.cache, [
                f"orders:{payment['order_id']}",
                f"orders:user:{payment['user_id']}",
                f"orders:vendor:{(order or {}).get('vendor_id', '')}",
                "admin:dashboard_stats",
            ])
            logger.info("Order marked paid", extra={"payment_id": str(payment["_id"]), "order_id": payment["order_id"]})

    async def attach_payment_method(self, user_id: str, intent_id: str, method_id: str,
                                    return_url: Optional[str] = None) -> dict:
        payment = await self.db.payments.find_one({"payment_intent_id": intent_id, "user_id": user_id})
        if not payment:
            raise NotFoundException("Payment not found")
        if payment["status"] == PaymentStatus.SUCCEEDED.value:
            raise ConflictException("Payment has already succeeded")
        if PaymentStatus(payment["status"]) in FINAL_PAYMENT_STATUSES:
            raise ValidationException(f"Cannot attach a payment method to a {payment['status']} payment")

        intent = await self.gateway.attach_method(intent_id, method_id, return_url)
        await self.db.payments.update_one(
            {"_id": payment["_id"]}, {"$set": {"payment_method_id": method_id, "updated_at": datetime.utcnow()}}
        )
        if payment["status"] != PaymentStatus.PROCESSING.value:
            await self._transition(payment, PaymentStatus.PROCESSING, {"gateway_response": intent})
        return {
            "payment": await self._get(str(payment["_id"])),
            "next_action": (intent.get("attributes") or {}).get("next_action"),
        }

    async def check_payment_status(self, identifier: str, user: dict) -> dict:
        payment = await self._resolve(identifier)
        self._authorize(payment, user)
        intent_id = payment.get("payment_intent_id")
        if not intent_id:
            raise ValidationException("Payment record does not have a gateway payment intent")

        intent = await self.gateway.retrieve(intent_id)
        return await self.apply_gateway_status(payment, intent_status(intent), intent)

    async def cancel_payment(self, payment_id: str, user: dict) -> dict:
        payment = await self._get(payment_id)
        self._authorize(payment, user)
        current = PaymentStatus(payment["status"])
        if current in FINAL_PAYMENT_STATUSES:
            raise ConflictException(f"Payment is already {current.value}")
        if current not in CANCELLABLE_PAYMENT_STATUSES:
            raise ValidationException(f"Cannot cancel a {current.value} payment")

        if payment.get("payment_intent_id"):
            try:
                await self.gateway.cancel_intent(payment["payment_intent_id"])
            except Exception as exc:
                logger.warning("Gateway cancel failed", extra={"payment_id": payment_id, "error": str(exc)})

        applied = await self._transition(
            payment, PaymentStatus.CANCELLED, {"is_final": True, "cancelled_at": datetime.utcnow()}
        )
        if not applied:
            raise ConflictException("Payment status changed, retry the request")
        return await self._get(payment_id)

    async def validate_refund(self, payment_id: str, amount: Optional[int] = None):
        """Check refund eligibility and the cumulative cap; returns (original, amount, charge_id)."""
        original = await self._get(payment_id)
        if original.get("type") != PaymentType.CHECKOUT.value:
            raise ValidationException("Only checkout payments can be refunded")
        if original["status"] not in (PaymentStatus.SUCCEEDED.value, PaymentStatus.PARTIALLY_REFUNDED.value):
            raise ValidationException("Only succeeded payments can be refunded")

        refund_amount = amount if amount is not None else original["amount"]
        if refund_amount <= 0:
            raise ValidationException("Refund amount must be positive")
        already = original.get("refunded_amount", 0)
        if already + refund_amount > original["amount"]:
            raise ValidationException("Total refund amount would exceed original payment")

        charge_id = original.get("charge_id") or (latest_charge(original.get("gateway_response") or {}) or {}).get("id")
        if not charge_id:
            raise ValidationException("Original payment does not have a valid gateway payment ID")
        return original, refund_amount, charge_id

    async def create_refund(self, payment_id: str, amount: Optional[int] = None, reason: str = "requested_by_customer",
                            requested_by: Optional[str] = None, order_id: Optional[str] = None,
                            metadata: Optional[dict] = None) -> dict:
        original, refund_amount, charge_id = await self.validate_refund(payment_id, amount)

        reserved = await self.db.payments.update_one(
            {"_id": original["_id"], "refunded_amount": {"$lte": original["amount"] - refund_amount}},
            {"$inc": {"refunded_amount": refund_amount}, "$set": {"updated_at": datetime.utcnow()}},
        )
        if reserved.modified_count != 1:
            raise ValidationException("Total refund amount would exceed original payment")

        reason_code = reason if reason in REFUND_REASONS else "others"
        raw_metadata = {
            **(metadata or {}),
            "original_payment_id": payment_id,
            "refund_reason": reason,
            "requested_by": requested_by,
            "notes": reason if reason_code == "others" else None,
        }
        try:
            result = await self.gateway.refund(charge_id, refund_amount, reason_code, raw_metadata)
        except Exception:
            await self.db.payments.update_one(
                {"_id": original["_id"]}, {"$inc": {"refunded_amount": -refund_amount}}
            )
            logger.error("Gateway refund failed, reservation released", extra={"payment_id": payment_id})
            raise

        refund = RefundPayment(
            user_id=original["user_id"],
            original_payment_id=payment_id,
            order_id=order_id or original.get("order_id"),
            provider=original.get("provider", "paymongo"),
            amount=refund_amount,
            fee=0,
            currency=original.get("currency", settings.CURRENCY),
            status=PaymentStatus.PROCESSING,
            description=f"Refund for payment {payment_id}",
            metadata=flatten_metadata(raw_metadata),
            idempotency_key=secrets.token_hex(16),
            refund_id=result.get("id"),
            gateway_response=result,
        )
        doc = await self._insert(refund)

        refreshed = await self._get(payment_id)
        target = PaymentStatus.REFUNDED if refreshed["refunded_amount"] >= original["amount"] else PaymentStatus.PARTIALLY_REFUNDED
        await self.db.payments.update_one(
            {"_id": original["_id"], "status": {"$in": [PaymentStatus.SUCCEEDED.value, PaymentStatus.PARTIALLY_REFUNDED.value]}},
            {"$set": {"status": target.value, "refunded_at": datetime.utcnow(), "is_final": True}},
        )
        logger.info(
            f"Refund of {refund_amount} created",
            extra={"payment_id": payment_id, "order_id": refund.order_id, "user_id": requested_by},
        )
        return doc

    # --- Reconciliation triggers ---

    async def process_webhook(self, payload: dict) -> Optional[dict]:
        """Apply a verified gateway event. Unknown payments and events are ignored."""
        attributes = (payload.get("data") or {}).get("attributes") or {}
        event_type = attributes.get("type")
        resource = attributes.get("data") or {}
        resource_id = resource.get("id")
        resource_attributes = resource.get("attributes") or {}
        intent_id = resource_attributes.get("payment_intent_id") or (resource_attributes.get("payment_intent") or {}).get("id")

        logger.info("Processing webhook", extra={"event_type": event_type, "payment_intent_id": intent_id})

        payment = None
        if intent_id:
            payment = await self.db.payments.find_one({"payment_intent_id": intent_id})
        if not payment and resource_id:
            payment = await self.db.payments.find_one({"charge_id": resource_id})
        if not payment:
            logger.warning("Payment not found for webhook", extra={"payment_intent_id": intent_id, "event_type": event_type})
            return None

        marks = {"webhook_received": True, "webhook_received_at": datetime.utcnow()}
        if intent_id and not payment.get("payment_intent_id"):
            marks["payment_intent_id"] = intent_id
        await self.db.payments.update_one({"_id": payment["_id"]}, {"$set": marks})
        payment.update(marks)

        if event_type == "payment.paid":
            return await self.apply_gateway_status(payment, "succeeded", resource, charge_id=resource_id)
        if event_type == "payment.failed":
            failed = {"attributes": {"last_payment_error": resource_attributes.get("last_payment_error") or {}}}
            return await self.apply_gateway_status(payment, "failed", failed)
        if event_type == "payment.refunded":
            await self._transition(payment, PaymentStatus.REFUNDED, {"refunded_at": datetime.utcnow(), "is_final": True})
            return await self._get(str(payment["_id"]))

        logger.info("Unhandled webhook event type", extra={"event_type": event_type})
        return payment

    async def recover_orders(self, payment_id: str) -> List[str]:
        payment = await self._get(payment_id)
        if payment["status"] != PaymentStatus.SUCCEEDED.value:
            raise ValidationException("Payment has not succeeded yet")
        if payment.get("orders_created"):
            raise ConflictException("Orders have already been created for this payment")
        if not (payment.get("checkout_data") or {}).get("items"):
            raise ValidationException("No checkout data found in payment")
        return await self.materializer.materialize(payment_id)
