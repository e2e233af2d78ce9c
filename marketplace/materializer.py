"""
Turns one succeeded checkout payment into per-vendor orders, exactly once.

The payment document doubles as an advisory lock: `order_creation_error` holds
the "in_progress" sentinel while a worker materializes, and a sentinel older
than the stale-lock window may be taken over by another worker.
"""
import logging
import secrets
import time
from collections import OrderedDict
from datetime import datetime, timedelta
from typing import Dict, List

from fastapi import status
from pymongo.errors import DuplicateKeyError

from shared.cache import CacheInvalidator, NullCache, safe_invalidate
from shared.retry import with_database_retry
from shared.utils import AppException, NotFoundException, ValidationException, settings, str_to_oid

from marketplace.inventory import InventoryLedger
from marketplace.models import (
    ORDER_CREATION_IN_PROGRESS, CheckoutItem, CheckoutSnapshot, EscrowStatus, OrderDB, OrderItemDB,
    PaymentStatus, PaymentType,
)
from marketplace.revenue import record_vendor_sale

logger = logging.getLogger(__name__)


class MaterializationError(AppException):
    error_type = "MATERIALIZATION_ERROR"

    def __init__(self, detail: str = "Failed to create any orders from payment"):
        super().__init__(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=detail)


def generate_tracking_number() -> str:
    return f"DSTRK{int(time.time() * 1000)}{secrets.token_hex(4).upper()}"


def materialization_key(payment_id: str, vendor_id: str) -> str:
    return f"{payment_id}:{vendor_id}"


def group_by_vendor(items: List[CheckoutItem]) -> Dict[str, List[CheckoutItem]]:
    groups: Dict[str, List[CheckoutItem]] = OrderedDict()
    for item in items:
        if not item.vendor_id:
            logger.warning(f"Item {item.product_id or item.name!r} has no vendor, skipping")
            continue
        groups.setdefault(item.vendor_id, []).append(item)
    return groups


def order_cache_keys(customer_id: str, vendor_ids, order_ids, product_ids) -> List[str]:
    keys = [f"orders:user:{customer_id}"]
    keys += [f"orders:vendor:{vendor_id}" for vendor_id in vendor_ids]
    keys += [f"orders:{order_id}" for order_id in order_ids]
    keys += [f"orders:product:{product_id}" for product_id in product_ids]
    keys.append("admin:dashboard_stats")
    return keys


class OrderMaterializer:
    def __init__(self, db, inventory: InventoryLedger = None, cache: CacheInvalidator = None,
                 stale_lock_minutes: int = settings.STALE_LOCK_MINUTES):
        self.db = db
        self.cache = cache or NullCache()
        self.inventory = inventory or InventoryLedger(db, self.cache)
        self.stale_lock_minutes = stale_lock_minutes

    async def materialize(self, payment_id: str) -> List[str]:
        """
        Create the orders for a succeeded checkout payment and return their ids.

        Replays return the stored ids without side effects. Stock and vendor
        sales are applied once per vendor, including for orders an interrupted
        attempt left behind. A caller that loses the lock gets whatever ids are
        stored at that moment, possibly none.
        """
        oid = str_to_oid(payment_id)
        payment = await with_database_retry(lambda: self.db.payments.find_one({"_id": oid}))
        if not payment:
            raise NotFoundException("Payment not found")
        if payment.get("orders_created"):
            return payment.get("order_ids", [])
        if payment.get("type") != PaymentType.CHECKOUT.value:
            raise ValidationException("Only checkout payments create orders")
        if payment.get("status") != PaymentStatus.SUCCEEDED.value:
            raise ValidationException("Payment has not succeeded")
        if not payment.get("checkout_data"):
            raise ValidationException("No checkout data found in payment")

        if not await self._acquire_lock(oid):
            current = await self.db.payments.find_one({"_id": oid}, {"order_ids": 1, "orders_created": 1})
            logger.info("Order creation already in progress", extra={"payment_id": payment_id})
            return (current or {}).get("order_ids") or []

        try:
            return await self._create_orders(payment)
        except Exception as exc:
            logger.error("Error creating orders from payment", extra={"payment_id": payment_id, "error": str(exc)})
            await self._release_lock(oid, getattr(exc, "detail", None) or str(exc) or exc.__class__.__name__)
            raise

    async def _acquire_lock(self, oid) -> bool:
        now = datetime.utcnow()
        stale_before = now - timedelta(minutes=self.stale_lock_minutes)
        result = await with_database_retry(lambda: self.db.payments.update_one(
            {
                "_id": oid,
                "orders_created": False,
                "$or": [
                    {"order_creation_error": {"$ne": ORDER_CREATION_IN_PROGRESS}},
                    {"updated_at": {"$lt": stale_before}},
                ],
            },
            {"$set": {"order_creation_error": ORDER_CREATION_IN_PROGRESS, "updated_at": now}},
        ))
        return result.modified_count == 1

    async def _release_lock(self, oid, error: str):
        try:
            await self.db.payments.update_one(
                {"_id": oid, "orders_created": False, "order_creation_error": ORDER_CREATION_IN_PROGRESS},
                {"$set": {"order_creation_error": error, "updated_at": datetime.utcnow()}},
            )
        except Exception as exc:
            logger.error("Failed to release order creation lock", extra={"error": str(exc)})

    async def _create_orders(self, payment: dict) -> List[str]:
        payment_id = str(payment["_id"])
        customer_id = payment["user_id"]
        snapshot = CheckoutSnapshot(**payment["checkout_data"])
        if not snapshot.items:
            raise ValidationException("No items found in checkout data")

        groups = group_by_vendor(snapshot.items)
        if not groups:
            raise ValidationException("No valid items with vendor_id found")

        paid_at = payment.get("paid_at") or datetime.utcnow()
        order_ids: List[str] = []
        failed_vendor_ids: List[str] = []
        materialized = []

        for vendor_id, items in groups.items():
            try:
                order_id = await self._create_vendor_order(payment, snapshot, vendor_id, items, paid_at)
            except Exception as exc:
                logger.error(
                    "Failed to create order for vendor",
                    extra={"payment_id": payment_id, "vendor_id": vendor_id, "error": str(exc)},
                )
                failed_vendor_ids.append(vendor_id)
                continue
            order_ids.append(order_id)
            materialized.append((vendor_id, items))

        applied = set(payment.get("side_effects_vendor_ids") or [])
        pending = [(vendor_id, items) for vendor_id, items in materialized if vendor_id not in applied]
        for vendor_id, items in pending:
            await self._apply_side_effects(payment["_id"], vendor_id, items)

        if not order_ids:
            await self.db.payments.update_one(
                {"_id": payment["_id"]},
                {"$set": {"order_creation_error": "Failed to create any orders from payment",
                          "failed_vendor_ids": failed_vendor_ids, "updated_at": datetime.utcnow()}},
            )
            raise MaterializationError()

        await with_database_retry(lambda: self.db.payments.update_one(
            {"_id": payment["_id"]},
            {"$set": {
                "orders_created": True,
                "order_ids": order_ids,
                "order_creation_error": None,
                "failed_vendor_ids": failed_vendor_ids,
                "updated_at": datetime.utcnow(),
            }},
        ))
        logger.info(
            f"Created {len(order_ids)} orders from payment",
            extra={"payment_id": payment_id, "order_ids": order_ids},
        )

        product_ids = {item.product_id for items in groups.values() for item in items if item.product_id}
        await safe_invalidate(self.cache, order_cache_keys(customer_id, groups.keys(), order_ids, product_ids))
        await self._bump_platform_stats(len(pending))
        return order_ids

    async def _create_vendor_order(self, payment: dict, snapshot: CheckoutSnapshot, vendor_id: str,
                                   items: List[CheckoutItem], paid_at: datetime):
        """Return the vendor's order id; an order left by an earlier attempt is reused."""
        payment_id = str(payment["_id"])
        key = materialization_key(payment_id, vendor_id)
        existing = await self.db.orders.find_one({"materialization_key": key}, {"_id": 1})
        if existing:
            await self._mark_vendor_done(payment["_id"], vendor_id)
            return str(existing["_id"])

        order = OrderDB(
            customer_id=payment["user_id"],
            vendor_id=vendor_id,
            items=[
                OrderItemDB(
                    product_id=item.product_id,
                    option_id=item.option_id,
                    name=item.name,
                    label=item.label,
                    img_url=item.img_url,
                    price=item.price,
                    quantity=item.quantity,
                )
                for item in items
            ],
            customer_name=snapshot.customer_name or "",
            phone=snapshot.phone,
            shipping_address=snapshot.shipping_address,
            shipping_option=snapshot.shipping_option or "J&T",
            shipping_fee=snapshot.shipping_fee or 0,
            agreement_details=snapshot.agreement_details or "",
            subtotal=sum(item.line_total for item in items),
            tracking_number=generate_tracking_number(),
            payment_id=payment_id,
            payment_method=payment.get("payment_method") or "qrph",
            payment_status="Paid",
            paid_at=paid_at,
            status="paid",
            escrow_status=EscrowStatus.HELD,
            escrow_held_at=datetime.utcnow(),
            materialization_key=key,
        )
        try:
            result = await with_database_retry(
                lambda: self.db.orders.insert_one(order.model_dump(by_alias=True, exclude={"id"}))
            )
        except DuplicateKeyError:
            existing = await self.db.orders.find_one({"materialization_key": key}, {"_id": 1})
            await self._mark_vendor_done(payment["_id"], vendor_id)
            return str(existing["_id"])

        await self._mark_vendor_done(payment["_id"], vendor_id)
        logger.info(
            f"Order created with subtotal {order.subtotal}",
            extra={"payment_id": payment_id, "vendor_id": vendor_id, "order_id": str(result.inserted_id)},
        )
        return str(result.inserted_id)

    async def _mark_vendor_done(self, payment_oid, vendor_id: str):
        await self.db.payments.update_one(
            {"_id": payment_oid}, {"$addToSet": {"materialized_vendor_ids": vendor_id}}
        )

    async def _apply_side_effects(self, payment_oid, vendor_id: str, items: List[CheckoutItem]):
        for item in items:
            if not item.product_id:
                continue
            try:
                await self.inventory.reserve(item.product_id, item.quantity, item.option_id)
            except Exception as exc:
                logger.warning(
                    "Inventory reservation failed",
                    extra={"product_id": item.product_id, "option_id": item.option_id, "error": str(exc)},
                )
        await record_vendor_sale(self.db, vendor_id, sum(item.line_total for item in items))
        await self.db.payments.update_one(
            {"_id": payment_oid}, {"$addToSet": {"side_effects_vendor_ids": vendor_id}}
        )

    async def _bump_platform_stats(self, count: int):
        if not count:
            return
        try:
            await self.db.platform_stats.update_one(
                {"_id": "orders"},
                {"$inc": {"total_orders": count, "new_orders_count": count}},
                upsert=True,
            )
        except Exception as exc:
            logger.error("Failed to update platform order stats", extra={"error": str(exc)})
