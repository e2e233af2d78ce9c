import logging
from datetime import datetime
from typing import List, Optional

from pymongo import ReturnDocument

from shared.cache import CacheInvalidator, NullCache, safe_invalidate
from shared.utils import AppException, ForbiddenException, NotFoundException, ValidationException, str_to_oid

from marketplace.audit import record_admin_action
from marketplace.models import EscrowStatus
from marketplace.revenue import find_vendor

logger = logging.getLogger(__name__)

ESCROW_FIELDS = (
    "escrow_status", "escrow_held_at", "escrow_released_at", "escrow_released_by", "on_hold", "hold_reason",
    "held_by", "held_at", "refund_reason", "refund_reason_details", "refund_requested_by", "refund_requested_at",
    "refund_approved_by", "refund_approved_at", "refund_rejected_by", "refund_rejection_reason", "refund_payment_id",
    "subtotal", "payment_id", "customer_id", "vendor_id",
)


def escrow_view(order: dict) -> dict:
    view = {field: order.get(field) for field in ESCROW_FIELDS}
    view["order_id"] = str(order["_id"])
    return view


def _require_reason(reason: Optional[str], action: str) -> str:
    reason = (reason or "").strip()
    if not reason:
        raise ValidationException(f"A reason is required to {action}")
    return reason


class EscrowService:
    """
    Escrow transitions for paid orders.

    held -> released, held -> refund_requested -> (refunded | held). Every move
    is a conditional update on the source state.
    """

    def __init__(self, db, payments=None, cache: CacheInvalidator = None):
        self.db = db
        self.payments = payments
        self.cache = cache or NullCache()

    async def _find(self, order_id: str) -> dict:
        order = await self.db.orders.find_one({"_id": str_to_oid(order_id)})
        if not order:
            raise NotFoundException("Order not found")
        return order

    async def _move(self, order_id: str, source: EscrowStatus, changes: dict, precondition: str,
                    extra_filter: Optional[dict] = None, unset: Optional[List[str]] = None) -> dict:
        query = {"_id": str_to_oid(order_id), "escrow_status": source.value, **(extra_filter or {})}
        update = {"$set": {**changes, "updated_at": datetime.utcnow()}}
        if unset:
            update["$unset"] = {field: "" for field in unset}
        order = await self.db.orders.find_one_and_update(query, update, return_document=ReturnDocument.AFTER)
        if order is None:
            await self._find(order_id)
            raise ValidationException(precondition)
        logger.info(
            f"Escrow {source.value} -> {changes.get('escrow_status', source.value)}",
            extra={"order_id": order_id, "vendor_id": order.get("vendor_id")},
        )
        return order

    async def _invalidate(self, order: dict):
        await safe_invalidate(self.cache, [
            f"orders:{order['_id']}",
            f"orders:user:{order.get('customer_id', '')}",
            f"orders:vendor:{order.get('vendor_id', '')}",
            "admin:dashboard_stats",
        ])

    async def _bump_refund_stats(self, pending: int, total: int = 0):
        try:
            await self.db.platform_stats.update_one(
                {"_id": "orders"}, {"$inc": {"pending_refunds": pending, "total_refunds": total}}, upsert=True
            )
        except Exception as exc:
            logger.error("Failed to update refund stats", extra={"error": str(exc)})

    # --- Admin ---

    async def release(self, order_id: str, admin_id: str, notes: Optional[str] = None) -> dict:
        now = datetime.utcnow()
        order = await self._move(
            order_id,
            EscrowStatus.HELD,
            {
                "escrow_status": EscrowStatus.RELEASED.value,
                "escrow_released_at": now,
                "escrow_released_by": admin_id,
                "release_notes": notes,
                "on_hold": False,
            },
            "Payment is not held in escrow",
        )

        vendor = await find_vendor(self.db, order["vendor_id"])
        if vendor:
            await self.db.vendors.update_one(
                {"_id": vendor["_id"]}, {"$inc": {"balance": order.get("subtotal", 0)}, "$set": {"updated_at": now}}
            )
        else:
            logger.error("Vendor not found, balance not credited", extra={"order_id": order_id, "vendor_id": order["vendor_id"]})

        await record_admin_action(self.db, admin_id, "escrow.release", "order", order_id,
                                  {"amount": order.get("subtotal", 0), "notes": notes})
        await self._invalidate(order)
        return order

    async def hold(self, order_id: str, admin_id: str, reason: Optional[str]) -> dict:
        reason = _require_reason(reason, "hold a payment")
        order = await self._move(
            order_id,
            EscrowStatus.HELD,
            {"on_hold": True, "hold_reason": reason, "held_by": admin_id, "held_at": datetime.utcnow()},
            "Payment is not held in escrow",
        )
        await record_admin_action(self.db, admin_id, "escrow.hold", "order", order_id, {"reason": reason})
        await self._invalidate(order)
        return order

    async def approve_refund(self, order_id: str, admin_id: str, notes: Optional[str] = None) -> dict:
        current = await self._find(order_id)
        if current.get("escrow_status") != EscrowStatus.REFUND_REQUESTED.value:
            raise ValidationException("No refund request pending")
        # eligibility and cap are checked before the order is touched
        if current.get("payment_id") and self.payments is not None:
            await self.payments.validate_refund(current["payment_id"], current.get("subtotal"))

        order = await self._move(
            order_id,
            EscrowStatus.REFUND_REQUESTED,
            {
                "escrow_status": EscrowStatus.REFUNDED.value,
                "refund_approved_by": admin_id,
                "refund_approved_at": datetime.utcnow(),
                "refund_notes": notes,
            },
            "No refund request pending",
        )

        if order.get("payment_id") and self.payments is not None:
            try:
                refund = await self.payments.create_refund(
                    order["payment_id"],
                    amount=order.get("subtotal"),
                    reason="requested_by_customer",
                    requested_by=admin_id,
                    order_id=order_id,
                    metadata={"notes": order.get("refund_reason")},
                )
            except Exception as exc:
                await self.db.orders.update_one(
                    {"_id": order["_id"], "escrow_status": EscrowStatus.REFUNDED.value},
                    {"$set": {"escrow_status": EscrowStatus.REFUND_REQUESTED.value, "updated_at": datetime.utcnow()},
                     "$unset": {"refund_approved_by": "", "refund_approved_at": "", "refund_notes": ""}},
                )
                logger.error("Refund failed, escrow reverted", extra={"order_id": order_id, "error": str(exc)})
                raise
            order = await self.db.orders.find_one_and_update(
                {"_id": order["_id"]},
                {"$set": {"refund_payment_id": str(refund["_id"])}},
                return_document=ReturnDocument.AFTER,
            )

        await record_admin_action(self.db, admin_id, "escrow.approve_refund", "order", order_id,
                                  {"amount": order.get("subtotal", 0), "notes": notes})
        await self._bump_refund_stats(-1, 1)
        await self._invalidate(order)
        return order

    async def reject_refund(self, order_id: str, admin_id: str, reason: Optional[str]) -> dict:
        reason = _require_reason(reason, "reject a refund")
        order = await self._move(
            order_id,
            EscrowStatus.REFUND_REQUESTED,
            {
                "escrow_status": EscrowStatus.HELD.value,
                "refund_rejected_by": admin_id,
                "refund_rejection_reason": reason,
                "refund_rejected_at": datetime.utcnow(),
            },
            "No refund request pending",
        )
        await record_admin_action(self.db, admin_id, "escrow.reject_refund", "order", order_id, {"reason": reason})
        await self._bump_refund_stats(-1)
        await self._invalidate(order)
        return order

    async def bulk_release(self, order_ids: List[str], admin_id: str, notes: Optional[str] = None) -> dict:
        successful, failed = [], []
        for order_id in order_ids:
            try:
                await self.release(order_id, admin_id, notes)
                successful.append(order_id)
            except AppException as exc:
                failed.append({"order_id": order_id, "error": exc.detail})
        return {
            "total_processed": len(order_ids),
            "success_count": len(successful),
            "failed_count": len(failed),
            "successful": successful,
            "failed": failed,
        }

    # --- Customer ---

    async def request_refund(self, order_id: str, customer_id: str, reason: Optional[str],
                             details: Optional[str] = None) -> dict:
        reason = _require_reason(reason, "request a refund")
        order = await self._find(order_id)
        if order.get("customer_id") != customer_id:
            raise ForbiddenException("Only the customer who placed the order can request a refund")

        order = await self._move(
            order_id,
            EscrowStatus.HELD,
            {
                "escrow_status": EscrowStatus.REFUND_REQUESTED.value,
                "refund_reason": reason,
                "refund_reason_details": details,
                "refund_requested_by": customer_id,
                "refund_requested_at": datetime.utcnow(),
            },
            "Cannot request refund - payment not in escrow",
            extra_filter={"customer_id": customer_id},
        )
        await self._bump_refund_stats(1)
        await self._invalidate(order)
        return order

    async def cancel_refund_request(self, order_id: str, customer_id: str) -> dict:
        order = await self._find(order_id)
        if order.get("escrow_status") == EscrowStatus.REFUND_REQUESTED.value and order.get("refund_requested_by") != customer_id:
            raise ForbiddenException("Only the requester can cancel this refund request")

        order = await self._move(
            order_id,
            EscrowStatus.REFUND_REQUESTED,
            {"escrow_status": EscrowStatus.HELD.value},
            "No refund request pending",
            extra_filter={"refund_requested_by": customer_id},
            unset=["refund_reason", "refund_reason_details", "refund_requested_by", "refund_requested_at"],
        )
        await self._bump_refund_stats(-1)
        await self._invalidate(order)
        return order

    # --- Reads ---

    async def get_escrow_status(self, order_id: str, user: dict) -> dict:
        order = await self._find(order_id)
        if user.get("role") != "admin" and user["sub"] not in (order.get("customer_id"), order.get("vendor_id")):
            raise ForbiddenException("Not authorized to view this order")
        return escrow_view(order)

    async def list_pending_releases(self, limit: int = 100) -> List[dict]:
        cursor = self.db.orders.find(
            {"escrow_status": EscrowStatus.HELD.value, "on_hold": {"$ne": True}}
        ).sort("escrow_held_at", 1).limit(limit)
        return [escrow_view(order) async for order in cursor]

    async def list_pending_refunds(self, limit: int = 100) -> List[dict]:
        cursor = self.db.orders.find(
            {"escrow_status": EscrowStatus.REFUND_REQUESTED.value}
        ).sort("refund_requested_at", 1).limit(limit)
        return [escrow_view(order) async for order in cursor]
