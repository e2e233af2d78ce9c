import hashlib
import logging
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import List, Optional

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from shared.utils import (
    AppException, ConflictException, ForbiddenException, NotFoundException, ValidationException, settings,
    str_to_oid,
)

from marketplace.models import CommissionDB, CommissionStatus
from marketplace.revenue import find_vendor

logger = logging.getLogger(__name__)

COD_PAYMENT_METHODS = {"cod", "cash_on_delivery"}
REMITTANCE_METHODS = {"wallet", "gcash", "bank_transfer"}
OPEN_STATUSES = [CommissionStatus.PENDING.value, CommissionStatus.OVERDUE.value]


def commission_amount(order_amount: int, rate: float) -> int:
    value = Decimal(order_amount) * Decimal(str(rate)) / Decimal(100)
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def remittance_key(commission_id: str, vendor_id: str) -> str:
    return hashlib.sha256(f"{commission_id}:{vendor_id}".encode()).hexdigest()


def _history(status: str, note: str) -> dict:
    return {"status": status, "changed_at": datetime.utcnow(), "note": note}


class CommissionService:
    def __init__(self, db, rate: float = settings.COD_COMMISSION_RATE, due_days: int = settings.COMMISSION_DUE_DAYS):
        self.db = db
        self.rate = rate
        self.due_days = due_days

    async def create_cod_commission(self, order_id: str, rate: Optional[float] = None) -> dict:
        existing = await self.db.commissions.find_one({"order_id": order_id})
        if existing:
            return existing

        order = await self.db.orders.find_one({"_id": str_to_oid(order_id)})
        if not order:
            raise NotFoundException("Order not found")
        if order.get("payment_method") not in COD_PAYMENT_METHODS:
            raise ValidationException("Commissions only apply to cash-on-delivery orders")

        rate = self.rate if rate is None else rate
        order_amount = order.get("subtotal", 0)
        commission = CommissionDB(
            order_id=order_id,
            vendor_id=order["vendor_id"],
            order_amount=order_amount,
            commission_rate=rate,
            commission_amount=commission_amount(order_amount, rate),
            due_date=datetime.utcnow() + timedelta(days=self.due_days),
            status_history=[_history(CommissionStatus.PENDING.value, "Commission created")],
        )
        doc = commission.model_dump(by_alias=True, exclude={"id"})
        try:
            result = await self.db.commissions.insert_one(doc)
        except DuplicateKeyError:
            return await self.db.commissions.find_one({"order_id": order_id})
        doc["_id"] = result.inserted_id
        logger.info(
            f"COD commission of {doc['commission_amount']} created",
            extra={"order_id": order_id, "vendor_id": order["vendor_id"], "commission_id": str(result.inserted_id)},
        )
        return doc

    async def remit(self, order_id: str, vendor_id: str, method: str) -> dict:
        if method not in REMITTANCE_METHODS:
            raise ValidationException(f"Unsupported remittance method: {method}")

        commission = await self.db.commissions.find_one({"order_id": order_id})
        if not commission:
            raise NotFoundException("Commission not found")
        if commission["vendor_id"] != vendor_id:
            raise ForbiddenException("Commission belongs to another vendor")
        if commission["status"] == CommissionStatus.REMITTED.value:
            raise ConflictException("Commission already remitted")
        if commission["status"] not in OPEN_STATUSES:
            raise ValidationException(f"Cannot remit a {commission['status']} commission")

        commission_id = str(commission["_id"])
        key = remittance_key(commission_id, vendor_id)
        claimed = await self.db.commissions.find_one_and_update(
            {"_id": commission["_id"], "status": {"$in": OPEN_STATUSES}},
            {
                "$set": {
                    "status": CommissionStatus.REMITTED.value,
                    "remitted_at": datetime.utcnow(),
                    "remittance_method": method,
                    "remittance_idempotency_key": key,
                    "updated_at": datetime.utcnow(),
                },
                "$push": {"status_history": _history(CommissionStatus.REMITTED.value, f"Remitted via {method}")},
            },
            return_document=ReturnDocument.AFTER,
        )
        if claimed is None:
            raise ConflictException("Duplicate transaction detected")

        if method == "wallet":
            vendor = await find_vendor(self.db, vendor_id)
            debited = None
            if vendor:
                debited = await self.db.vendors.update_one(
                    {"_id": vendor["_id"], "balance": {"$gte": commission["commission_amount"]}},
                    {"$inc": {"balance": -commission["commission_amount"]}},
                )
            if not debited or debited.modified_count != 1:
                await self.db.commissions.update_one(
                    {"_id": commission["_id"], "remittance_idempotency_key": key},
                    {
                        "$set": {
                            "status": commission["status"],
                            "remitted_at": None,
                            "remittance_method": None,
                            "remittance_idempotency_key": None,
                            "updated_at": datetime.utcnow(),
                        },
                        "$pop": {"status_history": 1},
                    },
                )
                balance = (vendor or {}).get("balance", 0)
                raise ValidationException(
                    f"Insufficient wallet balance. Have: {balance}, need: {commission['commission_amount']}"
                )

        logger.info(
            f"Commission remitted via {method}",
            extra={"commission_id": commission_id, "order_id": order_id, "vendor_id": vendor_id},
        )
        return claimed

    async def bulk_remit(self, order_ids: List[str], vendor_id: str, method: str) -> dict:
        successful, failed = [], []
        for order_id in order_ids:
            try:
                await self.remit(order_id, vendor_id, method)
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

    async def list_pending(self, vendor_id: str, limit: int = 100) -> List[dict]:
        cursor = self.db.commissions.find(
            {"vendor_id": vendor_id, "status": {"$in": OPEN_STATUSES}}
        ).sort("due_date", 1).limit(limit)
        return [doc async for doc in cursor]

    async def summary(self, vendor_id: str) -> dict:
        totals = {
            status.value: {"count": 0, "amount": 0}
            for status in CommissionStatus
        }
        async for doc in self.db.commissions.find({"vendor_id": vendor_id}):
            bucket = totals.setdefault(doc["status"], {"count": 0, "amount": 0})
            bucket["count"] += 1
            bucket["amount"] += doc.get("commission_amount", 0)
        totals["total_owed"] = totals["pending"]["amount"] + totals["overdue"]["amount"]
        return totals
