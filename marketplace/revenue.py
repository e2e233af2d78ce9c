import logging
from datetime import datetime
from typing import Optional

from bson import ObjectId
from bson.errors import InvalidId

logger = logging.getLogger(__name__)

MONTH_NAMES = [
    "January", "February", "March", "April", "May", "June",
    "July", "August", "September", "October", "November", "December",
]


def empty_year(year: int) -> dict:
    return {"year": year, "revenues": {month: 0 for month in MONTH_NAMES}}


async def find_vendor(db, vendor_id: str) -> Optional[dict]:
    """Vendors are referenced either by their own id or by their owner's user id."""
    vendor = None
    try:
        vendor = await db.vendors.find_one({"_id": ObjectId(vendor_id)})
    except (InvalidId, TypeError):
        pass
    if not vendor:
        vendor = await db.vendors.find_one({"user_id": vendor_id})
    return vendor


async def record_vendor_sale(db, vendor_id: str, amount: int, now: Optional[datetime] = None) -> bool:
    """
    Add one sale to the vendor's revenue counters and monthly matrix.

    Concurrent sales for the same vendor may lose an update; callers treat this
    as best-effort and never fail an order because of it.
    """
    now = now or datetime.utcnow()
    try:
        vendor = await find_vendor(db, vendor_id)
        if not vendor:
            logger.error("Vendor not found for revenue tracking", extra={"vendor_id": vendor_id})
            return False

        month = MONTH_NAMES[now.month - 1]
        history = vendor.get("monthly_revenue") or []
        year_entry = next((entry for entry in history if entry.get("year") == now.year), None)
        if year_entry is None:
            year_entry = empty_year(now.year)
            history.append(year_entry)
        year_entry["revenues"][month] = year_entry["revenues"].get(month, 0) + amount

        await db.vendors.update_one(
            {"_id": vendor["_id"]},
            {"$set": {
                "monthly_revenue": history,
                "current_monthly_revenue": vendor.get("current_monthly_revenue", 0) + amount,
                "total_revenue": vendor.get("total_revenue", 0) + amount,
                "total_orders": vendor.get("total_orders", 0) + 1,
                "updated_at": now,
            }},
        )
        logger.info(f"Recorded sale of {amount}", extra={"vendor_id": vendor_id})
        return True
    except Exception as exc:
        logger.error("Vendor revenue update failed", extra={"vendor_id": vendor_id, "error": str(exc)})
        return False
