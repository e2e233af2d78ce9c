import asyncio
import logging
from datetime import datetime
from typing import Optional

from shared.utils import settings

from marketplace.models import CommissionStatus, PaymentStatus

logger = logging.getLogger(__name__)

EXPIRABLE_STATUSES = [PaymentStatus.PENDING.value, PaymentStatus.AWAITING_PAYMENT.value]


async def expire_stale_payments(db, now: Optional[datetime] = None) -> int:
    """Mark unpaid payments whose expiry passed as expired."""
    now = now or datetime.utcnow()
    result = await db.payments.update_many(
        {"status": {"$in": EXPIRABLE_STATUSES}, "expires_at": {"$lt": now}},
        {"$set": {"status": PaymentStatus.EXPIRED.value, "is_final": True, "updated_at": now}},
    )
    return result.modified_count


async def mark_overdue_commissions(db, now: Optional[datetime] = None) -> int:
    now = now or datetime.utcnow()
    result = await db.commissions.update_many(
        {"status": CommissionStatus.PENDING.value, "due_date": {"$lt": now}},
        {
            "$set": {"status": CommissionStatus.OVERDUE.value, "updated_at": now},
            "$push": {"status_history": {"status": CommissionStatus.OVERDUE.value, "changed_at": now,
                                         "note": "Due date passed"}},
        },
    )
    return result.modified_count


async def run_sweep(db, now: Optional[datetime] = None) -> dict:
    expired = await expire_stale_payments(db, now)
    overdue = await mark_overdue_commissions(db, now)
    if expired or overdue:
        logger.info(f"Sweep expired {expired} payments and flagged {overdue} commissions overdue")
    return {"expired_payments": expired, "overdue_commissions": overdue}


async def run_sweep_loop(db, interval: int = settings.SWEEP_INTERVAL_SECONDS):
    logger.info(f"Expiry sweep started, interval {interval}s")
    while True:
        try:
            await run_sweep(db)
        except Exception as exc:
            logger.error("Expiry sweep failed", extra={"error": str(exc)})
        await asyncio.sleep(interval)
