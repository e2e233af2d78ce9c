import logging
from datetime import datetime
from typing import Optional

from pymongo import ReturnDocument

from shared.cache import CacheInvalidator, NullCache, safe_invalidate
from shared.utils import ConflictException, NotFoundException, ValidationException, settings, str_to_oid

logger = logging.getLogger(__name__)


class InsufficientStockException(ValidationException):
    error_type = "INSUFFICIENT_STOCK"

    def __init__(self, available: int, requested: int, label: str = "product"):
        super().__init__(f"Insufficient stock for {label}: {available} available, {requested} requested")
        self.available = available
        self.requested = requested


class ConcurrencyConflictException(ConflictException):
    error_type = "CONCURRENCY_CONFLICT"


def product_cache_keys(product_id: str):
    return [f"product:{product_id}", f"orders:product:{product_id}"]


class InventoryLedger:
    """
    Stock bookkeeping for products and their options.

    `adjust_stock` is a single conditional increment; `reserve` and `release`
    read, compute and write back guarded by the document `version`.
    """

    def __init__(self, db, cache: CacheInvalidator = None, max_attempts: int = settings.INVENTORY_MAX_ATTEMPTS):
        self.db = db
        self.cache = cache or NullCache()
        self.max_attempts = max_attempts

    async def adjust_stock(self, product_id: str, delta: int, option_id: Optional[str] = None) -> dict:
        oid = str_to_oid(product_id)
        now = datetime.utcnow()
        if option_id:
            query = {
                "_id": oid,
                "options": {"$elemMatch": {"_id": str_to_oid(option_id), "stock": {"$gte": -delta}}},
            }
            update = {"$inc": {"options.$.stock": delta, "version": 1}, "$set": {"updated_at": now}}
        else:
            query = {"_id": oid, "stock": {"$gte": -delta}}
            update = {"$inc": {"stock": delta, "version": 1}, "$set": {"updated_at": now}}

        product = await self.db.products.find_one_and_update(query, update, return_document=ReturnDocument.AFTER)
        if not product:
            raise NotFoundException("Product not found or insufficient stock")

        logger.info(f"Adjusted stock by {delta}", extra={"product_id": product_id, "option_id": option_id})
        await safe_invalidate(self.cache, product_cache_keys(product_id))
        return product

    async def reserve(self, product_id: str, quantity: int, option_id: Optional[str] = None) -> dict:
        if quantity <= 0:
            raise ValidationException("Quantity must be positive")
        return await self._apply(product_id, -quantity, option_id)

    async def release(self, product_id: str, quantity: int, option_id: Optional[str] = None) -> dict:
        if quantity <= 0:
            raise ValidationException("Quantity must be positive")
        return await self._apply(product_id, quantity, option_id)

    async def get_stock(self, product_id: str) -> dict:
        product = await self.db.products.find_one({"_id": str_to_oid(product_id)})
        if not product:
            raise NotFoundException("Product not found")
        return {
            "product_id": str(product["_id"]),
            "stock": product.get("stock", 0),
            "sold": product.get("sold", 0),
            "options": [
                {
                    "option_id": str(option["_id"]),
                    "label": option.get("label", ""),
                    "stock": option.get("stock", 0),
                    "sold": option.get("sold", 0),
                }
                for option in product.get("options", [])
            ],
        }

    async def _apply(self, product_id: str, delta: int, option_id: Optional[str]) -> dict:
        oid = str_to_oid(product_id)
        for attempt in range(self.max_attempts):
            product = await self.db.products.find_one({"_id": oid})
            if not product:
                raise NotFoundException("Product not found")

            changes = self._compute(product, delta, option_id)
            version = product.get("version")
            guard = {"_id": oid, "version": version} if version is not None else {"_id": oid, "version": {"$exists": False}}
            changes["version"] = (version or 0) + 1
            changes["updated_at"] = datetime.utcnow()

            result = await self.db.products.update_one(guard, {"$set": changes})
            if result.modified_count == 1:
                await safe_invalidate(self.cache, product_cache_keys(product_id))
                return await self.db.products.find_one({"_id": oid})

            logger.warning(
                "Stock version conflict, retrying",
                extra={"product_id": product_id, "option_id": option_id, "attempt": attempt + 1},
            )

        raise ConcurrencyConflictException(
            f"Could not update stock for product {product_id} after {self.max_attempts} attempts"
        )

    @staticmethod
    def _compute(product: dict, delta: int, option_id: Optional[str]) -> dict:
        if option_id:
            options = [dict(option) for option in product.get("options", [])]
            target = next((o for o in options if str(o.get("_id")) == str(option_id)), None)
            if target is None:
                raise NotFoundException("Product option not found")
            target["stock"], target["sold"] = _next_counts(
                target.get("stock", 0), target.get("sold", 0), delta, target.get("label") or "option"
            )
            return {"options": options}

        stock, sold = _next_counts(product.get("stock", 0), product.get("sold", 0), delta, product.get("name") or "product")
        return {"stock": stock, "sold": sold}


def _next_counts(stock: int, sold: int, delta: int, label: str):
    if delta < 0 and stock < -delta:
        raise InsufficientStockException(stock, -delta, label)
    # release never drives sold below zero
    return stock + delta, max(0, sold - delta)
