from fastapi import Depends, Request

from shared.cache import CacheInvalidator
from shared.utils import ForbiddenException, require_auth

from marketplace.commissions import CommissionService
from marketplace.escrow import EscrowService
from marketplace.gateway import PaymentGateway
from marketplace.inventory import InventoryLedger
from marketplace.materializer import OrderMaterializer
from marketplace.payments import PaymentService


def get_db(request: Request):
    return request.app.mongodb


def get_cache(request: Request) -> CacheInvalidator:
    return request.app.cache


def get_gateway(request: Request) -> PaymentGateway:
    return request.app.gateway


async def get_current_user(user: dict = Depends(require_auth)) -> dict:
    return user


async def require_admin(user: dict = Depends(get_current_user)) -> dict:
    if user.get("role") != "admin":
        raise ForbiddenException("Admin access required")
    return user


async def require_vendor(user: dict = Depends(get_current_user)) -> dict:
    if user.get("role") not in ("vendor", "admin"):
        raise ForbiddenException("Vendor access required")
    return user


def get_inventory(db=Depends(get_db), cache=Depends(get_cache)) -> InventoryLedger:
    return InventoryLedger(db, cache)


def get_payment_service(db=Depends(get_db), gateway=Depends(get_gateway), cache=Depends(get_cache)) -> PaymentService:
    materializer = OrderMaterializer(db, InventoryLedger(db, cache), cache)
    return PaymentService(db, gateway, materializer, cache)


def get_escrow_service(db=Depends(get_db), payments=Depends(get_payment_service),
                       cache=Depends(get_cache)) -> EscrowService:
    return EscrowService(db, payments, cache)


def get_commission_service(db=Depends(get_db)) -> CommissionService:
    return CommissionService(db)
