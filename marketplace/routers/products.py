from fastapi import APIRouter, Depends

from shared.utils import ForbiddenException, NotFoundException, SuccessResponse, str_to_oid

from marketplace.dependencies import get_db, get_inventory, require_vendor
from marketplace.schemas import StockAdjustRequest, StockResponse

router = APIRouter(tags=["inventory"])


@router.post("/products/{product_id}/stock", response_model=SuccessResponse[StockResponse])
async def adjust_stock(product_id: str, body: StockAdjustRequest, user: dict = Depends(require_vendor),
                       db=Depends(get_db), inventory=Depends(get_inventory)):
    product = await db.products.find_one({"_id": str_to_oid(product_id)}, {"vendor_id": 1})
    if not product:
        raise NotFoundException("Product not found")
    if user.get("role") != "admin" and product.get("vendor_id") != user["sub"]:
        raise ForbiddenException("Not authorized to manage this product")

    await inventory.adjust_stock(product_id, body.delta, body.option_id)
    return SuccessResponse(data=StockResponse(**await inventory.get_stock(product_id)), message="Stock updated")


@router.get("/products/{product_id}/stock", response_model=SuccessResponse[StockResponse])
async def get_stock(product_id: str, inventory=Depends(get_inventory)):
    return SuccessResponse(data=StockResponse(**await inventory.get_stock(product_id)))
