from typing import List

from fastapi import APIRouter, Depends

from shared.utils import SuccessResponse

from marketplace.dependencies import get_commission_service, require_admin, require_vendor
from marketplace.schemas import (
    BulkRemitRequest, BulkResult, CommissionCreateRequest, CommissionResponse, RemitRequest, with_id,
)

router = APIRouter(tags=["commissions"])


@router.get("/commissions/pending", response_model=SuccessResponse[List[CommissionResponse]])
async def pending_commissions(vendor: dict = Depends(require_vendor), service=Depends(get_commission_service)):
    docs = await service.list_pending(vendor["sub"])
    return SuccessResponse(data=[CommissionResponse(**with_id(doc)) for doc in docs])


@router.get("/commissions/summary", response_model=SuccessResponse[dict])
async def commission_summary(vendor: dict = Depends(require_vendor), service=Depends(get_commission_service)):
    return SuccessResponse(data=await service.summary(vendor["sub"]))


@router.post("/commissions/bulk-remit", response_model=SuccessResponse[BulkResult])
async def bulk_remit(body: BulkRemitRequest, vendor: dict = Depends(require_vendor),
                     service=Depends(get_commission_service)):
    result = await service.bulk_remit(body.order_ids, vendor["sub"], body.method)
    return SuccessResponse(data=BulkResult(**result))


@router.post("/commissions/{order_id}/remit", response_model=SuccessResponse[CommissionResponse])
async def remit_commission(order_id: str, body: RemitRequest, vendor: dict = Depends(require_vendor),
                           service=Depends(get_commission_service)):
    doc = await service.remit(order_id, vendor["sub"], body.method)
    return SuccessResponse(data=CommissionResponse(**with_id(doc)), message="Commission remitted")


@router.post("/admin/commissions/{order_id}", response_model=SuccessResponse[CommissionResponse])
async def create_commission(order_id: str, body: CommissionCreateRequest = CommissionCreateRequest(),
                            admin: dict = Depends(require_admin), service=Depends(get_commission_service)):
    doc = await service.create_cod_commission(order_id, body.rate)
    return SuccessResponse(data=CommissionResponse(**with_id(doc)), message="Commission created")
