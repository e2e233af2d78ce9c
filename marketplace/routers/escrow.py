from typing import List

from fastapi import APIRouter, Depends, Query

from shared.utils import SuccessResponse

from marketplace.dependencies import get_current_user, get_escrow_service, require_admin
from marketplace.escrow import escrow_view
from marketplace.schemas import (
    BulkReleaseRequest, BulkResult, EscrowNotesRequest, EscrowReasonRequest, EscrowResponse, RefundRequestCreate,
)

router = APIRouter(tags=["escrow"])


@router.post("/admin/escrow/{order_id}/release", response_model=SuccessResponse[EscrowResponse])
async def release_payment(order_id: str, body: EscrowNotesRequest = EscrowNotesRequest(),
                          admin: dict = Depends(require_admin), service=Depends(get_escrow_service)):
    order = await service.release(order_id, admin["sub"], body.notes)
    return SuccessResponse(data=EscrowResponse(**escrow_view(order)), message="Payment released to vendor")


@router.post("/admin/escrow/{order_id}/hold", response_model=SuccessResponse[EscrowResponse])
async def hold_payment(order_id: str, body: EscrowReasonRequest,
                       admin: dict = Depends(require_admin), service=Depends(get_escrow_service)):
    order = await service.hold(order_id, admin["sub"], body.reason)
    return SuccessResponse(data=EscrowResponse(**escrow_view(order)), message="Payment placed on hold")


@router.post("/admin/escrow/{order_id}/approve-refund", response_model=SuccessResponse[EscrowResponse])
async def approve_refund(order_id: str, body: EscrowNotesRequest = EscrowNotesRequest(),
                         admin: dict = Depends(require_admin), service=Depends(get_escrow_service)):
    order = await service.approve_refund(order_id, admin["sub"], body.notes)
    return SuccessResponse(data=EscrowResponse(**escrow_view(order)), message="Refund approved")


@router.post("/admin/escrow/{order_id}/reject-refund", response_model=SuccessResponse[EscrowResponse])
async def reject_refund(order_id: str, body: EscrowReasonRequest,
                        admin: dict = Depends(require_admin), service=Depends(get_escrow_service)):
    order = await service.reject_refund(order_id, admin["sub"], body.reason)
    return SuccessResponse(data=EscrowResponse(**escrow_view(order)), message="Refund rejected")


@router.post("/admin/escrow/bulk-release", response_model=SuccessResponse[BulkResult])
async def bulk_release(body: BulkReleaseRequest, admin: dict = Depends(require_admin),
                       service=Depends(get_escrow_service)):
    result = await service.bulk_release(body.order_ids, admin["sub"], body.notes)
    return SuccessResponse(data=BulkResult(**result))


@router.get("/admin/escrow/pending-releases", response_model=SuccessResponse[List[EscrowResponse]])
async def pending_releases(limit: int = Query(100, ge=1, le=500), admin: dict = Depends(require_admin),
                           service=Depends(get_escrow_service)):
    views = await service.list_pending_releases(limit)
    return SuccessResponse(data=[EscrowResponse(**view) for view in views])


@router.get("/admin/escrow/pending-refunds", response_model=SuccessResponse[List[EscrowResponse]])
async def pending_refunds(limit: int = Query(100, ge=1, le=500), admin: dict = Depends(require_admin),
                          service=Depends(get_escrow_service)):
    views = await service.list_pending_refunds(limit)
    return SuccessResponse(data=[EscrowResponse(**view) for view in views])


@router.get("/orders/{order_id}/escrow", response_model=SuccessResponse[EscrowResponse])
async def get_escrow_status(order_id: str, user: dict = Depends(get_current_user),
                            service=Depends(get_escrow_service)):
    view = await service.get_escrow_status(order_id, user)
    return SuccessResponse(data=EscrowResponse(**view))


@router.post("/orders/{order_id}/refund-request", response_model=SuccessResponse[EscrowResponse])
async def request_refund(order_id: str, body: RefundRequestCreate, user: dict = Depends(get_current_user),
                         service=Depends(get_escrow_service)):
    order = await service.request_refund(order_id, user["sub"], body.reason, body.details)
    return SuccessResponse(data=EscrowResponse(**escrow_view(order)), message="Refund requested")


@router.post("/orders/{order_id}/cancel-refund", response_model=SuccessResponse[EscrowResponse])
async def cancel_refund_request(order_id: str, user: dict = Depends(get_current_user),
                                service=Depends(get_escrow_service)):
    order = await service.cancel_refund_request(order_id, user["sub"])
    return SuccessResponse(data=EscrowResponse(**escrow_view(order)), message="Refund request cancelled")
