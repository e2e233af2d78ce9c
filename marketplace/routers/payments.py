import json
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from shared.security_config import limiter
from shared.utils import SuccessResponse

from marketplace.dependencies import (
    get_current_user, get_gateway, get_payment_service, require_admin, require_vendor,
)
from marketplace.schemas import (
    AttachMethodRequest, AttachResponse, CashInRequest, CheckoutRequest, CheckoutResponse, OrderPaymentRequest,
    PaymentRefundRequest, PaymentResponse, RecoveryResponse, WithdrawalRequest, payment_response,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["payments"])


def _checkout_response(result: dict) -> CheckoutResponse:
    return CheckoutResponse(
        payment=payment_response(result["payment"]),
        qr_code_url=result.get("qr_code_url"),
        client_key=result.get("client_key"),
    )


@router.post("/payments/checkout", response_model=SuccessResponse[CheckoutResponse])
@limiter.limit("10/minute")
async def create_checkout_payment(body: CheckoutRequest, request: Request,
                                  user: dict = Depends(get_current_user), service=Depends(get_payment_service)):
    result = await service.create_checkout_payment(
        user["sub"], body.checkout_data, body.payment_method, body.description, body.metadata
    )
    return SuccessResponse(data=_checkout_response(result), message="Checkout payment created")


@router.post("/payments/orders/{order_id}", response_model=SuccessResponse[CheckoutResponse])
@limiter.limit("10/minute")
async def create_order_payment(order_id: str, body: OrderPaymentRequest, request: Request,
                               user: dict = Depends(get_current_user), service=Depends(get_payment_service)):
    result = await service.create_order_payment(user["sub"], order_id, body.description, body.metadata)
    return SuccessResponse(data=_checkout_response(result), message="Order payment created")


@router.post("/payments/cash-in", response_model=SuccessResponse[CheckoutResponse])
@limiter.limit("10/minute")
async def create_cash_in(body: CashInRequest, request: Request,
                         user: dict = Depends(get_current_user), service=Depends(get_payment_service)):
    result = await service.create_cash_in(user["sub"], body.amount, body.payment_method)
    return SuccessResponse(data=_checkout_response(result), message="Cash-in created")


@router.post("/payments/withdrawals", response_model=SuccessResponse[PaymentResponse])
@limiter.limit("5/minute")
async def create_withdrawal(body: WithdrawalRequest, request: Request,
                            user: dict = Depends(require_vendor), service=Depends(get_payment_service)):
    doc = await service.create_withdrawal(user["sub"], body.amount, body.bank_account)
    return SuccessResponse(data=payment_response(doc), message="Withdrawal request recorded")


@router.post("/payments/{intent_id}/attach", response_model=SuccessResponse[AttachResponse])
async def attach_payment_method(intent_id: str, body: AttachMethodRequest,
                                user: dict = Depends(get_current_user), service=Depends(get_payment_service)):
    result = await service.attach_payment_method(user["sub"], intent_id, body.payment_method_id, body.return_url)
    return SuccessResponse(data=AttachResponse(payment=payment_response(result["payment"]),
                                               next_action=result["next_action"]))


@router.get("/payments/{identifier}/status", response_model=SuccessResponse[PaymentResponse])
@limiter.limit("30/minute")
async def check_payment_status(identifier: str, request: Request,
                               user: dict = Depends(get_current_user), service=Depends(get_payment_service)):
    doc = await service.check_payment_status(identifier, user)
    return SuccessResponse(data=payment_response(doc))


@router.post("/payments/{payment_id}/cancel", response_model=SuccessResponse[PaymentResponse])
async def cancel_payment(payment_id: str, user: dict = Depends(get_current_user),
                         service=Depends(get_payment_service)):
    doc = await service.cancel_payment(payment_id, user)
    return SuccessResponse(data=payment_response(doc), message="Payment cancelled")


@router.post("/payments/{payment_id}/refunds", response_model=SuccessResponse[PaymentResponse])
async def create_refund(payment_id: str, body: PaymentRefundRequest, admin: dict = Depends(require_admin),
                        service=Depends(get_payment_service)):
    doc = await service.create_refund(
        payment_id, body.amount, body.reason, requested_by=admin["sub"], order_id=body.order_id, metadata=body.metadata
    )
    return SuccessResponse(data=payment_response(doc), message="Refund created")


@router.get("/payments", response_model=SuccessResponse[List[PaymentResponse]])
async def list_payments(type: Optional[str] = Query(None, pattern="^(checkout|refund|cash_in|withdraw)$"),
                        limit: int = Query(50, ge=1, le=100),
                        user: dict = Depends(get_current_user), service=Depends(get_payment_service)):
    docs = await service.list_user_payments(user["sub"], type, limit)
    return SuccessResponse(data=[payment_response(doc) for doc in docs])


@router.get("/payments/{payment_id}", response_model=SuccessResponse[PaymentResponse])
async def get_payment(payment_id: str, user: dict = Depends(get_current_user), service=Depends(get_payment_service)):
    doc = await service.get_payment(payment_id, user)
    return SuccessResponse(data=payment_response(doc))


# --- Gateway webhook ---

@router.post("/webhooks/gateway")
async def gateway_webhook(request: Request, gateway=Depends(get_gateway), service=Depends(get_payment_service)):
    raw = await request.body()
    signature = request.headers.get("paymongo-signature")
    if not gateway.verify_webhook_signature(raw, signature):
        logger.warning("Webhook signature verification failed")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid signature")

    try:
        await service.process_webhook(json.loads(raw))
    except Exception as exc:
        # always acknowledged once the signature checks out
        logger.error("Webhook processing failed", extra={"error": str(exc)}, exc_info=True)
    return {"received": True}


# --- Admin recovery ---

@router.post("/admin/payments/{payment_id}/recover-orders", response_model=SuccessResponse[RecoveryResponse])
async def recover_orders(payment_id: str, admin: dict = Depends(require_admin), service=Depends(get_payment_service)):
    order_ids = await service.recover_orders(payment_id)
    logger.info("Orders recovered", extra={"payment_id": payment_id, "user_id": admin["sub"], "order_ids": order_ids})
    return SuccessResponse(
        data=RecoveryResponse(payment_id=payment_id, order_ids=order_ids),
        message=f"{len(order_ids)} order(s) created successfully",
    )


@router.get("/admin/payments/unmaterialized", response_model=SuccessResponse[List[PaymentResponse]])
async def list_unmaterialized(limit: int = Query(50, ge=1, le=200), admin: dict = Depends(require_admin),
                              service=Depends(get_payment_service)):
    docs = await service.list_unmaterialized_payments(limit)
    return SuccessResponse(data=[payment_response(doc) for doc in docs])
