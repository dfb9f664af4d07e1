from fastapi import APIRouter, Depends, Header
from typing import Optional
import structlog
from ..schemas import CreateOrderIn, OrderOut, OrderStatusOut, ProofIn, ProofOut, RejectIn
from ..errors import ValidationFailed
from ..ledger import BuyerDetails, OrderLedger, ProofSubmission
from ..rails import ManualSubmissionRail
from ..utils import get_ledger, get_manual_rail, require_service_api_key
from ..validation import validate_phone

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/orders", tags=["orders"])


@router.post("", response_model=OrderOut, status_code=201)
async def create_order(
    payload: CreateOrderIn,
    idempotency_key: Optional[str] = Header(default=None),
    ledger: OrderLedger = Depends(get_ledger),
):
    """Create a pending order. Repeating the same Idempotency-Key returns the same order."""
    phone_check = validate_phone(payload.buyer.phone)
    if not phone_check.valid:
        raise ValidationFailed(phone_check.error, code=f"phone_{phone_check.reason}")
    if not payload.buyer.name.strip():
        raise ValidationFailed("Please enter your name", code="name_required")

    order = await ledger.create_order(
        BuyerDetails(
            name=payload.buyer.name,
            phone=payload.buyer.phone,
            email=payload.buyer.email,
            address=payload.buyer.address,
        ),
        payload.listing_id,
        payload.payment_method,
        idempotency_key=idempotency_key,
    )
    return OrderOut.model_validate(order)


@router.get("/{order_id}/status", response_model=OrderStatusOut, response_model_exclude_none=True)
async def order_status(order_id: str, ledger: OrderLedger = Depends(get_ledger)):
    """Polled by the buyer while a payment is under review or being verified."""
    view = await ledger.get_status(order_id)
    return OrderStatusOut(**view.as_dict())


@router.post("/{order_id}/proof", response_model=ProofOut)
async def submit_proof(
    order_id: str,
    payload: ProofIn,
    rail: ManualSubmissionRail = Depends(get_manual_rail),
):
    receipt = await rail.submit(
        order_id,
        ProofSubmission(
            code=payload.code,
            payment_method=payload.payment_method,
            payer_phone=payload.payer_phone,
            payer_name=payload.payer_name,
            declared_amount=payload.declared_amount,
        ),
    )
    return ProofOut(
        order_id=receipt.order_id,
        status=receipt.status,
        proof_code=receipt.proof_code,
        warnings=list(receipt.warnings),
        review_flags=list(receipt.review_flags),
    )


# review endpoints, called by the seller dashboard with the service key
@router.post(
    "/{order_id}/approve",
    response_model=OrderOut,
    dependencies=[Depends(require_service_api_key)],
)
async def approve_order(order_id: str, ledger: OrderLedger = Depends(get_ledger)):
    order = await ledger.approve(order_id)
    logger.info("order_approved", order_id=order_id)
    return OrderOut.model_validate(order)


@router.post(
    "/{order_id}/reject",
    response_model=OrderOut,
    dependencies=[Depends(require_service_api_key)],
)
async def reject_order(
    order_id: str,
    payload: Optional[RejectIn] = None,
    ledger: OrderLedger = Depends(get_ledger),
):
    order = await ledger.reject(order_id, payload.reason if payload else None)
    logger.info("order_rejected", order_id=order_id, reason=order.rejection_reason)
    return OrderOut.model_validate(order)
