from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, Request
from typing import Optional
import structlog
from ..schemas import InitializeIn, InitializeOut, VerifyIn, VerifyOut
from ..errors import CheckoutError
from ..rails import HostedRedirectRail, VerifyOutcome
from ..utils import get_hosted_rail

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/payments", tags=["payments"])


def _verify_out(outcome: VerifyOutcome) -> VerifyOut:
    if outcome.confirmed:
        message = "Payment verified successfully!"
    else:
        message = outcome.reason
    return VerifyOut(
        reference=outcome.reference,
        order_id=outcome.order_id,
        confirmed=outcome.confirmed,
        final=outcome.final,
        status=outcome.status,
        message=message,
    )


@router.post("/initialize", response_model=InitializeOut)
async def initialize_payment(
    payload: InitializeIn, rail: HostedRedirectRail = Depends(get_hosted_rail)
):
    """Open a hosted payment for a pending order and return the checkout URL."""
    handoff = await rail.initialize(payload.order_id, payload.callback_url)
    return InitializeOut(
        order_id=handoff.order_id,
        reference=handoff.reference,
        redirect_url=handoff.redirect_url,
    )


@router.post("/verify", response_model=VerifyOut)
async def verify_payment(payload: VerifyIn, rail: HostedRedirectRail = Depends(get_hosted_rail)):
    outcome = await rail.verify(payload.reference, payload.order_id)
    return _verify_out(outcome)


@router.get("/callback", response_model=VerifyOut)
async def payment_callback(
    reference: Optional[str] = None,
    trxref: Optional[str] = None,
    order_id: Optional[str] = Query(default=None, alias="orderId"),
    rail: HostedRedirectRail = Depends(get_hosted_rail),
):
    """
    The buyer lands here after the gateway redirect. Some gateways send the
    reference as 'trxref'; the order id is optional and recovered from the
    reference when missing.
    """
    ref = reference or trxref
    if not ref:
        raise HTTPException(status_code=400, detail="Missing payment reference")
    outcome = await rail.verify(ref, order_id)
    return _verify_out(outcome)


# Webhook (gateway -> POST)
@router.post("/webhook")
async def webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    rail: HostedRedirectRail = Depends(get_hosted_rail),
):
    """
    The gateway POSTs a small payload containing 'id' (the payment reference).
    We answer right away and verify against the gateway in the background.
    """
    try:
        payload = await request.json()
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid webhook payload")
    reference = payload.get("id") if isinstance(payload, dict) else None
    if not reference:
        raise HTTPException(status_code=400, detail="Missing id in webhook payload")

    background_tasks.add_task(handle_webhook_update, rail, reference)
    return {"status": "accepted"}


async def handle_webhook_update(rail: HostedRedirectRail, reference: str):
    try:
        outcome = await rail.verify(reference)
    except CheckoutError as e:
        # the reconciliation sweep picks it up later
        logger.warning("webhook_verify_failed", reference=reference, code=e.code, error=e.message)
        return
    logger.info(
        "webhook_processed",
        reference=reference,
        order_id=outcome.order_id,
        confirmed=outcome.confirmed,
        final=outcome.final,
    )
