"""
Payment rails.

There are exactly two: the hosted redirect (the gateway collects the money
and calls back) and manual submission (the buyer pays out of band and types
a proof code for a reviewer). ``RailKind`` is the closed list; adding a rail
means adding a member there and a branch wherever rails are dispatched.
"""
from abc import ABC
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Tuple

import structlog

from .errors import GatewayError, OrderNotFound, ValidationFailed
from .ledger import OrderLedger, ProofSubmission
from .models import OrderStatus, SETTLED_STATUSES
from .services.gateway import HostedGateway
from .validation import normalize_code, resolve_family, validate_code

logger = structlog.get_logger(__name__)


class RailKind(str, Enum):
    HOSTED_REDIRECT = "hosted_redirect"
    MANUAL_SUBMISSION = "manual_submission"


class PaymentRail(ABC):
    kind: RailKind


@dataclass(frozen=True)
class RedirectHandoff:
    order_id: str
    reference: str
    redirect_url: str


@dataclass(frozen=True)
class VerifyOutcome:
    reference: str
    order_id: Optional[str]
    confirmed: bool
    final: bool  # False while the gateway has not decided yet
    status: str
    reason: Optional[str] = None


@dataclass(frozen=True)
class SubmissionReceipt:
    order_id: str
    status: str
    proof_code: str
    warnings: Tuple[str, ...] = field(default_factory=tuple)
    review_flags: Tuple[str, ...] = field(default_factory=tuple)


class HostedRedirectRail(PaymentRail):
    kind = RailKind.HOSTED_REDIRECT

    def __init__(self, ledger: OrderLedger, gateway: HostedGateway):
        self.ledger = ledger
        self.gateway = gateway

    async def initialize(self, order_id: str, callback_url: Optional[str] = None) -> RedirectHandoff:
        """Open a gateway payment for a pending order.

        The order keeps its status whatever happens here; only ``verify``
        settles it.
        """
        order = await self.ledger.get(order_id)
        if order.status != OrderStatus.PENDING.value:
            raise ValidationFailed(
                f"Order {order_id} is {order.status} and cannot be paid again",
                code="order_not_pending",
            )

        buyer = {"name": order.buyer_name, "phone": order.buyer_phone}
        if order.buyer_email:
            buyer["email"] = order.buyer_email

        payment = await self.gateway.create_payment(
            order_id=order.id,
            amount=order.amount,
            currency=order.currency,
            redirect_url=callback_url,
            description=order.item_name,
            buyer=buyer,
            metadata={"listingId": order.listing_id},
        )
        await self.ledger.record_gateway_reference(order.id, payment.reference)
        return RedirectHandoff(
            order_id=order.id, reference=payment.reference, redirect_url=payment.redirect_url
        )

    async def verify(self, reference: str, order_id: Optional[str] = None) -> VerifyOutcome:
        """Ask the gateway how a payment ended and settle the order if it was paid.

        The order is the one the reference was recorded on; an ``order_id``
        from the caller only has to agree with it. Verifying a reference
        whose order is already settled does not call the gateway again.
        """
        order = await self.ledger.find_by_reference(reference)
        if order is not None:
            self._check_linked(order, reference, order_id)
        elif order_id:
            try:
                order = await self.ledger.get(order_id)
            except OrderNotFound:
                order = None
            if order is not None:
                self._check_linked(order, reference, order_id)

        if order is not None and OrderStatus(order.status) in SETTLED_STATUSES:
            return VerifyOutcome(
                reference=reference,
                order_id=order.id,
                confirmed=True,
                final=True,
                status=order.status,
            )

        payment = await self.gateway.get_payment(reference)
        if payment.order_id:
            if order_id and payment.order_id != order_id:
                self._mismatch(reference, order_id, payment.order_id)
            if order is None:
                try:
                    order = await self.ledger.get(payment.order_id)
                except OrderNotFound:
                    order = None
                if order is not None:
                    self._check_linked(order, reference, payment.order_id)
            elif payment.order_id != order.id:
                self._mismatch(reference, order.id, payment.order_id)
        resolved_id = order.id if order is not None else None

        if payment.confirmed:
            if order is None:
                raise GatewayError(
                    "Payment confirmed but no order is linked to it. Contact support.",
                    code="orphan_payment",
                    reference=reference,
                )
            self._check_amount(order, payment)
            settled, changed = await self.ledger.mark_paid(
                order.id, reference, payment.confirmation_code
            )
            logger.info(
                "hosted_payment_verified",
                order_id=settled.id,
                reference=reference,
                newly_settled=changed,
            )
            return VerifyOutcome(
                reference=reference,
                order_id=settled.id,
                confirmed=True,
                final=True,
                status=settled.status,
            )

        if payment.failed:
            logger.info(
                "hosted_payment_failed",
                order_id=resolved_id,
                reference=reference,
                gateway_status=payment.status,
            )
            return VerifyOutcome(
                reference=reference,
                order_id=resolved_id,
                confirmed=False,
                final=True,
                status=OrderStatus.PENDING.value,
                reason=f"Payment {payment.status}",
            )

        return VerifyOutcome(
            reference=reference,
            order_id=resolved_id,
            confirmed=False,
            final=False,
            status=OrderStatus.PENDING.value,
            reason="Payment is still pending verification",
        )

    def _check_linked(self, order, reference: str, order_id: Optional[str]) -> None:
        if order_id and order.id != order_id:
            self._mismatch(reference, order_id, order.id)
        if order.gateway_reference and order.gateway_reference != reference:
            self._mismatch(reference, order.id, order.gateway_reference)

    @staticmethod
    def _mismatch(reference: str, claimed: str, actual: str) -> None:
        logger.warning(
            "hosted_reference_mismatch", reference=reference, claimed=claimed, actual=actual
        )
        raise GatewayError(
            "Payment reference does not belong to this order.",
            code="reference_mismatch",
            reference=reference,
        )

    @staticmethod
    def _check_amount(order, payment) -> None:
        # paid amount is compared against the snapshot taken at order creation
        short = payment.amount is None or payment.amount < order.amount
        wrong_currency = bool(payment.currency) and payment.currency.upper() != order.currency
        if short or wrong_currency:
            logger.warning(
                "hosted_amount_mismatch",
                order_id=order.id,
                reference=payment.reference,
                paid=str(payment.amount),
                paid_currency=payment.currency,
                expected=str(order.amount),
                currency=order.currency,
            )
            raise GatewayError(
                f"Paid amount does not cover order total {order.amount} {order.currency}.",
                code="amount_mismatch",
                reference=payment.reference,
            )


class ManualSubmissionRail(PaymentRail):
    kind = RailKind.MANUAL_SUBMISSION

    def __init__(self, ledger: OrderLedger):
        self.ledger = ledger

    async def submit(self, order_id: str, proof: ProofSubmission) -> SubmissionReceipt:
        """Attach buyer-typed proof to an order and hand it to review.

        Invalid codes are rejected before anything is read or written.
        Approval is never done here.
        """
        check = validate_code(proof.code, resolve_family(proof.payment_method))
        if not check.valid:
            raise ValidationFailed(check.error, code=f"invalid_code_{check.reason}")

        outcome = await self.ledger.attach_proof(order_id, proof)
        logger.info(
            "manual_payment_submitted",
            order_id=order_id,
            proof_code=normalize_code(proof.code),
            payment_method=proof.payment_method,
        )
        return SubmissionReceipt(
            order_id=outcome.order.id,
            status=outcome.order.status,
            proof_code=outcome.order.proof_code,
            warnings=check.warnings,
            review_flags=tuple(outcome.review_flags),
        )
