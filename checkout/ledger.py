"""
Order ledger: the single source of truth for an order's state.

Creation is all-or-nothing (stock claim and insert share one transaction),
and every status write is a compare-and-swap against the status the ledger
last read, so two writers can never move an order backward.
"""
import json
import time
import uuid
from dataclasses import dataclass, field
from datetime import timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

import structlog
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import sessionmaker
from sqlmodel import select

from .catalog import CatalogEntry, ListingCatalog
from .errors import (
    InvalidTransition,
    NotPurchasable,
    OrderNotFound,
    PersistenceError,
    ValidationFailed,
)
from .models import Order, OrderStatus, SETTLED_STATUSES, can_transition, utcnow
from .validation import normalize_code, normalize_phone, validate_amount

logger = structlog.get_logger(__name__)

_BASE36 = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ"


def _base36(number: int) -> str:
    digits = []
    while number:
        number, rem = divmod(number, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits)) or "0"


def new_order_id() -> str:
    return f"ORD-{_base36(int(time.time() * 1000))}-{uuid.uuid4().hex[:8].upper()}"


@dataclass(frozen=True)
class BuyerDetails:
    name: str
    phone: str
    email: Optional[str] = None
    address: Optional[str] = None


@dataclass(frozen=True)
class ProofSubmission:
    code: str
    payment_method: str
    payer_phone: Optional[str] = None
    payer_name: Optional[str] = None
    declared_amount: Optional[Decimal] = None


@dataclass(frozen=True)
class OrderStatusView:
    order_id: str
    status: str
    rejection_reason: Optional[str] = None
    proof_code: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        out = {"order_id": self.order_id, "status": self.status}
        if self.rejection_reason:
            out["rejection_reason"] = self.rejection_reason
        if self.proof_code:
            out["proof_code"] = self.proof_code
        return out


@dataclass
class ProofOutcome:
    order: Order
    review_flags: List[str] = field(default_factory=list)


class OrderLedger:
    def __init__(
        self,
        session_factory: sessionmaker,
        catalog: Optional[ListingCatalog] = None,
        idempotency_window_seconds: int = 900,
    ):
        self.session_factory = session_factory
        self.catalog = catalog or ListingCatalog()
        self.idempotency_window = timedelta(seconds=idempotency_window_seconds)

    # ----- reads -----

    async def quote(self, listing_id: str) -> CatalogEntry:
        """Resolve a listing for display; raises NotPurchasable when it cannot be bought."""
        async with self.session_factory() as session:
            try:
                entry = await self.catalog.resolve(session, listing_id)
            except SQLAlchemyError as e:
                raise PersistenceError("Could not load the product. Please try again.") from e
        if entry is None:
            raise NotPurchasable("Product not found", code="listing_not_found", listing_id=listing_id)
        if not entry.purchasable:
            raise NotPurchasable(entry.reason, listing_id=listing_id)
        return entry

    async def get(self, order_id: str) -> Order:
        async with self.session_factory() as session:
            try:
                order = await session.get(Order, order_id)
            except SQLAlchemyError as e:
                raise PersistenceError("Could not load the order. Please try again.") from e
        if order is None:
            raise OrderNotFound(f"Order {order_id} not found", order_id=order_id)
        return order

    async def get_status(self, order_id: str) -> OrderStatusView:
        order = await self.get(order_id)
        return OrderStatusView(
            order_id=order.id,
            status=order.status,
            rejection_reason=order.rejection_reason,
            proof_code=order.proof_code,
        )

    async def find_by_reference(self, reference: str) -> Optional[Order]:
        async with self.session_factory() as session:
            try:
                res = await session.exec(select(Order).where(Order.gateway_reference == reference))
                return res.first()
            except SQLAlchemyError as e:
                raise PersistenceError("Could not load the order. Please try again.") from e

    async def list_awaiting_gateway(self, limit: int = 100) -> List[Order]:
        """Pending orders already handed to the hosted gateway, oldest first."""
        async with self.session_factory() as session:
            q = (
                select(Order)
                .where(Order.status == OrderStatus.PENDING.value)
                .where(Order.gateway_reference.is_not(None))
                .order_by(Order.created_at)
                .limit(limit)
            )
            try:
                res = await session.exec(q)
                return list(res.all())
            except SQLAlchemyError as e:
                raise PersistenceError("Could not load pending orders.") from e

    # ----- creation -----

    async def create_order(
        self,
        buyer: BuyerDetails,
        listing_id: str,
        payment_method: str,
        idempotency_key: Optional[str] = None,
    ) -> Order:
        """Create a pending order for one checkout attempt.

        A repeated ``idempotency_key`` inside the idempotency window returns the
        order already created for it instead of a new one; reusing it for a
        different listing is refused. Buyer fields are expected to be validated
        by the caller.
        """
        async with self.session_factory() as session:
            try:
                if idempotency_key:
                    existing = await self._existing_for_key(session, idempotency_key, listing_id)
                    if existing is not None:
                        logger.info(
                            "order_create_deduplicated",
                            order_id=existing.id,
                            idempotency_key=idempotency_key,
                        )
                        return existing

                entry = await self.catalog.resolve(session, listing_id)
                if entry is None:
                    raise NotPurchasable(
                        "Product not found", code="listing_not_found", listing_id=listing_id
                    )
                if not entry.purchasable:
                    raise NotPurchasable(entry.reason, listing_id=listing_id)
                if entry.tracks_stock and not await self.catalog.claim(session, listing_id):
                    # another buyer took the last unit between resolve and claim
                    raise NotPurchasable(
                        "This item is sold out", code="out_of_stock", listing_id=listing_id
                    )

                order = Order(
                    id=new_order_id(),
                    listing_id=entry.listing_id,
                    listing_kind=entry.kind,
                    seller_id=entry.seller_id,
                    item_name=entry.name,
                    amount=entry.price,
                    currency=entry.currency,
                    buyer_name=buyer.name.strip(),
                    buyer_phone=normalize_phone(buyer.phone),
                    buyer_email=buyer.email or None,
                    delivery_address=buyer.address or None,
                    payment_method=(payment_method or "").strip().upper(),
                    status=OrderStatus.PENDING.value,
                    idempotency_key=idempotency_key,
                )
                session.add(order)
                await session.commit()
                await session.refresh(order)
            except IntegrityError as e:
                await session.rollback()
                if not idempotency_key:
                    logger.error("order_create_failed", listing_id=listing_id, error=str(e))
                    raise PersistenceError("Failed to create order. Please try again.") from e
                # a concurrent request with the same key inserted first
                try:
                    existing = await self._existing_for_key(session, idempotency_key, listing_id)
                except SQLAlchemyError as exc:
                    raise PersistenceError("Failed to create order. Please try again.") from exc
                if existing is None:
                    raise PersistenceError("Failed to create order. Please try again.") from e
                logger.info(
                    "order_create_deduplicated",
                    order_id=existing.id,
                    idempotency_key=idempotency_key,
                    concurrent=True,
                )
                return existing
            except SQLAlchemyError as e:
                await session.rollback()
                logger.error("order_create_failed", listing_id=listing_id, error=str(e))
                raise PersistenceError("Failed to create order. Please try again.") from e

        logger.info(
            "order_created",
            order_id=order.id,
            listing_id=listing_id,
            amount=str(order.amount),
            currency=order.currency,
            payment_method=order.payment_method,
        )
        return order

    async def _existing_for_key(self, session, idempotency_key: str, listing_id: str) -> Optional[Order]:
        cutoff = utcnow() - self.idempotency_window
        q = (
            select(Order)
            .where(Order.idempotency_key == idempotency_key)
            .where(Order.created_at >= cutoff)
        )
        res = await session.exec(q)
        existing = res.first()
        if existing is None:
            # the key is unique; an order that aged out of the window gives it up
            await session.execute(
                update(Order)
                .where(Order.idempotency_key == idempotency_key, Order.created_at < cutoff)
                .values(idempotency_key=None)
            )
            return None
        if existing.listing_id != listing_id:
            raise ValidationFailed(
                "This checkout was already used for another product. Please start again.",
                code="idempotency_key_reused",
                order_id=existing.id,
            )
        return existing

    # ----- status writes -----

    async def _advance(
        self,
        order_id: str,
        target: OrderStatus,
        override: bool = False,
        allow_same: bool = False,
        **values: Any,
    ) -> Tuple[Order, bool]:
        """Move an order to ``target``; returns (order, changed)."""
        async with self.session_factory() as session:
            try:
                order = await session.get(Order, order_id)
                if order is None:
                    raise OrderNotFound(f"Order {order_id} not found", order_id=order_id)

                current = order.status
                if current == target.value and allow_same:
                    return order, False
                if not override and not can_transition(current, target):
                    raise InvalidTransition(
                        f"Order {order_id} cannot move from {current} to {target.value}",
                        order_id=order_id,
                        current=current,
                        target=target.value,
                    )

                now = utcnow()
                stmt = (
                    update(Order)
                    .where(Order.id == order_id, Order.status == current)
                    .values(status=target.value, updated_at=now, **values)
                )
                result = await session.execute(stmt)
                if result.rowcount != 1:
                    await session.rollback()
                    raise InvalidTransition(
                        f"Order {order_id} was updated concurrently",
                        code="concurrent_update",
                        order_id=order_id,
                    )
                await session.commit()
                await session.refresh(order)
            except SQLAlchemyError as e:
                await session.rollback()
                logger.error("order_update_failed", order_id=order_id, error=str(e))
                raise PersistenceError("Failed to update order. Please try again.") from e

        logger.info(
            "order_status_changed",
            order_id=order_id,
            from_status=current,
            to_status=target.value,
            override=override,
        )
        return order, True

    async def transition(self, order_id: str, target, override: bool = False) -> Order:
        """Generic lattice-checked write used by seller/admin collaborators."""
        target = OrderStatus(target)
        stamps = {}
        if target is OrderStatus.ACCEPTED:
            stamps["accepted_at"] = utcnow()
        elif target is OrderStatus.SHIPPED:
            stamps["shipped_at"] = utcnow()
        elif target is OrderStatus.PAID:
            stamps["paid_at"] = utcnow()
        order, _ = await self._advance(order_id, target, override=override, **stamps)
        return order

    async def record_gateway_reference(self, order_id: str, reference: str) -> Order:
        """Link a hosted-gateway reference to a pending order; status is untouched."""
        async with self.session_factory() as session:
            try:
                order = await session.get(Order, order_id)
                if order is None:
                    raise OrderNotFound(f"Order {order_id} not found", order_id=order_id)
                order.gateway_reference = reference
                order.updated_at = utcnow()
                session.add(order)
                await session.commit()
                await session.refresh(order)
            except SQLAlchemyError as e:
                await session.rollback()
                raise PersistenceError("Failed to update order. Please try again.") from e
        return order

    async def attach_proof(self, order_id: str, proof: ProofSubmission) -> ProofOutcome:
        """Attach a validated proof code and move the order to under review.

        The declared amount and code reuse are recorded as reviewer flags only.
        """
        code = normalize_code(proof.code)
        order = await self.get(order_id)
        if order.status != OrderStatus.PENDING.value:
            raise InvalidTransition(
                "Payment has already been submitted for this order",
                code="proof_already_submitted",
                order_id=order_id,
                current=order.status,
            )

        flags = []
        if proof.declared_amount is not None:
            amount_check = validate_amount(proof.declared_amount, order.amount)
            if not amount_check.valid:
                flags.append({"type": "amount_mismatch", "detail": amount_check.error})
        duplicates = await self._orders_with_code(code, exclude=order_id)
        if duplicates:
            flags.append({"type": "duplicate_code", "orders": duplicates})

        order, _ = await self._advance(
            order_id,
            OrderStatus.UNDER_REVIEW,
            proof_code=code,
            payer_name=proof.payer_name or order.buyer_name,
            payer_phone=normalize_phone(proof.payer_phone) or order.buyer_phone,
            declared_amount=proof.declared_amount,
            payment_method=(proof.payment_method or order.payment_method).strip().upper(),
            review_flags=json.dumps(flags) if flags else None,
            submitted_at=utcnow(),
        )
        if flags:
            logger.warning(
                "proof_flagged_for_review",
                order_id=order_id,
                flags=[f["type"] for f in flags],
            )
        return ProofOutcome(order=order, review_flags=[f["type"] for f in flags])

    async def _orders_with_code(self, code: str, exclude: str) -> List[str]:
        async with self.session_factory() as session:
            q = select(Order.id).where(Order.proof_code == code).where(Order.id != exclude)
            try:
                res = await session.exec(q)
                return list(res.all())
            except SQLAlchemyError as e:
                raise PersistenceError("Could not check the payment code. Please try again.") from e

    async def mark_paid(
        self, order_id: str, reference: str, confirmation_code: Optional[str] = None
    ) -> Tuple[Order, bool]:
        """Settle a hosted-redirect order. Repeating it is a no-op."""
        order = await self.get(order_id)
        if OrderStatus(order.status) in SETTLED_STATUSES:
            return order, False
        order, changed = await self._advance(
            order_id,
            OrderStatus.PAID,
            allow_same=True,
            gateway_reference=reference,
            confirmation_code=confirmation_code or reference,
            paid_at=utcnow(),
        )
        return order, changed

    async def approve(self, order_id: str) -> Order:
        """Reviewer approval of a manual submission."""
        order = await self.get(order_id)
        if order.status != OrderStatus.UNDER_REVIEW.value:
            raise InvalidTransition(
                f"Only orders under review can be approved (order is {order.status})",
                order_id=order_id,
            )
        order, _ = await self._advance(order_id, OrderStatus.PAID, paid_at=utcnow())
        return order

    async def reject(self, order_id: str, reason: Optional[str] = None) -> Order:
        order, _ = await self._advance(
            order_id,
            OrderStatus.REJECTED,
            rejection_reason=reason or "Payment verification failed",
            rejected_at=utcnow(),
        )
        return order
