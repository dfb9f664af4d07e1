"""
Order ledger tests: creation, price snapshot, stock claims and the status lattice.
"""
import asyncio
import json
from datetime import timedelta
from decimal import Decimal

import pytest

from sqlalchemy.exc import OperationalError
from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from checkout.catalog import ListingCatalog
from checkout.errors import (
    InvalidTransition,
    NotPurchasable,
    OrderNotFound,
    PersistenceError,
    ValidationFailed,
)
from checkout.ledger import OrderLedger, ProofSubmission
from checkout.models import Listing, ListingStatus, Order, OrderStatus, utcnow


class TestCreateOrder:
    @pytest.mark.asyncio
    async def test_creates_pending_order_with_snapshot(self, ledger, add_listing, buyer) -> None:
        await add_listing(price="1500.00")

        order = await ledger.create_order(buyer, "prod-1", "mpesa")

        assert order.id.startswith("ORD-")
        assert order.status == OrderStatus.PENDING.value
        assert order.amount == Decimal("1500.00")
        assert order.currency == "KES"
        assert order.seller_id == "seller-1"
        assert order.payment_method == "MPESA"
        assert order.buyer_phone == "+254712345678"

    @pytest.mark.asyncio
    async def test_price_edit_after_creation_does_not_change_order(
        self, ledger, add_listing, buyer, session_factory
    ) -> None:
        await add_listing(price="1000.00")
        order = await ledger.create_order(buyer, "prod-1", "MPESA")

        async with session_factory() as session:
            listing = await session.get(Listing, "prod-1")
            listing.price = Decimal("2500.00")
            session.add(listing)
            await session.commit()

        stored = await ledger.get(order.id)
        assert stored.amount == Decimal("1000.00")

    @pytest.mark.asyncio
    async def test_same_idempotency_key_returns_existing_order(
        self, ledger, add_listing, buyer
    ) -> None:
        await add_listing()

        first = await ledger.create_order(buyer, "prod-1", "MPESA", idempotency_key="sess-1")
        second = await ledger.create_order(buyer, "prod-1", "MPESA", idempotency_key="sess-1")
        other = await ledger.create_order(buyer, "prod-1", "MPESA", idempotency_key="sess-2")

        assert first.id == second.id
        assert other.id != first.id

    @pytest.mark.asyncio
    async def test_idempotency_key_outside_window_creates_new_order(
        self, ledger, add_listing, buyer, session_factory
    ) -> None:
        await add_listing()
        first = await ledger.create_order(buyer, "prod-1", "MPESA", idempotency_key="sess-1")

        async with session_factory() as session:
            stale = await session.get(Order, first.id)
            stale.created_at = utcnow() - timedelta(hours=1)
            session.add(stale)
            await session.commit()

        second = await ledger.create_order(buyer, "prod-1", "MPESA", idempotency_key="sess-1")
        assert second.id != first.id

    @pytest.mark.asyncio
    async def test_idempotency_key_is_scoped_to_listing(self, ledger, add_listing, buyer) -> None:
        await add_listing("prod-1")
        await add_listing("prod-2")
        await ledger.create_order(buyer, "prod-1", "MPESA", idempotency_key="sess-1")

        with pytest.raises(ValidationFailed) as exc:
            await ledger.create_order(buyer, "prod-2", "MPESA", idempotency_key="sess-1")
        assert exc.value.code == "idempotency_key_reused"

    @pytest.mark.asyncio
    async def test_concurrent_creates_with_same_key(
        self, ledger, add_listing, buyer, session_factory
    ) -> None:
        """Simultaneous retries of one checkout create a single order."""
        await add_listing(quantity=5)

        results = await asyncio.gather(
            *[
                ledger.create_order(buyer, "prod-1", "MPESA", idempotency_key="sess-race")
                for _ in range(4)
            ],
            return_exceptions=True,
        )

        assert not [r for r in results if isinstance(r, Exception)]
        assert len({order.id for order in results}) == 1
        async with session_factory() as session:
            rows = await session.exec(select(Order).where(Order.idempotency_key == "sess-race"))
            assert len(rows.all()) == 1
            listing = await session.get(Listing, "prod-1")
        # losing inserts give their stock claim back
        assert listing.quantity == 4

    @pytest.mark.asyncio
    async def test_missing_currency_falls_back_to_default(
        self, session_factory, add_listing, buyer
    ) -> None:
        await add_listing(currency=None)
        default_ledger = OrderLedger(session_factory)
        ugx_ledger = OrderLedger(session_factory, catalog=ListingCatalog(default_currency="ugx"))

        assert (await default_ledger.create_order(buyer, "prod-1", "MPESA")).currency == "KES"
        assert (await ugx_ledger.create_order(buyer, "prod-1", "MPESA")).currency == "UGX"

    @pytest.mark.asyncio
    async def test_missing_listing(self, ledger, buyer) -> None:
        with pytest.raises(NotPurchasable) as exc:
            await ledger.create_order(buyer, "nope", "MPESA")
        assert exc.value.code == "listing_not_found"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "status,message",
        [
            (ListingStatus.DRAFT.value, "This product is draft"),
            (ListingStatus.ARCHIVED.value, "This product is archived"),
            (ListingStatus.SOLD_OUT.value, "This item is sold out"),
        ],
    )
    async def test_unpurchasable_status(self, ledger, add_listing, buyer, status, message) -> None:
        await add_listing(status=status)
        with pytest.raises(NotPurchasable) as exc:
            await ledger.create_order(buyer, "prod-1", "MPESA")
        assert exc.value.message == message

    @pytest.mark.asyncio
    async def test_expired_link(self, ledger, add_listing, buyer) -> None:
        await add_listing(
            listing_id="link-1",
            kind="link",
            status=ListingStatus.ACTIVE.value,
            expires_at=utcnow() - timedelta(minutes=1),
        )
        with pytest.raises(NotPurchasable) as exc:
            await ledger.create_order(buyer, "link-1", "MPESA")
        assert exc.value.message == "This link has expired"

    @pytest.mark.asyncio
    async def test_stock_is_claimed_once(self, ledger, add_listing, buyer, session_factory) -> None:
        await add_listing(quantity=1)

        await ledger.create_order(buyer, "prod-1", "MPESA")
        with pytest.raises(NotPurchasable):
            await ledger.create_order(buyer, "prod-1", "MPESA")

        async with session_factory() as session:
            listing = await session.get(Listing, "prod-1")
        assert listing.quantity == 0

    @pytest.mark.asyncio
    async def test_concurrent_buyers_for_last_unit(self, ledger, add_listing, buyer) -> None:
        """Only one of several simultaneous buyers gets the last unit."""
        await add_listing(quantity=1)

        results = await asyncio.gather(
            *[ledger.create_order(buyer, "prod-1", "MPESA") for _ in range(3)],
            return_exceptions=True,
        )

        created = [r for r in results if not isinstance(r, Exception)]
        refused = [r for r in results if isinstance(r, NotPurchasable)]
        assert len(created) == 1
        assert len(refused) == 2

    @pytest.mark.asyncio
    async def test_claim_is_conditional(self, add_listing, session_factory, ledger) -> None:
        await add_listing(quantity=1)
        async with session_factory() as session:
            assert await ledger.catalog.claim(session, "prod-1")
            assert not await ledger.catalog.claim(session, "prod-1")
            await session.commit()


class TestReads:
    @pytest.mark.asyncio
    async def test_get_missing_order(self, ledger) -> None:
        with pytest.raises(OrderNotFound):
            await ledger.get("ORD-MISSING")

    @pytest.mark.asyncio
    async def test_quote(self, ledger, add_listing) -> None:
        await add_listing(price="750.50")
        entry = await ledger.quote("prod-1")
        assert entry.price == Decimal("750.50")
        assert entry.purchasable

    @pytest.mark.asyncio
    async def test_status_view(self, ledger, add_listing, buyer) -> None:
        await add_listing()
        order = await ledger.create_order(buyer, "prod-1", "MPESA")
        view = await ledger.get_status(order.id)
        assert view.as_dict() == {"order_id": order.id, "status": "pending"}


class TestStatusLattice:
    @pytest.mark.asyncio
    async def test_attach_proof_moves_to_under_review(self, ledger, add_listing, buyer) -> None:
        await add_listing()
        order = await ledger.create_order(buyer, "prod-1", "MPESA")

        outcome = await ledger.attach_proof(
            order.id, ProofSubmission(code=" qgh2kpm123 ", payment_method="MPESA")
        )

        assert outcome.order.status == OrderStatus.UNDER_REVIEW.value
        assert outcome.order.proof_code == "QGH2KPM123"
        assert outcome.review_flags == []
        view = await ledger.get_status(order.id)
        assert view.proof_code == "QGH2KPM123"

    @pytest.mark.asyncio
    async def test_second_proof_is_refused(self, ledger, add_listing, buyer) -> None:
        await add_listing()
        order = await ledger.create_order(buyer, "prod-1", "MPESA")
        await ledger.attach_proof(order.id, ProofSubmission(code="QGH2KPM123", payment_method="MPESA"))

        with pytest.raises(InvalidTransition) as exc:
            await ledger.attach_proof(
                order.id, ProofSubmission(code="QGH2KPM999", payment_method="MPESA")
            )
        assert exc.value.code == "proof_already_submitted"

    @pytest.mark.asyncio
    async def test_reviewer_flags(self, ledger, add_listing, buyer) -> None:
        await add_listing(price="1000.00")
        first = await ledger.create_order(buyer, "prod-1", "MPESA")
        second = await ledger.create_order(buyer, "prod-1", "MPESA")
        await ledger.attach_proof(first.id, ProofSubmission(code="QGH2KPM123", payment_method="MPESA"))

        outcome = await ledger.attach_proof(
            second.id,
            ProofSubmission(
                code="QGH2KPM123", payment_method="MPESA", declared_amount=Decimal("900")
            ),
        )

        # flags never block the submission
        assert outcome.order.status == OrderStatus.UNDER_REVIEW.value
        assert outcome.review_flags == ["amount_mismatch", "duplicate_code"]
        flags = json.loads(outcome.order.review_flags)
        assert "Short by 100.00" in flags[0]["detail"]
        assert flags[1]["orders"] == [first.id]

    @pytest.mark.asyncio
    async def test_approve_and_reject(self, ledger, add_listing, buyer) -> None:
        await add_listing()
        approved = await ledger.create_order(buyer, "prod-1", "MPESA")
        rejected = await ledger.create_order(buyer, "prod-1", "MPESA")
        for order in (approved, rejected):
            await ledger.attach_proof(
                order.id, ProofSubmission(code=f"QGH2KPM{order.id[-3:]}", payment_method="MPESA")
            )

        paid = await ledger.approve(approved.id)
        assert paid.status == OrderStatus.PAID.value
        assert paid.paid_at is not None

        refused = await ledger.reject(rejected.id, "Code not found on statement")
        assert refused.status == OrderStatus.REJECTED.value
        view = await ledger.get_status(rejected.id)
        assert view.rejection_reason == "Code not found on statement"

    @pytest.mark.asyncio
    async def test_pending_order_cannot_be_approved(self, ledger, add_listing, buyer) -> None:
        await add_listing()
        order = await ledger.create_order(buyer, "prod-1", "MPESA")
        with pytest.raises(InvalidTransition):
            await ledger.approve(order.id)

    @pytest.mark.asyncio
    async def test_no_backward_moves_without_override(self, ledger, add_listing, buyer) -> None:
        await add_listing()
        order = await ledger.create_order(buyer, "prod-1", "MPESA")
        await ledger.attach_proof(order.id, ProofSubmission(code="QGH2KPM123", payment_method="MPESA"))

        with pytest.raises(InvalidTransition):
            await ledger.transition(order.id, OrderStatus.PENDING)

        reopened = await ledger.transition(order.id, OrderStatus.PENDING, override=True)
        assert reopened.status == OrderStatus.PENDING.value

    @pytest.mark.asyncio
    async def test_fulfilment_chain(self, ledger, add_listing, buyer) -> None:
        await add_listing()
        order = await ledger.create_order(buyer, "prod-1", "MPESA")
        await ledger.mark_paid(order.id, "tr_1")

        accepted = await ledger.transition(order.id, "accepted")
        assert accepted.accepted_at is not None
        shipped = await ledger.transition(order.id, OrderStatus.SHIPPED)
        assert shipped.shipped_at is not None
        completed = await ledger.transition(order.id, OrderStatus.COMPLETED)
        assert completed.status == OrderStatus.COMPLETED.value

        with pytest.raises(InvalidTransition):
            await ledger.transition(order.id, OrderStatus.PAID)

    @pytest.mark.asyncio
    async def test_mark_paid_is_idempotent(self, ledger, add_listing, buyer) -> None:
        await add_listing()
        order = await ledger.create_order(buyer, "prod-1", "MPESA")

        first, changed_first = await ledger.mark_paid(order.id, "tr_1")
        second, changed_second = await ledger.mark_paid(order.id, "tr_1")

        assert changed_first is True
        assert changed_second is False
        assert first.status == second.status == OrderStatus.PAID.value
        assert second.confirmation_code == "tr_1"

    @pytest.mark.asyncio
    async def test_concurrent_approve_and_reject(self, ledger, add_listing, buyer) -> None:
        """Two reviewers racing on one order: exactly one write lands."""
        await add_listing()
        order = await ledger.create_order(buyer, "prod-1", "MPESA")
        await ledger.attach_proof(order.id, ProofSubmission(code="QGH2KPM123", payment_method="MPESA"))

        results = await asyncio.gather(
            ledger.approve(order.id),
            ledger.reject(order.id, "duplicate"),
            return_exceptions=True,
        )

        winners = [r for r in results if not isinstance(r, Exception)]
        losers = [r for r in results if isinstance(r, InvalidTransition)]
        assert len(winners) == 1
        assert len(losers) == 1
        final = await ledger.get(order.id)
        assert final.status == winners[0].status


def break_selects(monkeypatch) -> None:
    async def exec_fails(self, *args, **kwargs):
        raise OperationalError("SELECT", {}, Exception("disk I/O error"))

    monkeypatch.setattr(AsyncSession, "exec", exec_fails)


class TestReadFailures:
    @pytest.fixture
    def broken_selects(self, monkeypatch) -> None:
        break_selects(monkeypatch)

    @pytest.mark.asyncio
    async def test_find_by_reference(self, ledger, broken_selects) -> None:
        with pytest.raises(PersistenceError):
            await ledger.find_by_reference("tr_1")

    @pytest.mark.asyncio
    async def test_list_awaiting_gateway(self, ledger, broken_selects) -> None:
        with pytest.raises(PersistenceError):
            await ledger.list_awaiting_gateway()

    @pytest.mark.asyncio
    async def test_duplicate_code_lookup(self, ledger, add_listing, buyer, monkeypatch) -> None:
        await add_listing()
        order = await ledger.create_order(buyer, "prod-1", "MPESA")
        break_selects(monkeypatch)

        with pytest.raises(PersistenceError):
            await ledger.attach_proof(order.id, ProofSubmission(code="QGH2KPM123", payment_method="MPESA"))
        assert (await ledger.get(order.id)).status == OrderStatus.PENDING.value
