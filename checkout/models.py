from typing import Optional
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from sqlmodel import SQLModel, Field


def utcnow() -> datetime:
    # naive UTC, the form SQLite hands back
    return datetime.now(timezone.utc).replace(tzinfo=None)


class ListingStatus(str, Enum):
    DRAFT = "draft"
    PUBLISHED = "published"  # store products
    ACTIVE = "active"  # payment links
    SOLD_OUT = "sold_out"
    ARCHIVED = "archived"
    EXPIRED = "expired"


PURCHASABLE_LISTING_STATUSES = {ListingStatus.PUBLISHED.value, ListingStatus.ACTIVE.value}


class Listing(SQLModel, table=True):
    """A sellable product or payment link, as the catalog exposes it."""

    __tablename__ = "listings"

    id: str = Field(primary_key=True)
    kind: str = "product"  # product | link
    seller_id: str = Field(index=True)
    name: str
    price: Decimal = Field(max_digits=14, decimal_places=2)
    currency: Optional[str] = None  # None: settings.default_currency
    status: str = Field(default=ListingStatus.PUBLISHED.value, index=True)
    quantity: Optional[int] = None  # None: stock not tracked
    expires_at: Optional[datetime] = None
    updated_at: datetime = Field(default_factory=utcnow)


class OrderStatus(str, Enum):
    PENDING = "pending"
    UNDER_REVIEW = "under_review"
    PAID = "paid"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    ACCEPTED = "accepted"
    SHIPPED = "shipped"
    COMPLETED = "completed"


# forward moves only; anything else needs an admin override
ALLOWED_TRANSITIONS = {
    OrderStatus.PENDING: {OrderStatus.UNDER_REVIEW, OrderStatus.PAID, OrderStatus.CANCELLED},
    OrderStatus.UNDER_REVIEW: {OrderStatus.PAID, OrderStatus.REJECTED},
    OrderStatus.PAID: {OrderStatus.ACCEPTED},
    OrderStatus.ACCEPTED: {OrderStatus.SHIPPED},
    OrderStatus.SHIPPED: {OrderStatus.COMPLETED},
    OrderStatus.REJECTED: set(),
    OrderStatus.CANCELLED: set(),
    OrderStatus.COMPLETED: set(),
}

# statuses after which the buyer-facing checkout has nothing left to wait for
SETTLED_STATUSES = {
    OrderStatus.PAID,
    OrderStatus.ACCEPTED,
    OrderStatus.SHIPPED,
    OrderStatus.COMPLETED,
}
TERMINAL_STATUSES = SETTLED_STATUSES | {OrderStatus.REJECTED, OrderStatus.CANCELLED}


def can_transition(current, target) -> bool:
    return OrderStatus(target) in ALLOWED_TRANSITIONS[OrderStatus(current)]


class Order(SQLModel, table=True):
    """One purchase attempt and its settlement lifecycle (a.k.a. transaction)."""

    __tablename__ = "orders"

    id: str = Field(primary_key=True)
    listing_id: str = Field(index=True)
    listing_kind: str = "product"
    seller_id: str = Field(index=True)
    item_name: str

    # snapshotted from the listing at creation time
    amount: Decimal = Field(max_digits=14, decimal_places=2)
    currency: str = "KES"

    buyer_name: str
    buyer_phone: str
    buyer_email: Optional[str] = None
    delivery_address: Optional[str] = None

    payment_method: str
    status: str = Field(default=OrderStatus.PENDING.value, index=True)

    idempotency_key: Optional[str] = Field(default=None, unique=True, index=True)
    gateway_reference: Optional[str] = Field(default=None, index=True)

    # manual submission evidence
    proof_code: Optional[str] = Field(default=None, index=True)
    payer_name: Optional[str] = None
    payer_phone: Optional[str] = None
    declared_amount: Optional[Decimal] = Field(default=None, max_digits=14, decimal_places=2)
    review_flags: Optional[str] = None  # JSON list of reviewer-facing signals

    rejection_reason: Optional[str] = None
    confirmation_code: Optional[str] = None

    # owned by the shipping collaborator
    courier: Optional[str] = None
    tracking_number: Optional[str] = None

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    submitted_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    accepted_at: Optional[datetime] = None
    shipped_at: Optional[datetime] = None
    rejected_at: Optional[datetime] = None
