"""
Read side of the product/link catalog, plus the one write the checkout
needs from it: claiming a unit of stock.
"""
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from sqlalchemy import update
from sqlmodel.ext.asyncio.session import AsyncSession

from .config import settings
from .models import Listing, ListingStatus, PURCHASABLE_LISTING_STATUSES, utcnow


@dataclass(frozen=True)
class CatalogEntry:
    listing_id: str
    kind: str
    seller_id: str
    name: str
    price: Decimal
    currency: str
    purchasable: bool
    tracks_stock: bool
    reason: Optional[str] = None  # why it is not purchasable


class ListingCatalog:
    def __init__(self, default_currency: Optional[str] = None):
        self.default_currency = default_currency or settings.default_currency

    async def resolve(self, session: AsyncSession, listing_id: str) -> Optional[CatalogEntry]:
        listing = await session.get(Listing, listing_id)
        if listing is None:
            return None

        reason = None
        status = (listing.status or "").lower()
        if status == ListingStatus.SOLD_OUT.value:
            reason = "This item is sold out"
        elif status not in PURCHASABLE_LISTING_STATUSES:
            reason = f"This {listing.kind} is {status or 'unavailable'}"
        elif listing.expires_at is not None and utcnow() > listing.expires_at:
            reason = "This link has expired"
        elif listing.quantity is not None and listing.quantity <= 0:
            reason = "This item is sold out"
        elif not listing.price or listing.price <= 0:
            reason = "Product price not set"

        return CatalogEntry(
            listing_id=listing.id,
            kind=listing.kind,
            seller_id=listing.seller_id,
            name=listing.name,
            price=Decimal(listing.price or 0),
            currency=(listing.currency or self.default_currency).upper(),
            purchasable=reason is None,
            tracks_stock=listing.quantity is not None,
            reason=reason,
        )

    async def claim(self, session: AsyncSession, listing_id: str) -> bool:
        """Take one unit of stock. Availability check and decrement are one statement."""
        stmt = (
            update(Listing)
            .where(Listing.id == listing_id, Listing.quantity > 0)
            .values(quantity=Listing.quantity - 1, updated_at=utcnow())
        )
        result = await session.execute(stmt)
        return result.rowcount == 1
