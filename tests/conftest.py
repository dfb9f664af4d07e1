"""
Pytest configuration and fixtures.
"""
import os

# settings are read at import time
os.environ.setdefault("GATEWAY_API_KEY", "test_gateway_key")
os.environ.setdefault("SERVICE_API_KEY", "test-service-key")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("LOG_JSON", "false")

import itertools
import json
from datetime import datetime
from decimal import Decimal
from typing import Any, AsyncGenerator, Callable, Dict, List, Optional

import httpx
import pytest
import pytest_asyncio

from checkout.db import init_db, make_engine, make_session_factory
from checkout.ledger import BuyerDetails, OrderLedger
from checkout.models import Listing, ListingStatus
from checkout.rails import HostedRedirectRail, ManualSubmissionRail
from checkout.services.gateway import HostedGateway

GATEWAY_BASE = "https://gateway.test/v2"


class FakeGateway:
    """In-memory hosted gateway served through ``httpx.MockTransport``."""

    def __init__(self):
        self.payments: Dict[str, dict] = {}
        self.requests: List[httpx.Request] = []
        self.fail_with: Optional[Callable[[httpx.Request], httpx.Response]] = None
        self._ids = itertools.count(1)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    def calls(self, method: str) -> int:
        return sum(1 for r in self.requests if r.method == method)

    def set_status(self, reference: str, status: str) -> None:
        self.payments[reference]["status"] = status

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.fail_with is not None:
            return self.fail_with(request)

        path = request.url.path
        if request.method == "POST" and path.endswith("/payments"):
            body = json.loads(request.content)
            reference = f"tr_{next(self._ids)}"
            self.payments[reference] = {
                "id": reference,
                "status": "open",
                "amount": body["amount"],
                "description": body.get("description"),
                "metadata": body.get("metadata"),
                "redirectUrl": body.get("redirectUrl"),
                "_links": {"checkout": {"href": f"https://pay.gateway.test/{reference}"}},
            }
            return httpx.Response(201, json=self.payments[reference])

        if request.method == "GET" and "/payments/" in path:
            reference = path.rsplit("/", 1)[-1]
            if reference not in self.payments:
                return httpx.Response(404, json={"title": "Not Found"})
            return httpx.Response(200, json=self.payments[reference])

        return httpx.Response(404)


@pytest_asyncio.fixture
async def engine(tmp_path) -> AsyncGenerator[Any, Any]:
    """Fresh SQLite database per test."""
    eng = make_engine(f"sqlite+aiosqlite:///{tmp_path / 'checkout.db'}")
    await init_db(eng)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def ledger(session_factory) -> OrderLedger:
    return OrderLedger(session_factory, idempotency_window_seconds=900)


@pytest.fixture
def fake_gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def gateway(fake_gateway) -> HostedGateway:
    return HostedGateway(
        base_url=GATEWAY_BASE,
        api_key="test_gateway_key",
        timeout=2.0,
        transport=fake_gateway.transport,
    )


@pytest.fixture
def hosted_rail(ledger, gateway) -> HostedRedirectRail:
    return HostedRedirectRail(ledger, gateway)


@pytest.fixture
def manual_rail(ledger) -> ManualSubmissionRail:
    return ManualSubmissionRail(ledger)


@pytest.fixture
def add_listing(session_factory):
    """Insert a catalog listing; returns its id."""

    async def _add(
        listing_id: str = "prod-1",
        price: str = "1000.00",
        currency: str = "KES",
        status: str = ListingStatus.PUBLISHED.value,
        quantity: Optional[int] = None,
        kind: str = "product",
        expires_at: Optional[datetime] = None,
    ) -> str:
        async with session_factory() as session:
            session.add(
                Listing(
                    id=listing_id,
                    kind=kind,
                    seller_id="seller-1",
                    name="Handwoven Basket",
                    price=Decimal(price),
                    currency=currency,
                    status=status,
                    quantity=quantity,
                    expires_at=expires_at,
                )
            )
            await session.commit()
        return listing_id

    return _add


@pytest.fixture
def buyer() -> BuyerDetails:
    return BuyerDetails(name="Jane Wanjiku", phone="+254712345678", email="jane@example.com")
