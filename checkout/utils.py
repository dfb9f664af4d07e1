from fastapi import Depends, Header, HTTPException
from typing import Optional
from .config import settings
from .db import async_session
from .ledger import OrderLedger
from .rails import HostedRedirectRail, ManualSubmissionRail
from .services.gateway import HostedGateway


def require_service_api_key(x_api_key: Optional[str] = Header(default=None)):
    if x_api_key != settings.service_api_key:
        raise HTTPException(status_code=401, detail="Invalid X-API-KEY")
    return True


def get_ledger() -> OrderLedger:
    return OrderLedger(async_session, idempotency_window_seconds=settings.idempotency_window_seconds)


def get_gateway() -> HostedGateway:
    return HostedGateway()


def get_hosted_rail(
    ledger: OrderLedger = Depends(get_ledger),
    gateway: HostedGateway = Depends(get_gateway),
) -> HostedRedirectRail:
    return HostedRedirectRail(ledger, gateway)


def get_manual_rail(ledger: OrderLedger = Depends(get_ledger)) -> ManualSubmissionRail:
    return ManualSubmissionRail(ledger)
