from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional

import httpx
import structlog

from ..config import settings
from ..errors import GatewayError, GatewayTimeout
from ..validation import to_decimal

logger = structlog.get_logger(__name__)

CONFIRMED_STATUSES = {"paid"}
FAILED_STATUSES = {"failed", "canceled", "cancelled", "expired"}


@dataclass(frozen=True)
class GatewayPayment:
    reference: str
    status: str
    redirect_url: Optional[str] = None
    order_id: Optional[str] = None
    confirmation_code: Optional[str] = None
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    raw: dict = field(default_factory=dict)

    @property
    def confirmed(self) -> bool:
        return self.status in CONFIRMED_STATUSES

    @property
    def failed(self) -> bool:
        return self.status in FAILED_STATUSES


def _parse_payment(data: dict) -> GatewayPayment:
    metadata = data.get("metadata") or {}
    amount = data.get("amount") if isinstance(data.get("amount"), dict) else {}
    return GatewayPayment(
        reference=data.get("id"),
        status=str(data.get("status") or "open").lower(),
        redirect_url=((data.get("_links") or {}).get("checkout") or {}).get("href"),
        order_id=metadata.get("orderId") if isinstance(metadata, dict) else None,
        confirmation_code=data.get("confirmationCode"),
        amount=to_decimal(amount.get("value")),
        currency=amount.get("currency"),
        raw=data,
    )


class HostedGateway:
    """Client for the hosted-checkout payment gateway.

    Every call is bounded by ``timeout``; timeouts and transport failures
    surface as retryable ``GatewayError``s and nothing is retried here.
    """

    def __init__(
        self,
        base_url: str = None,
        api_key: str = None,
        timeout: float = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (base_url or settings.gateway_api_base).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.gateway_api_key
        self.timeout = timeout if timeout is not None else settings.gateway_timeout_seconds
        self.transport = transport

    @property
    def headers(self) -> dict:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url, timeout=self.timeout, transport=self.transport
        )

    async def _request(self, method: str, path: str, **kwargs) -> dict:
        try:
            async with self._client() as client:
                resp = await client.request(method, path, **kwargs)
                resp.raise_for_status()
                data = resp.json()
        except httpx.TimeoutException as e:
            logger.warning("gateway_timeout", method=method, path=path)
            raise GatewayTimeout("Payment gateway timed out. Please try again.") from e
        except httpx.HTTPStatusError as e:
            logger.warning(
                "gateway_http_error",
                method=method,
                path=path,
                status_code=e.response.status_code,
            )
            raise GatewayError(
                f"Payment gateway returned {e.response.status_code}. Please try again.",
                status_code=e.response.status_code,
            ) from e
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("gateway_unreachable", method=method, path=path, error=str(e))
            raise GatewayError("Payment gateway is unavailable. Please try again.") from e
        if not isinstance(data, dict):
            raise GatewayError("Payment gateway returned an unexpected response.")
        return data

    async def create_payment(
        self,
        order_id: str,
        amount: Decimal,
        currency: str,
        redirect_url: Optional[str] = None,
        description: Optional[str] = None,
        buyer: Optional[dict] = None,
        metadata: Optional[dict] = None,
    ) -> GatewayPayment:
        """
        Create a hosted payment for an order and return where to send the buyer.
        """
        payload = {
            "amount": {"currency": currency, "value": f"{Decimal(amount):.2f}"},
            "description": description or f"Order {order_id}",
            "redirectUrl": redirect_url or settings.frontend_return_url,
            "metadata": {"orderId": order_id, **(metadata or {})},
        }
        if buyer:
            payload["billingAddress"] = buyer

        headers = self.headers.copy()
        # one gateway payment per order, however often initialize is retried
        headers["Idempotency-Key"] = order_id
        data = await self._request("POST", "/payments", json=payload, headers=headers)

        payment = _parse_payment(data)
        if not payment.reference or not payment.redirect_url:
            raise GatewayError("Payment gateway did not return a checkout URL.")
        logger.info(
            "gateway_payment_created",
            order_id=order_id,
            reference=payment.reference,
            status=payment.status,
        )
        return payment

    async def get_payment(self, reference: str) -> GatewayPayment:
        data = await self._request("GET", f"/payments/{reference}", headers=self.headers)
        payment = _parse_payment(data)
        if not payment.reference:
            raise GatewayError("Payment gateway returned an unreadable status.")
        return payment
