"""
Reconciliation of orders that are waiting on someone else.

``ReconciliationPoller`` is the buyer-side loop: while a manual submission
is under review, or a hosted payment is pending verification, it re-reads
the order on a fixed interval for a bounded number of attempts.
``sweep_pending_redirects`` is the scheduled server-side counterpart that
re-verifies hosted payments whose callback never arrived.
"""
import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

import structlog

from .config import settings
from .db import async_session
from .errors import CheckoutError
from .ledger import OrderLedger
from .logging_config import setup_logging
from .models import OrderStatus, TERMINAL_STATUSES
from .rails import HostedRedirectRail
from .services.gateway import HostedGateway

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class PollSnapshot:
    status: str
    terminal: bool
    rejection_reason: Optional[str] = None


@dataclass(frozen=True)
class PollOutcome:
    order_id: str
    status: str
    terminal: bool
    attempts: int
    message: str
    rejection_reason: Optional[str] = None


CheckFn = Callable[[], Awaitable[PollSnapshot]]


def manual_status_check(ledger: OrderLedger, order_id: str) -> CheckFn:
    async def check() -> PollSnapshot:
        view = await ledger.get_status(order_id)
        return PollSnapshot(
            status=view.status,
            terminal=OrderStatus(view.status) in TERMINAL_STATUSES,
            rejection_reason=view.rejection_reason,
        )

    return check


def hosted_status_check(rail, reference: str, order_id: Optional[str] = None) -> CheckFn:
    async def check() -> PollSnapshot:
        outcome = await rail.verify(reference, order_id)
        # a definitive gateway failure leaves the order pending but ends the wait
        return PollSnapshot(status=outcome.status, terminal=outcome.final)

    return check


class ReconciliationPoller:
    def __init__(
        self,
        order_id: str,
        check: CheckFn,
        interval: float = None,
        max_attempts: int = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.order_id = order_id
        self.check = check
        self.interval = settings.poll_interval_seconds if interval is None else interval
        self.max_attempts = max(1, settings.poll_max_attempts if max_attempts is None else max_attempts)
        self._sleep = sleep
        self._task: Optional[asyncio.Task] = None
        self.last_snapshot: Optional[PollSnapshot] = None

    async def run(self) -> PollOutcome:
        attempts = 0
        while attempts < self.max_attempts:
            attempts += 1
            try:
                snapshot = await self.check()
            except CheckoutError as e:
                if not e.retryable:
                    raise
                logger.info(
                    "reconciliation_check_failed",
                    order_id=self.order_id,
                    attempt=attempts,
                    error=e.message,
                )
                snapshot = None

            if snapshot is not None:
                self.last_snapshot = snapshot
                if snapshot.terminal:
                    logger.info(
                        "reconciliation_terminal",
                        order_id=self.order_id,
                        status=snapshot.status,
                        attempts=attempts,
                    )
                    return PollOutcome(
                        order_id=self.order_id,
                        status=snapshot.status,
                        terminal=True,
                        attempts=attempts,
                        message=_terminal_message(snapshot),
                        rejection_reason=snapshot.rejection_reason,
                    )

            if attempts < self.max_attempts:
                await self._sleep(self.interval)

        status = self.last_snapshot.status if self.last_snapshot else OrderStatus.PENDING.value
        logger.warning(
            "reconciliation_exhausted", order_id=self.order_id, status=status, attempts=attempts
        )
        return PollOutcome(
            order_id=self.order_id,
            status=status,
            terminal=False,
            attempts=attempts,
            message=(
                "Your payment is still being verified. "
                f"Please contact support with order ID {self.order_id}."
            ),
        )

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._task = asyncio.ensure_future(self.run())
        return self._task

    async def cancel(self) -> None:
        """Stop polling; called when the buyer leaves the status view."""
        if self._task is not None and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            logger.info("reconciliation_cancelled", order_id=self.order_id)
        self._task = None

    async def __aenter__(self) -> "ReconciliationPoller":
        self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.cancel()


def _terminal_message(snapshot: PollSnapshot) -> str:
    try:
        status = OrderStatus(snapshot.status)
    except ValueError:
        status = None
    if status is OrderStatus.REJECTED:
        return f"Payment was rejected: {snapshot.rejection_reason or 'verification failed'}"
    if status is OrderStatus.CANCELLED:
        return "Order was cancelled"
    if status is OrderStatus.PENDING:
        return "Payment was not completed. Please try again."
    return "Payment confirmed"


async def sweep_pending_redirects(ledger: OrderLedger, rail, limit: int = 100) -> dict:
    """Verify every pending hosted payment once. Gateway errors skip the order."""
    orders = await ledger.list_awaiting_gateway(limit=limit)
    summary = {"checked": 0, "settled": 0, "failed": 0, "pending": 0, "errors": 0}
    for order in orders:
        summary["checked"] += 1
        try:
            outcome = await rail.verify(order.gateway_reference, order.id)
        except CheckoutError as e:
            summary["errors"] += 1
            logger.warning(
                "reconciliation_sweep_error",
                order_id=order.id,
                reference=order.gateway_reference,
                error=e.message,
            )
            continue
        if outcome.confirmed:
            summary["settled"] += 1
        elif outcome.final:
            summary["failed"] += 1
        else:
            summary["pending"] += 1
    logger.info("reconciliation_sweep_completed", **summary)
    return summary


async def run_sweeper(interval: float = None, limit: int = 100) -> None:
    """Run the sweep forever on a fixed interval."""
    setup_logging()
    ledger = OrderLedger(async_session, idempotency_window_seconds=settings.idempotency_window_seconds)
    rail = HostedRedirectRail(ledger, HostedGateway())
    interval = settings.poll_interval_seconds if interval is None else interval

    logger.info("reconciliation_sweeper_starting", interval=interval, limit=limit)
    try:
        while True:
            try:
                await sweep_pending_redirects(ledger, rail, limit=limit)
            except CheckoutError as e:
                logger.error("reconciliation_sweep_failed", error=e.message)
            await asyncio.sleep(interval)
    finally:
        logger.info("reconciliation_sweeper_stopped")


def main() -> None:
    import argparse

    parser = argparse.ArgumentParser(description="Hosted payment reconciliation sweeper")
    parser.add_argument("--interval", type=float, default=None, help="Seconds between sweeps")
    parser.add_argument("--limit", type=int, default=100, help="Orders verified per sweep")
    args = parser.parse_args()

    try:
        asyncio.run(run_sweeper(interval=args.interval, limit=args.limit))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
