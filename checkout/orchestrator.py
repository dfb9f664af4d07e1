"""
Checkout orchestration.

A ``CheckoutOrchestrator`` belongs to one buyer's browser session. It opens
``CheckoutSession``s, each of which walks

    details -> select-method -> (submit-payment | hosted-redirect-pending)
            -> submitting -> success

with back-edges on cancel or recoverable errors and a terminal ``failure``
when the listing cannot be bought. Every operation returns a ``StepResult``;
errors from the ledger, gateway and rails are turned into a
``CheckoutFailure`` here and never propagate to the caller.

Within a session the order is always created before the rail call, and the
session id doubles as the idempotency key so retries reuse the same order.
"""
import asyncio
import uuid
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Iterable, Optional, Tuple

import structlog

from .catalog import CatalogEntry
from .config import settings
from .errors import CheckoutError, ErrorKind, NotPurchasable
from .formatting import format_amount
from .ledger import BuyerDetails, OrderLedger, ProofSubmission
from .models import OrderStatus
from .rails import HostedRedirectRail, ManualSubmissionRail, RailKind
from .reconciliation import ReconciliationPoller, hosted_status_check, manual_status_check
from .redirects import PendingRedirectStore
from .validation import (
    normalize_code,
    normalize_phone,
    resolve_family,
    to_decimal,
    validate_code,
    validate_phone,
)

logger = structlog.get_logger(__name__)


class CheckoutState(str, Enum):
    DETAILS = "details"
    SELECT_METHOD = "select-method"
    SUBMIT_PAYMENT = "submit-payment"
    HOSTED_REDIRECT_PENDING = "hosted-redirect-pending"
    SUBMITTING = "submitting"
    SUCCESS = "success"
    FAILURE = "failure"
    CLOSED = "closed"


FINISHED_STATES = {CheckoutState.SUCCESS, CheckoutState.FAILURE, CheckoutState.CLOSED}


@dataclass(frozen=True)
class PaymentMethodOption:
    """A payment destination configured by the seller or the platform."""

    id: str
    rail: RailKind
    provider: str
    method_tag: str = "MPESA"
    destination: Optional[str] = None  # paybill, till or phone number
    account_name: Optional[str] = None
    label: Optional[str] = None


@dataclass(frozen=True)
class PaymentInstructions:
    provider: str
    method_tag: str
    destination: Optional[str]
    account_name: Optional[str]
    amount: Decimal
    currency: str
    amount_display: str


@dataclass(frozen=True)
class CheckoutFailure:
    code: str
    kind: str
    title: str
    message: str
    retryable: bool


FAILURE_TITLES = {
    ErrorKind.VALIDATION: "Check your details",
    ErrorKind.NOT_PURCHASABLE: "Item unavailable",
    ErrorKind.NOT_FOUND: "Order not found",
    ErrorKind.INVALID_TRANSITION: "Order already updated",
    ErrorKind.GATEWAY: "Payment Error",
    ErrorKind.PERSISTENCE: "Something went wrong",
    ErrorKind.RECONCILIATION_PENDING: "Payment pending",
}


def failure_from(exc: CheckoutError) -> CheckoutFailure:
    return CheckoutFailure(
        code=exc.code,
        kind=exc.kind.value,
        title=FAILURE_TITLES[exc.kind],
        message=exc.message,
        retryable=exc.retryable,
    )


def validation_failure(code: str, message: str) -> CheckoutFailure:
    return CheckoutFailure(
        code=code,
        kind=ErrorKind.VALIDATION.value,
        title=FAILURE_TITLES[ErrorKind.VALIDATION],
        message=message,
        retryable=True,
    )


def unexpected_failure() -> CheckoutFailure:
    return CheckoutFailure(
        code="unexpected_error",
        kind=ErrorKind.PERSISTENCE.value,
        title=FAILURE_TITLES[ErrorKind.PERSISTENCE],
        message="Something went wrong. Please try again.",
        retryable=True,
    )


@dataclass(frozen=True)
class StepResult:
    state: CheckoutState
    ok: bool = True
    order_id: Optional[str] = None
    order_status: Optional[str] = None
    redirect_url: Optional[str] = None
    instructions: Optional[PaymentInstructions] = None
    notice: Optional[str] = None
    warnings: Tuple[str, ...] = field(default_factory=tuple)
    error: Optional[CheckoutFailure] = None


class CheckoutSession:
    def __init__(
        self,
        orchestrator: "CheckoutOrchestrator",
        listing_id: str,
        options: Iterable[PaymentMethodOption],
        callback_url: Optional[str] = None,
    ):
        self.id = uuid.uuid4().hex
        self.orchestrator = orchestrator
        self.listing_id = listing_id
        self.options = tuple(options)
        self.callback_url = callback_url
        self.state = CheckoutState.DETAILS
        self.buyer: Optional[BuyerDetails] = None
        self.selected: Optional[PaymentMethodOption] = None
        self.order_id: Optional[str] = None
        self.quote: Optional[CatalogEntry] = None
        self._busy = False
        self.log = logger.bind(session_id=self.id, listing_id=listing_id)

    @property
    def idempotency_key(self) -> str:
        return self.id

    # ----- helpers -----

    def _result(self, ok: bool = True, **kwargs) -> StepResult:
        kwargs.setdefault("order_id", self.order_id)
        return StepResult(state=self.state, ok=ok, **kwargs)

    def _fail(self, state: CheckoutState, failure: CheckoutFailure, **kwargs) -> StepResult:
        self.state = state
        self.log.info("checkout_step_failed", state=state.value, code=failure.code)
        if state in FINISHED_STATES:
            self.orchestrator._release(self)
        return self._result(ok=False, error=failure, **kwargs)

    def _refuse(self, *allowed: CheckoutState) -> Optional[StepResult]:
        if self._busy or self.state is CheckoutState.SUBMITTING:
            return self._result(
                ok=False,
                error=validation_failure("busy", "Please wait, your payment is being processed"),
            )
        if self.state not in allowed:
            return self._result(
                ok=False,
                error=validation_failure(
                    "invalid_step", f"This action is not available at step {self.state.value}"
                ),
            )
        return None

    def _option(self, option_id: str) -> Optional[PaymentMethodOption]:
        for option in self.options:
            if option.id == option_id:
                return option
        return None

    async def _ensure_order(self) -> str:
        if self.order_id is None:
            order = await self.orchestrator.ledger.create_order(
                self.buyer,
                self.listing_id,
                self.selected.method_tag,
                idempotency_key=self.idempotency_key,
            )
            self.order_id = order.id
        return self.order_id

    # ----- transitions -----

    def submit_details(
        self,
        name: str,
        phone: str,
        email: Optional[str] = None,
        address: Optional[str] = None,
    ) -> StepResult:
        """details -> select-method. Purely local; nothing is written."""
        refused = self._refuse(CheckoutState.DETAILS)
        if refused:
            return refused

        name = (name or "").strip()
        if not name:
            return self._fail(
                CheckoutState.DETAILS, validation_failure("name_required", "Please enter your name")
            )
        phone_check = validate_phone(phone)
        if not phone_check.valid:
            return self._fail(
                CheckoutState.DETAILS,
                validation_failure(f"phone_{phone_check.reason}", phone_check.error),
            )
        if not self.options:
            return self._fail(
                CheckoutState.DETAILS,
                validation_failure(
                    "no_payment_methods",
                    "Seller has not configured payment methods yet. Please contact the seller.",
                ),
            )

        self.buyer = BuyerDetails(
            name=name,
            phone=normalize_phone(phone),
            email=(email or "").strip() or None,
            address=(address or "").strip() or None,
        )
        self.state = CheckoutState.SELECT_METHOD
        return self._result()

    async def select_method(self, option_id: str) -> StepResult:
        refused = self._refuse(CheckoutState.SELECT_METHOD)
        if refused:
            return refused

        option = self._option(option_id)
        if option is None:
            return self._fail(
                CheckoutState.SELECT_METHOD,
                validation_failure("unknown_method", "Please choose one of the listed payment methods"),
            )
        self.selected = option
        self.log.info("payment_method_selected", option_id=option.id, rail=option.rail.value)

        if option.rail is RailKind.HOSTED_REDIRECT:
            return await self._start_hosted_redirect()
        if option.rail is RailKind.MANUAL_SUBMISSION:
            return await self._show_manual_instructions()
        raise AssertionError(f"unhandled payment rail {option.rail!r}")

    async def _start_hosted_redirect(self) -> StepResult:
        self.state = CheckoutState.SUBMITTING
        self._busy = True
        try:
            order_id = await self._ensure_order()
            handoff = await self.orchestrator.hosted.initialize(order_id, self.callback_url)
        except NotPurchasable as e:
            return self._fail(CheckoutState.FAILURE, failure_from(e))
        except CheckoutError as e:
            # the order, if any, stays pending and is reused on retry
            return self._fail(CheckoutState.SELECT_METHOD, failure_from(e))
        except Exception:
            self.log.exception("checkout_step_crashed", step="select_method")
            return self._fail(CheckoutState.SELECT_METHOD, unexpected_failure())
        finally:
            self._busy = False

        self.orchestrator.redirects.remember(handoff.reference, handoff.order_id)
        self.state = CheckoutState.HOSTED_REDIRECT_PENDING
        self.log.info("hosted_redirect_issued", order_id=handoff.order_id, reference=handoff.reference)
        return self._result(
            redirect_url=handoff.redirect_url, order_status=OrderStatus.PENDING.value
        )

    async def _show_manual_instructions(self) -> StepResult:
        # no order yet; it is created only once a proof code is typed
        self._busy = True
        try:
            self.quote = await self.orchestrator.ledger.quote(self.listing_id)
        except NotPurchasable as e:
            return self._fail(CheckoutState.FAILURE, failure_from(e))
        except CheckoutError as e:
            return self._fail(CheckoutState.SELECT_METHOD, failure_from(e))
        except Exception:
            self.log.exception("checkout_step_crashed", step="select_method")
            return self._fail(CheckoutState.SELECT_METHOD, unexpected_failure())
        finally:
            self._busy = False

        self.state = CheckoutState.SUBMIT_PAYMENT
        return self._result(instructions=self.orchestrator.instructions_for(self.selected, self.quote))

    async def submit_proof(self, code: str, declared_amount=None) -> StepResult:
        """submit-payment -> submitting -> success.

        The code is checked before anything else; an invalid one leaves the
        session where it was with no order created or touched.
        """
        refused = self._refuse(CheckoutState.SUBMIT_PAYMENT)
        if refused:
            return refused

        check = validate_code(code, resolve_family(self.selected.method_tag))
        if not check.valid:
            return self._fail(
                CheckoutState.SUBMIT_PAYMENT,
                validation_failure(f"invalid_code_{check.reason}", check.error),
            )

        proof = ProofSubmission(
            code=normalize_code(code),
            payment_method=self.selected.method_tag,
            payer_phone=self.buyer.phone,
            payer_name=self.buyer.name,
            declared_amount=to_decimal(declared_amount),
        )

        self.state = CheckoutState.SUBMITTING
        self._busy = True
        try:
            order_id = await self._ensure_order()
            receipt = await self.orchestrator.manual.submit(order_id, proof)
        except NotPurchasable as e:
            return self._fail(CheckoutState.FAILURE, failure_from(e))
        except CheckoutError as e:
            return self._fail(CheckoutState.SUBMIT_PAYMENT, failure_from(e))
        except Exception:
            self.log.exception("checkout_step_crashed", step="submit_proof")
            return self._fail(CheckoutState.SUBMIT_PAYMENT, unexpected_failure())
        finally:
            self._busy = False

        self.state = CheckoutState.SUCCESS
        self.orchestrator._release(self)
        self.log.info("manual_payment_under_review", order_id=receipt.order_id)
        return self._result(
            order_status=receipt.status,
            warnings=check.warnings,
            notice="Payment submitted. The seller will verify it shortly.",
        )

    def back(self) -> StepResult:
        refused = self._refuse(
            CheckoutState.SELECT_METHOD,
            CheckoutState.SUBMIT_PAYMENT,
            CheckoutState.HOSTED_REDIRECT_PENDING,
        )
        if refused:
            return refused
        if self.state is CheckoutState.SELECT_METHOD:
            self.state = CheckoutState.DETAILS
        else:
            self.state = CheckoutState.SELECT_METHOD
        return self._result()

    def cancel(self) -> StepResult:
        """Close the flow. Nothing is written; an already created order stays pending."""
        if self._busy or self.state is CheckoutState.SUBMITTING:
            return self._refuse()
        self.state = CheckoutState.CLOSED
        self.orchestrator._release(self)
        self.log.info("checkout_closed", order_id=self.order_id)
        return self._result()


class CheckoutOrchestrator:
    def __init__(
        self,
        ledger: OrderLedger,
        hosted: HostedRedirectRail,
        manual: ManualSubmissionRail,
        redirects: Optional[PendingRedirectStore] = None,
        locale: Optional[str] = None,
    ):
        self.ledger = ledger
        self.hosted = hosted
        self.manual = manual
        if redirects is None:
            redirects = PendingRedirectStore(ttl_seconds=settings.redirect_ttl_seconds)
        self.redirects = redirects
        self.locale = locale or settings.display_locale
        self.session: Optional[CheckoutSession] = None

    def start(
        self,
        listing_id: str,
        options: Iterable[PaymentMethodOption],
        callback_url: Optional[str] = None,
    ) -> CheckoutSession:
        if self.session is not None and self.session.state not in FINISHED_STATES:
            self.session.cancel()
        self.redirects.purge_expired()
        self.session = CheckoutSession(self, listing_id, options, callback_url)
        self.session.log.info("checkout_started")
        return self.session

    def _release(self, session: CheckoutSession) -> None:
        if self.session is session:
            self.session = None

    def instructions_for(self, option: PaymentMethodOption, quote: CatalogEntry) -> PaymentInstructions:
        return PaymentInstructions(
            provider=option.provider,
            method_tag=option.method_tag,
            destination=option.destination,
            account_name=option.account_name,
            amount=quote.price,
            currency=quote.currency,
            amount_display=format_amount(quote.price, quote.currency, self.locale),
        )

    async def resume_from_redirect(self, reference: str, order_id: Optional[str] = None) -> StepResult:
        """Handle the buyer coming back from the gateway.

        The callback may omit the order id; it is then recovered from the
        redirect store, and failing that from the order carrying the reference.
        """
        if not reference:
            return StepResult(
                state=CheckoutState.FAILURE,
                ok=False,
                error=validation_failure("missing_reference", "Missing payment reference"),
            )

        order_id = order_id or self.redirects.recall(reference)
        try:
            outcome = await self.hosted.verify(reference, order_id)
        except CheckoutError as e:
            # keep the stored reference so verification can be retried
            return StepResult(
                state=CheckoutState.HOSTED_REDIRECT_PENDING,
                ok=False,
                order_id=order_id,
                error=failure_from(e),
            )
        except Exception:
            logger.exception("checkout_resume_crashed", reference=reference)
            return StepResult(
                state=CheckoutState.HOSTED_REDIRECT_PENDING,
                ok=False,
                order_id=order_id,
                error=unexpected_failure(),
            )

        if outcome.confirmed:
            self.redirects.forget(reference)
            logger.info("checkout_settled", order_id=outcome.order_id, reference=reference)
            return StepResult(
                state=CheckoutState.SUCCESS,
                order_id=outcome.order_id,
                order_status=outcome.status,
                notice="Payment verified successfully!",
            )

        if outcome.final:
            self.redirects.forget(reference)
            return StepResult(
                state=CheckoutState.FAILURE,
                ok=False,
                order_id=outcome.order_id,
                order_status=outcome.status,
                error=CheckoutFailure(
                    code="payment_not_completed",
                    kind=ErrorKind.GATEWAY.value,
                    title=FAILURE_TITLES[ErrorKind.GATEWAY],
                    message=f"{outcome.reason}. Please try again.",
                    retryable=True,
                ),
            )

        return StepResult(
            state=CheckoutState.HOSTED_REDIRECT_PENDING,
            order_id=outcome.order_id,
            order_status=outcome.status,
            notice=outcome.reason,
        )

    def watch(
        self,
        order_id: str,
        reference: Optional[str] = None,
        interval: float = None,
        max_attempts: int = None,
        sleep=asyncio.sleep,
    ) -> ReconciliationPoller:
        """Poller for an order under review (manual) or pending verification (hosted)."""
        if reference:
            check = hosted_status_check(self.hosted, reference, order_id)
        else:
            check = manual_status_check(self.ledger, order_id)
        return ReconciliationPoller(
            order_id, check, interval=interval, max_attempts=max_attempts, sleep=sleep
        )
