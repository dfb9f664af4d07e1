"""
Format checks for payer-submitted evidence.

Everything here is pure and total: each function returns a
``ValidationResult`` for any input and never raises.
"""
import re
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from enum import Enum
from typing import Any, Optional, Tuple, Union

_ALNUM = re.compile(r"^[A-Z0-9]+$")
_NUMERIC_CODE = re.compile(r"^[0-9]{10,13}$")
_PHONE = re.compile(r"^\+?[0-9]{10,15}$")
_PHONE_SEPARATORS = re.compile(r"[\s-]")

CENTS = Decimal("0.01")


@dataclass(frozen=True)
class ValidationResult:
    valid: bool
    reason: Optional[str] = None  # machine readable, e.g. "required"
    error: Optional[str] = None  # human readable
    warnings: Tuple[str, ...] = field(default_factory=tuple)

    @classmethod
    def ok(cls, *warnings: str) -> "ValidationResult":
        return cls(valid=True, warnings=tuple(warnings))

    @classmethod
    def fail(cls, reason: str, error: str) -> "ValidationResult":
        return cls(valid=False, reason=reason, error=error)


class PaymentFamily(str, Enum):
    # M-Pesa style receipt codes, e.g. SJK7Y6H4TQ
    MOBILE_ALPHANUMERIC = "mobile_alphanumeric"
    # Airtel Money style numeric references
    MOBILE_NUMERIC = "mobile_numeric"


_NUMERIC_TAGS = {"AIRTEL", "AIRTEL_MONEY"}


def resolve_family(tag: Union[str, PaymentFamily, None]) -> PaymentFamily:
    """Map a payment method tag to its code family; unknown tags use the alphanumeric rule."""
    if isinstance(tag, PaymentFamily):
        return tag
    if isinstance(tag, str):
        cleaned = tag.strip().upper()
        if cleaned in _NUMERIC_TAGS:
            return PaymentFamily.MOBILE_NUMERIC
        for family in PaymentFamily:
            if cleaned == family.value.upper():
                return family
    return PaymentFamily.MOBILE_ALPHANUMERIC


def normalize_code(code: Any) -> str:
    if code is None:
        return ""
    try:
        return str(code).strip().upper()
    except Exception:
        return ""


def _validate_alphanumeric(cleaned: str) -> ValidationResult:
    if len(cleaned) < 8 or len(cleaned) > 12:
        return ValidationResult.fail(
            "length", "M-Pesa code should be 8-12 characters (e.g., SJK7Y6H4TQ)"
        )
    if not _ALNUM.match(cleaned):
        return ValidationResult.fail(
            "charset", "M-Pesa code should only contain letters and numbers"
        )
    if not cleaned[0].isalpha():
        return ValidationResult.ok("M-Pesa codes usually start with a letter")
    return ValidationResult.ok()


def _validate_numeric(cleaned: str) -> ValidationResult:
    if not _NUMERIC_CODE.match(cleaned):
        return ValidationResult.fail("format", "Airtel Money code should be 10-13 digits")
    return ValidationResult.ok()


def validate_code(code: Any, family: Union[str, PaymentFamily, None] = None) -> ValidationResult:
    """Validate a proof-of-payment code for the given method family or tag."""
    cleaned = normalize_code(code)
    if not cleaned:
        return ValidationResult.fail("required", "Transaction code is required")

    if resolve_family(family) is PaymentFamily.MOBILE_NUMERIC:
        return _validate_numeric(cleaned)
    return _validate_alphanumeric(cleaned)


def to_decimal(value: Any) -> Optional[Decimal]:
    """Parse an amount without going through binary floats; None if unparseable."""
    if value is None or isinstance(value, bool):
        return None
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value).strip())
    except (InvalidOperation, ValueError, TypeError):
        return None
    if not amount.is_finite():
        return None
    return amount


def _cents(value: Decimal) -> Decimal:
    try:
        return value.quantize(CENTS, rounding=ROUND_HALF_UP)
    except InvalidOperation:
        return value


def validate_amount(paid: Any, expected: Any, tolerance: Any = 0) -> ValidationResult:
    paid_d = to_decimal(paid)
    expected_d = to_decimal(expected)
    tolerance_d = to_decimal(tolerance)

    if paid_d is None or paid_d <= 0:
        return ValidationResult.fail("non_positive", "Payment amount must be greater than 0")
    if expected_d is None or expected_d <= 0:
        return ValidationResult.fail("invalid_expected", "Expected amount is invalid")
    if tolerance_d is None or tolerance_d < 0:
        tolerance_d = Decimal(0)

    try:
        difference = paid_d - expected_d
    except ArithmeticError:
        return ValidationResult.fail("out_of_range", "Payment amount is out of range")

    if abs(difference) > tolerance_d:
        if difference < 0:
            shortfall = _cents(-difference)
            return ValidationResult.fail(
                "underpayment",
                f"Underpayment: paid {paid_d}, expected {expected_d}. Short by {shortfall}",
            )
        excess = _cents(difference)
        return ValidationResult.fail(
            "overpayment",
            f"Overpayment: paid {paid_d}, expected {expected_d}. Over by {excess}",
        )
    return ValidationResult.ok()


def normalize_phone(phone: Any) -> str:
    if phone is None:
        return ""
    try:
        return _PHONE_SEPARATORS.sub("", str(phone))
    except Exception:
        return ""


def validate_phone(phone: Any) -> ValidationResult:
    cleaned = normalize_phone(phone)
    if not cleaned:
        return ValidationResult.fail("required", "Phone number is required")
    if not _PHONE.match(cleaned):
        return ValidationResult.fail("invalid_phone", "Invalid phone number format")
    return ValidationResult.ok()
