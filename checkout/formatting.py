from decimal import Decimal

from babel.core import UnknownLocaleError
from babel.numbers import UnknownCurrencyError, format_currency

from .config import settings


def format_amount(amount, currency: str, locale: str = None) -> str:
    """Render an amount in the buyer's currency, e.g. ``Ksh 1,000.00`` for en_KE."""
    locale = locale or settings.display_locale
    value = amount if isinstance(amount, Decimal) else Decimal(str(amount))
    try:
        return format_currency(value, currency.upper(), locale=locale)
    except (UnknownLocaleError, UnknownCurrencyError, ValueError):
        return f"{currency.upper()} {value:,.2f}"
