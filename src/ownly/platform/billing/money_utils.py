"""
Money and currency utilities using py-moneyed and Babel.

Billing amounts are stored as integer minor units (cents). These helpers
convert between cents and ``Money`` for display, and apply percentage
adjustments with round-half-up semantics without ever touching floats.
"""

from decimal import ROUND_HALF_UP, Decimal

from babel import Locale
from babel.core import UnknownLocaleError
from babel.numbers import format_currency, get_currency_precision
from moneyed import Currency, Money, get_currency
from moneyed.classes import CurrencyDoesNotExist

DEFAULT_LOCALE = "en_US"


class MoneyHandler:
    """Cents to ``Money`` conversion and Babel formatting for one currency/locale pair."""

    def __init__(self, default_currency: str = "USD", default_locale: str = DEFAULT_LOCALE) -> None:
        self.default_currency = self._validate_currency(default_currency)
        self.default_locale = self._validate_locale(default_locale)

    def _validate_currency(self, currency_code: str) -> Currency:
        """Look up an ISO 4217 code; unknown codes raise ValueError."""
        try:
            return get_currency(currency_code.upper())
        except CurrencyDoesNotExist:
            raise ValueError(f"Invalid currency code: {currency_code}")

    def _validate_locale(self, locale_code: str) -> str:
        """Return the locale if Babel knows it, else the default."""
        try:
            Locale.parse(locale_code)
            return locale_code
        except (UnknownLocaleError, ValueError):
            return DEFAULT_LOCALE

    def get_currency_precision(self, currency_code: str) -> int:
        """Number of minor-unit digits (2 for USD, 0 for JPY)."""
        return get_currency_precision(currency_code.upper())

    def money_from_minor_units(self, minor_units: int, currency: str | None = None) -> Money:
        """Exact ``Money`` for an integer amount of minor units."""
        validated_currency = self._validate_currency(currency or self.default_currency.code)
        precision = self.get_currency_precision(validated_currency.code)
        amount = Decimal(minor_units) / Decimal(10**precision)
        return Money(amount=amount, currency=validated_currency)

    def format_minor_units(
        self, minor_units: int, currency: str | None = None, locale: str | None = None
    ) -> str:
        """Format cents with locale-aware currency formatting."""
        money = self.money_from_minor_units(minor_units, currency)
        validated_locale = self._validate_locale(locale or self.default_locale)

        try:
            return format_currency(
                number=money.amount, currency=money.currency.code, locale=validated_locale
            )
        except (TypeError, ValueError):
            # Babel could not render this currency/locale pair
            return f"{money.currency.code} {money.amount}"


def percentage_of(cents: int, percent: Decimal | int | str) -> int:
    """Return ``percent`` % of ``cents`` rounded half-up to a whole cent."""
    if isinstance(cents, bool) or not isinstance(cents, int):
        raise TypeError("Amounts must be integer cents")
    value = Decimal(cents) * Decimal(str(percent)) / Decimal(100)
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


# Shared USD / en_US handler
money_handler = MoneyHandler()


def format_cents(cents: int, currency: str = "USD", locale: str | None = None) -> str:
    """Format integer cents with the default handler."""
    return money_handler.format_minor_units(cents, currency, locale)


__all__ = [
    "MoneyHandler",
    "money_handler",
    "percentage_of",
    "format_cents",
]
