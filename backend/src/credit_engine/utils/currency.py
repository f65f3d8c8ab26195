"""Fixed-point money helpers.

Amounts cross the engine boundary in minor units (cents) with an explicit
ISO 4217 currency. Nothing here touches floats.
"""
from decimal import ROUND_DOWN, ROUND_HALF_UP, Decimal

# Currencies that don't use decimal places (smallest unit is whole currency)
zero_decimal_currencies = [
    "JPY",  # Japanese Yen
    "KRW",  # South Korean Won
    "VND",  # Vietnamese Đồng
    "CLP",  # Chilean Peso
    "ISK",  # Icelandic Króna
    "TWD",  # Taiwan Dollar
]

# Currency symbols for common currencies
currency_symbols = {
    "USD": "$",
    "EUR": "€",
    "GBP": "£",
    "JPY": "¥",
    "INR": "₹",
    "CAD": "CA$",
    "AUD": "A$",
}

CREDIT_QUANTUM = Decimal("0.01")


def get_currency_decimal_places(currency: str) -> int:
    """
    Get the number of decimal places for a currency.

    Example:
        >>> get_currency_decimal_places("USD")
        2
        >>> get_currency_decimal_places("JPY")
        0
    """
    if currency.upper() in zero_decimal_currencies:
        return 0
    return 2


def round_half_up(value: Decimal) -> int:
    """Round a Decimal amount of minor units to the nearest whole unit, halves away from zero."""
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def floor_minor(value: Decimal) -> int:
    """Truncate a non-negative Decimal amount of minor units."""
    return int(value.quantize(Decimal("1"), rounding=ROUND_DOWN))


def to_minor_units(amount: Decimal | str | int, currency: str) -> int:
    """
    Convert a decimal major-unit amount to minor units.

    Examples:
        >>> to_minor_units(Decimal("50.00"), "USD")
        5000
        >>> to_minor_units("1000", "JPY")
        1000
    """
    places = get_currency_decimal_places(currency)
    return round_half_up(Decimal(str(amount)) * (Decimal(10) ** places))


def from_minor_units(amount: int, currency: str) -> Decimal:
    """
    Convert minor units to a Decimal major-unit amount.

    Examples:
        >>> from_minor_units(5000, "USD")
        Decimal('50.00')
    """
    places = get_currency_decimal_places(currency)
    return (Decimal(amount) / (Decimal(10) ** places)).quantize(Decimal(10) ** -places)


def format_amount_for_currency(amount: int, currency: str) -> str:
    """
    Format an amount in minor units for display.

    Examples:
        >>> format_amount_for_currency(5000, "USD")
        '$50.00 USD'
        >>> format_amount_for_currency(1000, "JPY")
        '¥1,000 JPY'
    """
    currency_upper = currency.upper()
    symbol = currency_symbols.get(currency_upper, currency_upper)
    places = get_currency_decimal_places(currency_upper)
    major = from_minor_units(amount, currency_upper)
    return f"{symbol}{major:,.{places}f} {currency_upper}"


def credits_for_amount(amount: int, currency: str, credits_per_unit: Decimal) -> Decimal:
    """
    Credits bought by ``amount`` minor units.

    Example:
        >>> credits_for_amount(1000, "USD", Decimal("5"))
        Decimal('50.00')
    """
    return (from_minor_units(amount, currency) * credits_per_unit).quantize(CREDIT_QUANTUM)


def quantize_credits(value: Decimal | int | str) -> Decimal:
    return Decimal(str(value)).quantize(CREDIT_QUANTUM)
