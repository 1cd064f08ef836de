"""Money helpers for amounts held in minor currency units (pence)."""

from decimal import ROUND_HALF_UP, Decimal

MINOR_UNITS_PER_MAJOR = 100


def to_minor_units(amount: Decimal | str | int) -> int:
    """Convert a major-unit amount (pounds) to minor units, rounding half up.

    Args:
        amount: Amount in major units. Strings are parsed as decimals.

    Returns:
        int: Amount in minor units.
    """
    value = Decimal(str(amount)) * MINOR_UNITS_PER_MAJOR
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def to_major_units(amount: int) -> Decimal:
    """Convert minor units to an exact two-decimal major-unit amount."""
    return (Decimal(amount) / MINOR_UNITS_PER_MAJOR).quantize(Decimal("0.01"))


def apply_basis_points(amount: int, basis_points: int) -> int:
    """Return ``amount * basis_points / 10000`` rounded half up, in integers only."""
    if amount <= 0 or basis_points <= 0:
        return 0
    quotient, remainder = divmod(amount * basis_points, 10000)
    return quotient + (1 if remainder * 2 >= 10000 else 0)


def format_minor_units(amount: int, symbol: str = "£") -> str:
    """Format an amount as a currency string, e.g. 4500 -> '£45.00'."""
    sign = "-" if amount < 0 else ""
    return f"{sign}{symbol}{to_major_units(abs(amount))}"


def format_minor_units_with_free_check(amount: int, symbol: str = "£") -> str:
    """Format an amount, returning 'Free' for zero."""
    if amount == 0:
        return "Free"
    return format_minor_units(amount, symbol)


def format_price_range(min_amount: int | None, max_amount: int | None, symbol: str = "£") -> str:
    """Format a price range from two optional minor-unit amounts."""
    if min_amount is None and max_amount is None:
        return "Price on request"
    if min_amount is not None and max_amount is not None:
        if min_amount == max_amount:
            return format_minor_units(min_amount, symbol)
        return f"{format_minor_units(min_amount, symbol)} - {format_minor_units(max_amount, symbol)}"
    if min_amount is not None:
        return f"From {format_minor_units(min_amount, symbol)}"
    return f"Up to {format_minor_units(max_amount, symbol)}"
