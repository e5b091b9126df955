from decimal import Decimal, ROUND_HALF_UP


def to_bank_amount(rupees) -> str:
    """Render an amount the way the bank expects it: two decimal places, no exponent.

    Uses Decimal via str() to avoid binary float surprises.

    Examples:
        to_bank_amount(Decimal('100')) -> '100.00'
        to_bank_amount('99.999') -> '100.00'
        to_bank_amount(1499.5) -> '1499.50'
    """
    dec = Decimal(str(rupees)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    return format(dec, "f")


def from_bank_amount(value):
    """Parse a bank amount string (e.g. PayerAmount) into a Decimal, or None if blank/invalid."""
    if value in (None, ""):
        return None
    try:
        return Decimal(str(value).strip()).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    except ArithmeticError:
        return None
