"""Money helpers. Amounts are floats rounded to two decimals."""

TOLERANCE = 0.01


def round_money(value: float) -> float:
    return round(float(value) + 0.0, 2)


def is_settled(remaining: float, tolerance: float = TOLERANCE) -> bool:
    """A remainder within the tolerance counts as fully paid."""
    return remaining <= tolerance


def payment_status(paid: float, total: float) -> str:
    """pending -> partial -> paid as the paid amount accumulates."""
    if paid >= total - 1e-9:
        return "paid"
    if paid > 0:
        return "partial"
    return "pending"


def split_evenly(amount: float, parts: int) -> list[float]:
    """
    Split amount into parts rounded to 2 decimals.

    The last part absorbs the rounding remainder so the parts sum to amount.
    """
    if parts <= 0:
        raise ValueError("parts must be positive")
    share = round_money(amount / parts)
    shares = [share] * (parts - 1)
    shares.append(round_money(amount - share * (parts - 1)))
    return shares
