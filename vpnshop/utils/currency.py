"""Toman / rial conversion and price formatting."""

RIALS_PER_TOMAN = 10


def to_rials(tomans: int) -> int:
    return int(tomans) * RIALS_PER_TOMAN


def to_tomans(rials: int) -> int:
    return int(rials) // RIALS_PER_TOMAN


def format_tomans(amount: int) -> str:
    """Return a string like «130,000 tomans»."""
    return f"{int(amount):,} tomans"
