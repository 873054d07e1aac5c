"""
Order pricing.

All amounts are integer minor currency units (paise, cents). Tax is rounded
half-up to the nearest unit, so a subtotal of 25 at 18% yields 5 (4.5 -> 5).
"""
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

from storefront.shared.utils import settings


def calculate_tax(subtotal: int, rate: Optional[Decimal] = None) -> int:
    if rate is None:
        rate = settings.TAX_RATE
    levy = Decimal(subtotal) * Decimal(rate)
    return int(levy.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def calculate_shipping(
    item_count: int,
    subtotal: int,
    threshold: Optional[int] = None,
    flat_fee: Optional[int] = None,
) -> int:
    # item_count is accepted for tiered rates; the flat policy ignores it
    if threshold is None:
        threshold = settings.FREE_SHIPPING_THRESHOLD
    if flat_fee is None:
        flat_fee = settings.FLAT_SHIPPING_FEE
    if subtotal >= threshold:
        return 0
    return flat_fee
