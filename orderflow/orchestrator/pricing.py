"""Platform fee arithmetic.

Amounts are ``Decimal`` cents rounded with ``ROUND_HALF_UP``; the payout is
always derived by subtraction so ``platform_fee + creator_payout == price``
holds exactly.
"""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal

from orderflow.models.schemas import to_money

__all__ = ["split_price", "to_money"]

_CENT = Decimal("0.01")


def split_price(price: Decimal | float | int, fee_rate: float) -> tuple[Decimal, Decimal]:
    """Return ``(platform_fee, creator_payout)`` for *price* at *fee_rate*.

    >>> split_price(100, 0.20)
    (Decimal('20.00'), Decimal('80.00'))
    """
    total = to_money(price)
    if total < 0:
        raise ValueError("price must be >= 0")
    if not 0 <= fee_rate <= 1:
        raise ValueError("fee_rate must be between 0 and 1")
    fee = (total * Decimal(str(fee_rate))).quantize(_CENT, rounding=ROUND_HALF_UP)
    return fee, total - fee
