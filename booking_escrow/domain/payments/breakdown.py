"""Platform fee / escrow split for a booking total"""

import logging
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Union

from pydantic import BaseModel

from ...config import PLATFORM_FEE_RATE
from ...errors import InvalidAmount

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


class PaymentBreakdown(BaseModel):
    total_amount: Decimal
    platform_fee: Decimal
    escrow_amount: Decimal


def to_money(value: Union[Decimal, str, int, float]) -> Decimal:
    """Coerce to a 2dp Decimal. Floats go through str() so 0.1 stays 0.1."""
    try:
        amount = Decimal(str(value)) if isinstance(value, float) else Decimal(value)
    except (InvalidOperation, TypeError, ValueError) as e:
        raise InvalidAmount(f"Invalid amount: {value!r}") from e
    if not amount.is_finite():
        raise InvalidAmount(f"Invalid amount: {value!r}")
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def calculate_breakdown(total_amount, fee_rate: Decimal = PLATFORM_FEE_RATE) -> PaymentBreakdown:
    """
    Split a booking total into platform fee and provider escrow.

    Only the fee is rounded; the escrow amount is derived by subtraction so
    platform_fee + escrow_amount == total_amount exactly.
    """
    total = to_money(total_amount)
    if total <= 0:
        raise InvalidAmount(f"Booking total must be greater than zero, got {total}")

    platform_fee = (total * Decimal(fee_rate)).quantize(CENT, rounding=ROUND_HALF_UP)
    escrow_amount = total - platform_fee

    logger.debug(f"💰 Breakdown for {total}: fee={platform_fee}, escrow={escrow_amount}")
    return PaymentBreakdown(total_amount=total, platform_fee=platform_fee, escrow_amount=escrow_amount)
