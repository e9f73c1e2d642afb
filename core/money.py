# Fixed-point money helpers
# Every amount in the ledger is an integer number of cents.

from decimal import Decimal, ROUND_HALF_UP
from typing import Tuple, Union

from config.app_config import PLATFORM_FEE_PERCENT

Percent = Union[int, str, Decimal]


def percent_of(amount: int, percent: Percent) -> int:
    """Percentage of an amount in cents, rounded half-up to the cent."""
    value = Decimal(amount) * Decimal(str(percent)) / Decimal(100)
    return int(value.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def split_platform_fee(total: int, fee_percent: Percent = PLATFORM_FEE_PERCENT) -> Tuple[int, int]:
    """
    Split a payment into (platform_fee, creator_amount).

    The creator amount is the remainder, so the two parts always sum to the total.
    """
    platform_fee = percent_of(total, fee_percent)
    return platform_fee, total - platform_fee


def withdrawal_net_amount(amount: int, fixed_fee: int, fee_percent: Percent) -> int:
    return amount - fixed_fee - percent_of(amount, fee_percent)


def format_amount(cents: int, currency: str = "usd") -> str:
    """Display formatting only; never feed the result back into the ledger."""
    value = (Decimal(cents) / Decimal(100)).quantize(Decimal("0.01"))
    return f"{value:,} {currency.upper()}"
