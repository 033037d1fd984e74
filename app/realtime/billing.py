"""Per-minute call billing."""

from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal

from app.models.domain.realtime_domain import CallBilling

CENTS = Decimal("0.01")
MICROSECONDS_PER_MINUTE = 60_000_000


def compute_call_billing(
    start_time: datetime, end_time: datetime, rate_per_minute: Decimal | int | str
) -> CallBilling:
    """
    Bill every started minute in full.

    90 seconds is 2 minutes; exactly 60 seconds is 1 minute. The amount is
    `minutes * rate` rounded half-up to 2 decimals. Integer microsecond
    arithmetic keeps the ceiling exact at minute boundaries.
    """
    elapsed_us = max(0, (end_time - start_time) // timedelta(microseconds=1))
    duration_minutes = -(-elapsed_us // MICROSECONDS_PER_MINUTE)

    rate = Decimal(str(rate_per_minute))
    total_amount = (Decimal(duration_minutes) * rate).quantize(CENTS, rounding=ROUND_HALF_UP)
    return CallBilling(duration_minutes=duration_minutes, total_amount=total_amount)
