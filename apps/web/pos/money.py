"""
Money helpers - normalize provider amounts to integer minor units.

Rounding conventions per provider:
- Square: amounts are integer cents already; passed through.
- Clover: amounts are integer cents already; passed through.
- Toast: amounts are decimal dollars; rounded to the cent with ROUND_HALF_UP.
"""

import logging
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

logger = logging.getLogger(__name__)

_CENT = Decimal("0.01")


def dollars_to_cents(value: Any) -> int:
    """
    Convert a decimal major-unit amount to integer cents (ROUND_HALF_UP).

    Floats are routed through str() so binary artifacts don't leak into
    the rounding step. Missing or unparseable values count as zero.
    """
    if value is None or value == "":
        return 0
    try:
        amount = Decimal(str(value))
    except InvalidOperation:
        logger.warning("Unparseable money amount: %r", value)
        return 0
    return int((amount.quantize(_CENT, rounding=ROUND_HALF_UP) * 100).to_integral())


def cents(value: Any) -> int:
    """Coerce a minor-unit amount (int, str or None) to int."""
    if value is None or value == "":
        return 0
    try:
        return int(value)
    except (TypeError, ValueError):
        logger.warning("Unparseable cent amount: %r", value)
        return 0


@dataclass(frozen=True)
class Totals:
    """Reconciled order totals in cents."""

    subtotal_cents: int
    tax_cents: int
    discount_cents: int
    adjustment_cents: int
    total_cents: int


def reconcile_totals(
    subtotal_cents: int,
    tax_cents: int,
    discount_cents: int = 0,
    provider_total_cents: int | None = None,
    provider: str = "",
    order_id: str = "",
) -> Totals:
    """
    Reconcile component totals against the provider-reported total.

    Any difference between the provider total and
    subtotal + tax - discount is booked as an adjustment (tips, service
    charges, rounding residue) rather than dropped.

    Args:
        subtotal_cents: Sum of line totals before tax and discounts.
        tax_cents: Tax in cents.
        discount_cents: Discounts as a positive number of cents.
        provider_total_cents: Total reported by the provider, if any.
        provider: Provider name, for logging.
        order_id: Provider order ID, for logging.

    Returns:
        Totals satisfying total = subtotal + tax - discount + adjustment.
    """
    discount_cents = abs(discount_cents)
    computed = subtotal_cents + tax_cents - discount_cents
    if provider_total_cents is None:
        return Totals(subtotal_cents, tax_cents, discount_cents, 0, computed)

    adjustment = provider_total_cents - computed
    if adjustment:
        logger.info(
            "%s order %s total differs from components by %d cents; "
            "recording as adjustment",
            provider,
            order_id,
            adjustment,
        )
    return Totals(
        subtotal_cents, tax_cents, discount_cents, adjustment, provider_total_cents
    )
