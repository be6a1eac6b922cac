"""
Escrow and platform fee arithmetic.
All amounts are Decimal and quantized to cents; fees round down.
"""
from decimal import Decimal, ROUND_DOWN

CENT = Decimal('0.01')
HUNDRED = Decimal('100')


def calculate_platform_fee(amount: Decimal, fee_percentage: Decimal) -> Decimal:
    """
    Calculate the platform fee on an amount.

    Args:
        amount: Base amount the fee applies to
        fee_percentage: Fee as a percentage (10 = 10%)

    Returns:
        Fee rounded down to the cent
    """
    return (amount * fee_percentage / HUNDRED).quantize(CENT, rounding=ROUND_DOWN)


def calculate_escrow_amount(payment_per_task: Decimal, workers_needed: int, fee_percentage: Decimal) -> Decimal:
    """
    Calculate the amount locked in escrow when a task is created.

    escrow = payment_per_task * workers_needed + fee on that total.
    e.g. $10 x 2 workers at 10% -> $22.00; $5 x 3 workers at 10% -> $16.50
    """
    total_payment = payment_per_task * workers_needed
    return total_payment + calculate_platform_fee(total_payment, fee_percentage)


def calculate_fee_due(payment_per_task: Decimal, workers_completed: int, fee_percentage: Decimal) -> Decimal:
    """Platform fee earned on the approved work of a task."""
    return calculate_platform_fee(payment_per_task * workers_completed, fee_percentage)
