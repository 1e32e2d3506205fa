from decimal import Decimal

from .models import Order

ZERO = Decimal("0")


def refunded_total(order: Order) -> Decimal:
    return order.refunded_total


def effective_amount(order: Order) -> Decimal:
    """
    Spend credited to the ledger for one order.
    Cancelled -> 0 regardless of refunds; otherwise subtotal minus refunds, never below 0.
    """
    if order.cancelled:
        return ZERO
    return max(ZERO, order.subtotal - refunded_total(order))
