from __future__ import annotations

import logging
from decimal import Decimal
from typing import Iterable, Iterator, Sequence, Tuple

from .calculator import effective_amount
from .models import CustomerDerived, LedgerState, Order, OrderDerived, fmt_money

logger = logging.getLogger(__name__)


def fold(seed: LedgerState, orders: Iterable[Order], share_unit: Decimal) -> Iterator[Tuple[Order, OrderDerived]]:
    """
    Walk orders in the given (already time-sorted) sequence and yield the
    ledger snapshot after each one. Strictly sequential: step N starts from
    step N-1's state, and the first step starts from `seed`.
    """
    share_unit = Decimal(share_unit)
    if share_unit <= 0:
        raise ValueError(f"share_unit must be positive, got {share_unit}")

    state = seed
    for order in orders:
        eff = effective_amount(order)
        nxt = state.advance(eff, share_unit)
        derived = OrderDerived(
            cumulative_spend=nxt.cumulative_spend,
            cumulative_shares=nxt.cumulative_shares,
            remainder=nxt.remainder,
            order_shares=nxt.cumulative_shares - state.cumulative_shares,
            effective=eff,
        )
        logger.debug(
            "fold %s subtotal=%s refunded=%s cancelled=%s -> effective=%s cum=%s shares=%s (+%s) rem=%s",
            order.label, fmt_money(order.subtotal), fmt_money(order.refunded_total), order.cancelled,
            fmt_money(eff), fmt_money(nxt.cumulative_spend), nxt.cumulative_shares,
            derived.order_shares, fmt_money(nxt.remainder),
        )
        yield order, derived
        state = nxt


def final_state(seed: LedgerState, folded: Sequence[Tuple[Order, OrderDerived]]) -> CustomerDerived:
    if not folded:
        return seed
    return folded[-1][1].state
