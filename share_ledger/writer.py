from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Sequence, Tuple

from .errors import WriteError
from .models import LedgerState, OrderDerived, to_gid
from .shopify_client import ShopifyError
from .store import METAFIELDS_PER_CALL, metafield_input

logger = logging.getLogger(__name__)

FIELDS_PER_OWNER = 3


@dataclass
class WriteSummary:
    orders_written: int = 0
    calls: int = 0
    dry_run: bool = False


class MetafieldWriter:
    """
    Writes derived ledger fields back as metafields.

    An order's three fields always share one metafieldsSet call, so each order
    lands whole or not at all. Orders go first in fold order, the customer
    last: an interrupted write leaves a prefix of the fold in the store.
    """

    def __init__(self, store, config, dry_run: bool = None):
        self.store = store
        self.config = config
        self.dry_run = config.DRY_RUN if dry_run is None else dry_run
        self.orders_per_call = METAFIELDS_PER_CALL // FIELDS_PER_OWNER

    def order_inputs(self, order_id: str, derived: OrderDerived) -> List[Dict[str, Any]]:
        owner = to_gid("Order", order_id)
        spend_k, shares_k, rem_k = self.config.order_keys()
        return [
            metafield_input(owner, spend_k, "number_decimal", derived.cumulative_spend),
            metafield_input(owner, shares_k, "number_integer", derived.order_shares),
            metafield_input(owner, rem_k, "number_decimal", derived.remainder),
        ]

    def customer_inputs(self, customer_id: str, state: LedgerState) -> List[Dict[str, Any]]:
        owner = to_gid("Customer", customer_id)
        spend_k, shares_k, rem_k = self.config.customer_keys()
        return [
            metafield_input(owner, spend_k, "number_decimal", state.cumulative_spend),
            metafield_input(owner, shares_k, "number_integer", state.cumulative_shares),
            metafield_input(owner, rem_k, "number_decimal", state.remainder),
        ]

    def _send(self, inputs, owners, committed: int):
        if self.dry_run:
            logger.info("DRY_RUN metafieldsSet skipped for %s: %s", owners, inputs)
            return
        try:
            user_errors = self.store.set_metafields(inputs)
        except ShopifyError as e:
            logger.error("metafieldsSet failed for %s after %d orders committed: %s", owners, committed, e)
            raise WriteError(f"metafieldsSet failed: {e}", owners=owners, committed_orders=committed) from e
        if user_errors:
            logger.error("metafieldsSet userErrors for %s: %s", owners, user_errors)
            raise WriteError(
                f"metafieldsSet rejected {len(user_errors)} field(s)",
                user_errors=user_errors, owners=owners, committed_orders=committed,
            )

    def write(self, order_rows: Sequence[Tuple[str, OrderDerived]], customer_id: str,
              customer_state: LedgerState) -> WriteSummary:
        summary = WriteSummary(dry_run=self.dry_run)
        rows = list(order_rows)

        for i in range(0, len(rows), self.orders_per_call):
            chunk = rows[i:i + self.orders_per_call]
            inputs, owners = [], []
            for order_id, derived in chunk:
                inputs.extend(self.order_inputs(order_id, derived))
                owners.append(to_gid("Order", order_id))
            self._send(inputs, owners, summary.orders_written)
            summary.orders_written += len(chunk)
            summary.calls += 1

        cust = to_gid("Customer", customer_id)
        self._send(self.customer_inputs(cust, customer_state), [cust], summary.orders_written)
        summary.calls += 1
        logger.info("customer %s: wrote %d orders + customer in %d calls%s",
                    cust, summary.orders_written, summary.calls, " (dry run)" if self.dry_run else "")
        return summary
