"""
Recalculation orchestrator.

One run per trigger (customer, changed order | None):

    START -> SEEDING -> FETCHING -> FOLDING -> WRITING -> DONE
                                            (any) -> FAILED

Full mode replays the whole history from a zero seed. Partial mode seeds
from the order just before the changed one and replays from there. Partial
is only correct when the predecessor's stored fields came from a complete
earlier fold; a seed that looks missing or inconsistent downgrades the run
to Full (or raises SeedMissingOrStale when fallback is disabled).

Runs for the same customer must be serialized by the caller (see dispatch.py).
"""
from __future__ import annotations

import logging
import threading
from collections import defaultdict
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import List, Optional, Tuple

from .config import MODES
from .errors import FetchError, LedgerError, SeedMissingOrStale
from .history import StoredDerived, get_order, iter_customer_orders, previous_order
from .ledger import final_state, fold
from .models import CENT, LedgerState, Order, OrderDerived, fmt_money, to_gid
from .writer import MetafieldWriter

logger = logging.getLogger(__name__)


class RecalcState(str, Enum):
    START = "START"
    SEEDING = "SEEDING"
    FETCHING = "FETCHING"
    FOLDING = "FOLDING"
    WRITING = "WRITING"
    DONE = "DONE"
    FAILED = "FAILED"


@dataclass
class RecalcResult:
    customer_id: str
    changed_order_id: Optional[str]
    requested_mode: str
    mode: str = "full"
    downgrade_reason: Optional[str] = None
    seed: LedgerState = field(default_factory=LedgerState.zero)
    customer: LedgerState = field(default_factory=LedgerState.zero)
    rows: List[Tuple[Order, OrderDerived]] = field(default_factory=list)
    orders_written: int = 0
    dry_run: bool = False
    state: RecalcState = RecalcState.START

    @property
    def ok(self) -> bool:
        return self.state is RecalcState.DONE

    def to_dict(self) -> dict:
        return {
            "ok": self.ok,
            "state": self.state.value,
            "customer_id": self.customer_id,
            "changed_order_id": self.changed_order_id,
            "requested_mode": self.requested_mode,
            "mode": self.mode,
            "downgrade_reason": self.downgrade_reason,
            "seed_spend": fmt_money(self.seed.cumulative_spend),
            "orders_written": self.orders_written,
            "dry_run": self.dry_run,
            "customer": {
                "cumulative_spend": fmt_money(self.customer.cumulative_spend),
                "cumulative_shares": self.customer.cumulative_shares,
                "remainder": fmt_money(self.customer.remainder),
            },
        }


class Recalculator:
    def __init__(self, store, config, writer: MetafieldWriter = None):
        self.store = store
        self.config = config
        self.share_unit = Decimal(config.SHARE_UNIT)
        self.writer = writer or MetafieldWriter(store, config)
        # one int per customer seen since start; only grows, bounded by the shop's customer count
        self._partial_runs = defaultdict(int)
        self._count_lock = threading.Lock()

    # ---- public ----

    def recalculate(self, customer_id, changed_order_id=None, mode: str = None,
                    dry_run: bool = None) -> RecalcResult:
        customer = to_gid("Customer", customer_id)
        changed = to_gid("Order", changed_order_id) if changed_order_id else None
        requested = (mode or self.config.DEFAULT_MODE).lower()
        if requested not in MODES:
            raise ValueError(f"mode must be one of {MODES}, got {mode!r}")

        writer = self.writer
        if dry_run is not None and dry_run != writer.dry_run:
            writer = MetafieldWriter(self.store, self.config, dry_run=dry_run)

        result = RecalcResult(customer_id=customer, changed_order_id=changed,
                              requested_mode=requested, dry_run=writer.dry_run)
        result.mode = "partial" if (requested == "partial" and changed) else "full"

        try:
            trigger = None   # partial fold starts here
            expected = None  # changed order the fetched history must contain
            if result.mode == "partial" and self._due_for_full(customer):
                result.mode, result.downgrade_reason = "full", "periodic_full"
                logger.info("customer %s: periodic full recalculation instead of partial", customer)

            if result.mode == "partial":
                self._enter(result, RecalcState.SEEDING)
                try:
                    expected = self._trigger(customer, changed)
                    result.seed = self._seed(customer, expected)
                    trigger = expected
                except SeedMissingOrStale as e:
                    if not self.config.FALLBACK_TO_FULL:
                        raise
                    logger.warning("customer %s: %s (%s); downgrading to full recalculation",
                                   customer, e, e.reason)
                    result.mode, result.downgrade_reason = "full", e.reason
                    result.seed = LedgerState.zero()
            elif changed:
                try:
                    expected = self._trigger(customer, changed)
                except SeedMissingOrStale as e:
                    logger.info("customer %s: %s, full run without a visibility check", customer, e)

            self._enter(result, RecalcState.FETCHING)
            orders = self._fetch(customer, trigger, expected)

            self._enter(result, RecalcState.FOLDING)
            result.rows = list(fold(result.seed, orders, self.share_unit))
            result.customer = final_state(result.seed, result.rows)

            self._enter(result, RecalcState.WRITING)
            summary = writer.write([(o.id, d) for o, d in result.rows], customer, result.customer)
            result.orders_written = summary.orders_written

            self._enter(result, RecalcState.DONE)
            logger.info(
                "customer %s: %s recalculation done (trigger=%s, orders=%d, spend=%s, shares=%d, remainder=%s)",
                customer, result.mode, changed, len(result.rows),
                fmt_money(result.customer.cumulative_spend), result.customer.cumulative_shares,
                fmt_money(result.customer.remainder),
            )
            return result
        except LedgerError as e:
            failed_in = result.state
            result.state = RecalcState.FAILED
            logger.error("customer %s: recalculation FAILED in %s: [%s] %s",
                         customer, failed_in.value, e.kind, e)
            raise
        except Exception:
            failed_in = result.state
            result.state = RecalcState.FAILED
            logger.exception("customer %s: recalculation FAILED in %s", customer, failed_in.value)
            raise

    def customer_for_order(self, order_id) -> Optional[str]:
        order = get_order(self.store, order_id)
        return order.customer_id if order else None

    def preview(self, customer_id) -> List[Tuple[Order, OrderDerived]]:
        """Full fold without writing anything."""
        orders = list(iter_customer_orders(self.store, to_gid("Customer", customer_id)))
        return list(fold(LedgerState.zero(), orders, self.share_unit))

    # ---- steps ----

    @staticmethod
    def _enter(result: RecalcResult, state: RecalcState):
        logger.debug("customer %s: %s -> %s", result.customer_id, result.state.value, state.value)
        result.state = state

    def _due_for_full(self, customer: str) -> bool:
        every = self.config.FULL_EVERY
        if every <= 0:
            return False
        with self._count_lock:
            self._partial_runs[customer] += 1
            return self._partial_runs[customer] % every == 0

    def _trigger(self, customer: str, changed: str) -> Order:
        trigger = get_order(self.store, changed)
        if trigger is None:
            raise SeedMissingOrStale(f"changed order {changed} not found", order_id=changed,
                                     reason="trigger_not_found")
        if trigger.customer_id and to_gid("Customer", trigger.customer_id) != customer:
            raise SeedMissingOrStale(
                f"changed order {changed} belongs to {trigger.customer_id}, not {customer}",
                order_id=changed, reason="customer_mismatch",
            )
        return trigger

    def _seed(self, customer: str, trigger: Order) -> LedgerState:
        prev = previous_order(self.store, customer, trigger)
        if prev is None:
            logger.info("customer %s: %s is the first order, zero seed", customer, trigger.label)
            return LedgerState.zero()

        seed = self.seed_from_stored(prev)
        logger.info("customer %s: seed from %s -> spend=%s shares=%d",
                    customer, prev.name or prev.order_id, fmt_money(seed.cumulative_spend), seed.cumulative_shares)
        return seed

    def seed_from_stored(self, prev: StoredDerived) -> LedgerState:
        if prev.spend in (None, ""):
            raise SeedMissingOrStale(f"order {prev.order_id} has no stored cumulative spend",
                                     order_id=prev.order_id, reason="seed_missing")
        try:
            spend = Decimal(str(prev.spend))
            remainder = Decimal(str(prev.remainder)) if prev.remainder not in (None, "") else None
        except InvalidOperation:
            raise SeedMissingOrStale(f"order {prev.order_id} has unparseable derived fields",
                                     order_id=prev.order_id, reason="seed_unparseable")
        if not spend.is_finite() or (remainder is not None and not remainder.is_finite()):
            raise SeedMissingOrStale(f"order {prev.order_id} has non-finite derived fields",
                                     order_id=prev.order_id, reason="seed_unparseable")
        if spend < 0:
            raise SeedMissingOrStale(f"order {prev.order_id} has negative stored spend {spend}",
                                     order_id=prev.order_id, reason="seed_stale")

        state = LedgerState.from_spend(spend, self.share_unit)
        # remainder written by the same fold must agree with spend under the current unit
        if remainder is not None and remainder.quantize(CENT) != state.remainder.quantize(CENT):
            raise SeedMissingOrStale(
                f"order {prev.order_id} stored remainder {remainder} disagrees with spend {spend}",
                order_id=prev.order_id, reason="seed_inconsistent",
            )
        return state

    def _fetch(self, customer: str, trigger: Optional[Order], expected: Optional[Order] = None) -> List[Order]:
        # fully materialized before folding: nothing is written from a truncated history
        if trigger is None:
            orders = list(iter_customer_orders(self.store, customer))
            visible = expected is None or any(o.id == expected.id for o in orders)
        else:
            orders = [o for o in iter_customer_orders(self.store, customer, since=trigger.created_at)
                      if o.sort_key >= trigger.sort_key]
            visible = bool(orders) and orders[0].id == trigger.id
        if not visible:
            # search index lag right after order creation looks exactly like this
            missing = (trigger or expected).id
            raise FetchError(f"changed order {missing} is not visible in the order listing yet",
                             partial=orders)
        return orders
