"""
Order history reader.

Turns the store's paged order listings into Order records sorted by
(created_at, id), resolving each order's refund line items on the way.
A history that cannot be read completely is a FetchError, never a shorter list.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import InvalidOperation
from typing import Iterator, List, Optional

from .errors import FetchError
from .models import Order, id_key, money, parse_ts, to_gid
from .shopify_client import ShopifyError
from .store import REFUNDS_PER_ORDER

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StoredDerived:
    """An order's ledger fields as currently written in the store (raw strings)."""
    order_id: str
    created_at: datetime
    name: str = ""
    spend: Optional[str] = None
    shares: Optional[str] = None
    remainder: Optional[str] = None

    @property
    def sort_key(self):
        return (self.created_at, id_key(self.order_id))


def _amount(line_node) -> str:
    return ((line_node.get("subtotalSet") or {}).get("shopMoney") or {}).get("amount")


def _refund_lines(store, refund) -> list:
    conn = refund.get("refundLineItems") or {}
    amounts = [money(_amount(e["node"])) for e in conn.get("edges") or []]
    info = conn.get("pageInfo") or {}
    after = info.get("endCursor") if info.get("hasNextPage") else None
    while after:
        logger.info("refund %s has more line items, fetching page after %s", refund.get("id"), after)
        page = store.list_refund_lines_page(refund["id"], after=after)
        amounts.extend(money(_amount(n)) for n in page["nodes"])
        after = page["next"]
    return amounts


def order_from_node(store, node) -> Order:
    refunds = node.get("refunds") or []
    if len(refunds) >= REFUNDS_PER_ORDER:
        raise FetchError(f"order {node.get('id')} has {len(refunds)}+ refunds; refund list may be truncated")

    lines = []
    for refund in refunds:
        lines.extend(_refund_lines(store, refund))
    if any(a < 0 for a in lines):
        raise FetchError(f"order {node.get('id')} has a negative refund line amount")

    subtotal = money(((node.get("subtotalPriceSet") or {}).get("shopMoney") or {}).get("amount"))
    if subtotal < 0:
        raise FetchError(f"order {node.get('id')} has a negative subtotal")
    cancelled = node.get("cancelledAt")
    return Order(
        id=to_gid("Order", node["id"]),
        created_at=parse_ts(node["createdAt"]),
        subtotal=subtotal,
        cancelled_at=parse_ts(cancelled) if cancelled else None,
        refunds=tuple(lines),
        name=node.get("name") or "",
        customer_id=((node.get("customer") or {}).get("id")),
    )


def _normalize(store, node, fetched) -> Order:
    try:
        return order_from_node(store, node)
    except FetchError as e:
        e.partial = list(fetched)
        raise
    except ShopifyError as e:
        raise FetchError(f"refund lookup failed for order {node.get('id')}: {e}", partial=fetched) from e
    except (KeyError, TypeError, ValueError, InvalidOperation) as e:
        raise FetchError(f"malformed order node {node.get('id')}: {e!r}", partial=fetched) from e


def iter_customer_orders(store, customer_id: str, since: datetime = None) -> Iterator[Order]:
    """
    Lazily yield a customer's orders (created at/after `since` if given),
    sorted by (created_at, id). Orders sharing a timestamp are held back until
    the timestamp changes so they can be released in id order.
    """
    fetched: List[Order] = []
    pending: List[Order] = []
    after = None
    pages = 0

    while True:
        try:
            page = store.list_orders_page(customer_id, since=since, after=after)
        except ShopifyError as e:
            logger.error("orders page %d for customer %s failed after %d orders: %s",
                         pages + 1, customer_id, len(fetched) + len(pending), e)
            raise FetchError(f"orders page fetch failed: {e}", partial=fetched + pending) from e
        pages += 1
        logger.info("customer %s: orders page %d -> %d orders", customer_id, pages, len(page["nodes"]))

        for node in page["nodes"]:
            order = _normalize(store, node, fetched + pending)
            if pending and order.created_at < pending[-1].created_at:
                raise FetchError(
                    f"store returned {order.id} ({order.created_at.isoformat()}) after "
                    f"{pending[-1].id} ({pending[-1].created_at.isoformat()}); history is not time ordered",
                    partial=fetched + pending,
                )
            if pending and order.created_at != pending[0].created_at:
                for o in sorted(pending, key=lambda x: x.sort_key):
                    fetched.append(o)
                    yield o
                pending = []
            pending.append(order)

        after = page["next"]
        if not after:
            break

    for o in sorted(pending, key=lambda x: x.sort_key):
        fetched.append(o)
        yield o
    logger.info("customer %s: history complete, %d orders in %d pages", customer_id, len(fetched), pages)


def load_customer_orders(store, customer_id: str, since: datetime = None) -> List[Order]:
    return list(iter_customer_orders(store, customer_id, since=since))


def get_order(store, order_id) -> Optional[Order]:
    try:
        node = store.get_order(order_id)
    except ShopifyError as e:
        raise FetchError(f"order lookup failed for {order_id}: {e}") from e
    if not node:
        return None
    return _normalize(store, node, [])


def previous_order(store, customer_id: str, trigger: Order) -> Optional[StoredDerived]:
    """
    The customer's order immediately before `trigger` in (created_at, id)
    order, with its stored derived fields. None if `trigger` is the first.
    """
    best = None
    boundary = None  # first timestamp strictly earlier than the trigger's
    after = None
    while True:
        try:
            page = store.list_orders_before_page(customer_id, until=trigger.created_at, after=after)
        except ShopifyError as e:
            raise FetchError(f"previous-order lookup failed for {trigger.id}: {e}") from e

        for node in page["nodes"]:
            try:
                cand = StoredDerived(
                    order_id=to_gid("Order", node["id"]),
                    created_at=parse_ts(node["createdAt"]),
                    name=node.get("name") or "",
                    spend=(node.get("spend") or {}).get("value"),
                    shares=(node.get("shares") or {}).get("value"),
                    remainder=(node.get("remainder") or {}).get("value"),
                )
            except (KeyError, TypeError, ValueError) as e:
                raise FetchError(f"malformed order node {node.get('id')}: {e!r}") from e

            if boundary is not None and cand.created_at < boundary:
                return best
            if cand.sort_key >= trigger.sort_key:
                continue
            if boundary is None and cand.created_at < trigger.created_at:
                boundary = cand.created_at
            if best is None or cand.sort_key > best.sort_key:
                best = cand

        after = page["next"]
        if not after:
            return best
