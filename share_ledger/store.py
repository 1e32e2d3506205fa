"""
Shopify Admin GraphQL queries used by the ledger.

This module only moves JSON; normalization into Order records happens in
history.py. All methods raise ShopifyError on transport/GraphQL failure.
"""
from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional

from .models import fmt_money, gid_numeric, to_gid
from .shopify_client import ShopifyError

REFUNDS_PER_ORDER = 100
REFUND_LINES_PER_PAGE = 100
METAFIELDS_PER_CALL = 25   # metafieldsSet hard limit

LEDGER_ORDER_FRAGMENT = """
fragment LedgerOrder on Order {
  id
  name
  createdAt
  cancelledAt
  customer { id }
  subtotalPriceSet { shopMoney { amount } }
  refunds(first: %d) {
    id
    refundLineItems(first: %d) {
      edges { node { subtotalSet { shopMoney { amount } } } }
      pageInfo { hasNextPage endCursor }
    }
  }
}
""" % (REFUNDS_PER_ORDER, REFUND_LINES_PER_PAGE)

CUSTOMER_ORDERS_QUERY = """
query CustomerOrders($first:Int!, $after:String, $query:String!) {
  orders(first:$first, after:$after, query:$query, sortKey:CREATED_AT, reverse:false) {
    edges { cursor node { ...LedgerOrder } }
    pageInfo { hasNextPage endCursor }
  }
}
""" + LEDGER_ORDER_FRAGMENT

ORDER_QUERY = """
query OrderForLedger($id:ID!) {
  order(id:$id) { ...LedgerOrder }
}
""" + LEDGER_ORDER_FRAGMENT

REFUND_LINES_QUERY = """
query RefundLines($id:ID!, $after:String) {
  node(id:$id) {
    ... on Refund {
      refundLineItems(first:%d, after:$after) {
        edges { node { subtotalSet { shopMoney { amount } } } }
        pageInfo { hasNextPage endCursor }
      }
    }
  }
}
""" % REFUND_LINES_PER_PAGE

PREVIOUS_ORDERS_QUERY = """
query PreviousOrders($first:Int!, $after:String, $query:String!,
                     $spendNs:String!, $spendKey:String!,
                     $sharesNs:String!, $sharesKey:String!,
                     $remNs:String!, $remKey:String!) {
  orders(first:$first, after:$after, query:$query, sortKey:CREATED_AT, reverse:true) {
    edges {
      cursor
      node {
        id
        name
        createdAt
        spend: metafield(namespace:$spendNs, key:$spendKey) { value }
        shares: metafield(namespace:$sharesNs, key:$sharesKey) { value }
        remainder: metafield(namespace:$remNs, key:$remKey) { value }
      }
    }
    pageInfo { hasNextPage endCursor }
  }
}
"""

METAFIELDS_SET_MUTATION = """
mutation MetafieldsSet($metafields: [MetafieldsSetInput!]!) {
  metafieldsSet(metafields: $metafields) {
    metafields { id namespace key }
    userErrors { field message code }
  }
}
"""


def _iso(ts) -> str:
    return ts.isoformat().replace("+00:00", "Z")


def orders_search(customer_id: str, since=None, until=None) -> str:
    q = f"customer_id:{gid_numeric(customer_id)}"
    if since is not None:
        q += f" created_at:>='{_iso(since)}'"
    if until is not None:
        q += f" created_at:<='{_iso(until)}'"
    return q


class ShopifyStore:
    """The order/refund/metafield surface of the shop, over a ShopifyClient."""

    def __init__(self, client, page_size: int = 100, order_keys=None):
        self.client = client
        self.page_size = page_size
        # ((ns, key) spend, (ns, key) shares, (ns, key) remainder)
        self.order_keys = order_keys or (
            ("custom", "osszes_koltes"), ("custom", "order_share"), ("custom", "fennmarado_osszeg"),
        )

    # ---- reads ----

    def list_orders_page(self, customer_id: str, since=None, after: str = None) -> Dict[str, Any]:
        """One page of a customer's orders, oldest first. Returns {"nodes": [...], "next": cursor|None}."""
        data = self.client.graphql(CUSTOMER_ORDERS_QUERY, {
            "first": self.page_size,
            "after": after,
            "query": orders_search(customer_id, since=since),
        })
        return _page(data.get("orders"), "orders")

    def list_refund_lines_page(self, refund_id: str, after: str = None) -> Dict[str, Any]:
        data = self.client.graphql(REFUND_LINES_QUERY, {"id": refund_id, "after": after})
        node = data.get("node")
        if not node:
            raise ShopifyError(f"refund {refund_id} not found")
        return _page(node.get("refundLineItems"), "refundLineItems")

    def get_order(self, order_id) -> Optional[Dict[str, Any]]:
        data = self.client.graphql(ORDER_QUERY, {"id": to_gid("Order", order_id)})
        return data.get("order")

    def list_orders_before_page(self, customer_id: str, until, after: str = None) -> Dict[str, Any]:
        """Orders created at or before `until`, newest first, with their stored derived fields."""
        (spend_ns, spend_key), (shares_ns, shares_key), (rem_ns, rem_key) = self.order_keys
        data = self.client.graphql(PREVIOUS_ORDERS_QUERY, {
            "first": self.page_size,
            "after": after,
            "query": orders_search(customer_id, until=until),
            "spendNs": spend_ns, "spendKey": spend_key,
            "sharesNs": shares_ns, "sharesKey": shares_key,
            "remNs": rem_ns, "remKey": rem_key,
        })
        return _page(data.get("orders"), "orders")

    # ---- writes ----

    def set_metafields(self, inputs: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Upsert up to 25 metafields in one call. Returns the mutation's userErrors."""
        inputs = list(inputs)
        if len(inputs) > METAFIELDS_PER_CALL:
            raise ValueError(f"metafieldsSet accepts at most {METAFIELDS_PER_CALL} metafields, got {len(inputs)}")
        data = self.client.graphql(METAFIELDS_SET_MUTATION, {"metafields": inputs})
        result = data.get("metafieldsSet")
        if result is None:
            raise ShopifyError("metafieldsSet returned no payload")
        return result.get("userErrors") or []


def _page(conn, what: str) -> Dict[str, Any]:
    if conn is None:
        raise ShopifyError(f"response is missing '{what}'")
    edges = conn.get("edges") or []
    info = conn.get("pageInfo") or {}
    nxt = info.get("endCursor") if info.get("hasNextPage") else None
    if info.get("hasNextPage") and not nxt:
        # fall back to the last edge cursor like the older paging helpers did
        nxt = edges[-1].get("cursor") if edges else None
        if not nxt:
            raise ShopifyError(f"'{what}' reports another page but no cursor")
    return {"nodes": [e["node"] for e in edges], "next": nxt}


def metafield_input(owner_id: str, ns_key, mftype: str, value) -> Dict[str, Any]:
    ns, key = ns_key
    if mftype == "number_decimal":
        value = fmt_money(value)
    return {"ownerId": owner_id, "namespace": ns, "key": key, "type": mftype, "value": str(value)}
